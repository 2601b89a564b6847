"""
Command-line planner.

Reads a JSON PlanRequest from a path and writes the Plan as JSON to
standard output. Logs go to standard error.

Exit codes:
    0 - a plan was produced (unfilled demand is not an error)
    1 - structural input error; a known-failure envelope is printed to stderr
"""

import argparse
import hashlib
import logging
import sys
from pathlib import Path

from autobuy.config import settings
from autobuy.models.failure import PlanInputError, create_known_failure
from autobuy.parsers.plan_request import load_plan_request
from autobuy.services.analytics import JsonLinesManifestSink, publish_manifest
from autobuy.services.pipeline import plan_purchases
from autobuy.services.plan_emitter import plan_to_json

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_INPUT_ERROR = 1


def default_run_id(path: Path) -> str:
    """Content hash of the request file, so reruns share an id."""
    digest = hashlib.sha256(path.read_bytes()).hexdigest()
    return digest[:16]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="autobuy-plan",
        description="Build a purchase plan from a JSON plan request",
    )
    parser.add_argument("request", type=Path, help="Path to the PlanRequest JSON file")
    parser.add_argument(
        "--manifest-out",
        type=Path,
        default=None,
        help="Append the run manifest to this JSON-lines file",
    )
    parser.add_argument(
        "--run-id",
        default=None,
        help="Run id recorded with the manifest (default: hash of the request file)",
    )
    parser.add_argument(
        "--compact",
        action="store_true",
        help="Write the plan on one line",
    )
    parser.add_argument(
        "--log-level",
        default=settings.log_level,
        help=f"Logging level for stderr (default: {settings.log_level})",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    """CLI entry point. Returns the process exit code."""
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=args.log_level.upper(),
        stream=sys.stderr,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    try:
        request = load_plan_request(args.request)
        plan = plan_purchases(request)
    except PlanInputError as e:
        envelope = create_known_failure(e)
        print(envelope.model_dump_json(indent=2), file=sys.stderr)
        return EXIT_INPUT_ERROR

    print(plan_to_json(plan, indent=None if args.compact else 2))

    if args.manifest_out is not None:
        run_id = args.run_id or default_run_id(args.request)
        count = publish_manifest(plan, JsonLinesManifestSink(args.manifest_out), run_id)
        logger.info("manifest_published", extra={"run_id": run_id, "lines": count})

    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
