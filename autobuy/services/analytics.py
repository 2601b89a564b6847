"""
Run manifest sinks.

The planner never reads history. It hands each run's manifest to a sink;
reconciling predicted against actual purchases happens elsewhere.
"""

import json
import logging
from pathlib import Path
from typing import Protocol

from autobuy.models.plan import ManifestLine, Plan

logger = logging.getLogger(__name__)


class ManifestSink(Protocol):
    """Anything that can persist a run manifest."""

    def write(self, run_id: str, lines: list[ManifestLine]) -> None: ...


class JsonLinesManifestSink:
    """Appends one JSON object per manifest line to a file."""

    def __init__(self, path: Path):
        self.path = path

    def write(self, run_id: str, lines: list[ManifestLine]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("a", encoding="utf-8") as handle:
            for line in lines:
                record = {"runId": run_id, **line.to_dict()}
                handle.write(json.dumps(record, sort_keys=True) + "\n")

        logger.info("manifest_written", extra={"run_id": run_id, "lines": len(lines)})


class MemoryManifestSink:
    """Keeps manifests in memory, keyed by run id."""

    def __init__(self) -> None:
        self.runs: dict[str, list[ManifestLine]] = {}

    def write(self, run_id: str, lines: list[ManifestLine]) -> None:
        self.runs.setdefault(run_id, []).extend(lines)


def publish_manifest(plan: Plan, sink: ManifestSink, run_id: str) -> int:
    """Send a plan's manifest to a sink. Returns the number of lines sent."""
    lines = list(plan.manifest)
    sink.write(run_id, lines)
    return len(lines)
