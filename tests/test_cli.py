"""Tests for the command-line planner."""

import json
from pathlib import Path
from typing import Any

import pytest

from autobuy.cli import EXIT_INPUT_ERROR, EXIT_OK, default_run_id, main


@pytest.fixture
def request_path(tmp_path: Path, plan_request_json: dict[str, Any]) -> Path:
    path = tmp_path / "request.json"
    path.write_text(json.dumps(plan_request_json))
    return path


class TestMain:
    def test_plan_written_to_stdout(
        self, request_path: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        exit_code = main([str(request_path)])

        assert exit_code == EXIT_OK
        out = capsys.readouterr().out
        plan = json.loads(out)
        assert plan["baskets"][0]["sellerId"] == "seller-1"
        assert out.startswith("{\n")

    def test_compact_output(
        self, request_path: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        main([str(request_path), "--compact"])

        out = capsys.readouterr().out
        assert out.count("\n") == 1
        assert json.loads(out)["cancelled"] is False

    def test_same_input_same_output(
        self, request_path: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        """Replanning an unchanged request gives byte-identical output."""
        main([str(request_path)])
        first = capsys.readouterr().out
        main([str(request_path)])

        assert capsys.readouterr().out == first

    def test_input_error_envelope_on_stderr(
        self, tmp_path: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        path = tmp_path / "bad.json"
        path.write_text(json.dumps({"budget": {"maxTotalSpend": -5}}))

        exit_code = main([str(path)])

        assert exit_code == EXIT_INPUT_ERROR
        captured = capsys.readouterr()
        assert captured.out == ""
        envelope = json.loads(captured.err[captured.err.index("{") :])
        assert envelope["outcome"] == "known_failure"
        assert envelope["failure"]["kind"] == "inconsistent_budget"

    def test_missing_file(self, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        exit_code = main([str(tmp_path / "nope.json")])

        assert exit_code == EXIT_INPUT_ERROR
        assert "invalid_request" in capsys.readouterr().err

    def test_non_utf8_file(self, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        path = tmp_path / "request.json"
        path.write_bytes(b"\xff{}")

        exit_code = main([str(path)])

        assert exit_code == EXIT_INPUT_ERROR
        err = capsys.readouterr().err
        assert "invalid_request" in err
        assert "is not UTF-8 text" in err


class TestManifestOutput:
    def test_manifest_appended_with_run_id(self, request_path: Path, tmp_path: Path) -> None:
        manifest = tmp_path / "out" / "manifest.jsonl"

        main([str(request_path), "--manifest-out", str(manifest), "--run-id", "run-7"])

        records = [json.loads(row) for row in manifest.read_text().splitlines()]
        assert {r["runId"] for r in records} == {"run-7"}
        assert sorted(r["cardId"] for r in records) == ["bolt", "swiftspear"]

    def test_default_run_id_is_content_hash(self, request_path: Path, tmp_path: Path) -> None:
        manifest = tmp_path / "manifest.jsonl"

        main([str(request_path), "--manifest-out", str(manifest)])

        record = json.loads(manifest.read_text().splitlines()[0])
        assert record["runId"] == default_run_id(request_path)
        assert len(record["runId"]) == 16

    def test_no_manifest_on_input_error(self, tmp_path: Path) -> None:
        path = tmp_path / "bad.json"
        path.write_text("[]")
        manifest = tmp_path / "manifest.jsonl"

        main([str(path), "--manifest-out", str(manifest)])

        assert not manifest.exists()
