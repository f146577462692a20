"""
Tests for run records and report persistence.
"""

import json
import re
import shutil
import tempfile
from pathlib import Path

import pytest

from matrixci.pipeline.types import Leg
from matrixci.state import ExecutionRecord, LegResult, PublishRecord, RunResult, RunStore


class TestRunStore:
    """Test RunStore functionality."""

    def setup_method(self):
        """Create temporary directory for tests."""
        self.temp_dir = tempfile.mkdtemp()
        self.state_dir = Path(self.temp_dir) / ".matrixci"

    def teardown_method(self):
        """Clean up temporary directory."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def make_result(self, run_id: str) -> RunResult:
        leg = Leg(0, {'ARCH': 'amd64'})
        return RunResult(
            run_id=run_id,
            status="failed",
            exit_code=1,
            legs=[LegResult(
                leg=leg,
                status="failed",
                records=[
                    ExecutionRecord(step="build", status="failed", exit_code=2, output="boom"),
                    ExecutionRecord(step="publish", status="skipped", reason="previous_failure"),
                ],
            )],
        )

    def test_run_id_format(self):
        store = RunStore(self.state_dir)
        assert re.match(r'^\d{8}T\d{6}Z-[a-z0-9]{6}$', store.run_id)
        assert store.run_root == self.state_dir / "runs" / store.run_id

    def test_initialize_creates_logs_dir(self):
        store = RunStore(self.state_dir, run_id="run-1")
        store.initialize()
        assert (self.state_dir / "runs" / "run-1" / "logs").is_dir()

    def test_leg_paths(self):
        store = RunStore(self.state_dir, run_id="run-1")
        leg = Leg(2, {'ARCH': 'arm64', 'TARGET': 'aarch64-unknown-linux-musl'})
        assert store.leg_logs_dir(leg) == store.logs_dir / "leg-2-arm64-aarch64-unknown-linux-musl"
        assert store.leg_workspace(leg).parent == store.run_root / "workspaces"

    def test_write_and_load_report(self):
        store = RunStore(self.state_dir, run_id="run-1")
        pipeline = Path(self.temp_dir) / "pipeline.yml"
        pipeline.write_text("steps: []\n")

        path = store.write_report(self.make_result("run-1"), pipeline)
        assert path == store.report_file
        assert not store.report_file.with_suffix('.tmp').exists()

        report = store.load_report()
        assert report["schema_version"] == "1"
        assert report["run_id"] == "run-1"
        assert report["exit_code"] == 1
        assert report["pipeline_checksum"] == RunStore.calculate_checksum(pipeline)
        assert report["pipeline_checksum"].startswith("sha256:")

        leg = report["legs"][0]
        assert leg["leg"] == "ARCH=amd64"
        assert leg["variables"] == {'ARCH': 'amd64'}
        assert leg["steps"][0] == {
            "step": "build", "status": "failed", "exit_code": 2, "output": "boom",
            "truncated": False, "recovered": False,
        }
        assert leg["steps"][1]["reason"] == "previous_failure"

    def test_report_overwritten(self):
        store = RunStore(self.state_dir, run_id="run-1")
        store.write_report(self.make_result("run-1"))
        result = self.make_result("run-1")
        result.status = "succeeded"
        store.write_report(result)
        assert store.load_report()["status"] == "succeeded"

    def test_load_missing_report(self):
        with pytest.raises(FileNotFoundError):
            RunStore(self.state_dir, run_id="missing").load_report()


class TestRecords:

    def test_execution_record_omits_none(self):
        record = ExecutionRecord(step="build")
        assert record.to_dict() == {"step": "build", "status": "pending", "truncated": False, "recovered": False}

    def test_leg_result_helpers(self):
        leg = LegResult(
            leg=Leg(0, {}),
            status="publish_failed",
            records=[ExecutionRecord(step="build", status="succeeded", started_at="t0")],
            publish=PublishRecord(status="failed", destinations=["b/k"], error={"type": "publish_error"}),
        )
        assert leg.succeeded is False
        assert leg.executed_steps() == ["build"]
        assert leg.record("missing") is None

        data = leg.to_dict()
        assert data["leg"] == "default"
        assert data["publish"] == {"status": "failed", "destinations": ["b/k"], "error": {"type": "publish_error"}}
        assert "fatal" not in data

    def test_run_result_serializable(self):
        result = RunResult(run_id="r", status="succeeded", legs=[LegResult(leg=Leg(0, {'A': '1'}), status="succeeded")])
        assert json.loads(json.dumps(result.to_dict()))["legs"][0]["id"] == "leg-0-1"
        assert result.leg("A=1") is result.legs[0]
