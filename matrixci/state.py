"""Run records and report persistence.

Execution records live in memory while a run is in progress; the final
report is written atomically to ``<state_dir>/runs/<run_id>/report.json``.
"""

import hashlib
import json
import random
import string
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

from .pipeline.types import Leg


StepStatus = Literal["pending", "running", "succeeded", "failed", "skipped", "cancelled"]
LegStatus = Literal["pending", "running", "succeeded", "failed", "publish_failed", "cancelled"]
RunStatus = Literal["running", "succeeded", "failed", "skipped"]


@dataclass
class ExecutionRecord:
    """Result of one step on one leg. Mutated only by the leg's own runner."""
    step: str
    status: StepStatus = "pending"
    exit_code: Optional[int] = None
    reason: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    duration_ms: Optional[int] = None
    output: Optional[str] = None
    truncated: bool = False
    log_path: Optional[str] = None
    diagnostic: Optional[str] = None
    recovered: bool = False
    error: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict, omitting None values."""
        return {k: v for k, v in asdict(self).items() if v is not None}


@dataclass
class PublishRecord:
    """Outcome of the publish stage of a leg."""
    status: Literal["succeeded", "failed", "skipped"]
    destinations: List[str] = field(default_factory=list)
    error: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


@dataclass
class LegResult:
    """Final state of a leg."""
    leg: Leg
    status: LegStatus = "pending"
    records: List[ExecutionRecord] = field(default_factory=list)
    publish: Optional[PublishRecord] = None
    fatal: bool = False

    @property
    def succeeded(self) -> bool:
        return self.status == "succeeded"

    def record(self, step_name: str) -> Optional[ExecutionRecord]:
        for record in self.records:
            if record.step == step_name:
                return record
        return None

    def executed_steps(self) -> List[str]:
        """Names of steps that reached the sandbox, in order."""
        return [r.step for r in self.records if r.started_at is not None]

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "leg": self.leg.label,
            "id": self.leg.id,
            "variables": dict(self.leg.variables),
            "status": self.status,
            "steps": [r.to_dict() for r in self.records],
        }
        if self.publish is not None:
            result["publish"] = self.publish.to_dict()
        if self.fatal:
            result["fatal"] = True
        return result


@dataclass
class RunResult:
    """Overall outcome of a pipeline run."""
    run_id: str
    status: RunStatus
    legs: List[LegResult] = field(default_factory=list)
    exit_code: int = 0
    started_at: Optional[str] = None
    completed_at: Optional[str] = None

    def leg(self, label: str) -> Optional[LegResult]:
        for leg_result in self.legs:
            if leg_result.leg.label == label:
                return leg_result
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "status": self.status,
            "exit_code": self.exit_code,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "legs": [leg.to_dict() for leg in self.legs],
        }


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class RunStore:
    """Owns the run directory: per-leg logs and the final report."""

    SCHEMA_VERSION = "1"

    def __init__(self, state_dir: Path, run_id: Optional[str] = None):
        """Initialize run store.

        Args:
            state_dir: Root directory for run data (e.g. <workspace>/.matrixci)
            run_id: Optional run ID to use (generates one if not provided)
        """
        self.state_dir = Path(state_dir)
        self.run_id = run_id or self._generate_run_id()
        self.run_root = self.state_dir / "runs" / self.run_id
        self.logs_dir = self.run_root / "logs"
        self.report_file = self.run_root / "report.json"

    def _generate_run_id(self) -> str:
        """Generate run ID in format: YYYYMMDDTHHMMSSZ-<6char>."""
        timestamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
        suffix = ''.join(random.choices(string.ascii_lowercase + string.digits, k=6))
        return f"{timestamp}-{suffix}"

    @staticmethod
    def calculate_checksum(file_path: Path) -> str:
        """Calculate SHA256 checksum of a file."""
        sha256 = hashlib.sha256()
        with open(file_path, 'rb') as f:
            for chunk in iter(lambda: f.read(4096), b''):
                sha256.update(chunk)
        return f"sha256:{sha256.hexdigest()}"

    def initialize(self) -> Path:
        """Create the run directory structure."""
        self.logs_dir.mkdir(parents=True, exist_ok=True)
        return self.run_root

    def leg_logs_dir(self, leg: Leg) -> Path:
        return self.logs_dir / leg.id

    def leg_workspace(self, leg: Leg) -> Path:
        return self.run_root / "workspaces" / leg.id

    def write_report(self, result: RunResult, pipeline_file: Optional[Path] = None) -> Path:
        """Write the report atomically (temp file + rename)."""
        self.run_root.mkdir(parents=True, exist_ok=True)
        report = {"schema_version": self.SCHEMA_VERSION, **result.to_dict()}
        if pipeline_file is not None:
            report["pipeline_file"] = str(pipeline_file)
            report["pipeline_checksum"] = self.calculate_checksum(pipeline_file)

        temp_file = self.report_file.with_suffix('.tmp')
        with open(temp_file, 'w') as f:
            json.dump(report, f, indent=2)

        # Atomic rename
        temp_file.replace(self.report_file)
        return self.report_file

    def load_report(self) -> Dict[str, Any]:
        if not self.report_file.exists():
            raise FileNotFoundError(f"Report file not found: {self.report_file}")
        with open(self.report_file, 'r') as f:
            return json.load(f)
