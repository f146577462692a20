"""Run configuration."""

from dataclasses import dataclass
from pathlib import Path
from typing import Literal, Optional


LegWorkspaces = Literal["shared", "isolated"]


@dataclass
class RunConfig:
    """
    Engine settings for one run.

    Attributes:
        workspace: Source checkout the steps operate on
        state_dir: Where run directories are created (default: <workspace>/.matrixci)
        concurrency: Maximum number of legs executing at once
        fail_fast: Cancel sibling legs as soon as one leg fails
        leg_workspaces: "shared" runs every leg in the workspace itself,
            "isolated" gives each leg its own copy under the run directory
        output_limit_bytes: Size of the output tail kept in execution records
    """
    workspace: Path
    state_dir: Optional[Path] = None
    concurrency: int = 1
    fail_fast: bool = False
    leg_workspaces: Optional[LegWorkspaces] = None
    output_limit_bytes: int = 8 * 1024

    def __post_init__(self):
        self.workspace = Path(self.workspace).resolve()
        if self.state_dir is None:
            self.state_dir = self.workspace / ".matrixci"
        else:
            self.state_dir = Path(self.state_dir).resolve()
        if self.concurrency < 1:
            raise ValueError(f"concurrency must be at least 1, got {self.concurrency}")
        if self.leg_workspaces is None:
            # Concurrent legs must not write into the same checkout
            self.leg_workspaces = "isolated" if self.concurrency > 1 else "shared"
        elif self.leg_workspaces not in ("shared", "isolated"):
            raise ValueError(f"leg_workspaces must be 'shared' or 'isolated', got {self.leg_workspaces!r}")
