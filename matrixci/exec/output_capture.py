"""
Output capture for sandboxed steps.

The full (masked) output of every step is written to the leg's log
directory; the execution record keeps only the last TEXT_LIMIT_BYTES.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Optional


@dataclass
class CaptureResult:
    """Result of output capture processing."""
    output: str
    log_path: Optional[Path] = None
    truncated: bool = False


class OutputCapture:
    """
    Handles output capture with truncation and log spill.
    """

    TEXT_LIMIT_BYTES = 8 * 1024  # 8 KiB kept in the record

    def __init__(self, logs_dir: Path, limit_bytes: Optional[int] = None):
        """
        Initialize output capture.

        Args:
            logs_dir: Directory receiving full step logs
            limit_bytes: Size of the tail kept in memory
        """
        self.logs_dir = Path(logs_dir)
        self.limit_bytes = limit_bytes or self.TEXT_LIMIT_BYTES

    def capture(self, output: str, step_name: str, suffix: str = "log") -> CaptureResult:
        """
        Persist full output and keep its tail.

        Args:
            output: Decoded, already masked output text
            step_name: Step name used for the log file name
            suffix: Log file suffix ("log" or "diagnostic.log")

        Returns:
            CaptureResult with the tail and the log path
        """
        self.logs_dir.mkdir(parents=True, exist_ok=True)
        log_path = self.logs_dir / f"{self._safe_name(step_name)}.{suffix}"
        log_path.write_text(output, encoding='utf-8')

        truncated = False
        tail = output
        if len(output.encode('utf-8')) > self.limit_bytes:
            truncated = True
            tail = output[-self.limit_bytes:]
            # Ensure we don't split multi-byte characters
            while len(tail.encode('utf-8')) > self.limit_bytes:
                tail = tail[1:]

        return CaptureResult(output=tail, log_path=log_path, truncated=truncated)

    @staticmethod
    def decode(raw: bytes) -> str:
        return raw.decode('utf-8', errors='replace')

    @staticmethod
    def _safe_name(step_name: str) -> str:
        return "".join(c if c.isalnum() or c in "-_." else "_" for c in step_name)
