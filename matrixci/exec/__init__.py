"""
Execution module.
Handles sandbox invocation and output capture.
"""

from .output_capture import OutputCapture, CaptureResult
from .sandbox import (
    DockerSandbox, LocalSandbox, Sandbox, SandboxRequest, SandboxResult, build_script,
)

__all__ = [
    "OutputCapture",
    "CaptureResult",
    "Sandbox",
    "SandboxRequest",
    "SandboxResult",
    "LocalSandbox",
    "DockerSandbox",
    "build_script",
]
