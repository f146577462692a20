"""Fixtures and utilities for E2E tests."""

import os
import shutil
import subprocess
from pathlib import Path

import pytest


def has_cli(command: str) -> bool:
    """Check if a CLI command is available."""
    return shutil.which(command) is not None


def skip_if_no_cli(command: str) -> None:
    """Skip test if CLI command is not available."""
    if not has_cli(command):
        pytest.skip(f"{command} CLI not available")


def skip_if_no_e2e() -> None:
    """Skip test if E2E tests are not enabled."""
    if not os.getenv("MATRIXCI_E2E"):
        pytest.skip("E2E tests disabled (set MATRIXCI_E2E to enable)")


def skip_if_no_docker_daemon() -> None:
    """Skip test if the docker daemon does not answer."""
    skip_if_no_cli("docker")
    result = subprocess.run(["docker", "info"], stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)
    if result.returncode != 0:
        pytest.skip("docker daemon not reachable")


@pytest.fixture
def e2e_workspace(tmp_path):
    """Create a temporary source checkout for E2E tests."""
    workspace = tmp_path / "e2e_workspace"
    workspace.mkdir()
    (workspace / "src").mkdir()
    (workspace / "src" / "main.sh").write_text("#!/bin/sh\necho built for \"$1\"\n")
    yield workspace


def create_test_pipeline(workspace: Path, name: str, content: str) -> Path:
    """Create a test pipeline file."""
    pipeline_path = workspace / f"{name}.yml"
    pipeline_path.write_text(content)
    return pipeline_path
