"""
Sandbox adapters for running a step's command list inside an image.

The engine only builds the request and observes exit status plus captured
output. Secrets are resolved here, immediately before launch, and never
leave the call.
"""

import logging
import os
import shlex
import shutil
import subprocess
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Mapping, Optional, Sequence, Tuple

from ..exceptions import SandboxError
from .output_capture import OutputCapture
from ..pipeline.types import SecretReference
from ..security.secrets import SecretMasker, SecretProvider

logger = logging.getLogger(__name__)


@dataclass
class SandboxRequest:
    """Invocation request for one command list."""
    image: str
    commands: Sequence[str]
    workdir: Path
    environment: Mapping[str, str] = field(default_factory=dict)
    secrets: Mapping[str, SecretReference] = field(default_factory=dict)
    step_name: str = ""


@dataclass
class SandboxResult:
    """Exit status and masked, decoded output (stdout and stderr interleaved)."""
    exit_code: int
    output: str
    duration_ms: int


def build_script(commands: Sequence[str]) -> str:
    """Shell script echoing then running each command, stopping at the first failure."""
    lines = ['set -e']
    for command in commands:
        lines.append(f"echo {shlex.quote('+ ' + command)}")
        lines.append(command)
    return "\n".join(lines) + "\n"


class Sandbox:
    """
    Base sandbox adapter.

    Subclasses implement ``_launch``, which receives the resolved secret
    environment and returns (exit code, raw output).
    """

    # Exit code used when a command exceeds its timeout
    TIMEOUT_EXIT_CODE = 124

    def __init__(self, masker: Optional[SecretMasker] = None, timeout_sec: Optional[int] = None):
        self.masker = masker or SecretMasker()
        self.timeout_sec = timeout_sec

    def execute(self, request: SandboxRequest, secret_provider: SecretProvider) -> SandboxResult:
        """
        Run a request.

        Raises:
            SecretNotFound: If a declared secret cannot be resolved
            SandboxError: If the sandbox cannot be started
        """
        secret_env = secret_provider.resolve_all(request.secrets)

        with self.masker.track(secret_env.values()):
            start_time = time.time()
            exit_code, raw = self._launch(request, secret_env)
            duration_ms = int((time.time() - start_time) * 1000)
            output = self.masker.mask_text(
                OutputCapture.decode(raw), extra=secret_env.values()
            )

        return SandboxResult(exit_code=exit_code, output=output, duration_ms=duration_ms)

    def _launch(self, request: SandboxRequest, secret_env: Dict[str, str]) -> Tuple[int, bytes]:
        raise NotImplementedError

    def _run(self, argv: Sequence[str], cwd: Path, env: Dict[str, str],
             image: str) -> Tuple[int, bytes]:
        try:
            result = subprocess.run(
                list(argv),
                cwd=str(cwd),
                env=env,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                timeout=self.timeout_sec,
            )
        except subprocess.TimeoutExpired as e:
            output = (e.stdout or b"") + f"\nCommand timed out after {self.timeout_sec} seconds\n".encode()
            return self.TIMEOUT_EXIT_CODE, output
        except OSError as e:
            raise SandboxError(f"Failed to start sandbox: {e}", image=image) from e

        return result.returncode, result.stdout or b""

    @staticmethod
    def _child_env(request: SandboxRequest, secret_env: Dict[str, str]) -> Dict[str, str]:
        # Inherited base, then step environment, then secrets
        env = os.environ.copy()
        env.update(request.environment)
        env.update(secret_env)
        return env


class LocalSandbox(Sandbox):
    """Runs commands with the host shell. The image reference is only logged."""

    def __init__(self, shell: str = '/bin/sh', **kwargs):
        super().__init__(**kwargs)
        self.shell = shell

    def _launch(self, request: SandboxRequest, secret_env: Dict[str, str]) -> Tuple[int, bytes]:
        logger.debug(f"Running step '{request.step_name}' on host (image {request.image} ignored)")
        script = build_script(request.commands)
        return self._run(
            [self.shell, '-c', script],
            cwd=request.workdir,
            env=self._child_env(request, secret_env),
            image=request.image,
        )


class DockerSandbox(Sandbox):
    """
    Runs commands in a throwaway container with ``docker run --rm``.

    The working directory is bind-mounted. Environment values, secrets
    included, reach the container by name through the docker client's own
    environment, so they never appear in the argv.
    """

    # docker run exits 125 when the daemon fails to create or start the container
    DOCKER_ERROR_EXIT_CODE = 125

    def __init__(self, docker: str = 'docker', container_workdir: str = '/workspace',
                 extra_args: Sequence[str] = (), **kwargs):
        super().__init__(**kwargs)
        self.docker = docker
        self.container_workdir = container_workdir
        self.extra_args = list(extra_args)

    def build_argv(self, request: SandboxRequest, env_names: Sequence[str]) -> list:
        argv = [
            self.docker, 'run', '--rm',
            '-v', f"{Path(request.workdir).resolve()}:{self.container_workdir}",
            '-w', self.container_workdir,
        ]
        for name in sorted(env_names):
            argv += ['-e', name]
        argv += self.extra_args
        argv += ['--entrypoint', '/bin/sh', request.image, '-c', build_script(request.commands)]
        return argv

    def _launch(self, request: SandboxRequest, secret_env: Dict[str, str]) -> Tuple[int, bytes]:
        if shutil.which(self.docker) is None:
            raise SandboxError(f"Container runtime '{self.docker}' not found", image=request.image)

        names = set(request.environment) | set(secret_env)
        argv = self.build_argv(request, list(names))
        exit_code, output = self._run(
            argv,
            cwd=request.workdir,
            env=self._child_env(request, secret_env),
            image=request.image,
        )
        if exit_code == self.DOCKER_ERROR_EXIT_CODE:
            message = output.decode('utf-8', errors='replace').strip()
            raise SandboxError(
                f"Failed to start container from {request.image}: {self.masker.mask_text(message, extra=secret_env.values())}",
                image=request.image,
            )
        return exit_code, output
