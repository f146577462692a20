"""Shared fixtures: scripted sandbox, in-memory secrets and sinks."""

import threading
from typing import Callable, Dict, List, Optional, Tuple

import pytest
import yaml

from matrixci.config import RunConfig
from matrixci.exceptions import PublishError, SandboxError, SecretNotFound
from matrixci.exec.sandbox import Sandbox, SandboxRequest
from matrixci.loader import PipelineLoader
from matrixci.pipeline.types import EventKind, PipelineSpec, TriggerContext
from matrixci.publish.sinks import ContainerRegistry, ObjectStore
from matrixci.security.secrets import SecretProvider
from matrixci.state import RunStore


class FakeSandbox(Sandbox):
    """
    Sandbox that runs nothing.

    Each command exits 0 unless ``exit_codes`` maps it to another code or
    ``decide(request, command)`` returns one. Commands listed in
    ``fail_start`` raise SandboxError. Every request is recorded.
    """

    def __init__(self, exit_codes: Optional[Dict[str, int]] = None,
                 outputs: Optional[Dict[str, str]] = None,
                 fail_start: Tuple[str, ...] = (),
                 decide: Optional[Callable[[SandboxRequest, str], Optional[int]]] = None,
                 on_launch: Optional[Callable[[SandboxRequest], None]] = None,
                 **kwargs):
        super().__init__(**kwargs)
        self.exit_codes = exit_codes or {}
        self.outputs = outputs or {}
        self.fail_start = fail_start
        self.decide = decide
        self.on_launch = on_launch
        self.requests: List[SandboxRequest] = []
        self.secret_envs: List[Dict[str, str]] = []
        self._lock = threading.Lock()

    def _launch(self, request, secret_env):
        with self._lock:
            self.requests.append(request)
            self.secret_envs.append(dict(secret_env))
        if self.on_launch is not None:
            self.on_launch(request)

        output = ""
        for command in request.commands:
            if command in self.fail_start:
                raise SandboxError(f"cannot pull {request.image}", image=request.image)
            output += f"+ {command}\n" + self.outputs.get(command, "")
            code = None
            if self.decide is not None:
                code = self.decide(request, command)
            if code is None:
                code = self.exit_codes.get(command, 0)
            if code != 0:
                return code, output.encode()
        return 0, output.encode()

    def executed(self, axis: str = 'ARCH') -> List[Tuple[Optional[str], str]]:
        """(leg axis value, step name) for every launched request, in launch order."""
        return [(r.environment.get(axis), r.step_name) for r in self.requests]

    def steps_for(self, value: str, axis: str = 'ARCH') -> List[str]:
        return [step for leg, step in self.executed(axis) if leg == value]


class FakeSecretProvider(SecretProvider):
    def __init__(self, secrets: Optional[Dict[str, str]] = None):
        self.secrets = dict(secrets or {})
        self.calls: List[str] = []

    def resolve(self, name):
        self.calls.append(name)
        if name not in self.secrets:
            raise SecretNotFound(name)
        return self.secrets[name]


class FakeObjectStore(ObjectStore):
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.objects: Dict[str, Tuple[bytes, str, Dict[str, str]]] = {}
        self.put_count = 0

    def put(self, destination, stream, content_type, env=None):
        self.put_count += 1
        if self.fail:
            raise PublishError("bucket rejected the upload", destination)
        self.objects[destination] = (stream.read(), content_type, dict(env or {}))


class FakeRegistry(ContainerRegistry):
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.pushes: List[Tuple[str, str, Dict[str, str]]] = []

    def push(self, repository_tag, image_reference, env=None):
        if self.fail:
            raise PublishError("registry unreachable", repository_tag)
        self.pushes.append((repository_tag, image_reference, dict(env or {})))


@pytest.fixture
def fake_sandbox():
    return FakeSandbox()


@pytest.fixture
def sandbox_factory():
    """Build a FakeSandbox with custom behaviour."""
    return FakeSandbox


@pytest.fixture
def secrets():
    return FakeSecretProvider({'docker_auth': 'dckr-s3cr3t', 'aws_key': 'AKIAEXAMPLE'})


@pytest.fixture
def secrets_factory():
    """Build a FakeSecretProvider holding only the given secrets."""
    return FakeSecretProvider


@pytest.fixture
def object_store():
    return FakeObjectStore()


@pytest.fixture
def rejecting_store():
    return FakeObjectStore(fail=True)


@pytest.fixture
def registry():
    return FakeRegistry()


@pytest.fixture
def workspace(tmp_path):
    ws = tmp_path / "workspace"
    ws.mkdir()
    return ws


@pytest.fixture
def run_config(workspace):
    def make(**overrides) -> RunConfig:
        return RunConfig(workspace=workspace, **overrides)
    return make


@pytest.fixture
def run_store(workspace):
    return RunStore(workspace / ".matrixci", run_id="test-run")


@pytest.fixture
def load_pipeline():
    """Validate a pipeline given as a dict, going through YAML like a real file."""
    def load(document: dict) -> PipelineSpec:
        return PipelineLoader().loads(yaml.safe_dump(document, sort_keys=False))
    return load


@pytest.fixture
def push_context():
    return TriggerContext(event=EventKind.PUSH, commit="abc1234", branch="main")


@pytest.fixture
def tag_context():
    return TriggerContext(event=EventKind.TAG, commit="abc1234", tag="v1.2.0")
