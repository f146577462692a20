"""
Pipeline type definitions.

Immutable data model produced by the loader and consumed by the planner,
scheduler and publisher.
"""

import os
import re
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Dict, FrozenSet, Mapping, Optional, Tuple, Union


class EventKind(str, Enum):
    """Kinds of events that can trigger a pipeline run."""
    PUSH = "push"
    PULL_REQUEST = "pull_request"
    TAG = "tag"
    DEPLOYMENT = "deployment"
    CRON = "cron"
    MANUAL = "manual"


@dataclass(frozen=True)
class SecretReference:
    """Opaque secret name, resolved only by a secret provider at launch time."""
    name: str

    def __repr__(self) -> str:
        return f"SecretReference({self.name!r})"


EnvValue = Union[str, SecretReference]


@dataclass(frozen=True)
class TriggerContext:
    """
    The event that started a run.

    Attributes:
        event: Kind of triggering event
        commit: Commit identifier
        branch: Branch name, if any
        tag: Tag name, only meaningful for tag events
        cron: Name of the cron job for cron events
    """
    event: EventKind
    commit: str
    branch: Optional[str] = None
    tag: Optional[str] = None
    cron: Optional[str] = None

    @property
    def version(self) -> str:
        """Tag for tag-triggered runs, commit id otherwise."""
        if self.event == EventKind.TAG and self.tag:
            return self.tag
        return self.commit

    def variables(self) -> Dict[str, str]:
        """Trigger-derived variables exposed to substitution and to steps."""
        variables = {
            'CI_COMMIT_SHA': self.commit,
            'CI_PIPELINE_EVENT': self.event.value,
            'CI_BUILD_VERSION': self.version,
        }
        if self.branch:
            variables['CI_COMMIT_BRANCH'] = self.branch
        if self.event == EventKind.TAG and self.tag:
            variables['CI_COMMIT_TAG'] = self.tag
        if self.cron:
            variables['CI_PIPELINE_CRON'] = self.cron
        return variables

    @classmethod
    def from_environ(cls, environ: Optional[Mapping[str, str]] = None) -> "TriggerContext":
        """Build a context from CI_* environment variables."""
        environ = os.environ if environ is None else environ
        event = EventKind(environ.get('CI_PIPELINE_EVENT') or EventKind.MANUAL.value)
        return cls(
            event=event,
            commit=environ.get('CI_COMMIT_SHA') or 'unknown',
            branch=environ.get('CI_COMMIT_BRANCH') or None,
            tag=environ.get('CI_COMMIT_TAG') or None,
            cron=environ.get('CI_PIPELINE_CRON') or None,
        )


@dataclass(frozen=True)
class Leg:
    """One concrete assignment of matrix axis values."""
    index: int
    variables: Mapping[str, str] = field(default_factory=dict, hash=False)

    def __post_init__(self):
        # Read-only view so a leg's bindings cannot be altered after expansion
        object.__setattr__(self, 'variables', MappingProxyType(dict(self.variables)))

    @property
    def label(self) -> str:
        """Human-readable label, e.g. ``ARCH=amd64,TARGET=x86_64``."""
        if not self.variables:
            return "default"
        return ",".join(f"{k}={v}" for k, v in self.variables.items())

    @property
    def id(self) -> str:
        """Filesystem-safe identifier, unique within a run."""
        if not self.variables:
            return f"leg-{self.index}"
        slug = re.sub(r'[^A-Za-z0-9_.-]+', '_', "-".join(self.variables.values()))
        return f"leg-{self.index}-{slug}"


@dataclass(frozen=True)
class MatrixSpec:
    """
    Matrix declaration.

    Exactly one of ``include`` (explicit legs) or ``axes`` (cross product)
    is populated; both empty means a single implicit leg.
    """
    include: Tuple[Mapping[str, str], ...] = ()
    axes: Tuple[Tuple[str, Tuple[str, ...]], ...] = ()

    @property
    def axis_names(self) -> FrozenSet[str]:
        if self.include:
            return frozenset(self.include[0].keys())
        return frozenset(name for name, _ in self.axes)


@dataclass(frozen=True)
class WhenClause:
    """
    Conjunction of sub-predicates gating a step.

    Absent sub-predicates are unconstrained.
    """
    event: Optional[FrozenSet[EventKind]] = None
    matrix: Optional[Mapping[str, str]] = None
    branch: Optional[Tuple[str, ...]] = None
    tag: Optional[Tuple[str, ...]] = None
    cron: Optional[FrozenSet[str]] = None


@dataclass(frozen=True)
class OnFailure:
    """Diagnostic commands attempted when a step fails."""
    commands: Tuple[str, ...]
    recover: bool = False


@dataclass(frozen=True)
class StepSpec:
    """A named unit of work executed inside a sandboxed image."""
    name: str
    image: str
    commands: Tuple[str, ...]
    environment: Mapping[str, EnvValue] = field(default_factory=dict)
    when: Tuple[WhenClause, ...] = ()
    on_failure: Optional[OnFailure] = None


@dataclass(frozen=True)
class ObjectStorageTarget:
    bucket: str
    source: str
    key: Optional[str] = None
    content_type: str = "application/octet-stream"


@dataclass(frozen=True)
class RegistryTarget:
    repository: str
    image: str
    tag: Optional[str] = None


@dataclass(frozen=True)
class PublishSpec:
    """Artifact destinations pushed once per successful leg."""
    object_storage: Optional[ObjectStorageTarget] = None
    registry: Optional[RegistryTarget] = None
    environment: Mapping[str, EnvValue] = field(default_factory=dict)
    when: Tuple[WhenClause, ...] = ()


@dataclass(frozen=True)
class PipelineSpec:
    """Parsed pipeline definition. Never mutated after loading."""
    steps: Tuple[StepSpec, ...]
    matrix: Optional[MatrixSpec] = None
    trigger: Tuple[WhenClause, ...] = ()
    publish: Optional[PublishSpec] = None
    name: str = "pipeline"


@dataclass(frozen=True)
class MaterializedStep:
    """A step with every ${VAR} reference resolved for one leg."""
    name: str
    image: str
    commands: Tuple[str, ...]
    environment: Mapping[str, str]
    secrets: Mapping[str, SecretReference]
    on_failure: Optional[OnFailure] = None
