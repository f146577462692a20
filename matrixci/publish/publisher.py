"""
Artifact publisher.

Builds deterministic destinations from leg and trigger variables and pushes
a succeeded leg's outputs exactly once. Publishing is never retried here.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import List, Mapping, Optional

from ..exceptions import PublishError, SecretNotFound
from ..pipeline.conditions import ConditionEvaluator
from ..pipeline.types import Leg, PublishSpec, SecretReference, TriggerContext
from ..security.secrets import SecretMasker, SecretProvider
from ..state import PublishRecord
from ..variables.substitution import VariableSubstitutor
from .sinks import ContainerRegistry, ObjectStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PublishTarget:
    """Publish destinations resolved for one leg."""
    included: bool
    object_destination: Optional[str] = None
    source: Optional[str] = None
    content_type: str = "application/octet-stream"
    repository_tag: Optional[str] = None
    image: Optional[str] = None
    environment: Mapping[str, str] = field(default_factory=dict)
    secrets: Mapping[str, SecretReference] = field(default_factory=dict)

    @property
    def destinations(self) -> List[str]:
        destinations = []
        if self.object_destination:
            destinations.append(self.object_destination)
        if self.repository_tag:
            destinations.append(self.repository_tag)
        return destinations


def default_object_key(leg: Leg, context: TriggerContext, source: str) -> str:
    """``{leg values}/{tag-or-commit}/{file name}``."""
    parts = list(leg.variables.values()) + [context.version, PurePosixPath(source).name]
    return "/".join(parts)


def resolve_target(
    spec: Optional[PublishSpec],
    leg: Leg,
    context: TriggerContext,
    substitutor: Optional[VariableSubstitutor] = None,
    evaluator: Optional[ConditionEvaluator] = None
) -> PublishTarget:
    """
    Resolve publish templates for a leg.

    The same (leg, trigger) always yields the same target.

    Raises:
        SubstitutionError: If a template references an undefined variable
    """
    if spec is None:
        return PublishTarget(included=False)

    substitutor = substitutor or VariableSubstitutor()
    evaluator = evaluator or ConditionEvaluator()
    if not evaluator.matches(spec.when, context, leg):
        return PublishTarget(included=False)

    variables = substitutor.build_variables(leg, context)
    secrets = {k: v for k, v in spec.environment.items() if isinstance(v, SecretReference)}
    environment = {
        k: substitutor.substitute(v, variables, passthrough=secrets)
        for k, v in spec.environment.items() if not isinstance(v, SecretReference)
    }

    object_destination = source = None
    content_type = "application/octet-stream"
    storage = spec.object_storage
    if storage is not None:
        source = substitutor.substitute(storage.source, variables)
        if storage.key:
            key = substitutor.substitute(storage.key, variables)
        else:
            key = default_object_key(leg, context, source)
        bucket = substitutor.substitute(storage.bucket, variables)
        object_destination = f"{bucket}/{key.lstrip('/')}"
        content_type = storage.content_type

    repository_tag = image = None
    registry = spec.registry
    if registry is not None:
        repository = substitutor.substitute(registry.repository, variables)
        tag = substitutor.substitute(registry.tag, variables) if registry.tag else context.version
        repository_tag = f"{repository}:{tag}"
        image = substitutor.substitute(registry.image, variables)

    return PublishTarget(
        included=True,
        object_destination=object_destination,
        source=source,
        content_type=content_type,
        repository_tag=repository_tag,
        image=image,
        environment=environment,
        secrets=secrets,
    )


class ArtifactPublisher:
    """
    Pushes a leg's artifacts to the configured sinks.

    Args:
        secret_provider: Resolves credentials declared in publish.environment
        object_store: Sink for object_storage targets
        registry: Sink for registry targets
        masker: Shared secret masker
    """

    def __init__(
        self,
        secret_provider: SecretProvider,
        object_store: Optional[ObjectStore] = None,
        registry: Optional[ContainerRegistry] = None,
        masker: Optional[SecretMasker] = None
    ):
        self.secret_provider = secret_provider
        self.object_store = object_store
        self.registry = registry
        self.masker = masker or SecretMasker()

    def publish(self, target: PublishTarget, workdir: Path) -> PublishRecord:
        """
        Push every destination of a target once.

        Args:
            target: Resolved publish target
            workdir: Leg working directory holding the built artifacts

        Returns:
            PublishRecord describing the pushed destinations

        Raises:
            PublishError: On the first sink failure
        """
        if not target.included:
            return PublishRecord(status="skipped")

        try:
            secret_env = self.secret_provider.resolve_all(target.secrets)
        except SecretNotFound as e:
            raise PublishError(f"Publish credentials unavailable: {e}") from e

        env = dict(target.environment)
        env.update(secret_env)

        with self.masker.track(secret_env.values()):
            destination = None
            try:
                if target.object_destination:
                    destination = target.object_destination
                    self._put_object(target, Path(workdir), env)
                if target.repository_tag:
                    destination = target.repository_tag
                    self._push_image(target, env)
            except PublishError as e:
                raise PublishError(
                    self.masker.mask_text(str(e), extra=secret_env.values()), e.destination
                ) from e
            except Exception as e:
                # Any other sink exception is a publish failure too
                message = f"Failed to publish {destination}: {type(e).__name__}: {e}"
                raise PublishError(
                    self.masker.mask_text(message, extra=secret_env.values()), destination
                ) from e

        return PublishRecord(status="succeeded", destinations=target.destinations)

    def _put_object(self, target: PublishTarget, workdir: Path, env: Mapping[str, str]):
        if self.object_store is None:
            raise PublishError("No object store configured", target.object_destination)

        source = workdir / target.source
        if not source.is_file():
            raise PublishError(f"Artifact not found: {target.source}", target.object_destination)

        logger.info(f"Publishing {target.source} to {target.object_destination}")
        with open(source, 'rb') as stream:
            self.object_store.put(target.object_destination, stream, target.content_type, env)

    def _push_image(self, target: PublishTarget, env: Mapping[str, str]):
        if self.registry is None:
            raise PublishError("No container registry configured", target.repository_tag)

        logger.info(f"Publishing image {target.image} as {target.repository_tag}")
        self.registry.push(target.repository_tag, target.image, env)
