"""Artifact publishing to object storage and container registries."""

from .publisher import ArtifactPublisher, PublishTarget, default_object_key, resolve_target
from .sinks import (
    AwsCliObjectStore, ContainerRegistry, DirectoryObjectStore, DockerRegistry, ObjectStore,
)

__all__ = [
    'ArtifactPublisher', 'PublishTarget', 'default_object_key', 'resolve_target',
    'AwsCliObjectStore', 'ContainerRegistry', 'DirectoryObjectStore', 'DockerRegistry',
    'ObjectStore',
]
