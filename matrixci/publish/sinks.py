"""
Artifact sinks.

Both sink kinds have idempotent overwrite semantics: pushing the same
destination twice replaces the first push.
"""

import logging
import os
import shutil
import subprocess
from pathlib import Path, PurePosixPath
from typing import BinaryIO, Dict, List, Mapping, Optional, Sequence

from ..exceptions import PublishError

logger = logging.getLogger(__name__)


class ObjectStore:
    """Object-storage sink."""

    def put(self, destination: str, stream: BinaryIO, content_type: str,
            env: Optional[Mapping[str, str]] = None) -> None:
        """
        Store a byte stream.

        Args:
            destination: "<bucket>/<key>"
            stream: Binary stream to upload
            content_type: MIME type recorded with the object
            env: Credentials and settings for this push

        Raises:
            PublishError: If the store is unreachable or rejects the object
        """
        raise NotImplementedError


class ContainerRegistry:
    """Container-registry sink."""

    def push(self, repository_tag: str, image_reference: str,
             env: Optional[Mapping[str, str]] = None) -> None:
        """
        Push a local image as ``repository:tag``.

        Raises:
            PublishError: If the registry is unreachable or rejects the push
        """
        raise NotImplementedError


class DirectoryObjectStore(ObjectStore):
    """Object store backed by a local directory; buckets are subdirectories."""

    def __init__(self, root: Path):
        self.root = Path(root).resolve()

    def path_for(self, destination: str) -> Path:
        parts = PurePosixPath(destination).parts
        if not parts or PurePosixPath(destination).is_absolute() or '..' in parts:
            raise PublishError(f"Unsafe object destination: {destination}", destination)
        return self.root.joinpath(*parts)

    def put(self, destination: str, stream: BinaryIO, content_type: str,
            env: Optional[Mapping[str, str]] = None) -> None:
        path = self.path_for(destination)
        temp = path.with_name(path.name + '.tmp')
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(temp, 'wb') as f:
                shutil.copyfileobj(stream, f)
            temp.replace(path)
        except Exception as e:
            # Clean up temp file if the copy or rename failed
            if temp.exists():
                temp.unlink()
            if isinstance(e, OSError):
                raise PublishError(f"Failed to write {destination}: {e}", destination) from e
            raise
        logger.info(f"Stored {destination} ({content_type}) in {self.root}")


def _run_cli(argv: Sequence[str], destination: str, env: Optional[Mapping[str, str]],
             stdin: Optional[bytes] = None) -> None:
    child_env: Dict[str, str] = os.environ.copy()
    if env:
        child_env.update(env)
    try:
        result = subprocess.run(
            list(argv),
            input=stdin,
            env=child_env,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
        )
    except OSError as e:
        raise PublishError(f"Failed to run {argv[0]}: {e}", destination) from e

    if result.returncode != 0:
        output = (result.stdout or b"").decode('utf-8', errors='replace').strip()
        raise PublishError(
            f"{argv[0]} exited with {result.returncode} pushing {destination}: {output}",
            destination,
        )


class AwsCliObjectStore(ObjectStore):
    """S3-compatible store driven through ``aws s3 cp``."""

    def __init__(self, aws: str = 'aws', endpoint_url: Optional[str] = None):
        self.aws = aws
        self.endpoint_url = endpoint_url

    def build_argv(self, destination: str, content_type: str) -> List[str]:
        argv = [self.aws, 's3', 'cp', '-', f"s3://{destination}", '--content-type', content_type]
        if self.endpoint_url:
            argv += ['--endpoint-url', self.endpoint_url]
        return argv

    def put(self, destination: str, stream: BinaryIO, content_type: str,
            env: Optional[Mapping[str, str]] = None) -> None:
        _run_cli(self.build_argv(destination, content_type), destination, env, stdin=stream.read())
        logger.info(f"Uploaded s3://{destination}")


class DockerRegistry(ContainerRegistry):
    """Registry pushes through the docker CLI (``docker tag`` then ``docker push``)."""

    def __init__(self, docker: str = 'docker'):
        self.docker = docker

    def push(self, repository_tag: str, image_reference: str,
             env: Optional[Mapping[str, str]] = None) -> None:
        if image_reference != repository_tag:
            _run_cli([self.docker, 'tag', image_reference, repository_tag], repository_tag, env)
        _run_cli([self.docker, 'push', repository_tag], repository_tag, env)
        logger.info(f"Pushed {repository_tag}")
