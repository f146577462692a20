"""
Secret providers and masking.

- Secrets are resolved by name, per step, immediately before sandbox launch
- Empty strings count as present
- Unknown names raise SecretNotFound
- Resolved values are masked in captured output and logs while the step
  that resolved them is in flight, then forgotten
"""

import os
import re
import threading
from collections import Counter
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterable, Iterator, Mapping, Optional

import yaml

from ..exceptions import SecretNotFound
from ..pipeline.types import SecretReference


class SecretProvider:
    """Resolves secret names to values. Subclasses implement ``resolve``."""

    def resolve(self, name: str) -> str:
        raise NotImplementedError

    def resolve_all(self, references: Mapping[str, SecretReference]) -> Dict[str, str]:
        """
        Resolve every secret environment entry of a step.

        Args:
            references: Environment variable name -> secret reference

        Returns:
            Environment variable name -> secret value (a fresh dict per call)

        Raises:
            SecretNotFound: For the first reference that cannot be resolved
        """
        return {key: self.resolve(ref.name) for key, ref in references.items()}


class EnvironmentSecretProvider(SecretProvider):
    """
    Reads secrets from the engine's own environment.

    Args:
        prefix: Optional prefix prepended to the secret name before lookup
        environ: Environment mapping (default: os.environ)
    """

    def __init__(self, prefix: str = "", environ: Optional[Mapping[str, str]] = None):
        self.prefix = prefix
        self.environ = os.environ if environ is None else environ

    def resolve(self, name: str) -> str:
        key = f"{self.prefix}{name}"
        if key not in self.environ:
            raise SecretNotFound(name)
        # Present (including empty string)
        return self.environ[key]


class FileSecretProvider(SecretProvider):
    """
    Reads secrets from a YAML mapping file.

    The file is read on every lookup so values are never held between steps.
    """

    def __init__(self, path: Path):
        self.path = Path(path)

    def resolve(self, name: str) -> str:
        with open(self.path, 'r') as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict) or name not in data:
            raise SecretNotFound(name)
        value = data[name]
        return "" if value is None else str(value)


class SecretMasker:
    """
    Masks the values of secrets currently exposed to running steps.

    Values are registered for the duration of a ``track`` block only. The
    masker is shared between legs, so registration is reference counted and
    guarded by a lock.
    """

    MASK = '***'

    def __init__(self):
        self._lock = threading.Lock()
        self._live: Counter = Counter()

    @contextmanager
    def track(self, values: Iterable[str]) -> Iterator[None]:
        """Register values for masking until the block exits."""
        # Don't mask empty strings
        values = [v for v in values if v]
        with self._lock:
            self._live.update(values)
        try:
            yield
        finally:
            with self._lock:
                self._live.subtract(values)
                self._live += Counter()  # drop non-positive counts

    def mask_text(self, text: str, extra: Iterable[str] = ()) -> str:
        """
        Replace known secret values with '***'.

        Args:
            text: Text potentially containing secrets
            extra: Additional values to mask for this call only

        Returns:
            Text with secrets masked
        """
        with self._lock:
            values = set(self._live)
        values.update(v for v in extra if v)
        if not text or not values:
            return text

        masked = text
        # Longer values first so a secret containing another is fully masked
        for secret_value in sorted(values, key=len, reverse=True):
            if secret_value in masked:
                masked = re.sub(re.escape(secret_value), self.MASK, masked)
        return masked

    @property
    def active(self) -> bool:
        with self._lock:
            return bool(self._live)


class SecretsMaskingFilter:
    """
    Logging filter for masking secrets in log records.

    Attach to logging handlers to mask secrets in real time.
    """

    def __init__(self, masker: SecretMasker):
        self.masker = masker

    def filter(self, record):
        if not self.masker.active:
            return True

        # Format first so secrets in args are caught after interpolation
        record.msg = self.masker.mask_text(record.getMessage())
        record.args = None
        return True
