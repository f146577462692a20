"""Pipeline engine exceptions."""

from typing import Any, Dict, Iterable, List, Optional
from dataclasses import dataclass


@dataclass
class ValidationError:
    """Single validation error."""
    message: str
    path: str = ""
    exit_code: int = 2


class SpecError(Exception):
    """Raised when a pipeline definition is malformed.

    Raised by the loader and the matrix expander before anything executes,
    so the CLI can map it to the validation exit code.
    """

    def __init__(self, errors: List[ValidationError]):
        self.errors = errors
        self.exit_code = 2

        messages = []
        for error in errors:
            messages.append(f"Validation error: {error.message}")

        super().__init__("\n".join(messages))

    @classmethod
    def single(cls, message: str, path: str = "") -> "SpecError":
        return cls([ValidationError(message, path)])


class SubstitutionError(Exception):
    """Raised when a ${VAR} or secret reference cannot be resolved."""

    exit_code = 2

    def __init__(self, message: str, undefined: Optional[Iterable[str]] = None,
                 step: Optional[str] = None):
        self.undefined = sorted(undefined or [])
        self.step = step
        super().__init__(message)

    def to_error(self) -> Dict[str, Any]:
        return {
            "type": "substitution_error",
            "message": str(self),
            "context": {"undefined_vars": self.undefined},
        }


class SecretNotFound(SubstitutionError):
    """Raised by a secret provider for an undeclared secret name."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Secret not found: {name}", undefined=[name])

    def to_error(self) -> Dict[str, Any]:
        return {
            "type": "secret_not_found",
            "message": str(self),
            "context": {"secret": self.name},
        }


class SandboxError(Exception):
    """Raised when a sandbox cannot be started (image pull, missing runtime)."""

    def __init__(self, message: str, image: Optional[str] = None):
        self.image = image
        super().__init__(message)

    def to_error(self) -> Dict[str, Any]:
        return {
            "type": "sandbox_error",
            "message": str(self),
            "context": {"image": self.image},
        }


class PublishError(Exception):
    """Raised when an artifact sink is unreachable or rejects a push."""

    def __init__(self, message: str, destination: Optional[str] = None):
        self.destination = destination
        super().__init__(message)

    def to_error(self) -> Dict[str, Any]:
        return {
            "type": "publish_error",
            "message": str(self),
            "context": {"destination": self.destination},
        }
