"""Security module for secret providers and masking."""

from .secrets import (
    EnvironmentSecretProvider, FileSecretProvider, SecretMasker, SecretProvider,
    SecretsMaskingFilter,
)

__all__ = [
    'EnvironmentSecretProvider', 'FileSecretProvider', 'SecretMasker',
    'SecretProvider', 'SecretsMaskingFilter',
]
