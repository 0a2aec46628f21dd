"""Secret storage and credential resolution."""

from .credentials import (
    CredentialResolver,
    Credentials,
    KeyringSecretStore,
    SecretStore,
)

__all__ = [
    "CredentialResolver",
    "Credentials",
    "KeyringSecretStore",
    "SecretStore",
]
