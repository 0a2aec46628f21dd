"""Credential resolution for Cloud SQL instances backed by a secret store."""

import json
import logging
import time
from dataclasses import asdict, dataclass
from typing import Callable, Dict, Optional, Protocol, Tuple

import keyring
import keyring.errors

from ..core.exceptions import SecurityError

logger = logging.getLogger(__name__)


@dataclass
class Credentials:
    """Database user credentials for an instance."""
    user: str
    password: str
    save_enabled: bool = False


class SecretStore(Protocol):
    """Minimal secret storage interface."""

    def get_secret(self, service: str, key: str) -> Optional[str]:
        ...

    def set_secret(self, service: str, key: str, value: str) -> None:
        ...

    def delete_secret(self, service: str, key: str) -> bool:
        ...


class KeyringSecretStore:
    """Secret store using the system keyring."""

    def __init__(self, service_prefix: str = "cloudsql_migrator"):
        """Initialize keyring store.

        Args:
            service_prefix: Prefix for service names in keyring
        """
        self.service_prefix = service_prefix

    def _get_service_name(self, service: str) -> str:
        return f"{self.service_prefix}.{service}"

    def get_secret(self, service: str, key: str) -> Optional[str]:
        try:
            return keyring.get_password(self._get_service_name(service), key)
        except keyring.errors.KeyringError as e:
            logger.error(f"Failed to read secret for {service}: {e}")
            return None

    def set_secret(self, service: str, key: str, value: str) -> None:
        try:
            keyring.set_password(self._get_service_name(service), key, value)
        except keyring.errors.KeyringError as e:
            logger.error(f"Failed to store secret for {service}: {e}")
            raise SecurityError(f"Failed to store secret: {e}")

    def delete_secret(self, service: str, key: str) -> bool:
        try:
            keyring.delete_password(self._get_service_name(service), key)
            return True
        except keyring.errors.PasswordDeleteError:
            logger.warning(f"Secret not found for {service}, key: {key}")
            return False


class CredentialResolver:
    """Resolve and cache instance credentials.

    Credentials are looked up in the secret store under
    ``credentials/<project>:<instance>`` and cached in memory for
    ``ttl_seconds``.
    """

    SERVICE = "credentials"

    def __init__(
        self,
        store: Optional[SecretStore] = None,
        ttl_seconds: float = 3600.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store if store is not None else KeyringSecretStore()
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._cache: Dict[str, Tuple[float, Credentials]] = {}

    @staticmethod
    def _key(project: str, instance: str) -> str:
        return f"{project}:{instance}"

    def get_credentials(self, project: str, instance: str) -> Optional[Credentials]:
        key = self._key(project, instance)
        cached = self._cache.get(key)
        if cached and self._clock() - cached[0] < self.ttl_seconds:
            return cached[1]

        raw = self.store.get_secret(self.SERVICE, key)
        if raw is None:
            self._cache.pop(key, None)
            return None

        try:
            credentials = Credentials(**json.loads(raw))
        except (ValueError, TypeError) as e:
            logger.warning(f"Ignoring malformed stored credentials for {key}: {e}")
            return None

        self._cache[key] = (self._clock(), credentials)
        return credentials

    def save_credentials(self, project: str, instance: str, credentials: Credentials) -> bool:
        """Persist credentials when the user opted in; always cache them."""
        key = self._key(project, instance)
        self._cache[key] = (self._clock(), credentials)
        if not credentials.save_enabled:
            return False
        self.store.set_secret(self.SERVICE, key, json.dumps(asdict(credentials)))
        logger.info(f"Credentials stored for {key}")
        return True

    def invalidate(self, project: str, instance: str) -> None:
        self._cache.pop(self._key(project, instance), None)

    def forget(self, project: str, instance: str) -> bool:
        self.invalidate(project, instance)
        return self.store.delete_secret(self.SERVICE, self._key(project, instance))
