"""
Tests for credential resolution and the keyring secret store.
"""

import json
from typing import Dict, Optional, Tuple
from unittest.mock import patch

import keyring.errors
import pytest

from cloudsql_migrator.core.exceptions import SecurityError
from cloudsql_migrator.security.credentials import (
    CredentialResolver,
    Credentials,
    KeyringSecretStore,
)


class InMemorySecretStore:
    """Secret store keeping values in a dict."""

    def __init__(self):
        self.secrets: Dict[Tuple[str, str], str] = {}
        self.reads = 0

    def get_secret(self, service: str, key: str) -> Optional[str]:
        self.reads += 1
        return self.secrets.get((service, key))

    def set_secret(self, service: str, key: str, value: str) -> None:
        self.secrets[(service, key)] = value

    def delete_secret(self, service: str, key: str) -> bool:
        return self.secrets.pop((service, key), None) is not None


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class TestCredentialResolver:
    """Test lookup, caching and persistence of credentials."""

    def setup_method(self):
        self.store = InMemorySecretStore()
        self.clock = FakeClock()
        self.resolver = CredentialResolver(self.store, ttl_seconds=60, clock=self.clock)

    def test_unknown_instance(self):
        assert self.resolver.get_credentials("proj-one", "db") is None

    def test_save_and_get(self):
        saved = self.resolver.save_credentials(
            "proj-one", "db", Credentials("admin", "s3cret", save_enabled=True)
        )
        assert saved is True
        stored = json.loads(self.store.secrets[("credentials", "proj-one:db")])
        assert stored == {"user": "admin", "password": "s3cret", "save_enabled": True}

        self.resolver.invalidate("proj-one", "db")
        credentials = self.resolver.get_credentials("proj-one", "db")
        assert credentials == Credentials("admin", "s3cret", save_enabled=True)

    def test_save_without_opt_in_only_caches(self):
        saved = self.resolver.save_credentials("proj-one", "db", Credentials("admin", "pw"))
        assert saved is False
        assert self.store.secrets == {}
        assert self.resolver.get_credentials("proj-one", "db").password == "pw"

    def test_cache_expires(self):
        self.store.set_secret("credentials", "proj-one:db", json.dumps({"user": "u", "password": "p"}))

        self.resolver.get_credentials("proj-one", "db")
        self.resolver.get_credentials("proj-one", "db")
        assert self.store.reads == 1

        self.clock.now = 61
        self.resolver.get_credentials("proj-one", "db")
        assert self.store.reads == 2

    def test_malformed_secret_ignored(self):
        self.store.set_secret("credentials", "proj-one:db", "not json")
        assert self.resolver.get_credentials("proj-one", "db") is None

    def test_forget(self):
        self.resolver.save_credentials("proj-one", "db", Credentials("u", "p", save_enabled=True))
        assert self.resolver.forget("proj-one", "db") is True
        assert self.resolver.get_credentials("proj-one", "db") is None
        assert self.resolver.forget("proj-one", "db") is False


class TestKeyringSecretStore:
    """Test the keyring-backed store."""

    def setup_method(self):
        self.store = KeyringSecretStore(service_prefix="test_migrator")

    def test_get_secret(self):
        with patch("keyring.get_password", return_value="value") as get_password:
            assert self.store.get_secret("credentials", "p:i") == "value"
        get_password.assert_called_once_with("test_migrator.credentials", "p:i")

    def test_get_secret_keyring_failure(self):
        with patch("keyring.get_password", side_effect=keyring.errors.KeyringError("locked")):
            assert self.store.get_secret("credentials", "p:i") is None

    def test_set_secret_failure_raises(self):
        with patch("keyring.set_password", side_effect=keyring.errors.KeyringError("no backend")):
            with pytest.raises(SecurityError):
                self.store.set_secret("credentials", "p:i", "value")

    def test_delete_missing_secret(self):
        with patch("keyring.delete_password", side_effect=keyring.errors.PasswordDeleteError("missing")):
            assert self.store.delete_secret("credentials", "p:i") is False
