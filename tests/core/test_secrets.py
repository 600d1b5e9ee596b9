"""Tests for spine_devops.core.secrets.

SecretsManagerStore is driven with a ``MagicMock`` client; the interesting
paths are create-or-update, restore-then-update for secrets scheduled for
deletion, and not-found returning ``None``.
"""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from spine_devops.core.errors import CloudError
from spine_devops.core.secrets import (
    RECOVERY_WINDOW_DAYS,
    CacheMiss,
    CertificateCache,
    DictSecretStore,
    SecretsManagerStore,
    SecretValue,
    secret_id,
)


class TestSecretValue:
    def test_never_rendered(self):
        value = SecretValue("hunter2")
        assert str(value) == "[REDACTED]"
        assert "hunter2" not in repr(value)
        assert value.get_secret() == "hunter2"

    def test_truthiness_and_equality(self):
        assert not SecretValue("")
        assert SecretValue("a") == SecretValue("a")
        assert SecretValue("a") != "a"


class TestSecretsManagerGet:
    def test_string_secret(self):
        client = MagicMock()
        client.get_secret_value.return_value = {"SecretString": "abc"}
        assert SecretsManagerStore(client).get("acme/dev/datadog") == "abc"
        client.get_secret_value.assert_called_once_with(SecretId="acme/dev/datadog")

    def test_binary_secret(self):
        client = MagicMock()
        client.get_secret_value.return_value = {"SecretBinary": b"xyz"}
        assert SecretsManagerStore(client).get("s") == "xyz"

    @pytest.mark.parametrize("code", ["ResourceNotFoundException", "InvalidRequestException"])
    def test_missing_returns_none(self, client_error, code):
        client = MagicMock()
        client.get_secret_value.side_effect = client_error(code)
        assert SecretsManagerStore(client).get("s") is None

    def test_other_errors_raise(self, client_error):
        client = MagicMock()
        client.get_secret_value.side_effect = client_error("AccessDeniedException")
        with pytest.raises(CloudError) as exc_info:
            SecretsManagerStore(client).get("acme/dev/x")
        assert exc_info.value.context.resource == "acme/dev/x"
        assert exc_info.value.code == "AccessDeniedException"


class TestSecretsManagerPut:
    def test_create(self):
        client = MagicMock()
        SecretsManagerStore(client).put("s", "v")
        client.create_secret.assert_called_once_with(Name="s", SecretString="v")
        client.update_secret.assert_not_called()

    def test_exists_falls_through_to_update(self, client_error):
        client = MagicMock()
        client.create_secret.side_effect = client_error("ResourceExistsException")
        SecretsManagerStore(client).put("s", "v")
        client.update_secret.assert_called_once_with(SecretId="s", SecretString="v")
        client.restore_secret.assert_not_called()

    def test_scheduled_for_deletion_is_restored(self, client_error):
        client = MagicMock()
        client.create_secret.side_effect = client_error("InvalidRequestException")
        SecretsManagerStore(client).put("s", "v")
        client.restore_secret.assert_called_once_with(SecretId="s")
        client.update_secret.assert_called_once_with(SecretId="s", SecretString="v")

    def test_create_failure(self, client_error):
        client = MagicMock()
        client.create_secret.side_effect = client_error("LimitExceededException")
        with pytest.raises(CloudError, match="Failed to create secret 's'"):
            SecretsManagerStore(client).put("s", "v")


class TestSecretsManagerDelete:
    def test_recovery_window(self):
        client = MagicMock()
        SecretsManagerStore(client).delete("s")
        client.delete_secret.assert_called_once_with(
            SecretId="s", RecoveryWindowInDays=RECOVERY_WINDOW_DAYS, ForceDeleteWithoutRecovery=False
        )

    def test_missing_is_ignored(self, client_error):
        client = MagicMock()
        client.delete_secret.side_effect = client_error("ResourceNotFoundException")
        SecretsManagerStore(client).delete("s")


class TestDictSecretStore:
    def test_delete_then_put_restores(self):
        store = DictSecretStore({"a": "1"})
        store.delete("a")
        assert store.get("a") is None
        store.put("a", "2")
        assert store.get("a") == "2"

    def test_get_value_wraps(self):
        store = DictSecretStore({"a": "1"})
        assert store.get_value("a").get_secret() == "1"
        assert store.get_value("b") is None

    def test_secret_id(self):
        assert secret_id("acme", "dev", "acme-dev") == "acme/dev/acme-dev"


class TestCertificateCache:
    def test_prefix_and_local_cache(self):
        store = MagicMock(wraps=DictSecretStore())
        cache = CertificateCache(store, "acme/prod/certs/")
        cache.put("api.acme.test", "PEM")
        store.put.assert_called_once_with("acme/prod/certs/api.acme.test", "PEM")
        assert cache.get("api.acme.test") == "PEM"
        store.get.assert_not_called()

    def test_miss(self):
        cache = CertificateCache(DictSecretStore(), "p")
        with pytest.raises(CacheMiss):
            cache.get("nope")

    def test_reads_through_and_deletes(self):
        store = DictSecretStore({"p/k": "v"})
        cache = CertificateCache(store, "p")
        assert cache.get("k") == "v"
        cache.delete("k")
        assert store.get("p/k") is None
        with pytest.raises(CacheMiss):
            cache.get("k")
