from __future__ import annotations

from pathlib import Path

import pytest

from policyquorum.config import Settings


def test_defaults_from_empty_env() -> None:
    settings = Settings.from_env({})

    assert settings == Settings()
    assert settings.audit_signing_key is None
    assert settings.strict_commit is False


def test_values_from_env() -> None:
    settings = Settings.from_env(
        {
            "POLICYQUORUM_DB_PATH": "/var/lib/pq/policies.db",
            "POLICYQUORUM_AUDIT_SIGNING_KEY": "/etc/pq/audit.pem",
            "POLICYQUORUM_STRICT_COMMIT": "yes",
            "POLICYQUORUM_DEFAULT_THRESHOLD": "3",
            "POLICYQUORUM_LOG_LEVEL": "debug",
            "POLICYQUORUM_HOST": "0.0.0.0",
            "POLICYQUORUM_PORT": "9000",
        }
    )

    assert settings.db_path == Path("/var/lib/pq/policies.db")
    assert settings.audit_signing_key == Path("/etc/pq/audit.pem")
    assert settings.strict_commit is True
    assert settings.default_threshold == 3
    assert settings.log_level == "DEBUG"
    assert (settings.host, settings.port) == ("0.0.0.0", 9000)


def test_threshold_must_be_positive() -> None:
    with pytest.raises(ValueError, match="DEFAULT_THRESHOLD"):
        Settings.from_env({"POLICYQUORUM_DEFAULT_THRESHOLD": "0"})
