from __future__ import annotations

import pytest
from pydantic import ValidationError

from pglifecycle.config.db_settings import PoolConfig


def test_defaults_apply_when_only_url_given() -> None:
    cfg = PoolConfig.model_validate({"DATABASE_URL": "postgresql://localhost/app"})

    assert cfg.min_size == 1
    assert cfg.max_size == 10
    assert cfg.timeout is None
    assert cfg.db_connect_attempts == 3
    assert cfg.transaction_timeout == 2.0
    assert cfg.transaction_probe is True


def test_postgres_scheme_accepted_and_trimmed() -> None:
    cfg = PoolConfig.model_validate({"DATABASE_URL": "  postgres://db/app  "})

    assert cfg.dsn == "postgres://db/app"


@pytest.mark.parametrize("url", ["mysql://db/app", "   "])
def test_invalid_database_url_rejected(url: str) -> None:
    with pytest.raises(ValidationError):
        PoolConfig.model_validate({"DATABASE_URL": url})


def test_max_size_must_not_be_below_min_size() -> None:
    with pytest.raises(ValueError, match="DB_POOL_MAX_SIZE"):
        PoolConfig.model_validate(
            {
                "DATABASE_URL": "postgresql://db/app",
                "DB_POOL_MIN_SIZE": 5,
                "DB_POOL_MAX_SIZE": 2,
            }
        )


def test_transaction_timeout_must_be_positive() -> None:
    with pytest.raises(ValidationError):
        PoolConfig.model_validate(
            {"DATABASE_URL": "postgresql://db/app", "DB_TRANSACTION_TIMEOUT_SECONDS": 0}
        )


def test_environment_variables_are_read(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DATABASE_URL", "postgresql://env/app")
    monkeypatch.setenv("DB_POOL_MIN_SIZE", "3")
    monkeypatch.setenv("DB_TRANSACTION_TIMEOUT_SECONDS", "0.25")

    cfg = PoolConfig()  # type: ignore[call-arg]

    assert cfg.dsn == "postgresql://env/app"
    assert cfg.min_size == 3
    assert cfg.transaction_timeout == 0.25


def test_redacted_dsn_hides_password() -> None:
    cfg = PoolConfig.model_validate({"DATABASE_URL": "postgresql://app:hunter2@db:5433/app"})

    assert cfg.redacted_dsn == "postgresql://app:***@db:5433/app"
    assert cfg.dsn == "postgresql://app:hunter2@db:5433/app"


def test_redacted_dsn_without_password_is_unchanged() -> None:
    cfg = PoolConfig.model_validate({"DATABASE_URL": "postgresql://db/app"})

    assert cfg.redacted_dsn == "postgresql://db/app"
