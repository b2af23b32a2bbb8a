"""Tests for settings parsing."""

import os
from decimal import Decimal

import pytest
from pydantic import ValidationError

from visitflow.config import Settings


def load_settings(**overrides) -> Settings:
    return Settings(  # type: ignore[call-arg]
        _env_file=None,
        DATABASE_URL=os.environ["DATABASE_URL"],
        REDIS_HOST="localhost",
        REDIS_PORT=6379,
        JWT_SECRET_KEY=os.environ["JWT_SECRET_KEY"],
        **overrides,
    )


def test_consultation_fees_resolve_per_doctor():
    settings = load_settings(
        CONSULTATION_FEES='{"D101": "750.00", "D102": 600}',
        DEFAULT_CONSULTATION_FEE="500.00",
    )

    assert settings.consultation_fee_for("D101") == Decimal("750.00")
    assert settings.consultation_fee_for("D102") == Decimal("600")
    assert settings.consultation_fee_for("D999") == Decimal("500.00")


@pytest.mark.parametrize(
    "raw",
    [
        "not json",
        "[750]",
        '{"D101": "abc"}',
        '{"D101": -1}',
        '{"D101": Infinity}',
    ],
)
def test_malformed_consultation_fees_fail_at_load(raw):
    with pytest.raises(ValidationError):
        load_settings(CONSULTATION_FEES=raw)


def test_cors_origins_are_split():
    settings = load_settings(CORS_ORIGINS="https://a.test, https://b.test,")

    assert settings.cors_origins == ["https://a.test", "https://b.test"]
