import pydantic
import pytest

from staffledger import config
from staffledger.config import Settings, get_settings, reset_settings_cache


def test_defaults():
    settings = Settings()

    assert settings.token_validity_minutes == 60
    assert settings.lockout_threshold == 5
    assert settings.lockout_duration_minutes == 24 * 60
    assert settings.failure_window_minutes == 60
    assert settings.signing_secret is None
    assert settings.use_memory_store is False


def test_from_env_reads_named_variables(monkeypatch):
    monkeypatch.setenv("TOKEN_VALIDITY_MINUTES", "15")
    monkeypatch.setenv("LOCKOUT_THRESHOLD", "3")
    monkeypatch.setenv("USE_MEMORY_STORE", "true")
    monkeypatch.setenv("JWT_SIGNING_SECRET", "  c2VjcmV0  ")

    settings = Settings.from_env()

    assert settings.token_validity_minutes == 15
    assert settings.lockout_threshold == 3
    assert settings.use_memory_store is True
    assert settings.signing_secret == "c2VjcmV0"


def test_blank_signing_secret_is_treated_as_missing(monkeypatch):
    monkeypatch.setenv("JWT_SIGNING_SECRET", "   ")

    assert Settings.from_env().signing_secret is None


@pytest.mark.parametrize(
    "field", ["token_validity_minutes", "lockout_threshold", "failure_window_minutes"]
)
def test_non_positive_values_rejected(field):
    with pytest.raises(pydantic.ValidationError):
        Settings(**{field: 0})


def test_get_settings_is_cached_until_reset(monkeypatch):
    reset_settings_cache()
    try:
        monkeypatch.setenv("LOCKOUT_THRESHOLD", "7")
        first = get_settings()
        monkeypatch.setenv("LOCKOUT_THRESHOLD", "9")

        assert get_settings() is first
        assert first.lockout_threshold == 7

        reset_settings_cache()
        assert config.get_settings().lockout_threshold == 9
    finally:
        reset_settings_cache()
