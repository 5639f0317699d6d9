import pytest
from pydantic import ValidationError

from gatehouse.config import RefreshPolicy, Settings, get_settings, reset_settings_cache


def test_from_env_reads_declared_names(monkeypatch):
    monkeypatch.setenv("ACCESS_TOKEN_TTL_MINUTES", "15")
    monkeypatch.setenv("REFRESH_POLICY", "rotate")
    monkeypatch.setenv("MAX_SESSIONS_PER_USER", "3")

    settings = Settings.from_env()

    assert settings.access_token_ttl_minutes == 15
    assert settings.refresh_policy is RefreshPolicy.ROTATE
    assert settings.max_sessions_per_user == 3


def test_refresh_policy_defaults_to_reuse(monkeypatch):
    monkeypatch.delenv("REFRESH_POLICY", raising=False)

    assert Settings.from_env().refresh_policy is RefreshPolicy.REUSE


def test_unknown_refresh_policy_rejected(monkeypatch):
    monkeypatch.setenv("REFRESH_POLICY", "sometimes")

    with pytest.raises(ValidationError):
        Settings.from_env()


def test_ttl_must_be_positive():
    with pytest.raises(ValidationError):
        Settings(access_token_ttl_minutes=0, jwt_secret="x" * 40)


def test_cors_origins_split():
    settings = Settings(cors_allow_origins=" https://a.example , ,https://b.example", jwt_secret="x" * 40)

    assert settings.cors_allow_origins == ["https://a.example", "https://b.example"]


def test_jwt_secret_generated_and_persisted(monkeypatch, tmp_path):
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))
    monkeypatch.delenv("JWT_SECRET", raising=False)

    first = Settings.from_env().jwt_secret
    second = Settings.from_env().jwt_secret

    assert first == second
    assert len(first) >= 32
    assert (tmp_path / ".jwt_secret").read_text().strip() == first


def test_explicit_jwt_secret_wins(monkeypatch, tmp_path):
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))
    monkeypatch.setenv("JWT_SECRET", "s" * 48)

    assert Settings.from_env().jwt_secret == "s" * 48
    assert not (tmp_path / ".jwt_secret").exists()


def test_settings_cache_reset(monkeypatch):
    reset_settings_cache()
    monkeypatch.setenv("JWT_ISSUER", "first")
    assert get_settings().jwt_issuer == "first"

    monkeypatch.setenv("JWT_ISSUER", "second")
    assert get_settings().jwt_issuer == "first"

    reset_settings_cache()
    assert get_settings().jwt_issuer == "second"
    reset_settings_cache()
