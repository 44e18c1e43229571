import pytest
from pydantic import ValidationError

from novachat.config import Settings, get_settings, reset_settings_cache


def test_defaults():
    settings = Settings(jwt_secret="x" * 40)

    assert settings.credential_ttl_minutes == 60 * 24 * 7
    assert settings.credential_cookie_name == "jwt"
    assert settings.cookie_samesite == "lax"
    assert settings.revocation_force_close is True
    assert settings.revocation_channel == "auth:revocations"


def test_from_env_reads_environment(monkeypatch):
    monkeypatch.setenv("CREDENTIAL_TTL_MINUTES", "30")
    monkeypatch.setenv("COOKIE_SAMESITE", "None")
    monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://a.example, https://b.example")
    monkeypatch.setenv("REVOCATION_FORCE_CLOSE", "false")

    settings = Settings.from_env()

    assert settings.credential_ttl_minutes == 30
    assert settings.cookie_samesite == "none"
    assert settings.cors_allow_origins == ["https://a.example", "https://b.example"]
    assert settings.revocation_force_close is False


def test_blank_redis_url_means_disabled(monkeypatch):
    monkeypatch.setenv("REDIS_URL", " ")
    assert Settings.from_env().redis_url is None


def test_invalid_samesite_rejected():
    with pytest.raises(ValidationError):
        Settings(jwt_secret="x" * 40, cookie_samesite="sometimes")


def test_non_positive_ttl_rejected():
    with pytest.raises(ValidationError):
        Settings(jwt_secret="x" * 40, credential_ttl_minutes=0)


def test_generated_secret_is_persisted(monkeypatch, tmp_path):
    """Without JWT_SECRET a secret is generated once and reused."""
    monkeypatch.delenv("JWT_SECRET", raising=False)
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))

    first = Settings.from_env().jwt_secret
    second = Settings.from_env().jwt_secret

    assert first == second
    assert (tmp_path / ".jwt_secret").read_text().strip() == first


def test_generated_secret_follows_dotenv_root(monkeypatch, tmp_path):
    """SHARED_FS_ROOT from ``.env`` decides where a generated secret is kept."""
    secret_root = tmp_path / "shared"
    (tmp_path / ".env").write_text(f"SHARED_FS_ROOT={secret_root}\n")
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("JWT_SECRET", raising=False)
    monkeypatch.delenv("SHARED_FS_ROOT", raising=False)

    settings = Settings.from_env()

    assert settings.shared_fs_root == str(secret_root)
    assert (secret_root / ".jwt_secret").read_text().strip() == settings.jwt_secret


def test_generated_secret_uses_explicit_root(tmp_path):
    settings = Settings(shared_fs_root=str(tmp_path))
    assert (tmp_path / ".jwt_secret").read_text().strip() == settings.jwt_secret


def test_settings_cache_reset(monkeypatch):
    monkeypatch.setenv("CREDENTIAL_COOKIE_NAME", "first")
    reset_settings_cache()
    assert get_settings().credential_cookie_name == "first"

    monkeypatch.setenv("CREDENTIAL_COOKIE_NAME", "second")
    assert get_settings().credential_cookie_name == "first"
    reset_settings_cache()
    assert get_settings().credential_cookie_name == "second"
