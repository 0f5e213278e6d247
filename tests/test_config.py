import os

from korella.config import Settings


def test_from_env_reads_overrides(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("MAX_FAILED_LOGIN_ATTEMPTS", "7")
    monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://a.example, https://b.example")
    monkeypatch.setenv("APP_BASE_URL", "https://app.example/")

    settings = Settings.from_env()

    assert settings.max_failed_login_attempts == 7
    assert settings.cors_allow_origins == ["https://a.example", "https://b.example"]
    assert settings.app_base_url == "https://app.example"


def test_dotenv_file_is_read(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("LOCKOUT_DURATION_MINUTES", raising=False)
    (tmp_path / ".env").write_text("LOCKOUT_DURATION_MINUTES=45\n")

    assert Settings.from_env().lockout_duration_minutes == 45


def test_generated_jwt_secret_is_persisted(tmp_path):
    first = Settings(shared_fs_root=str(tmp_path))
    second = Settings(shared_fs_root=str(tmp_path))

    secret_file = tmp_path / ".jwt_secret"
    assert secret_file.exists()
    assert first.jwt_secret == second.jwt_secret
    assert len(first.jwt_secret) >= 32
    assert oct(os.stat(secret_file).st_mode & 0o777) == "0o600"


def test_explicit_jwt_secret_is_not_written(tmp_path):
    settings = Settings(shared_fs_root=str(tmp_path), jwt_secret="x" * 40)
    assert settings.jwt_secret == "x" * 40
    assert not (tmp_path / ".jwt_secret").exists()
