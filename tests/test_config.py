import pytest
from pydantic import ValidationError

from tokenkeep.config import Settings, get_settings, reset_settings_cache

LONG_SECRET = "a-signing-secret-that-is-long-enough-42"


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    for name in Settings.model_fields:
        monkeypatch.delenv(name.upper(), raising=False)
    return monkeypatch


class TestJwtSecret:
    def test_short_secret_rejected(self):
        with pytest.raises(ValidationError):
            Settings(jwt_secret="too-short")

    def test_missing_secret_rejected_outside_test_mode(self):
        with pytest.raises(ValidationError):
            Settings(test_mode=False)

    def test_missing_secret_generated_in_test_mode(self):
        first = Settings(test_mode=True)
        second = Settings(test_mode=True)

        assert len(first.jwt_secret) >= 32
        assert first.jwt_secret != second.jwt_secret

    def test_explicit_secret_kept(self):
        assert Settings(jwt_secret=LONG_SECRET).jwt_secret == LONG_SECRET


def test_defaults_match_token_lifetimes():
    settings = Settings(jwt_secret=LONG_SECRET)

    assert settings.access_token_ttl_minutes == 24 * 60
    assert settings.remember_token_ttl_days == 30
    assert settings.email_verification_ttl_minutes == 60
    assert settings.password_reset_ttl_minutes == 15
    assert settings.verification_code_ttl_seconds == 120
    assert settings.login_otp_ttl_seconds == 300
    assert settings.verification_claim_ttl_minutes == 15
    assert settings.otp_length == 6
    assert settings.min_password_length == 8
    assert settings.notification_max_retries == 3


@pytest.mark.parametrize("field", ["otp_length", "min_password_length"])
def test_non_positive_lengths_rejected(field):
    with pytest.raises(ValidationError):
        Settings(jwt_secret=LONG_SECRET, **{field: 0})


def test_from_env_reads_environment(clean_env):
    clean_env.setenv("JWT_SECRET", LONG_SECRET)
    clean_env.setenv("USE_MEMORY_STORE", "true")
    clean_env.setenv("MIN_PASSWORD_LENGTH", "12")

    settings = Settings.from_env()

    assert settings.jwt_secret == LONG_SECRET
    assert settings.use_memory_store is True
    assert settings.min_password_length == 12


def test_from_env_falls_back_to_dotenv_file(clean_env, tmp_path):
    (tmp_path / ".env").write_text(
        f"JWT_SECRET={LONG_SECRET}\nAPP_BASE_URL=https://auth.example.com\n"
    )
    clean_env.setenv("APP_BASE_URL", "https://override.example.com")

    settings = Settings.from_env()

    assert settings.jwt_secret == LONG_SECRET
    assert settings.app_base_url == "https://override.example.com"


def test_get_settings_is_cached_until_reset(clean_env):
    clean_env.setenv("JWT_SECRET", LONG_SECRET)
    clean_env.setenv("TEST_MODE", "true")
    reset_settings_cache()
    try:
        assert get_settings() is get_settings()
        cached = get_settings()
        reset_settings_cache()
        assert get_settings() is not cached
    finally:
        reset_settings_cache()
