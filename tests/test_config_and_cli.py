import pytest
from pydantic import ValidationError

from mitbot import cli
from mitbot.config import Settings, get_settings, reset_settings_cache
from mitbot.logging import _redact_secrets


def test_settings_read_environment(monkeypatch):
    monkeypatch.setenv("MIT_URL", "http://mit.internal:9000/")
    monkeypatch.setenv("MAX_CONCURRENT_REQUESTS", "4")
    monkeypatch.setenv("REQUEST_TIMEOUT_SECONDS", "2.5")
    monkeypatch.setenv("REDIS_KEY_PREFIX", "bot:")

    settings = Settings.from_env()

    assert settings.provider_url == "http://mit.internal:9000"
    assert settings.max_concurrent_requests == 4
    assert settings.request_timeout_seconds == 2.5
    assert settings.redis_key_prefix == "bot:"


def test_settings_read_dotenv_when_environment_is_silent(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("CONVERSATION_TTL_SECONDS", raising=False)
    (tmp_path / ".env").write_text("CONVERSATION_TTL_SECONDS=900\n")

    assert Settings.from_env().conversation_ttl_seconds == 900


def test_settings_reject_non_positive_concurrency(monkeypatch):
    monkeypatch.setenv("MAX_CONCURRENT_REQUESTS", "0")

    with pytest.raises(ValidationError):
        Settings.from_env()


def test_settings_are_cached_until_reset(monkeypatch):
    reset_settings_cache()
    first = get_settings()
    monkeypatch.setenv("MIT_URL", "http://other.test")

    assert get_settings() is first
    reset_settings_cache()
    assert get_settings().provider_url == "http://other.test"


def test_secret_values_are_masked_but_ids_are_not():
    event = _redact_secrets(
        None,
        "info",
        {"event": "x", "token": "secret-token-1", "key_id": "abcdef0123", "password": "hunter22"},
    )

    assert event["token"] == "se***-1"
    assert event["password"] == "hu***22"
    assert event["key_id"] == "abcdef0123"


def test_cli_run_passes_flags_to_uvicorn(monkeypatch):
    calls = []
    monkeypatch.setattr(
        cli, "run_server", lambda host, port, level, text: calls.append((host, port, level, text))
    )

    assert cli.main(["run", "--host", "0.0.0.0", "--port", "9001", "--log-level", "DEBUG", "--log-text"]) == 0
    assert calls == [("0.0.0.0", 9001, "debug", True)]


def test_cli_requires_a_command():
    with pytest.raises(SystemExit):
        cli.main([])


def test_runtime_configures_logging_from_settings(monkeypatch):
    from mitbot.service import runtime as runtime_module

    calls = []
    monkeypatch.setattr(
        runtime_module,
        "configure_logging",
        lambda log_level, json_output: calls.append((log_level, json_output)),
    )
    monkeypatch.setenv("LOG_LEVEL", "WARNING")
    monkeypatch.setenv("LOG_JSON", "false")

    runtime_module.reset_runtime_for_tests()

    assert calls == [("WARNING", False)]
