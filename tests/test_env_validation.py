import pytest

from env_validation import (
    ConfigurationError,
    get_env_int,
    load_all_provider_configs,
    load_provider_config,
    validate_environment,
)


def test_defaults_without_environment():
    configs = load_all_provider_configs({})

    assert list(configs) == ["gemini", "together"]
    gemini, together = configs["gemini"], configs["together"]
    assert gemini.api_url == "https://generativelanguage.googleapis.com/v1beta"
    assert together.api_url == "https://api.together.xyz/v1"
    assert gemini.history_turns == 10
    assert together.history_turns == 2
    assert together.timeout == 30.0
    assert together.max_retries == 2
    assert together.backoff_ms == 1000
    assert not together.has_api_key


def test_provider_settings_override_global_ones():
    env = {
        "TOGETHER_API_KEY": " t-key ",
        "TOGETHER_MODEL": "custom-model",
        "TOGETHER_API_URL": "https://proxy.example/v1/",
        "TOGETHER_TIMEOUT": "12.5",
        "LLM_TIMEOUT": "99",
        "LLM_MAX_RETRIES": "4",
    }

    config = load_provider_config("together", env)

    assert config.api_key == "t-key"
    assert config.model == "custom-model"
    assert config.api_url == "https://proxy.example/v1"
    assert config.timeout == 12.5
    assert config.max_retries == 4


@pytest.mark.parametrize(
    "env",
    [
        {"GEMINI_API_URL": "ftp://example"},
        {"GEMINI_TIMEOUT": "soon"},
        {"GEMINI_TIMEOUT": "0"},
        {"LLM_MAX_RETRIES": "-1"},
        {"GEMINI_BACKOFF_MS": "-5"},
    ],
)
def test_invalid_settings_raise(env):
    with pytest.raises(ConfigurationError):
        load_provider_config("gemini", env)


def test_unknown_provider_raises():
    with pytest.raises(ConfigurationError):
        load_provider_config("openai", {})


def test_require_api_key_names_the_variable():
    config = load_provider_config("gemini", {})

    with pytest.raises(ConfigurationError, match="GEMINI_API_KEY"):
        config.require_api_key()


def test_validate_environment_warns_for_missing_keys(monkeypatch, caplog):
    for name in ("GEMINI_API_KEY", "TOGETHER_API_KEY", "DEFAULT_PROVIDER"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("DB_PATH", "test.db")

    with caplog.at_level("WARNING", logger="env_validation"):
        validate_environment()

    assert "GEMINI_API_KEY" in caplog.text
    assert "TOGETHER_API_KEY" in caplog.text


def test_validate_environment_rejects_unknown_default_provider(monkeypatch):
    monkeypatch.setenv("DB_PATH", "test.db")
    monkeypatch.setenv("DEFAULT_PROVIDER", "openai")

    with pytest.raises(ConfigurationError):
        validate_environment()


def test_validate_environment_rejects_bad_threshold(monkeypatch):
    monkeypatch.setenv("DB_PATH", "test.db")
    monkeypatch.delenv("DEFAULT_PROVIDER", raising=False)
    monkeypatch.setenv("ENGAGEMENT_QUIZ_THRESHOLD", "thirty")

    with pytest.raises(ConfigurationError):
        validate_environment()


def test_get_env_int_falls_back_on_garbage(monkeypatch):
    monkeypatch.setenv("SOME_LIMIT", "abc")
    assert get_env_int("SOME_LIMIT", 7) == 7
    monkeypatch.setenv("SOME_LIMIT", "12")
    assert get_env_int("SOME_LIMIT", 7) == 12
