import os

import pytest

import decanter
from decanter.config import get_settings, load_settings, reset_settings


def test_defaults(monkeypatch):
    for name in ("GEMINI_API_KEY", "API_KEY", "RATE_MAX_REQUESTS", "DECANTER_ENV", "ALLOW_ORIGINS"):
        monkeypatch.delenv(name, raising=False)
    s = load_settings()
    assert s.gemini_api_key == ""
    assert s.rate_window_seconds == 60
    assert s.rate_max_requests == 10
    assert s.max_body_bytes == 102_400
    assert (s.code_min_chars, s.code_max_chars) == (10, 50_000)
    assert s.allow_origins == ["*"]
    assert s.is_development is False


def test_api_key_fallback(monkeypatch):
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)
    monkeypatch.setenv("API_KEY", "legacy-key")
    assert load_settings().gemini_api_key == "legacy-key"
    monkeypatch.setenv("GEMINI_API_KEY", "new-key")
    assert load_settings().gemini_api_key == "new-key"


def test_malformed_numbers_fall_back(monkeypatch):
    monkeypatch.setenv("RATE_MAX_REQUESTS", "ten")
    monkeypatch.setenv("RATE_WINDOW_SECONDS", "-5")
    monkeypatch.setenv("TEMPERATURE", "hot")
    s = load_settings()
    assert s.rate_max_requests == 10
    assert s.rate_window_seconds == 60
    assert s.temperature == 0.7


def test_flags_and_lists(monkeypatch):
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "yes")
    monkeypatch.setenv("TRUST_FORWARDED_HEADERS", "0")
    monkeypatch.setenv("ALLOW_ORIGINS", "https://a.example, https://b.example,")
    monkeypatch.setenv("DECANTER_ENV", "development")
    s = load_settings()
    assert s.rate_limit_disabled is True
    assert s.trust_forwarded_headers is False
    assert s.allow_origins == ["https://a.example", "https://b.example"]
    assert s.is_development is True


def test_reset_settings_forces_reload(monkeypatch):
    monkeypatch.setenv("GEMINI_MODEL", "gemini-custom")
    reset_settings()
    assert get_settings().gemini_model == "gemini-custom"


def test_dotenv_does_not_override_environment(monkeypatch, tmp_path):
    env_file = tmp_path / ".env"
    env_file.write_text('export GEMINI_MODEL="from-file"\nDECANTER_DOTENV_SAMPLE=debug\n# comment\n', encoding="utf-8")
    monkeypatch.setenv("DECANTER_ENV_FILE", str(env_file))
    monkeypatch.setenv("GEMINI_MODEL", "from-env")
    monkeypatch.setenv("DECANTER_DOTENV_SAMPLE", "placeholder")
    monkeypatch.delenv("DECANTER_DOTENV_SAMPLE")
    monkeypatch.delenv("PYTEST_CURRENT_TEST", raising=False)
    decanter._load_dotenv_if_needed()
    assert os.environ["GEMINI_MODEL"] == "from-env"
    assert os.environ["DECANTER_DOTENV_SAMPLE"] == "debug"


@pytest.mark.parametrize(
    "line,expected",
    [
        ("GEMINI_MODEL=gemini-2.5-flash", ("GEMINI_MODEL", "gemini-2.5-flash")),
        ("export LOG_LEVEL = debug", ("LOG_LEVEL", "debug")),
        ("ALLOW_ORIGINS='https://a.example, https://b.example'", ("ALLOW_ORIGINS", "https://a.example, https://b.example")),
        ('API_KEY="abc # not a comment"', ("API_KEY", "abc # not a comment")),
        ("RATE_MAX_REQUESTS=5 # per minute", ("RATE_MAX_REQUESTS", "5")),
        ("EMPTY=", ("EMPTY", "")),
        ("# GEMINI_MODEL=commented", None),
        ("", None),
        ("not an assignment", None),
        ("1BAD=x", None),
    ],
)
def test_parse_env_line(line, expected):
    assert decanter.parse_env_line(line) == expected


def test_read_env_file_missing_is_empty(tmp_path):
    assert decanter.read_env_file(tmp_path / "absent.env") == {}


def test_dotenv_skipped_under_pytest(monkeypatch, tmp_path):
    env_file = tmp_path / ".env"
    env_file.write_text("DECANTER_DOTENV_SAMPLE=loaded\n", encoding="utf-8")
    monkeypatch.setenv("DECANTER_ENV_FILE", str(env_file))
    monkeypatch.setenv("DECANTER_DOTENV_SAMPLE", "placeholder")
    monkeypatch.delenv("DECANTER_DOTENV_SAMPLE")
    monkeypatch.setenv("PYTEST_CURRENT_TEST", "tests/test_config.py::x")
    decanter._load_dotenv_if_needed()
    assert "DECANTER_DOTENV_SAMPLE" not in os.environ
