"""Tests for configuration."""

import logging
import os
from unittest.mock import patch
from stage_agent_chat.config import Config


def test_config_defaults():
    """Test that Config has expected default values."""
    config = Config()

    assert config.backend_url == ""
    assert config.api_key == ""
    assert config.access_token is None
    assert config.agent_function == "agent-prompt"
    assert config.max_attempts == 4
    assert config.base_retry_delay_ms == 1000
    assert config.recover_on_retry is True
    assert config.request_timeout_seconds is None
    assert config.resume_timeout_seconds == 120.0
    assert config.db_path == "./chat_history.db"
    assert config.cleanup_days == 30


def test_config_customization():
    """Test that Config can be customized."""
    config = Config(
        backend_url="https://example.supabase.co",
        api_key="anon",
        access_token="token-123",
        max_attempts=2,
    )

    assert config.backend_url == "https://example.supabase.co"
    assert config.api_key == "anon"
    assert config.max_attempts == 2
    assert config.credential == "token-123"


def test_credential_empty_token_is_none():
    """An empty access token counts as signed out."""
    assert Config(access_token="").credential is None
    assert Config().credential is None


def test_from_env_with_environment_variables():
    """Test loading config from environment variables."""
    env_vars = {
        "SUPABASE_URL": "https://example.supabase.co/",
        "SUPABASE_ANON_KEY": "anon-key",
        "ACCESS_TOKEN": "jwt",
        "MAX_ATTEMPTS": "6",
        "BASE_RETRY_DELAY_MS": "250",
        "RECOVER_ON_RETRY": "false",
        "REQUEST_TIMEOUT_SECONDS": "30",
        "RESUME_TIMEOUT_SECONDS": "90.5",
        "DB_PATH": "/tmp/test.db",
    }

    with patch.dict(os.environ, env_vars, clear=False):
        config = Config.from_env(env_file=None)  # Don't load .env file

        # Trailing slash is stripped so endpoint paths can be appended
        assert config.backend_url == "https://example.supabase.co"
        assert config.api_key == "anon-key"
        assert config.credential == "jwt"
        assert config.max_attempts == 6
        assert config.base_retry_delay_ms == 250
        assert config.recover_on_retry is False
        assert config.request_timeout_seconds == 30.0
        assert config.resume_timeout_seconds == 90.5
        assert config.db_path == "/tmp/test.db"


def test_from_env_or_default_no_env_file():
    """Test from_env_or_default returns defaults when no .env file exists."""
    config = Config.from_env_or_default(env_file="nonexistent.env")

    assert config.max_attempts == 4
    assert config.db_path == "./chat_history.db"


def test_env_parsing_edge_cases():
    """Test environment variable parsing edge cases."""
    env_vars = {
        "RECOVER_ON_RETRY": "TRUE",  # uppercase
        "MAX_ATTEMPTS": "invalid",  # invalid int
        "CLEANUP_DAYS": "7",  # valid int
        "RESUME_TIMEOUT_SECONDS": "soon",  # invalid float
        "REQUEST_TIMEOUT_SECONDS": "",
    }

    with patch.dict(os.environ, env_vars, clear=False):
        config = Config.from_env(env_file=None)

        assert config.recover_on_retry is True
        assert config.max_attempts == 4  # Falls back to default
        assert config.cleanup_days == 7
        assert config.resume_timeout_seconds == 120.0
        assert config.request_timeout_seconds is None


def test_setup_cli_logging_quiets_http_loggers(tmp_path):
    """HTTP client loggers stay at WARNING unless debug mode is on."""
    config = Config(log_file=str(tmp_path / "chat.log"), enable_file_logging=False)
    config.setup_cli_logging()

    assert logging.getLogger("httpx").level == logging.WARNING
    assert logging.getLogger("httpcore").level == logging.WARNING

    Config(enable_file_logging=False, debug_mode=True).setup_cli_logging()
    assert logging.getLogger("httpx").level == logging.DEBUG


def test_setup_logging_adds_file_handler(tmp_path):
    from logging.handlers import RotatingFileHandler

    log_file = tmp_path / "chat.log"
    config = Config(log_file=str(log_file), enable_file_logging=True)
    config.setup_logging()

    root = logging.getLogger()
    file_handlers = [h for h in root.handlers if isinstance(h, RotatingFileHandler)]
    try:
        assert len(file_handlers) == 1
        assert file_handlers[0].baseFilename == str(log_file)
    finally:
        for handler in file_handlers:
            root.removeHandler(handler)
            handler.close()
