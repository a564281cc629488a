"""Configuration settings for the stage agent chat client."""

import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv


@dataclass
class Config:
    """Main configuration for the streaming conversation client."""

    # Backend
    backend_url: str = ""
    api_key: str = ""
    access_token: Optional[str] = None
    agent_function: str = "agent-prompt"

    # Retry / backoff
    max_attempts: int = 4
    base_retry_delay_ms: int = 1000
    recover_on_retry: bool = True

    # Timeouts (None leaves fresh requests to the transport)
    request_timeout_seconds: Optional[float] = None
    resume_timeout_seconds: float = 120.0

    # Local history store
    db_path: str = "./chat_history.db"
    cleanup_days: int = 30

    log_level: str = "INFO"
    log_file: Optional[str] = "stage_agent_chat.log"
    enable_file_logging: bool = True
    log_format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    cli_log_format: str = "%(asctime)s - %(message)s"
    debug_mode: bool = False

    @property
    def credential(self) -> Optional[str]:
        """Bearer credential for authenticated calls, if a session exists."""
        return self.access_token or None

    @classmethod
    def from_env(cls, env_file: Optional[str] = ".env") -> "Config":
        """Load configuration from environment variables and .env file.

        Args:
            env_file: Path to .env file. If None, only system env vars are used.

        Returns:
            Config instance with values from environment variables.
        """
        if env_file:
            if os.path.exists(env_file):
                load_dotenv(env_file)

        def get_env_bool(key: str, default: bool) -> bool:
            value = os.getenv(key)
            if value is None:
                return default
            return value.lower() in ("true", "1", "yes", "on")

        def get_env_int(key: str, default: int) -> int:
            value = os.getenv(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError:
                return default

        def get_env_float(key: str, default: Optional[float]) -> Optional[float]:
            value = os.getenv(key)
            if value is None or value == "":
                return default
            try:
                return float(value)
            except ValueError:
                return default

        return cls(
            # Backend
            backend_url=os.getenv("SUPABASE_URL", "").rstrip("/"),
            api_key=os.getenv("SUPABASE_ANON_KEY", ""),
            access_token=os.getenv("ACCESS_TOKEN") or None,
            agent_function=os.getenv("AGENT_FUNCTION", "agent-prompt"),
            # Retry / backoff
            max_attempts=get_env_int("MAX_ATTEMPTS", 4),
            base_retry_delay_ms=get_env_int("BASE_RETRY_DELAY_MS", 1000),
            recover_on_retry=get_env_bool("RECOVER_ON_RETRY", True),
            # Timeouts
            request_timeout_seconds=get_env_float("REQUEST_TIMEOUT_SECONDS", None),
            resume_timeout_seconds=get_env_float("RESUME_TIMEOUT_SECONDS", 120.0),
            # Local history store
            db_path=os.getenv("DB_PATH", "./chat_history.db"),
            cleanup_days=get_env_int("CLEANUP_DAYS", 30),
            # Logging
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_file=os.getenv("LOG_FILE", "stage_agent_chat.log"),
            enable_file_logging=get_env_bool("ENABLE_FILE_LOGGING", True),
            log_format=os.getenv(
                "LOG_FORMAT", "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
            ),
            cli_log_format=os.getenv("CLI_LOG_FORMAT", "%(asctime)s - %(message)s"),
            debug_mode=get_env_bool("DEBUG_MODE", False),
        )

    @classmethod
    def from_env_or_default(cls, env_file: Optional[str] = ".env") -> "Config":
        """Load from environment or return default config if .env doesn't exist.

        This is a convenience method that won't fail if .env file is missing.
        """
        if env_file and os.path.exists(env_file):
            return cls.from_env(env_file)
        return cls()

    def _configure_handlers(self, console_format: str) -> None:
        import logging
        from logging.handlers import RotatingFileHandler

        root_logger = logging.getLogger()
        root_logger.setLevel(getattr(logging, self.log_level.upper(), logging.INFO))

        # Clear existing handlers to avoid duplicates
        root_logger.handlers.clear()

        console_handler = logging.StreamHandler()
        console_handler.setFormatter(logging.Formatter(console_format))
        root_logger.addHandler(console_handler)

        if self.enable_file_logging and self.log_file:
            file_handler = RotatingFileHandler(
                self.log_file,
                maxBytes=10 * 1024 * 1024,  # 10MB
                backupCount=5,
            )
            # File logs always use the full format
            file_handler.setFormatter(logging.Formatter(self.log_format))
            root_logger.addHandler(file_handler)

        noisy_level = logging.DEBUG if self.debug_mode else logging.WARNING
        for name in ("httpx", "httpcore", "duckdb"):
            logging.getLogger(name).setLevel(noisy_level)

    def setup_logging(self) -> None:
        """Set up logging configuration based on config settings."""
        import logging

        self._configure_handlers(self.log_format)
        logging.info(
            f"Logging configured - Level: {self.log_level}, Debug mode: {self.debug_mode}, File: {self.log_file if self.enable_file_logging else 'None'}"
        )

    def setup_cli_logging(self) -> None:
        """Set up CLI-specific logging configuration with simplified format."""
        import logging

        self._configure_handlers(self.cli_log_format)
        logging.debug(
            f"CLI logging configured - Level: {self.log_level}, Debug mode: {self.debug_mode}, File: {self.log_file if self.enable_file_logging else 'None'}"
        )
