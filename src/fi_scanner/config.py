"""
Configuration module for the planning FI scanner.

This module centralizes the loading and validation of all configuration
parameters from environment variables. It provides a single `Settings`
class that acts as a container for all configurable values, ensuring
that they are defined in one place and can be easily imported and used
throughout the application.
"""

import os
from typing import Literal

import openai


def _parse_list(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


class Settings:
    """
    A container for all configuration settings, loaded from environment variables.

    This class centralizes configuration, providing default values for optional
    settings and raising errors for missing required settings.
    """

    # --- Object store ---
    S3_BUCKET_NAME: str
    S3_PREFIX: str
    S3_PAGE_SIZE: int
    AWS_REGION: str
    S3_ENDPOINT_URL: str | None
    SCAN_TIMEOUT_SECONDS: int | None
    SCAN_MAX_OBJECTS: int | None
    TARGET_EXTENSIONS: list[str]

    # --- LLM Provider Configuration ---
    LLM_PROVIDER: Literal["openai", "ollama"]
    OLLAMA_BASE_URL: str | None
    OPENAI_API_KEY: str | None
    CLASSIFY_MODEL: str
    CLASSIFY_CHEAP_MODEL: str
    REQUEST_TIMEOUT: int

    # --- Retry ---
    MAX_RETRIES: int
    RETRY_BASE_DELAY: float
    MAX_RETRY_BACKOFF_SECONDS: float

    # --- Cascade ---
    MAX_TEXT_CHARS: int
    MIN_TEXT_CHARS: int
    MAX_ESTIMATED_PAGES: int
    CHARS_PER_PAGE: int
    CHEAP_HEAD_CHARS: int
    CHEAP_TAIL_CHARS: int
    RESULT_CACHE_SIZE: int
    CACHE_PREFIX_CHARS: int
    EVIDENCE_WINDOW_CHARS: int

    # --- Job runner ---
    CHECKPOINT_WARMUP: int
    CHECKPOINT_INTERVAL: int
    PROGRESS_INTERVAL: int
    MEMORY_LIMIT_MB: int
    MEMORY_FRACTION: float
    DOCUMENT_PACING_SECONDS: float
    POLL_INTERVAL: int
    JOB_LEASE_SECONDS: int
    JOB_DB_PATH: str

    # --- Collaborators ---
    METADATA_API_URL: str | None
    METADATA_API_KEY: str | None
    METADATA_CACHE_SIZE: int
    METADATA_CACHE_TTL_SECONDS: int
    PROJECT_URL_PREFIX: str
    NOTIFY_WEBHOOK_URL: str | None

    # --- Logging ---
    LOG_LEVEL: str
    LOG_FORMAT: Literal["console", "json"]

    def __init__(self):
        """
        Loads settings from environment variables and performs validation.
        """
        # --- Object store ---
        self.S3_BUCKET_NAME = self._get_required_env("S3_BUCKET_NAME")
        prefix = os.getenv("S3_PREFIX", "planning-docs/")
        self.S3_PREFIX = prefix if not prefix or prefix.endswith("/") else prefix + "/"
        self.S3_PAGE_SIZE = max(1, min(1000, int(os.getenv("S3_PAGE_SIZE", 1000))))
        self.AWS_REGION = os.getenv("AWS_REGION", "eu-west-2")
        self.S3_ENDPOINT_URL = os.getenv("S3_ENDPOINT_URL") or None
        self.SCAN_TIMEOUT_SECONDS = self._optional_int("SCAN_TIMEOUT_SECONDS", 600)
        self.SCAN_MAX_OBJECTS = self._optional_int("SCAN_MAX_OBJECTS", None)
        self.TARGET_EXTENSIONS = [
            ext.lower() if ext.startswith(".") else f".{ext.lower()}"
            for ext in _parse_list(os.getenv("TARGET_EXTENSIONS", ".pdf,.docx"))
        ]
        if not self.TARGET_EXTENSIONS:
            raise ValueError("TARGET_EXTENSIONS must list at least one extension")

        # --- LLM Provider Configuration ---
        self.LLM_PROVIDER = os.getenv("LLM_PROVIDER", "openai")
        if self.LLM_PROVIDER not in ("openai", "ollama"):
            raise ValueError("LLM_PROVIDER must be 'openai' or 'ollama'")

        if self.LLM_PROVIDER == "ollama":
            self.OLLAMA_BASE_URL = os.getenv(
                "OLLAMA_BASE_URL", "http://localhost:11434/v1/"
            )
            self.OPENAI_API_KEY = None  # Not used for Ollama
            self.CLASSIFY_MODEL = os.getenv("CLASSIFY_MODEL", "gemma3:27b")
            self.CLASSIFY_CHEAP_MODEL = os.getenv("CLASSIFY_CHEAP_MODEL", "gemma3:12b")
        else:  # openai
            self.OLLAMA_BASE_URL = None
            self.OPENAI_API_KEY = self._get_required_env("OPENAI_API_KEY")
            self.CLASSIFY_MODEL = os.getenv("CLASSIFY_MODEL", "gpt-4o-mini")
            self.CLASSIFY_CHEAP_MODEL = os.getenv(
                "CLASSIFY_CHEAP_MODEL", self.CLASSIFY_MODEL
            )
        self.REQUEST_TIMEOUT = int(os.getenv("REQUEST_TIMEOUT", 60))

        # --- Retry ---
        self.MAX_RETRIES = int(os.getenv("MAX_RETRIES", 6))
        self.RETRY_BASE_DELAY = float(os.getenv("RETRY_BASE_DELAY", 2.0))
        self.MAX_RETRY_BACKOFF_SECONDS = float(
            os.getenv("MAX_RETRY_BACKOFF_SECONDS", 60)
        )

        # --- Cascade ---
        self.MAX_TEXT_CHARS = int(os.getenv("MAX_TEXT_CHARS", 32000))
        self.MIN_TEXT_CHARS = int(os.getenv("MIN_TEXT_CHARS", 100))
        self.MAX_ESTIMATED_PAGES = int(os.getenv("MAX_ESTIMATED_PAGES", 100))
        self.CHARS_PER_PAGE = max(1, int(os.getenv("CHARS_PER_PAGE", 2500)))
        self.CHEAP_HEAD_CHARS = int(os.getenv("CHEAP_HEAD_CHARS", 10000))
        self.CHEAP_TAIL_CHARS = int(os.getenv("CHEAP_TAIL_CHARS", 5000))
        self.RESULT_CACHE_SIZE = max(1, int(os.getenv("RESULT_CACHE_SIZE", 1000)))
        self.CACHE_PREFIX_CHARS = int(os.getenv("CACHE_PREFIX_CHARS", 1000))
        self.EVIDENCE_WINDOW_CHARS = int(os.getenv("EVIDENCE_WINDOW_CHARS", 200))

        # --- Job runner ---
        self.CHECKPOINT_WARMUP = int(os.getenv("CHECKPOINT_WARMUP", 100))
        self.CHECKPOINT_INTERVAL = max(1, int(os.getenv("CHECKPOINT_INTERVAL", 100)))
        self.PROGRESS_INTERVAL = max(1, int(os.getenv("PROGRESS_INTERVAL", 10000)))
        self.MEMORY_LIMIT_MB = int(os.getenv("MEMORY_LIMIT_MB", 512))
        self.MEMORY_FRACTION = float(os.getenv("MEMORY_FRACTION", 0.88))
        if not 0 < self.MEMORY_FRACTION <= 1:
            raise ValueError("MEMORY_FRACTION must be in (0, 1]")
        self.DOCUMENT_PACING_SECONDS = float(os.getenv("DOCUMENT_PACING_SECONDS", 0))
        self.POLL_INTERVAL = int(os.getenv("POLL_INTERVAL", 60))
        self.JOB_LEASE_SECONDS = int(os.getenv("JOB_LEASE_SECONDS", 900))
        self.JOB_DB_PATH = os.getenv("JOB_DB_PATH", "fi_scanner.sqlite3")

        # --- Collaborators ---
        self.METADATA_API_URL = (os.getenv("METADATA_API_URL") or "").rstrip("/") or None
        self.METADATA_API_KEY = os.getenv("METADATA_API_KEY") or None
        self.METADATA_CACHE_SIZE = int(os.getenv("METADATA_CACHE_SIZE", 5000))
        self.METADATA_CACHE_TTL_SECONDS = int(
            os.getenv("METADATA_CACHE_TTL_SECONDS", 24 * 60 * 60)
        )
        self.PROJECT_URL_PREFIX = os.getenv(
            "PROJECT_URL_PREFIX", "https://app.buildinginfo.com/"
        )
        self.NOTIFY_WEBHOOK_URL = os.getenv("NOTIFY_WEBHOOK_URL") or None

        # --- Logging ---
        self.LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
        self.LOG_FORMAT = os.getenv("LOG_FORMAT", "console").lower()
        if self.LOG_FORMAT not in ("console", "json"):
            raise ValueError("LOG_FORMAT must be 'console' or 'json'")

    def _get_required_env(self, var_name: str) -> str:
        """
        Gets a required environment variable, raising an error if it's not set.
        """
        value = os.getenv(var_name)
        if value is None:
            raise ValueError(f"Required environment variable '{var_name}' is not set.")
        return value

    def _optional_int(self, var_name: str, default: int | None) -> int | None:
        """Parse an optional integer; empty, zero or negative disables the limit."""
        raw = os.getenv(var_name)
        if raw is None:
            return default
        raw = raw.strip()
        if not raw:
            return None
        value = int(raw)
        return value if value > 0 else None

    @property
    def memory_ceiling_bytes(self) -> int:
        """Resident memory above which a running job pauses itself."""
        return int(self.MEMORY_LIMIT_MB * 1024 * 1024 * self.MEMORY_FRACTION)


def setup_libraries(settings: Settings) -> None:
    """
    Configures third-party libraries based on the application settings.
    """
    if settings.LLM_PROVIDER == "ollama":
        openai.base_url = settings.OLLAMA_BASE_URL
        openai.api_key = "dummy"
    else:
        openai.api_key = settings.OPENAI_API_KEY
