"""
Configuration module for the corpus tagging daemon.

This module centralizes the loading and validation of all configuration
parameters from environment variables. It provides a single `Settings`
class that acts as a container for all configurable values, ensuring
that they are defined in one place and can be easily imported and used
throughout the application.

Numeric tuning values (chunk size, rate limits, confidences) are defaults
carried over from production use; override them per deployment.
"""

import os
from typing import Literal

import openai

DEFAULT_JOB_TABLES = (
    "semantic_annotation_jobs",
    "semantic_refinement_jobs",
    "semantic_reprocess_jobs",
)


def _parse_list(value: str | None) -> list[str]:
    """Split a comma separated env value, dropping blanks."""
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


class Settings:
    """
    A container for all configuration settings, loaded from environment variables.

    This class centralizes configuration, providing default values for optional
    settings and raising errors for missing required settings.
    """

    # --- Datastore ---
    SUPABASE_URL: str
    SUPABASE_SERVICE_KEY: str

    # --- Fast flag store (kill switch) ---
    REDIS_REST_URL: str | None
    REDIS_REST_TOKEN: str | None

    # --- LLM Provider Configuration ---
    LLM_PROVIDER: Literal["openai", "ollama"]
    OLLAMA_BASE_URL: str | None
    OPENAI_API_KEY: str | None
    AI_MODELS: list[str]
    AI_MAX_TOKENS: int

    # --- Daemon Configuration ---
    POLL_INTERVAL: int
    JOB_WORKERS: int
    WORD_WORKERS: int
    CHUNK_SIZE: int
    MAX_RETRIES: int
    MAX_RETRY_BACKOFF_SECONDS: int
    REQUEST_TIMEOUT: int

    # --- AI rate limiting ---
    AI_RATE_LIMIT_REQUESTS: int
    AI_RATE_LIMIT_WINDOW_MS: int
    AI_RATE_LIMIT_MIN_DELAY_MS: int
    AI_OVERLOAD_BLOCK_MS: int
    AI_MAX_WAIT_SECONDS: int

    # --- Classification ---
    DICTIONARY_CONFIDENCE: float
    LOW_CONFIDENCE_THRESHOLD: float
    CONTEXT_WINDOW_CHARS: int

    # --- Jobs / orchestration ---
    ORPHAN_TIMEOUT_MINUTES: int
    MAX_CHUNK_FAILURES: int
    KILL_SWITCH_TTL_SECONDS: int
    KILL_SWITCH_TABLE_TIMEOUT: int
    JOB_TABLES: list[str]
    CORPORA: list[str]

    # --- Logging ---
    LOG_LEVEL: str
    LOG_FORMAT: Literal["console", "json"]

    def __init__(self):
        """
        Loads settings from environment variables and performs validation.
        """
        # --- Datastore ---
        self.SUPABASE_URL = os.getenv("SUPABASE_URL", "http://localhost:54321").rstrip(
            "/"
        )
        self.SUPABASE_SERVICE_KEY = self._get_required_env("SUPABASE_SERVICE_KEY")

        # --- Fast flag store ---
        redis_url = os.getenv("REDIS_REST_URL")
        self.REDIS_REST_URL = redis_url.rstrip("/") if redis_url else None
        self.REDIS_REST_TOKEN = os.getenv("REDIS_REST_TOKEN")

        # --- LLM Provider Configuration ---
        self.LLM_PROVIDER = os.getenv("LLM_PROVIDER", "openai")
        if self.LLM_PROVIDER not in ("openai", "ollama"):
            raise ValueError("LLM_PROVIDER must be 'openai' or 'ollama'")

        if self.LLM_PROVIDER == "ollama":
            self.OLLAMA_BASE_URL = os.getenv(
                "OLLAMA_BASE_URL", "http://localhost:11434/v1/"
            )
            self.OPENAI_API_KEY = None  # Not used for Ollama
            default_models = "gemma3:12b,gemma3:27b"
        else:  # openai
            self.OLLAMA_BASE_URL = None
            self.OPENAI_API_KEY = self._get_required_env("OPENAI_API_KEY")
            default_models = "gpt-5-mini,gpt-5"

        self.AI_MODELS = _parse_list(os.getenv("AI_MODELS", default_models))
        if not self.AI_MODELS:
            raise ValueError("AI_MODELS must name at least one model")
        self.AI_MAX_TOKENS = int(os.getenv("AI_MAX_TOKENS", 0))

        # --- Daemon Configuration ---
        self.POLL_INTERVAL = int(os.getenv("POLL_INTERVAL", 15))
        self.JOB_WORKERS = max(1, int(os.getenv("JOB_WORKERS", 2)))
        self.WORD_WORKERS = max(1, int(os.getenv("WORD_WORKERS", 4)))
        self.CHUNK_SIZE = max(1, int(os.getenv("CHUNK_SIZE", 50)))
        self.MAX_RETRIES = int(os.getenv("MAX_RETRIES", 5))
        self.MAX_RETRY_BACKOFF_SECONDS = int(os.getenv("MAX_RETRY_BACKOFF_SECONDS", 30))
        self.REQUEST_TIMEOUT = int(os.getenv("REQUEST_TIMEOUT", 60))

        # --- AI rate limiting ---
        self.AI_RATE_LIMIT_REQUESTS = max(1, int(os.getenv("AI_RATE_LIMIT_REQUESTS", 10)))
        self.AI_RATE_LIMIT_WINDOW_MS = int(os.getenv("AI_RATE_LIMIT_WINDOW_MS", 60000))
        self.AI_RATE_LIMIT_MIN_DELAY_MS = int(os.getenv("AI_RATE_LIMIT_MIN_DELAY_MS", 200))
        self.AI_OVERLOAD_BLOCK_MS = int(os.getenv("AI_OVERLOAD_BLOCK_MS", 30000))
        self.AI_MAX_WAIT_SECONDS = int(os.getenv("AI_MAX_WAIT_SECONDS", 120))

        # --- Classification ---
        self.DICTIONARY_CONFIDENCE = float(os.getenv("DICTIONARY_CONFIDENCE", 0.95))
        self.LOW_CONFIDENCE_THRESHOLD = float(
            os.getenv("LOW_CONFIDENCE_THRESHOLD", 0.80)
        )
        self.CONTEXT_WINDOW_CHARS = int(os.getenv("CONTEXT_WINDOW_CHARS", 40))

        # --- Jobs / orchestration ---
        self.ORPHAN_TIMEOUT_MINUTES = int(os.getenv("ORPHAN_TIMEOUT_MINUTES", 10))
        self.MAX_CHUNK_FAILURES = max(1, int(os.getenv("MAX_CHUNK_FAILURES", 3)))
        self.KILL_SWITCH_TTL_SECONDS = int(os.getenv("KILL_SWITCH_TTL_SECONDS", 1800))
        self.KILL_SWITCH_TABLE_TIMEOUT = int(os.getenv("KILL_SWITCH_TABLE_TIMEOUT", 5))
        self.JOB_TABLES = _parse_list(os.getenv("JOB_TABLES")) or list(DEFAULT_JOB_TABLES)
        self.CORPORA = _parse_list(os.getenv("CORPORA", "gaucho,nordestino,sertanejo"))

        # --- Logging ---
        self.LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
        self.LOG_FORMAT = os.getenv("LOG_FORMAT", "console").lower()
        if self.LOG_FORMAT not in ("console", "json"):
            raise ValueError("LOG_FORMAT must be 'console' or 'json'")

    @property
    def PRIMARY_MODEL(self) -> str:
        return self.AI_MODELS[0]

    @property
    def SECONDARY_MODEL(self) -> str:
        """The more expensive model; falls back to the primary when only one is set."""
        return self.AI_MODELS[1] if len(self.AI_MODELS) > 1 else self.AI_MODELS[0]

    def _get_required_env(self, var_name: str) -> str:
        """
        Gets a required environment variable, raising an error if it's not set.
        """
        value = os.getenv(var_name)
        if value is None:
            raise ValueError(f"Required environment variable '{var_name}' is not set.")
        return value


def setup_libraries(settings: Settings) -> None:
    """
    Configures third-party libraries based on the application settings.
    """
    if settings.LLM_PROVIDER == "ollama":
        openai.base_url = settings.OLLAMA_BASE_URL
        openai.api_key = "dummy"
    else:
        openai.api_key = settings.OPENAI_API_KEY
