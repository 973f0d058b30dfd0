"""
Configuration module for feedsift.

This module centralizes the loading and validation of all configuration
parameters from environment variables. It provides a single `Settings`
class that acts as a container for all configurable values, so the
document source, the matching service and the search engine read their
tunables from one place.
"""

import os
from typing import Literal

import openai


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


class Settings:
    """
    A container for all configuration settings, loaded from environment variables.

    This class centralizes configuration, providing default values for optional
    settings and raising errors for missing required settings.
    """

    # --- Document source ---
    DOCUMENT_SOURCE_URL: str
    DOCUMENT_SOURCE_TOKEN: str | None
    SEARCH_MAX_PAGES: int

    # --- LLM Provider Configuration ---
    LLM_PROVIDER: Literal["openai", "ollama"]
    OLLAMA_BASE_URL: str | None
    OPENAI_API_KEY: str | None
    AI_MODELS: list[str]

    # --- Search engine ---
    FETCH_BATCH_SIZE: int
    FEED_MAX_SIZE: int
    DISCARD_INCONCLUSIVE: bool

    # --- Matching service ---
    MATCHING_WORKERS: int
    MATCHING_MAX_CHARS: int

    # --- Network ---
    MAX_RETRIES: int
    MAX_RETRY_BACKOFF_SECONDS: int
    REQUEST_TIMEOUT: int

    # --- Logging ---
    LOG_LEVEL: str
    LOG_FORMAT: Literal["console", "json"]

    def __init__(self):
        """
        Loads settings from environment variables and performs validation.
        """
        # --- Document source ---
        self.DOCUMENT_SOURCE_URL = os.getenv(
            "DOCUMENT_SOURCE_URL", "http://localhost:8080/api"
        ).rstrip("/")
        self.DOCUMENT_SOURCE_TOKEN = os.getenv("DOCUMENT_SOURCE_TOKEN") or None
        self.SEARCH_MAX_PAGES = max(1, int(os.getenv("SEARCH_MAX_PAGES", 50)))

        # --- LLM Provider Configuration ---
        self.LLM_PROVIDER = os.getenv("LLM_PROVIDER", "openai")
        if self.LLM_PROVIDER not in ("openai", "ollama"):
            raise ValueError("LLM_PROVIDER must be 'openai' or 'ollama'")

        if self.LLM_PROVIDER == "ollama":
            self.OLLAMA_BASE_URL = os.getenv(
                "OLLAMA_BASE_URL", "http://localhost:11434/v1/"
            )
            self.OPENAI_API_KEY = None  # Not used for Ollama
            default_models = "gemma3:27b,gemma3:12b"
        else:  # openai
            self.OLLAMA_BASE_URL = None
            self.OPENAI_API_KEY = self._get_required_env("OPENAI_API_KEY")
            default_models = "gpt-5-mini,o4-mini"

        self.AI_MODELS = [
            model.strip()
            for model in os.getenv("AI_MODELS", default_models).split(",")
            if model.strip()
        ]
        if not self.AI_MODELS:
            raise ValueError("AI_MODELS must name at least one model")

        # --- Search engine ---
        self.FETCH_BATCH_SIZE = int(os.getenv("FETCH_BATCH_SIZE", 100))
        if self.FETCH_BATCH_SIZE < 1:
            raise ValueError("FETCH_BATCH_SIZE must be >= 1")
        self.FEED_MAX_SIZE = int(os.getenv("FEED_MAX_SIZE", -1))
        self.DISCARD_INCONCLUSIVE = _parse_bool(
            os.getenv("DISCARD_INCONCLUSIVE", "false")
        )

        # --- Matching service ---
        self.MATCHING_WORKERS = max(1, int(os.getenv("MATCHING_WORKERS", 2)))
        self.MATCHING_MAX_CHARS = int(os.getenv("MATCHING_MAX_CHARS", 1000))

        # --- Network ---
        self.MAX_RETRIES = int(os.getenv("MAX_RETRIES", 5))
        self.MAX_RETRY_BACKOFF_SECONDS = int(
            os.getenv("MAX_RETRY_BACKOFF_SECONDS", 30)
        )
        self.REQUEST_TIMEOUT = int(os.getenv("REQUEST_TIMEOUT", 60))

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


def setup_libraries(settings: Settings) -> None:
    """
    Configures third-party libraries based on the application settings.
    """
    if settings.LLM_PROVIDER == "ollama":
        openai.base_url = settings.OLLAMA_BASE_URL
        openai.api_key = "dummy"
    else:
        openai.api_key = settings.OPENAI_API_KEY
