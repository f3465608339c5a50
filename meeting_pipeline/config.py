from __future__ import annotations

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Pipeline settings validated via Pydantic.

    Values are loaded from environment variables and/or a .env file.  Stages
    take a fresh snapshot of these at the start of every run.
    """

    # API Keys
    anthropic_api_key: str = ""
    openai_api_key: str = ""
    assemblyai_api_key: str = ""

    # Storage
    storage_dir: str = "data/meetings"

    # Language model
    llm_provider: str = "ollama"  # "ollama" | "anthropic"
    llm_endpoint: str = "http://localhost:11434"
    llm_model: str = "llama3.1"
    llm_context_size: int = 8096
    prompt_language: str = "en"  # "en" | "de"

    # Transcription
    transcription_provider: str = "openai"  # "openai" | "assemblyai"
    transcription_endpoint: str = "https://api.openai.com/v1"
    transcription_model: str = "whisper-1"
    assemblyai_speech_model: str = "universal-3-pro"
    transcription_language: str | None = None

    # Chunking
    summary_chunk_chars: int = 10_000
    audio_chunk_seconds: int = 1800
    silence_min_ms: int = 700
    silence_thresh_dbfs: float = -40.0

    # Call discipline
    max_retries: int = 3
    timeout_seconds: float = 120.0
    backoff_base_seconds: float = 1.0
    backoff_max_seconds: float = 30.0

    # Assembly
    summary_context_chunks: int | None = None  # None = full running summary
    speaker_label_scope: str = "global"  # "global" | "chunk"
    summary_format: str = "text"  # "text" | "structured"

    # HTTP server
    api_host: str = "127.0.0.1"
    api_port: int = 8000

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the process-wide Settings.

    Falls back to environment variables and defaults when the .env file is
    missing or unreadable.
    """
    try:
        return Settings()
    except OSError:
        return Settings(_env_file=None)  # type: ignore[call-arg]
