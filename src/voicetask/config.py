"""Configuration management for the voicetask pipeline."""

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv


# Built-in defaults
DEFAULT_SYSTEM_PROMPT = """You turn short spoken household reminders into structured tasks.
Parents dictate things like "emmener Lucas chez le dentiste mardi" or
"buy milk for Emma's lunchbox tomorrow". Extract only what was said; never invent
a child, a date, or an urgency that the speaker did not express."""

DEFAULT_EXTRACTION_PROMPT = """Classify this household reminder.

Language: {language}
Today: {today}
Household members:
{roster}

Respond with ONLY a valid JSON object matching this schema:
{schema}

Allowed categories: {categories}
Allowed urgency levels: {urgencies}
Dates must be ISO formatted (YYYY-MM-DD) or null.

Reminder:
{text}"""

MB = 1024 * 1024


def _resolve_prompt(env_var_name: str, default: str) -> str:
    """
    Resolve a prompt value from environment variable.

    If env var is set to a file path that exists, read its contents.
    Otherwise use the string value directly.
    If unset, use the provided default.
    """
    value = os.getenv(env_var_name)
    if value is None:
        return default

    path = Path(value).expanduser()
    if path.exists() and path.is_file():
        return path.read_text()

    return value


def _parse_bool(value: str | None) -> bool:
    """Parse boolean from environment variable."""
    if value is None:
        return False
    return value.lower() in ("true", "1", "yes", "on")


@dataclass
class Config:
    """Configuration for the voice-to-task pipeline."""

    gateway_model: str = "qwen3-4b"
    gateway_url: str = "http://localhost:8800/v1"
    api_key: str = "not-needed"
    stt_model: str = "whisper-1"
    use_llm_extraction: bool = False
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    extraction_prompt: str = DEFAULT_EXTRACTION_PROMPT
    provider_timeout: float = 30.0
    max_upload_bytes: int = 10 * MB
    max_chunk_bytes: int = 1 * MB
    min_duration: float = 0.5
    max_duration: float = 30.0
    min_confidence: float = 0.5
    min_text_chars: int = 3
    min_audio_seconds: float = 0.3
    fallback_language: str = "fr"
    cache_ttl: float = 3600.0
    preview_ttl: float = 3600.0
    default_capacity: float = 100.0
    default_due_days: int = 7
    llm_skip_confidence: float = 0.85
    keywords_path: str = ""
    verbose: bool = False


def load_config() -> Config:
    """
    Load configuration from environment variables and .env file.

    Returns:
        Config instance with all settings loaded.
    """
    load_dotenv()

    config = Config(
        gateway_model=os.getenv("GATEWAY_MODEL", "qwen3-4b"),
        gateway_url=os.getenv("GATEWAY_URL", "http://localhost:8800/v1"),
        api_key=os.getenv("GATEWAY_API_KEY", "not-needed"),
        stt_model=os.getenv("STT_MODEL", "whisper-1"),
        use_llm_extraction=_parse_bool(os.getenv("USE_LLM_EXTRACTION")),
        provider_timeout=float(os.getenv("PROVIDER_TIMEOUT", "30")),
        max_upload_bytes=int(os.getenv("MAX_UPLOAD_BYTES", str(10 * MB))),
        max_chunk_bytes=int(os.getenv("MAX_CHUNK_BYTES", str(1 * MB))),
        min_duration=float(os.getenv("MIN_AUDIO_DURATION", "0.5")),
        max_duration=float(os.getenv("MAX_AUDIO_DURATION", "30")),
        min_confidence=float(os.getenv("MIN_TRANSCRIPTION_CONFIDENCE", "0.5")),
        min_text_chars=int(os.getenv("MIN_TRANSCRIPT_CHARS", "3")),
        min_audio_seconds=float(os.getenv("MIN_TRANSCRIPT_SECONDS", "0.3")),
        fallback_language=os.getenv("FALLBACK_LANGUAGE", "fr"),
        cache_ttl=float(os.getenv("TRANSCRIPTION_CACHE_TTL", "3600")),
        preview_ttl=float(os.getenv("PREVIEW_TTL", "3600")),
        default_capacity=float(os.getenv("DEFAULT_CAPACITY", "100")),
        default_due_days=int(os.getenv("DEFAULT_DUE_DAYS", "7")),
        llm_skip_confidence=float(os.getenv("LLM_SKIP_CONFIDENCE", "0.85")),
        keywords_path=os.getenv("KEYWORDS_PATH", ""),
        verbose=_parse_bool(os.getenv("VERBOSE")),
    )

    # Resolve prompts (file path vs inline string)
    config.system_prompt = _resolve_prompt("SYSTEM_PROMPT", DEFAULT_SYSTEM_PROMPT)
    config.extraction_prompt = _resolve_prompt("EXTRACTION_PROMPT", DEFAULT_EXTRACTION_PROMPT)

    return config
