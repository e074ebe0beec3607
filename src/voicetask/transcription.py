"""Speech-to-text request tracking, provider adapters, and transcript quality."""

import asyncio
import logging
import math
import re
import time
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Any

import openai
from pydantic import ValidationError

from voicetask.errors import ProviderError
from voicetask.models import (
    CacheEntry,
    FailureCode,
    Language,
    ProviderTranscript,
    QualityGrade,
    TranscriptionFailure,
    TranscriptionQuality,
    TranscriptionRequest,
    TranscriptionResult,
    TranscriptionSegment,
    TranscriptionStore,
    WordTiming,
)

logger = logging.getLogger(__name__)

HIGH_CONFIDENCE = 0.85
MEDIUM_CONFIDENCE = 0.6
MIN_RELIABLE_CONFIDENCE = 0.5
DEFAULT_SEGMENT_CONFIDENCE = 0.85
SHORT_AUDIO_SECONDS = 1.0
SHORT_TEXT_CHARS = 10
CACHE_TTL = timedelta(hours=1)

LANGUAGE_ALIASES = {
    "french": "fr",
    "francais": "fr",
    "français": "fr",
    "english": "en",
    "anglais": "en",
    "spanish": "es",
    "espanol": "es",
    "español": "es",
    "german": "de",
    "deutsch": "de",
    "allemand": "de",
    "italian": "it",
    "italiano": "it",
    "portuguese": "pt",
    "portugues": "pt",
    "português": "pt",
    "dutch": "nl",
    "nederlands": "nl",
}

_SPACE_RE = re.compile(r"\s+")
_SPACE_BEFORE_PUNCT_RE = re.compile(r"\s+([,.!?;:])")
_MISSING_SPACE_AFTER_RE = re.compile(r"([,.!?;:])(?=[^\s\d,.!?;:])")
_FRENCH_DOUBLE_PUNCT_RE = re.compile(r"(?<=[^\s!?;:])([!?;:])")


def _now() -> datetime:
    return datetime.now(timezone.utc)


# --- Language and text normalization ---


def normalize_language(value: str | None, fallback: str = "fr") -> Language:
    """Map a code, locale or language name onto a supported language.

    "french", "FR" and "fr-FR" all become Language.FR. Anything
    unrecognized becomes the fallback.
    """
    if value:
        key = value.strip().lower()
        if key in LANGUAGE_ALIASES:
            return Language(LANGUAGE_ALIASES[key])
        code = re.split(r"[-_]", key, maxsplit=1)[0]
        try:
            return Language(code)
        except ValueError:
            pass
    try:
        return Language(fallback)
    except ValueError:
        return Language.FR


def clean_transcription_text(text: str) -> str:
    """Collapse whitespace and fix spacing around punctuation."""
    cleaned = _SPACE_RE.sub(" ", text).strip()
    cleaned = _SPACE_BEFORE_PUNCT_RE.sub(r"\1", cleaned)
    cleaned = _MISSING_SPACE_AFTER_RE.sub(r"\1 ", cleaned)
    return cleaned


def format_transcription_text(text: str, language: Language | str = Language.FR) -> str:
    """Clean text for display: capitalized, with French spacing before ! ? ; :"""
    formatted = clean_transcription_text(text)
    if not formatted:
        return formatted
    formatted = formatted[0].upper() + formatted[1:]
    if Language(language) == Language.FR:
        formatted = _FRENCH_DOUBLE_PUNCT_RE.sub(r" \1", formatted)
    return formatted


# --- Store operations ---


def start_transcription(
    store: TranscriptionStore,
    request: TranscriptionRequest,
    now: datetime | None = None,
) -> TranscriptionStore:
    """Register a pending request. A newer request for the same audio replaces the old one."""
    if request.audio_id in store.pending:
        logger.info(f"Replacing pending transcription for {request.audio_id}")
    request = request.model_copy(update={"requested_at": request.requested_at or now or _now()})
    return store.model_copy(update={"pending": {**store.pending, request.audio_id: request}})


def complete_transcription(
    store: TranscriptionStore,
    result: TranscriptionResult,
    now: datetime | None = None,
    cache_ttl: timedelta = CACHE_TTL,
) -> TranscriptionStore:
    """Store a result and clear its pending request, if there is one."""
    pending = {k: v for k, v in store.pending.items() if k != result.audio_id}
    entry = CacheEntry(
        result_id=result.id,
        audio_id=result.audio_id,
        expires_at=(now or _now()) + cache_ttl,
    )
    return store.model_copy(update={
        "pending": pending,
        "transcriptions": {**store.transcriptions, result.id: result},
        "cache": {**store.cache, result.audio_id: entry},
    })


def fail_transcription(store: TranscriptionStore, audio_id: str) -> TranscriptionStore:
    if audio_id not in store.pending:
        return store
    pending = {k: v for k, v in store.pending.items() if k != audio_id}
    return store.model_copy(update={"pending": pending})


def get_transcription(store: TranscriptionStore, transcription_id: str) -> TranscriptionResult | None:
    return store.transcriptions.get(transcription_id)


def get_transcription_by_audio_id(
    store: TranscriptionStore,
    audio_id: str,
    now: datetime | None = None,
) -> TranscriptionResult | None:
    """Look up the cached result for an audio reference, ignoring expired entries."""
    entry = store.cache.get(audio_id)
    if entry is None or entry.expires_at <= (now or _now()):
        return None
    return store.transcriptions.get(entry.result_id)


def is_pending(store: TranscriptionStore, audio_id: str) -> bool:
    return audio_id in store.pending


def clean_expired_cache(store: TranscriptionStore, now: datetime | None = None) -> TranscriptionStore:
    now = now or _now()
    cache = {k: v for k, v in store.cache.items() if v.expires_at > now}
    if len(cache) == len(store.cache):
        return store
    return store.model_copy(update={"cache": cache})


def get_transcription_stats(store: TranscriptionStore) -> dict[str, Any]:
    results = list(store.transcriptions.values())
    average = sum(r.confidence for r in results) / len(results) if results else 0.0
    return {
        "pending": len(store.pending),
        "completed": len(results),
        "cached": len(store.cache),
        "average_confidence": round(average, 3),
    }


# --- Quality ---


def _grade_for(confidence: float) -> QualityGrade:
    if confidence >= HIGH_CONFIDENCE:
        return QualityGrade.HIGH
    if confidence >= MEDIUM_CONFIDENCE:
        return QualityGrade.MEDIUM
    return QualityGrade.LOW


def _downgrade(grade: QualityGrade) -> QualityGrade:
    if grade == QualityGrade.HIGH:
        return QualityGrade.MEDIUM
    return QualityGrade.LOW


def assess_transcription_quality(result: TranscriptionResult) -> TranscriptionQuality:
    """Grade a transcript from its confidence, then downgrade for each weakness found."""
    grade = _grade_for(result.confidence)
    issues: list[str] = []
    suggestions: list[str] = []

    if result.duration < SHORT_AUDIO_SECONDS:
        issues.append("audio is very short")
        suggestions.append("Record a slightly longer message")
        grade = _downgrade(grade)

    if len(result.text.strip()) < SHORT_TEXT_CHARS:
        issues.append("transcript is very short")
        suggestions.append("Describe the task in a full sentence")
        grade = _downgrade(grade)

    weak = [s for s in result.segments if s.confidence < MEDIUM_CONFIDENCE]
    if weak:
        issues.append(f"{len(weak)} segment(s) with low confidence")
        grade = _downgrade(grade)

    if any(not s.text.strip() for s in result.segments):
        issues.append("empty segments detected")

    if result.confidence < MEDIUM_CONFIDENCE:
        suggestions.append("Speak closer to the microphone in a quiet place")

    return TranscriptionQuality(
        grade=grade,
        confidence=result.confidence,
        issues=issues,
        suggestions=suggestions,
    )


def is_transcription_reliable(
    result: TranscriptionResult,
    min_confidence: float = MIN_RELIABLE_CONFIDENCE,
    min_text_chars: int = 3,
    min_seconds: float = 0.3,
) -> bool:
    """Whether extraction should run on this transcript."""
    if result.confidence < min_confidence:
        return False
    if len(result.text.strip()) < min_text_chars:
        return False
    if result.duration < min_seconds:
        return False
    return assess_transcription_quality(result).grade != QualityGrade.LOW


# --- Providers ---


def _field(obj: Any, name: str, default: Any = None) -> Any:
    if isinstance(obj, dict):
        return obj.get(name, default)
    return getattr(obj, name, default)


def parse_whisper_response(response: Any) -> ProviderTranscript:
    """Convert a verbose_json Whisper answer into a ProviderTranscript.

    Segment confidence is exp(avg_logprob); the overall confidence is the
    mean over segments.
    """
    words = [
        WordTiming(
            word=str(_field(w, "word", "")).strip(),
            start=max(0.0, float(_field(w, "start", 0.0))),
            end=max(0.0, float(_field(w, "end", 0.0))),
        )
        for w in (_field(response, "words") or [])
    ]

    segments = []
    for i, raw in enumerate(_field(response, "segments") or []):
        logprob = _field(raw, "avg_logprob")
        confidence = math.exp(logprob) if logprob is not None else DEFAULT_SEGMENT_CONFIDENCE
        start = max(0.0, float(_field(raw, "start", 0.0)))
        end = max(0.0, float(_field(raw, "end", 0.0)))
        segments.append(TranscriptionSegment(
            id=int(_field(raw, "id", i)),
            text=str(_field(raw, "text", "")).strip(),
            start=start,
            end=end,
            confidence=min(1.0, max(0.0, confidence)),
            words=[w for w in words if start <= w.start < end],
        ))

    if segments:
        confidence = sum(s.confidence for s in segments) / len(segments)
    else:
        confidence = DEFAULT_SEGMENT_CONFIDENCE

    return ProviderTranscript(
        text=clean_transcription_text(str(_field(response, "text", "") or "")),
        language=_field(response, "language"),
        confidence=round(confidence, 4),
        duration=max(0.0, float(_field(response, "duration", 0.0) or 0.0)),
        segments=segments,
    )


class TranscriptionProvider(ABC):
    """Narrow interface to an external speech-to-text service."""

    name = "provider"

    @abstractmethod
    async def transcribe(
        self,
        request: TranscriptionRequest,
        audio: bytes,
        filename: str,
    ) -> ProviderTranscript:
        """Transcribe audio bytes, raising ProviderError on failure."""


class WhisperProvider(TranscriptionProvider):
    """Whisper transcription through an OpenAI-compatible gateway."""

    name = "whisper"

    def __init__(
        self,
        model: str = "whisper-1",
        base_url: str = "http://localhost:8800/v1",
        api_key: str = "not-needed",
    ):
        self.client = openai.AsyncOpenAI(base_url=base_url, api_key=api_key)
        self.model = model

    async def transcribe(
        self,
        request: TranscriptionRequest,
        audio: bytes,
        filename: str,
    ) -> ProviderTranscript:
        kwargs: dict[str, Any] = {
            "model": self.model,
            "file": (filename or "audio.webm", audio),
            "response_format": "verbose_json",
        }
        if request.language != Language.AUTO:
            kwargs["language"] = request.language.value
        granularities = []
        if request.segments:
            granularities.append("segment")
        if request.word_timings:
            granularities.append("word")
        if granularities:
            kwargs["timestamp_granularities"] = granularities

        try:
            response = await self.client.audio.transcriptions.create(**kwargs)
        except openai.RateLimitError as e:
            raise ProviderError(f"Whisper rate limited: {e}", retryable=True) from e
        except openai.APIConnectionError as e:
            raise ProviderError(f"Whisper unreachable: {e}", retryable=True) from e
        except openai.OpenAIError as e:
            raise ProviderError(f"Whisper request failed: {e}") from e

        try:
            return parse_whisper_response(response)
        except (ValueError, TypeError, ValidationError) as e:
            raise ProviderError(f"unusable Whisper answer: {e}") from e


def build_transcription_result(
    request: TranscriptionRequest,
    transcript: ProviderTranscript,
    provider: str,
    processing_ms: int = 0,
    fallback_language: str = "fr",
    now: datetime | None = None,
) -> TranscriptionResult:
    if request.language == Language.AUTO:
        language = normalize_language(transcript.language, fallback_language)
    else:
        language = request.language
    return TranscriptionResult(
        id=f"tr_{uuid.uuid4().hex[:12]}",
        audio_id=request.audio_id,
        text=transcript.text,
        language=language,
        detected_language=transcript.language,
        confidence=transcript.confidence,
        duration=transcript.duration,
        segments=transcript.segments,
        provider=provider,
        processed_at=now or _now(),
        processing_ms=max(0, processing_ms),
    )


async def run_transcription(
    store: TranscriptionStore,
    provider: TranscriptionProvider,
    request: TranscriptionRequest,
    audio: bytes,
    filename: str = "",
    timeout: float = 60.0,
    fallback_language: str = "fr",
) -> tuple[TranscriptionStore, TranscriptionResult | TranscriptionFailure]:
    """Call the provider once, bounded by timeout, and record the outcome.

    Failures come back as a TranscriptionFailure. Retrying is the caller's call.
    """
    if not audio:
        failure = TranscriptionFailure(
            audio_id=request.audio_id,
            code=FailureCode.INVALID_AUDIO,
            message="no audio data",
        )
        return store, failure

    store = start_transcription(store, request)
    started = time.monotonic()
    try:
        transcript = await asyncio.wait_for(
            provider.transcribe(request, audio, filename), timeout=timeout
        )
    except asyncio.TimeoutError:
        logger.warning(f"Transcription of {request.audio_id} timed out after {timeout}s")
        failure = TranscriptionFailure(
            audio_id=request.audio_id,
            code=FailureCode.TIMEOUT,
            message=f"provider did not answer within {timeout:g}s",
            retryable=True,
        )
        return fail_transcription(store, request.audio_id), failure
    except ProviderError as e:
        logger.warning(f"Transcription of {request.audio_id} failed: {e}")
        failure = TranscriptionFailure(
            audio_id=request.audio_id,
            code=FailureCode.PROVIDER_ERROR,
            message=str(e),
            retryable=e.retryable,
        )
        return fail_transcription(store, request.audio_id), failure
    except Exception as e:
        logger.exception(f"Unexpected error transcribing {request.audio_id}")
        failure = TranscriptionFailure(
            audio_id=request.audio_id,
            code=FailureCode.PROVIDER_ERROR,
            message=f"{type(e).__name__}: {e}",
        )
        return fail_transcription(store, request.audio_id), failure

    elapsed_ms = int((time.monotonic() - started) * 1000)
    result = build_transcription_result(
        request, transcript, provider.name, elapsed_ms, fallback_language
    )
    logger.info(
        f"Transcribed {request.audio_id} ({result.language.value}, "
        f"confidence {result.confidence:.2f}, {elapsed_ms}ms)"
    )
    return complete_transcription(store, result), result
