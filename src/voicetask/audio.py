"""Chunked audio intake: upload tracking, reassembly, and validation.

All store operations are pure: they take an ``AudioStore`` and return a new
one. The caller owns the current snapshot and any locking around it.
"""

import logging
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import PurePath

from voicetask.errors import AssemblyError, InvalidInputError
from voicetask.models import (
    AudioChunk,
    AudioFormat,
    AudioStore,
    AudioValidation,
    Upload,
    UploadStatus,
    ValidationResult,
)

logger = logging.getLogger(__name__)

MAX_UPLOAD_BYTES = 10 * 1024 * 1024
MAX_CHUNK_BYTES = 1024 * 1024
MIN_DURATION = 0.5
MAX_DURATION = 30.0
WARNING_RATIO = 0.8

MIME_TYPE_MAP: dict[AudioFormat, tuple[str, ...]] = {
    AudioFormat.WEBM: ("audio/webm", "video/webm"),
    AudioFormat.MP3: ("audio/mpeg", "audio/mp3", "audio/mpeg3"),
    AudioFormat.WAV: ("audio/wav", "audio/x-wav", "audio/wave", "audio/vnd.wave"),
    AudioFormat.OGG: ("audio/ogg", "audio/vorbis", "audio/opus"),
}

EXTENSION_MAP: dict[str, AudioFormat] = {
    "webm": AudioFormat.WEBM,
    "mp3": AudioFormat.MP3,
    "mpeg": AudioFormat.MP3,
    "wav": AudioFormat.WAV,
    "wave": AudioFormat.WAV,
    "ogg": AudioFormat.OGG,
    "oga": AudioFormat.OGG,
    "opus": AudioFormat.OGG,
}

SUPPORTED_FORMATS = ", ".join(fmt.value for fmt in AudioFormat)


def _now() -> datetime:
    return datetime.now(timezone.utc)


# --- Format detection ---


def detect_format_from_mime_type(mime_type: str | None) -> AudioFormat | None:
    """Map a MIME type (parameters ignored) to a format tag."""
    if not mime_type:
        return None
    base = mime_type.split(";", 1)[0].strip().lower()
    for fmt, mime_types in MIME_TYPE_MAP.items():
        if base in mime_types:
            return fmt
    return None


def detect_format_from_extension(filename: str | None) -> AudioFormat | None:
    if not filename:
        return None
    suffix = PurePath(filename).suffix.lstrip(".").lower()
    if not suffix:
        # Bare format tags such as "webm" are accepted too
        suffix = filename.strip().lower()
    return EXTENSION_MAP.get(suffix)


def detect_format(filename: str | None, mime_type: str | None = None) -> AudioFormat | None:
    """Detect the audio format, trusting the MIME type over the file name."""
    return detect_format_from_mime_type(mime_type) or detect_format_from_extension(filename)


# --- Validation ---


def validate_audio_format(filename: str | None, mime_type: str | None = None) -> ValidationResult:
    fmt = detect_format(filename, mime_type)
    if fmt is None:
        return ValidationResult(
            valid=False,
            reason=f"unsupported format (supported: {SUPPORTED_FORMATS})",
        )
    return ValidationResult(valid=True, format=fmt)


def validate_audio_size(size: int, max_bytes: int = MAX_UPLOAD_BYTES) -> ValidationResult:
    if size <= 0:
        return ValidationResult(valid=False, reason="file is empty")
    if size > max_bytes:
        return ValidationResult(
            valid=False,
            reason=f"exceeds size limit of {format_file_size(max_bytes)}",
        )
    return ValidationResult(valid=True)


def validate_audio_duration(
    seconds: float,
    min_seconds: float = MIN_DURATION,
    max_seconds: float = MAX_DURATION,
) -> ValidationResult:
    if seconds < min_seconds:
        return ValidationResult(valid=False, reason=f"too short (minimum {min_seconds:g}s)")
    if seconds > max_seconds:
        return ValidationResult(
            valid=False,
            reason=f"exceeds duration limit of {format_duration(max_seconds)}",
        )
    return ValidationResult(valid=True)


def validate_audio(
    filename: str | None,
    size: int,
    duration: float | None = None,
    mime_type: str | None = None,
    max_bytes: int = MAX_UPLOAD_BYTES,
    min_seconds: float = MIN_DURATION,
    max_seconds: float = MAX_DURATION,
) -> AudioValidation:
    """Run every check and collect errors plus near-limit warnings.

    Duration is optional since clients cannot always measure it before upload.
    """
    errors: list[str] = []
    warnings: list[str] = []

    format_check = validate_audio_format(filename, mime_type)
    if not format_check.valid:
        errors.append(format_check.reason)

    size_check = validate_audio_size(size, max_bytes)
    if not size_check.valid:
        errors.append(size_check.reason)
    elif size > max_bytes * WARNING_RATIO:
        warnings.append("file is close to the size limit")

    if duration is not None:
        duration_check = validate_audio_duration(duration, min_seconds, max_seconds)
        if not duration_check.valid:
            errors.append(duration_check.reason)
        elif duration > max_seconds * WARNING_RATIO:
            warnings.append("recording is close to the duration limit")

    return AudioValidation(
        valid=not errors,
        errors=errors,
        warnings=warnings,
        format=format_check.format,
    )


# --- Upload lifecycle ---


def initialize_upload(
    store: AudioStore,
    owner_id: str,
    filename: str,
    declared_size: int,
    mime_type: str | None = None,
    upload_id: str | None = None,
    max_bytes: int = MAX_UPLOAD_BYTES,
    now: datetime | None = None,
) -> tuple[AudioStore, Upload]:
    """Register a new upload in pending state.

    Raises:
        InvalidInputError: If the declared size is empty or over the limit.
    """
    size_check = validate_audio_size(declared_size, max_bytes)
    if not size_check.valid:
        raise InvalidInputError(f"Upload rejected: {size_check.reason}")

    upload = Upload(
        upload_id=upload_id or f"upload_{uuid.uuid4().hex[:12]}",
        owner_id=owner_id,
        filename=filename,
        mime_type=mime_type,
        format=detect_format(filename, mime_type),
        declared_size=declared_size,
        started_at=now or _now(),
    )
    logger.info(f"Upload {upload.upload_id} started ({format_file_size(declared_size)})")
    return _put(store, upload), upload


def add_chunk(
    store: AudioStore,
    upload_id: str,
    data: bytes,
    index: int,
    now: datetime | None = None,
) -> AudioStore:
    """Record one chunk. Unknown or finished uploads leave the store unchanged.

    Redelivery of an index replaces the earlier chunk.
    """
    upload = store.uploads.get(upload_id)
    if upload is None:
        logger.debug(f"Dropping chunk {index} for unknown upload {upload_id}")
        return store
    if upload.is_terminal:
        logger.debug(f"Dropping chunk {index} for {upload.status.value} upload {upload_id}")
        return store
    if index < 0:
        return store

    chunk = AudioChunk(index=index, data=bytes(data), size=len(data), received_at=now or _now())
    chunks = [c for c in upload.chunks if c.index != index]
    chunks.append(chunk)
    chunks.sort(key=lambda c: c.index)

    updated = upload.model_copy(update={
        "chunks": tuple(chunks),
        "status": UploadStatus.ASSEMBLING,
    })
    return _put(store, updated)


def _check_complete(upload: Upload) -> str | None:
    """Return why the upload cannot be assembled, or None when it can."""
    if not upload.chunks:
        return "no chunks received"
    expected = list(range(len(upload.chunks)))
    indices = [c.index for c in upload.chunks]
    if indices != expected:
        missing = sorted(set(range(indices[-1] + 1)) - set(indices))
        return f"missing chunks {missing}"
    received = upload.received_bytes
    if received < upload.declared_size:
        return f"incomplete ({received}/{upload.declared_size} bytes)"
    if received > upload.declared_size:
        return f"size mismatch ({received} bytes received, {upload.declared_size} declared)"
    return None


def is_upload_complete(store: AudioStore, upload_id: str) -> bool:
    upload = store.uploads.get(upload_id)
    if upload is None or upload.status == UploadStatus.FAILED:
        return False
    return _check_complete(upload) is None


def assemble_chunks(
    store: AudioStore,
    upload_id: str,
    now: datetime | None = None,
) -> tuple[AudioStore, bytes]:
    """Concatenate chunks in index order and mark the upload assembled.

    Calling this again on an assembled upload returns the same bytes.

    Raises:
        AssemblyError: If the upload is unknown, failed, or incomplete.
    """
    upload = store.uploads.get(upload_id)
    if upload is None:
        raise AssemblyError(upload_id, "unknown upload")
    if upload.status == UploadStatus.FAILED:
        raise AssemblyError(upload_id, f"upload failed: {upload.error}")

    problem = _check_complete(upload)
    if problem is not None:
        raise AssemblyError(upload_id, problem)

    audio = b"".join(chunk.data for chunk in upload.chunks)
    if upload.status == UploadStatus.ASSEMBLED:
        return store, audio

    updated = upload.model_copy(update={
        "status": UploadStatus.ASSEMBLED,
        "completed_at": now or _now(),
    })
    logger.info(f"Upload {upload_id} assembled from {len(upload.chunks)} chunks")
    return _put(store, updated), audio


def cancel_upload(store: AudioStore, upload_id: str, reason: str = "upload cancelled") -> AudioStore:
    upload = store.uploads.get(upload_id)
    if upload is None or upload.is_terminal:
        return store
    logger.info(f"Upload {upload_id} failed: {reason}")
    return _put(store, upload.model_copy(update={"status": UploadStatus.FAILED, "error": reason}))


def release_upload(store: AudioStore, upload_id: str) -> AudioStore:
    """Forget an upload once its audio has been handed on."""
    if upload_id not in store.uploads:
        return store
    uploads = {k: v for k, v in store.uploads.items() if k != upload_id}
    return store.model_copy(update={"uploads": uploads})


def get_upload(store: AudioStore, upload_id: str) -> Upload | None:
    return store.uploads.get(upload_id)


def calculate_chunk_count(size: int, chunk_size: int = MAX_CHUNK_BYTES) -> int:
    if size <= 0:
        return 0
    return -(-size // chunk_size)


def get_missing_chunks(store: AudioStore, upload_id: str, chunk_size: int = MAX_CHUNK_BYTES) -> list[int]:
    """Indices still expected for an upload sent in fixed-size chunks."""
    upload = store.uploads.get(upload_id)
    if upload is None:
        return []
    received = {c.index for c in upload.chunks}
    expected = calculate_chunk_count(upload.declared_size, chunk_size)
    return [i for i in range(expected) if i not in received]


def cleanup_old_uploads(
    store: AudioStore,
    now: datetime | None = None,
    max_age: timedelta = timedelta(hours=1),
) -> AudioStore:
    """Drop uploads older than max_age.

    Unfinished uploads age from when they started. Assembled audio that was
    never released ages from when it was assembled.
    """
    cutoff = (now or _now()) - max_age
    kept = {
        upload_id: upload
        for upload_id, upload in store.uploads.items()
        if (upload.completed_at or upload.started_at) >= cutoff
    }
    dropped = len(store.uploads) - len(kept)
    if dropped:
        logger.info(f"Cleaned up {dropped} stale uploads")
    return store.model_copy(update={"uploads": kept})


def get_audio_stats(store: AudioStore) -> dict[str, int]:
    stats = {status.value: 0 for status in UploadStatus}
    for upload in store.uploads.values():
        stats[upload.status.value] += 1
    stats["total"] = len(store.uploads)
    stats["bytes_received"] = sum(u.received_bytes for u in store.uploads.values())
    return stats


def format_duration(seconds: float) -> str:
    """Format seconds as m:ss."""
    total = int(round(seconds))
    return f"{total // 60}:{total % 60:02d}"


def format_file_size(size: int) -> str:
    if size < 1024:
        return f"{size} B"
    if size < 1024 * 1024:
        return f"{size / 1024:.1f} KB"
    return f"{size / (1024 * 1024):.1f} MB"


def _put(store: AudioStore, upload: Upload) -> AudioStore:
    return store.model_copy(update={"uploads": {**store.uploads, upload.upload_id: upload}})
