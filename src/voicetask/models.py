"""Pydantic models for the voice-to-task pipeline.

Every record is frozen. Stores are updated by building a new value with
``model_copy(update=...)`` so a snapshot handed out earlier never changes.
"""

from datetime import date, datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class Record(BaseModel):
    """Immutable base for all pipeline records."""

    model_config = ConfigDict(frozen=True)


# --- Enumerations ---


class AudioFormat(str, Enum):
    WEBM = "webm"
    MP3 = "mp3"
    WAV = "wav"
    OGG = "ogg"


class UploadStatus(str, Enum):
    PENDING = "pending"
    ASSEMBLING = "assembling"
    ASSEMBLED = "assembled"
    FAILED = "failed"


class Language(str, Enum):
    FR = "fr"
    EN = "en"
    ES = "es"
    DE = "de"
    IT = "it"
    PT = "pt"
    NL = "nl"
    AUTO = "auto"


class FailureCode(str, Enum):
    TIMEOUT = "timeout"
    PROVIDER_ERROR = "provider_error"
    INVALID_AUDIO = "invalid_audio"


class QualityGrade(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class Category(str, Enum):
    """Task categories, in tie-breaking order."""

    TRANSPORT = "transport"
    HEALTH = "health"
    EDUCATION = "education"
    FOOD = "food"
    HOUSEHOLD = "household"
    ACTIVITIES = "activities"
    SOCIAL = "social"
    OTHER = "other"


class Urgency(str, Enum):
    """Urgency levels, most urgent first. NORMAL is the no-signal baseline."""

    CRITICAL = "critical"
    HIGH = "high"
    LOW = "low"
    NORMAL = "normal"


class DateType(str, Enum):
    NONE = "none"
    RELATIVE = "relative"
    ABSOLUTE = "absolute"


class MemberKind(str, Enum):
    CHILD = "child"
    ADULT = "adult"


class MatchType(str, Enum):
    EXACT = "exact"
    NICKNAME = "nickname"
    PARTIAL = "partial"


class ExtractionSource(str, Enum):
    KEYWORD = "keyword"
    LLM = "llm"


class Priority(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class PreviewStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


# --- Audio intake ---


class AudioChunk(Record):
    """One slice of an uploaded audio file."""

    model_config = ConfigDict(frozen=True, ser_json_bytes="base64", val_json_bytes="base64")

    index: int = Field(ge=0, description="Position of the chunk in the file")
    data: bytes = Field(description="Raw chunk bytes")
    size: int = Field(ge=0, description="Length of data in bytes")
    received_at: datetime = Field(description="When the chunk arrived")


class Upload(Record):
    """A chunked audio submission."""

    upload_id: str
    owner_id: str = Field(description="User who started the upload")
    filename: str = Field(default="", description="Declared file name")
    mime_type: str | None = Field(default=None, description="Declared MIME type")
    format: AudioFormat | None = Field(default=None, description="Detected format tag")
    declared_size: int = Field(ge=0, description="Total size announced by the client")
    chunks: tuple[AudioChunk, ...] = Field(default=(), description="Received chunks sorted by index")
    status: UploadStatus = UploadStatus.PENDING
    started_at: datetime
    completed_at: datetime | None = None
    error: str | None = None

    @property
    def received_bytes(self) -> int:
        return sum(chunk.size for chunk in self.chunks)

    @property
    def is_terminal(self) -> bool:
        return self.status in (UploadStatus.ASSEMBLED, UploadStatus.FAILED)


class AudioStore(Record):
    """Snapshot of all uploads in flight."""

    uploads: dict[str, Upload] = Field(default_factory=dict)


class ValidationResult(Record):
    """Pass/fail outcome of a single audio check."""

    valid: bool
    reason: str | None = Field(default=None, description="Why the check failed")
    format: AudioFormat | None = None


class AudioValidation(Record):
    """Combined outcome of all audio checks."""

    valid: bool
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    format: AudioFormat | None = None


# --- Transcription ---


class WordTiming(Record):
    word: str
    start: float = Field(ge=0)
    end: float = Field(ge=0)
    confidence: float = Field(default=1.0, ge=0, le=1)


class TranscriptionSegment(Record):
    id: int
    text: str
    start: float = Field(ge=0)
    end: float = Field(ge=0)
    confidence: float = Field(ge=0, le=1)
    words: list[WordTiming] = Field(default_factory=list)


class TranscriptionRequest(Record):
    """An in-flight call to the speech-to-text provider."""

    audio_id: str = Field(description="Upload the audio came from")
    language: Language = Field(default=Language.AUTO, description="Requested language or auto")
    word_timings: bool = False
    segments: bool = True
    requested_at: datetime | None = None


class ProviderTranscript(Record):
    """What a speech-to-text provider hands back, before it becomes a result."""

    text: str
    language: str | None = None
    confidence: float = Field(ge=0, le=1)
    duration: float = Field(default=0.0, ge=0)
    segments: list[TranscriptionSegment] = Field(default_factory=list)


class TranscriptionResult(Record):
    """Immutable outcome of a successful transcription."""

    id: str
    audio_id: str
    text: str
    language: Language
    detected_language: str | None = None
    confidence: float = Field(ge=0, le=1)
    duration: float = Field(ge=0, description="Audio length in seconds")
    segments: list[TranscriptionSegment] = Field(default_factory=list)
    provider: str = Field(default="whisper", description="Which backend produced the text")
    processed_at: datetime
    processing_ms: int = Field(default=0, ge=0, description="Provider latency")


class CacheEntry(Record):
    result_id: str
    audio_id: str
    expires_at: datetime


class TranscriptionStore(Record):
    """Snapshot of pending requests, results, and the audio-id cache."""

    pending: dict[str, TranscriptionRequest] = Field(default_factory=dict)
    transcriptions: dict[str, TranscriptionResult] = Field(default_factory=dict)
    cache: dict[str, CacheEntry] = Field(default_factory=dict)


class TranscriptionQuality(Record):
    grade: QualityGrade
    confidence: float = Field(ge=0, le=1)
    issues: list[str] = Field(default_factory=list)
    suggestions: list[str] = Field(default_factory=list)


class TranscriptionFailure(Record):
    """A provider call that produced no usable transcript."""

    audio_id: str
    code: FailureCode
    message: str
    retryable: bool = False


# --- Household roster ---


class Child(Record):
    id: str
    name: str
    nicknames: list[str] = Field(default_factory=list)
    age: int | None = Field(default=None, ge=0)


class Adult(Record):
    id: str
    name: str
    role: str = "parent"
    current_load: float = Field(default=0.0, ge=0, description="Sum of charge of open tasks")
    capacity: float | None = Field(default=None, gt=0, description="Load this member can carry")


class HouseholdRoster(Record):
    """Read-only snapshot of a household supplied by the caller."""

    household_id: str
    children: list[Child] = Field(default_factory=list)
    adults: list[Adult] = Field(default_factory=list)


# --- Semantic extraction ---


class ExtractedAction(Record):
    raw: str = Field(description="Text exactly as transcribed")
    normalized: str = Field(description="Trimmed, whitespace-collapsed text")
    verb: str | None = None
    object: str | None = Field(default=None, description="Everything after the verb")
    confidence: float = Field(ge=0, le=1)
    reason: str


class ExtractedCategory(Record):
    primary: Category
    secondary: Category | None = None
    scores: dict[str, float] = Field(default_factory=dict)
    confidence: float = Field(ge=0, le=1)
    reason: str


class ExtractedUrgency(Record):
    level: Urgency
    indicators: list[str] = Field(default_factory=list, description="Matched keywords")
    confidence: float = Field(ge=0, le=1)
    reason: str


class ExtractedDate(Record):
    type: DateType
    raw: str | None = Field(default=None, description="Matched substring")
    parsed: date | None = None
    confidence: float = Field(ge=0, le=1)
    reason: str


class MemberMatch(Record):
    member_id: str
    name: str
    kind: MemberKind
    match_type: MatchType
    raw: str = Field(description="Token that matched")
    confidence: float = Field(ge=0, le=1)
    reason: str


class SemanticExtraction(Record):
    """Structured signals extracted from one transcript."""

    id: str
    transcription_id: str | None = None
    household_id: str | None = None
    language: str
    original_text: str
    action: ExtractedAction
    category: ExtractedCategory
    urgency: ExtractedUrgency
    date: ExtractedDate
    member: MemberMatch | None = None
    overall_confidence: float = Field(ge=0, le=1)
    source: ExtractionSource = ExtractionSource.KEYWORD
    warnings: list[str] = Field(default_factory=list)
    extracted_at: datetime


class ExtractionFailure(Record):
    """Last failed extraction attempt for a transcript."""

    transcription_id: str
    error: str
    attempts: int = Field(default=1, ge=1)
    last_attempt: datetime


class ExtractionStats(Record):
    total: int = 0
    successful: int = 0
    failed: int = 0
    average_confidence: float = Field(default=0.0, ge=0, le=1)


class ExtractionStore(Record):
    """Snapshot of in-flight, finished and failed extractions."""

    pending: dict[str, datetime] = Field(default_factory=dict, description="Transcription id to start time")
    extractions: dict[str, SemanticExtraction] = Field(default_factory=dict)
    failures: dict[str, ExtractionFailure] = Field(default_factory=dict)
    stats: ExtractionStats = Field(default_factory=ExtractionStats)


# --- Task generation ---


class ChargeWeight(Record):
    """Effort a task imposes, split into four components."""

    mental: float = Field(ge=0)
    time: float = Field(ge=0)
    emotional: float = Field(ge=0)
    physical: float = Field(ge=0)
    total: float = Field(ge=0)


class MemberWorkload(Record):
    member_id: str
    name: str = ""
    current_load: float = Field(default=0.0, ge=0)
    capacity: float = Field(gt=0)


class AssigneeSuggestion(Record):
    member_id: str
    name: str = ""
    projected_load: float
    projected_ratio: float = Field(description="Load over capacity once the task is added")
    reason: str


class TaskPreview(Record):
    """A task proposal awaiting confirmation."""

    id: str
    extraction_id: str
    household_id: str
    language: str = "fr"
    title: str = Field(min_length=1)
    alternative_titles: list[str] = Field(default_factory=list)
    description: str = Field(default="", description="Original utterance")
    category: Category
    priority: Priority
    due_date: date | None = None
    charge_weight: ChargeWeight
    child_id: str | None = None
    child_name: str | None = None
    suggested_assignees: list[AssigneeSuggestion] = Field(default_factory=list)
    confidence: float = Field(ge=0, le=1)
    warnings: list[str] = Field(default_factory=list)
    status: PreviewStatus = PreviewStatus.PENDING
    created_at: datetime
    expires_at: datetime


class ConfirmedTask(Record):
    """The committed task handed to the surrounding application."""

    id: str
    preview_id: str
    extraction_id: str
    household_id: str
    title: str = Field(min_length=1)
    description: str = ""
    category: Category
    priority: Priority
    due_date: date | None = None
    charge_weight: ChargeWeight
    child_id: str | None = None
    assignee_id: str | None = None
    confirmed_by: str
    confirmed_at: datetime


class TaskStore(Record):
    """Snapshot of previews and confirmed tasks."""

    previews: dict[str, TaskPreview] = Field(default_factory=dict)
    confirmed: dict[str, ConfirmedTask] = Field(default_factory=dict)


class LifecycleResult(Record):
    """Outcome of a preview transition. Rejections carry the current status."""

    ok: bool
    preview_id: str
    status: PreviewStatus | None = None
    reason: str | None = None
    preview: TaskPreview | None = None


class ConfirmResult(Record):
    ok: bool
    preview_id: str
    status: PreviewStatus | None = None
    reason: str | None = None
    task: ConfirmedTask | None = None
