"""Session wrapper that owns the current store snapshots and runs the pipeline."""

import asyncio
import logging
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable

from voicetask import audio, tasks, transcription
from voicetask.config import Config
from voicetask.errors import InvalidInputError
from voicetask.extractor import (
    ExtractionStrategy,
    LLMExtractor,
    complete_extraction,
    extract_semantics,
    fail_extraction,
    get_extractions,
    start_extraction,
)
from voicetask.keywords import KeywordTable, load_keyword_table
from voicetask.models import (
    AudioStore,
    ConfirmedTask,
    ConfirmResult,
    ExtractionStore,
    FailureCode,
    HouseholdRoster,
    Language,
    LifecycleResult,
    MemberWorkload,
    Record,
    SemanticExtraction,
    TaskPreview,
    TaskStore,
    TranscriptionFailure,
    TranscriptionQuality,
    TranscriptionRequest,
    TranscriptionResult,
    TranscriptionStore,
    Upload,
)
from voicetask.sink import post_confirmed_task
from voicetask.transcription import TranscriptionProvider, WhisperProvider

logger = logging.getLogger(__name__)

TaskSink = Callable[[ConfirmedTask], dict]


class PipelineOutcome(Record):
    """Everything one run of the pipeline produced, up to where it stopped."""

    transcription: TranscriptionResult | None = None
    failure: TranscriptionFailure | None = None
    quality: TranscriptionQuality | None = None
    extraction: SemanticExtraction | None = None
    preview: TaskPreview | None = None
    reason: str | None = None


class VoicePipeline:
    """Owns the audio, transcription and task snapshots for one household session.

    Each mutation swaps a snapshot under a single asyncio lock, so concurrent
    callers never lose updates and a preview is confirmed at most once.
    Provider calls run outside the lock.
    """

    def __init__(
        self,
        config: Config | None = None,
        transcriber: TranscriptionProvider | None = None,
        extractor: ExtractionStrategy | None = None,
        sink: TaskSink | None = None,
        table: KeywordTable | None = None,
    ):
        self.config = config or Config()
        self.transcriber = transcriber
        self.extractor = extractor
        self.sink = sink
        self.table = table if table is not None else load_keyword_table(self.config.keywords_path)

        self.audio = AudioStore()
        self.transcriptions = TranscriptionStore()
        self.tasks = TaskStore()
        self.extractions = ExtractionStore()
        self._lock = asyncio.Lock()

    @classmethod
    def from_config(cls, config: Config) -> "VoicePipeline":
        """Wire the gateway-backed providers and the REST sink."""
        transcriber = WhisperProvider(
            model=config.stt_model,
            base_url=config.gateway_url,
            api_key=config.api_key,
        )
        extractor = LLMExtractor(config) if config.use_llm_extraction else None
        logger.info(
            f"Pipeline using {config.stt_model} for speech"
            + (f" and {config.gateway_model} for extraction" if extractor else "")
            + f" via {config.gateway_url}"
        )
        return cls(config, transcriber=transcriber, extractor=extractor, sink=post_confirmed_task)

    # --- Audio intake ---

    async def start_upload(
        self,
        owner_id: str,
        filename: str,
        declared_size: int,
        mime_type: str | None = None,
    ) -> Upload:
        """Open a chunked upload.

        Raises:
            InvalidInputError: If the format is unsupported or the size is out of range.
        """
        format_check = audio.validate_audio_format(filename, mime_type)
        if not format_check.valid:
            raise InvalidInputError(f"Upload rejected: {format_check.reason}")

        async with self._lock:
            self.audio, upload = audio.initialize_upload(
                self.audio,
                owner_id,
                filename,
                declared_size,
                mime_type,
                max_bytes=self.config.max_upload_bytes,
            )
        return upload

    async def receive_chunk(self, upload_id: str, data: bytes, index: int) -> Upload | None:
        if len(data) > self.config.max_chunk_bytes:
            logger.warning(f"Chunk {index} of {upload_id} is larger than {self.config.max_chunk_bytes} bytes")
        async with self._lock:
            self.audio = audio.add_chunk(self.audio, upload_id, data, index)
            return audio.get_upload(self.audio, upload_id)

    async def cancel_upload(self, upload_id: str, reason: str = "upload cancelled") -> Upload | None:
        async with self._lock:
            self.audio = audio.cancel_upload(self.audio, upload_id, reason)
            return audio.get_upload(self.audio, upload_id)

    # --- Transcription ---

    async def transcribe_upload(
        self,
        upload_id: str,
        language: Language | str = Language.AUTO,
        duration: float | None = None,
    ) -> TranscriptionResult | TranscriptionFailure:
        """Assemble an upload and send it to the speech-to-text provider once.

        Raises:
            AssemblyError: If the upload is unknown or incomplete.
        """
        async with self._lock:
            self.audio, audio_bytes = audio.assemble_chunks(self.audio, upload_id)
            upload = audio.get_upload(self.audio, upload_id)

        if duration is not None:
            check = audio.validate_audio_duration(duration, self.config.min_duration, self.config.max_duration)
            if not check.valid:
                await self._release(upload_id)
                return TranscriptionFailure(audio_id=upload_id, code=FailureCode.INVALID_AUDIO, message=check.reason)

        if self.transcriber is None:
            await self._release(upload_id)
            return TranscriptionFailure(
                audio_id=upload_id,
                code=FailureCode.PROVIDER_ERROR,
                message="no transcription provider configured",
            )

        request = TranscriptionRequest(
            audio_id=upload_id,
            language=transcription.normalize_language(language, self.config.fallback_language),
        )
        async with self._lock:
            self.transcriptions = transcription.start_transcription(self.transcriptions, request)

        outcome = None
        try:
            _, outcome = await transcription.run_transcription(
                TranscriptionStore(),
                self.transcriber,
                request,
                audio_bytes,
                upload.filename,
                timeout=self.config.provider_timeout,
                fallback_language=self.config.fallback_language,
            )
        finally:
            cache_ttl = timedelta(seconds=self.config.cache_ttl)
            async with self._lock:
                if isinstance(outcome, TranscriptionResult):
                    self.transcriptions = transcription.complete_transcription(
                        self.transcriptions, outcome, cache_ttl=cache_ttl
                    )
                    self.audio = audio.release_upload(self.audio, upload_id)
                else:
                    # Failed audio stays assembled for a retry until the sweep expires it
                    self.transcriptions = transcription.fail_transcription(self.transcriptions, upload_id)
        return outcome

    async def _release(self, upload_id: str) -> None:
        async with self._lock:
            self.audio = audio.release_upload(self.audio, upload_id)

    def assess(self, result: TranscriptionResult) -> tuple[bool, TranscriptionQuality]:
        quality = transcription.assess_transcription_quality(result)
        reliable = transcription.is_transcription_reliable(
            result,
            self.config.min_confidence,
            self.config.min_text_chars,
            self.config.min_audio_seconds,
        )
        return reliable, quality

    # --- Extraction and previews ---

    async def extract(
        self,
        transcription_id: str,
        roster: HouseholdRoster | None = None,
        today: date | None = None,
    ) -> SemanticExtraction | None:
        result = transcription.get_transcription(self.transcriptions, transcription_id)
        if result is None:
            return None

        async with self._lock:
            self.extractions = start_extraction(self.extractions, result.id)

        try:
            extraction = await extract_semantics(
                result.text,
                roster,
                result.language.value,
                llm=self.extractor,
                timeout=self.config.provider_timeout,
                skip_confidence=self.config.llm_skip_confidence,
                today=today,
                table=self.table,
                transcription_id=result.id,
                fallback_language=self.config.fallback_language,
            )
        except Exception as e:
            async with self._lock:
                self.extractions = fail_extraction(self.extractions, result.id, f"{type(e).__name__}: {e}")
            raise

        async with self._lock:
            self.extractions = complete_extraction(self.extractions, extraction)
        return extraction

    async def propose_task(
        self,
        extraction: SemanticExtraction,
        household_id: str,
        roster: HouseholdRoster | None = None,
        workloads: list[MemberWorkload] | None = None,
        now: datetime | None = None,
    ) -> TaskPreview:
        preview = tasks.generate_task_preview(
            extraction,
            household_id,
            roster,
            workloads,
            now=now,
            ttl=timedelta(seconds=self.config.preview_ttl),
            default_capacity=self.config.default_capacity,
            default_due_days=self.config.default_due_days,
        )
        async with self._lock:
            self.tasks = tasks.add_preview(self.tasks, preview)
        return preview

    async def update_preview(
        self,
        preview_id: str,
        updates: dict[str, Any],
        now: datetime | None = None,
    ) -> LifecycleResult:
        async with self._lock:
            self.tasks, result = tasks.update_preview(self.tasks, preview_id, updates, now)
        return result

    async def confirm(
        self,
        preview_id: str,
        household_id: str,
        member_id: str,
        overrides: dict[str, Any] | None = None,
        now: datetime | None = None,
    ) -> ConfirmResult:
        """Confirm a preview. Of several concurrent calls, exactly one succeeds."""
        async with self._lock:
            self.tasks, result = tasks.confirm_task(
                self.tasks, preview_id, household_id, member_id, now, overrides
            )

        if result.ok and self.sink is not None:
            delivery = await asyncio.to_thread(self.sink, result.task)
            logger.info(f"Task {result.task.id} handed to sink: {delivery.get('status')}")
        return result

    async def confirm_batch(
        self,
        preview_ids: list[str],
        household_id: str,
        member_id: str,
        now: datetime | None = None,
    ) -> list[ConfirmResult]:
        async with self._lock:
            self.tasks, results = tasks.confirm_batch_tasks(self.tasks, preview_ids, household_id, member_id, now)

        if self.sink is not None:
            for result in results:
                if result.ok:
                    await asyncio.to_thread(self.sink, result.task)
        return results

    async def cancel(self, preview_id: str, now: datetime | None = None) -> LifecycleResult:
        async with self._lock:
            self.tasks, result = tasks.cancel_preview(self.tasks, preview_id, now)
        return result

    async def sweep(self, now: datetime | None = None) -> None:
        """Evict expired previews, stale uploads and expired cache entries."""
        now = now or datetime.now(timezone.utc)
        async with self._lock:
            self.tasks = tasks.sweep_expired_previews(self.tasks, now)
            self.audio = audio.cleanup_old_uploads(self.audio, now)
            self.transcriptions = transcription.clean_expired_cache(self.transcriptions, now)

    # --- Queries ---

    def get_preview(self, preview_id: str, now: datetime | None = None) -> TaskPreview | None:
        return tasks.get_preview(self.tasks, preview_id, now)

    def pending_previews(self, household_id: str, now: datetime | None = None) -> list[TaskPreview]:
        return tasks.get_pending_previews(self.tasks, household_id, now)

    def confirmed_tasks(self, household_id: str, **filters: Any) -> list[ConfirmedTask]:
        return tasks.get_confirmed_tasks(self.tasks, household_id, **filters)

    def find_extractions(self, **filters: Any) -> list[SemanticExtraction]:
        return get_extractions(self.extractions, **filters)

    # --- Whole chain ---

    async def process_upload(
        self,
        upload_id: str,
        roster: HouseholdRoster,
        language: Language | str = Language.AUTO,
        duration: float | None = None,
        today: date | None = None,
    ) -> PipelineOutcome:
        """Run an assembled upload through transcription, extraction and preview generation.

        Stops early, with a reason, on provider failure or an unreliable transcript.
        """
        outcome = await self.transcribe_upload(upload_id, language, duration)
        if isinstance(outcome, TranscriptionFailure):
            return PipelineOutcome(failure=outcome, reason=outcome.message)

        reliable, quality = self.assess(outcome)
        if not reliable:
            logger.info(f"Transcript {outcome.id} is not reliable ({quality.grade.value}), asking for a retry")
            return PipelineOutcome(
                transcription=outcome,
                quality=quality,
                reason="transcript is not reliable enough, please record again",
            )

        extraction = await self.extract(outcome.id, roster, today)
        preview = await self.propose_task(extraction, roster.household_id, roster)
        return PipelineOutcome(
            transcription=outcome,
            quality=quality,
            extraction=extraction,
            preview=preview,
        )
