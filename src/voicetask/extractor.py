"""Semantic extraction strategies: keyword heuristics and an LLM gateway."""

import asyncio
import json
import logging
import uuid
from abc import ABC, abstractmethod
from datetime import date, datetime, timezone

import openai
from pydantic import BaseModel, Field, ValidationError

from voicetask.classify import (
    extract_action,
    extract_keywords,
    guess_language,
    overall_confidence,
    parse_date,
)
from voicetask.config import Config
from voicetask.errors import ProviderError
from voicetask.keywords import KeywordTable
from voicetask.models import (
    Category,
    DateType,
    ExtractedAction,
    ExtractedCategory,
    ExtractedDate,
    ExtractedUrgency,
    ExtractionFailure,
    ExtractionSource,
    ExtractionStore,
    HouseholdRoster,
    MatchType,
    MemberKind,
    MemberMatch,
    SemanticExtraction,
    Urgency,
)
from voicetask.transcription import normalize_language

logger = logging.getLogger(__name__)

MIN_USABLE_CONFIDENCE = 0.5


class LLMAnswer(BaseModel):
    """Shape the extraction model is asked to answer with."""

    verb: str | None = Field(default=None, description="Main verb of the task, infinitive")
    object: str | None = Field(default=None, description="What the verb applies to")
    category: Category = Field(description="Task category")
    secondary_category: Category | None = None
    category_confidence: float = Field(default=0.7, ge=0, le=1)
    urgency: Urgency = Field(default=Urgency.NORMAL)
    urgency_confidence: float = Field(default=0.7, ge=0, le=1)
    due_date: date | None = Field(default=None, description="ISO date or null")
    date_text: str | None = Field(default=None, description="Words that expressed the date")
    date_confidence: float = Field(default=0.7, ge=0, le=1)
    member_id: str | None = Field(default=None, description="Id of the household member concerned")
    member_confidence: float = Field(default=0.8, ge=0, le=1)
    reasoning: str = Field(default="", description="One sentence explaining the choices")


def extract_json_block(text: str) -> str:
    """Extract JSON from LLM response, handling various formats.

    Handles:
    - ```json ... ``` code blocks
    - ``` ... ``` code blocks
    - Raw JSON without code blocks

    Raises:
        json.JSONDecodeError: If extracted text is invalid JSON
    """
    text = text.strip()

    for fence in ("```json", "```"):
        if fence in text:
            start = text.find(fence) + len(fence)
            end = text.find("```", start)
            if end != -1:
                json_str = text[start:end].strip()
                json.loads(json_str)
                return json_str

    json.loads(text)
    return text


def describe_roster(roster: HouseholdRoster | None) -> str:
    if roster is None or not (roster.children or roster.adults):
        return "(none)"
    lines = []
    for child in roster.children:
        nicknames = f" (also called {', '.join(child.nicknames)})" if child.nicknames else ""
        age = f", {child.age} years old" if child.age is not None else ""
        lines.append(f"- child id={child.id}: {child.name}{nicknames}{age}")
    for adult in roster.adults:
        lines.append(f"- adult id={adult.id}: {adult.name} ({adult.role})")
    return "\n".join(lines)


class ExtractionStrategy(ABC):
    """One way of producing a SemanticExtraction from text."""

    name = "strategy"

    @abstractmethod
    async def extract(
        self,
        text: str,
        roster: HouseholdRoster | None,
        language: str,
        today: date,
    ) -> SemanticExtraction:
        """Extract signals, raising ProviderError when the strategy cannot answer."""


class KeywordExtractor(ExtractionStrategy):
    """Heuristic extraction from the keyword tables. Never calls out."""

    name = "keyword"

    def __init__(self, table: KeywordTable | None = None):
        self.table = table

    async def extract(
        self,
        text: str,
        roster: HouseholdRoster | None,
        language: str,
        today: date,
    ) -> SemanticExtraction:
        return extract_keywords(text, roster, language, today, self.table)


class LLMExtractor(ExtractionStrategy):
    """Extraction through a chat model behind the model gateway."""

    name = "llm"

    def __init__(self, config: Config, table: KeywordTable | None = None):
        self.client = openai.AsyncOpenAI(base_url=config.gateway_url, api_key=config.api_key)
        self.model = config.gateway_model
        self.config = config
        self.table = table

    async def generate(self, system_prompt: str, user_prompt: str) -> str:
        """Generate text using the model gateway.

        Args:
            system_prompt: System context/instructions
            user_prompt: User query

        Returns:
            Generated text response
        """
        response = await self.client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
        )
        choices = getattr(response, "choices", None)
        if not choices:
            raise ProviderError("empty model answer")
        message = getattr(choices[0], "message", None)
        return getattr(message, "content", None) or ""

    def build_prompt(self, text: str, roster: HouseholdRoster | None, language: str, today: date) -> str:
        return self.config.extraction_prompt.format(
            language=language,
            today=today.isoformat(),
            roster=describe_roster(roster),
            schema=json.dumps(LLMAnswer.model_json_schema()),
            categories=", ".join(c.value for c in Category),
            urgencies=", ".join(u.value for u in Urgency),
            text=text,
        )

    async def extract(
        self,
        text: str,
        roster: HouseholdRoster | None,
        language: str,
        today: date,
    ) -> SemanticExtraction:
        try:
            user_prompt = self.build_prompt(text, roster, language, today)
        except (KeyError, IndexError) as e:
            raise ProviderError(f"extraction prompt has an unknown placeholder: {e}") from e

        try:
            response = await self.generate(self.config.system_prompt, user_prompt)
            answer = LLMAnswer.model_validate(json.loads(extract_json_block(response)))
        except openai.OpenAIError as e:
            raise ProviderError(f"gateway request failed: {e}", retryable=True) from e
        except (json.JSONDecodeError, ValidationError) as e:
            raise ProviderError(f"unusable model answer: {e}") from e

        if self.config.verbose:
            logger.info(f"LLM extraction: {answer.category.value}/{answer.urgency.value}")
        return answer_to_extraction(answer, text, roster, language, today, self.table)


def _member_from_answer(answer: LLMAnswer, roster: HouseholdRoster | None) -> MemberMatch | None:
    if not answer.member_id or roster is None:
        return None
    for child in roster.children:
        if child.id == answer.member_id:
            kind, name = MemberKind.CHILD, child.name
            break
    else:
        adult = next((a for a in roster.adults if a.id == answer.member_id), None)
        if adult is None:
            return None
        kind, name = MemberKind.ADULT, adult.name
    return MemberMatch(
        member_id=answer.member_id,
        name=name,
        kind=kind,
        match_type=MatchType.EXACT,
        raw=name,
        confidence=answer.member_confidence,
        reason="identified by the language model",
    )


def answer_to_extraction(
    answer: LLMAnswer,
    text: str,
    roster: HouseholdRoster | None,
    language: str,
    today: date,
    table: KeywordTable | None = None,
) -> SemanticExtraction:
    """Map a validated model answer onto the same shape the keyword path produces."""
    warnings = []
    reasoning = answer.reasoning or "classified by the language model"

    heuristic_action = extract_action(text)
    if answer.verb:
        verb = answer.verb.strip()
        obj = (answer.object or "").strip() or None
        action = ExtractedAction(
            raw=text,
            normalized=heuristic_action.normalized,
            verb=verb,
            object=obj,
            confidence=0.8 if obj else 0.6,
            reason="verb and object identified by the language model",
        )
    else:
        action = heuristic_action

    category = ExtractedCategory(
        primary=answer.category,
        secondary=answer.secondary_category if answer.secondary_category != answer.category else None,
        confidence=answer.category_confidence,
        reason=reasoning,
    )
    urgency = ExtractedUrgency(
        level=answer.urgency,
        confidence=answer.urgency_confidence,
        reason=f"{answer.urgency.value} urgency according to the language model",
    )

    if answer.due_date is not None:
        heuristic_date = parse_date(text, language, today, table)
        if heuristic_date.parsed == answer.due_date:
            date_type = heuristic_date.type
        elif answer.date_text and any(ch.isdigit() for ch in answer.date_text):
            date_type = DateType.ABSOLUTE
        else:
            date_type = DateType.RELATIVE
        extracted_date = ExtractedDate(
            type=date_type,
            raw=answer.date_text,
            parsed=answer.due_date,
            confidence=answer.date_confidence,
            reason=f"date {answer.due_date.isoformat()} according to the language model",
        )
    else:
        extracted_date = ExtractedDate(
            type=DateType.NONE,
            confidence=answer.date_confidence,
            reason="no date according to the language model",
        )

    member = _member_from_answer(answer, roster)
    if answer.member_id and member is None:
        warnings.append(f"model referenced unknown member {answer.member_id}")

    return SemanticExtraction(
        id=f"ext_{uuid.uuid4().hex[:12]}",
        household_id=roster.household_id if roster else None,
        language=language,
        original_text=text,
        action=action,
        category=category,
        urgency=urgency,
        date=extracted_date,
        member=member,
        overall_confidence=overall_confidence(category, action, urgency, extracted_date, member),
        source=ExtractionSource.LLM,
        warnings=warnings,
        extracted_at=datetime.now(timezone.utc),
    )


def resolve_extraction_language(
    text: str,
    language: str | None,
    table: KeywordTable | None = None,
    fallback: str = "fr",
) -> str:
    """Normalize the language hint; "auto" is guessed from the keyword tables."""
    code = normalize_language(language, fallback).value
    if code == "auto":
        return guess_language(text, table, fallback)
    return code


async def extract_semantics(
    text: str,
    roster: HouseholdRoster | None = None,
    language: str | None = "fr",
    llm: ExtractionStrategy | None = None,
    timeout: float = 30.0,
    skip_confidence: float = 0.85,
    today: date | None = None,
    table: KeywordTable | None = None,
    transcription_id: str | None = None,
    fallback_language: str = "fr",
) -> SemanticExtraction:
    """Extract signals from a transcript.

    The keyword path always runs. When a model strategy is given and the
    heuristic result is not already confident enough, the model is asked once,
    bounded by timeout; any failure keeps the heuristic result with a warning.
    """
    today = today or date.today()
    language = resolve_extraction_language(text, language, table, fallback_language)
    baseline = extract_keywords(text, roster, language, today, table, transcription_id)

    if llm is None or not text.strip():
        return baseline
    if baseline.overall_confidence >= skip_confidence:
        logger.debug(f"Keyword confidence {baseline.overall_confidence:.2f}, skipping {llm.name}")
        return baseline

    try:
        result = await asyncio.wait_for(llm.extract(text, roster, language, today), timeout=timeout)
    except asyncio.TimeoutError:
        reason = f"timed out after {timeout:g}s"
    except ProviderError as e:
        reason = str(e)
    except Exception as e:
        logger.exception(f"Unexpected error from {llm.name} extraction")
        reason = f"{type(e).__name__}: {e}"
    else:
        return result.model_copy(update={"transcription_id": transcription_id})

    logger.warning(f"LLM extraction failed, using keyword fallback: {reason}")
    return baseline.model_copy(update={
        "warnings": [*baseline.warnings, f"LLM extraction failed: {reason}"],
    })


def validate_extraction_quality(
    extraction: SemanticExtraction,
    min_confidence: float = MIN_USABLE_CONFIDENCE,
) -> tuple[bool, list[str]]:
    """Check whether an extraction is good enough to propose a task.

    Returns:
        Tuple of (is_valid, issues). Issues may be present on a valid extraction.
    """
    issues = []
    blocking = False

    if not extraction.action.normalized:
        issues.append("no action could be extracted")
        blocking = True
    if extraction.overall_confidence < min_confidence:
        issues.append(f"overall confidence {extraction.overall_confidence:.2f} below {min_confidence:.2f}")
        blocking = True
    if extraction.category.primary == Category.OTHER:
        issues.append("category could not be determined")
    if extraction.date.type == DateType.NONE:
        issues.append("no date mentioned")

    return not blocking, issues


# --- Store operations ---


def start_extraction(
    store: ExtractionStore,
    transcription_id: str,
    now: datetime | None = None,
) -> ExtractionStore:
    pending = {**store.pending, transcription_id: now or datetime.now(timezone.utc)}
    return store.model_copy(update={"pending": pending})


def complete_extraction(store: ExtractionStore, extraction: SemanticExtraction) -> ExtractionStore:
    """Store a finished extraction, clear its pending entry and fold it into the stats."""
    pending = {k: v for k, v in store.pending.items() if k != extraction.transcription_id}
    stats = store.stats
    successful = stats.successful + 1
    average = (stats.average_confidence * stats.successful + extraction.overall_confidence) / successful
    return store.model_copy(update={
        "pending": pending,
        "extractions": {**store.extractions, extraction.id: extraction},
        "stats": stats.model_copy(update={
            "total": stats.total + 1,
            "successful": successful,
            "average_confidence": round(min(1.0, average), 4),
        }),
    })


def fail_extraction(
    store: ExtractionStore,
    transcription_id: str,
    error: str,
    now: datetime | None = None,
) -> ExtractionStore:
    """Record a failed attempt. Repeated failures for a transcript count up its attempts."""
    pending = {k: v for k, v in store.pending.items() if k != transcription_id}
    previous = store.failures.get(transcription_id)
    failure = ExtractionFailure(
        transcription_id=transcription_id,
        error=error,
        attempts=previous.attempts + 1 if previous else 1,
        last_attempt=now or datetime.now(timezone.utc),
    )
    stats = store.stats
    return store.model_copy(update={
        "pending": pending,
        "failures": {**store.failures, transcription_id: failure},
        "stats": stats.model_copy(update={"total": stats.total + 1, "failed": stats.failed + 1}),
    })


def get_extraction(store: ExtractionStore, extraction_id: str) -> SemanticExtraction | None:
    return store.extractions.get(extraction_id)


def get_extraction_by_transcription(store: ExtractionStore, transcription_id: str) -> SemanticExtraction | None:
    """Most recent extraction made from a transcript."""
    matches = [e for e in store.extractions.values() if e.transcription_id == transcription_id]
    return max(matches, key=lambda e: e.extracted_at) if matches else None


def get_extractions(
    store: ExtractionStore,
    language: str | None = None,
    category: Category | str | None = None,
    urgency: Urgency | str | None = None,
    min_confidence: float | None = None,
    has_child: bool | None = None,
) -> list[SemanticExtraction]:
    """Extractions matching every given filter, oldest first. Unknown filter values match nothing."""
    results = list(store.extractions.values())
    if language is not None:
        results = [e for e in results if e.language == language]
    if category is not None:
        value = getattr(category, "value", category)
        results = [e for e in results if e.category.primary.value == value]
    if urgency is not None:
        value = getattr(urgency, "value", urgency)
        results = [e for e in results if e.urgency.level.value == value]
    if min_confidence is not None:
        results = [e for e in results if e.overall_confidence >= min_confidence]
    if has_child is not None:
        results = [e for e in results if _mentions_child(e) == has_child]
    return sorted(results, key=lambda e: e.extracted_at)


def _mentions_child(extraction: SemanticExtraction) -> bool:
    return extraction.member is not None and extraction.member.kind == MemberKind.CHILD


def get_extraction_stats(store: ExtractionStore) -> dict[str, float]:
    stats = store.stats
    return {
        "pending": len(store.pending),
        "total": stats.total,
        "successful": stats.successful,
        "failed": stats.failed,
        "average_confidence": round(stats.average_confidence, 3),
    }
