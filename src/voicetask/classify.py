"""Keyword heuristics that turn transcript text into classified signals.

Every function here is pure and total: any string, including an empty one,
yields a structured result with a confidence and a reason.
"""

import calendar
import logging
import re
import unicodedata
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from functools import lru_cache

from voicetask.keywords import DateTerm, KeywordTable, WeightedPattern, default_keyword_table
from voicetask.models import (
    Category,
    DateType,
    ExtractedAction,
    ExtractedCategory,
    ExtractedDate,
    ExtractedUrgency,
    ExtractionSource,
    HouseholdRoster,
    MatchType,
    MemberKind,
    MemberMatch,
    SemanticExtraction,
    Urgency,
)

logger = logging.getLogger(__name__)

SECONDARY_THRESHOLD = 1.0
STRONG_SCORE = 3.0
NO_CATEGORY_CONFIDENCE = 0.2
BASELINE_URGENCY_CONFIDENCE = 0.5

RELATIVE_DATE_CONFIDENCE = 0.85
ABSOLUTE_DATE_CONFIDENCE = 0.9
NO_DATE_CONFIDENCE = 0.4

EXACT_MATCH_CONFIDENCE = 0.95
NICKNAME_MATCH_CONFIDENCE = 0.85
PARTIAL_MATCH_CONFIDENCE = 0.6
MIN_PARTIAL_LENGTH = 3

SIGNAL_WEIGHTS = {
    "category": 0.3,
    "action": 0.3,
    "urgency": 0.15,
    "date": 0.15,
    "member": 0.1,
}

URGENCY_RANK = {level: rank for rank, level in enumerate(Urgency)}
CATEGORY_RANK = {category: rank for rank, category in enumerate(Category)}

_ABSOLUTE_DATE_RE = re.compile(r"(?<!\d)(\d{1,2})([/-])(\d{1,2})(?:\2(\d{4}|\d{2}))?(?!\d)")
_LABEL_PREFIX_RE = re.compile(r"^[^\s:]{1,20}:\s+(?=\S)")
_TOKEN_RE = re.compile(r"\w+")
_TRAILING_PUNCT = ".,;:!?"


@dataclass(frozen=True)
class KeywordMatch:
    label: object
    pattern: str
    weight: float
    start: int
    end: int


# --- Text helpers ---


def normalize_text(text: str) -> str:
    """Lowercase and strip diacritics so "Médecin" matches "medecin"."""
    text = unicodedata.normalize("NFC", text).replace("’", "'")
    decomposed = unicodedata.normalize("NFD", text.lower())
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


@lru_cache(maxsize=4096)
def _pattern_re(pattern: str) -> re.Pattern:
    words = [re.escape(w) for w in normalize_text(pattern).split()]
    # Plural "s" tolerated on the last word
    return re.compile(r"(?<!\w)" + r"\s+".join(words) + r"s?(?!\w)")


def _find_matches(normalized: str, entries: list[tuple[object, WeightedPattern]]) -> list[KeywordMatch]:
    """Match patterns longest first; a span claimed by a longer phrase is not matched again.

    This keeps "pas urgent" from also counting as "urgent".
    """
    ordered = sorted(entries, key=lambda e: len(e[1].pattern), reverse=True)
    claimed: list[tuple[int, int]] = []
    matches = []
    for label, entry in ordered:
        for m in _pattern_re(entry.pattern).finditer(normalized):
            if any(m.start() < end and start < m.end() for start, end in claimed):
                continue
            claimed.append((m.start(), m.end()))
            matches.append(KeywordMatch(label, entry.pattern, entry.weight, m.start(), m.end()))
    matches.sort(key=lambda m: m.start)
    return matches


def _table(table: KeywordTable | None) -> KeywordTable:
    return table if table is not None else default_keyword_table()


def guess_language(text: str, table: KeywordTable | None = None, fallback: str = "fr") -> str:
    """Pick the language whose keyword table matches the text best."""
    normalized = normalize_text(text)
    best, best_hits = fallback, 0
    for language, lang_table in _table(table).languages.items():
        entries = [(c, p) for c, patterns in lang_table.categories.items() for p in patterns]
        entries += [(u, p) for u, patterns in lang_table.urgency.items() for p in patterns]
        entries += [(None, WeightedPattern(pattern=t.pattern)) for t in lang_table.dates]
        hits = len(_find_matches(normalized, entries))
        if hits > best_hits:
            best, best_hits = language, hits
    return best


# --- Category ---


def detect_category(text: str, language: str = "fr", table: KeywordTable | None = None) -> ExtractedCategory:
    lang_table = _table(table).for_language(language)
    entries = [(category, p) for category, patterns in lang_table.categories.items() for p in patterns]
    matches = _find_matches(normalize_text(text), entries)

    scores: dict[Category, float] = {}
    for match in matches:
        scores[match.label] = scores.get(match.label, 0.0) + match.weight

    if not scores:
        return ExtractedCategory(
            primary=Category.OTHER,
            confidence=NO_CATEGORY_CONFIDENCE,
            reason="no category keywords matched",
        )

    ranking = sorted(scores, key=lambda c: (-scores[c], CATEGORY_RANK[c]))
    primary = ranking[0]
    top = scores[primary]
    second = scores[ranking[1]] if len(ranking) > 1 else 0.0
    secondary = ranking[1] if len(ranking) > 1 and second >= SECONDARY_THRESHOLD else None

    margin = (top - second) / top
    strength = min(1.0, top / STRONG_SCORE)
    confidence = round(min(0.95, 0.4 + 0.3 * margin + 0.25 * strength), 3)

    keywords = [m.pattern for m in matches if m.label == primary]
    reason = f"matched {', '.join(keywords)} (score {top:g}"
    reason += f" vs {second:g} for {ranking[1].value})" if len(ranking) > 1 else ")"

    return ExtractedCategory(
        primary=primary,
        secondary=secondary,
        scores={c.value: round(s, 2) for c, s in scores.items()},
        confidence=confidence,
        reason=reason,
    )


# --- Urgency ---


def detect_urgency(text: str, language: str = "fr", table: KeywordTable | None = None) -> ExtractedUrgency:
    lang_table = _table(table).for_language(language)
    entries = [(level, p) for level, patterns in lang_table.urgency.items() for p in patterns]
    matches = _find_matches(normalize_text(text), entries)

    if not matches:
        return ExtractedUrgency(
            level=Urgency.NORMAL,
            confidence=BASELINE_URGENCY_CONFIDENCE,
            reason="no urgency keywords, using the normal baseline",
        )

    scores: dict[Urgency, float] = {}
    for match in matches:
        scores[match.label] = scores.get(match.label, 0.0) + match.weight
    level = min(scores, key=lambda u: (-scores[u], URGENCY_RANK[u]))

    confidence = min(0.95, 0.6 + 0.1 * scores[level])
    if len(scores) > 1:
        confidence -= 0.15
    indicators = [m.pattern for m in matches if m.label == level]

    return ExtractedUrgency(
        level=level,
        indicators=indicators,
        confidence=round(max(0.0, confidence), 3),
        reason=f"{level.value} urgency from {', '.join(indicators)}",
    )


# --- Dates ---


def _add_months(start: date, months: int) -> date:
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def resolve_date_term(term: DateTerm, today: date) -> date:
    if term.weekday is not None:
        delta = (term.weekday - today.weekday()) % 7
        if delta == 0 and not term.inclusive:
            delta = 7
        return today + timedelta(days=delta)
    if term.months is not None:
        return _add_months(today, term.months)
    return today + timedelta(days=term.days or 0)


def _parse_absolute(text: str, today: date) -> tuple[ExtractedDate | None, str | None]:
    """Return the first valid DD/MM[/YYYY] date, or the first invalid one seen."""
    invalid = None
    for m in _ABSOLUTE_DATE_RE.finditer(text):
        day, month, year = int(m.group(1)), int(m.group(3)), m.group(4)
        if year is None:
            full_year = today.year
        elif len(year) == 2:
            full_year = 2000 + int(year)
        else:
            full_year = int(year)
        try:
            parsed = date(full_year, month, day)
        except ValueError:
            invalid = invalid or m.group(0)
            continue
        return ExtractedDate(
            type=DateType.ABSOLUTE,
            raw=m.group(0),
            parsed=parsed,
            confidence=ABSOLUTE_DATE_CONFIDENCE,
            reason=f"explicit date {m.group(0)}",
        ), None
    return None, invalid


def parse_date(
    text: str,
    language: str = "fr",
    today: date | None = None,
    table: KeywordTable | None = None,
) -> ExtractedDate:
    """Find a date in the text: explicit DD/MM/YYYY first, then relative terms."""
    today = today or date.today()
    original = unicodedata.normalize("NFC", text)

    absolute, invalid = _parse_absolute(original, today)
    if absolute is not None:
        return absolute

    terms = _table(table).for_language(language).dates
    entries = [(term, WeightedPattern(pattern=term.pattern)) for term in terms]
    normalized = normalize_text(original)
    matches = _find_matches(normalized, entries)
    if matches:
        first = matches[0]
        source = original if len(original) == len(normalized) else normalized
        raw = source[first.start:first.end]
        parsed = resolve_date_term(first.label, today)
        return ExtractedDate(
            type=DateType.RELATIVE,
            raw=raw,
            parsed=parsed,
            confidence=RELATIVE_DATE_CONFIDENCE,
            reason=f'"{raw}" resolved to {parsed.isoformat()}',
        )

    reason = f"invalid calendar date {invalid}" if invalid else "no date expression found"
    return ExtractedDate(type=DateType.NONE, confidence=NO_DATE_CONFIDENCE, reason=reason)


# --- Household members ---


def _whole_word(name: str, normalized: str) -> bool:
    return _pattern_re_exact(name).search(normalized) is not None


@lru_cache(maxsize=1024)
def _pattern_re_exact(name: str) -> re.Pattern:
    return re.compile(r"(?<!\w)" + re.escape(normalize_text(name).strip()) + r"(?!\w)")


def match_member(text: str, roster: HouseholdRoster | None) -> MemberMatch | None:
    """Find the roster member the text refers to, children before adults.

    Exact names beat nicknames, which beat partial matches. Ties keep roster order.
    """
    if roster is None or not text.strip():
        return None

    normalized = normalize_text(text)
    tokens = _TOKEN_RE.findall(normalized)
    members = [(MemberKind.CHILD, c.id, c.name, c.nicknames) for c in roster.children]
    members += [(MemberKind.ADULT, a.id, a.name, []) for a in roster.adults]

    best: MemberMatch | None = None
    for kind, member_id, name, nicknames in members:
        candidate = None
        if name.strip() and _whole_word(name, normalized):
            candidate = (MatchType.EXACT, name, EXACT_MATCH_CONFIDENCE, f'name "{name}" mentioned')
        else:
            nickname = next((n for n in nicknames if n.strip() and _whole_word(n, normalized)), None)
            if nickname:
                candidate = (
                    MatchType.NICKNAME,
                    nickname,
                    NICKNAME_MATCH_CONFIDENCE,
                    f'nickname "{nickname}" refers to {name}',
                )
            else:
                key = normalize_text(name).strip()
                token = next(
                    (t for t in tokens if len(key) >= MIN_PARTIAL_LENGTH and t.startswith(key)),
                    None,
                )
                if token:
                    candidate = (
                        MatchType.PARTIAL,
                        token,
                        PARTIAL_MATCH_CONFIDENCE,
                        f'"{token}" partially matches {name}',
                    )

        if candidate is None:
            continue
        match_type, raw, confidence, reason = candidate
        if best is None or confidence > best.confidence:
            best = MemberMatch(
                member_id=member_id,
                name=name,
                kind=kind,
                match_type=match_type,
                raw=raw,
                confidence=confidence,
                reason=reason,
            )
    return best


# --- Action ---


def extract_action(text: str) -> ExtractedAction:
    """Split the utterance into a leading verb and the object phrase."""
    normalized = " ".join(text.split())
    normalized = _LABEL_PREFIX_RE.sub("", normalized)

    if not normalized:
        return ExtractedAction(raw=text, normalized="", confidence=0.0, reason="empty utterance")

    verb, _, rest = normalized.partition(" ")
    verb = verb.rstrip(_TRAILING_PUNCT) or verb
    obj = rest.rstrip(_TRAILING_PUNCT).strip() or None

    if obj is None:
        return ExtractedAction(
            raw=text,
            normalized=normalized,
            verb=verb,
            confidence=0.4,
            reason="single word, no object",
        )
    return ExtractedAction(
        raw=text,
        normalized=normalized,
        verb=verb,
        object=obj,
        confidence=0.6,
        reason="first word taken as the verb",
    )


# --- Aggregation ---


def overall_confidence(
    category: ExtractedCategory,
    action: ExtractedAction,
    urgency: ExtractedUrgency,
    date_result: ExtractedDate,
    member: MemberMatch | None,
) -> float:
    """Weighted mean of the signal confidences. The member counts only when matched."""
    parts = [
        (SIGNAL_WEIGHTS["category"], category.confidence),
        (SIGNAL_WEIGHTS["action"], action.confidence),
        (SIGNAL_WEIGHTS["urgency"], urgency.confidence),
        (SIGNAL_WEIGHTS["date"], date_result.confidence),
    ]
    if member is not None:
        parts.append((SIGNAL_WEIGHTS["member"], member.confidence))
    total_weight = sum(w for w, _ in parts)
    return round(sum(w * c for w, c in parts) / total_weight, 3)


def extract_keywords(
    text: str,
    roster: HouseholdRoster | None = None,
    language: str = "fr",
    today: date | None = None,
    table: KeywordTable | None = None,
    transcription_id: str | None = None,
    now: datetime | None = None,
) -> SemanticExtraction:
    """Run every heuristic over the text and assemble a SemanticExtraction."""
    action = extract_action(text)
    category = detect_category(text, language, table)
    urgency = detect_urgency(text, language, table)
    date_result = parse_date(text, language, today, table)
    member = match_member(text, roster)

    warnings = []
    if not action.normalized:
        warnings.append("empty transcript")
    elif category.primary == Category.OTHER:
        warnings.append("could not determine a category")

    return SemanticExtraction(
        id=f"ext_{uuid.uuid4().hex[:12]}",
        transcription_id=transcription_id,
        household_id=roster.household_id if roster else None,
        language=language,
        original_text=text,
        action=action,
        category=category,
        urgency=urgency,
        date=date_result,
        member=member,
        overall_confidence=overall_confidence(category, action, urgency, date_result, member),
        source=ExtractionSource.KEYWORD,
        warnings=warnings,
        extracted_at=now or datetime.now(timezone.utc),
    )
