"""Task previews: titles, charge weight, assignee suggestion, and the confirm lifecycle.

Store functions take a ``TaskStore`` and return a new one alongside a result.
Expiry is evaluated lazily from ``now`` on every read and transition.
"""

import logging
import uuid
from datetime import date, datetime, timedelta, timezone
from typing import Any

from pydantic import ValidationError

from voicetask.keywords import title_templates
from voicetask.models import (
    AssigneeSuggestion,
    Category,
    ChargeWeight,
    ConfirmedTask,
    ConfirmResult,
    HouseholdRoster,
    LifecycleResult,
    MemberKind,
    MemberWorkload,
    PreviewStatus,
    Priority,
    SemanticExtraction,
    TaskPreview,
    TaskStore,
    Urgency,
)

logger = logging.getLogger(__name__)

# mental, time, emotional, physical
CATEGORY_CHARGE_WEIGHTS: dict[Category, tuple[float, float, float, float]] = {
    Category.HEALTH: (7, 5, 6, 2),
    Category.EDUCATION: (6, 4, 5, 1),
    Category.ACTIVITIES: (4, 5, 3, 4),
    Category.HOUSEHOLD: (3, 5, 2, 6),
    Category.TRANSPORT: (2, 6, 2, 3),
    Category.SOCIAL: (4, 4, 5, 2),
    Category.FOOD: (3, 5, 2, 4),
    Category.OTHER: (4, 4, 3, 3),
}

PRIORITY_MULTIPLIERS = {
    Priority.LOW: 0.8,
    Priority.MEDIUM: 1.0,
    Priority.HIGH: 1.2,
    Priority.CRITICAL: 1.5,
}

URGENCY_TO_PRIORITY = {
    Urgency.CRITICAL: Priority.CRITICAL,
    Urgency.HIGH: Priority.HIGH,
    Urgency.NORMAL: Priority.MEDIUM,
    Urgency.LOW: Priority.LOW,
}

MAX_COMPONENT = 10.0
DEFAULT_DUE_DAYS = 7
HIGH_PRIORITY_DUE_DAYS = 3
PREVIEW_TTL = timedelta(hours=1)
LOW_CONFIDENCE = 0.5
MAX_TITLE_LENGTH = 100
MAX_ALTERNATIVES = 3

UPDATABLE_FIELDS = {
    "title",
    "description",
    "category",
    "priority",
    "due_date",
    "child_id",
    "child_name",
    "suggested_assignees",
}
CONFIRM_OVERRIDES = {"title", "description", "priority", "due_date", "child_id", "assignee_id"}


def _now() -> datetime:
    return datetime.now(timezone.utc)


# --- Scoring ---


def priority_from_urgency(urgency: Urgency) -> Priority:
    return URGENCY_TO_PRIORITY[Urgency(urgency)]


def calculate_charge_weight(category: Category | str, priority: Priority | str) -> ChargeWeight:
    """Effort estimate for a task: category base weights scaled by priority.

    Each component is rounded to one decimal and capped at 10.
    """
    base = CATEGORY_CHARGE_WEIGHTS[Category(category)]
    multiplier = PRIORITY_MULTIPLIERS[Priority(priority)]
    mental, time_, emotional, physical = (min(MAX_COMPONENT, round(v * multiplier, 1)) for v in base)
    return ChargeWeight(
        mental=mental,
        time=time_,
        emotional=emotional,
        physical=physical,
        total=round(mental + time_ + emotional + physical, 1),
    )


def infer_due_date(
    extraction: SemanticExtraction,
    today: date,
    default_due_days: int = DEFAULT_DUE_DAYS,
) -> date | None:
    """Use the spoken date if any, otherwise derive one from urgency."""
    if extraction.date.parsed is not None:
        return extraction.date.parsed
    level = extraction.urgency.level
    if level == Urgency.CRITICAL:
        return today
    if level == Urgency.HIGH:
        return today + timedelta(days=HIGH_PRIORITY_DUE_DAYS)
    if level == Urgency.NORMAL:
        return today + timedelta(days=default_due_days)
    return None


# --- Titles ---


def _capitalize(text: str) -> str:
    return text[:1].upper() + text[1:] if text else text


def _truncate(text: str) -> str:
    if len(text) <= MAX_TITLE_LENGTH:
        return text
    return text[: MAX_TITLE_LENGTH - 1].rstrip() + "…"


def _child_name(extraction: SemanticExtraction) -> str | None:
    member = extraction.member
    if member is not None and member.kind == MemberKind.CHILD:
        return member.name
    return None


def generate_title(extraction: SemanticExtraction, language: str | None = None) -> tuple[str, list[str]]:
    """Build a title and a few alternative phrasings. The title is never empty."""
    templates = title_templates(language or extraction.language, extraction.category.primary)
    action = extraction.action.normalized.rstrip(".!?").strip()
    child = _child_name(extraction)

    if not action:
        title = f"{templates.fallback} ({child})" if child else templates.fallback
        return title or "Task", []

    if child and templates.with_child and child.lower() not in action.lower():
        patterns = templates.with_child
    else:
        patterns = templates.without_child or ["{action}"]

    candidates: list[str] = []
    for pattern in patterns:
        candidate = _capitalize(_truncate(pattern.format(action=action, child=child or "").strip()))
        if candidate and candidate not in candidates:
            candidates.append(candidate)

    if not candidates:
        return templates.fallback or "Task", []
    return candidates[0], candidates[1 : MAX_ALTERNATIVES + 1]


# --- Assignees ---


def workloads_from_roster(roster: HouseholdRoster, default_capacity: float = 100.0) -> list[MemberWorkload]:
    return [
        MemberWorkload(
            member_id=adult.id,
            name=adult.name,
            current_load=adult.current_load,
            capacity=adult.capacity or default_capacity,
        )
        for adult in roster.adults
    ]


def rank_assignees(
    workloads: list[MemberWorkload],
    category: Category,
    weight: ChargeWeight,
) -> list[AssigneeSuggestion]:
    """Members who can take the task, best first.

    Ordered by projected load-to-capacity ratio, then current load, then roster order.
    Members the task would push over capacity are left out.
    """
    candidates = []
    for position, workload in enumerate(workloads):
        projected = workload.current_load + weight.total
        if projected > workload.capacity:
            continue
        ratio = projected / workload.capacity
        candidates.append((ratio, workload.current_load, position, workload, projected))

    candidates.sort(key=lambda c: c[:3])
    return [
        AssigneeSuggestion(
            member_id=workload.member_id,
            name=workload.name,
            projected_load=round(projected, 2),
            projected_ratio=round(ratio, 3),
            reason=f"{ratio:.0%} of capacity after this {Category(category).value} task",
        )
        for ratio, _, _, workload, projected in candidates
    ]


def suggest_assignee(
    workloads: list[MemberWorkload],
    category: Category,
    weight: ChargeWeight,
) -> AssigneeSuggestion | None:
    """The member with the most room for the task, or None if nobody has room."""
    ranked = rank_assignees(workloads, category, weight)
    return ranked[0] if ranked else None


# --- Preview generation ---


def generate_task_preview(
    extraction: SemanticExtraction,
    household_id: str,
    roster: HouseholdRoster | None = None,
    workloads: list[MemberWorkload] | None = None,
    now: datetime | None = None,
    ttl: timedelta = PREVIEW_TTL,
    default_capacity: float = 100.0,
    default_due_days: int = DEFAULT_DUE_DAYS,
) -> TaskPreview:
    now = now or _now()
    category = extraction.category.primary
    priority = priority_from_urgency(extraction.urgency.level)
    weight = calculate_charge_weight(category, priority)
    title, alternatives = generate_title(extraction)

    if workloads is None:
        workloads = workloads_from_roster(roster, default_capacity) if roster else []
    suggestions = rank_assignees(workloads, category, weight)
    due_date = infer_due_date(extraction, now.date(), default_due_days)

    warnings = list(extraction.warnings)
    if extraction.overall_confidence < LOW_CONFIDENCE:
        warnings.append("low overall confidence, please review all fields")
    if due_date is None:
        warnings.append("no deadline could be inferred")
    if workloads and not suggestions:
        warnings.append("every member would exceed capacity")

    child_name = _child_name(extraction)
    return TaskPreview(
        id=f"preview_{uuid.uuid4().hex[:12]}",
        extraction_id=extraction.id,
        household_id=household_id,
        language=extraction.language,
        title=title,
        alternative_titles=alternatives,
        description=extraction.original_text,
        category=category,
        priority=priority,
        due_date=due_date,
        charge_weight=weight,
        child_id=extraction.member.member_id if child_name else None,
        child_name=child_name,
        suggested_assignees=suggestions,
        confidence=extraction.overall_confidence,
        warnings=warnings,
        status=PreviewStatus.PENDING,
        created_at=now,
        expires_at=now + ttl,
    )


def generate_batch_previews(
    extractions: list[SemanticExtraction],
    household_id: str,
    roster: HouseholdRoster | None = None,
    workloads: list[MemberWorkload] | None = None,
    now: datetime | None = None,
    ttl: timedelta = PREVIEW_TTL,
    default_capacity: float = 100.0,
    default_due_days: int = DEFAULT_DUE_DAYS,
) -> list[TaskPreview]:
    """Previews for several utterances, charging each suggestion before the next one."""
    if workloads is None:
        workloads = workloads_from_roster(roster, default_capacity) if roster else []
    loads = list(workloads)
    previews = []
    for extraction in extractions:
        preview = generate_task_preview(
            extraction, household_id, roster, loads, now, ttl, default_capacity, default_due_days
        )
        previews.append(preview)
        if preview.suggested_assignees:
            chosen = preview.suggested_assignees[0].member_id
            loads = [
                w.model_copy(update={"current_load": w.current_load + preview.charge_weight.total})
                if w.member_id == chosen else w
                for w in loads
            ]
    return previews


# --- Lifecycle ---


def effective_status(preview: TaskPreview, now: datetime | None = None) -> PreviewStatus:
    """Status as seen at ``now``: a pending preview past its expiry is expired."""
    if preview.status == PreviewStatus.PENDING and (now or _now()) >= preview.expires_at:
        return PreviewStatus.EXPIRED
    return preview.status


def _as_of(preview: TaskPreview, now: datetime | None) -> TaskPreview:
    status = effective_status(preview, now)
    if status == preview.status:
        return preview
    return preview.model_copy(update={"status": status})


def _put(store: TaskStore, preview: TaskPreview) -> TaskStore:
    return store.model_copy(update={"previews": {**store.previews, preview.id: preview}})


def _rejected(preview_id: str, reason: str, status: PreviewStatus | None = None) -> LifecycleResult:
    return LifecycleResult(ok=False, preview_id=preview_id, status=status, reason=reason)


def add_preview(store: TaskStore, preview: TaskPreview) -> TaskStore:
    return _put(store, preview.model_copy(update={"status": PreviewStatus.PENDING}))


def update_preview(
    store: TaskStore,
    preview_id: str,
    updates: dict[str, Any],
    now: datetime | None = None,
) -> tuple[TaskStore, LifecycleResult]:
    """Patch a pending preview. Changing category or priority recomputes the charge weight."""
    preview = store.previews.get(preview_id)
    if preview is None:
        return store, _rejected(preview_id, "preview not found")

    status = effective_status(preview, now)
    if status != PreviewStatus.PENDING:
        return store, _rejected(preview_id, f"preview is {status.value}", status)

    unknown = sorted(set(updates) - UPDATABLE_FIELDS)
    if unknown:
        return store, _rejected(preview_id, f"fields cannot be updated: {', '.join(unknown)}", status)

    data = preview.model_dump()
    data.update(updates)
    try:
        if "category" in updates or "priority" in updates:
            data["charge_weight"] = calculate_charge_weight(data["category"], data["priority"])
        updated = TaskPreview.model_validate(data)
    except (ValidationError, ValueError, KeyError) as e:
        return store, _rejected(preview_id, f"invalid update: {e}", status)

    return _put(store, updated), LifecycleResult(
        ok=True, preview_id=preview_id, status=updated.status, preview=updated
    )


def confirm_task(
    store: TaskStore,
    preview_id: str,
    household_id: str,
    confirmed_by: str,
    now: datetime | None = None,
    overrides: dict[str, Any] | None = None,
) -> tuple[TaskStore, ConfirmResult]:
    """Turn a pending preview into a ConfirmedTask. A preview confirms at most once."""
    now = now or _now()
    overrides = overrides or {}

    preview = store.previews.get(preview_id)
    if preview is None:
        return store, ConfirmResult(ok=False, preview_id=preview_id, reason="preview not found")

    status = effective_status(preview, now)
    if status != PreviewStatus.PENDING:
        return store, ConfirmResult(
            ok=False, preview_id=preview_id, status=status, reason=f"preview already {status.value}"
        )
    if preview.household_id != household_id:
        return store, ConfirmResult(
            ok=False, preview_id=preview_id, status=status, reason="preview belongs to another household"
        )

    unknown = sorted(set(overrides) - CONFIRM_OVERRIDES)
    if unknown:
        return store, ConfirmResult(
            ok=False, preview_id=preview_id, status=status,
            reason=f"fields cannot be overridden: {', '.join(unknown)}",
        )

    default_assignee = preview.suggested_assignees[0].member_id if preview.suggested_assignees else None
    try:
        priority = Priority(overrides.get("priority", preview.priority))
        task = ConfirmedTask(
            id=f"task_{uuid.uuid4().hex[:12]}",
            preview_id=preview.id,
            extraction_id=preview.extraction_id,
            household_id=household_id,
            title=overrides.get("title", preview.title),
            description=overrides.get("description", preview.description),
            category=preview.category,
            priority=priority,
            due_date=overrides.get("due_date", preview.due_date),
            charge_weight=calculate_charge_weight(preview.category, priority),
            child_id=overrides.get("child_id", preview.child_id),
            assignee_id=overrides.get("assignee_id", default_assignee),
            confirmed_by=confirmed_by,
            confirmed_at=now,
        )
    except (ValidationError, ValueError) as e:
        return store, ConfirmResult(
            ok=False, preview_id=preview_id, status=status, reason=f"invalid override: {e}"
        )

    confirmed_preview = preview.model_copy(update={"status": PreviewStatus.CONFIRMED})
    store = _put(store, confirmed_preview)
    store = store.model_copy(update={"confirmed": {**store.confirmed, task.id: task}})
    logger.info(f"Preview {preview_id} confirmed as {task.id} by {confirmed_by}")
    return store, ConfirmResult(ok=True, preview_id=preview_id, status=PreviewStatus.CONFIRMED, task=task)


def confirm_batch_tasks(
    store: TaskStore,
    preview_ids: list[str],
    household_id: str,
    confirmed_by: str,
    now: datetime | None = None,
) -> tuple[TaskStore, list[ConfirmResult]]:
    """Confirm several previews in order. One rejection does not stop the rest."""
    now = now or _now()
    results = []
    for preview_id in preview_ids:
        store, result = confirm_task(store, preview_id, household_id, confirmed_by, now)
        results.append(result)
    return store, results


def cancel_preview(
    store: TaskStore,
    preview_id: str,
    now: datetime | None = None,
) -> tuple[TaskStore, LifecycleResult]:
    """Cancel a pending preview. Terminal previews are left as they are."""
    preview = store.previews.get(preview_id)
    if preview is None:
        return store, _rejected(preview_id, "preview not found")

    status = effective_status(preview, now)
    if status != PreviewStatus.PENDING:
        return store, _rejected(preview_id, f"preview already {status.value}", status)

    cancelled = preview.model_copy(update={"status": PreviewStatus.CANCELLED})
    logger.info(f"Preview {preview_id} cancelled")
    return _put(store, cancelled), LifecycleResult(
        ok=True, preview_id=preview_id, status=PreviewStatus.CANCELLED, preview=cancelled
    )


def sweep_expired_previews(store: TaskStore, now: datetime | None = None) -> TaskStore:
    """Evict previews that have expired. Reads do not depend on this running."""
    kept = {
        pid: p for pid, p in store.previews.items()
        if effective_status(p, now) != PreviewStatus.EXPIRED
    }
    if len(kept) == len(store.previews):
        return store
    logger.info(f"Evicted {len(store.previews) - len(kept)} expired previews")
    return store.model_copy(update={"previews": kept})


# --- Queries ---


def get_preview(store: TaskStore, preview_id: str, now: datetime | None = None) -> TaskPreview | None:
    preview = store.previews.get(preview_id)
    return _as_of(preview, now) if preview is not None else None


def get_pending_previews(store: TaskStore, household_id: str, now: datetime | None = None) -> list[TaskPreview]:
    previews = [
        p for p in store.previews.values()
        if p.household_id == household_id and effective_status(p, now) == PreviewStatus.PENDING
    ]
    return sorted(previews, key=lambda p: p.created_at)


def get_confirmed_task(store: TaskStore, task_id: str) -> ConfirmedTask | None:
    return store.confirmed.get(task_id)


def get_confirmed_tasks(
    store: TaskStore,
    household_id: str,
    child_id: str | None = None,
    assignee_id: str | None = None,
    category: Category | str | None = None,
    priority: Priority | str | None = None,
) -> list[ConfirmedTask]:
    tasks = [t for t in store.confirmed.values() if t.household_id == household_id]
    if child_id is not None:
        tasks = [t for t in tasks if t.child_id == child_id]
    if assignee_id is not None:
        tasks = [t for t in tasks if t.assignee_id == assignee_id]
    if category is not None:
        value = getattr(category, "value", category)
        tasks = [t for t in tasks if t.category.value == value]
    if priority is not None:
        value = getattr(priority, "value", priority)
        tasks = [t for t in tasks if t.priority.value == value]
    return sorted(tasks, key=lambda t: t.confirmed_at)


def get_task_stats(store: TaskStore, now: datetime | None = None) -> dict[str, int]:
    stats = {status.value: 0 for status in PreviewStatus}
    for preview in store.previews.values():
        stats[effective_status(preview, now).value] += 1
    stats["confirmed_tasks"] = len(store.confirmed)
    return stats
