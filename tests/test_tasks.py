"""Tests for task preview generation and the confirm lifecycle."""

from datetime import date, datetime, timedelta, timezone

import pytest

from voicetask.classify import extract_keywords
from voicetask.models import (
    Category,
    MemberWorkload,
    PreviewStatus,
    Priority,
    TaskPreview,
    TaskStore,
    Urgency,
)
from voicetask.tasks import (
    add_preview,
    calculate_charge_weight,
    cancel_preview,
    confirm_batch_tasks,
    confirm_task,
    effective_status,
    generate_batch_previews,
    generate_task_preview,
    generate_title,
    get_confirmed_task,
    get_confirmed_tasks,
    get_pending_previews,
    get_preview,
    get_task_stats,
    infer_due_date,
    priority_from_urgency,
    rank_assignees,
    suggest_assignee,
    sweep_expired_previews,
    update_preview,
    workloads_from_roster,
)

TODAY = date(2025, 6, 10)
NOW = datetime(2025, 6, 10, 9, 0, tzinfo=timezone.utc)
LATER = NOW + timedelta(hours=2)

DOCTOR = "Urgent: emmener Marie chez le médecin demain matin"


def _extraction(text, roster=None, language="fr"):
    return extract_keywords(text, roster, language, TODAY, now=NOW)


@pytest.fixture
def preview(roster):
    return generate_task_preview(_extraction(DOCTOR, roster), "hh_1", roster, now=NOW)


@pytest.fixture
def store(preview):
    return add_preview(TaskStore(), preview)


class TestChargeWeight:
    """Test the effort estimate."""

    def test_health_medium(self):
        weight = calculate_charge_weight(Category.HEALTH, Priority.MEDIUM)
        assert (weight.mental, weight.time, weight.emotional, weight.physical) == (7, 5, 6, 2)
        assert weight.total == 20

    def test_components_capped(self):
        weight = calculate_charge_weight(Category.HEALTH, Priority.CRITICAL)
        assert weight.mental == 10
        assert weight.total == 29.5

    @pytest.mark.parametrize("category", list(Category))
    def test_monotonic_in_priority(self, category):
        totals = [
            calculate_charge_weight(category, p).total
            for p in (Priority.LOW, Priority.MEDIUM, Priority.HIGH, Priority.CRITICAL)
        ]
        assert totals == sorted(totals)
        assert len(set(totals)) == 4

    def test_health_outweighs_household(self):
        for priority in Priority:
            health = calculate_charge_weight(Category.HEALTH, priority)
            household = calculate_charge_weight(Category.HOUSEHOLD, priority)
            assert health.total > household.total
            assert health.mental > household.mental

    def test_accepts_plain_strings(self):
        assert calculate_charge_weight("food", "low").total == calculate_charge_weight(
            Category.FOOD, Priority.LOW
        ).total

    def test_priority_mapping(self):
        assert priority_from_urgency(Urgency.NORMAL) == Priority.MEDIUM
        assert priority_from_urgency("critical") == Priority.CRITICAL


class TestDueDate:
    def test_spoken_date_wins(self):
        assert infer_due_date(_extraction("ranger le garage lundi"), TODAY) == date(2025, 6, 16)

    def test_critical_is_today(self):
        assert infer_due_date(_extraction("ranger le garage, urgent"), TODAY) == TODAY

    def test_high_is_three_days(self):
        assert infer_due_date(_extraction("ranger le garage, important"), TODAY) == date(2025, 6, 13)

    def test_normal_is_a_week(self):
        assert infer_due_date(_extraction("ranger le garage"), TODAY) == date(2025, 6, 17)
        assert infer_due_date(_extraction("ranger le garage"), TODAY, default_due_days=2) == date(2025, 6, 12)

    def test_low_has_no_deadline(self):
        assert infer_due_date(_extraction("ranger le garage, pas urgent"), TODAY) is None


class TestTitles:
    """Test title generation."""

    def test_child_already_named(self, roster):
        title, alternatives = generate_title(_extraction(DOCTOR, roster))
        assert title == "Emmener Marie chez le médecin demain matin"
        assert alternatives == ["Santé : emmener Marie chez le médecin demain matin"]

    def test_child_added_when_only_nickname_spoken(self, roster):
        title, _ = generate_title(_extraction("vaccin de Mimi", roster))
        assert title == "Vaccin de Mimi pour Marie"

    def test_empty_utterance_uses_fallback(self, roster):
        title, alternatives = generate_title(_extraction("", roster))
        assert title == "Nouvelle tâche"
        assert alternatives == []

    def test_english_templates(self):
        title, _ = generate_title(_extraction("", None, "en"))
        assert title == "New task"

    def test_long_utterance_truncated(self):
        title, _ = generate_title(_extraction("ranger " + "le garage " * 40))
        assert 0 < len(title) <= 100
        assert title.endswith("…")

    def test_never_empty(self, roster):
        for text in ["", " ", ".", "?", "ranger", DOCTOR]:
            title, _ = generate_title(_extraction(text, roster))
            assert title.strip()


class TestAssignees:
    """Test workload-based suggestions."""

    def test_lowest_projected_ratio_first(self):
        weight = calculate_charge_weight(Category.HOUSEHOLD, Priority.MEDIUM)
        workloads = [
            MemberWorkload(member_id="a", current_load=40, capacity=100),
            MemberWorkload(member_id="b", current_load=60, capacity=200),
        ]
        ranked = rank_assignees(workloads, Category.HOUSEHOLD, weight)
        assert [s.member_id for s in ranked] == ["b", "a"]
        assert ranked[0].projected_load == 76
        assert ranked[0].projected_ratio == 0.38

    def test_ties_keep_roster_order(self):
        weight = calculate_charge_weight(Category.FOOD, Priority.LOW)
        workloads = [
            MemberWorkload(member_id="a", capacity=100),
            MemberWorkload(member_id="b", capacity=100),
        ]
        assert suggest_assignee(workloads, Category.FOOD, weight).member_id == "a"

    def test_over_capacity_excluded(self):
        weight = calculate_charge_weight(Category.HEALTH, Priority.MEDIUM)
        workloads = [MemberWorkload(member_id="a", current_load=95, capacity=100)]
        assert rank_assignees(workloads, Category.HEALTH, weight) == []
        assert suggest_assignee(workloads, Category.HEALTH, weight) is None

    def test_roster_default_capacity(self, roster):
        roster = roster.model_copy(update={
            "adults": [roster.adults[0].model_copy(update={"capacity": None})]
        })
        workloads = workloads_from_roster(roster, default_capacity=50)
        assert workloads[0].capacity == 50
        assert workloads[0].current_load == 30


class TestGenerateTaskPreview:
    """Test the assembled preview."""

    def test_doctor_visit(self, preview):
        assert preview.category == Category.HEALTH
        assert preview.priority == Priority.CRITICAL
        assert preview.due_date == date(2025, 6, 11)
        assert preview.child_id == "child_marie"
        assert preview.child_name == "Marie"
        assert preview.suggested_assignees[0].member_id == "adult_thomas"
        assert preview.status == PreviewStatus.PENDING
        assert preview.expires_at == NOW + timedelta(hours=1)
        assert preview.description == DOCTOR
        assert preview.charge_weight.total == 29.5

    def test_custom_ttl(self, roster):
        preview = generate_task_preview(
            _extraction(DOCTOR, roster), "hh_1", roster, now=NOW, ttl=timedelta(minutes=5)
        )
        assert preview.expires_at == NOW + timedelta(minutes=5)

    def test_adult_mention_is_not_a_child(self, roster):
        preview = generate_task_preview(_extraction("demander à Thomas", roster), "hh_1", roster, now=NOW)
        assert preview.child_id is None

    def test_warnings(self, empty_roster):
        preview = generate_task_preview(_extraction("", empty_roster), "hh_1", empty_roster, now=NOW)
        assert "empty transcript" in preview.warnings
        assert any("low overall confidence" in w for w in preview.warnings)
        assert preview.suggested_assignees == []

    def test_no_deadline_warning(self):
        preview = generate_task_preview(_extraction("ranger le garage, pas urgent"), "hh_1", now=NOW)
        assert preview.due_date is None
        assert "no deadline could be inferred" in preview.warnings

    def test_everyone_over_capacity(self):
        workloads = [MemberWorkload(member_id="a", current_load=99, capacity=100)]
        preview = generate_task_preview(_extraction(DOCTOR), "hh_1", workloads=workloads, now=NOW)
        assert preview.suggested_assignees == []
        assert "every member would exceed capacity" in preview.warnings

    def test_json_round_trip(self, preview):
        assert TaskPreview.model_validate_json(preview.model_dump_json()) == preview

    def test_batch_charges_each_suggestion(self, roster):
        previews = generate_batch_previews(
            [_extraction(DOCTOR, roster), _extraction("ranger le garage", roster)],
            "hh_1",
            roster,
            now=NOW,
        )
        assert previews[0].suggested_assignees[0].member_id == "adult_thomas"
        assert previews[1].suggested_assignees[0].member_id == "adult_sophie"

    def test_batch_default_due_days(self, roster):
        previews = generate_batch_previews(
            [_extraction("ranger le garage", roster)], "hh_1", roster, now=NOW, default_due_days=2
        )
        assert previews[0].due_date == date(2025, 6, 12)


class TestUpdatePreview:
    def test_update_title(self, store, preview):
        store, result = update_preview(store, preview.id, {"title": "RDV médecin Marie"}, now=NOW)
        assert result.ok
        assert get_preview(store, preview.id, NOW).title == "RDV médecin Marie"

    def test_category_change_recomputes_weight(self, store, preview):
        store, result = update_preview(store, preview.id, {"category": "household", "priority": "low"}, now=NOW)
        assert result.ok
        assert result.preview.charge_weight == calculate_charge_weight(Category.HOUSEHOLD, Priority.LOW)

    def test_unknown_field_rejected(self, store, preview):
        new_store, result = update_preview(store, preview.id, {"status": "confirmed"}, now=NOW)
        assert not result.ok
        assert result.reason == "fields cannot be updated: status"
        assert new_store is store

    def test_invalid_values_rejected(self, store, preview):
        _, result = update_preview(store, preview.id, {"title": ""}, now=NOW)
        assert not result.ok
        assert result.reason.startswith("invalid update")

        _, result = update_preview(store, preview.id, {"priority": "huge"}, now=NOW)
        assert not result.ok

    def test_expired_preview_rejected(self, store, preview):
        _, result = update_preview(store, preview.id, {"title": "x"}, now=LATER)
        assert not result.ok
        assert result.status == PreviewStatus.EXPIRED

    def test_missing_preview(self, store):
        _, result = update_preview(store, "nope", {"title": "x"})
        assert result.reason == "preview not found"


class TestConfirm:
    """Test confirmation, cancellation, and expiry."""

    def test_confirm(self, store, preview):
        store, result = confirm_task(store, preview.id, "hh_1", "adult_sophie", now=NOW)
        assert result.ok
        task = result.task
        assert task.preview_id == preview.id
        assert task.assignee_id == "adult_thomas"
        assert task.confirmed_by == "adult_sophie"
        assert task.title == preview.title
        assert get_preview(store, preview.id, NOW).status == PreviewStatus.CONFIRMED
        assert get_confirmed_task(store, task.id) == task

    def test_confirm_at_most_once(self, store, preview):
        store, first = confirm_task(store, preview.id, "hh_1", "adult_sophie", now=NOW)
        store, second = confirm_task(store, preview.id, "hh_1", "adult_thomas", now=NOW)
        assert first.ok
        assert not second.ok
        assert second.reason == "preview already confirmed"
        assert len(store.confirmed) == 1

    def test_confirm_batch(self, store, preview, roster):
        chores = generate_task_preview(_extraction("ranger le garage", roster), "hh_1", roster, now=NOW)
        store = add_preview(store, chores)

        store, results = confirm_batch_tasks(
            store, [preview.id, "prev_missing", chores.id, preview.id], "hh_1", "adult_sophie", now=NOW
        )

        assert [r.ok for r in results] == [True, False, True, False]
        assert results[1].reason == "preview not found"
        assert results[3].reason == "preview already confirmed"
        assert len(store.confirmed) == 2
        assert {t.preview_id for t in store.confirmed.values()} == {preview.id, chores.id}

    def test_overrides(self, store, preview):
        _, result = confirm_task(
            store,
            preview.id,
            "hh_1",
            "adult_sophie",
            now=NOW,
            overrides={"assignee_id": "adult_sophie", "priority": "low", "title": "Pédiatre"},
        )
        assert result.task.assignee_id == "adult_sophie"
        assert result.task.priority == Priority.LOW
        assert result.task.charge_weight == calculate_charge_weight(Category.HEALTH, Priority.LOW)
        assert result.task.title == "Pédiatre"

    def test_bad_overrides(self, store, preview):
        new_store, result = confirm_task(
            store, preview.id, "hh_1", "adult_sophie", now=NOW, overrides={"category": "food"}
        )
        assert not result.ok
        assert new_store is store

        _, result = confirm_task(store, preview.id, "hh_1", "adult_sophie", now=NOW, overrides={"title": ""})
        assert result.reason.startswith("invalid override")

    def test_other_household(self, store, preview):
        _, result = confirm_task(store, preview.id, "hh_2", "adult_x", now=NOW)
        assert not result.ok
        assert result.reason == "preview belongs to another household"

    def test_expired(self, store, preview):
        _, result = confirm_task(store, preview.id, "hh_1", "adult_sophie", now=preview.expires_at)
        assert not result.ok
        assert result.status == PreviewStatus.EXPIRED

    def test_missing(self, store):
        _, result = confirm_task(store, "nope", "hh_1", "adult_sophie")
        assert result.reason == "preview not found"

    def test_cancel(self, store, preview):
        store, result = cancel_preview(store, preview.id, now=NOW)
        assert result.ok
        assert result.status == PreviewStatus.CANCELLED

        _, again = cancel_preview(store, preview.id, now=NOW)
        assert again.reason == "preview already cancelled"

        _, confirm = confirm_task(store, preview.id, "hh_1", "adult_sophie", now=NOW)
        assert confirm.reason == "preview already cancelled"

    def test_cancel_confirmed(self, store, preview):
        store, _ = confirm_task(store, preview.id, "hh_1", "adult_sophie", now=NOW)
        _, result = cancel_preview(store, preview.id, now=NOW)
        assert not result.ok
        assert result.status == PreviewStatus.CONFIRMED


class TestExpiryAndQueries:
    def test_expiry_is_lazy(self, store, preview):
        assert effective_status(preview, NOW) == PreviewStatus.PENDING
        assert effective_status(preview, LATER) == PreviewStatus.EXPIRED
        assert store.previews[preview.id].status == PreviewStatus.PENDING
        assert get_preview(store, preview.id, LATER).status == PreviewStatus.EXPIRED

    def test_pending_previews(self, store, preview):
        assert get_pending_previews(store, "hh_1", NOW) == [preview]
        assert get_pending_previews(store, "hh_1", LATER) == []
        assert get_pending_previews(store, "hh_2", NOW) == []

    def test_sweep(self, store, preview):
        assert sweep_expired_previews(store, NOW) is store
        assert sweep_expired_previews(store, LATER).previews == {}

    def test_sweep_keeps_confirmed(self, store, preview):
        store, _ = confirm_task(store, preview.id, "hh_1", "adult_sophie", now=NOW)
        assert preview.id in sweep_expired_previews(store, LATER).previews

    def test_confirmed_task_filters(self, roster):
        store = TaskStore()
        for text in (DOCTOR, "ranger le garage"):
            p = generate_task_preview(_extraction(text, roster), "hh_1", roster, now=NOW)
            store = add_preview(store, p)
            store, _ = confirm_task(store, p.id, "hh_1", "adult_sophie", now=NOW)

        assert len(get_confirmed_tasks(store, "hh_1")) == 2
        assert len(get_confirmed_tasks(store, "hh_1", child_id="child_marie")) == 1
        assert len(get_confirmed_tasks(store, "hh_1", category="household")) == 1
        assert len(get_confirmed_tasks(store, "hh_1", priority=Priority.CRITICAL)) == 1
        assert len(get_confirmed_tasks(store, "hh_1", assignee_id="adult_thomas")) == 2
        assert get_confirmed_tasks(store, "hh_2") == []
        assert get_confirmed_tasks(store, "hh_1", category="gardening") == []
        assert get_confirmed_tasks(store, "hh_1", priority="whenever") == []

    def test_stats(self, store, preview):
        stats = get_task_stats(store, LATER)
        assert stats["expired"] == 1
        assert stats["pending"] == 0
        assert stats["confirmed_tasks"] == 0
