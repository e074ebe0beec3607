"""Tests for handing confirmed tasks to the task backend."""

from datetime import date, datetime, timezone
from unittest.mock import MagicMock, patch

import pytest
import requests

from voicetask.models import Category, ConfirmedTask, Priority
from voicetask.sink import PRIORITY_IMPORTANCE, _tags, build_payload, post_confirmed_task
from voicetask.tasks import calculate_charge_weight

SINK_ENV = {"TASK_SINK_ENDPOINT": "http://localhost:8002", "TASK_SINK_API_KEY": "test-key"}


@pytest.fixture
def task():
    return ConfirmedTask(
        id="task_1",
        preview_id="preview_1",
        extraction_id="ext_1",
        household_id="hh_1",
        title="Emmener Marie chez le médecin",
        description="Urgent: emmener Marie chez le médecin demain",
        category=Category.HEALTH,
        priority=Priority.CRITICAL,
        due_date=date(2025, 6, 11),
        charge_weight=calculate_charge_weight(Category.HEALTH, Priority.CRITICAL),
        child_id="child_marie",
        assignee_id="adult_thomas",
        confirmed_by="adult_sophie",
        confirmed_at=datetime(2025, 6, 10, 9, 5, tzinfo=timezone.utc),
    )


class TestTags:

    def test_full(self, task):
        assert _tags(task) == [
            "category:health",
            "priority:critical",
            "child:child_marie",
            "assignee:adult_thomas",
            "has-deadline",
        ]

    def test_minimal(self, task):
        bare = task.model_copy(update={"child_id": None, "assignee_id": None, "due_date": None})
        assert _tags(bare) == ["category:health", "priority:critical"]


class TestBuildPayload:

    def test_json_ready(self, task):
        payload = build_payload(task)
        assert payload["id"] == "task_1"
        assert payload["due_date"] == "2025-06-11"
        assert payload["category"] == "health"
        assert payload["charge_weight"]["total"] == 29.5
        assert payload["source"] == "voice"
        assert payload["importance"] == 1.0

    def test_importance_tiers(self):
        assert PRIORITY_IMPORTANCE[Priority.CRITICAL] > PRIORITY_IMPORTANCE[Priority.HIGH]
        assert PRIORITY_IMPORTANCE[Priority.HIGH] > PRIORITY_IMPORTANCE[Priority.MEDIUM]
        assert PRIORITY_IMPORTANCE[Priority.MEDIUM] > PRIORITY_IMPORTANCE[Priority.LOW]


class TestPostConfirmedTask:

    @patch.dict("os.environ", {}, clear=True)
    def test_skips_when_not_configured(self, task):
        result = post_confirmed_task(task)
        assert result == {"status": "skipped", "reason": "not configured"}

    @patch.dict("os.environ", SINK_ENV)
    @patch("voicetask.sink.requests.post")
    def test_posts_task(self, mock_post, task):
        mock_post.return_value = MagicMock(status_code=201)

        result = post_confirmed_task(task)

        assert result == {"status": "stored", "task_id": "task_1"}
        mock_post.assert_called_once()
        call = mock_post.call_args
        assert call.args[0] == "http://localhost:8002/tasks"
        assert call.kwargs["headers"]["Authorization"] == "Bearer test-key"
        assert call.kwargs["json"]["tags"][0] == "category:health"
        assert call.kwargs["timeout"] == 10

    @patch.dict("os.environ", {**SINK_ENV, "TASK_SINK_ENDPOINT": "http://localhost:8002/"})
    @patch("voicetask.sink.requests.post")
    def test_strips_trailing_slash(self, mock_post, task):
        post_confirmed_task(task)
        assert mock_post.call_args.args[0] == "http://localhost:8002/tasks"

    @patch.dict("os.environ", SINK_ENV)
    @patch("voicetask.sink.requests.post")
    def test_handles_connection_errors(self, mock_post, task):
        mock_post.side_effect = requests.ConnectionError("refused")

        result = post_confirmed_task(task)

        assert result["status"] == "error"
        assert result["task_id"] == "task_1"
        assert "refused" in result["error"]

    @patch.dict("os.environ", SINK_ENV)
    @patch("voicetask.sink.requests.post")
    def test_handles_http_errors(self, mock_post, task):
        response = MagicMock()
        response.raise_for_status.side_effect = requests.HTTPError("500 Server Error")
        mock_post.return_value = response

        result = post_confirmed_task(task)

        assert result["status"] == "error"
        assert "500" in result["error"]
