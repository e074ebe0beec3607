"""Hand confirmed tasks to the task-management backend via REST API."""

from __future__ import annotations

import logging
import os

import requests

from voicetask.models import ConfirmedTask, Priority

logger = logging.getLogger(__name__)

PRIORITY_IMPORTANCE = {
    Priority.CRITICAL: 1.0,
    Priority.HIGH: 0.8,
    Priority.MEDIUM: 0.5,
    Priority.LOW: 0.3,
}


def post_confirmed_task(task: ConfirmedTask) -> dict:
    """Post a confirmed task to the backend.

    Reads TASK_SINK_ENDPOINT and TASK_SINK_API_KEY from environment.
    Returns silently if not configured.
    """
    endpoint = os.getenv("TASK_SINK_ENDPOINT", "").rstrip("/")
    api_key = os.getenv("TASK_SINK_API_KEY", "")
    if not endpoint or not api_key:
        logger.debug("Task sink not configured, skipping")
        return {"status": "skipped", "reason": "not configured"}

    headers = {"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"}
    url = f"{endpoint}/tasks"

    try:
        resp = requests.post(url, headers=headers, json=build_payload(task), timeout=10)
        resp.raise_for_status()
    except requests.RequestException as e:
        logger.warning("Failed to store task %s: %s", task.id, e)
        return {"status": "error", "task_id": task.id, "error": str(e)}

    return {"status": "stored", "task_id": task.id}


def build_payload(task: ConfirmedTask) -> dict:
    """Flat JSON body for the backend, with tags for filtering."""
    payload = task.model_dump(mode="json")
    payload["source"] = "voice"
    payload["importance"] = PRIORITY_IMPORTANCE.get(task.priority, 0.5)
    payload["tags"] = _tags(task)
    return payload


def _tags(task: ConfirmedTask) -> list[str]:
    tags = [f"category:{task.category.value}", f"priority:{task.priority.value}"]
    if task.child_id:
        tags.append(f"child:{task.child_id}")
    if task.assignee_id:
        tags.append(f"assignee:{task.assignee_id}")
    if task.due_date:
        tags.append("has-deadline")
    return tags
