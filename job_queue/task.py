"""
Email task model and store key scheme.

Wire format (JSON, one object per list / sorted-set member):
  {
      "id":           "email_<uuid4>",
      "to":           recipient, ';' separated for several,
      "subject":      subject line,
      "body":         message body,
      "retry":        failed attempts so far,
      "max_retry":    retry ceiling before dead-lettering,
      "create_at":    ISO timestamp when the task was created,
      "content_hash": truncated content fingerprint,
      "dedupe_key":   store key holding the fingerprint marker,
  }

Failed entries wrap the task:
  {"task": {...}, "error": "...", "failed_at": "...", "worker_id": 3}
"""
from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from typing import Any

from job_queue.errors import TaskSerializationError


def generate_task_id() -> str:
    return f"email_{uuid.uuid4()}"


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ──────────────────────────────────────────────────────────────
#  Task Model
# ──────────────────────────────────────────────────────────────

@dataclass
class EmailTask:
    """A single email waiting for delivery."""
    to: str
    subject: str
    body: str
    id: str = ""
    retry: int = 0
    max_retry: int = 3
    create_at: str = ""
    content_hash: str = ""
    dedupe_key: str = ""

    def __post_init__(self):
        if not self.id:
            self.id = generate_task_id()
        if not self.create_at:
            self.create_at = utcnow_iso()

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def to_json(self) -> str:
        try:
            return json.dumps(self.to_dict(), ensure_ascii=False)
        except (TypeError, ValueError) as e:
            raise TaskSerializationError(f"Failed to serialize email task {self.id}: {e}") from e

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EmailTask:
        if not isinstance(data, dict):
            raise ValueError("email task payload must be an object")
        missing = [k for k in ("id", "to", "subject", "body") if k not in data]
        if missing:
            raise ValueError(f"email task payload missing fields: {', '.join(missing)}")
        return cls(
            id=str(data["id"]),
            to=str(data["to"]),
            subject=str(data["subject"]),
            body=str(data["body"]),
            retry=int(data.get("retry", 0)),
            max_retry=int(data.get("max_retry", 3)),
            create_at=str(data.get("create_at", "")),
            content_hash=str(data.get("content_hash", "")),
            dedupe_key=str(data.get("dedupe_key", "")),
        )

    @classmethod
    def from_json(cls, payload: str) -> EmailTask:
        """Decode a queue payload. Raises ValueError for anything malformed."""
        try:
            data = json.loads(payload)
        except (TypeError, json.JSONDecodeError) as e:
            raise ValueError(f"invalid email task payload: {e}") from e
        try:
            return cls.from_dict(data)
        except (TypeError, KeyError) as e:
            raise ValueError(f"invalid email task payload: {e}") from e

    @property
    def short_hash(self) -> str:
        return self.content_hash[:8]


@dataclass
class FailedEntry:
    """Dead-letter record for a task that exhausted its retries."""
    task: EmailTask
    error: str
    worker_id: int
    failed_at: str = ""

    def __post_init__(self):
        if not self.failed_at:
            self.failed_at = utcnow_iso()

    def to_json(self) -> str:
        try:
            return json.dumps({
                "task": self.task.to_dict(),
                "error": self.error,
                "failed_at": self.failed_at,
                "worker_id": self.worker_id,
            }, ensure_ascii=False)
        except (TypeError, ValueError) as e:
            raise TaskSerializationError(f"Failed to serialize failed entry {self.task.id}: {e}") from e

    @classmethod
    def from_json(cls, payload: str) -> FailedEntry:
        try:
            data = json.loads(payload)
        except (TypeError, json.JSONDecodeError) as e:
            raise ValueError(f"invalid failed entry payload: {e}") from e
        if not isinstance(data, dict) or "task" not in data:
            raise ValueError("failed entry payload has no task")
        try:
            return cls(
                task=EmailTask.from_dict(data["task"]),
                error=str(data.get("error", "")),
                worker_id=int(data.get("worker_id", 0)),
                failed_at=str(data.get("failed_at", "")),
            )
        except (TypeError, KeyError) as e:
            raise ValueError(f"invalid failed entry payload: {e}") from e


# ──────────────────────────────────────────────────────────────
#  Key Scheme
# ──────────────────────────────────────────────────────────────

class QueueKeys:
    """Store keys, all namespaced under one prefix."""

    def __init__(self, prefix: str = "mailqueue:email"):
        self.prefix = prefix.rstrip(":")
        self.queue = f"{self.prefix}:queue"
        self.failed = f"{self.prefix}:failed"
        self.delayed = f"{self.prefix}:delayed"

    def sent(self, task_id: str) -> str:
        return f"{self.prefix}:sent:task:{task_id}"

    def processing(self, task_id: str) -> str:
        return f"{self.prefix}:processing:task:{task_id}"

    def dedupe(self, day: str, content_hash: str) -> str:
        return f"{self.prefix}:dedupe:{day}:{content_hash}"
