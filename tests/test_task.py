"""Tests for the email task model, dead-letter entries and key scheme."""
import json
import pytest

from job_queue.task import EmailTask, FailedEntry, QueueKeys


class TestEmailTask:
    def test_defaults_fill_id_and_timestamp(self):
        task = EmailTask(to="a@example.com", subject="Hi", body="Body")
        assert task.id.startswith("email_")
        assert task.create_at
        assert task.retry == 0
        assert task.max_retry == 3

    def test_ids_are_unique(self):
        ids = {EmailTask(to="a", subject="s", body="b").id for _ in range(50)}
        assert len(ids) == 50

    def test_json_roundtrip_keeps_all_fields(self):
        task = EmailTask(
            to="a@example.com;b@example.com", subject="Welcome", body="<p>Hi</p>",
            retry=2, max_retry=5, content_hash="abcdef0123456789",
            dedupe_key="mailqueue:email:dedupe:2026-01-01:abcdef0123456789",
        )
        restored = EmailTask.from_json(task.to_json())
        assert restored == task

    def test_wire_field_names(self):
        data = json.loads(EmailTask(to="a", subject="s", body="b").to_json())
        assert set(data) == {
            "id", "to", "subject", "body", "retry", "max_retry",
            "create_at", "content_hash", "dedupe_key",
        }

    def test_non_ascii_body_survives(self):
        task = EmailTask(to="a", subject="Grüße", body="こんにちは")
        assert EmailTask.from_json(task.to_json()).body == "こんにちは"

    @pytest.mark.parametrize("payload", [
        "not json",
        "[]",
        "42",
        '{"to": "a", "subject": "s"}',
        '{"id": "x", "to": "a", "subject": "s", "body": "b", "retry": "many"}',
    ])
    def test_malformed_payload_raises_value_error(self, payload):
        with pytest.raises(ValueError):
            EmailTask.from_json(payload)

    def test_short_hash(self):
        task = EmailTask(to="a", subject="s", body="b", content_hash="0123456789abcdef")
        assert task.short_hash == "01234567"


class TestFailedEntry:
    def test_roundtrip(self):
        task = EmailTask(to="a", subject="s", body="b", retry=3)
        entry = FailedEntry(task=task, error="550 mailbox unavailable", worker_id=4)
        restored = FailedEntry.from_json(entry.to_json())
        assert restored.task == task
        assert restored.error == "550 mailbox unavailable"
        assert restored.worker_id == 4
        assert restored.failed_at == entry.failed_at

    def test_payload_without_task_rejected(self):
        with pytest.raises(ValueError):
            FailedEntry.from_json('{"error": "x"}')

    def test_garbage_rejected(self):
        with pytest.raises(ValueError):
            FailedEntry.from_json("{{{")


class TestQueueKeys:
    def test_keys_share_prefix(self):
        keys = QueueKeys("app:email:")
        assert keys.queue == "app:email:queue"
        assert keys.failed == "app:email:failed"
        assert keys.delayed == "app:email:delayed"
        assert keys.sent("t1") == "app:email:sent:task:t1"
        assert keys.processing("t1") == "app:email:processing:task:t1"
        assert keys.dedupe("2026-01-01", "abc") == "app:email:dedupe:2026-01-01:abc"

    def test_sent_and_processing_markers_differ(self):
        keys = QueueKeys()
        assert keys.sent("t1") != keys.processing("t1")
