"""Tests for chatdelta.core.conversation."""

from __future__ import annotations

import json
from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from chatdelta.core.conversation import (
    ConversationSession,
    Message,
    Role,
    load_session_document,
)
from chatdelta.core.errors import (
    ErrorKind,
    PermanentProviderError,
    PersistenceError,
    TransientProviderError,
)
from chatdelta.core.metrics import MetricsCollector
from chatdelta.core.providers import Provider
from chatdelta.core.session_log import MemorySink, SessionLogger


@pytest.fixture
def session_for(controller, config):
    def _make(client, **kwargs):
        return ConversationSession(client.provider, client, config, controller=controller, **kwargs)

    return _make


class TestSend:
    """Turn handling and history rules."""

    @pytest.mark.asyncio
    async def test_success_appends_user_and_assistant(self, session_for, make_client):
        session = session_for(make_client(Provider.GPT, "Hi there"))

        reply = await session.send("Hello")

        assert reply.role is Role.ASSISTANT
        assert reply.content == "Hi there"
        assert [(m.role, m.content) for m in session.history] == [
            (Role.USER, "Hello"),
            (Role.ASSISTANT, "Hi there"),
        ]

    @pytest.mark.asyncio
    async def test_prompt_carries_system_prompt_and_history(self, session_for, make_client):
        client = make_client(Provider.CLAUDE, "first", "second")
        session = session_for(client, system_prompt="Be brief.")

        await session.send("one")
        await session.send("two")

        assert client.prompts[0] == "System: Be brief.\n\nUser: one"
        assert client.prompts[1] == (
            "System: Be brief.\n\nUser: one\n\nAssistant: first\n\nUser: two"
        )

    @pytest.mark.asyncio
    async def test_failure_keeps_user_message_and_raises(self, session_for, make_client):
        session = session_for(make_client(Provider.GPT, PermanentProviderError("denied")))

        with pytest.raises(PermanentProviderError) as excinfo:
            await session.send("Hello")

        assert excinfo.value.kind is ErrorKind.INVALID_CREDENTIAL
        assert [m.role for m in session.history] == [Role.USER]

    @pytest.mark.asyncio
    async def test_transient_failure_is_retried_then_raised(
        self, session_for, make_client, recording_sleep
    ):
        client = make_client(Provider.GEMINI, TransientProviderError("blip", kind=ErrorKind.NETWORK))
        session = session_for(client)

        with pytest.raises(TransientProviderError):
            await session.send("Hello")

        assert client.calls == 3
        assert recording_sleep.delays == [pytest.approx(0.1), pytest.approx(0.2)]

    @pytest.mark.asyncio
    async def test_history_is_read_only_view(self, session_for, make_client):
        session = session_for(make_client(Provider.GPT, "ok"))
        await session.send("Hello")

        assert isinstance(session.history, tuple)
        assert len(session) == 2

    @pytest.mark.asyncio
    async def test_records_metrics_and_attempts(self, session_for, make_client):
        metrics = MetricsCollector()
        sink = MemorySink()
        session_logger = SessionLogger([sink])
        log_id = session_logger.begin()
        client = make_client(
            Provider.GPT, TransientProviderError("blip", kind=ErrorKind.TIMEOUT), "ok"
        )
        session = session_for(
            client, metrics=metrics, session_logger=session_logger, log_session_id=log_id
        )

        await session.send("Hello")
        session_logger.flush()

        stats = metrics.get(Provider.GPT)
        assert (stats.attempts, stats.successes, stats.failures) == (2, 1, 1)
        assert [r["outcome"] for r in sink.records] == ["failure", "success"]

    @pytest.mark.asyncio
    async def test_clear_keeps_identity(self, session_for, make_client):
        session = session_for(make_client(Provider.GPT, "ok"), system_prompt="sys")
        session_id = session.id
        await session.send("Hello")

        session.clear()

        assert session.history == ()
        assert session.id == session_id
        assert session.system_prompt == "sys"
        assert session.active_provider is Provider.GPT


class TestPersistence:
    """Saving and loading session documents."""

    @pytest.mark.asyncio
    async def test_save_and_restore(self, tmp_path, session_for, make_client, config):
        client = make_client(Provider.CLAUDE, "reply")
        session = session_for(client, system_prompt="Be kind.")
        await session.send("Hello")
        path = session.save(tmp_path / "sessions" / "chat.json")

        document = load_session_document(path)
        restored = ConversationSession.restore(document, client, config)

        assert restored.active_provider is Provider.CLAUDE
        assert restored.system_prompt == "Be kind."
        assert [(m.role, m.content) for m in restored.history] == [
            (m.role, m.content) for m in session.history
        ]
        assert restored.history[0].timestamp == session.history[0].timestamp

    def test_saved_document_shape(self, tmp_path, session_for, make_client):
        session = session_for(make_client(Provider.GPT))
        path = session.save(tmp_path / "chat.json")

        data = json.loads(path.read_text())

        assert data == {"system_prompt": None, "provider": "gpt", "history": []}

    def test_foreign_timestamps_keep_their_instant(self, tmp_path, make_client, config):
        source = tmp_path / "foreign.json"
        source.write_text(
            json.dumps(
                {
                    "system_prompt": None,
                    "provider": "gpt",
                    "history": [
                        {
                            "role": "user",
                            "content": "hi",
                            "timestamp": "2024-05-01T12:00:00.250+00:00",
                        }
                    ],
                }
            )
        )
        client = make_client(Provider.GPT)

        session = ConversationSession.restore(load_session_document(source), client, config)
        first = session.save(tmp_path / "first.json")
        again = ConversationSession.restore(load_session_document(first), client, config)
        second = again.save(tmp_path / "second.json")

        assert again.history[0].timestamp == datetime(
            2024, 5, 1, 12, 0, 0, 250000, tzinfo=timezone.utc
        )
        assert json.loads(first.read_text())["history"][0]["timestamp"].endswith("Z")
        assert first.read_text() == second.read_text()

    def test_missing_file(self, tmp_path):
        with pytest.raises(PersistenceError):
            load_session_document(tmp_path / "missing.json")

    @pytest.mark.parametrize(
        "content",
        [
            "not json",
            json.dumps({"provider": "nope", "history": []}),
            json.dumps({"provider": "gpt", "history": [{"role": "robot", "content": "x"}]}),
        ],
    )
    def test_malformed_file(self, tmp_path, content):
        path = tmp_path / "chat.json"
        path.write_text(content)

        with pytest.raises(PersistenceError) as excinfo:
            load_session_document(path)

        assert excinfo.value.path == str(path)

    def test_save_to_unwritable_location(self, tmp_path, session_for, make_client):
        blocker = tmp_path / "file"
        blocker.write_text("x")
        session = session_for(make_client(Provider.GPT))

        with pytest.raises(PersistenceError):
            session.save(blocker / "chat.json")


class TestMessage:
    def test_messages_are_frozen(self):
        message = Message(role=Role.USER, content="hi")
        with pytest.raises(ValidationError):
            message.content = "changed"
