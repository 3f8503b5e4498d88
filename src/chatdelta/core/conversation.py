"""
Conversation session for interactive mode.

A ConversationSession holds the system prompt and the ordered message
history for one provider. Each ``send`` appends the user message, sends the
whole conversation through the RetryController and appends the assistant
reply only when the call succeeded. History is append-only; ``clear`` is the
one way to start over.

Sessions persist to a JSON document:

    {"system_prompt": str | null,
     "provider": "gpt" | "gemini" | "claude",
     "history": [{"role": ..., "content": ..., "timestamp": ...}, ...]}

Timestamps are parsed into datetimes and written back in
pydantic's canonical ISO 8601 form, so a foreign ``...+00:00`` string is
saved as ``...Z``. The instant and every other field are preserved, and a
file written by ``save`` loads and saves back byte for byte.
"""

from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import List, Optional, Tuple, Union

from filelock import FileLock
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from chatdelta.core.errors import PersistenceError
from chatdelta.core.metrics import MetricsCollector
from chatdelta.core.providers.base import Provider, ProviderClient
from chatdelta.core.resilience import (
    ClientConfiguration,
    RetryController,
    Success,
    call_client,
)
from chatdelta.core.session_log import SessionLogger

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class Message(BaseModel):
    """A single immutable message in a conversation."""

    model_config = ConfigDict(frozen=True)

    role: Role = Field(..., description="Message role: system, user or assistant")
    content: str = Field(..., description="Message content")
    timestamp: datetime = Field(default_factory=_utcnow)


class SessionDocument(BaseModel):
    """Persisted form of a conversation session."""

    system_prompt: Optional[str] = None
    provider: Provider
    history: List[Message] = Field(default_factory=list)


_ROLE_LABELS = {
    Role.SYSTEM: "System",
    Role.USER: "User",
    Role.ASSISTANT: "Assistant",
}


class ConversationSession:
    """
    Stateful conversation with a single active provider.

    Args:
        provider: The active provider for every turn
        client: Client for the active provider
        config: Shared client configuration
        system_prompt: Optional instructions prepended to every prompt
        controller: Retry controller (shared with parallel mode)
        metrics: Receives one record per turn
        session_logger: Receives one record per attempt
        log_session_id: Logging session the attempts belong to
        history: Messages restored from a saved session
    """

    def __init__(
        self,
        provider: Provider,
        client: ProviderClient,
        config: ClientConfiguration,
        *,
        system_prompt: Optional[str] = None,
        controller: Optional[RetryController] = None,
        metrics: Optional[MetricsCollector] = None,
        session_logger: Optional[SessionLogger] = None,
        log_session_id: Optional[str] = None,
        history: Optional[List[Message]] = None,
    ):
        self.id = str(uuid.uuid4())
        self.active_provider = provider
        self.client = client
        self.config = config
        self.system_prompt = system_prompt
        self.controller = controller or RetryController()
        self.metrics = metrics
        self.session_logger = session_logger
        self.log_session_id = log_session_id
        self._history: List[Message] = list(history or [])

    @property
    def history(self) -> Tuple[Message, ...]:
        return tuple(self._history)

    def __len__(self) -> int:
        return len(self._history)

    def build_prompt(self) -> str:
        """Render the system prompt and full history as the outbound prompt."""
        parts = []
        if self.system_prompt:
            parts.append(f"{_ROLE_LABELS[Role.SYSTEM]}: {self.system_prompt}")
        for message in self._history:
            parts.append(f"{_ROLE_LABELS[message.role]}: {message.content}")
        return "\n\n".join(parts)

    async def send(self, text: str) -> Message:
        """
        Send one user turn and return the assistant's reply.

        The user message stays in history even when the call fails.

        Raises:
            TransientProviderError: If retries were exhausted on a transient failure
            PermanentProviderError: If the provider rejected the request
        """
        self._history.append(Message(role=Role.USER, content=text))
        prompt = self.build_prompt()

        on_attempt = None
        if self.session_logger is not None and self.log_session_id is not None:
            session_logger, log_id = self.session_logger, self.log_session_id
            on_attempt = lambda p, n, o: session_logger.log(log_id, p, n, o)  # noqa: E731

        outcome = await self.controller.execute(
            self.active_provider,
            lambda: call_client(self.client, prompt, self.config),
            self.config,
            on_attempt=on_attempt,
        )
        if self.metrics is not None:
            self.metrics.record(self.active_provider, outcome)

        if not isinstance(outcome, Success):
            raise outcome.to_exception()

        reply = Message(role=Role.ASSISTANT, content=outcome.content)
        self._history.append(reply)
        return reply

    def clear(self) -> None:
        """Drop all history, keeping id, system prompt and provider."""
        self._history.clear()
        logger.debug("Cleared conversation %s", self.id)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def to_document(self) -> SessionDocument:
        return SessionDocument(
            system_prompt=self.system_prompt,
            provider=self.active_provider,
            history=list(self._history),
        )

    def save(self, path: Union[str, Path]) -> Path:
        """
        Write the session document to ``path``.

        Raises:
            PersistenceError: If the file cannot be written
        """
        target = Path(path)
        data = self.to_document().model_dump(mode="json")
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            with FileLock(str(target) + ".lock", timeout=10):
                target.write_text(json.dumps(data, indent=2), encoding="utf-8")
        except OSError as exc:
            raise PersistenceError(f"Failed to save session: {exc}", path=str(target)) from exc
        logger.debug("Saved conversation %s to %s", self.id, target)
        return target

    @classmethod
    def restore(
        cls,
        document: SessionDocument,
        client: ProviderClient,
        config: ClientConfiguration,
        **kwargs,
    ) -> "ConversationSession":
        """Build a live session from a saved document."""
        return cls(
            document.provider,
            client,
            config,
            system_prompt=document.system_prompt,
            history=list(document.history),
            **kwargs,
        )


def load_session_document(path: Union[str, Path]) -> SessionDocument:
    """
    Read and validate a saved session document.

    Raises:
        PersistenceError: If the file is missing, unreadable or malformed
    """
    source = Path(path)
    try:
        with FileLock(str(source) + ".lock", timeout=10):
            raw = source.read_text(encoding="utf-8")
    except OSError as exc:
        raise PersistenceError(f"Failed to load session: {exc}", path=str(source)) from exc

    try:
        return SessionDocument.model_validate(json.loads(raw))
    except (json.JSONDecodeError, ValidationError) as exc:
        raise PersistenceError(
            f"Malformed session file {source}: {exc}", path=str(source)
        ) from exc
