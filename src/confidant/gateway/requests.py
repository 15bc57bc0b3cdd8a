"""Gateway requests: the immutable units of work flowing through the queue.

Every call into the gateway (buffered, streaming, or structured) is
normalized into a :class:`GatewayRequest` and wrapped in a
:class:`QueuedRequest` that carries the pending result future while it
waits for rate-limit admission.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections.abc import Iterable
from dataclasses import dataclass, field, replace
from typing import Any

from confidant.core.exceptions import ValidationError
from confidant.core.llm.config import Role, parse_role
from confidant.core.llm.transport import ChunkCallback
from confidant.core.llm.utils import MAX_CONTEXT_MESSAGES


@dataclass(frozen=True)
class ChatMessage:
    """One chat turn as sent to the inference server."""

    role: str
    content: str

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass(frozen=True)
class RequestOptions:
    """Per-call overrides.

    ``temperature`` and ``max_tokens`` win over the resolved model
    configuration when set.  ``timeout`` overrides the buffered-call
    deadline for this request only.  An unset ``role`` means "use the
    default for this kind of call": conversational for chat, analytical
    for structured and analysis requests.
    """

    temperature: float | None = None
    max_tokens: int | None = None
    user_id: str | None = None
    character_id: str | None = None
    role: Role | None = None
    streaming: bool = False
    system_prompt: str | None = None
    timeout: float | None = None

    def __post_init__(self) -> None:
        try:
            if self.role is not None:
                object.__setattr__(self, "role", parse_role(self.role))
        except ValueError as e:
            raise ValidationError(str(e), layer="gateway", context={"role": self.role}) from e
        if self.max_tokens is not None and self.max_tokens <= 0:
            raise ValidationError(f"max_tokens must be positive, got {self.max_tokens}", layer="gateway")
        if self.timeout is not None and self.timeout <= 0:
            raise ValidationError(f"timeout must be positive, got {self.timeout}", layer="gateway")

    def with_default_role(self, role: Role) -> RequestOptions:
        """Copy with *role* filled in when the caller left it unset."""
        return self if self.role is not None else replace(self, role=role)


@dataclass(frozen=True)
class GatewayRequest:
    """A prompt plus its recent conversation context and options."""

    prompt: str
    context_messages: tuple[Any, ...] = ()
    options: RequestOptions = field(default_factory=RequestOptions)
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])

    @classmethod
    def create(
        cls,
        prompt: str,
        context_messages: Iterable[Any] = (),
        options: RequestOptions | None = None,
        *,
        max_context_messages: int = MAX_CONTEXT_MESSAGES,
    ) -> GatewayRequest:
        """Validate the prompt and keep only the most recent context messages."""
        if not isinstance(prompt, str) or not prompt.strip():
            raise ValidationError("Prompt is required and must be a non-empty string", layer="gateway")
        context = tuple(context_messages or ())
        if max_context_messages <= 0:
            context = ()
        elif len(context) > max_context_messages:
            context = context[-max_context_messages:]
        return cls(
            prompt=prompt,
            context_messages=context,
            options=(options or RequestOptions()).with_default_role(Role.CONVERSATIONAL),
        )


@dataclass
class QueuedRequest:
    """A request waiting in (or being executed by) the request queue."""

    request: GatewayRequest
    future: asyncio.Future
    body: dict[str, Any] = field(default_factory=dict)
    enqueued_at: float = field(default_factory=time.monotonic)
    on_chunk: ChunkCallback | None = None
    cancel_event: asyncio.Event | None = None

    @property
    def is_streaming(self) -> bool:
        return self.request.options.streaming

    @property
    def id(self) -> str:
        return self.request.id
