"""Interactive conversation session: history, exchanges, and persistence.

One :class:`ChatSession` drives a single conversation from start (new or
restored) to exit. Each prompt is one exchange: the full turn history goes to
the transport, the reply is rendered according to the session's
:class:`~rtwo.models.RenderMode`, and the completed turn is appended and saved.

In stream mode the transport and the renderer run as a producer task and a
consumer joined by a bounded queue, so a slow terminal applies backpressure
to the network reader instead of buffering without limit.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from contextlib import aclosing
import logging
from typing import Any, Protocol

from .config import SessionConfig
from .exceptions import (
    InputError,
    RtwoError,
    SessionBusyError,
    TransportError,
    TransportErrorKind,
)
from .models import ChatReply, Conversation, RenderMode, StreamFragment, Turn, TurnStats
from .state import SessionState, StateManager
from .task_manager import TaskManager

LOGGER = logging.getLogger(__name__)

DEFAULT_CHANNEL_SIZE = 32
EXCHANGE_TASK = "active_exchange"
PRODUCER_TASK = "stream_producer"

VERBOSE_STREAM_NOTICE = (
    "Verbose statistics are not available in stream mode; "
    "run without --stream to see token counts and timing."
)


class SessionRenderer(Protocol):
    """Output operations the session needs from a renderer."""

    def render_formatted(self, text: str) -> None: ...

    def render_raw(self, fragment: str) -> None: ...

    def end_stream(self) -> None: ...

    def render_stats(self, model: str, stats: TurnStats) -> None: ...

    def render_prompt_echo(self, text: str) -> None: ...

    def render_info(self, message: str) -> None: ...

    def status(self, message: str) -> Any: ...


class _StreamEnd:
    """Sentinel closing the fragment channel."""


_END = _StreamEnd()


class ChatSession:
    """Own one conversation's turns and run prompt/response exchanges."""

    def __init__(
        self,
        config: SessionConfig,
        client: Any,
        store: Any,
        renderer: SessionRenderer,
        *,
        channel_size: int = DEFAULT_CHANNEL_SIZE,
    ) -> None:
        self.config = config
        self.client = client
        self.store = store
        self.renderer = renderer
        self.channel_size = max(1, channel_size)
        self.state = StateManager()
        self.tasks = TaskManager()
        self._conversation: Conversation | None = None
        self._pending_prompt = False
        self._interrupted = False
        self._exchanges: dict[RenderMode, Callable[[list[dict[str, str]]], Awaitable[Turn]]] = {
            RenderMode.BATCH: self._batch_exchange,
            RenderMode.STREAM: self._stream_exchange,
        }

    @property
    def conversation(self) -> Conversation:
        if self._conversation is None:
            raise InputError("No active conversation; start or restore one first.")
        return self._conversation

    @property
    def turns(self) -> list[Turn]:
        return list(self.conversation.turns)

    @property
    def has_pending_prompt(self) -> bool:
        """True when the last prompt has no reply yet (failed or interrupted)."""
        return self._pending_prompt

    def _announce_policy(self) -> None:
        if self.config.verbose and self.config.render_mode is RenderMode.STREAM:
            LOGGER.warning(
                "session.verbose.stream",
                extra={"event": "session.verbose.stream"},
            )
            self.renderer.render_info(VERBOSE_STREAM_NOTICE)

    async def start_new(self) -> Conversation:
        """Begin a fresh conversation."""
        self._conversation = Conversation(host=self.config.address, model=self.config.model)
        self._pending_prompt = False
        await self.state.transition_to(SessionState.AWAITING_INPUT)
        self._announce_policy()
        LOGGER.info(
            "session.start",
            extra={"event": "session.start", "conversation_id": self._conversation.id},
        )
        return self._conversation

    async def start_from_restore(self, conversation_id: str) -> Conversation:
        """Load a stored conversation and replay it to the renderer.

        Raises NotFoundError or StoreCorruptError from the store; on failure
        the session is left without an active conversation.
        """
        conversation = await self.store.load(conversation_id)
        self._conversation = conversation
        self._pending_prompt = False

        stamp = conversation.created_at.astimezone().strftime("%Y-%m-%d %H:%M")
        self.renderer.render_info(f"* Restoring conversation *\n{stamp}")
        for turn in conversation.turns:
            if turn.role == "user":
                self.renderer.render_prompt_echo(turn.content)
            else:
                self.renderer.render_formatted(turn.content)

        await self.state.transition_to(SessionState.AWAITING_INPUT)
        self._announce_policy()
        LOGGER.info(
            "session.restore",
            extra={
                "event": "session.restore",
                "conversation_id": conversation.id,
                "turns": len(conversation.turns),
            },
        )
        return conversation

    async def submit_prompt(self, text: str) -> Turn | None:
        """Send a prompt and return the assistant turn, or None if interrupted.

        A prompt left pending by an earlier failed exchange is replaced by the
        new one so the history keeps alternating roles.
        """
        prompt = text.strip()
        if not prompt:
            raise InputError("Prompt must not be empty.")
        conversation = self.conversation
        await self._enter_flight()

        if self._pending_prompt:
            conversation.turns.pop()
        conversation.append(Turn(role="user", content=prompt))
        self._pending_prompt = True
        return await self._run_exchange()

    async def retry(self) -> Turn | None:
        """Re-issue the exchange for the pending prompt."""
        if not self._pending_prompt:
            raise InputError("There is no unanswered prompt to retry.")
        await self._enter_flight()
        return await self._run_exchange()

    def interrupt(self) -> bool:
        """Cancel the in-flight exchange; returns False when nothing was running.

        Fragments already rendered stay on screen; the partial reply is
        discarded and the prompt stays pending.
        """
        if not self.tasks.is_running(EXCHANGE_TASK):
            return False
        self._interrupted = True
        return self.tasks.request_cancel(EXCHANGE_TASK)

    async def end_session(self) -> None:
        """Cancel outstanding work and release the conversation."""
        await self.tasks.cancel_all()
        self._conversation = None
        self._pending_prompt = False
        await self.state.transition_to(SessionState.IDLE)
        LOGGER.info("session.end", extra={"event": "session.end"})

    async def _enter_flight(self) -> None:
        entered = await self.state.transition_if(
            SessionState.AWAITING_INPUT, SessionState.REQUEST_IN_FLIGHT
        )
        if not entered:
            raise SessionBusyError("A request is already in flight.")

    async def _run_exchange(self) -> Turn | None:
        conversation = self.conversation
        messages = conversation.messages()
        exchange = self._exchanges[self.config.render_mode]
        self._interrupted = False

        task = asyncio.create_task(exchange(messages), name=EXCHANGE_TASK)
        self.tasks.add(task, name=EXCHANGE_TASK)
        try:
            turn = await task
        except asyncio.CancelledError:
            if not self._interrupted:
                await self.state.transition_to(SessionState.AWAITING_INPUT)
                raise
            LOGGER.info(
                "session.exchange.interrupted",
                extra={"event": "session.exchange.interrupted", "conversation_id": conversation.id},
            )
            await self.state.transition_to(SessionState.AWAITING_INPUT)
            return None
        except Exception as exc:
            await self.state.transition_to(SessionState.FAILED)
            log = LOGGER.warning if isinstance(exc, RtwoError) else LOGGER.exception
            log(
                "session.exchange.failed",
                extra={
                    "event": "session.exchange.failed",
                    "conversation_id": conversation.id,
                    "error_type": exc.__class__.__name__,
                },
            )
            await self.state.transition_to(SessionState.AWAITING_INPUT)
            raise
        finally:
            self.tasks.discard(EXCHANGE_TASK)
            self._interrupted = False

        conversation.append(turn)
        self._pending_prompt = False
        LOGGER.info(
            "session.exchange.complete",
            extra={
                "event": "session.exchange.complete",
                "conversation_id": conversation.id,
                "turns": len(conversation.turns),
                "mode": self.config.render_mode.value,
            },
        )
        try:
            if turn.stats is not None:
                self.renderer.render_stats(self.config.model, turn.stats)
            if self.config.save:
                await self.store.save(conversation)
        finally:
            await self.state.transition_to(SessionState.AWAITING_INPUT)
        return turn

    async def _batch_exchange(self, messages: list[dict[str, str]]) -> Turn:
        with self.renderer.status("Processing"):
            reply: ChatReply = await self.client.chat(self.config.model, messages)
        await self.state.transition_to(SessionState.RENDERING)
        self.renderer.render_formatted(reply.text)
        stats = reply.stats if self.config.verbose else None
        return Turn(role="assistant", content=reply.text, stats=stats)

    async def _produce(
        self,
        messages: list[dict[str, str]],
        channel: asyncio.Queue[StreamFragment | BaseException | _StreamEnd],
    ) -> None:
        try:
            async with aclosing(self.client.chat_stream(self.config.model, messages)) as stream:
                async for fragment in stream:
                    await channel.put(fragment)
        except Exception as exc:  # noqa: BLE001 - handed to the consumer to re-raise.
            await channel.put(exc)
            return
        await channel.put(_END)

    async def _stream_exchange(self, messages: list[dict[str, str]]) -> Turn:
        channel: asyncio.Queue[StreamFragment | BaseException | _StreamEnd] = asyncio.Queue(
            maxsize=self.channel_size
        )
        producer = asyncio.create_task(self._produce(messages, channel), name=PRODUCER_TASK)
        self.tasks.add(producer, name=PRODUCER_TASK)

        parts: list[str] = []
        completed = False
        rendering = False
        try:
            while True:
                item = await channel.get()
                if isinstance(item, _StreamEnd):
                    break
                if isinstance(item, BaseException):
                    raise item
                if not rendering:
                    await self.state.transition_to(SessionState.RENDERING)
                    rendering = True
                if item.text:
                    self.renderer.render_raw(item.text)
                    parts.append(item.text)
                if item.done:
                    completed = True
        finally:
            self.renderer.end_stream()
            await self.tasks.cancel(PRODUCER_TASK)

        if not completed:
            raise TransportError(
                TransportErrorKind.MALFORMED_RESPONSE,
                "Stream ended before the server signalled completion.",
            )
        return Turn(role="assistant", content="".join(parts))
