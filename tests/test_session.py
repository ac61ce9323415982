"""Tests for ChatSession exchanges, history, interruption, and persistence."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
import unittest

from rtwo.config import SessionConfig
from rtwo.exceptions import (
    InputError,
    NotFoundError,
    SessionBusyError,
    StoreCorruptError,
    StoreWriteError,
    TransportError,
    TransportErrorKind,
)
from rtwo.models import (
    ChatReply,
    Conversation,
    RenderMode,
    StreamFragment,
    Turn,
    TurnStats,
)
from rtwo.session import VERBOSE_STREAM_NOTICE, ChatSession
from rtwo.state import SessionState

HELLO_STATS = TurnStats(prompt_tokens=5, response_tokens=3, elapsed_seconds=1.2)


class _FakeRenderer:
    def __init__(self) -> None:
        self.formatted: list[str] = []
        self.raw: list[str] = []
        self.stats: list[tuple[str, TurnStats]] = []
        self.echoes: list[str] = []
        self.info: list[str] = []
        self.statuses: list[str] = []
        self.stream_ends = 0

    def render_formatted(self, text: str) -> None:
        self.formatted.append(text)

    def render_raw(self, fragment: str) -> None:
        self.raw.append(fragment)

    def end_stream(self) -> None:
        self.stream_ends += 1

    def render_stats(self, model: str, stats: TurnStats) -> None:
        self.stats.append((model, stats))

    def render_prompt_echo(self, text: str) -> None:
        self.echoes.append(text)

    def render_info(self, message: str) -> None:
        self.info.append(message)

    @contextmanager
    def status(self, message: str) -> Iterator[None]:
        self.statuses.append(message)
        yield


class _FakeClient:
    """Scripted transport: batch replies, stream fragments, or failures."""

    def __init__(
        self,
        replies: list[str] | None = None,
        fragments: list[StreamFragment] | None = None,
        error: Exception | None = None,
        hang_after: int | None = None,
    ) -> None:
        self.replies = list(replies or [])
        self.fragments = list(fragments or [])
        self.error = error
        self.hang_after = hang_after
        self.release = asyncio.Event()
        self.requests: list[list[dict[str, str]]] = []
        self.rendered_lag: list[int] = []
        self.renderer: _FakeRenderer | None = None

    async def chat(self, model: str, messages: list[dict[str, str]]) -> ChatReply:
        self.requests.append([dict(message) for message in messages])
        if self.hang_after is not None:
            await self.release.wait()
        if self.error is not None:
            raise self.error
        return ChatReply(text=self.replies.pop(0), model=model, stats=HELLO_STATS)

    async def chat_stream(
        self, model: str, messages: list[dict[str, str]]
    ) -> AsyncIterator[StreamFragment]:
        self.requests.append([dict(message) for message in messages])
        if self.error is not None:
            raise self.error
        for index, fragment in enumerate(self.fragments, start=1):
            if self.renderer is not None:
                self.rendered_lag.append(index - len(self.renderer.raw))
            yield fragment
            if self.hang_after is not None and index >= self.hang_after:
                await self.release.wait()


class _FakeStore:
    def __init__(self, conversation: Conversation | None = None) -> None:
        self.saved: list[Conversation] = []
        self.conversation = conversation
        self.save_error: Exception | None = None
        self.load_error: Exception | None = None

    async def save(self, conversation: Conversation) -> None:
        if self.save_error is not None:
            raise self.save_error
        self.saved.append(conversation.model_copy(deep=True))

    async def load(self, conversation_id: str) -> Conversation:
        if self.load_error is not None:
            raise self.load_error
        if self.conversation is None or self.conversation.id != conversation_id:
            raise NotFoundError(f"Conversation {conversation_id!r} does not exist.")
        return self.conversation.model_copy(deep=True)


def _config(**overrides: object) -> SessionConfig:
    values: dict[str, object] = {"host": "localhost", "port": 11434, "model": "llama3"}
    values.update(overrides)
    return SessionConfig(**values)


def _stream(*texts: str, done: bool = True) -> list[StreamFragment]:
    fragments = [StreamFragment(text=text) for text in texts]
    if done:
        fragments.append(StreamFragment(text="", done=True))
    return fragments


class BatchExchangeTests(unittest.IsolatedAsyncioTestCase):
    """Validate the request/render cycle for batch mode."""

    async def test_single_exchange_renders_stats_and_saves(self) -> None:
        client = _FakeClient(replies=["Hi there!"])
        store = _FakeStore()
        renderer = _FakeRenderer()
        session = ChatSession(_config(verbose=True, save=True), client, store, renderer)
        await session.start_new()

        turn = await session.submit_prompt("Hello")

        self.assertEqual(turn, Turn(role="assistant", content="Hi there!", stats=HELLO_STATS))
        self.assertEqual(client.requests, [[{"role": "user", "content": "Hello"}]])
        self.assertEqual(renderer.formatted, ["Hi there!"])
        self.assertEqual(renderer.statuses, ["Processing"])
        self.assertEqual(renderer.stats, [("llama3", HELLO_STATS)])
        self.assertEqual(len(store.saved), 1)
        self.assertEqual(
            [turn.content for turn in store.saved[0].turns], ["Hello", "Hi there!"]
        )
        self.assertEqual(session.state.state, SessionState.AWAITING_INPUT)

    async def test_history_alternates_and_is_sent_in_full(self) -> None:
        client = _FakeClient(replies=["one", "two", "three"])
        session = ChatSession(_config(), client, _FakeStore(), _FakeRenderer())
        await session.start_new()

        for prompt in ("first", "second", "third"):
            await session.submit_prompt(prompt)

        turns = session.turns
        self.assertEqual(len(turns), 6)
        self.assertEqual(
            [turn.role for turn in turns], ["user", "assistant"] * 3
        )
        self.assertEqual(len(client.requests[-1]), 5)
        self.assertEqual(client.requests[-1][-1], {"role": "user", "content": "third"})

    async def test_stats_omitted_when_not_verbose(self) -> None:
        renderer = _FakeRenderer()
        session = ChatSession(_config(), _FakeClient(replies=["ok"]), _FakeStore(), renderer)
        await session.start_new()

        turn = await session.submit_prompt("Hello")

        self.assertIsNone(turn.stats)
        self.assertEqual(renderer.stats, [])

    async def test_no_store_writes_when_save_disabled(self) -> None:
        store = _FakeStore()
        session = ChatSession(_config(), _FakeClient(replies=["ok"]), store, _FakeRenderer())
        await session.start_new()
        await session.submit_prompt("Hello")
        self.assertEqual(store.saved, [])

    async def test_empty_prompt_is_rejected(self) -> None:
        client = _FakeClient(replies=["unused"])
        session = ChatSession(_config(), client, _FakeStore(), _FakeRenderer())
        await session.start_new()
        with self.assertRaises(InputError):
            await session.submit_prompt("   ")
        self.assertEqual(session.turns, [])
        self.assertEqual(client.requests, [])

    async def test_submit_without_conversation_is_rejected(self) -> None:
        session = ChatSession(_config(), _FakeClient(), _FakeStore(), _FakeRenderer())
        with self.assertRaises(InputError):
            await session.submit_prompt("Hello")

    async def test_second_prompt_while_in_flight_is_busy(self) -> None:
        client = _FakeClient(replies=["slow"], hang_after=0)
        session = ChatSession(_config(), client, _FakeStore(), _FakeRenderer())
        await session.start_new()

        first = asyncio.create_task(session.submit_prompt("first"))
        await asyncio.sleep(0)
        with self.assertRaises(SessionBusyError):
            await session.submit_prompt("second")

        client.release.set()
        turn = await first
        self.assertEqual(turn.content, "slow")
        self.assertEqual([turn.content for turn in session.turns], ["first", "slow"])


class FailureTests(unittest.IsolatedAsyncioTestCase):
    """Validate behavior when the transport or store fails."""

    async def test_transport_failure_keeps_prompt_pending_and_unsaved(self) -> None:
        client = _FakeClient(
            error=TransportError(TransportErrorKind.CONNECTION_REFUSED, "refused")
        )
        store = _FakeStore()
        session = ChatSession(_config(save=True), client, store, _FakeRenderer())
        await session.start_new()

        with self.assertRaises(TransportError) as caught:
            await session.submit_prompt("Hello")

        self.assertIs(caught.exception.kind, TransportErrorKind.CONNECTION_REFUSED)
        self.assertTrue(session.has_pending_prompt)
        self.assertEqual(session.turns, [Turn(role="user", content="Hello")])
        self.assertEqual(store.saved, [])
        self.assertEqual(session.state.state, SessionState.AWAITING_INPUT)

    async def test_retry_resends_pending_prompt(self) -> None:
        client = _FakeClient(
            replies=["Hi there!"],
            error=TransportError(TransportErrorKind.TIMEOUT, "timed out"),
        )
        session = ChatSession(_config(), client, _FakeStore(), _FakeRenderer())
        await session.start_new()
        with self.assertRaises(TransportError):
            await session.submit_prompt("Hello")

        client.error = None
        turn = await session.retry()

        self.assertEqual(turn.content, "Hi there!")
        self.assertFalse(session.has_pending_prompt)
        self.assertEqual([turn.role for turn in session.turns], ["user", "assistant"])
        self.assertEqual(client.requests[-1], [{"role": "user", "content": "Hello"}])

    async def test_retry_without_pending_prompt_is_rejected(self) -> None:
        session = ChatSession(_config(), _FakeClient(), _FakeStore(), _FakeRenderer())
        await session.start_new()
        with self.assertRaises(InputError):
            await session.retry()

    async def test_new_prompt_supersedes_pending_prompt(self) -> None:
        client = _FakeClient(
            replies=["answer"],
            error=TransportError(TransportErrorKind.SERVER_ERROR, "boom"),
        )
        session = ChatSession(_config(), client, _FakeStore(), _FakeRenderer())
        await session.start_new()
        with self.assertRaises(TransportError):
            await session.submit_prompt("lost")

        client.error = None
        await session.submit_prompt("kept")

        self.assertEqual([turn.content for turn in session.turns], ["kept", "answer"])
        self.assertEqual(client.requests[-1], [{"role": "user", "content": "kept"}])

    async def test_store_failure_surfaces_after_turn_is_recorded(self) -> None:
        store = _FakeStore()
        store.save_error = StoreWriteError("disk full")
        session = ChatSession(
            _config(save=True), _FakeClient(replies=["ok"]), store, _FakeRenderer()
        )
        await session.start_new()

        with self.assertRaises(StoreWriteError):
            await session.submit_prompt("Hello")

        self.assertFalse(session.has_pending_prompt)
        self.assertEqual(len(session.turns), 2)
        self.assertEqual(session.state.state, SessionState.AWAITING_INPUT)


class StreamExchangeTests(unittest.IsolatedAsyncioTestCase):
    """Validate incremental rendering in stream mode."""

    async def test_fragments_render_verbatim_and_concatenate(self) -> None:
        client = _FakeClient(fragments=_stream("The sky ", "is ", "blue."))
        store = _FakeStore()
        renderer = _FakeRenderer()
        session = ChatSession(
            _config(render_mode=RenderMode.STREAM, save=True), client, store, renderer
        )
        await session.start_new()

        turn = await session.submit_prompt("Why is the sky blue?")

        self.assertEqual(renderer.raw, ["The sky ", "is ", "blue."])
        self.assertEqual(turn, Turn(role="assistant", content="The sky is blue."))
        self.assertEqual(renderer.formatted, [])
        self.assertEqual(renderer.stream_ends, 1)
        self.assertEqual(len(store.saved), 1)

    async def test_verbose_stream_announces_missing_stats(self) -> None:
        renderer = _FakeRenderer()
        session = ChatSession(
            _config(render_mode=RenderMode.STREAM, verbose=True),
            _FakeClient(fragments=_stream("ok")),
            _FakeStore(),
            renderer,
        )
        with self.assertLogs("rtwo.session", level="WARNING"):
            await session.start_new()

        turn = await session.submit_prompt("Hello")

        self.assertIn(VERBOSE_STREAM_NOTICE, renderer.info)
        self.assertIsNone(turn.stats)
        self.assertEqual(renderer.stats, [])

    async def test_stream_without_completion_is_malformed(self) -> None:
        session = ChatSession(
            _config(render_mode=RenderMode.STREAM, save=True),
            _FakeClient(fragments=_stream("partial", done=False)),
            _FakeStore(),
            _FakeRenderer(),
        )
        await session.start_new()

        with self.assertRaises(TransportError) as caught:
            await session.submit_prompt("Hello")

        self.assertIs(caught.exception.kind, TransportErrorKind.MALFORMED_RESPONSE)
        self.assertTrue(session.has_pending_prompt)
        self.assertEqual(len(session.turns), 1)

    async def test_stream_transport_error_reaches_caller(self) -> None:
        session = ChatSession(
            _config(render_mode=RenderMode.STREAM),
            _FakeClient(error=TransportError(TransportErrorKind.TIMEOUT, "slow")),
            _FakeStore(),
            _FakeRenderer(),
        )
        await session.start_new()
        with self.assertRaises(TransportError):
            await session.submit_prompt("Hello")
        self.assertEqual(session.state.state, SessionState.AWAITING_INPUT)

    async def test_interrupt_discards_partial_reply(self) -> None:
        client = _FakeClient(fragments=_stream("The ", "sky ", "is blue."), hang_after=2)
        store = _FakeStore()
        renderer = _FakeRenderer()
        session = ChatSession(
            _config(render_mode=RenderMode.STREAM, save=True), client, store, renderer
        )
        await session.start_new()
        self.assertFalse(session.interrupt())

        pending = asyncio.create_task(session.submit_prompt("Why is the sky blue?"))
        for _ in range(100):
            if len(renderer.raw) >= 2:
                break
            await asyncio.sleep(0)
        self.assertTrue(session.interrupt())
        turn = await pending

        self.assertIsNone(turn)
        self.assertEqual("".join(renderer.raw), "The sky ")
        self.assertEqual(renderer.stream_ends, 1)
        self.assertEqual(session.turns, [Turn(role="user", content="Why is the sky blue?")])
        self.assertTrue(session.has_pending_prompt)
        self.assertEqual(store.saved, [])
        self.assertEqual(session.state.state, SessionState.AWAITING_INPUT)

    async def test_slow_renderer_bounds_read_ahead(self) -> None:
        texts = [f"{index} " for index in range(50)]
        client = _FakeClient(fragments=_stream(*texts))
        renderer = _FakeRenderer()
        client.renderer = renderer
        session = ChatSession(
            _config(render_mode=RenderMode.STREAM),
            client,
            _FakeStore(),
            renderer,
            channel_size=2,
        )
        await session.start_new()

        turn = await session.submit_prompt("count")

        self.assertEqual(turn.content, "".join(texts))
        self.assertLessEqual(max(client.rendered_lag), 4)


class RestoreTests(unittest.IsolatedAsyncioTestCase):
    """Validate restoring a stored conversation and continuing it."""

    def _stored(self) -> Conversation:
        return Conversation(
            id="stored",
            created_at=datetime(2024, 5, 1, 12, 0, tzinfo=UTC),
            host="localhost:11434",
            model="llama3",
            turns=[
                Turn(role="user", content="q1"),
                Turn(role="assistant", content="a1"),
                Turn(role="user", content="q2"),
                Turn(role="assistant", content="a2"),
            ],
        )

    async def test_restore_replays_and_continues_history(self) -> None:
        client = _FakeClient(replies=["a3"])
        stored = self._stored()
        store = _FakeStore(stored)
        renderer = _FakeRenderer()
        session = ChatSession(_config(save=True), client, store, renderer)

        conversation = await session.start_from_restore("stored")

        self.assertEqual(conversation.id, "stored")
        self.assertTrue(renderer.info[0].startswith("* Restoring conversation *"))
        self.assertEqual(renderer.echoes, ["q1", "q2"])
        self.assertEqual(renderer.formatted, ["a1", "a2"])

        await session.submit_prompt("q3")

        self.assertEqual(len(session.turns), 6)
        self.assertEqual(len(client.requests[0]), 5)
        self.assertEqual(store.saved[-1].id, "stored")
        self.assertEqual(len(store.saved[-1].turns), 6)
        self.assertEqual(session.turns[:4], stored.turns)
        self.assertEqual(store.saved[-1].turns[:4], stored.turns)
        self.assertEqual(
            [turn.content for turn in session.turns[4:]], ["q3", "a3"]
        )

    async def test_restore_missing_conversation_leaves_no_session(self) -> None:
        session = ChatSession(_config(), _FakeClient(), _FakeStore(), _FakeRenderer())
        with self.assertRaises(NotFoundError):
            await session.start_from_restore("missing")
        with self.assertRaises(InputError):
            session.conversation

    async def test_corrupt_record_aborts_restore(self) -> None:
        client = _FakeClient(replies=["unused"])
        store = _FakeStore(self._stored())
        store.load_error = StoreCorruptError("Conversation 'stored' is corrupt.")
        renderer = _FakeRenderer()
        session = ChatSession(_config(save=True), client, store, renderer)

        with self.assertRaises(StoreCorruptError):
            await session.start_from_restore("stored")

        with self.assertRaises(InputError):
            session.conversation
        self.assertEqual(session.state.state, SessionState.IDLE)
        self.assertEqual(renderer.echoes, [])
        self.assertEqual(renderer.formatted, [])
        with self.assertRaises(InputError):
            await session.submit_prompt("q3")
        self.assertEqual(client.requests, [])
        self.assertEqual(store.saved, [])

    async def test_end_session_returns_to_idle(self) -> None:
        session = ChatSession(_config(), _FakeClient(), _FakeStore(), _FakeRenderer())
        await session.start_new()
        await session.end_session()
        self.assertEqual(session.state.state, SessionState.IDLE)
        with self.assertRaises(InputError):
            session.turns


if __name__ == "__main__":
    unittest.main()
