"""Interactive chat loop and one-shot management actions."""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Sequence
import logging
import signal
import threading

from rich.prompt import Confirm, Prompt

from .client import OllamaClient
from .config import SessionConfig
from .exceptions import InputError, RtwoError, TransportError, TransportErrorKind
from .models import ConversationSummary
from .renderer import Renderer
from .session import ChatSession
from .store import ConversationStore

LOGGER = logging.getLogger(__name__)

EXIT_COMMANDS = {"/exit", "/quit", "/bye"}
RETRY_COMMAND = "/retry"

AskFn = Callable[[str], str]
ConfirmFn = Callable[[str], bool]


class RtwoApp:
    """Wire the session, transport, store, and renderer for one invocation."""

    def __init__(
        self,
        config: SessionConfig,
        client: OllamaClient,
        store: ConversationStore,
        renderer: Renderer,
        *,
        ask: AskFn | None = None,
        confirm: ConfirmFn | None = None,
    ) -> None:
        self.config = config
        self.client = client
        self.store = store
        self.renderer = renderer
        self._ask = ask or (lambda prompt: Prompt.ask(prompt, console=renderer.console))
        self._confirm = confirm or (
            lambda prompt: Confirm.ask(prompt, console=renderer.console)
        )

    @classmethod
    def from_config(cls, config: SessionConfig, database_path: str) -> RtwoApp:
        return cls(
            config,
            OllamaClient(config.base_url, timeout=config.timeout),
            ConversationStore(database_path),
            Renderer(color=config.color),
        )

    async def _available_models(self) -> list[str]:
        if not await self.client.check_connection():
            LOGGER.warning(
                "app.server.unreachable",
                extra={"event": "app.server.unreachable", "host": self.config.base_url},
            )
            raise TransportError(
                TransportErrorKind.CONNECTION_REFUSED,
                f"Ollama server not found at {self.config.base_url}",
            )
        return [model.name for model in await self.client.list_models()]

    def _model_available(self, name: str, available: Sequence[str]) -> bool:
        return any(OllamaClient.model_name_matches(name, item) for item in available)

    async def list_models(self) -> None:
        models = await self.client.list_models()
        self.renderer.render_models(models, self.config.model)

    async def pull_model(self, name: str) -> None:
        available = await self._available_models()
        if name in available:
            self.renderer.render_success("Model already exists on server")
            return
        await self.renderer.render_pull(name, self.client.pull_model(name))
        self.renderer.render_success(f'Model "{name}" pulled to {self.config.address}')

    async def delete_model(self, name: str) -> None:
        self.renderer.render_success(f'Attempting to delete model "{name}"')
        available = await self._available_models()
        if name not in available:
            raise InputError(f'Model "{name}" not found on {self.config.address}')
        await self.client.delete_model(name)
        self.renderer.render_success(f'Model "{name}" deleted from {self.config.address}')

    async def _summaries(self) -> list[ConversationSummary]:
        summaries = await self.store.list_conversations()
        if not summaries:
            raise InputError("No conversations saved")
        return summaries

    async def list_conversations(self) -> None:
        summaries = await self._summaries()
        self.renderer.render_success("Previous conversations:")
        self.renderer.render_conversations(summaries)

    def _choose(self, summaries: list[ConversationSummary], prompt: str) -> list[int]:
        self.renderer.render_conversations(summaries, numbered=True)
        raw = self._ask(prompt).replace(",", " ").split()
        if not raw:
            return []
        choices: list[int] = []
        for token in raw:
            if not token.isdigit() or not 1 <= int(token) <= len(summaries):
                raise InputError(f"Invalid selection {token!r}")
            index = int(token) - 1
            if index not in choices:
                choices.append(index)
        return choices

    async def choose_conversation(self) -> str:
        """Ask which stored conversation to restore and return its id."""
        summaries = await self._summaries()
        choices = self._choose(summaries, "Choose conversation to restore")
        if len(choices) != 1:
            raise InputError("Select exactly one conversation to restore")
        return summaries[choices[0]].id

    async def delete_conversations(self) -> None:
        summaries = await self._summaries()
        choices = self._choose(
            summaries, "Choose conversations to delete (numbers separated by spaces)"
        )
        if not choices:
            return
        self.renderer.render_error("DELETE (action is irreversible):")
        for index in choices:
            self.renderer.render_info(summaries[index].describe())
        if not self._confirm("Confirm delete conversations"):
            return
        for index in choices:
            await self.store.delete(summaries[index].id)
        LOGGER.info(
            "app.conversations.deleted",
            extra={"event": "app.conversations.deleted", "count": len(choices)},
        )
        self.renderer.render_success("Conversations DELETED")

    async def _ensure_model_ready(self) -> None:
        available = await self._available_models()
        if not self._model_available(self.config.model, available):
            raise InputError(
                f'Model "{self.config.model}" not available.\n'
                f"Available models for {self.config.host} include: {available}"
            )

    def _install_interrupt(self, session: ChatSession) -> bool:
        try:
            asyncio.get_running_loop().add_signal_handler(signal.SIGINT, session.interrupt)
        except (NotImplementedError, RuntimeError, ValueError):
            return False
        return True

    def _remove_interrupt(self) -> None:
        asyncio.get_running_loop().remove_signal_handler(signal.SIGINT)

    async def chat(self, restore: bool = False) -> None:
        """Run the prompt/response loop until the user exits."""
        # Ctrl+C at the prompt ends the loop; during a request it interrupts it.
        if threading.current_thread() is threading.main_thread():
            signal.signal(signal.SIGINT, signal.default_int_handler)
        await self._ensure_model_ready()
        session = ChatSession(self.config, self.client, self.store, self.renderer)
        if restore:
            await session.start_from_restore(await self.choose_conversation())
        else:
            await session.start_new()
        LOGGER.info(
            "app.chat.start",
            extra={
                "event": "app.chat.start",
                "model": self.config.model,
                "mode": self.config.render_mode.value,
                "restore": restore,
            },
        )
        self.renderer.render_info(
            f"Type {RETRY_COMMAND} to resend an unanswered prompt, /exit to quit."
        )

        try:
            while True:
                try:
                    text = self._ask("Ask R2").strip()
                except (KeyboardInterrupt, EOFError):
                    break
                if not text:
                    continue
                if text.lower() in EXIT_COMMANDS:
                    break

                installed = self._install_interrupt(session)
                try:
                    if text.lower() == RETRY_COMMAND:
                        turn = await session.retry()
                    else:
                        turn = await session.submit_prompt(text)
                    if turn is None:
                        self.renderer.render_info("Response interrupted.")
                except RtwoError as exc:
                    self.renderer.render_error(str(exc))
                finally:
                    if installed:
                        self._remove_interrupt()
        finally:
            await session.end_session()
        self.renderer.render_success("Goodbye")
