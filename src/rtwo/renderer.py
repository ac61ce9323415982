"""Terminal rendering for formatted replies, raw streams, and statistics."""

from __future__ import annotations

from collections.abc import AsyncIterator, Iterator, Sequence
from contextlib import contextmanager, nullcontext
import logging
from typing import TextIO

from rich.console import Console
from rich.markdown import Markdown
from rich.progress import (
    BarColumn,
    DownloadColumn,
    Progress,
    SpinnerColumn,
    TaskID,
    TextColumn,
)
from rich.table import Table
from rich.text import Text

from .models import ConversationSummary, ModelDescriptor, PullProgress, TurnStats

LOGGER = logging.getLogger(__name__)

INFO_STYLE = "italic yellow"
SUCCESS_STYLE = "green"
ERROR_STYLE = "red"


class Renderer:
    """Write assistant output to the terminal in either formatted or raw form.

    Formatted output goes through ``rich`` markdown rendering; raw output is
    written straight to the underlying file so streamed fragments appear
    exactly as received.
    """

    def __init__(
        self,
        color: bool = True,
        file: TextIO | None = None,
        error_file: TextIO | None = None,
        code_theme: str = "monokai",
    ) -> None:
        self.color = color
        self.code_theme = code_theme
        color_system = "auto" if color else None
        self.console = Console(file=file, color_system=color_system, highlight=False)
        self.error_console = Console(
            file=error_file, stderr=error_file is None, color_system=color_system, highlight=False
        )
        self._raw_tail = ""

    def _styled(self, text: str, style: str) -> Text:
        return Text(text, style=style if self.color else "")

    def _write_plain(self, text: str) -> None:
        self.console.file.write(text if text.endswith("\n") else f"{text}\n")
        self.console.file.flush()

    def render_formatted(self, text: str) -> None:
        """Render markdown with highlighted code fences; falls back to plain text."""
        try:
            self.console.print(Markdown(text, code_theme=self.code_theme))
        except Exception as exc:  # noqa: BLE001 - output must never abort a turn.
            LOGGER.warning(
                "renderer.markdown.fallback",
                extra={
                    "event": "renderer.markdown.fallback",
                    "error_type": exc.__class__.__name__,
                },
            )
            self._write_plain(text)

    def render_raw(self, fragment: str) -> None:
        """Emit one streamed fragment verbatim."""
        if not fragment:
            return
        self.console.file.write(fragment)
        self.console.file.flush()
        self._raw_tail = fragment[-1]

    def end_stream(self) -> None:
        """Terminate the streamed line so following output starts cleanly."""
        if self._raw_tail and self._raw_tail != "\n":
            self.console.file.write("\n")
            self.console.file.flush()
        self._raw_tail = ""

    def render_stats(self, model: str, stats: TurnStats) -> None:
        lines = (
            f"* Model: {model}\n"
            f"* Tokens in prompt: {stats.prompt_tokens}\n"
            f"* Tokens in response: {stats.response_tokens}\n"
            f"* Time taken: {stats.elapsed_seconds:.3f}s"
        )
        self.console.print(self._styled(lines, INFO_STYLE))

    def render_prompt_echo(self, text: str) -> None:
        """Show a user prompt when replaying a restored conversation."""
        self.console.print(self._styled(f"\n{text}\n", SUCCESS_STYLE))

    def render_info(self, message: str) -> None:
        self.console.print(self._styled(message, INFO_STYLE))

    def render_success(self, message: str) -> None:
        self.console.print(self._styled(message, SUCCESS_STYLE))

    def render_error(self, message: str) -> None:
        self.error_console.print(self._styled(message, ERROR_STYLE))

    def render_models(self, models: Sequence[ModelDescriptor], selected: str) -> None:
        if not models:
            self.render_info("No models available on the server.")
            return
        if not self.color:
            for model in models:
                self._write_plain(model.name)
            self._write_plain(f'Selected model: "{selected}"')
            return
        table = Table(title="Available models")
        table.add_column("Name", style="bold")
        table.add_column("Parameters")
        table.add_column("Quantization")
        table.add_column("Size", justify="right")
        for model in models:
            table.add_row(
                model.name,
                model.parameter_size,
                model.quantization_level,
                f"{model.size / 1_000_000_000:.1f} GB" if model.size else "",
            )
        self.console.print(table)
        self.render_info(f'Selected model: "{selected}"')

    def render_conversations(
        self, summaries: Sequence[ConversationSummary], numbered: bool = False
    ) -> None:
        for index, summary in enumerate(summaries, start=1):
            label = summary.describe()
            self.render_info(f"{index:>3}) {label}" if numbered else label)

    @contextmanager
    def status(self, message: str) -> Iterator[None]:
        """Show a spinner while a blocking request runs (terminal only)."""
        context = (
            self.console.status(message, spinner="dots")
            if self.console.is_terminal
            else nullcontext()
        )
        with context:
            yield

    async def render_pull(self, name: str, updates: AsyncIterator[PullProgress]) -> None:
        """Drive a progress bar from a model pull stream."""
        with Progress(
            SpinnerColumn(),
            TextColumn("{task.description}"),
            BarColumn(),
            DownloadColumn(),
            console=self.console,
            transient=True,
            disable=not self.console.is_terminal,
        ) as progress:
            task: TaskID = progress.add_task(f'Downloading "{name}"', total=None)
            async for update in updates:
                progress.update(
                    task,
                    description=update.status or f'Downloading "{name}"',
                    completed=update.completed,
                    total=update.total or None,
                )
