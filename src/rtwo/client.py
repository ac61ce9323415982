"""Async transport for the Ollama HTTP API.

Wraps :class:`ollama.AsyncClient` and normalises its responses (SDK objects or
plain dicts) into the small value types in :mod:`rtwo.models`. Every failure
is mapped onto :class:`~rtwo.exceptions.TransportError`; nothing is retried
here.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
import logging
from typing import Any

import httpx
from ollama import AsyncClient, ResponseError
from pydantic import ValidationError

from .exceptions import TransportError, TransportErrorKind
from .models import ChatReply, ModelDescriptor, PullProgress, StreamFragment, TurnStats

LOGGER = logging.getLogger(__name__)

NANOSECONDS_PER_SECOND = 1_000_000_000


def _field(payload: Any, *path: str) -> Any:
    """Walk ``path`` through SDK objects or dicts, returning None when absent."""
    current = payload
    for name in path:
        if current is None:
            return None
        if isinstance(current, dict):
            current = current.get(name)
        else:
            current = getattr(current, name, None)
    return current


def _int_field(payload: Any, *path: str) -> int:
    value = _field(payload, *path)
    return value if isinstance(value, int) and not isinstance(value, bool) else 0


class OllamaClient:
    """Thin async client for chat, model listing, pull, and delete."""

    def __init__(
        self,
        host: str,
        timeout: int = 120,
        client: Any | None = None,
    ) -> None:
        self.host = host
        self.timeout = timeout
        self._client = client if client is not None else AsyncClient(host=host, timeout=timeout)

    def _map_exception(self, exc: BaseException) -> TransportError:
        if isinstance(exc, TransportError):
            return exc

        if isinstance(exc, (httpx.TimeoutException, TimeoutError)):
            return TransportError(
                TransportErrorKind.TIMEOUT,
                f"Request to Ollama host {self.host} timed out.",
            )
        if isinstance(exc, (httpx.ConnectError, httpx.NetworkError, ConnectionError)):
            return TransportError(
                TransportErrorKind.CONNECTION_REFUSED,
                f"Unable to connect to Ollama host {self.host}.",
            )
        if isinstance(exc, ResponseError):
            return TransportError(
                TransportErrorKind.SERVER_ERROR,
                f"Ollama host {self.host} returned {exc.status_code}: {exc.error}",
            )
        if isinstance(exc, httpx.HTTPStatusError):
            return TransportError(
                TransportErrorKind.SERVER_ERROR,
                f"Ollama host {self.host} returned {exc.response.status_code}.",
            )
        if isinstance(exc, (ValidationError, ValueError, KeyError, TypeError)):
            return TransportError(
                TransportErrorKind.MALFORMED_RESPONSE,
                f"Unexpected response from Ollama host {self.host}: {exc}",
            )
        return TransportError(
            TransportErrorKind.SERVER_ERROR,
            f"Request to Ollama host {self.host} failed: {exc}",
        )

    def _fail(self, operation: str, exc: BaseException) -> TransportError:
        mapped = self._map_exception(exc)
        LOGGER.warning(
            "client.request.failed",
            extra={
                "event": "client.request.failed",
                "operation": operation,
                "kind": mapped.kind.value,
                "error_type": exc.__class__.__name__,
            },
        )
        return mapped

    @staticmethod
    def _extract_stats(response: Any) -> TurnStats:
        total_duration = _int_field(response, "total_duration")
        return TurnStats(
            prompt_tokens=_int_field(response, "prompt_eval_count"),
            response_tokens=_int_field(response, "eval_count"),
            elapsed_seconds=total_duration / NANOSECONDS_PER_SECOND,
        )

    async def chat(self, model: str, messages: list[dict[str, str]]) -> ChatReply:
        """Request a complete reply and wait for it."""
        try:
            response = await self._client.chat(model=model, messages=messages, stream=False)
        except Exception as exc:  # noqa: BLE001 - external API can fail in many ways.
            raise self._fail("chat", exc) from exc

        error = _field(response, "error")
        if isinstance(error, str) and error:
            raise TransportError(TransportErrorKind.SERVER_ERROR, error)
        content = _field(response, "message", "content")
        if not isinstance(content, str):
            raise TransportError(
                TransportErrorKind.MALFORMED_RESPONSE,
                f"Reply from {self.host} carried no message content.",
            )
        reply_model = _field(response, "model")
        return ChatReply(
            text=content,
            model=reply_model if isinstance(reply_model, str) and reply_model else model,
            stats=self._extract_stats(response),
        )

    async def chat_stream(
        self, model: str, messages: list[dict[str, str]]
    ) -> AsyncIterator[StreamFragment]:
        """Yield reply fragments as the server produces them.

        The final fragment has ``done`` set. A stream that closes without it
        raises ``TransportError(MALFORMED_RESPONSE)``.
        """
        try:
            stream = await self._client.chat(model=model, messages=messages, stream=True)
        except Exception as exc:  # noqa: BLE001 - external API can fail in many ways.
            raise self._fail("chat_stream", exc) from exc

        completed = False
        try:
            async for chunk in stream:
                error = _field(chunk, "error")
                if isinstance(error, str) and error:
                    raise TransportError(TransportErrorKind.SERVER_ERROR, error)
                text = _field(chunk, "message", "content")
                done = bool(_field(chunk, "done"))
                yield StreamFragment(text=text if isinstance(text, str) else "", done=done)
                if done:
                    completed = True
                    break
        except TransportError:
            raise
        except Exception as exc:  # noqa: BLE001 - external API can fail in many ways.
            raise self._fail("chat_stream", exc) from exc
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

        if not completed:
            raise TransportError(
                TransportErrorKind.MALFORMED_RESPONSE,
                f"Stream from {self.host} closed before completion.",
            )

    async def list_models(self) -> list[ModelDescriptor]:
        """Return the models available on the server, in server order."""
        try:
            response = await self._client.list()
        except Exception as exc:  # noqa: BLE001 - external API can fail in many ways.
            raise self._fail("list_models", exc) from exc

        models = _field(response, "models")
        if not isinstance(models, list):
            raise TransportError(
                TransportErrorKind.MALFORMED_RESPONSE,
                f"Model listing from {self.host} is not a list.",
            )

        descriptors: list[ModelDescriptor] = []
        for model in models:
            name = _field(model, "model") or _field(model, "name")
            if not isinstance(name, str) or not name.strip():
                continue
            modified_at = _field(model, "modified_at")
            descriptors.append(
                ModelDescriptor(
                    name=name.strip(),
                    size=_int_field(model, "size"),
                    modified_at=str(modified_at) if modified_at else "",
                    family=str(_field(model, "details", "family") or ""),
                    parameter_size=str(_field(model, "details", "parameter_size") or ""),
                    quantization_level=str(
                        _field(model, "details", "quantization_level") or ""
                    ),
                )
            )
        return descriptors

    async def pull_model(self, name: str) -> AsyncIterator[PullProgress]:
        """Download ``name`` to the server, yielding progress until ``success``."""
        LOGGER.info(
            "client.model.pull.start",
            extra={"event": "client.model.pull.start", "model": name},
        )
        try:
            stream = await self._client.pull(model=name, stream=True)
        except Exception as exc:  # noqa: BLE001 - external API can fail in many ways.
            raise self._fail("pull_model", exc) from exc

        last_status = ""
        try:
            async for update in stream:
                error = _field(update, "error")
                if isinstance(error, str) and error:
                    raise TransportError(TransportErrorKind.SERVER_ERROR, error)
                status = _field(update, "status")
                last_status = status if isinstance(status, str) else ""
                yield PullProgress(
                    status=last_status,
                    completed=_int_field(update, "completed"),
                    total=_int_field(update, "total"),
                )
        except TransportError:
            raise
        except Exception as exc:  # noqa: BLE001 - external API can fail in many ways.
            raise self._fail("pull_model", exc) from exc

        if last_status != "success":
            raise TransportError(
                TransportErrorKind.SERVER_ERROR,
                f"Pull of {name!r} ended without success (last status {last_status!r}).",
            )
        LOGGER.info(
            "client.model.pull.complete",
            extra={"event": "client.model.pull.complete", "model": name},
        )

    async def delete_model(self, name: str) -> None:
        """Delete ``name`` from the server."""
        try:
            response = await self._client.delete(model=name)
        except Exception as exc:  # noqa: BLE001 - external API can fail in many ways.
            raise self._fail("delete_model", exc) from exc

        status = _field(response, "status")
        if isinstance(status, str) and status and status != "success":
            raise TransportError(
                TransportErrorKind.SERVER_ERROR,
                f"Deleting {name!r} on {self.host} failed: {status}",
            )
        LOGGER.info(
            "client.model.deleted",
            extra={"event": "client.model.deleted", "model": name},
        )

    async def check_connection(self) -> bool:
        """Return whether the Ollama host is reachable."""
        try:
            await self._client.list()
            return True
        except Exception:  # noqa: BLE001 - reachability probe only.
            return False

    @staticmethod
    def model_name_matches(requested_model: str, available_model: str) -> bool:
        """Match ``llama3`` against ``llama3:latest`` the way the server resolves tags."""
        requested = requested_model.strip().lower()
        available = available_model.strip().lower()
        if requested == available:
            return True
        if ":" not in requested and available.startswith(f"{requested}:"):
            return True
        return False
