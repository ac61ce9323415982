"""CLI entrypoint for rtwo."""

from __future__ import annotations

import argparse
import asyncio
from collections.abc import Sequence
from importlib import metadata
import logging
from pathlib import Path
import sys

from .app import RtwoApp
from .config import build_session_config, ensure_config_dir, load_config
from .exceptions import RtwoError
from .logging_utils import configure_logging

LOGGER = logging.getLogger("rtwo.main")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="rtwo",
        description="rtwo - query and manage an Ollama server from the terminal",
    )
    parser.add_argument("--version", action="store_true", help="Print version and exit")
    parser.add_argument("--config", type=Path, help="Path to an alternate rtwo.toml")
    parser.add_argument("-H", "--host", help="Host address for ollama server, e.g. 192.168.1.5")
    parser.add_argument("-p", "--port", type=int, help="Host port for ollama server, e.g. 11434")
    parser.add_argument("-m", "--model", help="Model name to query, e.g. llama3:70b")
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Print model, prompt/response token counts, and time taken after each reply",
    )
    parser.add_argument("-c", "--color", action="store_true", help="Enable color output")
    parser.add_argument(
        "-s", "--save", action="store_true", help="Save conversation for recall"
    )
    parser.add_argument(
        "-S",
        "--stream",
        action="store_true",
        help="Stream replies as they are generated (disables markdown formatting)",
    )

    actions = parser.add_mutually_exclusive_group()
    actions.add_argument(
        "-l", "--list", action="store_true", help="List previous conversations"
    )
    actions.add_argument(
        "-L",
        "--listmodels",
        action="store_true",
        help="List available models on the ollama server",
    )
    actions.add_argument(
        "-r",
        "--restore",
        action="store_true",
        help="Restore a previous conversation and pick up where you left off",
    )
    actions.add_argument(
        "-d",
        "--delete",
        action="store_true",
        help="Delete previous conversations from local storage (irreversible)",
    )
    actions.add_argument(
        "-P", "--pull", metavar="MODEL", help="Pull model to the ollama server"
    )
    actions.add_argument(
        "-D", "--delmodel", metavar="MODEL", help="Delete model from the ollama server"
    )
    return parser


async def _dispatch(app: RtwoApp, args: argparse.Namespace) -> None:
    if args.list:
        await app.list_conversations()
    elif args.listmodels:
        await app.list_models()
    elif args.delete:
        await app.delete_conversations()
    elif args.pull:
        await app.pull_model(args.pull)
    elif args.delmodel:
        await app.delete_model(args.delmodel)
    else:
        await app.chat(restore=args.restore)


def main(argv: Sequence[str] | None = None) -> None:
    """Load configuration, apply CLI overrides, and run the requested action."""

    parser = _build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    if args.version:
        try:
            version = metadata.version("rtwo")
        except metadata.PackageNotFoundError:
            version = "0.0.0"
        print(f"rtwo {version}")
        return

    ensure_config_dir()
    config = load_config(args.config)
    configure_logging(config["logging"])

    try:
        session_config = build_session_config(
            config,
            host=args.host,
            port=args.port,
            model=args.model,
            verbose=args.verbose,
            color=args.color,
            save=args.save,
            stream=args.stream,
        )
    except RtwoError as exc:
        print(f"Failed to read config from file or args -> {exc}", file=sys.stderr)
        raise SystemExit(1) from exc

    LOGGER.info(
        "main.config",
        extra={
            "event": "main.config",
            "host": session_config.address,
            "model": session_config.model,
        },
    )
    app = RtwoApp.from_config(session_config, config["database_path"])
    try:
        asyncio.run(_dispatch(app, args))
    except RtwoError as exc:
        LOGGER.error(
            "main.failed",
            extra={"event": "main.failed", "error_type": exc.__class__.__name__},
        )
        app.renderer.render_error(str(exc))
        raise SystemExit(1) from exc


if __name__ == "__main__":
    main()
