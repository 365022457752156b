"""CLI entrypoint for chatlink."""

from __future__ import annotations

import argparse
import asyncio
from importlib import metadata
from pathlib import Path
import sys
from typing import Sequence

from .config import ensure_config_dir, load_config
from .events import Cancelled, Failed, ResponseArriving
from .logging_utils import configure_logging


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="chatlink", description="Streaming chat client")
    parser.add_argument("--version", action="store_true", help="Print version and exit")
    parser.add_argument("--config", type=Path, default=None, help="Path to config.toml")
    parser.add_argument(
        "--prompt",
        default=None,
        help="Send one prompt, stream the answer to stdout and exit",
    )
    return parser


async def run_prompt(prompt: str, config_path: Path | None = None, client=None) -> int:
    """Stream a single answer to stdout; return the process exit code."""
    from .app import build_chat_link

    config = load_config(config_path)
    configure_logging(config["logging"])
    link = build_chat_link(config, client=client)
    link.event_bus.subscribe(
        ResponseArriving,
        lambda event: print(event.response_chunk.content, end="", flush=True),
    )
    terminal = await link.send_message(prompt)
    print()
    if isinstance(terminal, Failed):
        print(f"error: {terminal.cause}", file=sys.stderr)
        return 1
    if isinstance(terminal, Cancelled):
        return 130
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    """Handle CLI flags, then run either a one-shot prompt or the TUI."""

    parser = _build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    if args.version:
        try:
            version = metadata.version("chatlink")
        except metadata.PackageNotFoundError:
            version = "0.0.0"
        print(f"chatlink {version}")
        return 0

    ensure_config_dir()
    if args.prompt is not None:
        try:
            return asyncio.run(run_prompt(args.prompt, args.config))
        except KeyboardInterrupt:
            return 130

    from .app import ChatLinkApp

    ChatLinkApp(config_path=args.config).run()
    return 0


if __name__ == "__main__":
    sys.exit(main())
