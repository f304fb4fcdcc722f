"""CLI entrypoint for buildchat."""

from __future__ import annotations

import argparse
import asyncio
from collections.abc import Sequence
from importlib import metadata
from pathlib import Path
import sys
from typing import Any

from .build_pipeline import collect_build_output
from .client import ChatApiClient
from .config import build_client, load_config
from .coordinator import ConversationCoordinator
from .exceptions import BuildChatError
from .logging_utils import configure_logging
from .models import Attachment


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="buildchat",
        description="buildchat - streaming chat and build client for the entity backend",
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Print version and exit",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to a config.toml (default: ~/.config/buildchat/config.toml)",
    )
    commands = parser.add_subparsers(dest="command")

    commands.add_parser("conversations", help="List conversations")

    new = commands.add_parser("new", help="Create a conversation")
    new.add_argument("--title", default="New conversation")

    show = commands.add_parser("show", help="Print a conversation's history")
    show.add_argument("conversation_id")

    delete = commands.add_parser("delete", help="Delete a conversation")
    delete.add_argument("conversation_id")

    send = commands.add_parser("send", help="Send a message and print the reply")
    send.add_argument("text")
    send.add_argument("--conversation", default=None, help="Existing conversation id")
    send.add_argument(
        "--attach", action="append", default=[], type=Path, help="File to upload first"
    )
    send.add_argument("--think", action="store_true", help="Request thinking output")

    build = commands.add_parser("build", help="Run a build command and stream its log")
    build.add_argument("build_command")
    build.add_argument("--cwd", default=None)

    commands.add_parser("xml-types", help="List supported XML entity types")
    return parser


def _print_version() -> None:
    try:
        version = metadata.version("buildchat")
    except metadata.PackageNotFoundError:
        version = "0.0.0"
    print(f"buildchat {version}")


async def _send(client: ChatApiClient, args: argparse.Namespace, polling: dict[str, Any]) -> int:
    attachments: list[Attachment] = []
    for path in args.attach:
        try:
            attachments.append(Attachment.from_path(path))
        except OSError as exc:
            raise BuildChatError(f"Cannot attach {path}: {exc.strerror or exc}") from exc

    coordinator = ConversationCoordinator(
        client,
        poll_interval=float(polling["interval_seconds"]),
        poll_max_attempts=int(polling["max_attempts"]),
    )
    if args.conversation:
        await coordinator.load(args.conversation)
    else:
        await coordinator.create()
        print(f"conversation: {coordinator.conversation_id}", file=sys.stderr)

    message = await coordinator.send(args.text, attachments, think=args.think)
    if message is None:
        return 1
    if message.thinking:
        print(f"[thinking]\n{message.thinking}\n[/thinking]")
    print(message.content)
    return 0


async def _build(client: ChatApiClient, args: argparse.Namespace) -> int:
    stream = await client.stream_build(args.build_command, cwd=args.cwd)
    async with stream:
        outcome = await collect_build_output(stream, on_log=print)
    if outcome.message:
        print(outcome.message, file=sys.stderr)
    return 0 if outcome.success else 1


async def _run(args: argparse.Namespace) -> int:
    config = load_config(args.config)
    configure_logging(config["logging"])
    async with build_client(config) as client:
        if args.command == "conversations":
            for item in await client.list_conversations():
                print(f"{item.id}\t{item.message_count}\t{item.title}")
        elif args.command == "new":
            created = await client.create_conversation(args.title)
            print(created.conversation_id)
        elif args.command == "show":
            detail = await client.get_conversation(args.conversation_id)
            print(f"# {detail.title}")
            for message in detail.messages:
                print(f"{message.role}: {message.content}")
        elif args.command == "delete":
            await client.delete_conversation(args.conversation_id)
        elif args.command == "send":
            return await _send(client, args, config["polling"])
        elif args.command == "build":
            return await _build(client, args)
        elif args.command == "xml-types":
            for name in await client.list_xml_types():
                print(name)
    return 0


def main(argv: Sequence[str] | None = None) -> None:
    """Parse CLI flags, then run one command against the configured backend."""

    parser = _build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    if args.version:
        _print_version()
        return
    if args.command is None:
        parser.print_help()
        return

    try:
        status = asyncio.run(_run(args))
    except BuildChatError as exc:
        print(f"error: {exc}", file=sys.stderr)
        raise SystemExit(1) from exc
    except KeyboardInterrupt:
        raise SystemExit(130) from None
    if status:
        raise SystemExit(status)


if __name__ == "__main__":
    main()
