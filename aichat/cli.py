"""CLI entry point: terminal chat through the conversation state manager.

Usage:
    aichat --config chat.yaml "How do I list open ports?"
    aichat --config chat.yaml --backend rag
    aichat --config chat.yaml --stream --conversation 1f0c...

Without a message argument, reads lines from stdin until ``/quit``;
``/new`` starts a new conversation.
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import TextIO

from .adapters import ConversationStateManager, EventBus, Events
from .engine.errors import ChatClientError
from .engine.providers import SendOptions, build_backend_registry
from .engine.yaml_config import load_yaml_config

logger = logging.getLogger(__name__)


class TerminalRenderer:
    """Writes streamed and completed bot replies to a text stream."""

    def __init__(self, manager: ConversationStateManager, out: TextIO) -> None:
        self._manager = manager
        self._out = out
        self._shown = ""
        self._unsubscribers = [
            manager.subscribe(Events.STREAM_CHUNK, self._on_chunk),
            manager.subscribe(Events.INIT_LIMITATION, self._on_limitation),
        ]

    def start_turn(self) -> None:
        self._shown = ""

    def _on_chunk(self) -> None:
        fold = self._manager.get_active_conversation_stream_chunk()
        if fold is None or not fold.content.startswith(self._shown):
            return
        self._out.write(fold.content[len(self._shown):])
        self._out.flush()
        self._shown = fold.content

    def _on_limitation(self) -> None:
        limitation = self._manager.get_init_limitation()
        if limitation is not None:
            self._out.write(f"[limited: {limitation.detail or limitation.reason}]\n")

    def finish_turn(self) -> None:
        messages = self._manager.get_active_conversation_messages()
        answer = messages[-1].answer if messages else ""
        if answer.startswith(self._shown):
            self._out.write(answer[len(self._shown):])
        elif not self._shown:
            self._out.write(answer)
        self._out.write("\n")
        self._out.flush()
        self._shown = ""

    def close(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()


async def _trace_events(manager: ConversationStateManager, bus: EventBus) -> None:
    async for event in bus.consume():
        logger.debug(
            "event=%s active=%s in_progress=%s",
            event.value,
            manager.get_active_conversation_id(),
            manager.get_message_in_progress(),
        )


async def _send(
    manager: ConversationStateManager,
    renderer: TerminalRenderer,
    text: str,
    stream: bool,
) -> None:
    renderer.start_turn()
    try:
        await manager.send_message(text, SendOptions(stream=stream))
    finally:
        renderer.finish_turn()


async def _repl(
    manager: ConversationStateManager,
    renderer: TerminalRenderer,
    stream: bool,
    out: TextIO,
) -> None:
    while True:
        out.write("> ")
        out.flush()
        line = await asyncio.to_thread(sys.stdin.readline)
        if not line:
            break
        text = line.strip()
        if text == "/quit":
            break
        if text == "/new":
            conversation = await manager.create_new_conversation()
            out.write(f"[conversation {conversation.id}]\n")
            continue
        if not text:
            continue
        try:
            await _send(manager, renderer, text, stream)
        except ChatClientError as exc:
            out.write(f"Error: {exc}\n")


async def run(args: argparse.Namespace, out: TextIO = sys.stdout) -> int:
    """Run one CLI session. Returns the process exit code."""
    config = load_yaml_config(args.config)
    if not args.verbose:
        logging.getLogger().setLevel(config.client.log_level.upper())
    registry = build_backend_registry(config.backends, config.client)
    name = args.backend or config.client.default_backend
    try:
        client = registry.get_or_raise(name)
    except KeyError as exc:
        print(f"Error: {exc.args[0]}", file=sys.stderr)
        await registry.shutdown_all()
        return 1

    stream = args.stream or config.client.stream_by_default
    manager = ConversationStateManager(client, stream_by_default=stream)
    renderer = TerminalRenderer(manager, out)
    bus = EventBus(manager, maxsize=config.client.event_queue_size)
    tracer = asyncio.create_task(_trace_events(manager, bus))
    try:
        await manager.init()
        if args.conversation:
            await manager.set_active_conversation_id(args.conversation)
        elif manager.get_active_conversation_id() is None:
            await manager.create_new_conversation()

        if args.message:
            await _send(manager, renderer, args.message, stream)
        else:
            await _repl(manager, renderer, stream, out)
        return 0
    except ChatClientError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    finally:
        renderer.close()
        bus.close()
        tracer.cancel()
        await asyncio.gather(tracer, return_exceptions=True)
        await registry.shutdown_all()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="aichat",
        description="Chat with a configured AI backend from the terminal",
    )
    parser.add_argument(
        "message",
        nargs="?",
        default=None,
        help="Send one message and exit (default: interactive)",
    )
    parser.add_argument(
        "--config", "-c",
        required=True,
        help="YAML file with client and backend settings",
    )
    parser.add_argument(
        "--backend", "-b",
        default=None,
        help="Backend name from the config (default: defaults.backend)",
    )
    parser.add_argument(
        "--stream",
        action="store_true",
        help="Stream replies token by token",
    )
    parser.add_argument(
        "--conversation",
        default=None,
        help="Resume an existing conversation by id",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug logging",
    )
    return parser


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)

    # Configure logging
    level = logging.DEBUG if args.verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
        datefmt="%H:%M:%S",
    )

    try:
        code = asyncio.run(run(args))
    except FileNotFoundError:
        print(f"Error: Config file not found: {args.config}", file=sys.stderr)
        sys.exit(1)
    except KeyboardInterrupt:
        print("\nInterrupted.")
        sys.exit(1)
    sys.exit(code)


if __name__ == "__main__":
    main()
