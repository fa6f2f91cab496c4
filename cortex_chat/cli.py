import argparse
import asyncio
import logging
import os
import sys
from typing import List, Optional

import uvicorn

from cortex_chat.client.api import ChatApiClient
from cortex_chat.client.models import ChatMessage
from cortex_chat.client.orchestrator import ChatTurnOrchestrator, TurnState

HELP_TEXT = """commands:
  /threads          list threads
  /switch <id>      switch to a thread
  /new              start a new thread on the next message
  /rename <title>   rename the active thread
  /delete           delete the active thread
  /quit             exit"""


class _StreamPrinter:
    """Prints the growing tail of the streaming assistant message."""

    def __init__(self) -> None:
        self._message_id: Optional[str] = None
        self._printed = 0

    def __call__(self, thread_id: Optional[str], messages: List[ChatMessage]) -> None:
        if not messages or messages[-1].role != "assistant":
            return
        last = messages[-1]
        if last.id != self._message_id:
            if not last.is_streaming:
                return
            self._message_id = last.id
            self._printed = 0
        if len(last.content) > self._printed:
            sys.stdout.write(last.content[self._printed:])
            sys.stdout.flush()
            self._printed = len(last.content)


def _print_threads(orchestrator: ChatTurnOrchestrator) -> None:
    if not orchestrator.threads:
        print("(no threads)")
        return
    for thread in orchestrator.threads:
        marker = "*" if thread.id == orchestrator.thread_id else " "
        print(f"{marker} {thread.id}  {thread.title or '(untitled)'}")


async def _handle_command(orchestrator: ChatTurnOrchestrator, line: str) -> bool:
    command, _, arg = line.partition(" ")
    arg = arg.strip()
    if command == "/quit":
        return False
    if command == "/threads":
        _print_threads(orchestrator)
    elif command == "/switch" and arg:
        await orchestrator.select_thread(arg)
        for message in orchestrator.messages:
            print(f"[{message.role}] {message.content}")
    elif command == "/new":
        orchestrator.new_thread()
    elif command == "/rename" and arg and orchestrator.thread_id:
        await orchestrator.rename_thread(orchestrator.thread_id, arg)
    elif command == "/delete" and orchestrator.thread_id:
        await orchestrator.delete_thread(orchestrator.thread_id)
    else:
        print(HELP_TEXT)
    if orchestrator.error:
        print(f"error: {orchestrator.error}")
        orchestrator.clear_error()
    return True


async def _chat(args: argparse.Namespace) -> int:
    headers = {"x-user-id": args.user} if args.user else {}
    api = ChatApiClient(args.url, headers=headers)
    orchestrator = ChatTurnOrchestrator(api, max_message_chars=args.max_chars)
    orchestrator.cache.subscribe(_StreamPrinter())
    try:
        await orchestrator.bootstrap()
        if orchestrator.error:
            print(f"warning: {orchestrator.error}")
            orchestrator.clear_error()
        print("type a message, or /help")
        while True:
            try:
                line = (await asyncio.to_thread(input, "> ")).strip()
            except EOFError:
                break
            if not line:
                continue
            if line.startswith("/"):
                if not await _handle_command(orchestrator, line):
                    break
                continue
            result = await orchestrator.send_message(line)
            print()
            if result.route_warning:
                print(f"({result.route_mode}: {result.route_warning})")
            if result.state is not TurnState.COMPLETED and result.error:
                print(f"error: {result.error}")
    finally:
        await orchestrator.aclose()
        await api.aclose()
    return 0


def _serve(args: argparse.Namespace) -> int:
    uvicorn.run("cortex_chat.main:app", host=args.host, port=args.port, log_level=args.log_level.lower())
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog="cortex-chat", description="Streaming chat gateway and terminal client.")
    parser.add_argument("--log-level", default=os.getenv("LOG_LEVEL", "INFO"))
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="run the HTTP gateway")
    serve.add_argument("--host", default=os.getenv("HOST", "127.0.0.1"))
    serve.add_argument("--port", type=int, default=int(os.getenv("PORT", "8080")))

    chat = sub.add_parser("chat", help="chat with a running gateway from the terminal")
    chat.add_argument("--url", default=os.getenv("CORTEX_CHAT_URL", "http://127.0.0.1:8080"))
    chat.add_argument("--user", default=os.getenv("CORTEX_CHAT_USER", ""))
    chat.add_argument("--max-chars", type=int, default=int(os.getenv("CHAT_MAX_MESSAGE_CHARS", "6000")))

    args = parser.parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    if args.command == "serve":
        return _serve(args)
    return asyncio.run(_chat(args))


if __name__ == "__main__":
    sys.exit(main())
