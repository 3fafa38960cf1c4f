#!/usr/bin/env python3
"""
Analytics Chat - ask questions about product analytics in natural language.
"""

import argparse
import json
import logging
import sys

# Configure logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s", stream=sys.stderr
)

#
# NOTE: Keep analyst imports lazy (inside functions) so `--serve` does not pay for
# model SDK imports before the server is up.
#


class TerminalListener:
    """Prints streamed text to stdout and tool activity as it happens."""

    def on_text_delta(self, turn_id, text):
        print(text, end="", flush=True)

    def on_tool_invocation(self, turn_id, invocation):
        args = json.dumps(invocation.arguments, ensure_ascii=False, default=str)
        if len(args) > 200:
            args = args[:199] + "…"
        print(f"\n[tool] {invocation.name} {args}", flush=True)

    def on_tool_result(self, turn_id, invocation):
        result = invocation.result if isinstance(invocation.result, dict) else {}
        if invocation.status == "failed":
            print(f"[tool] {invocation.name} failed: {result.get('error')}", flush=True)
        elif "row_count" in result:
            print(f"[tool] {invocation.name} -> {result['row_count']} rows ({result.get('source')})", flush=True)
        else:
            print(f"[tool] {invocation.name} -> {invocation.status}", flush=True)

    def on_turn_end(self, turn_id, outcome):
        print("", flush=True)


def ask(question: str) -> int:
    """Answer one question in a fresh conversation. Returns a process exit code."""
    import asyncio

    from analyst.chat.runtime_streaming import ChatSession
    from analyst.chat.tools import build_default_registry
    from analyst.config import load_chat_config
    from analyst.llm.client_streaming import create_stream_backend

    config = load_chat_config()
    registry = build_default_registry()
    backend = create_stream_backend(registry, config)
    session = ChatSession("cli", backend=backend, registry=registry, config=config)

    msg = asyncio.run(session.send_message(question, listener=TerminalListener()))
    if msg.error_code:
        print(msg.text, file=sys.stderr)
        return 1
    return 0


def main():
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Chat with your analytics data",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # One-off question, streamed to the terminal
  python main.py --ask "Show active users for the last 7 days"

  # Run the HTTP/SSE server
  python main.py --serve --port 8080
        """,
    )
    parser.add_argument("--ask", metavar="QUESTION", help="Ask a single question and stream the answer")
    parser.add_argument("--serve", action="store_true", help="Run the chat HTTP server (SSE streaming)")
    parser.add_argument("--host", default="0.0.0.0", help="Server bind host (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, default=8080, help="Server listen port (default: 8080)")

    args = parser.parse_args()

    from analyst.chat.errors import LLMConfigError

    try:
        if args.serve:
            from analyst.api.server import run as run_server

            run_server(host=args.host, port=args.port)
            return

        if args.ask:
            sys.exit(ask(args.ask))

        parser.print_help()

    except LLMConfigError as e:
        print(f"Chat is not configured: {e.error_code}", file=sys.stderr)
        sys.exit(2)


if __name__ == "__main__":
    main()
