#!/usr/bin/env python3
"""
ragdesk CLI.

    COMMAND         ALIASES             WHAT IT DOES
    -------         -------             ----------------------------------
    serve           start, up           Start the ragdesk web server
    check           lint, doctor        Validate config.yaml
    ask             say                 Stream one query straight to upstream
    ping            status, health      Ping a running instance
"""

import argparse
import asyncio
import sys

from ragdesk import __version__


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def cmd_serve(args):
    """Start the ragdesk web server."""
    import uvicorn
    from ragdesk.config import get_config

    cfg = get_config()
    server_cfg = cfg.get("server", {})
    host = args.host or server_cfg.get("host", "0.0.0.0")
    port = args.port or server_cfg.get("port", 8000)

    print(f"  ragdesk {__version__}")
    print(f"  Listening on {host}:{port}")
    print(f"  Upstream: {cfg.get('upstream', {}).get('url', '(unset)')}")
    print()

    uvicorn.run(
        "ragdesk.main:app",
        host=host,
        port=port,
        reload=args.reload,
        log_level="info",
    )


def cmd_check(args):
    """Validate the config. Exit status 1 when anything is wrong."""
    from ragdesk.config import check_config, load_config

    try:
        cfg = load_config(args.config)
    except FileNotFoundError as e:
        print(f"  ✗  {e}")
        sys.exit(1)

    problems = check_config(cfg, production=args.production)
    if not problems:
        mode = "production" if args.production else "development"
        print(f"  ✓  Config OK ({mode} rules)")
        return

    for problem in problems:
        print(f"  ✗  {problem}")
    sys.exit(1)


async def _ask(query: str, conversation_id: str, user: str):
    from ragdesk.config import get_config
    from ragdesk.errors import AppError
    from ragdesk.upstream import ChatRequest, DifyClient, ErrorEvent, MessageEndEvent, MessageEvent

    client = DifyClient.from_config(get_config())
    request = ChatRequest(
        query=query,
        user=user,
        conversation_id=conversation_id,
        response_mode="streaming",
    )
    try:
        async for event in client.stream_chat(request):
            if isinstance(event, MessageEvent):
                print(event.answer, end="", flush=True)
            elif isinstance(event, MessageEndEvent):
                print()
                print(f"\n  conversation: {event.conversation_id}")
            elif isinstance(event, ErrorEvent):
                print(f"\n  ✗  Upstream error: {event.message}")
                return 1
    except AppError as e:
        print(f"\n  ✗  {e.code.value}: {e.message}")
        return 1
    return 0


def cmd_ask(args):
    """Stream one query to the upstream API, bypassing sessions and storage."""
    code = asyncio.run(_ask(" ".join(args.query), args.conversation or "", args.user))
    if code:
        sys.exit(code)


def cmd_ping(args):
    """Ping a running ragdesk instance."""
    import httpx

    url = (args.url or "http://localhost:8000").rstrip("/")
    try:
        resp = httpx.get(f"{url}/health", timeout=5)
    except httpx.ConnectError:
        print(f"  ✗  Nothing listening at {url}")
        sys.exit(1)
    except httpx.HTTPError as e:
        print(f"  ✗  Error: {e}")
        sys.exit(1)

    if resp.status_code != 200:
        print(f"  ✗  No answer, got HTTP {resp.status_code}")
        sys.exit(1)
    print(f"  ✓  {url} is up (version {resp.json().get('version', '?')})")


# ---------------------------------------------------------------------------
# Parser with aliases
# ---------------------------------------------------------------------------

def _add_command(subparsers, names, help_text, func, setup_fn=None):
    """Register a command under its name plus aliases."""
    p = subparsers.add_parser(names[0], help=help_text, aliases=names[1:])
    p.set_defaults(func=func)
    if setup_fn:
        setup_fn(p)
    return p


def main():
    parser = argparse.ArgumentParser(
        prog="ragdesk",
        description="ragdesk: department-scoped chat over a RAG backend.",
        epilog="Run 'ragdesk <command> --help' for command-specific options.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--version", "-V", action="version",
        version=f"ragdesk {__version__}",
    )

    sub = parser.add_subparsers(dest="command", metavar="<command>")

    def setup_serve(p):
        p.add_argument("--host", default=None, help="Override listen host")
        p.add_argument("--port", "-p", type=int, default=None, help="Override listen port")
        p.add_argument("--reload", action="store_true", help="Auto-reload on code changes (dev)")

    _add_command(sub, ["serve", "start", "up"],
                 "Start the ragdesk web server", cmd_serve, setup_serve)

    def setup_check(p):
        p.add_argument("--config", "-c", default=None, help="Path to config.yaml")
        p.add_argument("--production", action="store_true",
                       help="Also enforce HTTPS redirect URIs and secure cookies")

    _add_command(sub, ["check", "lint", "doctor"],
                 "Validate config.yaml", cmd_check, setup_check)

    def setup_ask(p):
        p.add_argument("query", nargs="+", help="Question to send")
        p.add_argument("--conversation", "-c", default=None, help="Continue this conversation id")
        p.add_argument("--user", "-u", default="cli", help="User identifier sent upstream")

    _add_command(sub, ["ask", "say"],
                 "Stream one query straight to the upstream API", cmd_ask, setup_ask)

    def setup_ping(p):
        p.add_argument("--url", "-u", default=None, help="ragdesk URL (default: http://localhost:8000)")

    _add_command(sub, ["ping", "status", "health"],
                 "Ping a running ragdesk instance", cmd_ping, setup_ping)

    args = parser.parse_args()
    if not args.command:
        parser.print_help()
        return

    args.func(args)


if __name__ == "__main__":
    main()
