#!/usr/bin/env python3
"""
MultiMind CLI.

    COMMAND         ALIASES         WHAT IT DOES
    -------         -------         ----------------------------------
    serve           start, up       Start the MultiMind API server
    models          catalog         List the public model catalog
    ask             chat            Stream one answer to the terminal
    sessions        history         List stored chat sessions
    status          ping, health    Ping a running instance
"""

import argparse
import asyncio
import sys

from multimind import __version__


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def cmd_serve(args):
    """Start the MultiMind API server."""
    import uvicorn
    from multimind.config import get_config

    cfg = get_config()
    server_cfg = cfg.get("server", {})
    host = args.host or server_cfg.get("host", "0.0.0.0")
    port = args.port or server_cfg.get("port", 5000)

    print(f"  MultiMind v{__version__} on {host}:{port}")
    print()

    uvicorn.run(
        "multimind.main:app",
        host=host,
        port=port,
        reload=args.reload,
        log_level="info",
    )


def cmd_models(args):
    """Print the model catalog."""
    from multimind.config import get_config
    from multimind.registry import ModelRegistry

    registry = ModelRegistry.from_config(get_config().get("models"))
    for m in registry.list_all():
        image = "image" if m.supports_image else "text "
        print(f"  {m.public_id:<16} {image}  {m.provider.value:<11} {m.upstream_model_id}")
        if args.verbose and m.description:
            print(f"  {'':<16} {m.description}")


async def _ask(model_id: str, message: str, image: str | None) -> int:
    from multimind.backends.base import ChatRequest
    from multimind.backends.router import CompletionRouter
    from multimind.config import get_config
    from multimind.errors import MultiMindError

    router = CompletionRouter.from_config(get_config())
    request = ChatRequest(public_model_id=model_id, new_user_content=message, new_user_image=image)
    try:
        async for chunk in router.route(request):
            if chunk.is_error:
                print(f"\n  ✗  {chunk.error_message}", file=sys.stderr)
                return 1
            if chunk.text:
                print(chunk.text, end="", flush=True)
    except MultiMindError as e:
        print(f"\n  ✗  {e}", file=sys.stderr)
        return 1
    print()
    return 0


def cmd_ask(args):
    """Stream one answer to stdout."""
    image = None
    if args.image:
        import base64
        from pathlib import Path

        image = base64.b64encode(Path(args.image).read_bytes()).decode("ascii")
    sys.exit(asyncio.run(_ask(args.model, " ".join(args.message), image)))


def cmd_sessions(args):
    """List stored chat sessions."""
    from multimind.config import get_config
    from multimind.storage.sqlite_store import SQLiteStore

    cfg = get_config()
    store = SQLiteStore(cfg.get("storage", {}).get("sqlite_path", "./data/multimind.db"))
    sessions = store.list_sessions(limit=args.limit)
    if not sessions:
        print("  No sessions stored yet.")
        return
    for s in sessions:
        print(f"  {s.session_id:<32} {s.model_id:<14} {s.updated_at[:19]}  {s.title}")
    stats = store.get_stats()
    print()
    print(f"  {stats['sessions']} sessions, {stats['messages']} messages")


def cmd_status(args):
    """Ping a running MultiMind instance."""
    import httpx

    url = (args.url or "http://localhost:5000").rstrip("/")
    try:
        resp = httpx.get(f"{url}/", timeout=5)
        if resp.status_code == 200:
            data = resp.json()
            print(f"  ✓  {url} is UP (v{data.get('version', '?')})")
            models = httpx.get(f"{url}/chat/models", timeout=5).json().get("models", [])
            print(f"  {len(models)} models: {', '.join(m['id'] for m in models)}")
        else:
            print(f"  ✗  Got HTTP {resp.status_code}")
    except httpx.ConnectError:
        print(f"  ✗  Nothing listening at {url}")
    except httpx.HTTPError as e:
        print(f"  ✗  Error: {e}")


# ---------------------------------------------------------------------------
# Parser with aliases
# ---------------------------------------------------------------------------

def _add_command(subparsers, names, help_text, func, setup_fn=None):
    """Register a command under several names."""
    p = subparsers.add_parser(names[0], help=help_text, aliases=names[1:])
    p.set_defaults(func=func)
    if setup_fn:
        setup_fn(p)
    return p


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="multimind",
        description="MultiMind — one chat stream, many providers.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--version", "-V", action="version",
        version=f"multimind {__version__}",
    )

    sub = parser.add_subparsers(dest="command", metavar="<command>")

    def setup_serve(p):
        p.add_argument("--host", default=None, help="Override listen host")
        p.add_argument("--port", "-p", type=int, default=None, help="Override listen port")
        p.add_argument("--reload", action="store_true", help="Auto-reload on code changes (dev)")

    _add_command(sub, ["serve", "start", "up"], "Start the MultiMind API server", cmd_serve, setup_serve)

    def setup_models(p):
        p.add_argument("--verbose", "-v", action="store_true", help="Show descriptions")

    _add_command(sub, ["models", "catalog"], "List the public model catalog", cmd_models, setup_models)

    def setup_ask(p):
        p.add_argument("model", help="Public model id (see 'multimind models')")
        p.add_argument("message", nargs="+", help="Message to send")
        p.add_argument("--image", "-i", default=None, help="Path to an image to attach")

    _add_command(sub, ["ask", "chat"], "Stream one answer to the terminal", cmd_ask, setup_ask)

    def setup_sessions(p):
        p.add_argument("--limit", "-n", type=int, default=20, help="Max sessions to list")

    _add_command(sub, ["sessions", "history"], "List stored chat sessions", cmd_sessions, setup_sessions)

    def setup_status(p):
        p.add_argument("--url", "-u", default=None, help="MultiMind URL (default: http://localhost:5000)")

    _add_command(sub, ["status", "ping", "health"], "Ping a running instance", cmd_status, setup_status)

    return parser


def main():
    parser = build_parser()
    args = parser.parse_args()
    if not args.command:
        parser.print_help()
        return
    args.func(args)


if __name__ == "__main__":
    main()
