"""CLI entrypoint: serve the relay, drive a run, or normalize a posts file."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
from pathlib import Path
from typing import Optional

from rich.markdown import Markdown
from rich.panel import Panel
from rich.table import Table

from config import get_settings
from core import RunResult
from pipeline.posts_normalizer import display_content, normalize_posts
from utils.logger import console, setup_relay_logging
from webapp.client import RunClient


def _print_posts(result: RunResult) -> None:
    if not result.posts:
        fallback = result.content_display or "-"
        console.print(Panel(fallback, title="Content Creator (raw)"))
        return
    for platform, posts in result.posts.items():
        table = Table(title=platform, show_lines=True)
        table.add_column("hook")
        table.add_column("body")
        table.add_column("cta")
        table.add_column("hashtags")
        for post in posts:
            table.add_row(
                str(post.get("hook") or ""),
                str(post.get("body") or json.dumps(post, ensure_ascii=False)),
                str(post.get("cta") or ""),
                " ".join(post.get("hashtags") or []),
            )
        console.print(table)


def _print_result(result: RunResult) -> None:
    _print_posts(result)
    console.print(Panel(Markdown(result.report) if result.report else "-", title="Social Analyst"))
    if result.error:
        console.print(f"[red]{result.error}[/red]")


async def _run(server: str, topic: Optional[str], client_id: Optional[str], quiet: bool) -> RunResult:
    settings = get_settings()
    client = RunClient(
        server,
        client_id=client_id,
        timeout=settings.request_timeout,
        retries=settings.fetch_retries,
        content_name=settings.content_artifact,
        report_name=settings.report_artifact,
    )
    on_log = None if quiet else (lambda line: console.print(line, markup=False, highlight=False))
    return await client.run(topic, on_log=on_log)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="SocialCrew relay CLI")
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve")
    serve.add_argument("--host", type=str, default="127.0.0.1", help="Bind host")
    serve.add_argument("--port", type=int, default=8000, help="Bind port")
    serve.add_argument("--reload", action="store_true", help="Enable auto-reload")

    run = sub.add_parser("run")
    run.add_argument("--topic", default="")
    run.add_argument("--server", default="http://127.0.0.1:8000")
    run.add_argument("--client-id", default=None)
    run.add_argument("--quiet", action="store_true", help="Hide streamed log lines")
    run.add_argument("--json", action="store_true", help="Print the result as JSON")

    normalize = sub.add_parser("normalize")
    normalize.add_argument("path", type=Path)

    return parser


def main() -> int:
    args = build_parser().parse_args()
    setup_relay_logging(logging.INFO if args.command == "serve" else logging.WARNING)

    if args.command == "serve":
        import uvicorn

        uvicorn.run("webapp.app:app", host=args.host, port=args.port, reload=args.reload)
        return 0

    if args.command == "run":
        result = asyncio.run(_run(args.server, args.topic, args.client_id, args.quiet or args.json))
        if args.json:
            print(json.dumps(result.model_dump(mode="json"), ensure_ascii=False, indent=2))
        else:
            _print_result(result)
        return 1 if result.error else 0

    if args.command == "normalize":
        raw = args.path.read_text(encoding="utf-8")
        document = normalize_posts(raw)
        if document is None:
            print(display_content(raw))
            return 1
        print(json.dumps(document, ensure_ascii=False, indent=2))
        return 0

    return 2


if __name__ == "__main__":
    raise SystemExit(main())
