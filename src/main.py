"""Entry point for the Tabloo home-lab dashboard."""

from __future__ import annotations

import argparse
import logging
import sys

import uvicorn
from rich.console import Console
from rich.panel import Panel

from src.config import settings

console = Console()
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
)


def run_server() -> None:
    """Start the FastAPI server."""
    base = f"http://{settings.api_host}:{settings.api_port}"
    console.print(Panel(
        f"Server running at: {base}\n"
        f"Dashboard: {base}/\n"
        f"Admin UI:  {base}/admin\n"
        f"Environment: {settings.environment}\n\n"
        "[bold yellow]WARNING: No authentication enabled![/bold yellow]\n"
        "Run only on a private network.",
        title="Home-Lab Dashboard",
        style="bold green",
    ))
    uvicorn.run(
        "src.api.server:create_app",
        factory=True,
        host=settings.api_host,
        port=settings.api_port,
        reload=False,
    )


def run_init_db() -> None:
    """Create tables and defaults, then exit."""
    from src.api.server import init_storage

    init_storage(settings)
    console.print(f"[green]Database initialized successfully[/green] ({settings.db_path})")


def main() -> None:
    parser = argparse.ArgumentParser(description="Tabloo Home-Lab Dashboard")
    sub = parser.add_subparsers(dest="command")

    sub.add_parser("serve", help="Start the API server")
    sub.add_parser("init-db", help="Create the database and default settings, then exit")

    args = parser.parse_args()

    if args.command == "serve":
        run_server()
    elif args.command == "init-db":
        run_init_db()
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
