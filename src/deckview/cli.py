from __future__ import annotations

import argparse
import json
import os
import sys
from importlib import metadata
from pathlib import Path

import tomllib
import uvicorn
from rich.console import Console
from rich.table import Table

from .errors import DeckviewError
from .hierarchy import presentation_display_mode
from .logging_utils import build_uvicorn_log_config, configure_logging
from .manifest import manifest_path
from .service import PresentationService
from .sync import SYNC_STRATEGIES
from .watcher import DEBOUNCE_ENV
from .web import WebConfig, create_app

ROOT_ENV = "DECKVIEW_ROOT"
DEFAULT_PORT = 4000


def _read_local_version() -> str | None:
    try:
        pyproject_path = Path(__file__).resolve().parents[2] / "pyproject.toml"
    except IndexError:  # pragma: no cover
        return None
    try:
        with pyproject_path.open("rb") as fh:
            data = tomllib.load(fh)
    except (FileNotFoundError, tomllib.TOMLDecodeError):
        return None
    return data.get("project", {}).get("version")


try:
    __version__ = metadata.version("deckview")
except metadata.PackageNotFoundError:
    __version__ = _read_local_version() or "0.0.0+unknown"

console = Console()
err_console = Console(stderr=True)


def _resolve_root(value: str | None) -> Path:
    raw = value or os.environ.get(ROOT_ENV) or "."
    return Path(raw).expanduser().resolve()


def build_serve_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="deckview serve",
        description="Serve a folder of presentations with live updates.",
    )
    parser.add_argument(
        "root",
        nargs="?",
        help=f"Folder containing presentation folders (default: ${ROOT_ENV} or the current directory).",
    )
    parser.add_argument("--host", default="127.0.0.1", help="Host interface to bind (default: %(default)s).")
    parser.add_argument("--port", type=int, default=DEFAULT_PORT, help="Port to listen on (default: %(default)s).")
    parser.add_argument(
        "--debounce-ms",
        type=int,
        default=None,
        help=f"Change debounce window in milliseconds, 150-250 (default: ${DEBOUNCE_ENV} or 200).",
    )
    parser.add_argument("--no-watch", action="store_true", help="Do not watch the folder for changes.")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging.")
    return parser


def build_list_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="deckview list",
        description="List the presentations found under a folder.",
    )
    parser.add_argument("root", nargs="?", help=f"Presentations root (default: ${ROOT_ENV} or the current directory).")
    parser.add_argument("--json", action="store_true", help="Print machine-readable JSON.")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging.")
    return parser


def build_validate_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="deckview validate",
        description="Validate a presentation's manifest and report missing files.",
    )
    parser.add_argument("folder", help="Presentation folder.")
    parser.add_argument(
        "--no-check-files",
        action="store_true",
        help="Only check the manifest structure, not the files it references.",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging.")
    return parser


def build_sync_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="deckview sync",
        description="Update a presentation's manifest from its entry documents or its files.",
    )
    parser.add_argument("folder", help="Presentation folder.")
    parser.add_argument(
        "--strategy",
        choices=SYNC_STRATEGIES,
        default="merge",
        help="merge keeps existing metadata; replace rebuilds from scratch (default: %(default)s).",
    )
    parser.add_argument(
        "--source",
        choices=("entry", "files"),
        default="entry",
        help="entry parses tab/index documents for slide cards; files aligns slides with the HTML files on disk.",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging.")
    return parser


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="deckview",
        description="Browse and organize folders of standalone HTML slides.",
        epilog="Commands: serve, list, validate, sync. Run `deckview <command> --help` for details.",
    )
    parser.add_argument(
        "-v",
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    return parser


def _service_for_folder(folder_arg: str) -> tuple[PresentationService, str]:
    folder = Path(folder_arg).expanduser().resolve()
    if not folder.is_dir():
        raise SystemExit(f"Presentation folder not found: {folder}")
    return PresentationService(folder.parent), folder.name


def _run_serve(args: argparse.Namespace) -> int:
    root = _resolve_root(args.root)
    if not root.is_dir():
        raise SystemExit(f"Presentations root not found: {root}")
    config = WebConfig(
        root=root,
        host=args.host,
        port=args.port,
        debounce_ms=args.debounce_ms,
        watch=not args.no_watch,
    )
    app = create_app(config)
    console.print(f"Serving presentations from [bold]{root}[/bold]")
    console.print(f"Web URL: http://{args.host}:{args.port}/")
    console.print("Press Ctrl+C to stop.\n")
    uvicorn.run(
        app,
        host=args.host,
        port=args.port,
        log_level="debug" if args.debug else "info",
        log_config=build_uvicorn_log_config(args.debug),
    )
    return 0


def _run_list(args: argparse.Namespace) -> int:
    root = _resolve_root(args.root)
    service = PresentationService(root)
    presentations = service.discover_all()
    if args.json:
        print(json.dumps([p.as_payload() for p in presentations], ensure_ascii=False, indent=2))
        return 0
    if not presentations:
        console.print(f"No presentations found in {root}")
        return 0
    table = Table(title=str(root))
    table.add_column("id")
    table.add_column("name")
    table.add_column("slides", justify="right")
    table.add_column("groups", justify="right")
    table.add_column("tabs", justify="right")
    table.add_column("mode")
    table.add_column("warnings", justify="right")
    for presentation in presentations:
        table.add_row(
            presentation.id,
            presentation.name,
            str(len(presentation.assets)),
            str(len(presentation.groups)),
            str(len(presentation.tabs)),
            presentation_display_mode(presentation),
            str(len(presentation.warnings)) if presentation.warnings else "",
        )
    console.print(table)
    return 0


def _run_validate(args: argparse.Namespace) -> int:
    service, presentation_id = _service_for_folder(args.folder)
    folder = service.folder(presentation_id)
    if not manifest_path(folder).exists():
        console.print(f"No manifest in {folder}; the folder is shown in file order.")
        return 0
    try:
        raw = json.loads(manifest_path(folder).read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        err_console.print(f"[red]Manifest is not valid JSON:[/red] {exc}")
        return 1
    report = service.validate_manifest(presentation_id, raw, check_files=not args.no_check_files)
    for error in report.errors:
        err_console.print(f"[red]error[/red] {error.field}: {error.message}")
    for warning in report.warnings:
        console.print(f"[yellow]warning[/yellow] {warning}")
    if report.valid:
        console.print(f"[green]{manifest_path(folder).name} is valid[/green]")
        return 0
    return 1


def _run_sync(args: argparse.Namespace) -> int:
    service, presentation_id = _service_for_folder(args.folder)
    if args.source == "files":
        slides = service.sync_manifest(presentation_id, args.strategy)
        console.print(f"Manifest now lists {len(slides)} slides.")
        return 0
    result = service.sync_from_entry_documents(presentation_id, args.strategy)
    console.print(
        f"Synced {len(result.tabs)} tabs: {len(result.added)} slides added, "
        f"{len(result.updated)} updated."
    )
    for warning in result.warnings:
        console.print(f"[yellow]warning[/yellow] {warning}")
    return 0


_COMMANDS = {
    "serve": (build_serve_parser, _run_serve),
    "list": (build_list_parser, _run_list),
    "validate": (build_validate_parser, _run_validate),
    "sync": (build_sync_parser, _run_sync),
}


def main(argv: list[str] | None = None) -> int:
    if argv is None:
        argv = sys.argv[1:]

    if argv and argv[0] in _COMMANDS:
        build, run = _COMMANDS[argv[0]]
        args = build().parse_args(argv[1:])
        if argv[0] != "serve":
            configure_logging(args.debug)
        try:
            return run(args)
        except DeckviewError as exc:
            raise SystemExit(str(exc)) from exc

    parser = build_parser()
    if not argv:
        parser.print_help()
        return 0
    parser.parse_args(argv)
    parser.error(f"unknown command: {argv[0]}")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
