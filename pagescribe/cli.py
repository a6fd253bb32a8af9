from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from pydantic import ValidationError
from rich.console import Console
from rich.logging import RichHandler

from pagescribe.core.config import LOG_LEVELS, Settings, get_settings
from pagescribe.core.endpoints import Endpoint, EndpointPool, parse_endpoints
from pagescribe.core.errors import ConfigurationError, TransportError
from pagescribe.core.models import DocumentReport
from pagescribe.core.output_layout import OutputLayout
from pagescribe.runtime.catalog import format_model_row, sort_models
from pagescribe.runtime.dispatcher import DispatchOptions, Dispatcher
from pagescribe.runtime.ollama_client import OllamaClient


EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pagescribe",
        description="Transcribe PDF pages to markdown with one or more Ollama vision models",
    )
    parser.add_argument("files", nargs="*", metavar="FILES", help="PDF files to transcribe")
    parser.add_argument("-v", "--verbose", action="store_true")
    parser.add_argument("-c", "--show-content", action="store_true", help="Print the text layer of each page")
    parser.add_argument("-l", "--log-level", default=None, choices=LOG_LEVELS)
    parser.add_argument("-w", "--page-width", type=int, default=None, help="Render width in pixels")
    parser.add_argument("-k", "--keep", action="store_true", help="Keep rendered page images")
    parser.add_argument("-s", "--page-start", type=int, default=None)
    parser.add_argument("-e", "--page-end", type=int, default=None)
    parser.add_argument("-o", "--output-dir", default=None)
    parser.add_argument("--ls", dest="list_models", action="store_true", help="List models on each endpoint")
    parser.add_argument("--sort-by-size", action="store_true", help="With --ls, sort by parameter size")
    parser.add_argument(
        "-u",
        "--ollama-url",
        action="append",
        default=[],
        help="Ollama URL, optionally `url@replicas`; comma-separated and repeatable",
    )
    parser.add_argument("--prompt", default=None)
    parser.add_argument("-m", "--model", default=None)
    parser.add_argument("--max-tokens", type=int, default=None, help="Stop a page once its output exceeds this")
    return parser


def configure_logging(level_name: str) -> None:
    level_name = level_name.lower()
    if level_name == "off":
        level = logging.CRITICAL + 1
    elif level_name == "trace":
        level = logging.DEBUG
    else:
        level = logging.getLevelName(level_name.upper())
        if not isinstance(level, int):
            level = logging.ERROR

    logging.basicConfig(
        level=level,
        format="%(name)s: %(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))


def build_endpoints(args: argparse.Namespace, settings: Settings) -> list[Endpoint]:
    tokens = args.ollama_url or settings.endpoint_tokens
    return parse_endpoints(tokens, args.model or settings.model)


async def list_models(clients: list[OllamaClient], by_size: bool, console: Console) -> int:
    exit_code = EXIT_OK
    for client in clients:
        console.print(f"Listing models from {client.address}", markup=False)
        try:
            models = await client.list_models()
        except TransportError as exc:
            console.print(str(exc), markup=False, style="red")
            exit_code = EXIT_FAILED
            continue
        for model in sort_models(models, by_size=by_size):
            console.print(format_model_row(model), markup=False, highlight=False)
    return exit_code


def summarize(reports: list[DocumentReport], console: Console) -> int:
    exit_code = EXIT_OK
    for report in reports:
        if report.succeeded:
            continue
        exit_code = EXIT_FAILED
        if report.error and not report.results:
            console.print(f"{report.source}: not processed ({report.error})", markup=False, style="red")
            continue
        if report.error:
            console.print(f"{report.source}: stopped early ({report.error})", markup=False, style="red")
        if report.failed_pages:
            pages = ", ".join(str(page) for page in report.failed_pages)
            console.print(f"{report.source}: failed pages {pages}", markup=False, style="red")
    return exit_code


async def run(args: argparse.Namespace, settings: Settings, console: Console) -> int:
    endpoints = build_endpoints(args, settings)
    clients = {
        endpoint: OllamaClient(endpoint, timeout_seconds=settings.request_timeout_seconds)
        for endpoint in endpoints
    }
    try:
        if args.list_models:
            return await list_models(list(clients.values()), args.sort_by_size, console)

        pool = EndpointPool.build(endpoints)
        for endpoint in pool.endpoints:
            console.print(f"Adding {endpoint.replica_count} slot(s) for {endpoint.address}", markup=False)

        options = DispatchOptions(
            prompt=args.prompt if args.prompt is not None else settings.prompt,
            max_tokens=args.max_tokens if args.max_tokens is not None else settings.max_tokens,
            page_width=args.page_width or settings.page_width,
            page_start=args.page_start,
            page_end=args.page_end,
            keep_pages=args.keep or settings.keep_pages,
            show_content=args.show_content,
            verbose=args.verbose,
        )
        output_dir = settings.resolve_path(args.output_dir) if args.output_dir else settings.output_path
        dispatcher = Dispatcher(
            pool=pool,
            backend_for=clients.__getitem__,
            layout=OutputLayout(output_dir),
            options=options,
            console=console,
        )
        reports = await dispatcher.run([Path(item) for item in args.files])
        return summarize(reports, console)
    finally:
        await asyncio.gather(*(client.aclose() for client in clients.values()))


def main() -> None:
    parser = build_parser()
    args = parser.parse_args()
    try:
        settings = get_settings()
    except ValidationError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        raise SystemExit(EXIT_CONFIG) from exc
    configure_logging(args.log_level or settings.log_level)

    console = Console()
    if not args.list_models and not args.files:
        parser.error("at least one PDF file is required")

    try:
        exit_code = asyncio.run(run(args, settings, console))
    except ConfigurationError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        exit_code = EXIT_CONFIG
    raise SystemExit(exit_code)


if __name__ == "__main__":
    main()
