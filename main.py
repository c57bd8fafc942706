#!/usr/bin/env python3
"""
Reading Shelf command line entry point.

Modes:
    serve   run the HTTP service (feed endpoint + cover proxy)
    shelf   fetch the reading feed once and print the JSON snapshot
    cover   resolve a single cover through the fallback chain
    status  print the effective configuration
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Optional

from config import config, get_logger
from fetcher import ShelfFetcher
from models import ImageFetchRequest
from proxy import ImageProxy
from telemetry import init_telemetry, trace_span

# Module-specific logger
logger = get_logger("main")
init_telemetry("reading-shelf-cli")


@trace_span("cli.shelf", tracer_name="cli")
async def run_shelf() -> bool:
    """Fetch the feed once and print it."""
    snapshot = await ShelfFetcher().fetch_shelf()
    print(json.dumps(snapshot.to_dict(proxy_base=config.PUBLIC_BASE_URL), indent=2, ensure_ascii=False))
    return snapshot.ok


@trace_span("cli.cover", tracer_name="cli")
async def run_cover(request: ImageFetchRequest, output: Optional[str]) -> bool:
    """Resolve one cover and optionally write it to ``output``."""
    result = await ImageProxy().resolve(request)
    logger.info(
        "Resolved cover via %s step (%s, %d bytes)",
        result.source.value,
        result.content_type,
        len(result.body),
    )
    if output:
        Path(output).write_bytes(result.body)
        logger.info(f"Wrote cover to {output}")
    return not result.is_placeholder


def print_status():
    """Print formatted configuration summary."""
    summary = config.get_config_summary()
    print("\n📚 Reading Shelf configuration")
    for key, value in summary.items():
        print(f"   {key}: {value}")


def main():
    """Main entry point."""

    parser = argparse.ArgumentParser(description='Reading Shelf service')
    parser.add_argument('mode', choices=['serve', 'shelf', 'cover', 'status'],
                        help='Operation mode')
    parser.add_argument('--host', type=str, help='Bind address for serve mode')
    parser.add_argument('--port', type=int, help='Port for serve mode')
    parser.add_argument('--url', type=str, help='Cover URL to resolve (cover mode)')
    parser.add_argument('--original', type=str, help='Pre-normalization cover URL (cover mode)')
    parser.add_argument('--title', type=str, default='', help='Book title for overrides and placeholder label')
    parser.add_argument('--page', type=str, help='Referer page URL (cover mode)')
    parser.add_argument('--output', type=str, help='File to write the resolved cover to (cover mode)')

    args = parser.parse_args()

    try:
        if args.mode == 'serve':
            # Imported here so CLI-only modes don't build the web app
            from server import run
            run(host=args.host, port=args.port)

        elif args.mode == 'shelf':
            success = asyncio.run(run_shelf())
            sys.exit(0 if success else 1)

        elif args.mode == 'cover':
            if not args.url:
                parser.error("cover mode requires --url")
            request = ImageFetchRequest(url=args.url, original=args.original, title=args.title, page=args.page)
            success = asyncio.run(run_cover(request, args.output))
            sys.exit(0 if success else 1)

        elif args.mode == 'status':
            print_status()

    except KeyboardInterrupt:
        logger.info("👋 Reading shelf shutting down")
    except Exception as e:
        logger.error(f"💥 Unexpected error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
