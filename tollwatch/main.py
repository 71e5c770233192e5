"""Main entry point with CLI."""
import argparse
import asyncio
import logging
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

import orjson

from tollwatch.config import config, Config
from tollwatch.errors import InputError, TerminalError
from tollwatch.fetch.diagnostics import DiagnosticsRecorder
from tollwatch.fetch.portal import PlaywrightPortalDriver
from tollwatch.jobs.engine import TollNoticeEngine
from tollwatch.logging_conf import setup_logging
from tollwatch.parse.validation import build_query

logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description="Toll notice engine")
    subparsers = parser.add_subparsers(dest="command", required=True)

    probe = subparsers.add_parser("probe", help="Run one portal search without saving anything")
    probe.add_argument("--plate", required=True, help="Licence plate")
    probe.add_argument("--state", required=True, help="Jurisdiction code (NSW, VIC, ...)")
    probe.add_argument("--notice", default=None, help="Toll notice number")
    probe.add_argument("--motorcycle", action="store_true", help="Vehicle is a motorcycle")
    probe.add_argument(
        "--headed",
        action="store_true",
        help="Show the browser window",
    )
    probe.add_argument(
        "--deadline",
        type=float,
        default=None,
        help=f"Overall search deadline in seconds (default: {config.SEARCH_DEADLINE})",
    )

    serve = subparsers.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", default="0.0.0.0")
    serve.add_argument("--port", type=int, default=8000)

    parser.add_argument("--verbose", action="store_true", help="Debug logging")
    return parser.parse_args(argv)


async def run_probe(args: argparse.Namespace) -> int:
    query = build_query(args.plate, args.state, args.notice, args.motorcycle)
    driver = PlaywrightPortalDriver(
        diagnostics=DiagnosticsRecorder(),
        headless=not args.headed,
    )
    # Probing never persists, so no store is needed
    engine = TollNoticeEngine(driver=driver, store=None, deadline=args.deadline or config.SEARCH_DEADLINE)
    batch = await engine.probe(query)
    output = {
        "plate": query.plate,
        "state": query.jurisdiction.value,
        "count": batch.totals.count,
        "totals": batch.totals.formatted(),
        "notices": [n.model_dump(mode="json") for n in batch.notices],
    }
    sys.stdout.write(orjson.dumps(output, option=orjson.OPT_INDENT_2).decode() + "\n")
    return 0


def main(argv: list[str] | None = None) -> None:
    """Main entry point."""
    args = parse_args(argv)
    setup_logging("DEBUG" if args.verbose else None)

    if args.command == "serve":
        try:
            Config.validate(require_supabase=True)
        except ValueError as e:
            logger.error(f"Configuration error: {e}")
            sys.exit(1)

        import uvicorn

        uvicorn.run("tollwatch.api.main:app", host=args.host, port=args.port)
        return

    try:
        Config.validate(require_supabase=False)
        sys.exit(asyncio.run(run_probe(args)))
    except ValueError as e:
        logger.error(f"Configuration error: {e}")
        sys.exit(1)
    except InputError as e:
        logger.error(f"Invalid input: {e}")
        sys.exit(2)
    except TerminalError as e:
        logger.error(f"{e.user_message} ({e})")
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        sys.exit(1)


if __name__ == "__main__":
    main()
