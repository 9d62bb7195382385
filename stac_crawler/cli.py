"""
Command line entry point for a single crawl cycle.

Flags override environment variables, which override built-in defaults:

    stac-crawler --mode catalogs --max-catalogs 20
    stac-crawler -m apis -a 10 -t 60000
    stac-crawler -m both -c 0 -a 0        # unlimited
    CRAWL_MODE=both MAX_CATALOGS=50 stac-crawler
"""

import argparse
import asyncio
import logging
import sys
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from .config import Settings
from .errors import StoreConnectivityError

logger = logging.getLogger("stac_crawler.cli")

LOG_FORMAT = "%(asctime)s - %(levelname)s - %(name)s - %(message)s"

# argparse dest -> Settings field
FLAG_FIELDS = {
    "mode": "crawl_mode",
    "max_catalogs": "max_catalogs",
    "max_apis": "max_apis",
    "timeout": "timeout_ms",
    "max_depth": "max_depth",
    "parallel_domains": "parallel_domains",
    "rpm_per_domain": "max_requests_per_minute_per_domain",
    "concurrency_per_domain": "max_concurrency_per_domain",
    "max_retries": "max_retries",
    "domain_delay": "domain_delay",
}


def non_negative_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid integer: {value!r}")
    if number < 0:
        raise argparse.ArgumentTypeError(f"must be >= 0, got {number}")
    return number


def positive_int(value: str) -> int:
    number = non_negative_int(value)
    if number == 0:
        raise argparse.ArgumentTypeError("must be >= 1, got 0")
    return number


def non_negative_float(value: str) -> float:
    try:
        number = float(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid number: {value!r}")
    if number < 0:
        raise argparse.ArgumentTypeError(f"must be >= 0, got {number}")
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="stac-crawler",
        description="Crawl STAC catalogs and APIs listed in STAC Index into the Catalog Store.",
        epilog="Each flag can also be set with the environment variable shown in its help.",
    )
    parser.add_argument("-m", "--mode", choices=["catalogs", "apis", "both"], help="Crawl mode (CRAWL_MODE, default: both)")
    parser.add_argument("-c", "--max-catalogs", type=non_negative_int, help="Maximum catalogs, 0 = unlimited (MAX_CATALOGS)")
    parser.add_argument("-a", "--max-apis", type=non_negative_int, help="Maximum APIs, 0 = unlimited (MAX_APIS)")
    parser.add_argument("-t", "--timeout", type=non_negative_int, help="Request timeout in ms (TIMEOUT_MS, default: 30000)")
    parser.add_argument("-d", "--max-depth", type=non_negative_int, help="Maximum nesting depth, 0 = unlimited (MAX_DEPTH, default: 10)")
    parser.add_argument(
        "-p", "--parallel-domains", type=positive_int, help="Domains crawled in parallel (PARALLEL_DOMAINS, default: 5)"
    )
    parser.add_argument(
        "-r",
        "--rpm-per-domain",
        type=non_negative_int,
        help="Max requests per minute per domain, 0 = no limit (MAX_REQUESTS_PER_MINUTE_PER_DOMAIN, default: 120)",
    )
    parser.add_argument(
        "-n",
        "--concurrency-per-domain",
        type=positive_int,
        help="Concurrent requests per domain (MAX_CONCURRENCY_PER_DOMAIN, default: 20)",
    )
    parser.add_argument("-x", "--max-retries", type=non_negative_int, help="Retries per request (MAX_RETRIES, default: 3)")
    parser.add_argument(
        "-y", "--domain-delay", type=non_negative_float, help="Seconds between requests to one domain (DOMAIN_DELAY, default: 0)"
    )
    return parser


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    return build_parser().parse_args(argv)


def cli_overrides(args: argparse.Namespace) -> Dict[str, Any]:
    return {
        field: getattr(args, dest)
        for dest, field in FLAG_FIELDS.items()
        if getattr(args, dest, None) is not None
    }


def build_settings(args: argparse.Namespace) -> Settings:
    """Environment settings with command line flags applied on top."""
    try:
        settings = Settings()
    except ValidationError as e:
        raise SystemExit(f"Invalid configuration: {e}")
    return settings.model_copy(update=cli_overrides(args))


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=getattr(logging, str(level).upper(), logging.INFO), format=LOG_FORMAT)
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


async def _run(settings: Settings) -> int:
    from .crawler import run_crawl_cycle
    from .scheduler import format_duration, install_signal_handlers
    from .store import SqlAlchemyCatalogStore

    stop_event = asyncio.Event()
    install_signal_handlers(stop_event)
    store = SqlAlchemyCatalogStore.from_settings(settings)
    try:
        result = await run_crawl_cycle(settings, store, stop_event=stop_event)
    except StoreConnectivityError as e:
        logger.critical(f"Catalog Store unreachable: {e}")
        return 1
    finally:
        await store.close()

    logger.info(f"Pipeline completed in {format_duration(result.elapsed_seconds)}")
    return 0 if result.success else 1


def main(argv: Optional[List[str]] = None) -> None:
    args = parse_args(argv)
    settings = build_settings(args)
    configure_logging(settings.log_level)
    logger.info(
        f"Configuration: mode={settings.crawl_mode}, max_catalogs={settings.max_catalogs}, "
        f"max_apis={settings.max_apis}, timeout={settings.timeout_ms}ms, max_depth={settings.max_depth}, "
        f"parallel_domains={settings.parallel_domains}, rpm={settings.max_requests_per_minute_per_domain}"
    )
    sys.exit(asyncio.run(_run(settings)))


if __name__ == "__main__":
    main()
