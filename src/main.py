# src/main.py — v3
"""CLI entry point: scan, report-error, cache, flagged and error-stats commands.

Usage:
    shelfscan scan --barcode 012345678901 [--lat 37.77 --lon -122.41]
    shelfscan scan --image photo.jpg [--no-insights]
    shelfscan report-error --product-id P1 --name "Organic Milk" [--barcode B1]
    shelfscan cache stats|evict|invalidate [--barcode B | --fingerprint F | --product-id P]
    shelfscan cache invalidate-insights --product-id P1,P2
    shelfscan flagged [--limit 50]
    shelfscan error-stats
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import mimetypes
import sys
from pathlib import Path

from shelfscan.version import __version__

logger = logging.getLogger(__name__)


def main(argv: list[str] | None = None) -> int:
    """Main CLI entry point."""
    parser = _build_parser()
    args = parser.parse_args(argv)

    if not hasattr(args, "func"):
        parser.print_help()
        return 1

    from shelfscan.config.settings import ConfigurationError, load_settings
    from shelfscan.logging.logger import setup_logging

    try:
        settings = load_settings()
    except ConfigurationError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return 2

    setup_logging(
        level="DEBUG" if args.verbose else settings.log_level,
        log_format=settings.log_format,
        log_file=str(settings.log_file) if settings.log_file else None,
        rotation=settings.log_rotation,
        retention=settings.log_retention,
    )

    try:
        return asyncio.run(_run(args, settings))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 130
    except Exception as exc:
        logger.error("Fatal error: %s", exc, exc_info=args.verbose)
        return 1


async def _run(args: argparse.Namespace, settings: object) -> int:
    from shelfscan.api.facade import build_services

    services = build_services(settings)
    try:
        return await args.func(args, services)
    finally:
        await services.aclose()


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="shelfscan",
        description=f"shelfscan v{__version__}: cache-first product identification",
    )
    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true",
        help="Enable debug logging",
    )

    subparsers = parser.add_subparsers(dest="command")

    # --- scan ---
    p_scan = subparsers.add_parser("scan", help="Identify a product")
    p_scan.add_argument("--barcode", default=None, help="Scanned barcode")
    p_scan.add_argument("--image", type=Path, default=None, help="Product photo")
    p_scan.add_argument("--fingerprint", default=None, help="Precomputed image fingerprint")
    p_scan.add_argument("--lat", type=float, default=None, help="Latitude of the scan")
    p_scan.add_argument("--lon", type=float, default=None, help="Longitude of the scan")
    p_scan.add_argument("--user", default="anonymous", help="User id (default: anonymous)")
    p_scan.add_argument("--session", default="", help="Session id")
    p_scan.add_argument(
        "--no-insights", dest="insights", action="store_false",
        help="Skip product insights",
    )
    p_scan.set_defaults(func=_cmd_scan)

    # --- report-error ---
    p_report = subparsers.add_parser("report-error", help="Report a wrong identification")
    p_report.add_argument("--product-id", required=True, help="Id of the wrong product")
    p_report.add_argument("--name", required=True, help="Name of the wrong product")
    p_report.add_argument("--brand", default="", help="Brand of the wrong product")
    p_report.add_argument("--barcode", default=None)
    p_report.add_argument("--fingerprint", default=None)
    p_report.add_argument("--image", type=Path, default=None, help="Photo for re-analysis")
    p_report.add_argument("--tier", type=int, default=None, help="Tier that produced the answer")
    p_report.add_argument("--feedback", default="", help="Free-text feedback")
    p_report.add_argument("--user", default="anonymous")
    p_report.add_argument("--session", default="")
    p_report.set_defaults(func=_cmd_report_error)

    # --- cache ---
    p_cache = subparsers.add_parser("cache", help="Inspect or maintain the cache")
    p_cache.add_argument("action", choices=["stats", "evict", "invalidate", "invalidate-insights"])
    p_cache.add_argument("--barcode", default=None)
    p_cache.add_argument("--fingerprint", default=None)
    p_cache.add_argument(
        "--product-id", default=None,
        help="Product id (comma-separated list for invalidate-insights)",
    )
    p_cache.set_defaults(func=_cmd_cache)

    # --- flagged ---
    p_flagged = subparsers.add_parser("flagged", help="List products flagged for review")
    p_flagged.add_argument("--limit", type=int, default=50)
    p_flagged.set_defaults(func=_cmd_flagged)

    # --- error-stats ---
    p_stats = subparsers.add_parser("error-stats", help="Show error report statistics")
    p_stats.set_defaults(func=_cmd_error_stats)

    return parser


async def _cmd_scan(args: argparse.Namespace, services) -> int:
    from shelfscan.core.errors import OrchestratorError
    from shelfscan.core.models import Coordinates, ScanRequest

    location = None
    if args.lat is not None and args.lon is not None:
        location = Coordinates(latitude=args.lat, longitude=args.lon)

    request = ScanRequest(
        barcode=args.barcode,
        image=_load_image(args.image),
        image_fingerprint=args.fingerprint,
        user_id=args.user,
        session_id=args.session,
        location=location,
        include_insights=args.insights,
    )
    try:
        result = await services.orchestrator.process_scan(request)
    except OrchestratorError as exc:
        _print_json({"error": exc.to_dict()})
        return 1
    print(result.model_dump_json(indent=2))
    return 0 if result.product is not None else 3


async def _cmd_report_error(args: argparse.Namespace, services) -> int:
    from shelfscan.core.models import ErrorReport, ProductSnapshot

    report = ErrorReport(
        incorrect_product=ProductSnapshot(
            id=args.product_id, name=args.name, brand=args.brand, barcode=args.barcode
        ),
        barcode=args.barcode,
        image_fingerprint=args.fingerprint,
        image=_load_image(args.image),
        user_feedback=args.feedback,
        user_id=args.user,
        session_id=args.session,
        tier=args.tier,
    )
    response = await services.orchestrator.report_error(report)
    print(response.model_dump_json(indent=2))
    return 0 if response.success else 1


async def _cmd_cache(args: argparse.Namespace, services) -> int:
    from shelfscan.core.models import IdentificationKey
    from shelfscan.core.outcome import Failed

    cache = services.cache
    if args.action == "stats":
        outcome = await cache.stats()
        if isinstance(outcome, Failed):
            logger.error("Cache stats unavailable: %s", outcome.error)
            return 1
        print(outcome.value.model_dump_json(indent=2))
        return 0

    if args.action == "evict":
        outcome = await cache.evict_expired()
        if isinstance(outcome, Failed):
            logger.error("Eviction failed: %s", outcome.error)
            return 1
        print(f"Evicted {outcome.value} expired entries")
        return 0

    if args.action == "invalidate-insights":
        product_ids = [p.strip() for p in (args.product_id or "").split(",") if p.strip()]
        if not product_ids:
            logger.error("invalidate-insights needs --product-id")
            return 2
        outcome = await cache.invalidate_insights(product_ids)
        if isinstance(outcome, Failed):
            logger.error("Insights invalidation failed: %s", outcome.error)
            return 1
        print(f"Removed insights for {outcome.value} products")
        return 0

    removed = 0
    outcomes = []
    if args.barcode:
        outcomes.append(await cache.invalidate(IdentificationKey.barcode(args.barcode)))
    if args.fingerprint:
        outcomes.append(await cache.invalidate(IdentificationKey.image_fingerprint(args.fingerprint)))
    if args.product_id:
        outcomes.append(await cache.invalidate_by_product_id(args.product_id))
    if not outcomes:
        logger.error("invalidate needs --barcode, --fingerprint or --product-id")
        return 2
    for outcome in outcomes:
        if isinstance(outcome, Failed):
            logger.error("Invalidation failed: %s", outcome.error)
            return 1
        removed += int(outcome.value)
    print(f"Removed {removed} entries")
    return 0


async def _cmd_flagged(args: argparse.Namespace, services) -> int:
    products = await services.products.get_flagged_products(limit=args.limit)
    if not products:
        print("No flagged products")
        return 0
    for product in products:
        print(f"  {product.id}  {product.name} ({product.brand or '-'})  barcode={product.barcode or '-'}")
    return 0


async def _cmd_error_stats(args: argparse.Namespace, services) -> int:
    stats = await services.ledger.get_error_stats()
    print(stats.model_dump_json(indent=2))
    return 0


def _load_image(path: Path | None):
    from shelfscan.core.models import ImagePayload

    if path is None:
        return None
    media_type = mimetypes.guess_type(path.name)[0] or "image/jpeg"
    return ImagePayload(data=path.read_bytes(), media_type=media_type)


def _print_json(payload: dict) -> None:
    print(json.dumps(payload, indent=2, default=str))


if __name__ == "__main__":
    sys.exit(main())
