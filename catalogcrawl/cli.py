"""
catalogcrawl command line.

Examples:
  catalogcrawl run --config crawl.json
  catalogcrawl once --data-dir data/
  catalogcrawl retry-failed serie-123
  catalogcrawl verify --repair
  catalogcrawl benchmark serie-123 --sample 20 --levels 1,5,10,20
  catalogcrawl export --output progress.parquet
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional

import polars as pl

from . import __version__
from .benchmark import DEFAULT_LEVELS, DEFAULT_SAMPLE, parse_levels
from .checkpoint import CheckpointStore
from .config import Config, configure_logging, load_config
from .driver import CycleDriver
from .errors import ConfigError
from .extract import NextDataExtractor
from .fetch import PageFetcher, build_session
from .models import is_complete
from .notify import build_notifier
from .pipeline import CatalogPipeline
from .resources import ResourceMonitor
from .runlock import RunLock
from .stats import StatsCollector
from .storage import Store

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_USAGE = 2


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="catalogcrawl",
        description="Resumable, load-adaptive catalog crawler",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__.split("\n", 2)[2],
    )
    p.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    p.add_argument("--config", type=str, help="Path to JSON config file")
    p.add_argument("--data-dir", dest="data_dir", type=str, default=None)
    p.add_argument("--log-level", dest="log_level", type=str, default=None)
    p.add_argument("--log-file", dest="log_file", type=str, default=None)
    p.add_argument("--no-progress", dest="no_progress", action="store_true",
                   help="Disable progress bars")

    sub = p.add_subparsers(dest="command", required=True)

    sub.add_parser("run", help="Run crawl cycles forever (every cycle_period seconds)")
    sub.add_parser("once", help="Run a single crawl cycle")

    retry = sub.add_parser("retry-failed", help="Retry previously failed items")
    retry.add_argument("slug", nargs="?", default=None, help="Target slug (default: all)")

    verify = sub.add_parser("verify", help="Reconcile progress cursors with item files")
    verify.add_argument("slug", nargs="?", default=None, help="Target slug (default: all)")
    verify.add_argument("--repair", action="store_true", help="Re-fetch missing items")

    bench = sub.add_parser("benchmark", help="Measure fixed concurrency levels and recommend one")
    bench.add_argument("slug", help="Target whose first items are sampled")
    bench.add_argument("--sample", type=int, default=DEFAULT_SAMPLE, help="Items fetched per level")
    bench.add_argument("--levels", type=parse_levels, default=list(DEFAULT_LEVELS),
                       help="Comma separated concurrency levels")

    sub.add_parser("report", help="Print the latest session report")

    export = sub.add_parser("export", help="Export per-target progress as a table")
    export.add_argument("--output", required=True, type=str)
    export.add_argument("--format", dest="fmt", choices=["parquet", "csv"], default=None,
                        help="Defaults to the output file extension")
    return p


def resolve_config(args: argparse.Namespace) -> Config:
    return load_config(
        args.config,
        data_dir=args.data_dir,
        log_level=args.log_level,
        log_file=args.log_file,
        show_progress=False if args.no_progress else None,
    )


# =============================================================================
# OFFLINE COMMANDS
# =============================================================================

def progress_frame(store: Store) -> pl.DataFrame:
    """One row per target with its cursor and pending failures."""
    targets = {t.slug: t for t in store.load_targets()}
    slugs = sorted(set(targets) | set(store.known_slugs()))
    rows = []
    for slug in slugs:
        detail = store.load_detail(slug)
        failed = len(store.load_failures(slug))
        target = targets.get(slug)
        if target is not None:
            status = target.status
        else:
            status = str(detail.metadata.get("status", "unknown")) if detail else "unknown"
        rows.append({
            "slug": slug,
            "url": detail.url if detail else (target.url if target else ""),
            "title": detail.title if detail else "",
            "status": status,
            "total": detail.total_count if detail else (target.total_items if target else 0),
            "scraped": detail.scraped_count if detail else 0,
            "files": len(store.item_indices(slug)),
            "failed": failed,
            "complete": is_complete(detail, failed),
        })
    schema = {
        "slug": pl.Utf8, "url": pl.Utf8, "title": pl.Utf8, "status": pl.Utf8,
        "total": pl.Int64, "scraped": pl.Int64, "files": pl.Int64,
        "failed": pl.Int64, "complete": pl.Boolean,
    }
    return pl.DataFrame(rows, schema=schema)


def export_progress(store: Store, output: str, fmt: Optional[str] = None) -> Path:
    out = Path(output)
    fmt = fmt or ("csv" if out.suffix.lower() == ".csv" else "parquet")
    df = progress_frame(store)
    out.parent.mkdir(parents=True, exist_ok=True)
    if fmt == "csv":
        df.write_csv(out)
    else:
        df.write_parquet(out)
    logger.info("[Export] Wrote %d row(s) to %s", df.height, out)
    return out


# =============================================================================
# NETWORK COMMANDS
# =============================================================================

async def run_command(args: argparse.Namespace, cfg: Config) -> int:
    store = Store(cfg.data_path)
    store.ensure()
    notifier = build_notifier(cfg)
    monitor = ResourceMonitor(
        interval=cfg.monitor_interval,
        window=cfg.monitor_window,
        high_water=min(cfg.cpu_high_water, cfg.memory_high_water),
        per_request_memory_mb=cfg.per_request_memory_mb,
        hard_cap=cfg.max_concurrency,
        notifier=notifier,
    )
    stats = StatsCollector(store.stats_path, keep=cfg.stats_keep, monitor=monitor)

    async with build_session(cfg.user_agent, cfg.timeout_sec, pool_size=cfg.list_concurrency) as session:
        pipeline = CatalogPipeline(
            cfg,
            store,
            PageFetcher(session, timeout_sec=cfg.timeout_sec),
            NextDataExtractor(),
            notifier=notifier,
            monitor=monitor,
            stats=stats,
        )
        driver = CycleDriver(
            cfg,
            pipeline,
            RunLock(store.lock_path, stale_after=cfg.lock_stale_after),
            CheckpointStore(store.checkpoint_path),
            notifier=notifier,
            monitor=monitor,
        )
        driver.install_signal_handlers()

        if args.command == "run":
            await driver.run_forever()
            return EXIT_OK

        if args.command == "once":
            result = await driver.run_single()
            return EXIT_ERROR if result.status == "failed" else EXIT_OK

        await monitor.start()
        try:
            if args.command == "retry-failed":
                acquired, summary = await driver.run_locked(
                    lambda: pipeline.retry_failed(args.slug), "retry")
                if acquired:
                    print(f"Recovered {summary.recovered}/{summary.total_failed} | "
                          f"remaining {summary.remaining}")
            elif args.command == "verify":
                acquired, reports = await driver.run_locked(
                    lambda: pipeline.verify(args.slug, repair=args.repair), "verify")
                if acquired:
                    for report in reports:
                        print(f"{report.slug}: {report.summary()}")
            elif args.command == "benchmark":
                acquired, bench = await driver.run_locked(
                    lambda: pipeline.benchmark(args.slug, sample=args.sample, levels=args.levels), "benchmark")
                if acquired:
                    if bench is None:
                        print(f"No detail record for {args.slug}", file=sys.stderr)
                        return EXIT_ERROR
                    print(bench.to_frame())
                    if bench.recommended is not None:
                        print(f"Recommended concurrency: {bench.recommended} (max_concurrency)")
            else:
                raise ValueError(f"Unknown command: {args.command}")
        finally:
            await monitor.stop()

        if not acquired:
            logger.warning("[Lock] Another instance is running; %s skipped", args.command)
        return EXIT_OK


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        cfg = resolve_config(args)
    except ConfigError as e:
        print(f"[Config] {e}", file=sys.stderr)
        return EXIT_USAGE

    configure_logging(cfg.log_level, cfg.log_file or str(Store(cfg.data_path).log_dir / "catalogcrawl.log"))

    try:
        if args.command == "report":
            print(StatsCollector(Store(cfg.data_path).stats_path, keep=cfg.stats_keep).generate_report())
            return EXIT_OK
        if args.command == "export":
            export_progress(Store(cfg.data_path), args.output, args.fmt)
            return EXIT_OK
        return asyncio.run(run_command(args, cfg))
    except KeyboardInterrupt:
        logger.warning("[Shutdown] Interrupted")
        return EXIT_OK
    except asyncio.CancelledError:
        logger.warning("[Shutdown] Cycle cancelled after the shutdown grace period")
        return EXIT_OK
    except Exception as e:
        logger.exception("[Fatal] %s: %s", type(e).__name__, e)
        return EXIT_ERROR


if __name__ == "__main__":
    sys.exit(main())
