import argparse, asyncio, logging, sys
from src.foiacrawl.claim import claim_pending_urls
from src.foiacrawl.config import HttpConfig, config_hash, ensure_data_dirs, get_db_path, get_documents_dir, get_user_agent, load_crawler_config
from src.foiacrawl.crawl import run_source
from src.foiacrawl.db import init_db
from src.foiacrawl.documents import count_documents
from src.foiacrawl.errors import ClaimError, ConfigError, CrawlFailedError
from src.foiacrawl.frontier import (
    clear_source,
    clear_source_all,
    get_all_crawl_states,
    get_all_request_stats,
    get_crawl_state,
    get_request_stats,
    requeue_fetching,
)
from src.foiacrawl.logging_setup import setup_logging

logger = logging.getLogger("foiacrawl")

def _fmt_ts(dt):
    return dt.strftime("%Y-%m-%d %H:%M:%S") if dt else "-"

async def cmd_crawl(args) -> int:
    user_agent = args.custom_ua if args.custom_ua else get_user_agent(args.user_agent)
    http_config = HttpConfig(
        user_agent=user_agent,
        timeout=args.timeout if args.timeout is not None else HttpConfig().timeout,
        max_concurrency=args.concurrency if args.concurrency is not None else HttpConfig().max_concurrency,
        delay_between_requests=args.delay if args.delay is not None else HttpConfig().delay_between_requests,
        max_retries=args.max_retries if args.max_retries is not None else HttpConfig().max_retries,
    )
    await init_db(args.db)

    for path in args.configs:
        cfg = load_crawler_config(path)
        # fingerprint the file as written; CLI overrides are not drift
        loaded_hash = config_hash(cfg)
        if args.max_depth is not None:
            cfg.max_depth = args.max_depth
        if args.js:
            cfg.use_browser = True

        if args.requeue_fetching:
            n = await requeue_fetching(cfg.source_id, db_path=args.db)
            if n and not args.quiet:
                print(f"Requeued {n} URL(s) left in fetching state for {cfg.source_id}")

        if args.verbose:
            print(f"Starting crawl of {cfg.source_id}:")
            print(f"  Base URL: {cfg.base_url}")
            print(f"  Max Depth: {cfg.max_depth}")
            print(f"  Document patterns: {', '.join(cfg.document_patterns) or '-'}")
            print(f"  User Agent: {http_config.user_agent}")
            print(f"  Concurrency: {http_config.max_concurrency}")
            print(f"  Delay: {http_config.delay_between_requests}s")
            print(f"  JavaScript Rendering: {cfg.use_browser}")
            print()

        report = await run_source(
            cfg,
            http_config,
            db_path=args.db,
            documents_dir=args.documents_dir,
            limit=args.limit or 0,
            discover=not args.no_discover,
            loaded_hash=loaded_hash,
        )
        if not args.quiet:
            d = report.downloads
            print(f"{cfg.source_id}: {d.new_documents} new, {d.new_versions} updated, "
                  f"{d.unchanged} unchanged, {d.not_modified} not modified, {d.failed} failed")
            if report.resumed or report.retried or report.refreshed:
                print(f"  resumed {report.resumed}, retried {report.retried}, refreshed {report.refreshed}")
            if report.discovery:
                disc = report.discovery
                print(f"  discovery: {disc.pages_crawled} pages, {disc.documents_found} documents"
                      f"{' (stopped early)' if disc.cancelled else ''}")
    return 0

def _print_state(state, stats, docs):
    print(f"{state.source_id}")
    print(f"  URLs: {state.urls_discovered} discovered, {state.urls_fetched} fetched, "
          f"{state.urls_pending} pending, {state.urls_failed} failed")
    print(f"  Documents: {docs}")
    print(f"  Started: {_fmt_ts(state.last_crawl_started)}  Completed: {_fmt_ts(state.last_crawl_completed)}")
    if state.has_pending_urls:
        print(f"  Pending work since {_fmt_ts(state.oldest_pending_url)}")
    elif state.urls_failed and not state.urls_fetched:
        print("  Only failed/exhausted URLs remain")
    if state.has_unexplored_branches:
        print("  Some branches look unexplored")
    if stats and stats.total_requests:
        print(f"  Requests: {stats.total_requests} total, {stats.success_200} OK, "
              f"{stats.not_modified_304} not modified, {stats.errors} errors, "
              f"{stats.conditional_requests} conditional, avg {stats.avg_duration_ms:.0f}ms, "
              f"{stats.total_bytes} bytes")

async def cmd_status(args) -> int:
    await init_db(args.db)
    if args.source:
        state = await get_crawl_state(args.source, db_path=args.db)
        stats = await get_request_stats(args.source, db_path=args.db)
        _print_state(state, stats, await count_documents(args.source, db_path=args.db))
        return 0
    states = await get_all_crawl_states(db_path=args.db)
    if not states:
        print("No sources crawled yet")
        return 0
    all_stats = await get_all_request_stats(db_path=args.db)
    for source_id, state in states.items():
        _print_state(state, all_stats.get(source_id), await count_documents(source_id, db_path=args.db))
    return 0

async def cmd_claim(args) -> int:
    await init_db(args.db)
    try:
        claimed = await claim_pending_urls(args.source, args.n, db_path=args.db)
    except ClaimError as e:
        print(f"Claim failed: {e}", file=sys.stderr)
        return 1
    for entry in claimed:
        print(f"{entry.depth}\t{entry.discovery_method.value}\t{entry.url}")
    if not args.quiet:
        print(f"Claimed {len(claimed)} URL(s)")
    return 0

async def cmd_clear(args) -> int:
    await init_db(args.db)
    if args.all:
        await clear_source_all(args.source, db_path=args.db)
    else:
        await clear_source(args.source, db_path=args.db)
    if not args.quiet:
        print(f"Cleared {'all' if args.all else 'unfinished'} crawl state for {args.source}")
    return 0

if __name__ == "__main__":
    p = argparse.ArgumentParser(
        description="FOIA document crawler with a persistent, multi-process frontier",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s crawl sources/agency.yaml
  %(prog)s crawl sources/agency.yaml --limit 50 --delay 1.0
  %(prog)s status agency
  %(prog)s claim agency -n 5
  %(prog)s clear agency --all
        """
    )

    # Storage
    p.add_argument("--db", default=None, help=f"SQLite database path (default: {get_db_path()})")
    p.add_argument("--documents-dir", default=None,
                   help=f"Directory for downloaded documents (default: {get_documents_dir()})")

    # Output and logging
    p.add_argument("--verbose", "-v", action="store_true", help="Enable verbose output")
    p.add_argument("--quiet", "-q", action="store_true", help="Suppress non-error output")
    p.add_argument("--log-file", default=None, help="Also write logs to this rotating file")
    p.add_argument("--json-logs", action="store_true", help="Emit logs as JSON lines")

    sub = p.add_subparsers(dest="command", required=True)

    c = sub.add_parser("crawl", help="Discover and download documents for one or more sources")
    c.add_argument("configs", nargs="+", help="Source configuration YAML file(s)")
    c.add_argument("--limit", type=int, default=None, help="Maximum downloads in this run (default: no limit)")
    c.add_argument("--max-depth", type=int, default=None, help="Override the source's maximum crawl depth")
    c.add_argument("--no-discover", action="store_true",
                   help="Only resume, retry and refresh known URLs; skip link discovery")
    c.add_argument("--requeue-fetching", action="store_true",
                   help="Return URLs left in fetching state by a crashed run to the queue")
    c.add_argument("--js", action="store_true", help="Render discovery pages with Playwright")
    c.add_argument("--user-agent", choices=["default", "chrome", "firefox", "safari", "random"],
                   default="default", help="User agent type to use (default: default)")
    c.add_argument("--custom-ua", type=str, help="Custom user agent string (overrides --user-agent)")
    c.add_argument("--timeout", type=int, default=None, help="Request timeout in seconds (default: 30)")
    c.add_argument("--concurrency", type=int, default=None, help="Number of download workers (default: 4)")
    c.add_argument("--delay", type=float, default=None, help="Delay between downloads per worker in seconds (default: 0.5)")
    c.add_argument("--max-retries", type=int, default=None, help="Failures before a URL is exhausted (default: 3)")
    c.set_defaults(func=cmd_crawl)

    s = sub.add_parser("status", help="Show crawl state and request statistics")
    s.add_argument("source", nargs="?", default=None, help="Source id (default: all sources)")
    s.set_defaults(func=cmd_status)

    cl = sub.add_parser("claim", help="Claim pending URLs (debugging aid; they stay in fetching state)")
    cl.add_argument("source", help="Source id")
    cl.add_argument("-n", type=int, default=1, help="Number of URLs to claim (default: 1)")
    cl.set_defaults(func=cmd_claim)

    x = sub.add_parser("clear", help="Clear crawl state for a source")
    x.add_argument("source", help="Source id")
    x.add_argument("--all", action="store_true", help="Also drop fetched history and the stored config hash")
    x.set_defaults(func=cmd_clear)

    args = p.parse_args()

    level = "DEBUG" if args.verbose else "ERROR" if args.quiet else "INFO"
    setup_logging(level, args.log_file, args.json_logs)

    db_path = args.db or get_db_path()
    args.db = db_path
    args.documents_dir = args.documents_dir or get_documents_dir()
    ensure_data_dirs(db_path, args.documents_dir)

    try:
        sys.exit(asyncio.run(args.func(args)))
    except (ConfigError, CrawlFailedError) as e:
        logger.error(str(e))
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    except KeyboardInterrupt:
        print("\nInterrupted. Claimed URLs stay in fetching state; rerun with --requeue-fetching.")
        sys.exit(130)
