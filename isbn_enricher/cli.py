# isbn_enricher/cli.py
from __future__ import annotations

import argparse
import json
import logging
import time
from dataclasses import asdict, dataclass
from typing import Dict, List, Optional

from rich.logging import RichHandler

from isbn_enricher.config import AppConfig, load_dotenv
from isbn_enricher.core.models import EnrichmentTask, normalize_priority
from isbn_enricher.core.resolver_stats import ResolverStats
from isbn_enricher.core.stats_tracker import StatsTracker
from isbn_enricher.core.store import RecordStore
from isbn_enricher.enrich.consumer import EnrichmentConsumer
from isbn_enricher.enrich.lookup import MetadataLookup, PrimaryGateway, ResolutionPath
from isbn_enricher.enrich.queue import EnrichmentQueue
from isbn_enricher.enrich.synthetic import SyntheticEnhancer
from isbn_enricher.errors import EnricherError, QueueError, UnknownProviderError
from isbn_enricher.gateway.circuit import CircuitBreaker
from isbn_enricher.gateway.quota import QuotaGate, QuotaTracker
from isbn_enricher.gateway.rate_limiter import RateLimiter
from isbn_enricher.integrations.kv_store import KVStore, make_kv_store
from isbn_enricher.io.utils import write_ndjson
from isbn_enricher.resolvers.base import Resolver
from isbn_enricher.resolvers.isbndb import ISBNdbResolver
from isbn_enricher.resolvers.orchestrator import ResolutionOrchestrator
from isbn_enricher.resolvers.registry import (
    PRIMARY_PROVIDER,
    ProviderContext,
    build_resolver,
    split_provider_list,
)


LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}

logger = logging.getLogger(__name__)


@dataclass
class Services:
    config: AppConfig
    kv: KVStore
    gate: QuotaGate
    primary: Optional[PrimaryGateway]
    fallbacks: Dict[str, Resolver]
    orchestrator: ResolutionOrchestrator
    path: ResolutionPath
    store: RecordStore
    queue: EnrichmentQueue
    resolver_stats: ResolverStats

    def close(self) -> None:
        self.orchestrator.close()
        self.queue.close()
        self.store.close()


def build_services(cfg: AppConfig, kv: Optional[KVStore] = None) -> Services:
    kv = kv if kv is not None else make_kv_store(cfg.redis_url)
    limiter = RateLimiter(kv, cfg.provider_delays)
    tracker = QuotaTracker(kv, PRIMARY_PROVIDER, cfg.isbndb_daily_quota)
    gate = QuotaGate(tracker, soft_ratio=cfg.quota_soft_ratio, hard_ratio=cfg.quota_hard_ratio)
    ctx = ProviderContext(
        rate_limiter=limiter,
        quota=gate,
        isbndb_api_key=cfg.isbndb_api_key,
        google_books_api_key=cfg.google_books_api_key,
        threshold=cfg.similarity_threshold,
        timeout_s=cfg.http_timeout_s,
        retries=cfg.http_retries,
    )

    client: Optional[ISBNdbResolver] = None
    if cfg.primary_enabled:
        client = build_resolver(PRIMARY_PROVIDER, ctx)
    else:
        logger.warning("ISBNDB_API_KEY not set | primary provider disabled, fallback chain only")
    primary = PrimaryGateway(gate, client) if client is not None else None

    fallbacks: Dict[str, Resolver] = {}
    for name in list(cfg.resolver_order) + list(cfg.enrichment_providers):
        if name == PRIMARY_PROVIDER or name in fallbacks:
            continue
        fallbacks[name] = build_resolver(name, ctx)

    resolver_stats = ResolverStats()
    chain = [fallbacks[name] for name in cfg.resolver_order]
    breakers = {r.name: CircuitBreaker(kv, r.name) for r in chain}
    orchestrator = ResolutionOrchestrator(
        chain,
        timeout_s=cfg.resolver_timeout_s,
        breakers=breakers,
        stats=resolver_stats,
    )
    return Services(
        config=cfg,
        kv=kv,
        gate=gate,
        primary=primary,
        fallbacks=fallbacks,
        orchestrator=orchestrator,
        path=ResolutionPath(primary, orchestrator),
        store=RecordStore(cfg.db_path),
        queue=EnrichmentQueue(cfg.db_path, retry_base_s=cfg.retry_base_s, retry_max_s=cfg.retry_max_s),
        resolver_stats=resolver_stats,
    )


def _emit(payload) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True, default=str))


def _result_dict(result) -> Optional[dict]:
    if result is None:
        return None
    out = asdict(result)
    out.pop("metadata", None)
    return out


# --- subcommands ---


def cmd_resolve(svc: Services, args: argparse.Namespace) -> int:
    result, primary_called = svc.path.resolve(args.title, args.author, args.priority)
    _emit({"result": _result_dict(result), "primary_called": primary_called})
    return 0 if result is not None else 1


def cmd_lookup(svc: Services, args: argparse.Namespace) -> int:
    lookup = MetadataLookup(
        svc.path,
        svc.store,
        svc.queue,
        providers=svc.config.enrichment_providers,
        max_retries=svc.config.queue_max_retries,
    )
    outcome = lookup.lookup(args.title, args.author, args.priority)
    _emit(
        {
            "status": outcome.status,
            "result": _result_dict(outcome.result),
            "edition": asdict(outcome.edition) if outcome.edition else None,
            "task_id": outcome.task_id,
        }
    )
    return 0 if outcome.status != "not_found" else 1


def cmd_enqueue(svc: Services, args: argparse.Namespace) -> int:
    try:
        providers = split_provider_list(args.providers, svc.config.enrichment_providers)
    except UnknownProviderError as e:
        raise SystemExit(str(e)) from e
    task = EnrichmentTask(
        entity_type=args.entity_type,
        entity_key=args.entity_key,
        providers_to_try=providers,
        priority=normalize_priority(args.priority),
        max_retries=args.max_retries if args.max_retries is not None else svc.config.queue_max_retries,
        source="cli",
    )
    task_id = svc.queue.enqueue(task, delay_s=args.delay)
    logger.info("enqueued | task_id=%s | entity=%s:%s", task_id, task.entity_type, task.entity_key)
    _emit({"task_id": task_id, "task": task.as_message()})
    return 0


def cmd_consume(svc: Services, args: argparse.Namespace) -> int:
    stats = StatsTracker()
    consumer = EnrichmentConsumer(
        svc.queue,
        svc.store,
        primary=svc.primary,
        fallbacks=svc.fallbacks,
        path=svc.path,
        kv=svc.kv,
        stats=stats,
        batch_size=args.batch_size or svc.config.queue_batch_size,
        lease_s=svc.config.queue_lease_s,
    )
    batches = 0
    try:
        while True:
            report = consumer.run_once()
            if report.leased:
                batches += 1
            if args.once or (args.max_batches and batches >= args.max_batches):
                break
            if not report.leased:
                time.sleep(args.idle_sleep)
    except KeyboardInterrupt:
        logger.warning("consume interrupted | batches=%s", batches)

    _emit(
        {
            "batches": batches,
            "stats": stats.snapshot_dict(),
            "rates": stats.snapshot_rates(),
            "resolvers": svc.resolver_stats.summary(),
        }
    )
    return 0


def cmd_enhance(svc: Services, args: argparse.Namespace) -> int:
    enhancer = SyntheticEnhancer(
        svc.store,
        svc.queue,
        svc.path,
        providers=svc.config.enrichment_providers,
        max_retries=svc.config.queue_max_retries,
        cooldown_days=svc.config.synthetic_cooldown_days,
    )
    stats = enhancer.enhance_batch(args.limit or svc.config.synthetic_batch_size)
    _emit(stats.as_dict())
    return 0


def cmd_quota(svc: Services, args: argparse.Namespace) -> int:
    status = svc.gate.can_call_primary(args.priority)
    _emit(asdict(status))
    return 0


def cmd_reap(svc: Services, args: argparse.Namespace) -> int:
    n = svc.queue.reap_expired()
    _emit({"reaped": n, "counts": svc.queue.counts()})
    return 0


def cmd_dead_letters(svc: Services, args: argparse.Namespace) -> int:
    rows = svc.queue.dead_letters(args.limit)
    if args.out:
        n = write_ndjson(rows, args.out)
        logger.info("dead letters exported | rows=%s | path=%s", n, args.out)
        return 0
    _emit(rows)
    return 0


def cmd_chain(svc: Services, args: argparse.Namespace) -> int:
    chain: List[dict] = []
    if svc.primary is not None:
        chain.append({"name": PRIMARY_PROVIDER, "order": 0, "quota": asdict(svc.gate.can_call_primary("normal"))})
    chain.extend(svc.orchestrator.resolver_chain())
    _emit({"chain": chain, "enrichment_providers": list(svc.config.enrichment_providers)})
    return 0


COMMANDS = {
    "resolve": cmd_resolve,
    "lookup": cmd_lookup,
    "enqueue": cmd_enqueue,
    "consume": cmd_consume,
    "enhance": cmd_enhance,
    "quota": cmd_quota,
    "reap": cmd_reap,
    "dead-letters": cmd_dead_letters,
    "chain": cmd_chain,
}


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="isbn-enricher",
        description="Title/author -> ISBN resolution and multi-provider metadata enrichment",
    )
    ap.add_argument("--env", default=".env", help="Path to a .env file (ENV_PATH wins if set)")
    ap.add_argument("--settings", default=None, help="YAML overrides for resolver order, providers and delays")
    ap.add_argument("--log-level", default="info", help="Log level: debug, info, warning, error")
    sub = ap.add_subparsers(dest="command", required=True)

    p = sub.add_parser("resolve", help="Resolve title + author to an ISBN (primary, then fallback chain)")
    p.add_argument("title")
    p.add_argument("author")
    p.add_argument("--priority", default="normal", help="urgent, high, medium, normal, low, background or 1-10")

    p = sub.add_parser("lookup", help="Search-miss lookup: resolve, return stored edition or queue enrichment")
    p.add_argument("title")
    p.add_argument("author")
    p.add_argument("--priority", default="high")

    p = sub.add_parser("enqueue", help="Queue an enrichment task")
    p.add_argument("entity_type", choices=("edition", "work", "author"))
    p.add_argument("entity_key", help="ISBN, work key or author key")
    p.add_argument("--providers", default=None, help="Comma list, tried in order (default: ENRICHMENT_PROVIDERS)")
    p.add_argument("--priority", default="normal")
    p.add_argument("--max-retries", type=int, default=None)
    p.add_argument("--delay", type=float, default=0.0, help="Seconds before the task becomes visible")

    p = sub.add_parser("consume", help="Lease and process enrichment tasks")
    p.add_argument("--once", action="store_true", help="Process a single batch and exit")
    p.add_argument("--max-batches", type=int, default=0, help="Stop after N non-empty batches (0 = run forever)")
    p.add_argument("--batch-size", type=int, default=0, help="Tasks per lease (default: QUEUE_BATCH_SIZE)")
    p.add_argument("--idle-sleep", type=float, default=5.0, help="Seconds to wait when the queue is empty")

    p = sub.add_parser("enhance", help="Upgrade synthetic works to real editions")
    p.add_argument("--limit", type=int, default=0, help="Max works per run (default: SYNTHETIC_BATCH_SIZE)")

    p = sub.add_parser("quota", help="Show today's primary quota status")
    p.add_argument("--priority", default="normal")

    sub.add_parser("reap", help="Return expired leases to the queue")

    p = sub.add_parser("dead-letters", help="List or export dead-lettered tasks")
    p.add_argument("--limit", type=int, default=100)
    p.add_argument("--out", default=None, help="Write NDJSON here instead of printing")

    sub.add_parser("chain", help="Show the configured resolver chain and circuit states")
    return ap


def main(argv: Optional[List[str]] = None) -> int:
    ap = build_parser()
    args = ap.parse_args(argv)

    level = LOG_LEVELS.get(args.log_level.lower(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
    )

    used = load_dotenv(args.env)
    if used:
        logger.info("loaded .env: %s", used)
    else:
        logger.debug(".env not found via search paths; relying on existing environment variables")

    cfg = AppConfig.from_env()
    if args.settings:
        cfg.apply_settings(args.settings)
    cfg.validate()

    svc = build_services(cfg)
    try:
        return COMMANDS[args.command](svc, args)
    except QueueError as e:
        raise SystemExit(f"queue error: {e}") from e
    except EnricherError as e:
        logger.error("%s failed | err=%s", args.command, e)
        return 1
    finally:
        svc.close()


if __name__ == "__main__":
    raise SystemExit(main())
