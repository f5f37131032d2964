from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import yaml

from isbn_enricher.core.similarity import DEFAULT_SIMILARITY_THRESHOLD
from isbn_enricher.errors import UnknownProviderError
from isbn_enricher.gateway.quota import DEFAULT_HARD_RATIO, DEFAULT_SOFT_RATIO, ISBNDB_DAILY_QUOTA
from isbn_enricher.resolvers.registry import (
    DEFAULT_ENRICHMENT_PROVIDERS,
    DEFAULT_RESOLVER_ORDER,
    PRIMARY_PROVIDER,
    parse_provider_list,
    split_provider_list,
)

logger = logging.getLogger(__name__)


def _strip_inline_comment(val: str) -> str:
    in_single = False
    in_double = False
    for i, ch in enumerate(val):
        if ch == "'" and not in_double:
            in_single = not in_single
            continue
        if ch == '"' and not in_single:
            in_double = not in_double
            continue
        if ch == "#" and not in_single and not in_double:
            return val[:i].rstrip()
    return val.rstrip()


def _parse_env_file(path: Path) -> None:
    try:
        lines = path.read_text(encoding="utf-8").splitlines()
    except OSError as e:
        logger.warning("could not read env file | path=%s | err=%s", path, e)
        return
    for line in lines:
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        if line.startswith("export "):
            line = line[len("export ") :].lstrip()
        k, v = line.split("=", 1)
        k = k.strip()
        v = _strip_inline_comment(v.strip())
        if len(v) >= 2 and v[0] == v[-1] and v[0] in ("'", '"'):
            v = v[1:-1]
        if k and k not in os.environ:
            os.environ[k] = v


def load_dotenv(path: str = ".env") -> Optional[str]:
    """
    Loads environment variables from a .env file. Existing variables win.

    Search order:
    1) ENV_PATH (if set)
    2) explicit `path` as provided (relative to CWD or absolute)
    3) project root (parent of the isbn_enricher package directory)
    4) current working directory

    Returns the resolved .env path used, or None if not found.
    """
    override = os.getenv("ENV_PATH")
    candidates: List[Path] = []
    if override:
        candidates.append(Path(override).expanduser())

    p = Path(path).expanduser()
    candidates.append(p if p.is_absolute() else (Path.cwd() / p))

    project_root = Path(__file__).resolve().parent.parent
    candidates.append(project_root / ".env")

    candidates.append(Path.cwd() / ".env")

    seen = set()
    for c in candidates:
        c = c.resolve()
        if str(c) in seen:
            continue
        seen.add(str(c))
        if c.exists() and c.is_file():
            _parse_env_file(c)
            return str(c)

    return None


def _env_str(name: str, default: str = "") -> str:
    return (os.getenv(name) or default).strip()


def _env_int(name: str, default: int) -> int:
    raw = _env_str(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise SystemExit(f"{name} must be an integer (got {raw!r}).") from e


def _env_float(name: str, default: float) -> float:
    raw = _env_str(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise SystemExit(f"{name} must be a number (got {raw!r}).") from e


def _env_providers(name: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
    try:
        return split_provider_list(_env_str(name), default)
    except UnknownProviderError as e:
        raise SystemExit(f"{name}: {e}") from e


@dataclass
class AppConfig:
    isbndb_api_key: str = ""
    google_books_api_key: Optional[str] = None
    db_path: str = "isbn_enricher.sqlite3"
    redis_url: Optional[str] = None

    isbndb_daily_quota: int = ISBNDB_DAILY_QUOTA
    quota_soft_ratio: float = DEFAULT_SOFT_RATIO
    quota_hard_ratio: float = DEFAULT_HARD_RATIO

    resolver_timeout_s: float = 15.0
    similarity_threshold: float = DEFAULT_SIMILARITY_THRESHOLD
    resolver_order: Tuple[str, ...] = DEFAULT_RESOLVER_ORDER
    enrichment_providers: Tuple[str, ...] = DEFAULT_ENRICHMENT_PROVIDERS
    provider_delays: Dict[str, float] = field(default_factory=dict)

    queue_batch_size: int = 10
    queue_lease_s: float = 300.0
    queue_max_retries: int = 3
    retry_base_s: float = 30.0
    retry_max_s: float = 3600.0

    synthetic_batch_size: int = 500
    synthetic_cooldown_days: float = 7.0

    http_timeout_s: float = 15.0
    http_retries: int = 2

    @classmethod
    def from_env(cls) -> "AppConfig":
        return cls(
            isbndb_api_key=_env_str("ISBNDB_API_KEY"),
            google_books_api_key=_env_str("GOOGLE_BOOKS_API_KEY") or None,
            db_path=_env_str("ENRICHER_DB_PATH", "isbn_enricher.sqlite3"),
            redis_url=_env_str("REDIS_URL") or None,
            isbndb_daily_quota=_env_int("ISBNDB_DAILY_QUOTA", ISBNDB_DAILY_QUOTA),
            quota_soft_ratio=_env_float("QUOTA_SOFT_RATIO", DEFAULT_SOFT_RATIO),
            quota_hard_ratio=_env_float("QUOTA_HARD_RATIO", DEFAULT_HARD_RATIO),
            resolver_timeout_s=_env_float("RESOLVER_TIMEOUT_S", 15.0),
            similarity_threshold=_env_float("SIMILARITY_THRESHOLD", DEFAULT_SIMILARITY_THRESHOLD),
            resolver_order=_env_providers("RESOLVER_ORDER", DEFAULT_RESOLVER_ORDER),
            enrichment_providers=_env_providers("ENRICHMENT_PROVIDERS", DEFAULT_ENRICHMENT_PROVIDERS),
            queue_batch_size=_env_int("QUEUE_BATCH_SIZE", 10),
            queue_lease_s=_env_float("QUEUE_LEASE_S", 300.0),
            queue_max_retries=_env_int("QUEUE_MAX_RETRIES", 3),
            retry_base_s=_env_float("RETRY_BASE_S", 30.0),
            retry_max_s=_env_float("RETRY_MAX_S", 3600.0),
            synthetic_batch_size=_env_int("SYNTHETIC_BATCH_SIZE", 500),
            synthetic_cooldown_days=_env_float("SYNTHETIC_COOLDOWN_DAYS", 7.0),
            http_timeout_s=_env_float("HTTP_TIMEOUT_S", 15.0),
            http_retries=_env_int("HTTP_RETRIES", 2),
        )

    def apply_settings(self, path: str) -> None:
        """Overlay resolver order, enrichment providers and provider delays from a YAML file."""
        p = Path(path)
        try:
            data = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
        except FileNotFoundError as e:
            raise SystemExit(f"Settings file not found: {p}") from e
        except (OSError, yaml.YAMLError) as e:
            raise SystemExit(f"Failed to read settings file: {p} ({e})") from e
        if not isinstance(data, dict):
            raise SystemExit(f"Settings file must hold a mapping: {p}")
        logger.info("Loaded settings file: %s", p)

        try:
            if isinstance(data.get("resolver_order"), list):
                self.resolver_order = parse_provider_list(data["resolver_order"])
            if isinstance(data.get("enrichment_providers"), list):
                self.enrichment_providers = parse_provider_list(data["enrichment_providers"])
        except UnknownProviderError as e:
            raise SystemExit(f"{p}: {e}") from e

        delays = data.get("provider_delays") or {}
        if not isinstance(delays, dict):
            raise SystemExit(f"{p}: provider_delays must be a mapping")
        for name, val in delays.items():
            try:
                self.provider_delays[str(name)] = float(val)
            except (TypeError, ValueError) as e:
                raise SystemExit(f"{p}: delay for {name!r} must be a number") from e

    def validate(self) -> None:
        if self.isbndb_daily_quota <= 0:
            raise SystemExit("ISBNDB_DAILY_QUOTA must be positive.")
        if not (0.0 < self.quota_soft_ratio < self.quota_hard_ratio <= 1.0):
            raise SystemExit("Quota ratios must satisfy 0 < QUOTA_SOFT_RATIO < QUOTA_HARD_RATIO <= 1.")
        if not (0.0 < self.similarity_threshold <= 1.0):
            raise SystemExit("SIMILARITY_THRESHOLD must be in (0, 1].")
        if self.resolver_timeout_s <= 0 or self.http_timeout_s <= 0:
            raise SystemExit("Timeouts must be positive.")
        if self.queue_batch_size <= 0 or self.queue_lease_s <= 0:
            raise SystemExit("QUEUE_BATCH_SIZE and QUEUE_LEASE_S must be positive.")
        if self.queue_max_retries < 0 or self.http_retries < 0:
            raise SystemExit("Retry counts cannot be negative.")
        if PRIMARY_PROVIDER in self.resolver_order:
            raise SystemExit("RESOLVER_ORDER lists fallback providers only; isbndb is always tried first.")
        if not self.enrichment_providers:
            raise SystemExit("ENRICHMENT_PROVIDERS cannot be empty.")
        for name, val in self.provider_delays.items():
            if val < 0:
                raise SystemExit(f"Delay for {name!r} cannot be negative.")

    @property
    def primary_enabled(self) -> bool:
        return bool(self.isbndb_api_key.strip())
