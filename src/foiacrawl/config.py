from __future__ import annotations
import hashlib
import json
import os
import random
from dataclasses import dataclass, field, asdict
from typing import List, Optional

import yaml

from .errors import ConfigError

DATA_DIR = os.getenv("FOIACRAWL_DATA", os.path.abspath("./data"))

@dataclass
class HttpConfig:
    user_agent: str = os.getenv("FOIACRAWL_UA", "foiacrawl/0.3 (+https://github.com/foiacrawl/foiacrawl)")
    timeout: int = int(os.getenv("FOIACRAWL_TIMEOUT", "30"))
    max_concurrency: int = int(os.getenv("FOIACRAWL_CONCURRENCY", "4"))
    delay_between_requests: float = float(os.getenv("FOIACRAWL_DELAY", "0.5"))
    max_retries: int = int(os.getenv("FOIACRAWL_MAX_RETRIES", "3"))
    retry_delay: float = float(os.getenv("FOIACRAWL_RETRY_DELAY", "60"))
    retry_backoff_factor: float = float(os.getenv("FOIACRAWL_RETRY_BACKOFF", "2.0"))

@dataclass
class CrawlerConfig:
    """Discovery settings for one source."""
    source_id: str
    base_url: str
    start_paths: List[str] = field(default_factory=lambda: ["/"])
    search_url_template: Optional[str] = None
    search_queries: List[str] = field(default_factory=list)
    document_patterns: List[str] = field(default_factory=list)
    sitemap_urls: List[str] = field(default_factory=list)
    max_depth: int = int(os.getenv("FOIACRAWL_MAX_DEPTH", "10"))
    use_browser: bool = False
    refresh_ttl_days: int = int(os.getenv("FOIACRAWL_REFRESH_TTL_DAYS", "30"))

@dataclass
class CrawlStateConfig:
    # thresholds for the "unexplored branches" report flag
    unexplored_depth_ceiling: int = 10
    unexplored_methods: tuple = ("html_link", "pagination", "api_result")

def get_db_path() -> str:
    return os.getenv("FOIACRAWL_DB", os.path.join(DATA_DIR, "foiacrawl.db"))

def get_documents_dir() -> str:
    return os.getenv("FOIACRAWL_DOCUMENTS", os.path.join(DATA_DIR, "documents"))

def ensure_data_dirs(db_path: str, documents_dir: str) -> None:
    os.makedirs(os.path.dirname(os.path.abspath(db_path)), exist_ok=True)
    os.makedirs(documents_dir, exist_ok=True)

def load_crawler_config(path: str) -> CrawlerConfig:
    """Read a source's discovery settings from a YAML file."""
    if not os.path.exists(path):
        raise ConfigError(f"Configuration file not found: {path}")
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ConfigError(f"Configuration in {path} must be a mapping")

    for required in ("source_id", "base_url"):
        if not data.get(required):
            raise ConfigError(f"Configuration {path} is missing '{required}'")

    known = set(CrawlerConfig.__dataclass_fields__)
    unknown = sorted(set(data) - known)
    if unknown:
        raise ConfigError(f"Unknown keys in {path}: {', '.join(unknown)}")
    return CrawlerConfig(**data)

def config_hash(cfg) -> str:
    """Stable sha256 of a config dataclass, used to detect drift between runs."""
    payload = json.dumps(asdict(cfg), sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()

# User agent strings for different scenarios
USER_AGENTS = {
    "default": "foiacrawl/0.3 (+https://github.com/foiacrawl/foiacrawl)",
    "chrome": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "firefox": "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:121.0) Gecko/20100101 Firefox/121.0",
    "safari": "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.1 Safari/605.1.15",
}

def get_user_agent(ua_type: str = "default") -> str:
    """Get a user agent string by type or return a random one if 'random' is specified."""
    if ua_type == "random":
        return random.choice(list(USER_AGENTS.values()))
    return USER_AGENTS.get(ua_type, USER_AGENTS["default"])
