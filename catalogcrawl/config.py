"""
Runtime configuration for catalogcrawl.

All knobs live on a single frozen ``Config`` dataclass. Values come from the
dataclass defaults, then an optional JSON config file, then environment
variables for secrets, then explicit overrides (normally CLI flags).
"""

from __future__ import annotations

import json
import logging
import os
import sys
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Optional

from .errors import ConfigError


ENV_PREFIX = "CATALOGCRAWL_"


@dataclass(frozen=True)
class Config:
    """Main application configuration."""
    data_dir: str = "data"

    # --- Source ---
    base_url: str = "https://wtr-lab.com"
    list_url_template: str = "{base_url}/en/novel-list?orderBy=reader&page={page}"
    item_url_template: str = "{url}/chapter-{index}?default=true"
    user_agent: str = (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/124.0 Safari/537.36"
    )
    timeout_sec: float = 10.0

    # --- Retry ---
    retry_count: int = 3                # Attempts per fetch, including the first
    retry_delay: float = 1.0            # Backoff base in seconds

    # --- Batching ---
    list_concurrency: int = 100         # List pages per batch
    chunk_delay: float = 2.0            # Pause between batches
    max_list_pages: int = 10_000
    empty_page_limit: int = 100         # Stop listing after this many empty pages in a row

    # --- Adaptive throttle ---
    min_concurrency: int = 2            # Floor for item batches
    max_concurrency: int = 15           # Hard cap for the session ceiling
    per_request_memory_mb: int = 100    # Assumed memory per in-flight request
    cpu_high_water: float = 80.0
    memory_high_water: float = 80.0
    low_water: float = 50.0
    shrink_ratio: float = 0.7
    monitor_interval: float = 30.0
    monitor_window: float = 3600.0

    # --- Cycle driver ---
    cycle_period: float = 6 * 60 * 60.0
    stage_cooldown: float = 5.0
    lock_stale_after: float = 60 * 60.0
    shutdown_grace: float = 10.0

    # --- Stats ---
    stats_keep: int = 10

    # --- Notifications ---
    notify_enabled: bool = False
    telegram_token: Optional[str] = None
    telegram_chat_id: Optional[str] = None

    # --- Output ---
    show_progress: bool = True
    log_level: str = "INFO"
    log_file: Optional[str] = None

    @property
    def detail_concurrency(self) -> int:
        """Detail pages run at a fifth of the list concurrency."""
        return max(1, self.list_concurrency // 5)

    @property
    def throttle_cooldown(self) -> float:
        """Extra pause inserted when the throttle shrinks concurrency."""
        return self.chunk_delay * 2

    @property
    def data_path(self) -> Path:
        return Path(self.data_dir)

    def list_page_url(self, page: int) -> str:
        return self.list_url_template.format(base_url=self.base_url.rstrip("/"), page=page)

    def item_url(self, target_url: str, index: int) -> str:
        return self.item_url_template.format(url=target_url.rstrip("/"), index=index)


def _coerce(name: str, raw: Any, default: Any) -> Any:
    """Coerce a JSON/env value to the type of the field default."""
    if raw is None:
        return None
    try:
        if isinstance(default, bool):
            if isinstance(raw, str):
                return raw.strip().lower() in ("1", "true", "yes", "on")
            return bool(raw)
        if isinstance(default, int):
            return int(raw)
        if isinstance(default, float):
            return float(raw)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid value for '{name}': {raw!r}") from e
    return str(raw) if not isinstance(raw, str) else raw


def _apply(cfg: Config, values: dict[str, Any]) -> Config:
    known = {f.name: f for f in fields(Config)}
    unknown = sorted(set(values) - set(known))
    if unknown:
        raise ConfigError(f"Unknown config keys: {', '.join(unknown)}")
    coerced = {
        name: _coerce(name, value, getattr(cfg, name))
        for name, value in values.items()
    }
    return replace(cfg, **coerced)


def load_config(path: Optional[str] = None, **overrides: Any) -> Config:
    """
    Build a Config from defaults, a JSON file, the environment and overrides.

    Args:
        path: Optional JSON config file with a flat object of field names
        **overrides: Field values that win over everything else; ``None``
            values are ignored so unset CLI flags do not clobber the file

    Returns:
        The resolved Config

    Raises:
        ConfigError: If the file cannot be read or contains unknown keys
    """
    cfg = Config()

    if path:
        cfg_path = Path(path)
        try:
            with cfg_path.open("r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigError(f"Cannot read config file {cfg_path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"Config file {cfg_path} must contain a JSON object")
        cfg = _apply(cfg, data)

    env_values = {}
    for name in ("telegram_token", "telegram_chat_id", "data_dir"):
        value = os.environ.get(ENV_PREFIX + name.upper())
        if value:
            env_values[name] = value
    if env_values:
        cfg = _apply(cfg, env_values)

    explicit = {k: v for k, v in overrides.items() if v is not None}
    if explicit:
        cfg = _apply(cfg, explicit)

    if cfg.min_concurrency < 1:
        raise ConfigError("min_concurrency must be >= 1")
    if cfg.max_concurrency < cfg.min_concurrency:
        raise ConfigError("max_concurrency must be >= min_concurrency")
    if cfg.retry_count < 1:
        raise ConfigError("retry_count must be >= 1")
    if not cfg.low_water < min(cfg.cpu_high_water, cfg.memory_high_water):
        raise ConfigError("low_water must be below both high-water marks")

    return cfg


def configure_logging(level: str = "INFO", log_file: Optional[str] = None) -> None:
    """Console logging plus an optional file handler."""
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))

    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
        handlers=handlers,
        force=True,
    )
