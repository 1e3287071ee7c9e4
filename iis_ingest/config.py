"""Configuration - YAML file plus environment overrides, loaded into frozen dataclasses."""

import codecs
import logging
import os
from dataclasses import dataclass, field
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml

from iis_ingest.classifier import STATIC_EXTENSIONS
from iis_ingest.models import STREAMS

logger = logging.getLogger(__name__)

MODES = ("once", "follow")


class ConfigError(ValueError):
    """Raised for missing or invalid settings."""


def _list_setting(d: dict, key: str):
    value = d.get(key)
    if value is not None and not isinstance(value, (list, tuple)):
        raise ConfigError(f"{key} must be a list, got {type(value).__name__}")
    return value


@dataclass(frozen=True)
class StoreConfig:
    dsn: str = ""
    pool_min_size: int = 1
    pool_max_size: int = 4
    timeout: float = 30.0
    init_schema: bool = False
    tables: dict[str, str] = field(default_factory=lambda: {s: s for s in STREAMS})

    @classmethod
    def from_dict(cls, d: dict) -> "StoreConfig":
        tables = {s: s for s in STREAMS}
        unknown = set(d.get("tables") or {}) - set(STREAMS)
        if unknown:
            raise ConfigError(f"store.tables: unknown stream(s) {sorted(unknown)}")
        tables.update(d.get("tables") or {})
        return cls(
            dsn=d.get("dsn", cls.dsn),
            pool_min_size=int(d.get("pool_min_size", cls.pool_min_size)),
            pool_max_size=int(d.get("pool_max_size", cls.pool_max_size)),
            timeout=float(d.get("timeout", cls.timeout)),
            init_schema=bool(d.get("init_schema", cls.init_schema)),
            tables=tables,
        )


@dataclass(frozen=True)
class WriterConfig:
    max_records: int = 500
    max_bytes: int = 1_048_576
    max_age: float = 5.0
    tick: float = 1.0
    max_pending_batches: int = 4
    max_attempts: int = 5
    retry_backoff: float = 0.5
    retry_backoff_max: float = 10.0
    dead_letter_dir: str = "data/dead_letter"

    @classmethod
    def from_dict(cls, d: dict) -> "WriterConfig":
        return cls(
            max_records=int(d.get("max_records", cls.max_records)),
            max_bytes=int(d.get("max_bytes", cls.max_bytes)),
            max_age=float(d.get("max_age", cls.max_age)),
            tick=float(d.get("tick", cls.tick)),
            max_pending_batches=int(d.get("max_pending_batches", cls.max_pending_batches)),
            max_attempts=int(d.get("max_attempts", cls.max_attempts)),
            retry_backoff=float(d.get("retry_backoff", cls.retry_backoff)),
            retry_backoff_max=float(d.get("retry_backoff_max", cls.retry_backoff_max)),
            dead_letter_dir=d.get("dead_letter_dir", cls.dead_letter_dir),
        )


@dataclass(frozen=True)
class Config:
    sources: tuple[str, ...] = ()
    mode: str = "follow"
    encoding: str = "utf-8"
    source_timezone: str = "UTC"
    static_extensions: frozenset[str] = STATIC_EXTENSIONS
    registry_file: str = "data/registry.json"
    checkpoint_interval: float = 10.0
    poll_interval: float = 1.0
    metrics_file: str = "data/metrics.json"
    store: StoreConfig = field(default_factory=StoreConfig)
    writer: WriterConfig = field(default_factory=WriterConfig)

    @classmethod
    def from_dict(cls, d: dict) -> "Config":
        extensions = _list_setting(d, "static_extensions")
        return cls(
            sources=tuple(_list_setting(d, "sources") or ()),
            mode=d.get("mode", cls.mode),
            encoding=d.get("encoding", cls.encoding),
            source_timezone=d.get("source_timezone", cls.source_timezone),
            static_extensions=(
                frozenset(e.lstrip(".") for e in extensions)
                if extensions is not None else STATIC_EXTENSIONS
            ),
            registry_file=d.get("registry_file", cls.registry_file),
            checkpoint_interval=float(d.get("checkpoint_interval", cls.checkpoint_interval)),
            poll_interval=float(d.get("poll_interval", cls.poll_interval)),
            metrics_file=d.get("metrics_file", cls.metrics_file),
            store=StoreConfig.from_dict(d.get("store") or {}),
            writer=WriterConfig.from_dict(d.get("writer") or {}),
        )

    @property
    def tzinfo(self) -> ZoneInfo:
        return ZoneInfo(self.source_timezone)


def load_yaml(path: str | None) -> dict:
    """Load the YAML config file. Returns an empty dict when no path is given."""
    if not path:
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError as exc:
        raise ConfigError(f"config file not found: {path}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"invalid YAML in {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"{path}: top level must be a mapping")
    logger.info("Loaded config from %s", path)
    return data


def _apply_env(data: dict, env) -> dict:
    data = dict(data)
    if env.get("IIS_INGEST_DSN"):
        data["store"] = {**(data.get("store") or {}), "dsn": env["IIS_INGEST_DSN"]}
    if env.get("IIS_INGEST_MODE"):
        data["mode"] = env["IIS_INGEST_MODE"]
    return data


def validate(cfg: Config) -> Config:
    if not cfg.sources:
        raise ConfigError("at least one source is required")
    if cfg.mode not in MODES:
        raise ConfigError(f"mode must be one of {MODES}, got {cfg.mode!r}")
    if not cfg.store.dsn:
        raise ConfigError("store.dsn is required (or set IIS_INGEST_DSN)")
    try:
        cfg.tzinfo
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ConfigError(f"unknown source_timezone {cfg.source_timezone!r}") from exc
    try:
        codecs.lookup(cfg.encoding)
    except LookupError as exc:
        raise ConfigError(f"unknown encoding {cfg.encoding!r}") from exc
    w = cfg.writer
    if w.max_records < 1 or w.max_bytes < 1 or w.max_pending_batches < 1 or w.max_attempts < 1:
        raise ConfigError("writer limits must be positive")
    if w.max_age <= 0 or w.tick <= 0:
        raise ConfigError("writer.max_age and writer.tick must be positive")
    if cfg.checkpoint_interval <= 0 or cfg.poll_interval <= 0:
        raise ConfigError("checkpoint_interval and poll_interval must be positive")
    return cfg


def load_config(path: str | None = None, env=None, overrides: dict | None = None) -> Config:
    """Build a validated Config from the YAML file, environment and CLI overrides."""
    env = os.environ if env is None else env
    data = _apply_env(load_yaml(path or env.get("CONFIG_PATH")), env)
    data.update({k: v for k, v in (overrides or {}).items() if v is not None})
    try:
        cfg = Config.from_dict(data)
    except ConfigError:
        raise
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"invalid setting: {exc}") from exc
    return validate(cfg)
