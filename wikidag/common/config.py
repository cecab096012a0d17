"""
Configuration loading for the build pipeline.

Settings live in `config.yaml` and are parsed into frozen dataclasses.
Every validation failure raises ConfigurationError before any phase
touches the result store.
"""

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union

import yaml

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

CONFIG_PATH = "config.yaml"

ARTICLE_NAMESPACE = 0
CATEGORY_NAMESPACE = 14

NodeRef = Union[int, str]


def load_config(path: str = CONFIG_PATH) -> Dict[str, Any]:
    """Load configuration from YAML file."""
    if not os.path.exists(path):
        raise ConfigurationError(f"Configuration file not found at {path}")
    with open(path, "r", encoding="utf-8") as f:
        try:
            config = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise ConfigurationError(f"Invalid YAML in {path}: {exc}") from exc
    if not isinstance(config, dict):
        raise ConfigurationError(f"Configuration root in {path} must be a mapping")
    return config


def _positive_int(value: Any, name: str) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"{name} must be an integer, got {value!r}") from exc
    if number <= 0:
        raise ConfigurationError(f"{name} must be positive, got {number}")
    return number


def _positive_float(value: Any, name: str) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"{name} must be a number, got {value!r}") from exc
    if number <= 0:
        raise ConfigurationError(f"{name} must be positive, got {number}")
    return number


@dataclass(frozen=True)
class RetrySettings:
    """Bounded retry policy for a single unit of work.

    `max_retries` counts retries after the first attempt.
    """

    max_retries: int = 3
    base_delay: float = 0.5
    max_delay: float = 8.0

    def __post_init__(self):
        _positive_int(self.max_retries, "retries.max_retries")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ConfigurationError("retries delays must not be negative")

    @classmethod
    def from_config(cls, cfg: Dict[str, Any]) -> "RetrySettings":
        return cls(
            max_retries=int(cfg.get("max_retries", 3)),
            base_delay=float(cfg.get("base_delay", 0.5)),
            max_delay=float(cfg.get("max_delay", 8.0)),
        )


@dataclass(frozen=True)
class BatchSettings:
    """Bounds for the adaptive batch width of the DAG builder."""

    initial: int = 50_000
    minimum: int = 10_000
    maximum: int = 500_000
    target_rows_per_sec: float = 100_000.0

    def __post_init__(self):
        _positive_int(self.initial, "dag.batch.initial")
        _positive_int(self.minimum, "dag.batch.min")
        _positive_int(self.maximum, "dag.batch.max")
        _positive_float(self.target_rows_per_sec, "dag.target_rows_per_sec")
        if self.minimum > self.maximum:
            raise ConfigurationError(
                f"dag.batch.min ({self.minimum}) exceeds dag.batch.max ({self.maximum})"
            )


@dataclass(frozen=True)
class DagSettings:
    seeds: Tuple[NodeRef, ...] = ()
    max_level: int = 12
    batch: BatchSettings = field(default_factory=BatchSettings)
    allowed_namespaces: Tuple[int, ...] = (ARTICLE_NAMESPACE, CATEGORY_NAMESPACE)
    content_model: Optional[str] = "wikitext"
    cycle_hop_limit: int = 10

    def __post_init__(self):
        if self.max_level < 1:
            raise ConfigurationError(f"dag.max_level must be at least 1, got {self.max_level}")
        if self.cycle_hop_limit < 0:
            raise ConfigurationError("dag.cycle_hop_limit must not be negative")
        if not self.allowed_namespaces:
            raise ConfigurationError("dag.allowed_namespaces must not be empty")

    @classmethod
    def from_config(cls, cfg: Dict[str, Any]) -> "DagSettings":
        batch_cfg = cfg.get("batch", {}) or {}
        batch = BatchSettings(
            initial=int(batch_cfg.get("initial", 50_000)),
            minimum=int(batch_cfg.get("min", 10_000)),
            maximum=int(batch_cfg.get("max", 500_000)),
            target_rows_per_sec=float(cfg.get("target_rows_per_sec", 100_000)),
        )
        seeds: List[NodeRef] = []
        for seed in cfg.get("seeds", []) or []:
            seeds.append(seed if isinstance(seed, int) else str(seed))
        namespaces = cfg.get("allowed_namespaces", [ARTICLE_NAMESPACE, CATEGORY_NAMESPACE])
        return cls(
            seeds=tuple(seeds),
            max_level=int(cfg.get("max_level", 12)),
            batch=batch,
            allowed_namespaces=tuple(int(ns) for ns in namespaces),
            content_model=cfg.get("content_model", "wikitext"),
            cycle_hop_limit=int(cfg.get("cycle_hop_limit", 10)),
        )


@dataclass(frozen=True)
class IdentitySettings:
    batch_size: int = 100_000
    pinned_max_level: Optional[int] = None
    require_pinned: bool = False
    parent_hop_limit: int = 64

    def __post_init__(self):
        _positive_int(self.batch_size, "identity.batch_size")
        _positive_int(self.parent_hop_limit, "identity.parent_hop_limit")
        if self.pinned_max_level is not None and self.pinned_max_level < 0:
            raise ConfigurationError("identity.pinned_max_level must not be negative")

    @classmethod
    def from_config(cls, cfg: Dict[str, Any]) -> "IdentitySettings":
        pinned = cfg.get("pinned_max_level")
        return cls(
            batch_size=int(cfg.get("batch_size", 100_000)),
            pinned_max_level=int(pinned) if pinned is not None else None,
            require_pinned=bool(cfg.get("require_pinned", False)),
            parent_hop_limit=int(cfg.get("parent_hop_limit", 64)),
        )


@dataclass(frozen=True)
class MergeSettings:
    window_size: int = 500_000
    max_workers: int = 1
    prefilter: bool = True
    diagnostics: bool = False
    rebuild: bool = False

    def __post_init__(self):
        _positive_int(self.window_size, "merge.window_size")
        _positive_int(self.max_workers, "merge.max_workers")

    @classmethod
    def from_config(cls, cfg: Dict[str, Any]) -> "MergeSettings":
        return cls(
            window_size=int(cfg.get("window_size", 500_000)),
            max_workers=int(cfg.get("max_workers", 1)),
            prefilter=bool(cfg.get("prefilter", True)),
            diagnostics=bool(cfg.get("diagnostics", False)),
            rebuild=bool(cfg.get("rebuild", False)),
        )


@dataclass(frozen=True)
class SourceSettings:
    url: Optional[str] = None
    parquet_dir: Optional[str] = None

    @classmethod
    def from_config(cls, cfg: Dict[str, Any]) -> "SourceSettings":
        return cls(url=cfg.get("url"), parquet_dir=cfg.get("parquet_dir"))


@dataclass(frozen=True)
class PipelineSettings:
    dag: DagSettings = field(default_factory=DagSettings)
    identity: IdentitySettings = field(default_factory=IdentitySettings)
    merge: MergeSettings = field(default_factory=MergeSettings)
    retries: RetrySettings = field(default_factory=RetrySettings)
    source: SourceSettings = field(default_factory=SourceSettings)
    database_url: Optional[str] = None

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "PipelineSettings":
        """Build validated settings from a parsed config mapping."""
        sections = {}
        for name in ("dag", "identity", "merge", "retries", "source", "database"):
            value = config.get(name, {}) or {}
            if not isinstance(value, dict):
                raise ConfigurationError(f"Config section '{name}' must be a mapping")
            sections[name] = value
        try:
            settings = cls(
                dag=DagSettings.from_config(sections["dag"]),
                identity=IdentitySettings.from_config(sections["identity"]),
                merge=MergeSettings.from_config(sections["merge"]),
                retries=RetrySettings.from_config(sections["retries"]),
                source=SourceSettings.from_config(sections["source"]),
                database_url=sections["database"].get("url"),
            )
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(f"Invalid configuration value: {exc}") from exc
        logger.debug("Loaded pipeline settings: %s", settings)
        return settings


def load_settings(path: str = CONFIG_PATH) -> PipelineSettings:
    """Load and validate pipeline settings from a YAML file."""
    return PipelineSettings.from_config(load_config(path))
