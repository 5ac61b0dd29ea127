"""Configuration management for zen-context.

Precedence (highest first):
1. Explicit keyword overrides (``EngineConfig.from_user_config(budget=4000)``)
2. Environment variables (``ZEN_BUDGET``, ``ZEN_EMBEDDER``, ...)
3. Config file (``~/.zen/config.yaml``, or ``$ZEN_CONFIG_FILE``)
4. Defaults
"""

from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

from .fileutils import atomic_write

logger = logging.getLogger(__name__)

# Thread lock for config file operations
_config_lock = threading.Lock()

CONFIG_DIR = Path.home() / ".zen"
CONFIG_FILE = CONFIG_DIR / "config.yaml"

# Relative to the project root when data_dir is not configured
DEFAULT_DATA_DIR = Path(".zen") / "context"

DEFAULT_CONFIG: dict[str, Any] = {
    # Scanning
    "ignore_patterns": [],
    "extensions": [".js", ".jsx", ".ts", ".tsx", ".mjs", ".cjs", ".py", ".vue", ".svelte"],
    "respect_gitignore": True,
    "follow_symlinks": False,
    "max_file_bytes": 1_000_000,

    # Extraction
    "max_excerpt_chars": 8_000,

    # Retrieval
    "budget": 8_000,
    "k": 20,
    "min_truncation_bytes": 120,

    # Embedding
    "embedder_variant": "deterministic",  # deterministic | remote
    "embedding_dim": 256,
    "remote_url": "https://api.openai.com/v1/embeddings",
    "remote_model": "text-embedding-3-small",
    "remote_timeout_ms": 10_000,
    "retry_count": 3,
    "retry_base_delay": 0.5,

    # Change tracking
    "max_workers": 4,
    "batch_size": 64,
    "compact_threshold": 0.25,
    "watch_debounce": 1.0,
    "lock_timeout": 10.0,

    # Storage (None -> <root>/.zen/context)
    "data_dir": None,
}

# key -> (type, min, max)
_NUMERIC_BOUNDS: dict[str, tuple[type | tuple[type, ...], float, float]] = {
    "max_file_bytes": (int, 1, 100_000_000),
    "max_excerpt_chars": (int, 100, 1_000_000),
    "budget": (int, 1, 10_000_000),
    "k": (int, 1, 10_000),
    "min_truncation_bytes": (int, 0, 100_000),
    "embedding_dim": (int, 8, 65_536),
    "remote_timeout_ms": (int, 1, 600_000),
    "retry_count": (int, 0, 20),
    "retry_base_delay": ((int, float), 0, 60),
    "max_workers": (int, 1, 64),
    "batch_size": (int, 1, 10_000),
    "compact_threshold": ((int, float), 0, 1),
    "watch_debounce": ((int, float), 0, 3600),
    "lock_timeout": ((int, float), 0, 3600),
}

EMBEDDER_VARIANTS = ("deterministic", "remote")

# Environment variable -> (config key, converter)
ENV_OVERRIDES: dict[str, tuple[str, Any]] = {
    "ZEN_EMBEDDER": ("embedder_variant", str),
    "ZEN_BUDGET": ("budget", int),
    "ZEN_K": ("k", int),
    "ZEN_DATA_DIR": ("data_dir", str),
    "ZEN_REMOTE_URL": ("remote_url", str),
    "ZEN_REMOTE_MODEL": ("remote_model", str),
    "ZEN_REMOTE_TIMEOUT_MS": ("remote_timeout_ms", int),
    "ZEN_RETRY_COUNT": ("retry_count", int),
    "ZEN_MAX_WORKERS": ("max_workers", int),
    "ZEN_EMBEDDING_DIM": ("embedding_dim", int),
}


def get_config_file() -> Path:
    """Path of the user config file, honouring ``ZEN_CONFIG_FILE``."""
    override = os.environ.get("ZEN_CONFIG_FILE")
    if override:
        return Path(override).expanduser()
    return CONFIG_FILE


def _validate_config(config: dict[str, Any]) -> dict[str, Any]:
    """Validate and sanitize configuration values.

    Invalid values are logged and replaced with their defaults.
    """
    validated = config.copy()

    for key, (expected, lo, hi) in _NUMERIC_BOUNDS.items():
        if key not in validated:
            continue
        val = validated[key]
        if isinstance(val, bool) or not isinstance(val, expected) or val < lo or val > hi:
            logger.warning("Invalid %s %r, using default", key, val)
            validated[key] = DEFAULT_CONFIG[key]

    if validated.get("embedder_variant") not in EMBEDDER_VARIANTS:
        logger.warning("Invalid embedder_variant %r, using default", validated.get("embedder_variant"))
        validated["embedder_variant"] = DEFAULT_CONFIG["embedder_variant"]

    for key in ("ignore_patterns", "extensions"):
        val = validated.get(key)
        if not isinstance(val, list) or not all(isinstance(v, str) for v in val):
            logger.warning("Invalid %s %r, using default", key, val)
            validated[key] = list(DEFAULT_CONFIG[key])

    validated["extensions"] = [
        ext if ext.startswith(".") else f".{ext}" for ext in validated["extensions"]
    ]

    return validated


def load_config(path: Path | None = None) -> dict[str, Any]:
    """Load configuration from file merged over the defaults.

    Returns the default config if the file doesn't exist or can't be parsed.
    Thread-safe via _config_lock.
    """
    config_file = path or get_config_file()
    with _config_lock:
        config = {k: (list(v) if isinstance(v, list) else v) for k, v in DEFAULT_CONFIG.items()}
        if not config_file.exists():
            return config

        try:
            with open(config_file, encoding="utf-8") as f:
                user_config = yaml.safe_load(f) or {}
        except (yaml.YAMLError, OSError, UnicodeDecodeError) as e:
            logger.warning("Failed to load config from %s: %s", config_file, e)
            return config

        if not isinstance(user_config, dict):
            logger.warning("Ignoring config %s: expected a mapping", config_file)
            return config

        unknown = set(user_config) - set(DEFAULT_CONFIG) - {"remote_api_key"}
        if unknown:
            logger.warning("Unknown config keys in %s: %s", config_file, ", ".join(sorted(unknown)))

        config.update(user_config)
        return _validate_config(config)


def save_config(config: dict[str, Any], path: Path | None = None) -> Path:
    """Save configuration atomically, keeping only non-default values.

    API keys are never written; they belong in the environment.
    """
    config_file = path or get_config_file()
    to_save = {
        key: value
        for key, value in config.items()
        if key != "remote_api_key" and (key not in DEFAULT_CONFIG or value != DEFAULT_CONFIG[key])
    }
    with _config_lock:
        with atomic_write(config_file) as f:
            f.write("# zen-context configuration\n")
            if to_save:
                yaml.safe_dump(to_save, f, default_flow_style=False, sort_keys=False)
    return config_file


def render_default_config() -> str:
    """Full default configuration as YAML, for ``zen-context config init``."""
    return "# zen-context configuration\n" + yaml.safe_dump(
        DEFAULT_CONFIG, default_flow_style=False, sort_keys=False
    )


def _env_overrides() -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    for env_var, (key, convert) in ENV_OVERRIDES.items():
        raw = os.environ.get(env_var)
        if raw is None or raw == "":
            continue
        try:
            overrides[key] = convert(raw)
        except ValueError:
            logger.warning("Ignoring %s=%r: expected %s", env_var, raw, convert.__name__)
    return overrides


def _resolve_api_key() -> str | None:
    return os.environ.get("ZEN_EMBEDDING_API_KEY") or os.environ.get("OPENAI_API_KEY")


@dataclass
class EngineConfig:
    """Resolved configuration for one ContextEngine.

    Example:
        config = EngineConfig.from_user_config(budget=4000)
        data_dir = config.resolve_data_dir(Path("~/src/app").expanduser())
    """

    ignore_patterns: list[str] = field(default_factory=list)
    extensions: list[str] = field(default_factory=lambda: list(DEFAULT_CONFIG["extensions"]))
    respect_gitignore: bool = True
    follow_symlinks: bool = False
    max_file_bytes: int = 1_000_000

    max_excerpt_chars: int = 8_000

    budget: int = 8_000
    k: int = 20
    min_truncation_bytes: int = 120

    embedder_variant: str = "deterministic"
    embedding_dim: int = 256
    remote_url: str = "https://api.openai.com/v1/embeddings"
    remote_model: str = "text-embedding-3-small"
    remote_timeout_ms: int = 10_000
    retry_count: int = 3
    retry_base_delay: float = 0.5
    remote_api_key: str | None = field(default=None, repr=False)

    max_workers: int = 4
    batch_size: int = 64
    compact_threshold: float = 0.25
    watch_debounce: float = 1.0
    lock_timeout: float = 10.0

    data_dir: Path | None = None

    def __post_init__(self):
        if self.data_dir is not None:
            self.data_dir = Path(self.data_dir).expanduser()
        if self.embedder_variant not in EMBEDDER_VARIANTS:
            raise ValueError(
                f"embedder_variant must be one of {EMBEDDER_VARIANTS}, got {self.embedder_variant!r}"
            )
        if self.budget < 1:
            raise ValueError(f"budget must be positive, got {self.budget}")
        if self.k < 1:
            raise ValueError(f"k must be positive, got {self.k}")

    @classmethod
    def from_user_config(cls, config_file: Path | None = None, **overrides: Any) -> "EngineConfig":
        """Build from the config file, environment and explicit overrides."""
        values = load_config(config_file)
        values.update(_validate_config({**values, **_env_overrides()}))
        values.update({k: v for k, v in overrides.items() if v is not None})

        if not values.get("remote_api_key"):
            values["remote_api_key"] = _resolve_api_key()

        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in values.items() if k in known})

    def resolve_data_dir(self, root: Path) -> Path:
        """Where the snapshot, journal and lock live for ``root``."""
        if self.data_dir is not None:
            return self.data_dir
        return Path(root) / DEFAULT_DATA_DIR

    def to_dict(self) -> dict[str, Any]:
        """Plain dict for display; the API key is masked."""
        result = {f.name: getattr(self, f.name) for f in fields(self)}
        result["remote_api_key"] = "***" if self.remote_api_key else None
        if self.data_dir is not None:
            result["data_dir"] = str(self.data_dir)
        return result


__all__ = [
    "CONFIG_DIR",
    "CONFIG_FILE",
    "DEFAULT_CONFIG",
    "EngineConfig",
    "get_config_file",
    "load_config",
    "save_config",
    "render_default_config",
]
