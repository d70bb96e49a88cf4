"""Configuration loading utilities."""

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 5.0
DEFAULT_CLASSIFIER_TIMEOUT = 8.0
DEFAULT_SWEEP_INTERVAL = DEFAULT_POLL_INTERVAL
DEFAULT_SEVERITY_KEYWORDS = ("trap", "blood", "fire", "critical")


@dataclass(frozen=True)
class EvacuationCenter:
    """A shelter advertised to citizens."""

    id: str
    name: str
    location: str  # "lat,lng"
    type: str  # school, hospital, gym


@dataclass(frozen=True)
class NewsItem:
    """A public advisory shown on the citizen view."""

    id: str
    title: str
    summary: str
    source: str
    timestamp: str
    type: str = "info"  # alert or info


@dataclass
class ResqConfig:
    """Deployment configuration loaded from config/resq.json.

    Environment variables override the file for the values that differ
    between local development and a deployed replica.
    """

    service_name: str = "ResQ"
    poll_interval: float = DEFAULT_POLL_INTERVAL
    classifier_timeout: float = DEFAULT_CLASSIFIER_TIMEOUT
    sweep_interval: float = DEFAULT_SWEEP_INTERVAL
    severity_keywords: tuple[str, ...] = DEFAULT_SEVERITY_KEYWORDS
    cosmos_database: str = ""
    evacuation_centers: tuple[EvacuationCenter, ...] = ()
    news: tuple[NewsItem, ...] = ()


def get_project_root() -> Path:
    """Get the project root directory."""
    current = Path(__file__).resolve()
    for parent in current.parents:
        if (parent / "pyproject.toml").exists():
            return parent
    raise RuntimeError("Could not find project root (no pyproject.toml found)")


def _env_float(name: str, default: float) -> float:
    """Read a float override from the environment."""
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None


def load_config(path: Path | None = None) -> ResqConfig:
    """Load configuration from file and environment.

    Args:
        path: Explicit config file. Defaults to ``config/resq.json`` under
            the project root. A missing default file yields built-in defaults.

    Raises:
        FileNotFoundError: If an explicit ``path`` does not exist
        ValueError: If a numeric environment override is not a number
    """
    load_dotenv()

    data: dict = {}
    if path is not None:
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
        data = json.loads(path.read_text())
    else:
        try:
            default_path = get_project_root() / "config" / "resq.json"
        except RuntimeError:
            default_path = None
        if default_path is not None and default_path.exists():
            data = json.loads(default_path.read_text())

    keywords = tuple(k.lower() for k in data.get("severity_keywords", DEFAULT_SEVERITY_KEYWORDS))
    poll_interval = _env_float(
        "RESQ_POLL_INTERVAL", float(data.get("poll_interval", DEFAULT_POLL_INTERVAL))
    )
    sweep_interval = _env_float(
        "RESQ_SWEEP_INTERVAL", float(data.get("sweep_interval", poll_interval))
    )
    # A drifted availability flag must be repaired within one poll interval
    if sweep_interval > poll_interval:
        logger.warning(
            "sweep_interval %.1fs exceeds poll_interval %.1fs; using %.1fs",
            sweep_interval,
            poll_interval,
            poll_interval,
        )
        sweep_interval = poll_interval

    return ResqConfig(
        service_name=data.get("service_name", "ResQ"),
        poll_interval=poll_interval,
        classifier_timeout=_env_float(
            "RESQ_CLASSIFIER_TIMEOUT",
            float(data.get("classifier_timeout", DEFAULT_CLASSIFIER_TIMEOUT)),
        ),
        sweep_interval=sweep_interval,
        severity_keywords=keywords,
        cosmos_database=data.get("cosmos_database", ""),
        evacuation_centers=tuple(EvacuationCenter(**c) for c in data.get("evacuation_centers", ())),
        news=tuple(NewsItem(**n) for n in data.get("news", ())),
    )


# Cached config instance
_config: ResqConfig | None = None


def get_config() -> ResqConfig:
    """Get cached configuration.

    Loads config once and caches it for subsequent calls.
    """
    global _config
    if _config is None:
        _config = load_config()
    return _config


def get_cosmos_database() -> str:
    """Get Cosmos DB database name.

    Reads from ``COSMOS_DATABASE`` env var first, falls back to ``resq.json``.
    """
    return os.getenv("COSMOS_DATABASE") or get_config().cosmos_database or "resq"
