"""Configuration for watsonx-stream.

Config discovery (first match wins):
  1. explicit ``path`` argument
  2. ``./watsonx_stream.yaml``
  3. ``~/.config/watsonx-stream/config.yaml``
  4. Built-in defaults

``client.api_key`` falls back to the ``WATSONX_API_KEY`` environment
variable when it is not set in the file.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

_logger = logging.getLogger(__name__)

_API_KEY_ENV = "WATSONX_API_KEY"


# ---------------------------------------------------------------------------
# Config data structures
# ---------------------------------------------------------------------------

@dataclass
class ClientSpec:
    """Where and how to reach the backend."""

    url: str = "https://us-south.ml.cloud.ibm.com"
    api_key: str = ""
    version: str = "2025-04-23"
    project_id: str | None = None
    space_id: str | None = None
    timeout: float = 60.0
    read_timeout: float = 300.0
    log_requests: bool = False
    log_responses: bool = False


@dataclass
class PollingSpec:
    """Backoff settings for poll-until-done waits (seconds)."""

    initial_delay: float = 0.1
    factor: float = 2.0
    max_delay: float = 3.0
    timeout: float = 60.0


@dataclass
class StreamConfig:
    """Top-level config."""

    client: ClientSpec = field(default_factory=ClientSpec)
    polling: PollingSpec = field(default_factory=PollingSpec)


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

_SEARCH_PATHS = [
    Path("./watsonx_stream.yaml"),
    Path.home() / ".config" / "watsonx-stream" / "config.yaml",
]


def _pick(raw: dict[str, Any] | None, spec_cls: type) -> dict[str, Any]:
    """Keep only keys that *spec_cls* knows, dropping explicit nulls."""
    if not raw:
        return {}
    known = spec_cls.__dataclass_fields__
    unknown = sorted(k for k in raw if k not in known)
    if unknown:
        _logger.warning("Ignoring unknown %s keys: %s", spec_cls.__name__, ", ".join(unknown))
    return {k: v for k, v in raw.items() if k in known and v is not None}


def _parse_client(raw: dict[str, Any] | None) -> ClientSpec:
    spec = ClientSpec(**_pick(raw, ClientSpec))
    if not spec.api_key:
        spec.api_key = os.environ.get(_API_KEY_ENV, "")
    return spec


def _parse_polling(raw: dict[str, Any] | None) -> PollingSpec:
    spec = PollingSpec(**_pick(raw, PollingSpec))
    if spec.initial_delay <= 0 or spec.max_delay < spec.initial_delay:
        raise ValueError(
            "polling.initial_delay must be positive and not exceed polling.max_delay"
        )
    if spec.factor < 1:
        raise ValueError("polling.factor must be >= 1")
    return spec


def load_config(path: str | Path | None = None) -> StreamConfig:
    """Load configuration from YAML.

    Parameters
    ----------
    path:
        Explicit config path.  If *None*, search default locations.

    Returns
    -------
    StreamConfig
    """
    config_path: Path | None = None

    if path is not None:
        config_path = Path(path)
        if not config_path.exists():
            _logger.warning("Config file not found: %s, using defaults", path)
            return StreamConfig(client=_parse_client(None))
    else:
        for candidate in _SEARCH_PATHS:
            if candidate.exists():
                config_path = candidate
                break

    if config_path is None:
        _logger.info("No config file found, using defaults")
        return StreamConfig(client=_parse_client(None))

    _logger.info("Loading config from %s", config_path)
    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}

    return StreamConfig(
        client=_parse_client(raw.get("client")),
        polling=_parse_polling(raw.get("polling")),
    )
