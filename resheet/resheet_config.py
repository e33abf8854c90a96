"""
Runtime configuration, read from environment variables.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional

_FALSE_VALUES = ("0", "false", "no", "off")


@dataclass(frozen=True)
class RuntimeConfig:
    # Skip cells whose free variables did not change; off means full-suffix recompute
    early_stop: bool = True
    http_timeout: float = 5.0
    http_retries: int = 2
    log_level: str = "WARNING"


def _flag(raw: Optional[str], default: bool) -> bool:
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() not in _FALSE_VALUES


def load_config(env: Optional[Mapping[str, str]] = None) -> RuntimeConfig:
    environ = os.environ if env is None else env
    defaults = RuntimeConfig()

    def _number(key: str, cast, default):
        raw = environ.get(key)
        if not raw:
            return default
        try:
            return cast(raw)
        except ValueError:
            return default

    return RuntimeConfig(
        early_stop=_flag(environ.get("RESHEET_EARLY_STOP"), defaults.early_stop),
        http_timeout=_number("RESHEET_HTTP_TIMEOUT", float, defaults.http_timeout),
        http_retries=_number("RESHEET_HTTP_RETRIES", int, defaults.http_retries),
        log_level=(environ.get("RESHEET_LOG_LEVEL") or defaults.log_level).upper(),
    )
