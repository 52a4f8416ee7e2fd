"""Runtime settings for the crash dump analyzer.

Settings are read from the environment. A ``.env`` file in the working
directory (or any parent) is loaded first, so local overrides such as
``CRASHDUMP_WORKERS=2`` do not need to be exported by hand.

Recognised variables:
    CRASHDUMP_WORKERS          decode worker pool size (default: CPU count)
    CRASHDUMP_MAX_TERM_DEPTH   nesting limit for inline term decoding (default: 64)
    CRASHDUMP_MAX_LIST_LENGTH  cons cells walked by iter_list (default: 100000)
    CRASHDUMP_VERBOSE          print progress messages ("1", "true", "yes")
"""
from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional

from dotenv import load_dotenv

DEFAULT_MAX_TERM_DEPTH = 64
DEFAULT_MAX_LIST_LENGTH = 100_000

_TRUE_VALUES = {"1", "true", "yes", "on"}


def default_worker_count() -> int:
    return max(1, os.cpu_count() or 1)


@dataclass(frozen=True)
class Settings:
    """Analyzer settings."""
    workers: int = 0  # 0 means "use the CPU count"
    max_term_depth: int = DEFAULT_MAX_TERM_DEPTH
    max_list_length: int = DEFAULT_MAX_LIST_LENGTH
    verbose: bool = False

    @property
    def worker_count(self) -> int:
        return self.workers if self.workers > 0 else default_worker_count()


def _int_setting(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return value if value >= 0 else default


def load_settings(env: Optional[Mapping[str, str]] = None, use_dotenv: bool = True) -> Settings:
    """Build ``Settings`` from the environment.

    Args:
        env: Mapping to read instead of ``os.environ`` (used by tests).
        use_dotenv: Load a ``.env`` file into ``os.environ`` first.

    Returns:
        Settings with invalid values replaced by their defaults.
    """
    if env is None:
        if use_dotenv:
            load_dotenv()
        env = os.environ

    return Settings(
        workers=_int_setting(env, "CRASHDUMP_WORKERS", 0),
        max_term_depth=_int_setting(env, "CRASHDUMP_MAX_TERM_DEPTH", DEFAULT_MAX_TERM_DEPTH) or DEFAULT_MAX_TERM_DEPTH,
        max_list_length=_int_setting(env, "CRASHDUMP_MAX_LIST_LENGTH", DEFAULT_MAX_LIST_LENGTH) or DEFAULT_MAX_LIST_LENGTH,
        verbose=env.get("CRASHDUMP_VERBOSE", "").strip().lower() in _TRUE_VALUES,
    )
