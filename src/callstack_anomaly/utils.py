"""Utility functions for CSA"""

import logging
import os
from pathlib import Path


def get_int_env(key: str, default: int = 0) -> int:
    """Get integer value from environment variable, return default if not set or invalid."""
    val = os.getenv(key)
    if val is None:
        return default
    try:
        return int(val)
    except ValueError:
        return default


def get_float_env(key: str, default: float) -> float:
    """Get float value from environment variable, return default if not set or invalid."""
    val = os.getenv(key)
    if val is None:
        return default
    try:
        return float(val)
    except ValueError:
        return default


def get_str_env(key: str, default: str) -> str:
    """
    Get string from environment variable, return default if not set.

    Args:
        key: Environment variable name
        default: Default value if not set

    Returns:
        String value or default
    """
    return os.getenv(key, default)


def setup_logging(level: str | None = None) -> None:
    """Configure the root logger for CLI usage.

    Level priority: explicit argument, then CSA_LOG_LEVEL, then WARNING.
    """
    level_name = (level or get_str_env('CSA_LOG_LEVEL', 'WARNING')).upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.WARNING),
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )


def get_csa_cache_base() -> Path:
    """Get the base cache directory for CSA.

    Priority:
    1. CSA_CACHE_DIR environment variable (if set)
    2. XDG_CACHE_HOME environment variable (if set)
    3. ~/.cache (default)

    Returns:
        Path to the base cache directory (e.g., ~/.cache/csa)
    """
    csa_cache = os.environ.get('CSA_CACHE_DIR')
    if csa_cache:
        base = Path(csa_cache)
    else:
        xdg_cache = os.environ.get('XDG_CACHE_HOME')
        if xdg_cache:
            base = Path(xdg_cache)
        else:
            base = Path.home() / '.cache'

    return base / 'csa'


def get_csa_cache_dir(subdir: str) -> Path:
    """Get a specific cache subdirectory for CSA.

    Args:
        subdir: Subdirectory name (e.g., 'arrays', 'models')

    Returns:
        Path to the cache subdirectory, created if necessary
    """
    cache_dir = get_csa_cache_base() / subdir
    cache_dir.mkdir(parents=True, exist_ok=True)
    return cache_dir
