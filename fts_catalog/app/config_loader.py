# fts_catalog/app/config_loader.py
from __future__ import annotations

import json
import logging
import os
import re
from pathlib import Path
from collections.abc import Mapping
from typing import Any, Optional

log = logging.getLogger(__name__)

REPO_ROOT = Path(__file__).resolve().parents[2]
CONFIG_DIR = REPO_ROOT / "config"
CONFIG_PATH = CONFIG_DIR / "appconfig.json"

CONFIG_PATH_ENV = "FTS_CATALOG_CONFIG"

_STAGING_CHUNK_SIZE_KEY = "staging_chunk_size"
_STAGING_CHUNK_SIZE_DEFAULT = 500

_STAGING_TABLE_NAME_KEY = "staging_table_name"
_STAGING_TABLE_NAME_DEFAULT = "fts_result"

_DEFAULT_BATCH_LIMIT_KEY = "default_batch_limit"
_DEFAULT_BATCH_LIMIT_DEFAULT = 50

_DBMS_KEY = "dbms"

_TABLE_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,62}$")


def _config_path() -> Path:
    override = os.getenv(CONFIG_PATH_ENV)
    if override:
        return Path(override).expanduser()
    return CONFIG_PATH


def _read_json_file(path: Path) -> dict:
    """Read JSON from disk, returning an empty mapping on failure."""
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except Exception:
        log.warning("Could not read %s; falling back to defaults", path, exc_info=True)
        return {}
    if not isinstance(data, dict):
        log.warning("%s does not hold a JSON object; falling back to defaults", path)
        return {}
    return data


def load_app_config() -> dict:
    """Return the raw JSON configuration for the package."""
    return _read_json_file(_config_path())


def _coerce_positive_number(value: Any, fallback: int) -> int:
    """Convert unknown input into a positive integer."""
    try:
        numeric = float(value)
    except Exception:
        return int(fallback)
    if numeric <= 0:
        return int(fallback)
    return int(numeric)


def _lookup(cfg: Optional[Mapping[str, Any]], key: str) -> Any:
    if cfg is None:
        cfg = load_app_config()
    if isinstance(cfg, Mapping):
        return cfg.get(key)
    return None


def get_staging_chunk_size(cfg: Optional[Mapping[str, Any]] = None) -> int:
    """Number of staging rows held in memory before they are flushed to the database."""
    return _coerce_positive_number(_lookup(cfg, _STAGING_CHUNK_SIZE_KEY), _STAGING_CHUNK_SIZE_DEFAULT)


def get_default_batch_limit(cfg: Optional[Mapping[str, Any]] = None) -> int:
    return _coerce_positive_number(_lookup(cfg, _DEFAULT_BATCH_LIMIT_KEY), _DEFAULT_BATCH_LIMIT_DEFAULT)


def get_staging_table_name(cfg: Optional[Mapping[str, Any]] = None) -> str:
    """Name used for the temporary table that holds search results."""
    raw = _lookup(cfg, _STAGING_TABLE_NAME_KEY)
    if raw is None:
        return _STAGING_TABLE_NAME_DEFAULT
    name = str(raw).strip()
    if not _TABLE_NAME_PATTERN.match(name):
        log.warning("Invalid %s %r; using %r", _STAGING_TABLE_NAME_KEY, raw, _STAGING_TABLE_NAME_DEFAULT)
        return _STAGING_TABLE_NAME_DEFAULT
    return name


def get_expected_dbms(cfg: Optional[Mapping[str, Any]] = None) -> Optional[str]:
    """Return the dialect tag the deployment expects, or None to trust the connection."""
    raw = _lookup(cfg, _DBMS_KEY)
    if raw is None:
        return None
    value = str(raw).strip().lower()
    return value or None
