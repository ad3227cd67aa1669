"""Configuration management for Spentee.

This module centralizes all configuration values including paths, the
data-sharing policy, and environment variable overrides.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

# Base project root - assumes this file is in spentee/
_PROJECT_ROOT = Path(__file__).parent.parent.resolve()

# Data directories
DATA_DIR = Path(os.getenv("SPENTEE_DATA_DIR", _PROJECT_ROOT / "data"))

# Database
DB_PATH = Path(
    os.getenv("SPENTEE_DB_PATH", DATA_DIR / "spentee.db")
).resolve()

_TRUTHY = {"1", "true", "yes", "on"}

# When enabled every caller sees every owner's records.
SHARED_DATA = os.getenv("SPENTEE_SHARED_DATA", "").strip().lower() in _TRUTHY

# Number of months shown by the dashboard trend chart
TREND_MONTHS = int(os.getenv("SPENTEE_TREND_MONTHS", "6"))


def ensure_data_directories() -> None:
    """Create all required data directories if they don't exist."""
    DATA_DIR.mkdir(parents=True, exist_ok=True)
    DB_PATH.parent.mkdir(parents=True, exist_ok=True)


def get_db_path() -> str:
    """Get the database path as a string."""
    return str(DB_PATH)


def resolve_owner_filter(
    owner_id: Optional[str],
    *,
    is_admin: bool = False,
    shared_data: Optional[bool] = None,
) -> Optional[str]:
    """Turn an authenticated identity into the filter passed to every store call.

    ``None`` means "no owner filter". Admins and shared-data deployments get
    ``None``; everybody else is scoped to their own id.
    """
    shared = SHARED_DATA if shared_data is None else shared_data
    if is_admin or shared:
        return None
    if not owner_id:
        raise ValueError("owner_id is required when data is not shared")
    return str(owner_id)
