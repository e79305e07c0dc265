"""Configuration, DB path resolution and environment defaults for echo-adaptive."""

import os
from pathlib import Path


DATA_DIR_NAME = ".echo-adaptive"
DB_FILE_NAME = "feed.db"

DEFAULT_PATIENT_ID = "default"
DEFAULT_LOG_LEVEL = "WARNING"


def get_global_db_path() -> Path:
    """Get the global database path (~/.echo-adaptive/feed.db)."""
    return Path.home() / DATA_DIR_NAME / DB_FILE_NAME


def get_local_db_path() -> Path:
    """Get the local database path (CWD/.echo-adaptive/feed.db)."""
    return Path.cwd() / DATA_DIR_NAME / DB_FILE_NAME


def has_local_db() -> bool:
    """Check if a local .echo-adaptive/ directory exists in CWD."""
    return (Path.cwd() / DATA_DIR_NAME).exists()


def get_db_path(override: str | None = None, use_global: bool = False) -> Path:
    """Resolve database path.

    Priority:
    1. --db PATH explicit override (highest)
    2. ECHO_ADAPTIVE_DB env var
    3. --global flag → force global ~/.echo-adaptive/
    4. .echo-adaptive/ exists in CWD → use local
    5. fallback → global ~/.echo-adaptive/

    Args:
        override: Explicit path passed via --db flag
        use_global: If True, skip local detection and use global

    Returns:
        Path to the SQLite database file
    """
    if override:
        return Path(override).expanduser().resolve()

    env_path = os.environ.get("ECHO_ADAPTIVE_DB")
    if env_path:
        return Path(env_path).expanduser().resolve()

    if use_global:
        return get_global_db_path()

    if has_local_db():
        return get_local_db_path()

    return get_global_db_path()


def ensure_db_dir(db_path: Path) -> None:
    """Ensure the parent directory for the database exists."""
    db_path.parent.mkdir(parents=True, exist_ok=True)


def get_patient_id(override: str | None = None) -> str:
    """Resolve the patient the feed is scheduled for.

    The identity provider is external; callers pass the id through, else
    ECHO_ADAPTIVE_PATIENT, else a single-patient default.
    """
    if override:
        return override
    return os.environ.get("ECHO_ADAPTIVE_PATIENT") or DEFAULT_PATIENT_ID


def get_log_level() -> str:
    """Log level name from ECHO_ADAPTIVE_LOG_LEVEL (default WARNING)."""
    return os.environ.get("ECHO_ADAPTIVE_LOG_LEVEL", DEFAULT_LOG_LEVEL).upper()
