"""
Path resolver for craftlocal-fraud.

Rules
-----
* home_dir   → $CRAFTLOCAL_FRAUD_HOME when set, otherwise the project root
* data_dir   → home_dir/data  (portable first); fallback ~/.craftlocal_fraud/data
* logs_dir   → home_dir/logs  (portable first); fallback ~/.craftlocal_fraud/logs
* migrations → <package>/migrations (shipped with the package, read-only)
* db_path    → data_dir/fraud.db
* backup_dir → data_dir/backups

NEVER use os.getcwd() or relative Path("...") strings in runtime code;
always call one of the functions below.
"""

import os
from pathlib import Path

HOME_ENV_VAR = "CRAFTLOCAL_FRAUD_HOME"
DB_FILENAME = "fraud.db"


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

def _get_base_dir() -> Path:
    """
    Return the directory that holds data/ and logs/.

    - $CRAFTLOCAL_FRAUD_HOME when set
    - otherwise the project root (two levels up from craftlocal_fraud/utils/paths.py)
    """
    override = os.environ.get(HOME_ENV_VAR)
    if override:
        return Path(override).expanduser().resolve()
    return Path(__file__).resolve().parent.parent.parent


def _try_writable(path: Path) -> bool:
    """
    Return True if *path* can be created and used as a writable directory.

    Uses a canary-file probe so permission issues (read-only site-packages,
    container volumes) are detected before the first write.
    """
    try:
        path.mkdir(parents=True, exist_ok=True)
        canary = path / ".write_probe"
        canary.touch()
        canary.unlink()
        return True
    except (OSError, PermissionError):
        return False


def _user_dir(sub: str) -> Path:
    """Return ~/.craftlocal_fraud/<sub>."""
    return Path.home() / ".craftlocal_fraud" / sub


def _portable_dir(sub: str) -> Path:
    """<base_dir>/<sub> when writable, else ~/.craftlocal_fraud/<sub>."""
    primary = _get_base_dir() / sub
    if _try_writable(primary):
        return primary
    fallback = _user_dir(sub)
    fallback.mkdir(parents=True, exist_ok=True)
    return fallback


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def get_data_dir() -> Path:
    """Directory holding fraud.db, its backups and settings.json."""
    return _portable_dir("data")


def get_logs_dir() -> Path:
    return _portable_dir("logs")


def get_migrations_dir() -> Path:
    """SQL migrations bundled inside the package."""
    return Path(__file__).resolve().parent.parent / "migrations"


def get_db_path() -> Path:
    """Full path to the SQLite database file."""
    return get_data_dir() / DB_FILENAME


def get_backup_dir() -> Path:
    """Full path to the automatic-backup directory."""
    return get_data_dir() / "backups"


def get_settings_path() -> Path:
    """Full path to the JSON settings file (threshold overrides)."""
    return get_data_dir() / "settings.json"
