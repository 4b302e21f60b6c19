"""File path resolution using platformdirs.

Linux: ~/.local/share/agenthost/
macOS: ~/Library/Application Support/agenthost/
"""

from pathlib import Path

import platformdirs

APP_NAME = "agenthost"


def get_data_dir() -> Path:
    """Return the directory for persistent data (DB, credential key)."""
    return Path(platformdirs.user_data_dir(APP_NAME, appauthor=False))


def get_default_db_path() -> Path:
    """Return the default SQLite database file path."""
    return get_data_dir() / "agenthost.db"


def ensure_dirs_exist() -> None:
    """Create all required directories if they don't exist."""
    get_data_dir().mkdir(parents=True, exist_ok=True)
