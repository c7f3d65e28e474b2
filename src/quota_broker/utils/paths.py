# src/quota_broker/utils/paths.py
"""
Path helpers for broker data files.

Files live in the current working directory unless `BROKER_DATA_DIR` is set
or a root is passed explicitly.
"""

import os
from pathlib import Path
from typing import Optional, Union


def get_default_root() -> Path:
    """Root directory for state and log files."""
    override = os.getenv("BROKER_DATA_DIR")
    if override:
        return Path(override).expanduser()
    return Path.cwd()


def get_logs_dir(root: Optional[Union[Path, str]] = None) -> Path:
    """
    Get the logs directory, creating it if needed.

    Args:
        root: Optional root directory. If None, uses get_default_root().
    """
    base = Path(root) if root else get_default_root()
    logs_dir = base / "logs"
    logs_dir.mkdir(parents=True, exist_ok=True)
    return logs_dir


def get_data_file(filename: str, root: Optional[Union[Path, str]] = None) -> Path:
    """
    Get the path to a data file in the root directory (does not create it).

    Args:
        filename: Name of the file (e.g., "broker_state.json")
        root: Optional root directory. If None, uses get_default_root().
    """
    base = Path(root) if root else get_default_root()
    return base / filename
