from .paths import get_default_root, get_logs_dir, get_data_file
from .resilient_io import SnapshotWriter, atomic_write_text, backup_path

__all__ = [
    "get_default_root",
    "get_logs_dir",
    "get_data_file",
    "SnapshotWriter",
    "atomic_write_text",
    "backup_path",
]
