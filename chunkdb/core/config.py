"""
Environment-driven configuration for the chunk database.
Module constants hold the import-time values; accessors re-read the environment.
"""

import os
from pathlib import Path
from typing import List, Optional

# Snapshot directory (unset disables persistence)
BASE_FOLDER = os.getenv("CHUNKDB_BASE_FOLDER")

# Debounce delay before a dirty database is flushed to disk
SAVE_DELAY_SEC = float(os.getenv("CHUNKDB_SAVE_DELAY_SEC", "30"))

# Index engine
VECTOR_PROVIDER = os.getenv("VECTOR_PROVIDER", "faiss")  # faiss|memory

# Debug flag
DEBUG = os.getenv("DEBUG", "false").lower() == "true"

VALID_VECTOR_PROVIDERS = ["faiss", "memory"]


def get_base_folder() -> Optional[str]:
    """Get the snapshot directory, or None when persistence is disabled."""
    folder = os.getenv("CHUNKDB_BASE_FOLDER")
    return folder or None


def get_save_delay() -> float:
    """Get the debounce delay in seconds."""
    return float(os.getenv("CHUNKDB_SAVE_DELAY_SEC", str(SAVE_DELAY_SEC)))


def get_vector_provider() -> str:
    """Get configured index engine (faiss|memory)."""
    return os.getenv("VECTOR_PROVIDER", "faiss").lower()


def debug_enabled():
    """Check if debug mode is enabled."""
    return os.getenv("DEBUG", "false").lower() == "true"


def get_index_adapter(provider: Optional[str] = None):
    """Build an empty index adapter for the configured (or given) provider."""
    provider = (provider or get_vector_provider()).lower()

    if provider == "memory":
        from chunkdb.vector.index import NumpyIndexAdapter
        return NumpyIndexAdapter()
    elif provider == "faiss":
        from chunkdb.vector.faiss_index import FaissIndexAdapter
        return FaissIndexAdapter()
    else:
        raise ValueError(f"Invalid VECTOR_PROVIDER: {provider}")


def ensure_base_folder(folder: Optional[str] = None) -> Optional[Path]:
    """Ensure the snapshot directory exists."""
    folder = folder or get_base_folder()
    if not folder:
        return None
    path = Path(folder)
    path.mkdir(parents=True, exist_ok=True)
    return path


def validate_persistence_config() -> List[str]:
    """Validate persistence configuration and return any issues."""
    issues = []

    if get_vector_provider() not in VALID_VECTOR_PROVIDERS:
        issues.append(f"Invalid VECTOR_PROVIDER: {get_vector_provider()}")

    try:
        if get_save_delay() < 0:
            issues.append("CHUNKDB_SAVE_DELAY_SEC must be >= 0")
    except ValueError:
        issues.append(f"Invalid CHUNKDB_SAVE_DELAY_SEC: {os.getenv('CHUNKDB_SAVE_DELAY_SEC')}")

    folder = get_base_folder()
    if folder and Path(folder).exists() and not Path(folder).is_dir():
        issues.append(f"CHUNKDB_BASE_FOLDER is not a directory: {folder}")

    return issues
