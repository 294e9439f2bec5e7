from __future__ import annotations

from pathlib import Path


def normalize_database_url_for_async(database_url: str) -> str:
    """Map a user supplied DATABASE_URL onto the async driver used at runtime.

    - sqlite:// -> sqlite+aiosqlite://
    - anything that already names a driver is returned unchanged
    """
    url = (database_url or "").strip()
    if not url:
        return url

    if url.startswith("sqlite://") and "+aiosqlite" not in url:
        return url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    return url


def normalize_database_url_for_alembic(database_url: str) -> str:
    """Alembic runs on a sync engine, so strip the async driver again."""
    url = (database_url or "").strip()
    if not url:
        return url

    if url.startswith("sqlite+aiosqlite://"):
        return url.replace("sqlite+aiosqlite://", "sqlite://", 1)
    return url


def sqlite_file_path(database_url: str) -> Path | None:
    """Return the on-disk path of a file-backed SQLite URL, or None for memory / other DBs."""
    url = normalize_database_url_for_alembic(database_url)
    if not url.startswith("sqlite:///"):
        return None
    raw = url[len("sqlite:///") :]
    if not raw or raw.startswith(":memory:"):
        return None
    return Path(raw.split("?", 1)[0])
