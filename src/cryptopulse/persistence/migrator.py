"""Simple migration runner for CryptoPulse."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional

from .database import Database, get_database

MIGRATIONS_DIR = Path(__file__).resolve().parent.parent / "migrations"

logger = logging.getLogger(__name__)


def _ensure_registry(db: Database) -> None:
    db.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            id TEXT PRIMARY KEY,
            description TEXT,
            applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        );
        """
    )


def _list_migration_files() -> List[Path]:
    return sorted(MIGRATIONS_DIR.glob("*.sql"))


def _migration_id(path: Path) -> str:
    return path.stem


def applied_migrations(db: Database) -> List[str]:
    _ensure_registry(db)
    rows = db.fetch_all("SELECT id FROM schema_migrations ORDER BY applied_at, id")
    return [row[0] for row in rows]


def upgrade(db: Optional[Database] = None) -> List[str]:
    """Apply pending migrations; returns the ids applied by this call."""
    db = db or get_database()
    applied = set(applied_migrations(db))

    newly_applied: List[str] = []
    for path in _list_migration_files():
        mig_id = _migration_id(path)
        if mig_id in applied:
            continue
        db.executescript(path.read_text(encoding="utf-8"))
        db.execute(
            "INSERT INTO schema_migrations (id, description) VALUES (?, ?)",
            (mig_id, path.name),
        )
        logger.info("Applied migration %s to %s", mig_id, db.path)
        newly_applied.append(mig_id)
    return newly_applied


if __name__ == "__main__":
    upgrade()
