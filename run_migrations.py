"""Simple migration runner for SQLite using the SQL files in migrations/"""
from pathlib import Path
import sqlite3
import sys

from marketplace.config import settings

BASE = Path(__file__).parent
MIGRATIONS = sorted((BASE / "migrations").glob("*.sql"))


def sqlite_path(url: str) -> Path:
    """Return the database file of a `sqlite:///...` URL."""
    prefix = "sqlite:///"
    if not url.startswith(prefix):
        raise ValueError(f"only sqlite URLs are supported: {url}")
    return Path(url[len(prefix):])


def run(url: str = settings.DATABASE_URL):
    """Execute SQL migration files against the configured SQLite database.

    The function applies every `migrations/*.sql` file in lexical
    order. Files are written to be re-runnable (`IF NOT EXISTS`).
    """
    db_path = sqlite_path(url)
    print("Using database:", db_path)
    conn = sqlite3.connect(db_path)
    try:
        cur = conn.cursor()
        for m in MIGRATIONS:
            print("Applying:", m.name)
            cur.executescript(m.read_text(encoding="utf-8"))
        conn.commit()
    finally:
        conn.close()
    print("Migrations applied.")


if __name__ == '__main__':
    run(sys.argv[1] if len(sys.argv) > 1 else settings.DATABASE_URL)
