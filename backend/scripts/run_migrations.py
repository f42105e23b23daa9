from __future__ import annotations

from pathlib import Path

import structlog
from sqlalchemy import create_engine, text

from budget_tracker.config import settings
from budget_tracker.logging_setup import configure_logging

logger = structlog.get_logger(__name__)

MIGRATIONS_DIR = Path(__file__).resolve().parents[2] / "db" / "migrations"


def split_sql_statements(sql: str) -> list[str]:
    statements = []
    current: list[str] = []
    in_dollar = False
    for line in sql.splitlines(keepends=True):
        stripped = line.strip()
        if "$$" in line:
            in_dollar = not in_dollar
        current.append(line)
        if not in_dollar and stripped.endswith(";"):
            statements.append("".join(current).strip())
            current = []
    tail = "".join(current).strip()
    if tail:
        statements.append(tail)
    return [s for s in statements if s and not s.startswith("--")]


def pending_migrations(migrations_dir: Path, applied: set[str]) -> list[Path]:
    return [path for path in sorted(migrations_dir.glob("*.sql")) if path.name not in applied]


def main() -> None:
    configure_logging()
    engine = create_engine(settings.database_url, future=True, pool_pre_ping=True)

    if not any(MIGRATIONS_DIR.glob("*.sql")):
        logger.warning("no_migrations_found", path=str(MIGRATIONS_DIR))
        return

    with engine.begin() as conn:
        conn.execute(
            text(
                """
                create table if not exists schema_migrations (
                  filename text primary key,
                  applied_at timestamptz not null default now()
                )
                """
            )
        )
        applied = {row[0] for row in conn.execute(text("select filename from schema_migrations")).fetchall()}

        for file in pending_migrations(MIGRATIONS_DIR, applied):
            for stmt in split_sql_statements(file.read_text(encoding="utf-8")):
                conn.execute(text(stmt))
            conn.execute(text("insert into schema_migrations (filename) values (:filename)"), {"filename": file.name})
            logger.info("migration_applied", filename=file.name)

    logger.info("migrations_finished")


if __name__ == "__main__":
    main()
