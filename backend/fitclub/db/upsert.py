"""
Dialect-aware INSERT ... ON CONFLICT DO UPDATE.
Production runs on PostgreSQL; tests run on SQLite. Both dialects expose the same upsert API.
"""
from typing import Any

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession


def upsert_statement(session: AsyncSession, model: type, rows: list[dict[str, Any]], conflict: list[str]):
    """Build an upsert that overwrites every non-key column of `rows` on conflict with `conflict` columns."""
    dialect = session.bind.dialect.name if session.bind is not None else "postgresql"
    insert = sqlite.insert if dialect == "sqlite" else postgresql.insert
    stmt = insert(model).values(rows)
    update_cols = [c for c in rows[0] if c not in conflict]
    return stmt.on_conflict_do_update(
        index_elements=conflict,
        set_={c: getattr(stmt.excluded, c) for c in update_cols},
    )
