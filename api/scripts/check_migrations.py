"""
Check a database schema against the trackcore models.

Fails when Alembic autogenerate sees differences, or when a table lacks
the unique key its ON CONFLICT upsert targets (without it PostgreSQL and
SQLite reject the statement at runtime).

Usage:
    python scripts/check_migrations.py            # settings.database_url
    python scripts/check_migrations.py --test     # settings.test_database_url
    python scripts/check_migrations.py --url sqlite+aiosqlite:///./dev.db
"""

from __future__ import annotations

import argparse
import asyncio

from alembic.autogenerate import compare_metadata
from alembic.migration import MigrationContext
from sqlalchemy import inspect
from sqlalchemy.engine import Connection, Inspector
from sqlalchemy.ext.asyncio import create_async_engine

from trackcore import models  # noqa: F401  # Ensure models are registered
from trackcore.config import settings
from trackcore.database import Base

# Conflict targets of the components' upserts
UPSERT_TARGETS: dict[str, tuple[str, ...]] = {
    "files": ("content_hash",),
    "idempotency_records": ("scope", "key"),
    "quota_counters": ("user_id", "dimension", "window_key"),
}


def unique_keys(inspector: Inspector, table: str) -> set[frozenset[str]]:
    """Column sets enforced unique on a table, however the backend reflects them."""
    keys = set()
    pk = inspector.get_pk_constraint(table).get("constrained_columns") or []
    if pk:
        keys.add(frozenset(pk))
    for constraint in inspector.get_unique_constraints(table):
        keys.add(frozenset(constraint["column_names"]))
    for index in inspector.get_indexes(table):
        if index.get("unique"):
            keys.add(frozenset(index["column_names"]))
    return keys


def missing_upsert_targets(inspector: Inspector) -> list[str]:
    problems = []
    tables = set(inspector.get_table_names())
    for table, columns in UPSERT_TARGETS.items():
        if table not in tables:
            problems.append(f"{table}: table missing")
        elif frozenset(columns) not in unique_keys(inspector, table):
            problems.append(f"{table}: no unique key on ({', '.join(columns)})")
    return problems


def schema_diffs(connection: Connection) -> list[object]:
    context = MigrationContext.configure(connection, opts={"compare_type": True})
    return compare_metadata(context, Base.metadata)


def check(connection: Connection) -> tuple[list[object], list[str]]:
    return schema_diffs(connection), missing_upsert_targets(inspect(connection))


async def run(url: str) -> int:
    engine = create_async_engine(url)
    try:
        async with engine.connect() as conn:
            diffs, missing = await conn.run_sync(check)
    finally:
        await engine.dispose()

    for diff in diffs:
        print(f"schema difference: {diff}")
    for problem in missing:
        print(f"upsert target: {problem}")
    if diffs or missing:
        return 1

    print(f"Schema matches models on {engine.url.render_as_string(hide_password=True)}.")
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(description="Compare the database schema with the models")
    target = parser.add_mutually_exclusive_group()
    target.add_argument("--test", action="store_true", help="Check TEST_DATABASE_URL instead")
    target.add_argument("--url", help="Check an explicit database URL")
    args = parser.parse_args()

    url = args.url or (settings.test_database_url if args.test else settings.database_url)
    return asyncio.run(run(url))


if __name__ == "__main__":
    raise SystemExit(main())
