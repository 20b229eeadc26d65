"""PostgreSQL persistence for test runs, tests and attempts.

This module provides the async data-access layer the ingestion pipeline
writes through. Every method is one short statement or one transaction;
the pipeline composes them in a fixed order (run, suite tests, tests,
attempts) and does not wrap the sequence in an outer transaction.

Key Features:
    - Async connection pooling with asyncpg
    - Batch inserts with executemany inside a transaction
    - Idempotent suite-test registry upsert on (project, suite, file, name)
    - JSONB columns encoded with json.dumps and cast in SQL
    - Lookups compare UUID columns as text, so malformed ids simply miss
"""

import json
from pathlib import Path
from typing import Any, Optional

import asyncpg
import structlog
from asyncpg.pool import Pool

logger = structlog.get_logger()

SCHEMA_FILE = Path(__file__).with_name("schema.sql")


def _jsonb(value: Any) -> Optional[str]:
    return None if value is None else json.dumps(value)


class PostgresRunStore:
    """Async PostgreSQL interface for uploaded test runs."""

    def __init__(self, dsn: str, min_size: int = 2, max_size: int = 10):
        self.dsn = dsn
        self.min_size = min_size
        self.max_size = max_size
        self.pool: Optional[Pool] = None

    async def initialize(self):
        """Create the connection pool."""
        try:
            self.pool = await asyncpg.create_pool(
                self.dsn,
                min_size=self.min_size,
                max_size=self.max_size,
                max_inactive_connection_lifetime=300,
                command_timeout=60,
            )
            logger.info("PostgreSQL connection pool initialized", pool_size=self.pool.get_size())
        except Exception as e:
            logger.error("Failed to initialize PostgreSQL pool", error=str(e))
            raise

    async def close(self):
        if self.pool:
            await self.pool.close()
            logger.info("PostgreSQL connection pool closed")

    async def execute_schema(self, schema_file: Optional[str] = None):
        """Execute a SQL schema file (the bundled schema by default)."""
        path = Path(schema_file) if schema_file else SCHEMA_FILE
        schema_sql = path.read_text()
        async with self.pool.acquire() as conn:
            await conn.execute(schema_sql)
            logger.info("Schema executed successfully", file=str(path))

    async def health_check(self) -> bool:
        async with self.pool.acquire() as conn:
            return await conn.fetchval("SELECT 1") == 1

    async def get_statistics(self) -> dict[str, int]:
        """Row counts of the main tables, reported by the health endpoint."""
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT
                    (SELECT COUNT(*) FROM test_runs) AS test_runs,
                    (SELECT COUNT(*) FROM tests) AS tests,
                    (SELECT COUNT(*) FROM test_results) AS attempts,
                    (SELECT COUNT(*) FROM suite_tests) AS suite_tests
                """
            )
        return dict(row)

    # Lookups

    async def get_suite_by_id(self, suite_id: str) -> Optional[dict[str, Any]]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT id::text AS id, project_id::text AS project_id, name "
                "FROM suites WHERE id::text = $1",
                suite_id,
            )
        return dict(row) if row else None

    async def get_environment_by_name(self, name: str) -> Optional[dict[str, Any]]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT id::text AS id, name FROM environments WHERE name = $1", name
            )
        return dict(row) if row else None

    async def get_trigger_by_name(self, name: str) -> Optional[dict[str, Any]]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT id::text AS id, name FROM test_triggers WHERE name = $1", name
            )
        return dict(row) if row else None

    async def list_environment_names(self) -> list[str]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch("SELECT name FROM environments ORDER BY name")
        return [r["name"] for r in rows]

    async def list_trigger_names(self) -> list[str]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch("SELECT name FROM test_triggers ORDER BY name")
        return [r["name"] for r in rows]

    async def get_project_with_organization(self, project_id: str) -> Optional[dict[str, Any]]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT p.id::text AS id, p.name, p.display_name,
                       o.id::text AS organization_id, o.name AS organization_name
                FROM projects p
                LEFT JOIN organizations o ON o.id = p.organization_id
                WHERE p.id::text = $1
                """,
                project_id,
            )
        return dict(row) if row else None

    async def find_by_content_hash(
        self, content_hash: str, project_id: str
    ) -> Optional[dict[str, Any]]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT id::text AS id, timestamp
                FROM test_runs
                WHERE project_id::text = $1 AND content_hash = $2
                ORDER BY timestamp DESC
                LIMIT 1
                """,
                project_id,
                content_hash,
            )
        return dict(row) if row else None

    # Writes

    async def create_run(self, run: dict[str, Any]) -> str:
        """Insert a test run row and return its id."""
        async with self.pool.acquire() as conn:
            run_id = await conn.fetchval(
                """
                INSERT INTO test_runs (
                    project_id, environment_id, trigger_id, suite_id, branch, commit,
                    timestamp, total, passed, failed, flaky, skipped, duration,
                    wall_clock_duration, content_hash, uploaded_filename,
                    ci_metadata, environment_data
                ) VALUES (
                    $1::uuid, $2::uuid, $3::uuid, $4::uuid, $5, $6, $7, $8, $9, $10,
                    $11, $12, $13, $14, $15, $16, $17::jsonb, $18::jsonb
                )
                RETURNING id::text
                """,
                run["project_id"],
                run["environment_id"],
                run["trigger_id"],
                run["suite_id"],
                run["branch"],
                run["commit"],
                run["timestamp"],
                run["total"],
                run["passed"],
                run["failed"],
                run["flaky"],
                run["skipped"],
                run["duration"],
                run.get("wall_clock_duration"),
                run.get("content_hash"),
                run.get("uploaded_filename"),
                _jsonb(run.get("ci_metadata")),
                _jsonb(run.get("environment_data")),
            )
        logger.info("Test run created", run_id=run_id)
        return run_id

    async def upsert_suite_tests(
        self, project_id: str, suite_id: str, entries: list[tuple[str, str]]
    ) -> dict[str, str]:
        """Register ``(file, name)`` pairs for a suite.

        Returns:
            Mapping ``"file::name"`` → suite test id
        """
        if not entries:
            return {}
        unique = list(dict.fromkeys(entries))
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                rows = await conn.fetch(
                    """
                    INSERT INTO suite_tests (project_id, suite_id, file, name)
                    SELECT $1::uuid, $2::uuid, e.file, e.name
                    FROM unnest($3::text[], $4::text[]) AS e(file, name)
                    ON CONFLICT (project_id, suite_id, file, name)
                    DO UPDATE SET file = EXCLUDED.file
                    RETURNING id::text AS id, file, name
                    """,
                    project_id,
                    suite_id,
                    [f for f, _ in unique],
                    [n for _, n in unique],
                )
        return {f"{r['file']}::{r['name']}": r["id"] for r in rows}

    async def insert_tests(self, rows: list[dict[str, Any]]) -> None:
        """Insert test rows. Each row carries a pre-generated ``id``."""
        if not rows:
            return
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                await conn.executemany(
                    """
                    INSERT INTO tests (
                        id, test_run_id, suite_test_id, name, file, status, duration,
                        error, screenshots, attempts, worker_index, started_at,
                        location, metadata
                    ) VALUES (
                        $1::uuid, $2::uuid, $3::uuid, $4, $5, $6, $7, $8, $9::jsonb,
                        $10, $11, $12, $13::jsonb, $14::jsonb
                    )
                    """,
                    [
                        (
                            r["id"],
                            r["test_run_id"],
                            r.get("suite_test_id"),
                            r["name"],
                            r["file"],
                            r["status"],
                            r["duration"],
                            r.get("error"),
                            _jsonb(r.get("screenshots", [])),
                            r.get("attempts", 1),
                            r.get("worker_index"),
                            r.get("started_at"),
                            _jsonb(r.get("location")),
                            _jsonb(r.get("metadata", {})),
                        )
                        for r in rows
                    ],
                )
        logger.info("Tests inserted", count=len(rows))

    async def insert_attempts(self, rows: list[dict[str, Any]]) -> None:
        if not rows:
            return
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                await conn.executemany(
                    """
                    INSERT INTO test_results (
                        test_id, retry_index, status, duration, error, error_stack,
                        screenshots, attachments, started_at, steps, steps_url,
                        last_failed_step
                    ) VALUES (
                        $1::uuid, $2, $3, $4, $5, $6, $7::jsonb, $8::jsonb, $9,
                        $10::jsonb, $11, $12::jsonb
                    )
                    """,
                    [
                        (
                            r["test_id"],
                            r["retry_index"],
                            r["status"],
                            r["duration"],
                            r.get("error"),
                            r.get("error_stack"),
                            _jsonb(r.get("screenshots", [])),
                            _jsonb(r.get("attachments", [])),
                            r.get("started_at"),
                            _jsonb(r.get("steps")),
                            r.get("steps_url"),
                            _jsonb(r.get("last_failed_step")),
                        )
                        for r in rows
                    ],
                )
        logger.info("Test attempts inserted", count=len(rows))

