"""Schema migrator.

Reads ``.sql`` files from a schema directory, tracks applied migrations in
the ``_migrations`` table of the target database, and applies pending ones
in filename order. Each file runs in its own transaction; the first
failure stops the run.

The deploy pipeline and ``spine-devops migrate`` only depend on the
:class:`Migrator` protocol, so any object with ``migrate(url)`` can stand in
for :class:`SqlMigrator`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

from spine_devops.core.errors import ConfigError, MigrationError

logger = logging.getLogger(__name__)

_CREATE_TABLE = """
CREATE TABLE IF NOT EXISTS _migrations (
    id SERIAL PRIMARY KEY,
    filename TEXT NOT NULL UNIQUE,
    applied_at TIMESTAMPTZ NOT NULL DEFAULT now()
)
"""


@dataclass
class MigrationResult:
    """Result of a migration run."""

    applied: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return len(self.errors) == 0


class Migrator(Protocol):
    def migrate(self, url: str) -> MigrationResult: ...


class SqlMigrator:
    """Applies ``*.sql`` files to a PostgreSQL database.

    Parameters
    ----------
    migrations_dir
        Directory containing numbered ``.sql`` files.
    connect
        Connection factory taking the URL; ``psycopg2.connect`` when unset.

    Example::

        migrator = SqlMigrator(Path("schema/migrations"))
        result = migrator.migrate(creds.url())
        print(f"Applied {len(result.applied)} migrations")
    """

    def __init__(self, migrations_dir: Path | str, connect: Any = None) -> None:
        self.migrations_dir = Path(migrations_dir)
        self._connect = connect

    def discover(self) -> list[Path]:
        """Sorted ``.sql`` files of the schema directory."""
        if not self.migrations_dir.is_dir():
            return []
        return sorted(self.migrations_dir.glob("*.sql"))

    def migrate(self, url: str) -> MigrationResult:
        """Apply every pending migration.

        Raises:
            MigrationError: a migration failed; earlier ones stay applied.
        """
        conn = self._open(url)
        try:
            result = self._apply_pending(conn)
        finally:
            conn.close()

        if not result.success:
            name, error = next(iter(result.errors.items()))
            raise MigrationError(
                f"Migration '{name}' failed: {error}"
            ).with_context(component="migrate", resource=name, applied=result.applied)
        logger.info(
            "migrations.finished",
            extra={"applied": len(result.applied), "skipped": len(result.skipped)},
        )
        return result

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _open(self, url: str) -> Any:
        connect = self._connect
        if connect is None:
            try:
                import psycopg2
            except ImportError:
                raise ConfigError(
                    "psycopg2 is required for migrations. Install with: pip install psycopg2-binary"
                ) from None
            connect = psycopg2.connect
        try:
            return connect(url)
        except Exception as exc:
            raise MigrationError("Failed to connect to the database", cause=exc).with_context(
                component="migrate"
            ) from exc

    def _apply_pending(self, conn: Any) -> MigrationResult:
        result = MigrationResult()
        with conn.cursor() as cur:
            cur.execute(_CREATE_TABLE)
            conn.commit()
            cur.execute("SELECT filename FROM _migrations")
            applied = {row[0] for row in cur.fetchall()}

        for sql_file in self.discover():
            name = sql_file.name
            if name in applied:
                result.skipped.append(name)
                continue
            try:
                sql = sql_file.read_text(encoding="utf-8")
                with conn.cursor() as cur:
                    cur.execute(sql)
                    cur.execute("INSERT INTO _migrations (filename) VALUES (%s)", (name,))
                conn.commit()
                result.applied.append(name)
                logger.info("migration.applied", extra={"migration": name})
            except Exception as exc:
                conn.rollback()
                result.errors[name] = str(exc)
                logger.error("migration.failed", extra={"migration": name, "error": str(exc)})
                break  # Stop on first error

        return result


__all__ = ["MigrationResult", "Migrator", "SqlMigrator"]
