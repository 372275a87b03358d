"""
Formula lifecycle store backed by SQLite.

Persists versioned formulas and their append-only change log. Per user the
lifecycle is: none -> current(v1) -> current(v2) with v1 archived -> ...
The "current" formula is always the highest non-archived version; full
history is kept.

Version numbers are allocated inside a write transaction
(``BEGIN IMMEDIATE``) and guarded by ``UNIQUE(user_id, version)``; a
conflicting insert is retried with a fresh version number. Every write
error surfaces as PersistenceError.
"""

import json
import logging
import sqlite3
import uuid
from collections import Counter
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterator, List, Optional

from formula_engine.models.formula import (
    Formula,
    FormulaDraft,
    FormulaInsights,
    FormulaLine,
    FormulaVersionChange,
    IngredientPopularity,
    UserCustomizations,
)
from formula_engine.utils.helpers import utc_now

logger = logging.getLogger(__name__)


class PersistenceError(Exception):
    """The store failed to read or write; never swallowed by callers."""
    pass


class FormulaNotFoundError(LookupError):
    """No formula exists with the requested id."""
    pass


SCHEMA = """
CREATE TABLE IF NOT EXISTS formulas (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    version INTEGER NOT NULL,
    name TEXT,
    bases TEXT NOT NULL,
    additions TEXT NOT NULL,
    total_mg INTEGER NOT NULL,
    rationale TEXT NOT NULL DEFAULT '',
    warnings TEXT NOT NULL DEFAULT '[]',
    disclaimers TEXT NOT NULL DEFAULT '[]',
    capsule_count INTEGER NOT NULL,
    user_customizations TEXT,
    created_at TEXT NOT NULL,
    archived_at TEXT,
    UNIQUE (user_id, version)
);

CREATE INDEX IF NOT EXISTS idx_formulas_user_version ON formulas (user_id, version DESC);

CREATE TABLE IF NOT EXISTS formula_version_changes (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    formula_id TEXT NOT NULL REFERENCES formulas (id),
    description TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_changes_formula ON formula_version_changes (formula_id);

CREATE TRIGGER IF NOT EXISTS formula_changes_no_update
BEFORE UPDATE ON formula_version_changes
BEGIN
    SELECT RAISE(ABORT, 'formula_version_changes is append-only');
END;

CREATE TRIGGER IF NOT EXISTS formula_changes_no_delete
BEFORE DELETE ON formula_version_changes
BEGIN
    SELECT RAISE(ABORT, 'formula_version_changes is append-only');
END;
"""


class FormulaStore:
    """
    Sole mutator of persisted formulas.

    Each operation opens its own connection, so one store instance can be
    shared across threads and worker tasks.
    """

    def __init__(self, db_path: str, busy_timeout: float = 10.0, max_version_retries: int = 5):
        """
        Args:
            db_path: SQLite database file (created if missing)
            busy_timeout: Seconds to wait for another writer's lock
            max_version_retries: Attempts at allocating a version on conflict
        """
        self.db_path = str(db_path)
        self.busy_timeout = busy_timeout
        self.max_version_retries = max_version_retries

        try:
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise PersistenceError(f"Could not create directory for formula store: {e}") from e
        self._init_schema()
        logger.info(f"Formula store ready at {self.db_path}")

    # ─── Connection handling ───────────────────────────────────────────────────

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(self.db_path, timeout=self.busy_timeout, isolation_level=None)
        except sqlite3.Error as e:
            raise PersistenceError(f"Could not open formula store: {e}") from e
        try:
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA foreign_keys = ON")
            yield conn
        finally:
            conn.close()

    @contextmanager
    def _transaction(self, conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        conn.execute("COMMIT")

    def _init_schema(self) -> None:
        try:
            with self._connect() as conn:
                conn.executescript(SCHEMA)
        except sqlite3.Error as e:
            raise PersistenceError(f"Could not initialize formula store schema: {e}") from e

    # ─── Writes ────────────────────────────────────────────────────────────────

    def create(
        self,
        user_id: str,
        draft: FormulaDraft,
        name: Optional[str] = None,
        user_customizations: Optional[UserCustomizations] = None,
        supersede: bool = False,
        change_description: Optional[str] = None,
    ) -> Formula:
        """
        Insert a validated draft as the user's next version.

        Args:
            user_id: Owner of the formula
            draft: Validator-accepted formula
            name: Optional user-facing label
            user_customizations: Ingredients the user added, if any
            supersede: Archive the user's current formulas in the same
                transaction. The store never does this on its own.
            change_description: Text for the change-log entry

        Returns:
            Formula: The persisted formula with its allocated version

        Raises:
            PersistenceError: If the write fails or no version could be allocated
        """
        for attempt in range(1, self.max_version_retries + 1):
            try:
                with self._connect() as conn, self._transaction(conn):
                    version = conn.execute(
                        "SELECT COALESCE(MAX(version), 0) + 1 FROM formulas WHERE user_id = ?",
                        (user_id,),
                    ).fetchone()[0]
                    now = utc_now()

                    if supersede:
                        self._archive_current(conn, user_id, now, f"Superseded by v{version}")

                    formula = Formula(
                        id=str(uuid.uuid4()),
                        user_id=user_id,
                        version=version,
                        name=name,
                        bases=draft.bases,
                        additions=draft.additions,
                        total_mg=draft.total_mg,
                        rationale=draft.rationale,
                        warnings=draft.warnings,
                        disclaimers=draft.disclaimers,
                        capsule_count=draft.capsule_count,
                        user_customizations=user_customizations,
                        created_at=now,
                    )
                    conn.execute(
                        """
                        INSERT INTO formulas (
                            id, user_id, version, name, bases, additions, total_mg, rationale,
                            warnings, disclaimers, capsule_count, user_customizations, created_at
                        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            formula.id,
                            user_id,
                            version,
                            name,
                            self._dump_lines(formula.bases),
                            self._dump_lines(formula.additions),
                            formula.total_mg,
                            formula.rationale,
                            json.dumps(formula.warnings),
                            json.dumps(formula.disclaimers),
                            formula.capsule_count,
                            user_customizations.model_dump_json() if user_customizations else None,
                            now.isoformat(),
                        ),
                    )
                    self._insert_change(
                        conn,
                        formula.id,
                        change_description or f"Formula v{version} created ({len(formula.lines)} ingredients, {formula.total_mg}mg)",
                        now,
                    )

                logger.info(f"Created formula v{version} for user {user_id} ({formula.id})")
                return formula

            except sqlite3.IntegrityError as e:
                if "UNIQUE" in str(e) and attempt < self.max_version_retries:
                    logger.warning(f"Version conflict for user {user_id}, retrying (attempt {attempt})")
                    continue
                raise PersistenceError(f"Could not create formula for user {user_id}: {e}") from e
            except sqlite3.Error as e:
                raise PersistenceError(f"Could not create formula for user {user_id}: {e}") from e

        raise PersistenceError(f"Could not allocate a version for user {user_id}")

    def archive(self, formula_id: str) -> Formula:
        """
        Archive a formula. Archiving an archived formula is a no-op.

        Raises:
            FormulaNotFoundError: If the formula does not exist
            PersistenceError: If the write fails
        """
        try:
            with self._connect() as conn, self._transaction(conn):
                row = self._fetch_row(conn, formula_id)
                if row["archived_at"] is None:
                    now = utc_now()
                    conn.execute("UPDATE formulas SET archived_at = ? WHERE id = ?", (now.isoformat(), formula_id))
                    self._insert_change(conn, formula_id, f"Formula v{row['version']} archived", now)
                    logger.info(f"Archived formula {formula_id}")
                row = self._fetch_row(conn, formula_id)
        except sqlite3.Error as e:
            raise PersistenceError(f"Could not archive formula {formula_id}: {e}") from e
        return self._row_to_formula(row)

    def restore(self, formula_id: str) -> Formula:
        """
        Clear a formula's archived timestamp.

        The caller archives whatever is current first; restore does not.

        Raises:
            FormulaNotFoundError: If the formula does not exist
            PersistenceError: If the write fails
        """
        try:
            with self._connect() as conn, self._transaction(conn):
                row = self._fetch_row(conn, formula_id)
                if row["archived_at"] is not None:
                    conn.execute("UPDATE formulas SET archived_at = NULL WHERE id = ?", (formula_id,))
                    self._insert_change(conn, formula_id, f"Formula v{row['version']} restored", utc_now())
                    logger.info(f"Restored formula {formula_id}")
                row = self._fetch_row(conn, formula_id)
        except sqlite3.Error as e:
            raise PersistenceError(f"Could not restore formula {formula_id}: {e}") from e
        return self._row_to_formula(row)

    def rename(self, formula_id: str, name: str) -> Formula:
        try:
            with self._connect() as conn, self._transaction(conn):
                self._fetch_row(conn, formula_id)
                conn.execute("UPDATE formulas SET name = ? WHERE id = ?", (name, formula_id))
                self._insert_change(conn, formula_id, f"Renamed to '{name}'", utc_now())
                row = self._fetch_row(conn, formula_id)
        except sqlite3.Error as e:
            raise PersistenceError(f"Could not rename formula {formula_id}: {e}") from e
        return self._row_to_formula(row)

    def record_change(self, formula_id: str, description: str) -> FormulaVersionChange:
        """
        Append an entry to the change log.

        Raises:
            PersistenceError: If the entry could not be written (including
                an unknown formula id)
        """
        try:
            with self._connect() as conn, self._transaction(conn):
                change_id = self._insert_change(conn, formula_id, description, utc_now())
                row = conn.execute(
                    "SELECT * FROM formula_version_changes WHERE id = ?", (change_id,)
                ).fetchone()
        except sqlite3.Error as e:
            logger.error(f"Failed to record change for formula {formula_id}: {e}")
            raise PersistenceError(f"Could not record change for formula {formula_id}: {e}") from e
        return self._row_to_change(row)

    # ─── Reads ─────────────────────────────────────────────────────────────────

    def get(self, formula_id: str) -> Optional[Formula]:
        row = self._query_one("SELECT * FROM formulas WHERE id = ?", (formula_id,))
        return self._row_to_formula(row) if row else None

    def get_current(self, user_id: str) -> Optional[Formula]:
        """Most recent non-archived formula for the user."""
        row = self._query_one(
            "SELECT * FROM formulas WHERE user_id = ? AND archived_at IS NULL ORDER BY version DESC LIMIT 1",
            (user_id,),
        )
        return self._row_to_formula(row) if row else None

    def get_by_version(self, user_id: str, version: int) -> Optional[Formula]:
        row = self._query_one(
            "SELECT * FROM formulas WHERE user_id = ? AND version = ?",
            (user_id, version),
        )
        return self._row_to_formula(row) if row else None

    def history(self, user_id: str, include_archived: bool = True) -> List[Formula]:
        """All of a user's formulas, newest version first."""
        sql = "SELECT * FROM formulas WHERE user_id = ?"
        if not include_archived:
            sql += " AND archived_at IS NULL"
        sql += " ORDER BY version DESC"
        return [self._row_to_formula(row) for row in self._query_all(sql, (user_id,))]

    def archived(self, user_id: str) -> List[Formula]:
        rows = self._query_all(
            "SELECT * FROM formulas WHERE user_id = ? AND archived_at IS NOT NULL ORDER BY version DESC",
            (user_id,),
        )
        return [self._row_to_formula(row) for row in rows]

    def list_changes(self, formula_id: str) -> List[FormulaVersionChange]:
        rows = self._query_all(
            "SELECT * FROM formula_version_changes WHERE formula_id = ? ORDER BY id ASC",
            (formula_id,),
        )
        return [self._row_to_change(row) for row in rows]

    def current_formulas(self) -> List[Formula]:
        """The current formula of every user."""
        rows = self._query_all(
            """
            SELECT f.* FROM formulas f
            WHERE f.archived_at IS NULL
              AND f.version = (
                  SELECT MAX(version) FROM formulas g
                  WHERE g.user_id = f.user_id AND g.archived_at IS NULL
              )
            ORDER BY f.user_id
            """,
            (),
        )
        return [self._row_to_formula(row) for row in rows]

    # ─── Analytics ─────────────────────────────────────────────────────────────

    def ingredient_popularity(self) -> List[IngredientPopularity]:
        """Number of formulas containing each ingredient, most used first."""
        counts: Counter = Counter()
        for row in self._query_all("SELECT bases, additions FROM formulas", ()):
            names = {line["ingredient"] for line in json.loads(row["bases"]) + json.loads(row["additions"])}
            counts.update(names)
        return [
            IngredientPopularity(ingredient=name, formula_count=count)
            for name, count in sorted(counts.items(), key=lambda item: (-item[1], item[0]))
        ]

    def insights(self) -> FormulaInsights:
        row = self._query_one(
            """
            SELECT COUNT(*) AS total,
                   COALESCE(SUM(CASE WHEN archived_at IS NULL THEN 1 ELSE 0 END), 0) AS active,
                   COALESCE(AVG(total_mg), 0) AS avg_mg
            FROM formulas
            """,
            (),
        )
        return FormulaInsights(
            total_formulas=row["total"],
            active_formulas=row["active"],
            avg_mg_per_formula=int(round(row["avg_mg"])),
        )

    # ─── Helpers ───────────────────────────────────────────────────────────────

    def _archive_current(self, conn: sqlite3.Connection, user_id: str, now: datetime, reason: str) -> None:
        rows = conn.execute(
            "SELECT id, version FROM formulas WHERE user_id = ? AND archived_at IS NULL",
            (user_id,),
        ).fetchall()
        for row in rows:
            conn.execute("UPDATE formulas SET archived_at = ? WHERE id = ?", (now.isoformat(), row["id"]))
            self._insert_change(conn, row["id"], f"Formula v{row['version']} archived ({reason})", now)

    @staticmethod
    def _insert_change(conn: sqlite3.Connection, formula_id: str, description: str, now: datetime) -> int:
        cursor = conn.execute(
            "INSERT INTO formula_version_changes (formula_id, description, created_at) VALUES (?, ?, ?)",
            (formula_id, description, now.isoformat()),
        )
        return cursor.lastrowid

    @staticmethod
    def _fetch_row(conn: sqlite3.Connection, formula_id: str) -> sqlite3.Row:
        row = conn.execute("SELECT * FROM formulas WHERE id = ?", (formula_id,)).fetchone()
        if row is None:
            raise FormulaNotFoundError(f"Formula '{formula_id}' not found")
        return row

    def _query_one(self, sql: str, params: tuple) -> Optional[sqlite3.Row]:
        try:
            with self._connect() as conn:
                return conn.execute(sql, params).fetchone()
        except sqlite3.Error as e:
            raise PersistenceError(f"Formula store query failed: {e}") from e

    def _query_all(self, sql: str, params: tuple) -> List[sqlite3.Row]:
        try:
            with self._connect() as conn:
                return conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise PersistenceError(f"Formula store query failed: {e}") from e

    @staticmethod
    def _dump_lines(lines: List[FormulaLine]) -> str:
        return json.dumps([line.model_dump() for line in lines])

    @staticmethod
    def _row_to_formula(row: sqlite3.Row) -> Formula:
        customizations = row["user_customizations"]
        return Formula(
            id=row["id"],
            user_id=row["user_id"],
            version=row["version"],
            name=row["name"],
            bases=[FormulaLine(**line) for line in json.loads(row["bases"])],
            additions=[FormulaLine(**line) for line in json.loads(row["additions"])],
            total_mg=row["total_mg"],
            rationale=row["rationale"],
            warnings=json.loads(row["warnings"]),
            disclaimers=json.loads(row["disclaimers"]),
            capsule_count=row["capsule_count"],
            user_customizations=UserCustomizations.model_validate_json(customizations) if customizations else None,
            created_at=datetime.fromisoformat(row["created_at"]),
            archived_at=datetime.fromisoformat(row["archived_at"]) if row["archived_at"] else None,
        )

    @staticmethod
    def _row_to_change(row: sqlite3.Row) -> FormulaVersionChange:
        return FormulaVersionChange(
            id=row["id"],
            formula_id=row["formula_id"],
            description=row["description"],
            created_at=datetime.fromisoformat(row["created_at"]),
        )
