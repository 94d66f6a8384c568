# Copyright (c) Syntropy Systems
"""SQLite result store.

Crates and toolchains are stored once each, keyed by a normalized JSON
description, and linked to experiments through join tables. Per-result
reads and writes are not implemented by this backend.
"""
from __future__ import annotations

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from typing import TYPE_CHECKING, NoReturn

from pydantic import BaseModel, TypeAdapter, ValidationError

from crater.errors import ExperimentMissing, NotSupportedError, ParseError
from crater.models.crates import Crate, GitHubRepo
from crater.models.experiment import Experiment, ExMode
from crater.models.toolchain import Toolchain

from .base import ResultStore

if TYPE_CHECKING:
    from collections.abc import Iterator
    from pathlib import Path
    from typing import TextIO

    from crater.models.experiment import TestResult

    from .base import CrateSpec, ExperimentCrate, Producer
    from .base import Toolchain as ToolchainSpec

logger = logging.getLogger(__name__)

_CRATE_ADAPTER: TypeAdapter[ExperimentCrate] = TypeAdapter(Crate)
_TOOLCHAIN_ADAPTER: TypeAdapter[ToolchainSpec] = TypeAdapter(Toolchain)

# SQL schema for the crater database
SCHEMA = """
CREATE TABLE IF NOT EXISTS experiments (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL UNIQUE,
    mode TEXT NOT NULL
);

-- description is normalized JSON; equal structures share a row
CREATE TABLE IF NOT EXISTS crates (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    description TEXT NOT NULL UNIQUE
);

CREATE TABLE IF NOT EXISTS toolchains (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    description TEXT NOT NULL UNIQUE
);

CREATE TABLE IF NOT EXISTS experiment_crates (
    experiment_id INTEGER NOT NULL REFERENCES experiments(id),
    crate_id INTEGER NOT NULL REFERENCES crates(id),
    position INTEGER NOT NULL,
    sha TEXT,  -- resolved commit, repository crates only
    PRIMARY KEY (experiment_id, crate_id)
);

CREATE TABLE IF NOT EXISTS experiment_toolchains (
    experiment_id INTEGER NOT NULL REFERENCES experiments(id),
    toolchain_id INTEGER NOT NULL REFERENCES toolchains(id),
    position INTEGER NOT NULL,
    PRIMARY KEY (experiment_id, toolchain_id)
);
"""


def get_connection(db_path: Path) -> sqlite3.Connection:
    """
    Get a database connection with proper settings for concurrent access.

    - isolation_level=None for explicit transaction control
    - WAL mode for concurrent readers/writers
    - busy_timeout to wait for locks instead of failing immediately
    - check_same_thread=False; callers serialize access themselves
    - Row factory for dict-like access
    """
    conn = sqlite3.connect(
        str(db_path),
        timeout=5.0,
        isolation_level=None,
        check_same_thread=False,
    )
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA busy_timeout=5000")
    conn.row_factory = sqlite3.Row
    return conn


def init_db(db_path: Path) -> None:
    """Initialize the database with the schema."""
    conn = get_connection(db_path)
    try:
        conn.executescript(SCHEMA)
    finally:
        conn.close()


def normalize_description(model: BaseModel) -> str:
    """Canonical JSON for a crate or toolchain; equal structures give equal text."""
    return json.dumps(model.model_dump(mode="json"), sort_keys=True, separators=(",", ":"))


class SqlStore(ResultStore):
    """Result store backed by a single shared SQLite connection.

    Each public operation runs in its own transaction while holding a lock,
    since one connection must not be used by two threads at once.
    """

    db_path: Path

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        init_db(db_path)
        self._conn = get_connection(db_path)
        self._lock = threading.Lock()

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                yield self._conn
            except BaseException:
                self._conn.execute("ROLLBACK")
                raise
            self._conn.execute("COMMIT")

    @staticmethod
    def _experiment_id(conn: sqlite3.Connection, ex_name: str) -> int:
        row = conn.execute("SELECT id FROM experiments WHERE name = ?", (ex_name,)).fetchone()
        if row is None:
            raise ExperimentMissing(ex_name)
        return row["id"]

    @staticmethod
    def _intern(conn: sqlite3.Connection, table: str, description: str) -> int:
        """Insert a description if new and return its row id."""
        conn.execute(f"INSERT OR IGNORE INTO {table} (description) VALUES (?)", (description,))  # noqa: S608
        row = conn.execute(
            f"SELECT id FROM {table} WHERE description = ?",  # noqa: S608
            (description,),
        ).fetchone()
        return row["id"]

    def load_experiment(self, ex_name: str) -> Experiment:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT id, name, mode FROM experiments WHERE name = ?",
                (ex_name,),
            ).fetchone()
            if row is None:
                raise ExperimentMissing(ex_name)

            toolchain_rows = conn.execute(
                """
                SELECT t.description FROM experiment_toolchains et
                JOIN toolchains t ON t.id = et.toolchain_id
                WHERE et.experiment_id = ?
                ORDER BY et.position
                """,
                (row["id"],),
            ).fetchall()
            crate_rows = conn.execute(
                """
                SELECT c.description FROM experiment_crates ec
                JOIN crates c ON c.id = ec.crate_id
                WHERE ec.experiment_id = ?
                ORDER BY ec.position
                """,
                (row["id"],),
            ).fetchall()

        try:
            return Experiment(
                name=row["name"],
                mode=ExMode(row["mode"]),
                toolchains=[_TOOLCHAIN_ADAPTER.validate_json(r["description"]) for r in toolchain_rows],
                crates=[_CRATE_ADAPTER.validate_json(r["description"]) for r in crate_rows],
            )
        except (ValidationError, ValueError) as e:
            msg = f"invalid stored experiment `{ex_name}`: {e}"
            raise ParseError(msg) from e

    def create_experiment(
        self,
        ex_name: str,
        toolchains: list[ToolchainSpec],
        crates: list[ExperimentCrate],
        mode: ExMode,
    ) -> Experiment:
        ex = Experiment(name=ex_name, mode=mode, toolchains=toolchains, crates=crates)
        logger.info("defining experiment %s for %d crates", ex_name, len(crates))

        with self._transaction() as conn:
            try:
                cursor = conn.execute(
                    "INSERT INTO experiments (name, mode) VALUES (?, ?)",
                    (ex.name, ex.mode.value),
                )
            except sqlite3.IntegrityError as e:
                msg = f"experiment `{ex_name}` already exists"
                raise ValueError(msg) from e
            ex_id = cursor.lastrowid

            for position, toolchain in enumerate(ex.toolchains):
                toolchain_id = self._intern(conn, "toolchains", normalize_description(toolchain))
                conn.execute(
                    """
                    INSERT INTO experiment_toolchains (experiment_id, toolchain_id, position)
                    VALUES (?, ?, ?)
                    """,
                    (ex_id, toolchain_id, position),
                )

            for position, crate in enumerate(ex.crates):
                crate_id = self._intern(conn, "crates", normalize_description(crate))
                conn.execute(
                    """
                    INSERT INTO experiment_crates (experiment_id, crate_id, position)
                    VALUES (?, ?, ?)
                    """,
                    (ex_id, crate_id, position),
                )

        return ex

    def delete_experiment(self, ex_name: str) -> None:
        with self._transaction() as conn:
            row = conn.execute("SELECT id FROM experiments WHERE name = ?", (ex_name,)).fetchone()
            if row is None:
                return
            conn.execute("DELETE FROM experiment_crates WHERE experiment_id = ?", (row["id"],))
            conn.execute("DELETE FROM experiment_toolchains WHERE experiment_id = ?", (row["id"],))
            conn.execute("DELETE FROM experiments WHERE id = ?", (row["id"],))

    def write_shas(self, ex_name: str, shas: dict[str, str]) -> None:
        with self._transaction() as conn:
            ex_id = self._experiment_id(conn, ex_name)
            for url, sha in shas.items():
                description = normalize_description(GitHubRepo(url=url))
                cursor = conn.execute(
                    """
                    UPDATE experiment_crates SET sha = ?
                    WHERE experiment_id = ?
                      AND crate_id = (SELECT id FROM crates WHERE description = ?)
                    """,
                    (sha, ex_id, description),
                )
                if cursor.rowcount == 0:
                    logger.warning("experiment %s has no repository %s", ex_name, url)

    def read_shas(self, ex_name: str) -> dict[str, str]:
        with self._transaction() as conn:
            ex_id = self._experiment_id(conn, ex_name)
            rows = conn.execute(
                """
                SELECT c.description, ec.sha FROM experiment_crates ec
                JOIN crates c ON c.id = ec.crate_id
                WHERE ec.experiment_id = ? AND ec.sha IS NOT NULL
                ORDER BY ec.position
                """,
                (ex_id,),
            ).fetchall()

        shas: dict[str, str] = {}
        for row in rows:
            crate = _CRATE_ADAPTER.validate_json(row["description"])
            if isinstance(crate, GitHubRepo):
                shas[crate.url] = row["sha"]
        return shas

    def _unsupported(self, operation: str) -> NoReturn:
        msg = f"{operation} is not implemented by the SQL result store"
        raise NotSupportedError(msg)

    def load_test_result(
        self,
        ex_name: str,
        crate: CrateSpec,
        toolchain: ToolchainSpec,
    ) -> TestResult | None:
        self._unsupported("load_test_result")

    def delete_test_result(self, ex_name: str, crate: CrateSpec, toolchain: ToolchainSpec) -> None:
        self._unsupported("delete_test_result")

    def delete_all_test_results(self, ex_name: str) -> None:
        self._unsupported("delete_all_test_results")

    def read_test_log(self, ex_name: str, crate: CrateSpec, toolchain: ToolchainSpec) -> TextIO:
        self._unsupported("read_test_log")

    def record_test_results(
        self,
        ex_name: str,
        crate: CrateSpec,
        toolchain: ToolchainSpec,
        producer: Producer,
    ) -> TestResult:
        self._unsupported("record_test_results")
