import json
import logging
import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

from db_pool import SQLiteConnectionPool
from errors import StorageError

logger = logging.getLogger(__name__)

DB_PATH = os.getenv("DB_PATH", "data.db")

# Initialize connection pool
_pool = SQLiteConnectionPool(DB_PATH, max_connections=int(os.getenv("LOGIC_DB_MAX_CONNECTIONS", "10") or 10))


def _conn():
    """Return a context manager for acquiring a pooled SQLite connection."""
    return _pool.get_connection()


def _exec(sql: str, params: Iterable = ()):
    with _pool.get_connection() as con:
        cur = con.execute(sql, params)
        con.commit()
        return cur

def _query(sql: str, params: Iterable = ()) -> list[sqlite3.Row]:
    with _pool.get_connection() as con:
        cur = con.execute(sql, params)
        return cur.fetchall()


def _rows(con: Optional[sqlite3.Connection], sql: str, params: Iterable = ()) -> list[sqlite3.Row]:
    if con is None:
        return _query(sql, params)
    return con.execute(sql, params).fetchall()


def utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


def json_dumps(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=False, separators=(",", ":"))


@contextmanager
def transaction() -> Iterator[sqlite3.Connection]:
    """Run the enclosed statements as one atomic unit.

    ``BEGIN IMMEDIATE`` takes the database write lock up front, so reads made
    inside the block (e.g. ``MAX(id)``) stay valid until commit. Storage
    failures roll back and surface as :class:`StorageError`; any other
    exception rolls back and propagates unchanged.
    """
    with _conn() as con:
        try:
            con.execute("BEGIN IMMEDIATE")
        except sqlite3.Error as exc:
            raise StorageError(f"could not start transaction: {exc}") from exc
        try:
            yield con
        except sqlite3.Error as exc:
            con.rollback()
            raise StorageError(f"transaction rolled back: {exc}") from exc
        except BaseException:
            con.rollback()
            raise
        try:
            con.commit()
        except sqlite3.Error as exc:
            con.rollback()
            raise StorageError(f"commit failed: {exc}") from exc


# -------------- schema --------------
def init():
    Path(DB_PATH).parent.mkdir(parents=True, exist_ok=True)
    with _conn() as con:
        con.executescript(
            """
            PRAGMA foreign_keys = ON;
            PRAGMA journal_mode=WAL;

            CREATE TABLE IF NOT EXISTS logic_module (
              module_id          INTEGER PRIMARY KEY,
              course_id          INTEGER NOT NULL,
              name               TEXT NOT NULL DEFAULT '',
              intro              TEXT NOT NULL DEFAULT '',
              mode               TEXT NOT NULL DEFAULT 'assignment',
              tool_kind          TEXT NOT NULL DEFAULT 'truthtable',
              logic_expressions  TEXT NOT NULL,
              created_at         TIMESTAMP NOT NULL,
              modified_at        TIMESTAMP
            );

            CREATE INDEX IF NOT EXISTS idx_logic_module_course ON logic_module(course_id);

            CREATE TABLE IF NOT EXISTS problem_bank (
              id               INTEGER PRIMARY KEY AUTOINCREMENT,
              course_id        INTEGER NOT NULL,
              module_id        INTEGER NOT NULL,
              created_at       TIMESTAMP NOT NULL,
              modified_at      TIMESTAMP,
              tool_kind        TEXT NOT NULL,
              problem_id_list  TEXT NOT NULL DEFAULT '',
              UNIQUE(course_id, module_id)
            );

            CREATE TABLE IF NOT EXISTS problem (
              id                INTEGER PRIMARY KEY,
              atomic_variables  TEXT NOT NULL,
              sub_expressions   TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS problem_bank_attempt (
              id               INTEGER PRIMARY KEY AUTOINCREMENT,
              problem_bank_id  INTEGER NOT NULL,
              user_id          TEXT NOT NULL,
              practice         INTEGER NOT NULL DEFAULT 0,
              submitted        INTEGER NOT NULL DEFAULT 0,
              grade_recorded   INTEGER NOT NULL DEFAULT 0,
              score            REAL,
              created_at       TIMESTAMP NOT NULL,
              submitted_at     TIMESTAMP,
              UNIQUE(problem_bank_id, user_id),
              FOREIGN KEY(problem_bank_id) REFERENCES problem_bank(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS attempt_row (
              id                    INTEGER PRIMARY KEY AUTOINCREMENT,
              attempt_id            INTEGER NOT NULL,
              problem_id            INTEGER NOT NULL,
              sub_expression_index  INTEGER NOT NULL,
              interpretation        TEXT NOT NULL,
              input_value           INTEGER CHECK (input_value IN (0, 1)),
              correct_value         INTEGER NOT NULL CHECK (correct_value IN (0, 1)),
              UNIQUE(attempt_id, problem_id, sub_expression_index, interpretation),
              FOREIGN KEY(attempt_id) REFERENCES problem_bank_attempt(id) ON DELETE CASCADE,
              FOREIGN KEY(problem_id) REFERENCES problem(id)
            );

            CREATE INDEX IF NOT EXISTS idx_attempt_row_problem ON attempt_row(attempt_id, problem_id);

            CREATE TABLE IF NOT EXISTS grades (
              course_id    INTEGER NOT NULL,
              module_id    INTEGER NOT NULL,
              user_id      TEXT NOT NULL,
              grade        REAL NOT NULL,
              recorded_at  TIMESTAMP NOT NULL,
              PRIMARY KEY(course_id, module_id, user_id)
            );
            """
        )


# -------------- module settings --------------
def upsert_module(settings: Dict[str, Any]) -> None:
    now = utcnow()
    _exec(
        """
        INSERT INTO logic_module(
          module_id, course_id, name, intro, mode, tool_kind, logic_expressions, created_at
        ) VALUES (?,?,?,?,?,?,?,?)
        ON CONFLICT(module_id) DO UPDATE SET
          course_id=excluded.course_id,
          name=excluded.name,
          intro=excluded.intro,
          mode=excluded.mode,
          tool_kind=excluded.tool_kind,
          logic_expressions=excluded.logic_expressions,
          modified_at=?
        """,
        (
            int(settings["module_id"]),
            int(settings["course_id"]),
            settings.get("name") or "",
            settings.get("intro") or "",
            settings.get("mode") or "assignment",
            settings.get("tool_kind") or "truthtable",
            settings["logic_expressions"],
            now,
            now,
        ),
    )


def get_module(module_id: int) -> Optional[Dict[str, Any]]:
    rows = _query("SELECT * FROM logic_module WHERE module_id = ?", (int(module_id),))
    return dict(rows[0]) if rows else None


def list_modules(course_id: Optional[int] = None) -> List[Dict[str, Any]]:
    if course_id is None:
        rows = _query("SELECT * FROM logic_module ORDER BY module_id")
    else:
        rows = _query("SELECT * FROM logic_module WHERE course_id = ? ORDER BY module_id", (int(course_id),))
    return [dict(row) for row in rows]


def delete_module(module_id: int) -> bool:
    cur = _exec("DELETE FROM logic_module WHERE module_id = ?", (int(module_id),))
    return cur.rowcount > 0


# -------------- problem banks & problems --------------
def get_problem_banks(course_id: int, module_id: int, con: Optional[sqlite3.Connection] = None) -> List[Dict[str, Any]]:
    rows = _rows(
        con,
        "SELECT * FROM problem_bank WHERE course_id = ? AND module_id = ? ORDER BY id",
        (int(course_id), int(module_id)),
    )
    return [dict(row) for row in rows]


def get_problem_bank_by_id(bank_id: int) -> Optional[Dict[str, Any]]:
    rows = _query("SELECT * FROM problem_bank WHERE id = ?", (int(bank_id),))
    return dict(rows[0]) if rows else None


def insert_problem_bank(
    con: sqlite3.Connection,
    *,
    course_id: int,
    module_id: int,
    tool_kind: str,
    problem_ids: Sequence[int],
) -> int:
    cur = con.execute(
        """
        INSERT INTO problem_bank(course_id, module_id, created_at, tool_kind, problem_id_list)
        VALUES (?,?,?,?,?)
        """,
        (int(course_id), int(module_id), utcnow(), tool_kind, ",".join(str(pid) for pid in problem_ids)),
    )
    return int(cur.lastrowid)


def update_problem_bank_ids(con: sqlite3.Connection, bank_id: int, problem_ids: Sequence[int]) -> None:
    con.execute(
        "UPDATE problem_bank SET problem_id_list = ? WHERE id = ?",
        (",".join(str(pid) for pid in problem_ids), int(bank_id)),
    )


def max_problem_id(con: Optional[sqlite3.Connection] = None) -> int:
    rows = _rows(con, "SELECT MAX(id) AS max_id FROM problem")
    value = rows[0]["max_id"] if rows else None
    return int(value) if value is not None else 0


def insert_problem(con: sqlite3.Connection, problem_id: int, atomic_variables: str, sub_expressions: Sequence[str]) -> None:
    con.execute(
        "INSERT INTO problem(id, atomic_variables, sub_expressions) VALUES (?,?,?)",
        (int(problem_id), atomic_variables, json_dumps(list(sub_expressions))),
    )


def get_problems(problem_ids: Sequence[int]) -> Dict[int, Dict[str, Any]]:
    ids = [int(pid) for pid in problem_ids]
    if not ids:
        return {}
    placeholders = ",".join("?" for _ in ids)
    rows = _query(f"SELECT * FROM problem WHERE id IN ({placeholders})", ids)
    problems: Dict[int, Dict[str, Any]] = {}
    for row in rows:
        record = dict(row)
        record["sub_expressions"] = json.loads(record["sub_expressions"])
        problems[int(record["id"])] = record
    return problems


# -------------- attempts --------------
def insert_attempt_if_absent(problem_bank_id: int, user_id: str, practice: bool) -> bool:
    cur = _exec(
        """
        INSERT OR IGNORE INTO problem_bank_attempt(problem_bank_id, user_id, practice, submitted, created_at)
        VALUES (?,?,?,0,?)
        """,
        (int(problem_bank_id), str(user_id), 1 if practice else 0, utcnow()),
    )
    return cur.rowcount > 0


def get_attempt(problem_bank_id: int, user_id: str) -> Optional[Dict[str, Any]]:
    rows = _query(
        "SELECT * FROM problem_bank_attempt WHERE problem_bank_id = ? AND user_id = ?",
        (int(problem_bank_id), str(user_id)),
    )
    return dict(rows[0]) if rows else None


def get_attempt_by_id(attempt_id: int, con: Optional[sqlite3.Connection] = None) -> Optional[Dict[str, Any]]:
    rows = _rows(con, "SELECT * FROM problem_bank_attempt WHERE id = ?", (int(attempt_id),))
    return dict(rows[0]) if rows else None


def mark_attempt_submitted(con: sqlite3.Connection, attempt_id: int, score: float) -> bool:
    """Flip ``submitted`` once; returns False when it was already set."""
    cur = con.execute(
        """
        UPDATE problem_bank_attempt
        SET submitted = 1, score = ?, submitted_at = ?
        WHERE id = ? AND submitted = 0
        """,
        (float(score), utcnow(), int(attempt_id)),
    )
    return cur.rowcount > 0


def mark_grade_recorded(attempt_id: int) -> None:
    _exec("UPDATE problem_bank_attempt SET grade_recorded = 1 WHERE id = ?", (int(attempt_id),))


# -------------- attempt rows --------------
def _encode_input(value: Optional[bool]) -> Optional[int]:
    if value is None:
        return None
    return 1 if value else 0


def count_attempt_rows(con: sqlite3.Connection, attempt_id: int, problem_id: int) -> int:
    row = con.execute(
        "SELECT COUNT(*) AS n FROM attempt_row WHERE attempt_id = ? AND problem_id = ?",
        (int(attempt_id), int(problem_id)),
    ).fetchone()
    return int(row["n"])


def insert_attempt_rows(con: sqlite3.Connection, rows: Iterable[Dict[str, Any]]) -> int:
    payload: List[Tuple[Any, ...]] = [
        (
            int(row["attempt_id"]),
            int(row["problem_id"]),
            int(row["sub_expression_index"]),
            row["interpretation"],
            _encode_input(row.get("input_value")),
            1 if row["correct_value"] else 0,
        )
        for row in rows
    ]
    con.executemany(
        """
        INSERT INTO attempt_row(
          attempt_id, problem_id, sub_expression_index, interpretation, input_value, correct_value
        ) VALUES (?,?,?,?,?,?)
        """,
        payload,
    )
    return len(payload)


def list_attempt_rows(
    attempt_id: int,
    problem_id: Optional[int] = None,
    con: Optional[sqlite3.Connection] = None,
) -> List[Dict[str, Any]]:
    """Rows in creation order, which is the canonical interpretation order."""
    if problem_id is None:
        rows = _rows(con, "SELECT * FROM attempt_row WHERE attempt_id = ? ORDER BY id", (int(attempt_id),))
    else:
        rows = _rows(
            con,
            "SELECT * FROM attempt_row WHERE attempt_id = ? AND problem_id = ? ORDER BY id",
            (int(attempt_id), int(problem_id)),
        )
    result = []
    for row in rows:
        record = dict(row)
        raw_input = record.get("input_value")
        record["input_value"] = None if raw_input is None else bool(raw_input)
        record["correct_value"] = bool(record["correct_value"])
        result.append(record)
    return result


def update_input_values(
    con: sqlite3.Connection,
    attempt_id: int,
    updates: Iterable[Tuple[Optional[bool], int, int, str]],
) -> int:
    """Apply ``(value, problem_id, sub_expression_index, interpretation)`` updates."""
    changed = 0
    for value, problem_id, sub_index, interpretation in updates:
        cur = con.execute(
            """
            UPDATE attempt_row SET input_value = ?
            WHERE attempt_id = ? AND problem_id = ? AND sub_expression_index = ? AND interpretation = ?
            """,
            (_encode_input(value), int(attempt_id), int(problem_id), int(sub_index), interpretation),
        )
        changed += cur.rowcount
    return changed


# -------------- grades --------------
def upsert_grade(course_id: int, module_id: int, user_id: str, grade: float) -> None:
    try:
        _exec(
            """
            INSERT INTO grades(course_id, module_id, user_id, grade, recorded_at)
            VALUES (?,?,?,?,?)
            ON CONFLICT(course_id, module_id, user_id) DO UPDATE SET
              grade=excluded.grade,
              recorded_at=excluded.recorded_at
            """,
            (int(course_id), int(module_id), str(user_id), float(grade), utcnow()),
        )
    except sqlite3.Error as exc:
        raise StorageError(f"could not record grade for user {user_id}: {exc}") from exc


def list_grades(module_id: int) -> List[Dict[str, Any]]:
    rows = _query(
        "SELECT * FROM grades WHERE module_id = ? ORDER BY user_id",
        (int(module_id),),
    )
    return [dict(row) for row in rows]
