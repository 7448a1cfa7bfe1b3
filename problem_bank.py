"""Problem-bank lifecycle: get-or-create for banks, problems, attempts and rows.

Every request re-resolves the attempt graph from storage. Creation is
idempotent and only the bank/problem creation path takes the module lock;
once a bank exists, resolution is plain reads.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import db
import truth_table
from errors import ConcurrencyViolation, ConfigurationError, NotFoundError, StorageError
from module_lock import module_lock
from schemas import (
    AttemptGraph,
    AttemptRow,
    AttemptView,
    ModuleSettings,
    Problem,
    ProblemBank,
    ProblemBankAttempt,
    ProblemRows,
    ToolKind,
)

logger = logging.getLogger(__name__)

PROBLEM_DELIMITER = ";"
FIELD_DELIMITER = ","


@dataclass(frozen=True)
class ProblemSpec:
    """One problem parsed from a module's raw expression list."""

    atomic_variables: str
    sub_expressions: Tuple[str, ...]


# ------------------------------------------------------------------
# raw problem list parsing
# ------------------------------------------------------------------
def _problem_chunks(raw: str) -> List[str]:
    return [chunk.strip() for chunk in str(raw or "").split(PROBLEM_DELIMITER) if chunk.strip()]


def parse_problem(text: str) -> ProblemSpec:
    """Parse ``"xyz,x⊕y,x⋀z"`` into atomic variables and sub-expressions."""

    fields = [field.strip() for field in text.split(FIELD_DELIMITER)]
    atomic_variables = fields[0]
    expressions = tuple(field for field in fields[1:] if field)
    truth_table.validate_atomic_variables(atomic_variables)
    if not expressions:
        raise ConfigurationError(f"Problem {text!r} has no expressions")
    for expression in expressions:
        truth_table.check_variables(atomic_variables, expression)
    return ProblemSpec(atomic_variables=atomic_variables, sub_expressions=expressions)


def parse_problem_list(raw: str) -> List[ProblemSpec]:
    return [parse_problem(chunk) for chunk in _problem_chunks(raw)]


# ------------------------------------------------------------------
# record conversion
# ------------------------------------------------------------------
def _parse_id_list(value: Optional[str]) -> List[int]:
    try:
        return [int(part) for part in str(value or "").split(",") if part.strip()]
    except ValueError as exc:
        raise ConfigurationError(f"Malformed problem id list: {value!r}") from exc


def _bank_from_record(record: Dict[str, Any]) -> ProblemBank:
    return ProblemBank(
        id=record["id"],
        course_id=record["course_id"],
        module_id=record["module_id"],
        tool_kind=ToolKind.parse(record["tool_kind"]),
        problem_ids=_parse_id_list(record.get("problem_id_list")),
        created_at=record.get("created_at"),
        modified_at=record.get("modified_at"),
    )


def _attempt_from_record(record: Dict[str, Any]) -> ProblemBankAttempt:
    return ProblemBankAttempt(
        id=record["id"],
        problem_bank_id=record["problem_bank_id"],
        user_id=record["user_id"],
        practice=bool(record.get("practice")),
        submitted=bool(record.get("submitted")),
        grade_recorded=bool(record.get("grade_recorded")),
        score=record.get("score"),
        created_at=record.get("created_at"),
        submitted_at=record.get("submitted_at"),
    )


# ------------------------------------------------------------------
# problem bank
# ------------------------------------------------------------------
def _lookup_bank(settings: ModuleSettings, con: Optional[sqlite3.Connection] = None) -> Optional[ProblemBank]:
    records = db.get_problem_banks(settings.course_id, settings.module_id, con=con)
    if not records:
        return None
    if len(records) > 1:
        raise ConfigurationError(
            f"Found {len(records)} problem banks for course {settings.course_id} module {settings.module_id}"
        )
    bank = _bank_from_record(records[0])
    if bank.tool_kind != settings.tool_kind:
        raise ConfigurationError(
            f"Problem bank {bank.id} uses {bank.tool_kind.value} but module {settings.module_id} "
            f"is configured for {settings.tool_kind.value}"
        )
    return bank


def _insert_problems(con: sqlite3.Connection, specs: Sequence[ProblemSpec]) -> List[int]:
    # Ids come from the global maximum so they stay unique across banks.
    next_id = db.max_problem_id(con) + 1
    problem_ids: List[int] = []
    for offset, spec in enumerate(specs):
        problem_id = next_id + offset
        db.insert_problem(con, problem_id, spec.atomic_variables, spec.sub_expressions)
        problem_ids.append(problem_id)
    return problem_ids


def _create_or_extend_bank(settings: ModuleSettings) -> ProblemBank:
    specs = parse_problem_list(settings.logic_expressions)
    if not specs:
        raise ConfigurationError(f"Module {settings.module_id} has no problems")

    with db.transaction() as con:
        bank = _lookup_bank(settings, con)
        if bank is None:
            problem_ids = _insert_problems(con, specs)
            bank_id = db.insert_problem_bank(
                con,
                course_id=settings.course_id,
                module_id=settings.module_id,
                tool_kind=settings.tool_kind.value,
                problem_ids=problem_ids,
            )
            logger.info(
                "Created problem bank %s for course %s module %s with problems %s",
                bank_id,
                settings.course_id,
                settings.module_id,
                problem_ids,
            )
        elif len(specs) > len(bank.problem_ids):
            added = _insert_problems(con, specs[len(bank.problem_ids):])
            db.update_problem_bank_ids(con, bank.id, bank.problem_ids + added)
            logger.info("Appended problems %s to problem bank %s", added, bank.id)
        elif len(specs) < len(bank.problem_ids):
            logger.warning(
                "Module %s lists %d problems but bank %s already holds %d; problems are never removed",
                settings.module_id,
                len(specs),
                bank.id,
                len(bank.problem_ids),
            )

        bank = _lookup_bank(settings, con)
    if bank is None:
        raise ConcurrencyViolation(
            f"Problem bank for course {settings.course_id} module {settings.module_id} missing after creation"
        )
    return bank


def get_or_create_problem_bank(settings: ModuleSettings) -> ProblemBank:
    """Return the module's bank, creating it (and its problems) on first use."""

    bank = _lookup_bank(settings)
    if bank is not None and len(_problem_chunks(settings.logic_expressions)) <= len(bank.problem_ids):
        return bank

    with module_lock(settings.module_id):
        return _create_or_extend_bank(settings)


def load_problems(bank: ProblemBank) -> List[Problem]:
    records = db.get_problems(bank.problem_ids)
    problems: List[Problem] = []
    for problem_id in bank.problem_ids:
        record = records.get(problem_id)
        if record is None:
            raise ConfigurationError(f"Problem bank {bank.id} references missing problem {problem_id}")
        problems.append(
            Problem(
                id=record["id"],
                atomic_variables=record["atomic_variables"],
                sub_expressions=record["sub_expressions"],
            )
        )
    return problems


# ------------------------------------------------------------------
# attempts
# ------------------------------------------------------------------
def get_or_create_attempt(bank: ProblemBank, user_id: str, *, practice: bool = False) -> ProblemBankAttempt:
    """Return the user's attempt for ``bank``; a user only races with themselves here."""

    try:
        record = db.get_attempt(bank.id, user_id)
        if record is None:
            if db.insert_attempt_if_absent(bank.id, user_id, practice):
                logger.info("Created attempt for user %s on problem bank %s", user_id, bank.id)
            record = db.get_attempt(bank.id, user_id)
    except sqlite3.Error as exc:
        raise StorageError(f"Could not resolve attempt for user {user_id}: {exc}") from exc
    if record is None:
        raise ConcurrencyViolation(f"Attempt for user {user_id} on bank {bank.id} missing after insert")
    return _attempt_from_record(record)


def get_attempt(attempt_id: int) -> ProblemBankAttempt:
    record = db.get_attempt_by_id(attempt_id)
    if record is None:
        raise NotFoundError(f"Attempt {attempt_id} not found")
    return _attempt_from_record(record)


# ------------------------------------------------------------------
# attempt rows
# ------------------------------------------------------------------
def _truth_table_rows(attempt: ProblemBankAttempt, problem: Problem, create: bool) -> List[AttemptRow]:
    existing = db.list_attempt_rows(attempt.id, problem.id)
    if existing or not create:
        if existing and len(existing) != problem.row_count:
            raise ConfigurationError(
                f"Attempt {attempt.id} holds {len(existing)} rows for problem {problem.id}, "
                f"expected {problem.row_count}"
            )
        return [AttemptRow(**row) for row in existing]

    correct = truth_table.build_truth_table(problem.atomic_variables, problem.sub_expressions)
    labels = truth_table.interpretation_labels(problem.atomic_variables)

    with db.transaction() as con:
        if db.count_attempt_rows(con, attempt.id, problem.id) == 0:
            db.insert_attempt_rows(
                con,
                (
                    {
                        "attempt_id": attempt.id,
                        "problem_id": problem.id,
                        "sub_expression_index": sub_index,
                        "interpretation": label,
                        "input_value": None,
                        "correct_value": value,
                    }
                    for sub_index, values in enumerate(correct)
                    for label, value in zip(labels, values)
                ),
            )
            logger.debug("Created %d rows for attempt %s problem %s", problem.row_count, attempt.id, problem.id)
        rows = db.list_attempt_rows(attempt.id, problem.id, con=con)
    return [AttemptRow(**row) for row in rows]


def _unimplemented(label: str) -> Callable[[ProblemBankAttempt, Problem, bool], List[AttemptRow]]:
    def build(attempt: ProblemBankAttempt, problem: Problem, create: bool) -> List[AttemptRow]:
        raise NotImplementedError(f"The {label} logic tool is not implemented")

    return build


_ROW_BUILDERS: Dict[ToolKind, Callable[[ProblemBankAttempt, Problem, bool], List[AttemptRow]]] = {
    ToolKind.TRUTH_TABLE: _truth_table_rows,
    ToolKind.TRUTH_TREE: _unimplemented("truth tree"),
    ToolKind.DERIVATION: _unimplemented("derivation"),
}


def ensure_attempt_rows(
    attempt: ProblemBankAttempt,
    problem: Problem,
    tool_kind: ToolKind = ToolKind.TRUTH_TABLE,
    *,
    create: bool = True,
) -> List[AttemptRow]:
    """Load the problem's rows for ``attempt``, materializing them on first reference."""

    return _ROW_BUILDERS[tool_kind](attempt, problem, create)


# ------------------------------------------------------------------
# attempt graph
# ------------------------------------------------------------------
def build_attempt_graph(bank: ProblemBank, attempt: ProblemBankAttempt) -> AttemptGraph:
    # Submitted attempts are history; do not grow them if the bank was extended.
    create = not attempt.submitted
    problems = [
        ProblemRows(problem=problem, rows=ensure_attempt_rows(attempt, problem, bank.tool_kind, create=create))
        for problem in load_problems(bank)
    ]
    mode = AttemptView.FINISHED if attempt.submitted else AttemptView.INITIAL
    return AttemptGraph(bank=bank, attempt=attempt, problems=problems, mode=mode)


def resolve_attempt(settings: ModuleSettings, user_id: str) -> AttemptGraph:
    """Resolve (creating as needed) the full attempt graph for ``user_id``."""

    bank = get_or_create_problem_bank(settings)
    attempt = get_or_create_attempt(bank, user_id, practice=settings.practice)
    return build_attempt_graph(bank, attempt)


def load_attempt_graph(attempt_id: int) -> AttemptGraph:
    attempt = get_attempt(attempt_id)
    record = db.get_problem_bank_by_id(attempt.problem_bank_id)
    if record is None:
        raise ConcurrencyViolation(f"Problem bank {attempt.problem_bank_id} of attempt {attempt_id} vanished")
    return build_attempt_graph(_bank_from_record(record), attempt)
