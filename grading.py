"""Attempt store and grading engine."""

from __future__ import annotations

import logging
from typing import Any, Iterable, List, Mapping, Optional, Protocol, Tuple, Union

import db
import problem_bank
from env_validation import get_env_bool
from errors import AttemptClosedError, ConcurrencyViolation, NotFoundError
from schemas import AttemptRow, AttemptView, GradeResult, ProblemBank, RowKey

logger = logging.getLogger(__name__)

_TRUE_STRINGS = {"1", "t", "true", "yes", "on"}
_FALSE_STRINGS = {"0", "f", "false", "no", "off"}
_UNANSWERED_STRINGS = {"", "-1", "none", "null"}


class GradeSink(Protocol):
    def record(self, bank: ProblemBank, user_id: str, percentage: float) -> None:
        ...


class DatabaseGradeSink:
    """Stores the latest grade per (course, module, user) in the ``grades`` table."""

    def record(self, bank: ProblemBank, user_id: str, percentage: float) -> None:
        db.upsert_grade(bank.course_id, bank.module_id, user_id, percentage)
        logger.info(
            "Recorded grade %.2f for user %s in course %s module %s",
            percentage,
            user_id,
            bank.course_id,
            bank.module_id,
        )


def coerce_input_value(raw: Any) -> Optional[bool]:
    """Map form-style answers onto ``True``/``False``/``None`` (unanswered)."""

    if raw is None or isinstance(raw, bool):
        return raw
    if isinstance(raw, int):
        if raw == -1:
            return None
        if raw in (0, 1):
            return bool(raw)
        raise ValueError(f"invalid answer value: {raw!r}")
    text = str(raw).strip().lower()
    if text in _UNANSWERED_STRINGS:
        return None
    if text in _TRUE_STRINGS:
        return True
    if text in _FALSE_STRINGS:
        return False
    raise ValueError(f"invalid answer value: {raw!r}")


def review_edits_allowed() -> bool:
    return get_env_bool("LOGIC_ALLOW_REVIEW_EDITS", False)


def _normalize_answers(answers: Mapping[Union[str, RowKey], Any]) -> List[Tuple[Optional[bool], int, int, str]]:
    updates: List[Tuple[Optional[bool], int, int, str]] = []
    for key, raw in answers.items():
        row_key = key if isinstance(key, RowKey) else RowKey.parse(key)
        updates.append(
            (coerce_input_value(raw), row_key.problem_id, row_key.sub_expression_index, row_key.interpretation)
        )
    return updates


def apply_input(
    attempt_id: int,
    answers: Mapping[Union[str, RowKey], Any],
    *,
    allow_after_submit: Optional[bool] = None,
) -> int:
    """Write submitted values onto the attempt's rows; absent keys are left alone.

    Returns the number of rows updated. Keys that do not name a row of this
    attempt are ignored.
    """

    allowed = review_edits_allowed() if allow_after_submit is None else allow_after_submit
    updates = _normalize_answers(answers)

    with db.transaction() as con:
        record = db.get_attempt_by_id(attempt_id, con=con)
        if record is None:
            raise NotFoundError(f"Attempt {attempt_id} not found")
        if record["submitted"] and not allowed:
            raise AttemptClosedError(f"Attempt {attempt_id} has already been submitted")
        changed = db.update_input_values(con, attempt_id, updates)

    logger.debug("Applied %d of %d answers to attempt %s", changed, len(updates), attempt_id)
    return changed


def score_rows(rows: Iterable[AttemptRow]) -> float:
    """Percentage of rows whose input equals the correct value; unanswered never matches."""

    total = 0
    matches = 0
    for row in rows:
        total += 1
        if row.is_correct:
            matches += 1
    if total == 0:
        return 0.0
    return 100.0 * matches / total


def grade_attempt(attempt_id: int) -> float:
    rows = [AttemptRow(**row) for row in db.list_attempt_rows(attempt_id)]
    return score_rows(rows)


def _record_grade(
    bank: ProblemBank,
    attempt_id: int,
    user_id: str,
    score: float,
    sink: Optional[GradeSink],
) -> bool:
    try:
        (sink or DatabaseGradeSink()).record(bank, user_id, score)
    except Exception:
        logger.error("Grade delivery failed for attempt %s; it will be retried on resubmit", attempt_id, exc_info=True)
        raise
    db.mark_grade_recorded(attempt_id)
    return True


def submit_attempt(
    attempt_id: int,
    answers: Optional[Mapping[Union[str, RowKey], Any]] = None,
    *,
    sink: Optional[GradeSink] = None,
) -> GradeResult:
    """Apply final answers, grade, close the attempt and report the grade once.

    The sink runs after the attempt is closed. If it fails, the attempt stays
    closed with ``grade_recorded`` unset and the next submit retries the sink
    with the stored score.
    """

    # Makes sure every row exists before scoring.
    graph = problem_bank.load_attempt_graph(attempt_id)
    attempt = graph.attempt
    if attempt.submitted:
        score = attempt.score if attempt.score is not None else grade_attempt(attempt.id)
        recorded = False
        if not attempt.practice and not attempt.grade_recorded:
            logger.warning("Retrying grade delivery for submitted attempt %s", attempt_id)
            recorded = _record_grade(graph.bank, attempt.id, attempt.user_id, score, sink)
        else:
            logger.info("Attempt %s already submitted; returning stored score", attempt_id)
        return GradeResult(
            attempt_id=attempt.id,
            user_id=attempt.user_id,
            score=score,
            practice=attempt.practice,
            submitted=True,
            recorded=recorded,
            mode=AttemptView.FINISHED,
        )

    if answers:
        apply_input(attempt_id, answers)

    with db.transaction() as con:
        rows = [AttemptRow(**row) for row in db.list_attempt_rows(attempt_id, con=con)]
        score = score_rows(rows)
        closed_now = db.mark_attempt_submitted(con, attempt_id, score)

    if not closed_now:
        # Another request submitted between our read and the transaction.
        record = db.get_attempt_by_id(attempt_id)
        if record is None:
            raise ConcurrencyViolation(f"Attempt {attempt_id} vanished during submission")
        return GradeResult(
            attempt_id=attempt.id,
            user_id=attempt.user_id,
            score=record["score"] if record["score"] is not None else score,
            practice=attempt.practice,
            submitted=True,
            recorded=False,
            mode=AttemptView.FINISHED,
        )

    logger.info("Attempt %s submitted by user %s with score %.2f", attempt_id, attempt.user_id, score)
    recorded = False
    if not attempt.practice:
        recorded = _record_grade(graph.bank, attempt.id, attempt.user_id, score, sink)

    return GradeResult(
        attempt_id=attempt.id,
        user_id=attempt.user_id,
        score=score,
        practice=attempt.practice,
        submitted=True,
        recorded=recorded,
    )
