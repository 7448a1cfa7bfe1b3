"""Pydantic models for logic modules, problem banks and attempts."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterator, List, NamedTuple, Optional

from pydantic import BaseModel, Field, computed_field

from errors import ConfigurationError

__all__ = [
    "ToolKind",
    "ProblemMode",
    "AttemptView",
    "RowKey",
    "ModuleSettings",
    "ModuleSettingsPayload",
    "ProblemBank",
    "Problem",
    "ProblemBankAttempt",
    "AttemptRow",
    "ProblemRows",
    "AttemptGraph",
    "AnswersPayload",
    "SubmitPayload",
    "GradeResult",
    "GradeRecord",
]


class ToolKind(str, Enum):
    TRUTH_TABLE = "truthtable"
    TRUTH_TREE = "truthtree"
    DERIVATION = "derivation"

    @classmethod
    def parse(cls, value: object) -> "ToolKind":
        if isinstance(value, cls):
            return value
        key = str(value or "").strip().lower()
        for kind in cls:
            if kind.value == key:
                return kind
        raise ConfigurationError(f"Unknown logic tool: {value!r}")


class ProblemMode(str, Enum):
    ASSIGNMENT = "assignment"
    PRACTICE = "practice"

    @classmethod
    def parse(cls, value: object) -> "ProblemMode":
        if isinstance(value, cls):
            return value
        key = str(value or "").strip().lower()
        for mode in cls:
            if mode.value == key:
                return mode
        raise ConfigurationError(f"Unknown problem mode: {value!r}")


class AttemptView(str, Enum):
    """How the presentation layer should render an attempt."""

    INITIAL = "initial"
    SUBMITTED = "submitted"
    FINISHED = "finished"


class RowKey(NamedTuple):
    """Identifies one attempt row the same way for rendering and input handling."""

    interpretation: str
    problem_id: int
    sub_expression_index: int

    def token(self) -> str:
        return f"{self.problem_id}:{self.sub_expression_index}:{self.interpretation}"

    @classmethod
    def parse(cls, token: str) -> "RowKey":
        parts = str(token).split(":")
        if len(parts) != 3:
            raise ValueError(f"invalid row key: {token!r}")
        problem_id, sub_index, interpretation = parts
        try:
            return cls(interpretation, int(problem_id), int(sub_index))
        except ValueError as exc:
            raise ValueError(f"invalid row key: {token!r}") from exc


class ModuleSettingsPayload(BaseModel):
    course_id: int
    name: str = ""
    intro: str = ""
    mode: ProblemMode = ProblemMode.ASSIGNMENT
    tool_kind: ToolKind = ToolKind.TRUTH_TABLE
    logic_expressions: str = Field(
        description="Problems separated by ';', each 'atomics,expr1,expr2,...'.",
    )


class ModuleSettings(ModuleSettingsPayload):
    module_id: int
    created_at: Optional[datetime] = None
    modified_at: Optional[datetime] = None

    @property
    def practice(self) -> bool:
        return self.mode == ProblemMode.PRACTICE


class ProblemBank(BaseModel):
    id: int
    course_id: int
    module_id: int
    tool_kind: ToolKind
    problem_ids: List[int] = Field(default_factory=list)
    created_at: Optional[datetime] = None
    modified_at: Optional[datetime] = None


class Problem(BaseModel):
    id: int
    atomic_variables: str
    sub_expressions: List[str]

    @property
    def interpretation_count(self) -> int:
        return 2 ** len(self.atomic_variables)

    @property
    def row_count(self) -> int:
        return len(self.sub_expressions) * self.interpretation_count


class ProblemBankAttempt(BaseModel):
    id: int
    problem_bank_id: int
    user_id: str
    practice: bool = False
    submitted: bool = False
    grade_recorded: bool = False
    score: Optional[float] = None
    created_at: Optional[datetime] = None
    submitted_at: Optional[datetime] = None


class AttemptRow(BaseModel):
    id: int
    attempt_id: int
    problem_id: int
    sub_expression_index: int
    interpretation: str
    input_value: Optional[bool] = None
    correct_value: bool

    @property
    def key(self) -> RowKey:
        return RowKey(self.interpretation, self.problem_id, self.sub_expression_index)

    @computed_field
    @property
    def row_key(self) -> str:
        return self.key.token()

    @property
    def is_correct(self) -> bool:
        return self.input_value is not None and self.input_value == self.correct_value


class ProblemRows(BaseModel):
    problem: Problem
    rows: List[AttemptRow] = Field(default_factory=list)


class AttemptGraph(BaseModel):
    """Everything the presentation layer needs to render one attempt."""

    bank: ProblemBank
    attempt: ProblemBankAttempt
    problems: List[ProblemRows] = Field(default_factory=list)
    mode: AttemptView = AttemptView.INITIAL

    def iter_rows(self) -> Iterator[AttemptRow]:
        for entry in self.problems:
            yield from entry.rows


class AnswersPayload(BaseModel):
    user_id: str
    answers: Dict[str, Any] = Field(
        default_factory=dict,
        description="Row key token ('problem:sub_index:interpretation') to answer (true/false, 1/0/-1 or T/F); null clears.",
    )


class SubmitPayload(AnswersPayload):
    pass


class GradeResult(BaseModel):
    attempt_id: int
    user_id: str
    score: float
    practice: bool
    submitted: bool
    recorded: bool = False
    mode: AttemptView = AttemptView.SUBMITTED


class GradeRecord(BaseModel):
    course_id: int
    module_id: int
    user_id: str
    grade: float
    recorded_at: Optional[datetime] = None
