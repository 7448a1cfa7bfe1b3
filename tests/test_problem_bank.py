import threading

import pytest

import db
import problem_bank
from errors import ConfigurationError, NotFoundError, ParseError
from schemas import AttemptView, ProblemMode, ToolKind

F, T = False, True


def test_parse_problem_list_splits_problems_and_fields():
    specs = problem_bank.parse_problem_list(" xyz, x⊕y , x⋀z, x⊕y→(x⋀z) ;\n pq,p→q; ")
    assert [spec.atomic_variables for spec in specs] == ["xyz", "pq"]
    assert specs[0].sub_expressions == ("x⊕y", "x⋀z", "x⊕y→(x⋀z)")
    assert specs[1].sub_expressions == ("p→q",)


def test_parse_problem_requires_expressions():
    with pytest.raises(ConfigurationError):
        problem_bank.parse_problem("xy")


def test_parse_problem_rejects_bad_expression():
    with pytest.raises(ParseError):
        problem_bank.parse_problem("xy,x⋀")


def test_bank_creation_is_idempotent(temp_db, make_settings):
    settings = make_settings()
    first = problem_bank.get_or_create_problem_bank(settings)
    second = problem_bank.get_or_create_problem_bank(settings)

    assert first.id == second.id
    assert first.problem_ids == second.problem_ids == [1, 2]
    assert first.tool_kind == ToolKind.TRUTH_TABLE
    assert len(db.get_problem_banks(settings.course_id, settings.module_id)) == 1


def test_problem_ids_are_unique_across_banks(temp_db, make_settings):
    first = problem_bank.get_or_create_problem_bank(make_settings(module_id=1))
    second = problem_bank.get_or_create_problem_bank(make_settings(module_id=2, logic_expressions="ab,a→b"))

    assert first.problem_ids == [1, 2]
    assert second.problem_ids == [3]
    problems = problem_bank.load_problems(second)
    assert problems[0].atomic_variables == "ab"
    assert problems[0].sub_expressions == ["a→b"]


def test_concurrent_first_access_creates_one_bank(temp_db, make_settings):
    settings = make_settings()
    workers = 8
    barrier = threading.Barrier(workers)
    results = []
    errors = []

    def worker():
        try:
            barrier.wait()
            results.append(problem_bank.get_or_create_problem_bank(settings).id)
        except Exception as exc:  # pragma: no cover - surfaced by the assertion below
            errors.append(exc)

    threads = [threading.Thread(target=worker) for _ in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    assert len(results) == workers
    assert len(set(results)) == 1
    assert len(db.get_problem_banks(settings.course_id, settings.module_id)) == 1
    assert db.max_problem_id() == 2


def test_bank_grows_append_only(temp_db, make_settings):
    bank = problem_bank.get_or_create_problem_bank(make_settings(logic_expressions="xy,x⋀y"))
    assert bank.problem_ids == [1]

    grown = problem_bank.get_or_create_problem_bank(make_settings(logic_expressions="xy,x⋁y;p,!p"))
    assert grown.id == bank.id
    assert grown.problem_ids == [1, 2]
    # Existing problems are never rewritten.
    assert problem_bank.load_problems(grown)[0].sub_expressions == ["x⋀y"]


def test_tool_kind_mismatch_is_a_configuration_error(temp_db, make_settings):
    problem_bank.get_or_create_problem_bank(make_settings())
    with pytest.raises(ConfigurationError):
        problem_bank.get_or_create_problem_bank(make_settings(tool_kind=ToolKind.DERIVATION))


def test_duplicate_bank_rows_are_a_configuration_error(temp_db, make_settings, monkeypatch):
    settings = make_settings()
    bank = problem_bank.get_or_create_problem_bank(settings)
    record = db.get_problem_bank_by_id(bank.id)
    monkeypatch.setattr(db, "get_problem_banks", lambda *args, **kwargs: [record, dict(record, id=record["id"] + 1)])

    with pytest.raises(ConfigurationError):
        problem_bank.get_or_create_problem_bank(settings)


def test_resolve_attempt_materializes_canonical_rows(temp_db, make_settings):
    graph = problem_bank.resolve_attempt(make_settings(), "alice")

    assert graph.mode == AttemptView.INITIAL
    assert graph.attempt.user_id == "alice"
    assert graph.attempt.submitted is False
    assert [len(entry.rows) for entry in graph.problems] == [8, 2]

    rows = graph.problems[0].rows
    assert [row.interpretation for row in rows[:4]] == ["FF", "FT", "TF", "TT"]
    assert [row.interpretation for row in rows[4:]] == ["FF", "FT", "TF", "TT"]
    assert [row.sub_expression_index for row in rows] == [0] * 4 + [1] * 4
    assert [row.correct_value for row in rows] == [F, F, F, T, F, T, T, T]
    assert all(row.input_value is None for row in rows)
    assert [row.correct_value for row in graph.problems[1].rows] == [T, F]


def test_resolve_attempt_is_idempotent(temp_db, make_settings):
    settings = make_settings()
    first = problem_bank.resolve_attempt(settings, "alice")
    second = problem_bank.resolve_attempt(settings, "alice")

    assert first.attempt.id == second.attempt.id
    assert [row.id for row in first.iter_rows()] == [row.id for row in second.iter_rows()]
    assert len(db.list_attempt_rows(first.attempt.id)) == 10


def test_attempts_are_per_user(temp_db, make_settings):
    settings = make_settings(mode=ProblemMode.PRACTICE)
    alice = problem_bank.resolve_attempt(settings, "alice")
    bob = problem_bank.resolve_attempt(settings, "bob")

    assert alice.bank.id == bob.bank.id
    assert alice.attempt.id != bob.attempt.id
    assert alice.attempt.practice is True


def test_same_user_racing_creates_one_attempt(temp_db, make_settings):
    settings = make_settings()
    workers = 4
    barrier = threading.Barrier(workers)
    attempt_ids = []
    errors = []

    def worker():
        try:
            barrier.wait()
            attempt_ids.append(problem_bank.resolve_attempt(settings, "alice").attempt.id)
        except Exception as exc:  # pragma: no cover - surfaced by the assertion below
            errors.append(exc)

    threads = [threading.Thread(target=worker) for _ in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    assert len(set(attempt_ids)) == 1
    assert len(db.list_attempt_rows(attempt_ids[0])) == 10


def test_grown_bank_adds_rows_to_open_attempts(temp_db, make_settings):
    graph = problem_bank.resolve_attempt(make_settings(logic_expressions="xy,x⋀y"), "alice")
    assert len(list(graph.iter_rows())) == 4

    grown = problem_bank.resolve_attempt(make_settings(logic_expressions="xy,x⋀y;p,!p"), "alice")
    assert grown.attempt.id == graph.attempt.id
    assert len(list(grown.iter_rows())) == 6


def test_load_attempt_graph_by_id(temp_db, make_settings):
    graph = problem_bank.resolve_attempt(make_settings(), "alice")
    reloaded = problem_bank.load_attempt_graph(graph.attempt.id)
    assert reloaded.bank.id == graph.bank.id
    assert [row.row_key for row in reloaded.iter_rows()] == [row.row_key for row in graph.iter_rows()]

    with pytest.raises(NotFoundError):
        problem_bank.load_attempt_graph(9999)


@pytest.mark.parametrize("tool_kind", [ToolKind.TRUTH_TREE, ToolKind.DERIVATION])
def test_unimplemented_tools_fail_loudly(temp_db, make_settings, tool_kind):
    with pytest.raises(NotImplementedError):
        problem_bank.resolve_attempt(make_settings(tool_kind=tool_kind), "alice")
