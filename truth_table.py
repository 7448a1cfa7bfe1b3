"""Canonical truth-table generation for logic problems.

The evaluator enumerates interpretations in the order variables first appear
in an expression. Sub-expressions of the same problem mention their variables
in different orders (``x⋀y`` vs ``y⊕x``), so tabulating each on its own would
produce rows that do not line up. Every expression is therefore evaluated as

    ((v1⋁!v1)⋀(v2⋁!v2)⋀...)⋀(E)

The prefix is a tautology, so values are unchanged, but it is scanned first and
pins the variable order to the problem's atomic-variable string. It also makes
expressions over a subset of the variables produce the full ``2**n`` rows.
"""

from __future__ import annotations

from typing import List, Sequence

import logic_expr
from errors import ConfigurationError, VariableMismatchError

_FT = ("F", "T")

# 2**10 interpretations per sub-expression is the largest table an attempt materializes.
MAX_ATOMIC_VARIABLES = 10


def validate_atomic_variables(atomic_variables: str) -> str:
    """Return ``atomic_variables`` or raise if it is not a usable variable set."""

    if not isinstance(atomic_variables, str) or not atomic_variables:
        raise ConfigurationError("Atomic variables must be a non-empty string")
    if len(atomic_variables) > MAX_ATOMIC_VARIABLES:
        raise ConfigurationError(
            f"Atomic variables {atomic_variables!r} exceed the limit of {MAX_ATOMIC_VARIABLES} variables"
        )
    for char in atomic_variables:
        if not char.isalpha():
            raise ConfigurationError(f"Atomic variable {char!r} in {atomic_variables!r} is not a letter")
    if len(set(atomic_variables)) != len(atomic_variables):
        raise ConfigurationError(f"Atomic variables {atomic_variables!r} contain duplicates")
    return atomic_variables


def expression_prefix(atomic_variables: str) -> str:
    """Build the tautology that lists every variable in the required order."""

    validate_atomic_variables(atomic_variables)
    terms = [f"({var}⋁!{var})" for var in atomic_variables]
    return "(" + "⋀".join(terms) + ")"


def check_variables(atomic_variables: str, expression: str) -> logic_expr.ParsedExpression:
    """Parse ``expression`` and make sure it only uses ``atomic_variables``."""

    validate_atomic_variables(atomic_variables)
    parsed = logic_expr.parse(expression)
    missing = [name for name in parsed.variables if name not in atomic_variables]
    if missing:
        raise VariableMismatchError(missing, expression=expression, atomic_variables=atomic_variables)
    return parsed


def compute_correct_values(atomic_variables: str, expression: str) -> List[bool]:
    """Return the value of ``expression`` for each of the ``2**n`` interpretations.

    Index ``i`` corresponds to the interpretation whose bit ``k`` (most
    significant first) is the value of ``atomic_variables[k]``.
    """

    check_variables(atomic_variables, expression)
    enhanced = logic_expr.parse(f"{expression_prefix(atomic_variables)}⋀({expression})")
    table = logic_expr.tabulate(enhanced)
    if table.variables != tuple(atomic_variables):
        # The prefix is scanned first, so this only happens if parsing reordered it.
        raise ConfigurationError(
            f"Variable order {''.join(table.variables)!r} does not match {atomic_variables!r}"
        )
    return list(table.values)


def build_truth_table(atomic_variables: str, expressions: Sequence[str]) -> List[List[bool]]:
    """Compute the canonical rows of every sub-expression of one problem."""

    return [compute_correct_values(atomic_variables, expression) for expression in expressions]


def interpretation_label(index: int, width: int) -> str:
    """Return the ``F``/``T`` string for interpretation ``index`` of ``width`` variables."""

    if width < 1:
        raise ValueError("width must be positive")
    if not 0 <= index < 2 ** width:
        raise ValueError(f"interpretation index {index} out of range for {width} variables")
    bits = format(index, f"0{width}b")
    return "".join(_FT[int(bit)] for bit in bits)


def interpretation_labels(atomic_variables: str) -> List[str]:
    width = len(validate_atomic_variables(atomic_variables))
    return [interpretation_label(index, width) for index in range(2 ** width)]


def interpretation_index(label: str) -> int:
    """Inverse of :func:`interpretation_label`."""

    if not label or any(char not in _FT for char in label):
        raise ValueError(f"invalid interpretation label: {label!r}")
    return int("".join("1" if char == "T" else "0" for char in label), 2)
