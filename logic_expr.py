"""Boolean expression parsing and tabulation backed by sympy.

Expressions use single-letter variables and the connectives offered by the
exercise editor (``¬ ⋀ ⋁ → ⊕ ↔`` plus ASCII spellings). The parser is a
shunting-yard over a small token stream; the resulting tree is a sympy
boolean expression.

``tabulate`` enumerates interpretations in the order in which variables first
appear in the source text unless an explicit order is requested.
"""

from __future__ import annotations

from dataclasses import dataclass
from itertools import product
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

from sympy import And, Equivalent, Implies, Not, Or, Symbol, Xor, false, true

from errors import ParseError, VariableMismatchError

__all__ = [
    "Token",
    "ParsedExpression",
    "TruthTable",
    "tokenize",
    "parse",
    "tabulate",
]

VAR = "VAR"
NOT = "NOT"
AND = "AND"
OR = "OR"
XOR = "XOR"
IMPLIES = "IMPLIES"
IFF = "IFF"
LPAREN = "LPAREN"
RPAREN = "RPAREN"

# Longest spellings first so "<->" wins over "->".
_SYMBOLS: Tuple[Tuple[str, str], ...] = (
    ("<->", IFF),
    ("->", IMPLIES),
    ("↔", IFF),
    ("≡", IFF),
    ("→", IMPLIES),
    ("⊕", XOR),
    ("^", XOR),
    ("⋀", AND),
    ("∧", AND),
    ("&", AND),
    ("⋁", OR),
    ("∨", OR),
    ("|", OR),
    ("¬", NOT),
    ("!", NOT),
    ("~", NOT),
    ("(", LPAREN),
    (")", RPAREN),
)

# kind -> (precedence, right associative)
_BINARY: Dict[str, Tuple[int, bool]] = {
    AND: (5, False),
    OR: (4, False),
    XOR: (3, False),
    IMPLIES: (2, True),
    IFF: (1, False),
}
_UNARY_PRECEDENCE = 6

_BUILDERS = {
    AND: And,
    OR: Or,
    XOR: Xor,
    IMPLIES: Implies,
    IFF: Equivalent,
}


@dataclass(frozen=True)
class Token:
    kind: str
    text: str
    position: int


@dataclass(frozen=True)
class ParsedExpression:
    """A parsed expression plus its variables in order of first appearance."""

    source: str
    tree: object
    variables: Tuple[str, ...]

    def symbols(self, order: Optional[Sequence[str]] = None) -> List[Symbol]:
        names = self.variables if order is None else tuple(order)
        return [Symbol(name) for name in names]


@dataclass(frozen=True)
class TruthTable:
    """Tabulated values; row ``i`` assigns bit k of ``i`` (MSB first) to ``variables[k]``."""

    variables: Tuple[str, ...]
    values: Tuple[bool, ...]

    def __len__(self) -> int:
        return len(self.values)

    def rows(self) -> Iterator[Tuple[Tuple[bool, ...], bool]]:
        for assignment, value in zip(product((False, True), repeat=len(self.variables)), self.values):
            yield assignment, value


def tokenize(expression: str) -> List[Token]:
    """Split ``expression`` into tokens, ignoring whitespace."""

    tokens: List[Token] = []
    pos = 0
    length = len(expression)
    while pos < length:
        char = expression[pos]
        if char.isspace():
            pos += 1
            continue
        for spelling, kind in _SYMBOLS:
            if expression.startswith(spelling, pos):
                tokens.append(Token(kind, spelling, pos))
                pos += len(spelling)
                break
        else:
            if char.isalpha():
                tokens.append(Token(VAR, char, pos))
                pos += 1
            else:
                raise ParseError(f"Unexpected character {char!r}", expression=expression, position=pos)
    return tokens


def _to_rpn(expression: str, tokens: Sequence[Token]) -> List[Token]:
    output: List[Token] = []
    operators: List[Token] = []
    expect_operand = True

    for token in tokens:
        if expect_operand:
            if token.kind == VAR:
                output.append(token)
                expect_operand = False
            elif token.kind in (NOT, LPAREN):
                operators.append(token)
            else:
                raise ParseError(
                    f"Expected a variable, '(' or negation but found {token.text!r}",
                    expression=expression,
                    position=token.position,
                )
            continue

        if token.kind in _BINARY:
            precedence, right_assoc = _BINARY[token.kind]
            while operators and operators[-1].kind != LPAREN:
                top = operators[-1]
                top_precedence = _UNARY_PRECEDENCE if top.kind == NOT else _BINARY[top.kind][0]
                if top_precedence > precedence or (top_precedence == precedence and not right_assoc):
                    output.append(operators.pop())
                else:
                    break
            operators.append(token)
            expect_operand = True
        elif token.kind == RPAREN:
            while operators and operators[-1].kind != LPAREN:
                output.append(operators.pop())
            if not operators:
                raise ParseError("Unbalanced ')'", expression=expression, position=token.position)
            operators.pop()
        else:
            raise ParseError(
                f"Expected an operator or ')' but found {token.text!r}",
                expression=expression,
                position=token.position,
            )

    if expect_operand:
        raise ParseError("Unexpected end of expression", expression=expression, position=len(expression))

    while operators:
        token = operators.pop()
        if token.kind == LPAREN:
            raise ParseError("Unbalanced '('", expression=expression, position=token.position)
        output.append(token)
    return output


def parse(expression: str) -> ParsedExpression:
    """Parse ``expression`` into a sympy boolean tree."""

    if expression is None or not str(expression).strip():
        raise ParseError("Empty expression", expression=expression or "")
    expression = str(expression)
    tokens = tokenize(expression)

    variables: List[str] = []
    for token in tokens:
        if token.kind == VAR and token.text not in variables:
            variables.append(token.text)

    stack: List[object] = []
    for token in _to_rpn(expression, tokens):
        if token.kind == VAR:
            stack.append(Symbol(token.text))
        elif token.kind == NOT:
            stack.append(Not(stack.pop()))
        else:
            right = stack.pop()
            left = stack.pop()
            stack.append(_BUILDERS[token.kind](left, right))

    return ParsedExpression(source=expression, tree=stack[0], variables=tuple(variables))


def tabulate(parsed: ParsedExpression, variable_order: Optional[Sequence[str]] = None) -> TruthTable:
    """Evaluate ``parsed`` under every interpretation.

    Without ``variable_order`` rows follow the order of first appearance in
    the source text.
    """

    order = tuple(parsed.variables if variable_order is None else variable_order)
    missing = [name for name in parsed.variables if name not in order]
    if missing:
        raise VariableMismatchError(missing, expression=parsed.source, atomic_variables="".join(order))

    symbols = parsed.symbols(order)
    values: List[bool] = []
    for combo in product((false, true), repeat=len(symbols)):
        value = parsed.tree.xreplace(dict(zip(symbols, combo)))
        if value is not true and value is not false:
            raise VariableMismatchError(
                [str(sym) for sym in getattr(value, "free_symbols", ())],
                expression=parsed.source,
                atomic_variables="".join(order),
            )
        values.append(value is true)
    return TruthTable(variables=order, values=tuple(values))
