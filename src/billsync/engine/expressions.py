"""
Sandboxed formula evaluator for derived posting fields.

Formulas are parsed by a small recursive-descent parser into a tree of nodes
and interpreted against a mapping of field values. There is no access to
Python builtins, attributes or I/O: the only callable things are the
functions registered in ``FUNCTIONS``.

Grammar::

    expr       := or_expr
    or_expr    := and_expr ("or" and_expr)*
    and_expr   := not_expr ("and" not_expr)*
    not_expr   := "not" not_expr | comparison
    comparison := additive (("==" | "!=" | "<" | "<=" | ">" | ">=") additive)?
    additive   := term (("+" | "-" | "&") term)*
    term       := unary (("*" | "/" | "%") unary)*
    unary      := ("-" | "+") unary | power
    power      := primary ("^" unary)?
    primary    := NUMBER | STRING | "true" | "false" | NAME | "@"
                | NAME "(" [expr ("," expr)*] ")" | "(" expr ")"

All arithmetic uses ``decimal.Decimal`` with 28 significant digits and
ROUND_HALF_UP.
"""

import logging
import re
from datetime import date, datetime
from decimal import (
    ROUND_CEILING, ROUND_FLOOR, ROUND_HALF_UP, Context, Decimal, DivisionByZero,
    InvalidOperation, Overflow, localcontext
)
from functools import lru_cache
from typing import Any, Callable, Dict, FrozenSet, List, Mapping, NamedTuple, Optional, Tuple, Union

from ..exceptions import EvaluationError

logger = logging.getLogger(__name__)

Value = Union[Decimal, str, bool, datetime, None]

MAX_FORMULA_LENGTH = 4096
MAX_DEPTH = 64
MAX_TOKENS = 1024
MAX_EXPONENT = 64

CURRENT_VALUE = "@"

DECIMAL_CONTEXT = Context(
    prec=28,
    rounding=ROUND_HALF_UP,
    traps=[InvalidOperation, DivisionByZero, Overflow],
)

CENTS = Decimal("0.01")

KEYWORDS = {"and", "or", "not", "true", "false"}

_WHITESPACE = re.compile(r"\s*")
_TOKEN = re.compile(
    r"""
    (?P<number>\d+(?:\.\d+)?|\.\d+)
    |(?P<string>'(?:[^'\\]|\\.)*'|"(?:[^"\\]|\\.)*")
    |(?P<name>[A-Za-z_][A-Za-z0-9_]*)
    |(?P<op>==|!=|<=|>=|[-+*/%^&<>(),@])
    """,
    re.VERBOSE,
)
_ESCAPE = re.compile(r"\\(.)")
_ESCAPES = {"n": "\n", "t": "\t"}


def canonical_text(value: Any) -> str:
    """
    Render a value the same way in every formula, template and payload.

    Raises:
        EvaluationError: If the value is null or of an unsupported type
    """
    if value is None:
        raise EvaluationError("Cannot render a null value as text")
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, Decimal):
        return format(value, "f")
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        return format(Decimal(repr(value)), "f")
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, str):
        return value
    raise EvaluationError(f"Unsupported value type: {type(value).__name__}")


def _coerce_input(name: str, value: Any) -> Value:
    """Bring an input value into the evaluator's value domain."""
    if value is None or isinstance(value, (bool, Decimal, str, datetime)):
        return value
    if isinstance(value, int):
        return Decimal(value)
    if isinstance(value, float):
        return Decimal(repr(value))
    raise EvaluationError(f"Field '{name}' has unsupported type {type(value).__name__}")


def _is_number(value: Value) -> bool:
    return isinstance(value, Decimal)


def _kind(value: Value) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, Decimal):
        return "number"
    if isinstance(value, datetime):
        return "timestamp"
    return "string"


def _require_number(value: Value, where: str) -> Decimal:
    if not _is_number(value):
        raise EvaluationError(f"Type mismatch: {where} expects a number, got {_kind(value)}")
    return value


def _require_string(value: Value, where: str) -> str:
    if not isinstance(value, str):
        raise EvaluationError(f"Type mismatch: {where} expects a string, got {_kind(value)}")
    return value


def _require_bool(value: Value, where: str) -> bool:
    if not isinstance(value, bool):
        raise EvaluationError(f"Type mismatch: {where} expects a boolean, got {_kind(value)}")
    return value


def _require_integral(value: Value, where: str, low: int, high: int) -> int:
    number = _require_number(value, where)
    if number != number.to_integral_value() or not low <= number <= high:
        raise EvaluationError(f"{where} expects an integer between {low} and {high}, got {canonical_text(number)}")
    return int(number)


# Nodes

class Node:
    def evaluate(self, scope: Mapping[str, Any]) -> Value:
        raise NotImplementedError


class Literal(Node):
    def __init__(self, value: Value):
        self.value = value

    def evaluate(self, scope: Mapping[str, Any]) -> Value:
        return self.value


class Name(Node):
    def __init__(self, name: str):
        self.name = name

    def evaluate(self, scope: Mapping[str, Any]) -> Value:
        if self.name not in scope:
            raise EvaluationError(f"Unknown field '{self.name}'")
        return _coerce_input(self.name, scope[self.name])


class Negate(Node):
    def __init__(self, op: str, operand: Node):
        self.op = op
        self.operand = operand

    def evaluate(self, scope: Mapping[str, Any]) -> Value:
        value = _require_number(self.operand.evaluate(scope), f"unary '{self.op}'")
        return -value if self.op == "-" else +value


class Not(Node):
    def __init__(self, operand: Node):
        self.operand = operand

    def evaluate(self, scope: Mapping[str, Any]) -> Value:
        return not _require_bool(self.operand.evaluate(scope), "'not'")


class Logical(Node):
    """Short-circuit chain of 'and' or 'or'."""

    def __init__(self, op: str, operands: List[Node]):
        self.op = op
        self.operands = operands

    def evaluate(self, scope: Mapping[str, Any]) -> Value:
        for operand in self.operands:
            value = _require_bool(operand.evaluate(scope), f"'{self.op}'")
            if self.op == "and" and not value:
                return False
            if self.op == "or" and value:
                return True
        return self.op == "and"


class Chain(Node):
    """Left-associative chain of additive or multiplicative operators."""

    def __init__(self, first: Node, rest: List[Tuple[str, Node]]):
        self.first = first
        self.rest = rest

    def evaluate(self, scope: Mapping[str, Any]) -> Value:
        result = self.first.evaluate(scope)
        for op, node in self.rest:
            result = _apply_binary(op, result, node.evaluate(scope))
        return result


class Power(Node):
    def __init__(self, base: Node, exponent: Node):
        self.base = base
        self.exponent = exponent

    def evaluate(self, scope: Mapping[str, Any]) -> Value:
        base = _require_number(self.base.evaluate(scope), "'^'")
        exponent = _require_integral(self.exponent.evaluate(scope), "'^' exponent", -MAX_EXPONENT, MAX_EXPONENT)
        if base == 0 and exponent <= 0:
            raise EvaluationError("Zero cannot be raised to a non-positive power")
        return base ** exponent


class Compare(Node):
    def __init__(self, op: str, left: Node, right: Node):
        self.op = op
        self.left = left
        self.right = right

    def evaluate(self, scope: Mapping[str, Any]) -> Value:
        left = self.left.evaluate(scope)
        right = self.right.evaluate(scope)

        if self.op in ("==", "!="):
            equal = _kind(left) == _kind(right) and left == right
            return equal if self.op == "==" else not equal

        if _kind(left) != _kind(right) or _kind(left) in ("null", "boolean"):
            raise EvaluationError(f"Type mismatch: cannot order {_kind(left)} and {_kind(right)}")
        try:
            if self.op == "<":
                return left < right
            if self.op == "<=":
                return left <= right
            if self.op == ">":
                return left > right
            return left >= right
        except TypeError as e:
            # naive and aware timestamps
            raise EvaluationError(f"Cannot compare values: {e}") from e


class Call(Node):
    def __init__(self, name: str, args: List[Node]):
        self.name = name
        self.args = args

    def evaluate(self, scope: Mapping[str, Any]) -> Value:
        function = FUNCTIONS[self.name]
        if function.lazy:
            return function.impl(self.args, scope)
        return function.impl(*[arg.evaluate(scope) for arg in self.args])


def _apply_binary(op: str, left: Value, right: Value) -> Value:
    if op == "&":
        return canonical_text(left) + canonical_text(right)

    if op == "+" and isinstance(left, str) and isinstance(right, str):
        return left + right

    if not (_is_number(left) and _is_number(right)):
        raise EvaluationError(f"Type mismatch: cannot apply '{op}' to {_kind(left)} and {_kind(right)}")

    if op == "+":
        return left + right
    if op == "-":
        return left - right
    if op == "*":
        return left * right
    if right == 0:
        raise EvaluationError("Division by zero")
    if op == "/":
        return left / right
    return left % right


# Built-in functions

class Function(NamedTuple):
    impl: Callable[..., Value]
    min_args: int
    max_args: Optional[int]
    lazy: bool = False


def _round(value: Value, places: Value = Decimal(0)) -> Decimal:
    number = _require_number(value, "round()")
    digits = _require_integral(places, "round() places", -28, 28)
    return number.quantize(Decimal(1).scaleb(-digits), rounding=ROUND_HALF_UP)


def _floor(value: Value) -> Decimal:
    return _require_number(value, "floor()").to_integral_value(rounding=ROUND_FLOOR)


def _ceil(value: Value) -> Decimal:
    return _require_number(value, "ceil()").to_integral_value(rounding=ROUND_CEILING)


def _abs(value: Value) -> Decimal:
    return abs(_require_number(value, "abs()"))


def _min(*values: Value) -> Decimal:
    return min(_require_number(v, "min()") for v in values)


def _max(*values: Value) -> Decimal:
    return max(_require_number(v, "max()") for v in values)


def _if(args: List[Node], scope: Mapping[str, Any]) -> Value:
    condition = _require_bool(args[0].evaluate(scope), "if() condition")
    return args[1].evaluate(scope) if condition else args[2].evaluate(scope)


def _coalesce(args: List[Node], scope: Mapping[str, Any]) -> Value:
    for arg in args:
        value = arg.evaluate(scope)
        if value is not None:
            return value
    raise EvaluationError("coalesce(): every argument is null")


def _hours(value: Value) -> Decimal:
    seconds = _require_number(value, "hours()")
    return (seconds / Decimal(3600)).quantize(CENTS, rounding=ROUND_HALF_UP)


def _upper(value: Value) -> str:
    return _require_string(value, "upper()").upper()


def _lower(value: Value) -> str:
    return _require_string(value, "lower()").lower()


def _trim(value: Value) -> str:
    return _require_string(value, "trim()").strip()


def _text(value: Value) -> str:
    return canonical_text(value)


def _number(value: Value) -> Decimal:
    if _is_number(value):
        return value
    text = _require_string(value, "number()").strip()
    try:
        number = Decimal(text)
    except InvalidOperation:
        raise EvaluationError(f"number(): '{text}' is not a number")
    if not number.is_finite():
        raise EvaluationError(f"number(): '{text}' is not a finite number")
    return number


def _len(value: Value) -> Decimal:
    return Decimal(len(_require_string(value, "len()")))


FUNCTIONS: Dict[str, Function] = {
    "round": Function(_round, 1, 2),
    "floor": Function(_floor, 1, 1),
    "ceil": Function(_ceil, 1, 1),
    "abs": Function(_abs, 1, 1),
    "min": Function(_min, 1, None),
    "max": Function(_max, 1, None),
    "if": Function(_if, 3, 3, lazy=True),
    "coalesce": Function(_coalesce, 1, None, lazy=True),
    "hours": Function(_hours, 1, 1),
    "upper": Function(_upper, 1, 1),
    "lower": Function(_lower, 1, 1),
    "trim": Function(_trim, 1, 1),
    "text": Function(_text, 1, 1),
    "number": Function(_number, 1, 1),
    "len": Function(_len, 1, 1),
}


# Parsing

class Token(NamedTuple):
    kind: str
    text: str
    offset: int


def tokenize(formula: str) -> List[Token]:
    """
    Split a formula into tokens.

    Raises:
        EvaluationError: On an unexpected character or too many tokens
    """
    tokens: List[Token] = []
    offset = 0
    while True:
        offset = _WHITESPACE.match(formula, offset).end()
        if offset >= len(formula):
            break
        match = _TOKEN.match(formula, offset)
        if not match:
            raise EvaluationError(f"Unexpected character {formula[offset]!r} at offset {offset}")
        tokens.append(Token(match.lastgroup, match.group(), offset))
        if len(tokens) > MAX_TOKENS:
            raise EvaluationError(f"Formula has more than {MAX_TOKENS} tokens")
        offset = match.end()
    return tokens


def _unquote(text: str) -> str:
    return _ESCAPE.sub(lambda m: _ESCAPES.get(m.group(1), m.group(1)), text[1:-1])


class Parser:
    """Recursive-descent parser producing a Node tree."""

    def __init__(self, formula: str):
        self.formula = formula
        self.tokens = tokenize(formula)
        self.index = 0
        self.depth = 0
        self.names: set = set()

    def parse(self) -> Node:
        if not self.tokens:
            raise EvaluationError("Empty formula")
        node = self._expr()
        if self.index < len(self.tokens):
            token = self.tokens[self.index]
            raise EvaluationError(f"Unexpected '{token.text}' at offset {token.offset}")
        return node

    # Token helpers

    def _peek(self) -> Optional[Token]:
        return self.tokens[self.index] if self.index < len(self.tokens) else None

    def _at(self, *texts: str) -> bool:
        token = self._peek()
        return token is not None and token.kind in ("op", "name") and token.text in texts

    def _advance(self) -> Token:
        token = self._peek()
        if token is None:
            raise EvaluationError("Unexpected end of formula")
        self.index += 1
        return token

    def _expect(self, text: str) -> Token:
        token = self._advance()
        if token.text != text:
            raise EvaluationError(f"Expected '{text}' at offset {token.offset}, found '{token.text}'")
        return token

    def _descend(self) -> None:
        self.depth += 1
        if self.depth > MAX_DEPTH:
            raise EvaluationError(f"Formula nests deeper than {MAX_DEPTH} levels")

    # Grammar rules

    def _expr(self) -> Node:
        self._descend()
        try:
            return self._or()
        finally:
            self.depth -= 1

    def _or(self) -> Node:
        operands = [self._and()]
        while self._at("or"):
            self._advance()
            operands.append(self._and())
        return operands[0] if len(operands) == 1 else Logical("or", operands)

    def _and(self) -> Node:
        operands = [self._not()]
        while self._at("and"):
            self._advance()
            operands.append(self._not())
        return operands[0] if len(operands) == 1 else Logical("and", operands)

    def _not(self) -> Node:
        if self._at("not"):
            self._advance()
            self._descend()
            try:
                return Not(self._not())
            finally:
                self.depth -= 1
        return self._comparison()

    def _comparison(self) -> Node:
        left = self._additive()
        if self._at("==", "!=", "<", "<=", ">", ">="):
            op = self._advance().text
            return Compare(op, left, self._additive())
        return left

    def _additive(self) -> Node:
        first = self._term()
        rest = []
        while self._at("+", "-", "&"):
            op = self._advance().text
            rest.append((op, self._term()))
        return Chain(first, rest) if rest else first

    def _term(self) -> Node:
        first = self._unary()
        rest = []
        while self._at("*", "/", "%"):
            op = self._advance().text
            rest.append((op, self._unary()))
        return Chain(first, rest) if rest else first

    def _unary(self) -> Node:
        if self._at("-", "+"):
            op = self._advance().text
            self._descend()
            try:
                return Negate(op, self._unary())
            finally:
                self.depth -= 1
        return self._power()

    def _power(self) -> Node:
        base = self._primary()
        if self._at("^"):
            self._advance()
            self._descend()
            try:
                return Power(base, self._unary())
            finally:
                self.depth -= 1
        return base

    def _primary(self) -> Node:
        token = self._advance()

        if token.kind == "number":
            return Literal(Decimal(token.text))
        if token.kind == "string":
            return Literal(_unquote(token.text))
        if token.text == CURRENT_VALUE:
            self.names.add(CURRENT_VALUE)
            return Name(CURRENT_VALUE)
        if token.text == "(":
            node = self._expr()
            self._expect(")")
            return node

        if token.kind == "name":
            if token.text == "true":
                return Literal(True)
            if token.text == "false":
                return Literal(False)
            if token.text in KEYWORDS:
                raise EvaluationError(f"Unexpected '{token.text}' at offset {token.offset}")
            if self._at("("):
                return self._call(token)
            self.names.add(token.text)
            return Name(token.text)

        raise EvaluationError(f"Unexpected '{token.text}' at offset {token.offset}")

    def _call(self, token: Token) -> Node:
        function = FUNCTIONS.get(token.text)
        if function is None:
            raise EvaluationError(f"Unknown function '{token.text}'")
        self._expect("(")
        args: List[Node] = []
        if not self._at(")"):
            args.append(self._expr())
            while self._at(","):
                self._advance()
                args.append(self._expr())
        self._expect(")")

        if len(args) < function.min_args or (function.max_args is not None and len(args) > function.max_args):
            raise EvaluationError(f"Wrong number of arguments for {token.text}(): {len(args)}")
        return Call(token.text, args)


class Expression:
    """A parsed formula, reusable across records."""

    def __init__(self, formula: str, root: Node, names: FrozenSet[str]):
        self.formula = formula
        self.root = root
        self.names = names

    def evaluate(self, values: Mapping[str, Any]) -> Value:
        """
        Evaluate against a mapping of field values.

        Args:
            values: Field name to value; '@' holds the current value

        Returns:
            Decimal, str, bool or datetime

        Raises:
            EvaluationError: On absent fields, type mismatches or arithmetic errors
        """
        try:
            with localcontext(DECIMAL_CONTEXT):
                result = self.root.evaluate(values)
        except EvaluationError as e:
            if e.formula is None:
                e.formula = self.formula
            raise
        except ArithmeticError as e:
            raise EvaluationError(f"Arithmetic error: {e.__class__.__name__}", formula=self.formula) from e

        if result is None:
            raise EvaluationError("Formula evaluated to null", formula=self.formula)
        return result

    def __repr__(self) -> str:
        return f"Expression({self.formula!r})"


@lru_cache(maxsize=1024)
def parse(formula: str) -> Expression:
    """
    Parse a formula, caching the result per formula string.

    Raises:
        EvaluationError: If the formula is too large or syntactically invalid
    """
    if not isinstance(formula, str):
        raise EvaluationError(f"Formula must be a string, got {type(formula).__name__}")
    if len(formula) > MAX_FORMULA_LENGTH:
        raise EvaluationError(f"Formula longer than {MAX_FORMULA_LENGTH} characters")

    parser = Parser(formula)
    try:
        root = parser.parse()
    except EvaluationError as e:
        e.formula = formula
        raise
    return Expression(formula, root, frozenset(parser.names))


def evaluate(formula: str, values: Mapping[str, Any]) -> Value:
    """Parse (cached) and evaluate a formula against field values."""
    return parse(formula).evaluate(values)
