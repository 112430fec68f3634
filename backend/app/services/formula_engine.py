"""
FormulaEngine — quantity-formula validation and exact-decimal evaluation.

Template items carry a quantity formula such as ``roof_area_sqft / 100`` or
``(ridge_lf + hip_lf) / 20``.  This module:

  - validates a raw formula against the character allow-list and normalizes it
    (``validate_formula``)
  - checks the grammar at authoring time so malformed formulas are never
    persisted (``check_formula_grammar``)
  - evaluates a formula against a measurement map with ``decimal.Decimal``
    arithmetic (``evaluate``)

Grammar (no implicit multiplication, no exponentiation, no function calls):

    expr    := term (('+' | '-') term)*
    term    := unary (('*' | '/') unary)*
    unary   := ('+' | '-') unary | primary
    primary := NUMBER | IDENT | '(' expr ')'

Parentheses may nest at most ``MAX_NESTING`` levels deep; runs of unary signs
are folded without recursion and evaluation walks the tree with an explicit
stack, so no formula can exhaust the interpreter's recursion limit.
"""

import decimal
import logging
import re
from collections import namedtuple
from decimal import Decimal
from functools import lru_cache
from typing import Any, Dict, List, Mapping, Optional, Tuple

from app.services.pricing_errors import EmptyFormula, IllegalCharacter, MalformedFormula

logger = logging.getLogger("roofing-pricing.formula")

_ZERO = Decimal("0")

# Anything outside letters, digits, underscore, arithmetic operators,
# parentheses, decimal point and whitespace is rejected.
_ILLEGAL_CHAR_RE = re.compile(r"[^A-Za-z0-9_+\-*/().\s]")

_TOKEN_RE = re.compile(
    r"(?P<number>\d+(?:\.\d*)?|\.\d+)"
    r"|(?P<ident>[A-Za-z_][A-Za-z0-9_]*)"
    r"|(?P<op>[+\-*/()])"
    r"|(?P<space>\s+)"
)

# Evaluation context: 28 significant digits, traps on division by zero,
# invalid operations and overflow (all caught by ``evaluate``).
_EVAL_CONTEXT = decimal.Context(prec=28, rounding=decimal.ROUND_HALF_EVEN)

MAX_NESTING = 32


Token = namedtuple("Token", ["kind", "text", "pos"])

# AST nodes
Num = namedtuple("Num", ["value"])
Var = namedtuple("Var", ["name"])
Neg = namedtuple("Neg", ["operand"])
BinOp = namedtuple("BinOp", ["op", "left", "right"])


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

def validate_formula(raw: Optional[str]) -> str:
    """
    Check a raw formula against the character allow-list.

    Returns the trimmed, lower-cased formula.  This is an allow-list check
    only; use ``check_formula_grammar`` for structure.

    Raises:
        EmptyFormula:      ``raw`` is None or blank.
        IllegalCharacter:  ``raw`` contains a character outside the allow-list.
    """
    if raw is None or not str(raw).strip():
        raise EmptyFormula("Empty quantity formula")

    text = str(raw)
    match = _ILLEGAL_CHAR_RE.search(text)
    if match:
        raise IllegalCharacter(
            f"Illegal character {match.group(0)!r} in formula at position {match.start()}",
            formula=text,
            position=match.start(),
        )
    return text.strip().lower()


def check_formula_grammar(normalized: str) -> None:
    """Raise MalformedFormula if ``normalized`` does not parse."""
    parse_formula(normalized)


def normalize_and_check(raw: Optional[str]) -> str:
    """Authoring-time check: allow-list, normalization and grammar."""
    normalized = validate_formula(raw)
    check_formula_grammar(normalized)
    return normalized


# ---------------------------------------------------------------------------
# Tokenizer
# ---------------------------------------------------------------------------

def tokenize(formula: str) -> List[Token]:
    tokens: List[Token] = []
    pos = 0
    while pos < len(formula):
        match = _TOKEN_RE.match(formula, pos)
        if not match:
            raise MalformedFormula(
                f"Unexpected character {formula[pos]!r} at position {pos}",
                formula=formula,
                position=pos,
            )
        kind = match.lastgroup
        if kind != "space":
            tokens.append(Token(kind, match.group(0), pos))
        pos = match.end()
    return tokens


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------

class _Parser:
    """Recursive-descent parser producing a tuple-based AST."""

    def __init__(self, formula: str, tokens: List[Token]):
        self.formula = formula
        self.tokens = tokens
        self.index = 0
        self.depth = 0

    def _peek(self) -> Optional[Token]:
        if self.index < len(self.tokens):
            return self.tokens[self.index]
        return None

    def _advance(self) -> Token:
        token = self.tokens[self.index]
        self.index += 1
        return token

    def _error(self, message: str, token: Optional[Token]) -> MalformedFormula:
        position = token.pos if token else len(self.formula)
        return MalformedFormula(
            f"{message} at position {position} in formula {self.formula!r}",
            formula=self.formula,
            position=position,
        )

    def parse(self):
        if not self.tokens:
            raise MalformedFormula("Formula has no terms", formula=self.formula, position=0)
        node = self._expr()
        trailing = self._peek()
        if trailing is not None:
            raise self._error(f"Unexpected {trailing.text!r}", trailing)
        return node

    def _expr(self):
        node = self._term()
        while True:
            token = self._peek()
            if token is None or token.text not in ("+", "-"):
                return node
            self._advance()
            node = BinOp(token.text, node, self._term())

    def _term(self):
        node = self._unary()
        while True:
            token = self._peek()
            if token is None or token.text not in ("*", "/"):
                return node
            self._advance()
            node = BinOp(token.text, node, self._unary())

    def _unary(self):
        negate = False
        token = self._peek()
        while token is not None and token.text in ("+", "-"):
            self._advance()
            if token.text == "-":
                negate = not negate
            token = self._peek()
        operand = self._primary()
        return Neg(operand) if negate else operand

    def _primary(self):
        token = self._peek()
        if token is None:
            raise self._error("Unexpected end of formula", None)

        if token.kind == "number":
            self._advance()
            return Num(Decimal(token.text))

        if token.kind == "ident":
            self._advance()
            following = self._peek()
            if following is not None and following.text == "(":
                raise self._error(
                    f"Function calls are not supported ({token.text!r})", token
                )
            return Var(token.text.lower())

        if token.text == "(":
            if self.depth >= MAX_NESTING:
                raise self._error(
                    f"Parentheses nested deeper than {MAX_NESTING} levels", token
                )
            self._advance()
            self.depth += 1
            node = self._expr()
            self.depth -= 1
            closing = self._peek()
            if closing is None or closing.text != ")":
                raise self._error("Missing closing parenthesis", closing)
            self._advance()
            return node

        raise self._error(f"Unexpected {token.text!r}", token)


@lru_cache(maxsize=1024)
def parse_formula(formula: str):
    """Parse a normalized formula into an AST.  Raises MalformedFormula."""
    return _Parser(formula, tokenize(formula)).parse()


@lru_cache(maxsize=1024)
def formula_variables(formula: str) -> Tuple[str, ...]:
    """Identifiers referenced by ``formula`` in order of first appearance."""
    names: List[str] = []
    for token in tokenize(formula.strip().lower()):
        if token.kind == "ident" and token.text not in names:
            names.append(token.text)
    return tuple(names)


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------

def coerce_number(value: Any) -> Decimal:
    """
    Convert a measurement value to Decimal.

    None, empty strings, booleans, non-numeric strings and non-finite numbers
    all become 0.
    """
    if value is None or isinstance(value, bool):
        return _ZERO
    if isinstance(value, Decimal):
        number = value
    elif isinstance(value, (int, float)):
        number = Decimal(str(value))
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return _ZERO
        try:
            number = Decimal(text)
        except decimal.InvalidOperation:
            return _ZERO
    else:
        return _ZERO
    return number if number.is_finite() else _ZERO


def _bind_variables(variables: Optional[Mapping[str, Any]]) -> Dict[str, Decimal]:
    bound: Dict[str, Decimal] = {}
    for key, value in (variables or {}).items():
        bound.setdefault(str(key).lower(), coerce_number(value))
    return bound


def _apply(op: str, left: Decimal, right: Decimal) -> Decimal:
    if op == "+":
        return left + right
    if op == "-":
        return left - right
    if op == "*":
        return left * right
    return left / right


def _eval_node(root, env: Dict[str, Decimal]) -> Decimal:
    # Post-order walk; long operator chains build left-deep trees.
    pending = [(root, False)]
    values: List[Decimal] = []
    while pending:
        node, expanded = pending.pop()
        if isinstance(node, Num):
            values.append(node.value)
        elif isinstance(node, Var):
            values.append(env.get(node.name, _ZERO))
        elif expanded:
            if isinstance(node, Neg):
                values.append(-values.pop())
            else:
                right = values.pop()
                left = values.pop()
                values.append(_apply(node.op, left, right))
        elif isinstance(node, Neg):
            pending.append((node, True))
            pending.append((node.operand, False))
        else:
            pending.append((node, True))
            pending.append((node.right, False))
            pending.append((node.left, False))
    return values.pop()


def evaluate(formula: str, variables: Optional[Mapping[str, Any]] = None) -> Decimal:
    """
    Evaluate ``formula`` against ``variables`` and return a finite Decimal.

    Identifiers are matched case-insensitively; identifiers missing from
    ``variables`` evaluate to 0.  Division by zero, arithmetic overflow and
    formulas that fail to parse all resolve to 0.
    """
    normalized = (formula or "").strip().lower()
    if not normalized:
        return _ZERO

    try:
        tree = parse_formula(normalized)
    except MalformedFormula as exc:
        logger.warning("Unparseable formula evaluated as 0: %s", exc.message)
        return _ZERO
    except RecursionError:
        logger.warning("Formula too deeply nested, evaluated as 0: %r", normalized[:80])
        return _ZERO

    env = _bind_variables(variables)
    try:
        with decimal.localcontext(_EVAL_CONTEXT):
            result = +_eval_node(tree, env)
    except ArithmeticError as exc:
        logger.debug("Indeterminate formula result for %r: %s", normalized, exc)
        return _ZERO

    return result if result.is_finite() else _ZERO
