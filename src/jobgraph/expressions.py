# expressions.py
"""
Evaluator for ${{ ... }} expressions used in step commands, action params,
env values, job outputs and `condition` (if) fields.

Grammar (lowest to highest precedence):

    or      := and ( '||' and )*
    and     := compare ( '&&' compare )*
    compare := unary ( ('==' | '!=' | '<' | '<=' | '>' | '>=') unary )*
    unary   := '!' unary | postfix
    postfix := primary ( '.' IDENT | '[' or ']' )*
    primary := literal | IDENT '(' args ')' | IDENT | '(' or ')'

`&&` and `||` return one of their operands (not a coerced bool), string
comparison is case-insensitive and a missing property evaluates to null.
"""
from __future__ import annotations

import json
import math
import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Callable, Dict, List, Mapping, Tuple

from .errors import ExpressionError

STATUS_FUNCTIONS = frozenset({"success", "failure", "always", "cancelled"})

_TOKEN_RE = re.compile(
    r"""
    (?P<ws>\s+)
  | (?P<number>-?\d+(?:\.\d+)?)
  | (?P<string>'(?:[^']|'')*')
  | (?P<op>==|!=|<=|>=|&&|\|\||[<>!()\[\].,])
  | (?P<ident>[A-Za-z_][A-Za-z0-9_\-]*)
    """,
    re.VERBOSE,
)

_INTERPOLATION_RE = re.compile(r"\$\{\{(.*?)\}\}", re.DOTALL)


# ---------------------------------------------------------------------
# AST
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Literal:
    value: Any


@dataclass(frozen=True)
class Name:
    name: str


@dataclass(frozen=True)
class Attr:
    obj: Any
    key: Any  # str for a.b, node for a[expr]


@dataclass(frozen=True)
class Call:
    name: str
    args: Tuple[Any, ...]


@dataclass(frozen=True)
class Not:
    operand: Any


@dataclass(frozen=True)
class Binary:
    op: str
    left: Any
    right: Any


# ---------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------

def _tokenize(text: str) -> List[Tuple[str, str]]:
    tokens: List[Tuple[str, str]] = []
    pos = 0
    while pos < len(text):
        m = _TOKEN_RE.match(text, pos)
        if not m:
            raise ExpressionError(text, f"Unexpected character {text[pos]!r} at {pos}")
        pos = m.end()
        kind = m.lastgroup
        if kind != "ws":
            tokens.append((kind, m.group()))
    return tokens


class _Parser:
    def __init__(self, text: str):
        self.text = text
        self.tokens = _tokenize(text)
        self.pos = 0

    def _peek(self) -> Tuple[str, str] | None:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def _accept(self, value: str) -> bool:
        tok = self._peek()
        if tok and tok[0] == "op" and tok[1] == value:
            self.pos += 1
            return True
        return False

    def _expect(self, value: str) -> None:
        if not self._accept(value):
            tok = self._peek()
            found = tok[1] if tok else "end of expression"
            raise ExpressionError(self.text, f"Expected {value!r}, found {found!r}")

    def parse(self):
        if not self.tokens:
            raise ExpressionError(self.text, "Empty expression")
        node = self._or()
        if self._peek() is not None:
            raise ExpressionError(self.text, f"Unexpected token {self._peek()[1]!r}")
        return node

    def _or(self):
        node = self._and()
        while self._accept("||"):
            node = Binary("||", node, self._and())
        return node

    def _and(self):
        node = self._compare()
        while self._accept("&&"):
            node = Binary("&&", node, self._compare())
        return node

    def _compare(self):
        node = self._unary()
        while True:
            tok = self._peek()
            if tok and tok[0] == "op" and tok[1] in ("==", "!=", "<", "<=", ">", ">="):
                self.pos += 1
                node = Binary(tok[1], node, self._unary())
            else:
                return node

    def _unary(self):
        if self._accept("!"):
            return Not(self._unary())
        return self._postfix()

    def _postfix(self):
        node = self._primary()
        while True:
            if self._accept("."):
                tok = self._peek()
                if not tok or tok[0] != "ident":
                    raise ExpressionError(self.text, "Expected property name after '.'")
                self.pos += 1
                node = Attr(node, tok[1])
            elif self._accept("["):
                key = self._or()
                self._expect("]")
                node = Attr(node, key)
            else:
                return node

    def _primary(self):
        tok = self._peek()
        if tok is None:
            raise ExpressionError(self.text, "Unexpected end of expression")
        kind, value = tok
        self.pos += 1
        if kind == "number":
            return Literal(float(value) if "." in value else int(value))
        if kind == "string":
            return Literal(value[1:-1].replace("''", "'"))
        if kind == "ident":
            if value == "true":
                return Literal(True)
            if value == "false":
                return Literal(False)
            if value == "null":
                return Literal(None)
            if self._accept("("):
                args = []
                if not self._accept(")"):
                    args.append(self._or())
                    while self._accept(","):
                        args.append(self._or())
                    self._expect(")")
                return Call(value, tuple(args))
            return Name(value)
        if kind == "op" and value == "(":
            node = self._or()
            self._expect(")")
            return node
        raise ExpressionError(self.text, f"Unexpected token {value!r}")


@lru_cache(maxsize=512)
def parse(text: str):
    return _Parser(text.strip()).parse()


# ---------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------

def truthy(value: Any) -> bool:
    if value is None or value is False:
        return False
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value != 0 and not math.isnan(value)
    if isinstance(value, str):
        return value != ""
    return True


def _to_number(value: Any) -> float:
    if value is None:
        return 0.0
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return 0.0
        try:
            return float(text)
        except ValueError:
            return math.nan
    return math.nan


def _equal(a: Any, b: Any) -> bool:
    if isinstance(a, str) and isinstance(b, str):
        return a.casefold() == b.casefold()
    if type(a) is type(b) or a is None or b is None:
        return a == b
    if isinstance(a, (dict, list)) or isinstance(b, (dict, list)):
        return False
    return _to_number(a) == _to_number(b)


def _compare(op: str, a: Any, b: Any) -> bool:
    if isinstance(a, str) and isinstance(b, str):
        x, y = a.casefold(), b.casefold()
    else:
        x, y = _to_number(a), _to_number(b)
        if math.isnan(x) or math.isnan(y):
            return False
    if op == "<":
        return x < y
    if op == "<=":
        return x <= y
    if op == ">":
        return x > y
    return x >= y


def to_string(value: Any) -> str:
    if value is None:
        return ""
    if value is True:
        return "true"
    if value is False:
        return "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True)
    return str(value)


def _contains(search: Any, item: Any) -> bool:
    if isinstance(search, list):
        return any(_equal(x, item) for x in search)
    return to_string(item).casefold() in to_string(search).casefold()


def _format(template: Any, *args: Any) -> str:
    text = to_string(template)

    def repl(m: re.Match) -> str:
        if m.group(0) == "{{":
            return "{"
        if m.group(0) == "}}":
            return "}"
        idx = int(m.group(1))
        if idx >= len(args):
            raise ExpressionError(text, f"format() has no argument {idx}")
        return to_string(args[idx])

    return re.sub(r"\{\{|\}\}|\{(\d+)\}", repl, text)


def _join(items: Any, sep: Any = ",") -> str:
    if isinstance(items, list):
        return to_string(sep).join(to_string(i) for i in items)
    return to_string(items)


BUILTINS: Dict[str, Callable[..., Any]] = {
    "contains": _contains,
    "startswith": lambda s, p: to_string(s).casefold().startswith(to_string(p).casefold()),
    "endswith": lambda s, p: to_string(s).casefold().endswith(to_string(p).casefold()),
    "format": _format,
    "join": _join,
    "tojson": lambda v: json.dumps(v, indent=2, sort_keys=True),
    "fromjson": lambda v: json.loads(to_string(v)),
}


def _lookup(obj: Any, key: Any) -> Any:
    if isinstance(obj, Mapping):
        # objects and arrays are never keys
        if isinstance(key, (Mapping, list)):
            return None
        if key in obj:
            return obj[key]
        if isinstance(key, str):
            folded = key.casefold()
            for k, v in obj.items():
                if isinstance(k, str) and k.casefold() == folded:
                    return v
        return None
    if isinstance(obj, list):
        try:
            return obj[int(_to_number(key))]
        except (IndexError, ValueError, OverflowError):
            return None
    return None


class _Evaluator:
    def __init__(self, text: str, context: Mapping[str, Any], functions: Mapping[str, Callable[..., Any]]):
        self.text = text
        self.context = context
        self.functions = functions

    def eval(self, node) -> Any:
        if isinstance(node, Literal):
            return node.value
        if isinstance(node, Name):
            return _lookup(self.context, node.name)
        if isinstance(node, Attr):
            obj = self.eval(node.obj)
            key = node.key if isinstance(node.key, str) else self.eval(node.key)
            return _lookup(obj, key)
        if isinstance(node, Not):
            return not truthy(self.eval(node.operand))
        if isinstance(node, Binary):
            if node.op == "&&":
                left = self.eval(node.left)
                return self.eval(node.right) if truthy(left) else left
            if node.op == "||":
                left = self.eval(node.left)
                return left if truthy(left) else self.eval(node.right)
            left, right = self.eval(node.left), self.eval(node.right)
            if node.op == "==":
                return _equal(left, right)
            if node.op == "!=":
                return not _equal(left, right)
            return _compare(node.op, left, right)
        if isinstance(node, Call):
            name = node.name.casefold()
            fn = self.functions.get(name) or BUILTINS.get(name)
            if fn is None:
                if name in STATUS_FUNCTIONS:
                    raise ExpressionError(self.text, f"Status function {node.name}() is not available here")
                raise ExpressionError(self.text, f"Unknown function {node.name}()")
            args = [self.eval(a) for a in node.args]
            try:
                return fn(*args)
            except (TypeError, ValueError) as e:
                raise ExpressionError(self.text, f"Bad arguments for {node.name}(): {e}") from e
        raise ExpressionError(self.text, f"Cannot evaluate node {node!r}")


def _strip_wrapper(text: str) -> str:
    text = text.strip()
    m = _INTERPOLATION_RE.fullmatch(text)
    return m.group(1) if m else text


def evaluate(
    text: str,
    context: Mapping[str, Any],
    functions: Mapping[str, Callable[..., Any]] | None = None,
) -> Any:
    """Evaluate a bare expression (an optional ${{ }} wrapper is accepted)."""
    expr = _strip_wrapper(text)
    return _Evaluator(expr, context, functions or {}).eval(parse(expr))


def evaluate_condition(
    text: str,
    context: Mapping[str, Any],
    functions: Mapping[str, Callable[..., Any]] | None = None,
) -> bool:
    return truthy(evaluate(text, context, functions))


def interpolate(template: str, context: Mapping[str, Any]) -> str:
    """Replace every ${{ expr }} in `template` with its string value."""
    if "${{" not in template:
        return template
    return _INTERPOLATION_RE.sub(lambda m: to_string(evaluate(m.group(1), context)), template)


def interpolate_mapping(values: Mapping[str, str], context: Mapping[str, Any]) -> Dict[str, str]:
    return {k: interpolate(str(v), context) for k, v in values.items()}


def uses_status_function(text: str) -> bool:
    """True if the expression calls success()/failure()/always()/cancelled()."""

    def walk(node) -> bool:
        if isinstance(node, Call):
            return node.name.casefold() in STATUS_FUNCTIONS or any(walk(a) for a in node.args)
        if isinstance(node, Attr):
            return walk(node.obj) or (not isinstance(node.key, str) and walk(node.key))
        if isinstance(node, Not):
            return walk(node.operand)
        if isinstance(node, Binary):
            return walk(node.left) or walk(node.right)
        return False

    return walk(parse(_strip_wrapper(text)))
