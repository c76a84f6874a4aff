# expressions.py
"""
`${{ }}` interpolation and `if:` predicates.

A restricted grammar, evaluated against a Context. No attribute access on
Python objects, no calls outside the small function table below.

    expr    := or
    or      := and ( '||' and )*
    and     := cmp ( '&&' cmp )*
    cmp     := unary ( ( '==' | '!=' | '<' | '<=' | '>' | '>=' | 'in' | 'not' 'in' ) unary )?
    unary   := '!' unary | primary
    primary := literal | '(' expr ')' | NAME '(' args ')' | path
    path    := NAME ( '.' NAME | '[' expr ']' )*

`a || b` doubles as the default operator: when `a` references a missing
scope/key, `b` is used instead of raising UnresolvedReferenceError.
"""
from __future__ import annotations

import json
import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from .errors import ExpressionSyntaxError, UnresolvedReferenceError

MARKER_RE = re.compile(r"\$\{\{(.*?)\}\}", re.DOTALL)

_TOKEN_RE = re.compile(
    r"""
    (?P<ws>\s+)
  | (?P<string>'(?:[^']|'')*')
  | (?P<number>-?\d+(?:\.\d+)?)
  | (?P<op>==|!=|<=|>=|&&|\|\||[<>!()\[\],.])
  | (?P<name>[A-Za-z_][A-Za-z0-9_\-]*)
    """,
    re.VERBOSE,
)

STATUS_FUNCTIONS = ("success", "failure", "always", "cancelled")


# ---------------------------------------------------------------------
# Tokens
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Token:
    kind: str  # string | number | op | name | end
    value: str
    pos: int


def tokenize(expression: str) -> List[Token]:
    tokens: List[Token] = []
    pos = 0
    while pos < len(expression):
        m = _TOKEN_RE.match(expression, pos)
        if not m:
            raise ExpressionSyntaxError(
                f"unexpected character {expression[pos]!r} at {pos}",
                details={"expression": expression},
            )
        kind = m.lastgroup
        if kind != "ws":
            tokens.append(Token(kind, m.group(kind), pos))
        pos = m.end()
    tokens.append(Token("end", "", pos))
    return tokens


# ---------------------------------------------------------------------
# AST
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Literal:
    value: Any


@dataclass(frozen=True)
class Path:
    root: str
    # each segment is a plain key (str) or an index expression node
    segments: Tuple[Any, ...]

    def describe(self) -> str:
        parts = [self.root]
        for seg in self.segments:
            if isinstance(seg, str):
                parts.append(f".{seg}")
            else:
                parts.append("[...]")
        return "".join(parts)


@dataclass(frozen=True)
class Not:
    operand: Any


@dataclass(frozen=True)
class Binary:
    op: str
    left: Any
    right: Any


@dataclass(frozen=True)
class Call:
    name: str
    args: Tuple[Any, ...]


class _Parser:
    def __init__(self, expression: str):
        self.expression = expression
        self.tokens = tokenize(expression)
        self.i = 0

    # -- helpers --
    @property
    def tok(self) -> Token:
        return self.tokens[self.i]

    def _advance(self) -> Token:
        t = self.tokens[self.i]
        self.i += 1
        return t

    def _accept(self, kind: str, value: str | None = None) -> Optional[Token]:
        t = self.tok
        if t.kind == kind and (value is None or t.value == value):
            return self._advance()
        return None

    def _expect(self, kind: str, value: str | None = None) -> Token:
        t = self._accept(kind, value)
        if t is None:
            want = value or kind
            got = self.tok.value or "end of expression"
            raise ExpressionSyntaxError(
                f"expected {want!r} but found {got!r} at {self.tok.pos}",
                details={"expression": self.expression},
            )
        return t

    # -- grammar --
    def parse(self) -> Any:
        node = self._or()
        if self.tok.kind != "end":
            raise ExpressionSyntaxError(
                f"unexpected {self.tok.value!r} at {self.tok.pos}",
                details={"expression": self.expression},
            )
        return node

    def _or(self) -> Any:
        node = self._and()
        while self._accept("op", "||"):
            node = Binary("||", node, self._and())
        return node

    def _and(self) -> Any:
        node = self._cmp()
        while self._accept("op", "&&"):
            node = Binary("&&", node, self._cmp())
        return node

    def _cmp(self) -> Any:
        node = self._unary()
        t = self.tok
        if t.kind == "op" and t.value in ("==", "!=", "<", "<=", ">", ">="):
            self._advance()
            return Binary(t.value, node, self._unary())
        if t.kind == "name" and t.value == "in":
            self._advance()
            return Binary("in", node, self._unary())
        if t.kind == "name" and t.value == "not":
            self._advance()
            self._expect("name", "in")
            return Binary("not in", node, self._unary())
        return node

    def _unary(self) -> Any:
        if self._accept("op", "!"):
            return Not(self._unary())
        return self._primary()

    def _primary(self) -> Any:
        t = self.tok
        if t.kind == "string":
            self._advance()
            return Literal(t.value[1:-1].replace("''", "'"))
        if t.kind == "number":
            self._advance()
            return Literal(float(t.value) if "." in t.value else int(t.value))
        if self._accept("op", "("):
            node = self._or()
            self._expect("op", ")")
            return node
        if t.kind == "name":
            self._advance()
            lowered = t.value.lower()
            if lowered == "true":
                return Literal(True)
            if lowered == "false":
                return Literal(False)
            if lowered == "null":
                return Literal(None)
            if self._accept("op", "("):
                args: List[Any] = []
                if not self._accept("op", ")"):
                    args.append(self._or())
                    while self._accept("op", ","):
                        args.append(self._or())
                    self._expect("op", ")")
                return Call(lowered, tuple(args))
            return self._path(t.value)
        raise ExpressionSyntaxError(
            f"unexpected {t.value or 'end of expression'!r} at {t.pos}",
            details={"expression": self.expression},
        )

    def _path(self, root: str) -> Path:
        segments: List[Any] = []
        while True:
            if self._accept("op", "."):
                segments.append(self._expect("name").value)
            elif self._accept("op", "["):
                segments.append(self._or())
                self._expect("op", "]")
            else:
                break
        return Path(root, tuple(segments))


@lru_cache(maxsize=1024)
def parse(expression: str) -> Any:
    """Parse a bare expression (no `${{ }}` marker). Cached; ASTs are immutable."""
    if not expression.strip():
        raise ExpressionSyntaxError("empty expression", details={"expression": expression})
    return _Parser(expression).parse()


def strip_marker(expression: str) -> str:
    s = expression.strip()
    m = MARKER_RE.fullmatch(s)
    return m.group(1).strip() if m else s


# ---------------------------------------------------------------------
# Values
# ---------------------------------------------------------------------

def is_truthy(value: Any) -> bool:
    if value is None or value is False:
        return False
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value != 0
    if isinstance(value, (str, Mapping, Sequence)):
        return len(value) > 0
    return bool(value)


def _plain(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    return value


def to_string(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (Mapping, list, tuple)):
        return json.dumps(_plain(value), sort_keys=True)
    return str(value)


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip()) if value.strip() else 0.0
        except ValueError:
            return None
    if value is None:
        return 0.0
    return None


def _loose_equals(a: Any, b: Any) -> bool:
    if isinstance(a, str) and isinstance(b, str):
        return a.lower() == b.lower()
    if isinstance(a, bool) or isinstance(b, bool):
        if isinstance(a, str) or isinstance(b, str):
            return to_string(a).lower() == to_string(b).lower()
        return bool(a) == bool(b)
    if isinstance(a, (int, float)) or isinstance(b, (int, float)):
        na, nb = _as_number(a), _as_number(b)
        return na is not None and nb is not None and na == nb
    return a == b


def _compare(op: str, a: Any, b: Any) -> bool:
    if isinstance(a, str) and isinstance(b, str):
        la, lb = a.lower(), b.lower()
    else:
        la, lb = _as_number(a), _as_number(b)
        if la is None or lb is None:
            return False
    if op == "<":
        return la < lb
    if op == "<=":
        return la <= lb
    if op == ">":
        return la > lb
    return la >= lb


def _contains(haystack: Any, needle: Any) -> bool:
    if isinstance(haystack, str):
        return to_string(needle).lower() in haystack.lower()
    if isinstance(haystack, Mapping):
        return any(_loose_equals(k, needle) for k in haystack)
    if isinstance(haystack, (list, tuple)):
        return any(_loose_equals(item, needle) for item in haystack)
    return False


# ---------------------------------------------------------------------
# Functions
# ---------------------------------------------------------------------

_FORMAT_RE = re.compile(r"\{\{|\}\}|\{(\d+)\}")


def _fn_format(fmt: Any, *args: Any) -> str:
    def repl(m: re.Match) -> str:
        token = m.group(0)
        if token == "{{":
            return "{"
        if token == "}}":
            return "}"
        idx = int(m.group(1))
        if idx >= len(args):
            raise ExpressionSyntaxError(f"format(): no argument for {{{idx}}}")
        return to_string(args[idx])

    return _FORMAT_RE.sub(repl, to_string(fmt))


def _fn_join(seq: Any, sep: Any = ",") -> str:
    if isinstance(seq, (list, tuple)):
        return to_string(sep).join(to_string(v) for v in seq)
    return to_string(seq)


def _fn_from_json(text: Any) -> Any:
    try:
        return json.loads(to_string(text))
    except ValueError as e:
        raise ExpressionSyntaxError(f"fromJSON(): invalid JSON: {e}")


FUNCTIONS: Dict[str, Tuple[Callable[..., Any], int, int]] = {
    # name -> (fn, min_args, max_args)
    "contains": (lambda h, n: _contains(h, n), 2, 2),
    "startswith": (lambda s, p: to_string(s).lower().startswith(to_string(p).lower()), 2, 2),
    "endswith": (lambda s, p: to_string(s).lower().endswith(to_string(p).lower()), 2, 2),
    "format": (_fn_format, 1, 32),
    "join": (_fn_join, 1, 2),
    "tojson": (lambda v: json.dumps(_plain(v), indent=2, sort_keys=True), 1, 1),
    "fromjson": (_fn_from_json, 1, 1),
}


def _job_status(ctx: Mapping[str, Any]) -> str:
    job = ctx.get("job")
    if isinstance(job, Mapping):
        return str(job.get("status", "success"))
    return "success"


def _status_function(name: str, ctx: Mapping[str, Any]) -> bool:
    status = _job_status(ctx)
    if name == "always":
        return True
    if name == "success":
        return status == "success"
    if name == "failure":
        return status == "failure"
    return status == "cancelled"


# ---------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------

def _lookup(node: Path, ctx: Mapping[str, Any]) -> Any:
    if node.root not in ctx:
        raise UnresolvedReferenceError(
            f"unknown scope {node.root!r}",
            details={"reference": node.describe()},
        )
    value: Any = ctx[node.root]
    walked = node.root
    for seg in node.segments:
        key = seg if isinstance(seg, str) else _eval(seg, ctx)
        if isinstance(value, Mapping):
            if key not in value:
                raise UnresolvedReferenceError(
                    f"{walked!r} has no key {to_string(key)!r}",
                    details={"reference": node.describe()},
                )
            value = value[key]
        elif isinstance(value, (list, tuple)) and not isinstance(key, bool):
            n = _as_number(key)
            if n is None or not n.is_integer() or not 0 <= int(n) < len(value):
                raise UnresolvedReferenceError(
                    f"index {to_string(key)!r} out of range for {walked!r}",
                    details={"reference": node.describe()},
                )
            value = value[int(n)]
        else:
            raise UnresolvedReferenceError(
                f"{walked!r} is not an object",
                details={"reference": node.describe()},
            )
        walked = f"{walked}.{to_string(key)}"
    return value


def _eval(node: Any, ctx: Mapping[str, Any]) -> Any:
    if isinstance(node, Literal):
        return node.value
    if isinstance(node, Path):
        return _lookup(node, ctx)
    if isinstance(node, Not):
        return not is_truthy(_eval(node.operand, ctx))
    if isinstance(node, Call):
        if node.name in STATUS_FUNCTIONS:
            if node.args:
                raise ExpressionSyntaxError(f"{node.name}() takes no arguments")
            return _status_function(node.name, ctx)
        if node.name not in FUNCTIONS:
            raise ExpressionSyntaxError(f"unknown function {node.name}()")
        fn, lo, hi = FUNCTIONS[node.name]
        if not lo <= len(node.args) <= hi:
            raise ExpressionSyntaxError(f"{node.name}() called with {len(node.args)} argument(s)")
        return fn(*(_eval(a, ctx) for a in node.args))

    op = node.op
    if op == "||":
        try:
            left = _eval(node.left, ctx)
        except UnresolvedReferenceError:
            return _eval(node.right, ctx)
        return left if is_truthy(left) else _eval(node.right, ctx)
    if op == "&&":
        left = _eval(node.left, ctx)
        return _eval(node.right, ctx) if is_truthy(left) else left

    left, right = _eval(node.left, ctx), _eval(node.right, ctx)
    if op == "==":
        return _loose_equals(left, right)
    if op == "!=":
        return not _loose_equals(left, right)
    if op == "in":
        return _contains(right, left)
    if op == "not in":
        return not _contains(right, left)
    return _compare(op, left, right)


def evaluate(expression: str, ctx: Mapping[str, Any]) -> Any:
    """
    Evaluate one expression, with or without the `${{ }}` marker.

    Raises UnresolvedReferenceError for a missing scope/key that has no
    `||` default, ExpressionSyntaxError for malformed input.
    """
    return _eval(parse(strip_marker(expression)), ctx)


def interpolate(template: Any, ctx: Mapping[str, Any]) -> Any:
    """
    Substitute every `${{ }}` block in `template`.

    A template that is exactly one block returns the raw value (so a
    mapping stays a mapping); anything else returns a string.
    """
    if not isinstance(template, str):
        return template
    whole = MARKER_RE.fullmatch(template.strip())
    if whole and template.strip().count("${{") == 1:
        return evaluate(whole.group(1), ctx)
    return MARKER_RE.sub(lambda m: to_string(evaluate(m.group(1), ctx)), template)


def interpolate_str(template: Any, ctx: Mapping[str, Any]) -> str:
    return to_string(interpolate(template, ctx))


def check_predicate(expression: Optional[str], ctx: Mapping[str, Any]) -> bool:
    """
    Evaluate an `if:` predicate.

    Without a status function the predicate is implicitly
    `success() && (<expression>)`, as in GitHub Actions.
    """
    if expression is None or not str(expression).strip():
        return _status_function("success", ctx)
    if not uses_status_function(expression):
        if not _status_function("success", ctx):
            return False
    return is_truthy(evaluate(expression, ctx))


def _walk(node: Any):
    yield node
    if isinstance(node, Not):
        yield from _walk(node.operand)
    elif isinstance(node, Binary):
        yield from _walk(node.left)
        yield from _walk(node.right)
    elif isinstance(node, Call):
        for a in node.args:
            yield from _walk(a)
    elif isinstance(node, Path):
        for seg in node.segments:
            if not isinstance(seg, str):
                yield from _walk(seg)


def uses_status_function(expression: Optional[str]) -> bool:
    if not expression:
        return False
    tree = parse(strip_marker(expression))
    return any(isinstance(n, Call) and n.name in STATUS_FUNCTIONS for n in _walk(tree))


def references(text: str, *, predicate: bool = False) -> List[str]:
    """
    Dotted paths referenced by a template, or by a bare predicate when
    predicate=True. Used for static validation before a run.
    """
    out: List[str] = []
    if predicate:
        bodies = [strip_marker(text)]
    else:
        bodies = [m.group(1) for m in MARKER_RE.finditer(text)]
    for body in bodies:
        for n in _walk(parse(body.strip())):
            if isinstance(n, Path):
                out.append(".".join([n.root, *[s for s in n.segments if isinstance(s, str)]]))
    return out
