"""Condition predicates — parse once, evaluate against a run context.

Grammar::

    or      := and ('||' and)*
    and     := not ('&&' not)*
    not     := '!' not | primary
    primary := '(' or ')' | call | operand (('==' | '!=') operand)?
    call    := NAME '(' [literal (',' literal)*] ')'

References on the left of a comparison (``event``, ``ref``, ``repository``,
``workflow``, ``sha``, ``release_tag``, ``base_ref``, ``matrix.<axis>``,
``needs.<job>.result``, ``needs.<job>.outputs.<key>``) are resolved against
the run; bare words on the right are literals. ``changed(glob, ...)`` and
``only_changed(glob, ...)`` test the changed-path set.

A reference or function the evaluator does not know makes its atom false
(fail closed). A standalone atom holds only when it is, or resolves to,
``true``: ``deploy-enabled``, ``'staging'`` or ``42`` on their own are false.
Malformed syntax raises :class:`ConditionSyntaxError`.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Mapping

from pipewright.errors import ConditionSyntaxError
from pipewright.pipeline.models import RunContext, path_matches

logger = logging.getLogger("pipewright.pipeline.conditions")

_TOKEN_RE = re.compile(
    r"""
    \s*(?:
        (?P<op>&&|\|\||==|!=|!|\(|\)|,)
      | (?P<string>'(?:[^'\\]|\\.)*'|"(?:[^"\\]|\\.)*")
      | (?P<word>[A-Za-z0-9_][A-Za-z0-9_.\-/*]*)
    )
    """,
    re.VERBOSE,
)

_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z0-9_-]+)*$")

CONTEXT_REFS = frozenset(
    {"event", "ref", "repository", "workflow", "sha", "release_tag", "base_ref"}
)
FUNCTIONS = frozenset({"changed", "only_changed"})

_UNKNOWN = object()


# ── AST ──────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Literal:
    value: Any


@dataclass(frozen=True)
class Ref:
    path: tuple[str, ...]


@dataclass(frozen=True)
class Compare:
    left: Ref | Literal
    op: str
    right: Ref | Literal


@dataclass(frozen=True)
class Call:
    name: str
    args: tuple[str, ...]


@dataclass(frozen=True)
class Not:
    operand: Node


@dataclass(frozen=True)
class And:
    items: tuple[Node, ...]


@dataclass(frozen=True)
class Or:
    items: tuple[Node, ...]


Node = Literal | Ref | Compare | Call | Not | And | Or


@dataclass(frozen=True)
class Condition:
    """A parsed condition expression."""

    expression: str
    root: Node
    references_needs: bool = False
    references_matrix: bool = False

    def evaluate(
        self,
        context: RunContext,
        *,
        matrix: Mapping[str, Any] | None = None,
        needs: Mapping[str, Mapping[str, Any]] | None = None,
        empty_changes_match: bool = True,
    ) -> bool:
        return evaluate(
            self,
            context,
            matrix=matrix,
            needs=needs,
            empty_changes_match=empty_changes_match,
        )


# ── Parsing ──────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class _Token:
    kind: str  # "op", "string", "word", "end"
    text: str
    pos: int


def _tokenize(expression: str) -> list[_Token]:
    tokens: list[_Token] = []
    pos = 0
    length = len(expression)
    while pos < length:
        if expression[pos:].strip() == "":
            break
        match = _TOKEN_RE.match(expression, pos)
        if not match or match.end() == pos:
            start = pos + (len(expression[pos:]) - len(expression[pos:].lstrip()))
            raise ConditionSyntaxError(
                expression, start, f"unexpected character {expression[start]!r}"
            )
        kind = match.lastgroup or "op"
        tokens.append(_Token(kind, match.group(kind), match.start(kind)))
        pos = match.end()
    tokens.append(_Token("end", "", length))
    return tokens


class _Parser:
    def __init__(self, expression: str):
        self.expression = expression
        self.tokens = _tokenize(expression)
        self.index = 0

    def error(self, token: _Token, reason: str) -> ConditionSyntaxError:
        return ConditionSyntaxError(self.expression, token.pos, reason)

    @property
    def current(self) -> _Token:
        return self.tokens[self.index]

    def advance(self) -> _Token:
        token = self.tokens[self.index]
        self.index += 1
        return token

    def accept(self, op: str) -> bool:
        token = self.current
        if token.kind == "op" and token.text == op:
            self.index += 1
            return True
        return False

    def expect(self, op: str) -> None:
        if not self.accept(op):
            token = self.current
            found = token.text or "end of expression"
            raise self.error(token, f"expected {op!r}, found {found!r}")

    def parse(self) -> Node:
        if self.current.kind == "end":
            raise self.error(self.current, "empty condition")
        node = self.parse_or()
        if self.current.kind != "end":
            raise self.error(self.current, f"unexpected {self.current.text!r}")
        return node

    def parse_or(self) -> Node:
        items = [self.parse_and()]
        while self.accept("||"):
            items.append(self.parse_and())
        return items[0] if len(items) == 1 else Or(tuple(items))

    def parse_and(self) -> Node:
        items = [self.parse_not()]
        while self.accept("&&"):
            items.append(self.parse_not())
        return items[0] if len(items) == 1 else And(tuple(items))

    def parse_not(self) -> Node:
        if self.accept("!"):
            return Not(self.parse_not())
        return self.parse_primary()

    def parse_primary(self) -> Node:
        if self.accept("("):
            node = self.parse_or()
            self.expect(")")
            return node

        token = self.current
        if token.kind == "word" and self.tokens[self.index + 1].text == "(":
            return self.parse_call()

        left = self.parse_operand(left_side=True)
        token = self.current
        if token.kind == "op" and token.text in ("==", "!="):
            self.advance()
            right = self.parse_operand(left_side=False)
            return Compare(left, token.text, right)
        return left

    def parse_call(self) -> Call:
        name_token = self.advance()
        self.expect("(")
        args: list[str] = []
        if not self.accept(")"):
            while True:
                token = self.advance()
                if token.kind == "string":
                    args.append(_unquote(token.text))
                elif token.kind == "word":
                    args.append(token.text)
                else:
                    raise self.error(token, "function arguments must be literals")
                if self.accept(")"):
                    break
                self.expect(",")
        return Call(name_token.text, tuple(args))

    def parse_operand(self, *, left_side: bool) -> Ref | Literal:
        token = self.advance()
        if token.kind == "string":
            return Literal(_unquote(token.text))
        if token.kind != "word":
            found = token.text or "end of expression"
            raise self.error(token, f"expected a value, found {found!r}")

        word = token.text
        if word in ("true", "false"):
            return Literal(word == "true")
        if _IDENTIFIER_RE.match(word) and (left_side or _is_known_ref(word)):
            return Ref(tuple(word.split(".")))
        if word.isdigit():
            return Literal(int(word))
        return Literal(word)


def _unquote(text: str) -> str:
    body = text[1:-1]
    return re.sub(r"\\(.)", r"\1", body)


def _is_known_ref(word: str) -> bool:
    root = word.split(".", 1)[0]
    return root in ("matrix", "needs") and "." in word


def _walk(node: Node):
    yield node
    match node:
        case Compare(left, _, right):
            yield from _walk(left)
            yield from _walk(right)
        case Not(operand):
            yield from _walk(operand)
        case And(items) | Or(items):
            for item in items:
                yield from _walk(item)


def _strip_template(expression: str) -> str:
    stripped = expression.strip()
    if stripped.startswith("${{") and stripped.endswith("}}"):
        return stripped[3:-2].strip()
    return stripped


@lru_cache(maxsize=512)
def parse_condition(expression: str) -> Condition:
    """Parse a condition expression. Results are cached per expression."""
    source = _strip_template(expression)
    root = _Parser(source).parse()
    refs = [n for n in _walk(root) if isinstance(n, Ref)]
    return Condition(
        expression=source,
        root=root,
        references_needs=any(r.path[0] == "needs" for r in refs),
        references_matrix=any(r.path[0] == "matrix" for r in refs),
    )


# ── Evaluation ───────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class _Scope:
    context: RunContext
    matrix: Mapping[str, Any]
    needs: Mapping[str, Mapping[str, Any]]
    empty_changes_match: bool


def evaluate(
    condition: Condition | str,
    context: RunContext,
    *,
    matrix: Mapping[str, Any] | None = None,
    needs: Mapping[str, Mapping[str, Any]] | None = None,
    empty_changes_match: bool = True,
) -> bool:
    """Evaluate a condition. Pure: equal inputs always give equal results.

    Args:
        condition: A parsed :class:`Condition` or an expression string.
        context: The run's trigger attributes.
        matrix: Axis values of the job instance under evaluation.
        needs: Per dependency job name, ``{"result": str, "outputs": dict}``.
        empty_changes_match: Path tests pass when the run carries no
            changed-path set (e.g. manual dispatch).
    """
    if isinstance(condition, str):
        condition = parse_condition(condition)
    scope = _Scope(context, matrix or {}, needs or {}, empty_changes_match)
    return _eval(condition.root, scope)


def _eval(node: Node, scope: _Scope) -> bool:
    match node:
        case Or(items):
            return any(_eval(item, scope) for item in items)
        case And(items):
            return all(_eval(item, scope) for item in items)
        case Not(operand):
            return not _eval(operand, scope)
        case Compare(left, op, right):
            lhs = _resolve(left, scope)
            rhs = _resolve(right, scope)
            if lhs is _UNKNOWN or rhs is _UNKNOWN:
                return False
            equal = _normalize(lhs) == _normalize(rhs)
            return equal if op == "==" else not equal
        case Call(name, args):
            return _call(name, args, scope)
        case Literal(value):
            # Only the boolean literal `true` holds on its own
            if value is not True and value is not False:
                logger.debug("Bare literal %r in condition evaluates to false", value)
            return value is True
        case Ref():
            value = _resolve(node, scope)
            if value is _UNKNOWN:
                return False
            return _normalize(value) == "true"
    return False


def _resolve(operand: Ref | Literal, scope: _Scope) -> Any:
    if isinstance(operand, Literal):
        return operand.value

    path = operand.path
    root = path[0]
    if root in CONTEXT_REFS and len(path) == 1:
        value = getattr(scope.context, root)
        return value.value if root == "event" else value
    if root == "matrix" and len(path) == 2:
        return scope.matrix.get(path[1], _UNKNOWN)
    if root == "needs" and len(path) >= 3:
        dep = scope.needs.get(path[1])
        if dep is None:
            return _UNKNOWN
        if path[2] == "result" and len(path) == 3:
            return dep.get("result", _UNKNOWN)
        if path[2] == "outputs" and len(path) == 4:
            return (dep.get("outputs") or {}).get(path[3], _UNKNOWN)

    logger.debug("Unknown condition reference '%s' evaluates to false", ".".join(path))
    return _UNKNOWN


def _call(name: str, args: tuple[str, ...], scope: _Scope) -> bool:
    paths = scope.context.changed_paths
    if name == "changed":
        if not paths:
            return scope.empty_changes_match
        if not args:
            return True
        return any(path_matches(p, args) for p in paths)
    if name == "only_changed":
        if not paths or not args:
            return False
        return all(path_matches(p, args) for p in paths)

    logger.debug("Unknown condition function '%s' evaluates to false", name)
    return False


def _normalize(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)
