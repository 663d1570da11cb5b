from __future__ import annotations
from dataclasses import dataclass, field
from functools import lru_cache
import re
from typing import Any, Callable, Dict, List, Mapping, Optional, Set, Tuple, Union

from py_expression_eval import Parser

from .errors import AmbiguousPrecedence, ExpressionError, ExpressionSyntaxError, UnresolvedReference
from .skills import parse_quantity

Number = Union[int, float]

# Single global parser; content only ever reaches it through the strict grammar below
_parser = Parser()


@dataclass(frozen=True)
class Symbolic:
    """Arithmetic that still carries an unrolled dice term, e.g. '1d6 + 4'."""
    text: str

    def __str__(self) -> str:
        return self.text


Value = Union[int, float, Symbolic]


# -----------------------------
# AST
# -----------------------------

@dataclass(frozen=True)
class Num:
    value: Number


@dataclass(frozen=True)
class Name:
    name: str


@dataclass(frozen=True)
class ChoiceRef:
    tag: str


@dataclass(frozen=True)
class Dice:
    count: int
    sides: int


@dataclass(frozen=True)
class Neg:
    operand: "Node"


@dataclass(frozen=True)
class Chain:
    op: str
    terms: Tuple["Node", ...]


Node = Union[Num, Name, ChoiceRef, Dice, Neg, Chain]

_TOKEN_RE = re.compile(r"""
    (?P<ws>\s+)
  | (?P<dice>\d+\s*d\s*\d+(?![A-Za-z0-9_]))
  | (?P<number>\d+(?:\.\d+)?)
  | (?P<choice>\$[A-Za-z_][A-Za-z0-9_]*)
  | (?P<name>[A-Za-z_][A-Za-z0-9_]*)
  | (?P<op>[-+*/])
  | (?P<lparen>\()
  | (?P<rparen>\))
""", re.VERBOSE)


def _tokenize(text: str) -> List[Tuple[str, str]]:
    tokens: List[Tuple[str, str]] = []
    pos = 0
    while pos < len(text):
        m = _TOKEN_RE.match(text, pos)
        if not m:
            raise ExpressionSyntaxError(f"unexpected character {text[pos]!r} at {pos} in {text!r}")
        pos = m.end()
        if m.lastgroup != "ws":
            tokens.append((m.lastgroup, m.group()))
    return tokens


class _Parser:
    """Recursive descent over one operator kind per parenthesis level."""

    def __init__(self, text: str):
        self.text = text
        self.tokens = _tokenize(text)
        self.pos = 0

    def _peek(self) -> Optional[Tuple[str, str]]:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def _next(self) -> Tuple[str, str]:
        tok = self._peek()
        if tok is None:
            raise ExpressionSyntaxError(f"unexpected end of expression {self.text!r}")
        self.pos += 1
        return tok

    def parse(self) -> Node:
        node = self._chain()
        tok = self._peek()
        if tok is not None:
            raise ExpressionSyntaxError(f"unexpected {tok[1]!r} in {self.text!r}")
        return node

    def _chain(self) -> Node:
        terms = [self._operand()]
        op: Optional[str] = None
        while (tok := self._peek()) is not None and tok[0] == "op":
            self.pos += 1
            if op is None:
                op = tok[1]
            elif tok[1] != op:
                raise AmbiguousPrecedence(
                    f"'{op}' and '{tok[1]}' mixed without parentheses in {self.text!r}")
            terms.append(self._operand())
        return terms[0] if op is None else Chain(op, tuple(terms))

    def _operand(self) -> Node:
        kind, text = self._next()
        if kind == "number":
            return Num(float(text) if "." in text else int(text))
        if kind == "dice":
            count, sides = (int(p) for p in re.split(r"\s*d\s*", text))
            return Dice(count, sides)
        if kind == "choice":
            return ChoiceRef(text[1:])
        if kind == "name":
            return Name(text)
        if kind == "op" and text == "-":
            return Neg(self._operand())
        if kind == "op" and text == "+":
            return self._operand()
        if kind == "lparen":
            inner = self._chain()
            closing = self._next()
            if closing[0] != "rparen":
                raise ExpressionSyntaxError(f"expected ')' but found {closing[1]!r} in {self.text!r}")
            return inner
        raise ExpressionSyntaxError(f"unexpected {text!r} in {self.text!r}")


@lru_cache(maxsize=4096)
def parse_expression(text: str) -> Node:
    return _Parser(text).parse()


# LRU-compiled numeric forms ("v0 + (v1 * 2)")
@lru_cache(maxsize=8192)
def _compile_expr(expr: str):
    return _parser.parse(expr)


# -----------------------------
# Evaluation
# -----------------------------

def _no_labels(name: str) -> Optional[Number]:
    return None


@dataclass
class EvalContext:
    """Label lookup against live state plus one instance's choice bindings."""
    lookup: Callable[[str], Optional[Number]] = _no_labels
    bindings: Mapping[str, Any] = field(default_factory=dict)

    def resolve_name(self, name: str) -> Number:
        value = self.lookup(name.replace("_", " "))
        if value is None:
            raise UnresolvedReference(name)
        return value

    def resolve_choice(self, tag: str) -> Number:
        if tag not in self.bindings:
            raise UnresolvedReference(f"${tag}")
        raw = self.bindings[tag]
        if isinstance(raw, (int, float)) and not isinstance(raw, bool):
            return raw
        text = str(raw)
        quantity = parse_quantity(text)
        if quantity is not None:
            return quantity
        value = self.lookup(text)
        if value is None:
            raise UnresolvedReference(f"${tag} ({text})")
        return value


def _has_dice(node: Node) -> bool:
    if isinstance(node, Dice):
        return True
    if isinstance(node, Neg):
        return _has_dice(node.operand)
    if isinstance(node, Chain):
        return any(_has_dice(t) for t in node.terms)
    return False


def _numeric_text(node: Node, ctx: EvalContext, values: Dict[str, Number]) -> str:
    if isinstance(node, Num):
        return str(node.value)
    if isinstance(node, (Name, ChoiceRef)):
        var = f"v{len(values)}"
        values[var] = ctx.resolve_name(node.name) if isinstance(node, Name) else ctx.resolve_choice(node.tag)
        return var
    if isinstance(node, Neg):
        return f"(-{_numeric_text(node.operand, ctx, values)})"
    if isinstance(node, Chain):
        return "(" + f" {node.op} ".join(_numeric_text(t, ctx, values) for t in node.terms) + ")"
    raise ExpressionSyntaxError(f"dice term {node} cannot be evaluated numerically")


def _normalize(value: Any) -> Number:
    f = float(value)
    return int(f) if f.is_integer() else f


def _numeric(node: Node, ctx: EvalContext) -> Number:
    values: Dict[str, Number] = {}
    text = _numeric_text(node, ctx, values)
    try:
        return _normalize(_compile_expr(text).evaluate(values))
    except ZeroDivisionError:
        raise ExpressionError("division by zero") from None


def _wrap(value: Value) -> str:
    if isinstance(value, Symbolic):
        return f"({value.text})" if " " in value.text else value.text
    text = format_value(value)
    return f"({text})" if value < 0 else text


def _join(op: str, parts: List[Value]) -> str:
    out = _wrap(parts[0])
    for part in parts[1:]:
        if op == "+" and not isinstance(part, Symbolic) and part < 0:
            out += f" - {format_value(-part)}"
        else:
            out += f" {op} {_wrap(part)}"
    return out


def _symbolic(node: Node, ctx: EvalContext) -> Value:
    if not _has_dice(node):
        return _numeric(node, ctx)
    if isinstance(node, Dice):
        return Symbolic(f"{node.count}d{node.sides}")
    if isinstance(node, Neg):
        return Symbolic(f"-{_wrap(_symbolic(node.operand, ctx))}")
    assert isinstance(node, Chain)
    if node.op not in "+*":
        return Symbolic(_join(node.op, [_symbolic(t, ctx) for t in node.terms]))
    # commutative: fold the dice-free terms into one number at the first numeric position
    numeric = [t for t in node.terms if not _has_dice(t)]
    folded: Optional[Number] = None
    if numeric:
        folded = _numeric(numeric[0] if len(numeric) == 1 else Chain(node.op, tuple(numeric)), ctx)
        if folded == (0 if node.op == "+" else 1):
            folded = None
    parts: List[Value] = []
    placed = False
    for term in node.terms:
        if _has_dice(term):
            parts.append(_symbolic(term, ctx))
        elif not placed:
            placed = True
            if folded is not None:
                parts.append(folded)
    if len(parts) == 1:
        return parts[0]
    return Symbolic(_join(node.op, parts))


def evaluate(expr: Union[str, int, float], ctx: Optional[EvalContext] = None) -> Value:
    """
    Evaluate an expression string (or numeric literal) against a context.
    Dice terms stay symbolic; any arithmetic around them is folded where it can be.
    """
    if isinstance(expr, bool):
        raise ExpressionSyntaxError(f"not an expression: {expr!r}")
    if isinstance(expr, (int, float)):
        return expr
    text = str(expr).strip()
    if not text:
        raise ExpressionSyntaxError("empty expression")
    return _symbolic(parse_expression(text), ctx or EvalContext())


def format_value(value: Value) -> str:
    if isinstance(value, Symbolic):
        return value.text
    if isinstance(value, float):
        return f"{value:g}"
    return str(value)


# -----------------------------
# Description templates
# -----------------------------

_TEMPLATE_RE = re.compile(r"\[\[(.*?)\]\]", re.S)


def template_expressions(text: str) -> List[str]:
    return [m.strip() for m in _TEMPLATE_RE.findall(text or "")]


def render_template(text: str, ctx: Optional[EvalContext] = None,
                    errors: Optional[List[str]] = None) -> str:
    """Replace every [[ expr ]] with its value; failures render inline as <<Error: msg>>."""
    def _sub(m: re.Match) -> str:
        try:
            return format_value(evaluate(m.group(1).strip(), ctx))
        except ExpressionError as e:
            if errors is not None:
                errors.append(f"{type(e).__name__}: {e}")
            return f"<<{type(e).__name__}: {e}>>"
    return _TEMPLATE_RE.sub(_sub, text or "")


def references(expr: Union[str, int, float]) -> Tuple[Set[str], Set[str]]:
    """(labels, choice tags) an expression reads."""
    labels: Set[str] = set()
    choices: Set[str] = set()
    if isinstance(expr, (int, float)):
        return labels, choices
    stack: List[Node] = [parse_expression(str(expr).strip())]
    while stack:
        node = stack.pop()
        if isinstance(node, Name):
            labels.add(node.name)
        elif isinstance(node, ChoiceRef):
            choices.add(node.tag)
        elif isinstance(node, Neg):
            stack.append(node.operand)
        elif isinstance(node, Chain):
            stack.extend(node.terms)
    return labels, choices


def choice_refs(expr: Union[str, int, float]) -> Set[str]:
    """Choice tags ($tag, without the sigil) an expression reads."""
    return references(expr)[1]


def expr_cache_info() -> str:
    p = parse_expression.cache_info()
    c = _compile_expr.cache_info()
    return (f"expr-cache: parse hits={p.hits}, misses={p.misses}; "
            f"compile hits={c.hits}, misses={c.misses}, size={c.currsize}/{c.maxsize}")
