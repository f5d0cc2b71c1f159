"""
SDL Abstract Syntax Tree
========================

Every node is a frozen dataclass and every sequence is a tuple, so a parsed
scenario is immutable: it can be shared across worker threads, and
calibration derives new scenarios with ``dataclasses.replace`` instead of
mutating the original.

The logical dependency graph between declarations is NOT part of this tree;
it is built separately by the validator over declaration names.
"""

import calendar
import datetime as dt
from dataclasses import dataclass, field, fields, is_dataclass
from enum import Enum
from typing import Any, Dict, Iterator, Optional, Tuple, Union


# ============================================================================
# DIAGNOSTICS
# ============================================================================

class Severity(Enum):
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


@dataclass(frozen=True)
class Span:
    """1-based source position of the first token of a node."""
    line: int
    column: int


@dataclass(frozen=True)
class Diagnostic:
    severity: Severity
    code: str
    message: str
    span: Optional[Span] = None
    hint: Optional[str] = None

    @property
    def is_error(self) -> bool:
        return self.severity == Severity.ERROR

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "severity": self.severity.value,
            "code": self.code,
            "message": self.message,
        }
        if self.span is not None:
            d["span"] = {"line": self.span.line, "column": self.span.column}
        if self.hint:
            d["hint"] = self.hint
        return d

    def format(self, filename: str = "<source>") -> str:
        where = f"{filename}:{self.span.line}:{self.span.column}" if self.span else filename
        return f"{where}: {self.severity.value} [{self.code}] {self.message}"


def error(code: str, message: str, span: Optional[Span] = None, hint: Optional[str] = None) -> Diagnostic:
    return Diagnostic(Severity.ERROR, code, message, span, hint)


def warning(code: str, message: str, span: Optional[Span] = None, hint: Optional[str] = None) -> Diagnostic:
    return Diagnostic(Severity.WARNING, code, message, span, hint)


# ============================================================================
# TIME VALUES
# ============================================================================

@dataclass(frozen=True)
class DateValue:
    year: int
    month: Optional[int] = None
    day: Optional[int] = None

    def sort_key(self) -> Tuple[int, int, int]:
        return (self.year, self.month or 1, self.day or 1)

    def to_date(self, end_of_period: bool = False) -> dt.date:
        """Calendar date; missing month/day resolve to the start (or end) of the period."""
        if end_of_period:
            month = self.month or 12
            day = self.day or calendar.monthrange(self.year, month)[1]
        else:
            month = self.month or 1
            day = self.day or 1
        return dt.date(self.year, month, day)

    def to_year(self) -> float:
        return year_fraction(self.to_date())

    def __str__(self) -> str:
        text = f"{self.year:04d}"
        if self.month is not None:
            text += f"-{self.month:02d}"
            if self.day is not None:
                text += f"-{self.day:02d}"
        return text


def year_fraction(date: dt.date) -> float:
    """Continuous time axis used by interpolation: 2030-07-02 -> ~2030.5."""
    days_in_year = 366 if calendar.isleap(date.year) else 365
    return date.year + (date.timetuple().tm_yday - 1) / days_in_year


@dataclass(frozen=True)
class Timeframe:
    start: DateValue
    end: DateValue


@dataclass(frozen=True)
class Duration:
    amount: float
    unit: str  # y | m | w | d | s

    UNIT_YEARS = {"y": 1.0, "m": 1.0 / 12, "w": 1.0 / 52, "d": 1.0 / 365, "s": 1.0 / (365 * 86400)}

    @property
    def years(self) -> float:
        return self.amount * self.UNIT_YEARS[self.unit]

    def __str__(self) -> str:
        return f"{self.amount:g}{self.unit}"


# ============================================================================
# EXPRESSIONS
# ============================================================================

def _span_field() -> Any:
    return field(default=None, compare=False, repr=False)


@dataclass(frozen=True)
class NumberLiteral:
    value: float
    span: Optional[Span] = _span_field()


@dataclass(frozen=True)
class PercentageLiteral:
    value: float  # stored on the 0-100 scale
    span: Optional[Span] = _span_field()


@dataclass(frozen=True)
class CurrencyLiteral:
    value: float  # magnitude already applied: 5M EUR -> 5_000_000
    currency: str
    magnitude: Optional[str] = None
    span: Optional[Span] = _span_field()


@dataclass(frozen=True)
class StringLiteral:
    value: str
    span: Optional[Span] = _span_field()


@dataclass(frozen=True)
class BooleanLiteral:
    value: bool
    span: Optional[Span] = _span_field()


@dataclass(frozen=True)
class Identifier:
    name: str  # may be dotted: "energy.demand"
    span: Optional[Span] = _span_field()

    @property
    def root(self) -> str:
        return self.name.split(".", 1)[0]


@dataclass(frozen=True)
class BinaryExpression:
    operator: str
    left: "Expression"
    right: "Expression"
    span: Optional[Span] = _span_field()


@dataclass(frozen=True)
class UnaryExpression:
    operator: str  # "-", "+", "not", "±"
    operand: "Expression"
    span: Optional[Span] = _span_field()


@dataclass(frozen=True)
class FunctionCall:
    name: str
    args: Tuple["Expression", ...] = ()
    named_args: Tuple[Tuple[str, "Expression"], ...] = ()
    span: Optional[Span] = _span_field()


Expression = Union[
    NumberLiteral,
    PercentageLiteral,
    CurrencyLiteral,
    StringLiteral,
    BooleanLiteral,
    Identifier,
    BinaryExpression,
    UnaryExpression,
    FunctionCall,
]

BUILTIN_FUNCTIONS = frozenset([
    "min", "max", "abs", "sqrt", "log", "exp", "pow", "round", "clamp", "lerp", "sum", "avg",
])


def iter_nodes(expr: Expression) -> Iterator[Expression]:
    """Depth-first walk over an expression tree, parents before children."""
    stack = [expr]
    while stack:
        node = stack.pop()
        yield node
        if isinstance(node, BinaryExpression):
            stack.extend((node.right, node.left))
        elif isinstance(node, UnaryExpression):
            stack.append(node.operand)
        elif isinstance(node, FunctionCall):
            stack.extend(value for _, value in reversed(node.named_args))
            stack.extend(reversed(node.args))


def referenced_names(expr: Expression) -> Iterator[Identifier]:
    for node in iter_nodes(expr):
        if isinstance(node, Identifier):
            yield node


_PRECEDENCE = {
    "or": 1, "and": 2,
    "==": 3, "!=": 3, "<": 3, "<=": 3, ">": 3, ">=": 3,
    "+": 4, "-": 4, "*": 5, "/": 5, "%": 5, "^": 7,
}


def expression_to_text(expr: Expression, parent_precedence: int = 0) -> str:
    """Render an expression back to SDL source text."""
    if isinstance(expr, NumberLiteral):
        return f"{expr.value:g}"
    if isinstance(expr, PercentageLiteral):
        return f"{expr.value:g}%"
    if isinstance(expr, CurrencyLiteral):
        return f"{expr.value:g} {expr.currency}"
    if isinstance(expr, StringLiteral):
        return '"' + expr.value.replace("\\", "\\\\").replace('"', '\\"') + '"'
    if isinstance(expr, BooleanLiteral):
        return "true" if expr.value else "false"
    if isinstance(expr, Identifier):
        return expr.name
    if isinstance(expr, UnaryExpression):
        sep = " " if expr.operator == "not" else ""
        return f"{expr.operator}{sep}{expression_to_text(expr.operand, 6)}"
    if isinstance(expr, BinaryExpression):
        prec = _PRECEDENCE[expr.operator]
        left = expression_to_text(expr.left, prec)
        right = expression_to_text(expr.right, prec + (0 if expr.operator == "^" else 1))
        text = f"{left} {expr.operator} {right}"
        return f"({text})" if prec < parent_precedence else text
    if isinstance(expr, FunctionCall):
        parts = [expression_to_text(a) for a in expr.args]
        parts += [f"{k}={expression_to_text(v)}" for k, v in expr.named_args]
        return f"{expr.name}({', '.join(parts)})"
    raise TypeError(f"Not an expression node: {expr!r}")


# ============================================================================
# DISTRIBUTIONS AND MODELS
# ============================================================================

DISTRIBUTION_PARAMS: Dict[str, Tuple[str, ...]] = {
    "normal": ("mean", "std"),
    "uniform": ("min", "max"),
    "beta": ("alpha", "beta"),
    "triangular": ("min", "mode", "max"),
    "lognormal": ("mu", "sigma"),
}

MODEL_KINDS = frozenset(["linear", "exponential", "logistic", "sigmoid", "polynomial", "spline"])


@dataclass(frozen=True)
class DistributionExpression:
    kind: str
    params: Tuple[Expression, ...] = ()
    named_params: Tuple[Tuple[str, Expression], ...] = ()
    span: Optional[Span] = _span_field()

    @property
    def relative(self) -> bool:
        """``±X%`` shorthand: a normal whose spread is a share of the base value."""
        return (
            self.kind == "normal"
            and len(self.params) == 1
            and not self.named_params
            and isinstance(_strip_sign(self.params[0]), PercentageLiteral)
        )

    def arguments(self) -> Tuple[Optional[Expression], ...]:
        """Positional parameters with named ones slotted into their canonical position."""
        names = DISTRIBUTION_PARAMS.get(self.kind, ())
        slots = list(self.params) + [None] * max(0, len(names) - len(self.params))
        for key, value in self.named_params:
            if key in names:
                slots[names.index(key)] = value
        while slots and slots[-1] is None:
            slots.pop()
        return tuple(slots)


def _strip_sign(expr: Expression) -> Expression:
    while isinstance(expr, UnaryExpression) and expr.operator in ("±", "+"):
        expr = expr.operand
    return expr


@dataclass(frozen=True)
class ModelExpression:
    kind: str
    params: Tuple[Tuple[str, Expression], ...] = ()
    span: Optional[Span] = _span_field()

    def param(self, *names: str) -> Optional[Expression]:
        for key, value in self.params:
            if key in names:
                return value
        return None


def distribution_to_text(dist: DistributionExpression) -> str:
    if dist.relative:
        return f"normal(±{expression_to_text(_strip_sign(dist.params[0]))})"
    parts = [expression_to_text(p) for p in dist.params]
    parts += [f"{k}={expression_to_text(v)}" for k, v in dist.named_params]
    return f"{dist.kind}({', '.join(parts)})"


# ============================================================================
# DECLARATIONS
# ============================================================================

@dataclass(frozen=True)
class TimeseriesEntry:
    date: DateValue
    value: Expression


@dataclass(frozen=True)
class Bind:
    source: Optional[str] = None
    refresh: Optional[str] = None
    field: Optional[str] = None
    transform: Optional[Expression] = None
    fallback: Optional[Expression] = None
    span: Optional[Span] = _span_field()


@dataclass(frozen=True)
class WatchRule:
    severity: str  # "warn" | "error"
    condition: Expression


@dataclass(frozen=True)
class OnTrigger:
    recalculate: Optional[bool] = None
    notify: Tuple[str, ...] = ()
    suggest: Optional[str] = None


@dataclass(frozen=True)
class Watch:
    target: Optional[str] = None  # None when nested inside an assumption
    rules: Tuple[WatchRule, ...] = ()
    on_trigger: Optional[OnTrigger] = None
    span: Optional[Span] = _span_field()


@dataclass(frozen=True)
class Assumption:
    name: str
    value: Optional[Expression] = None
    by_date: Optional[DateValue] = None
    source: Optional[str] = None
    confidence: Optional[float] = None
    uncertainty: Optional[DistributionExpression] = None
    bind: Optional[Bind] = None
    watch: Optional[Watch] = None
    span: Optional[Span] = _span_field()


@dataclass(frozen=True)
class Variable:
    name: str
    timeseries: Tuple[TimeseriesEntry, ...] = ()
    depends_on: Tuple[str, ...] = ()
    model: Optional[ModelExpression] = None
    uncertainty: Optional[DistributionExpression] = None
    interpolation: Optional[str] = None
    description: Optional[str] = None
    unit: Optional[str] = None
    label: Optional[str] = None
    icon: Optional[str] = None
    color: Optional[str] = None
    span: Optional[Span] = _span_field()


@dataclass(frozen=True)
class Parameter:
    name: str
    value: Optional[Expression] = None
    range: Optional[Tuple[Expression, Expression]] = None
    uncertainty: Optional[DistributionExpression] = None
    description: Optional[str] = None
    label: Optional[str] = None
    unit: Optional[str] = None
    step: Optional[Expression] = None
    source: Optional[str] = None
    format: Optional[str] = None
    control: Optional[str] = None
    icon: Optional[str] = None
    color: Optional[str] = None
    span: Optional[Span] = _span_field()


@dataclass(frozen=True)
class Impact:
    name: str
    derives_from: Tuple[str, ...] = ()
    formula: Optional[Expression] = None
    description: Optional[str] = None
    unit: Optional[str] = None
    label: Optional[str] = None
    icon: Optional[str] = None
    color: Optional[str] = None
    span: Optional[Span] = _span_field()


@dataclass(frozen=True)
class Branch:
    name: str
    condition: Expression
    probability: Optional[float] = None
    fork: Optional[str] = None
    declarations: Tuple["Declaration", ...] = ()
    span: Optional[Span] = _span_field()


@dataclass(frozen=True)
class Simulate:
    runs: Optional[int] = None
    method: Optional[str] = None
    seed: Optional[int] = None
    output: Optional[str] = None
    percentiles: Optional[Tuple[float, ...]] = None
    convergence: Optional[float] = None
    timeout: Optional[Duration] = None
    span: Optional[Span] = _span_field()


@dataclass(frozen=True)
class Calibrate:
    target: str
    historical: Optional[str] = None
    method: Optional[str] = None
    window: Optional[Duration] = None
    prior: Optional[DistributionExpression] = None
    update_frequency: Optional[str] = None
    span: Optional[Span] = _span_field()


@dataclass(frozen=True)
class Import:
    path: str
    alias: str
    span: Optional[Span] = _span_field()

    @property
    def name(self) -> str:
        return self.alias


Declaration = Union[Assumption, Variable, Parameter, Impact, Branch, Simulate, Watch, Calibrate, Import]

NAMED_DECLARATIONS = (Assumption, Variable, Parameter, Impact, Branch, Import)


def declaration_name(decl: Declaration) -> Optional[str]:
    """Name a declaration contributes to the symbol table, if any."""
    if isinstance(decl, NAMED_DECLARATIONS):
        return decl.name
    return None


# ============================================================================
# SCENARIO
# ============================================================================

@dataclass(frozen=True)
class Metadata:
    timeframe: Optional[Timeframe] = None
    resolution: Optional[str] = None
    confidence: Optional[float] = None
    author: Optional[str] = None
    version: Optional[str] = None
    description: Optional[str] = None
    tags: Tuple[str, ...] = ()
    subtitle: Optional[str] = None
    category: Optional[str] = None
    icon: Optional[str] = None
    color: Optional[str] = None
    difficulty: Optional[str] = None


@dataclass(frozen=True)
class Scenario:
    name: str
    metadata: Metadata = Metadata()
    declarations: Tuple[Declaration, ...] = ()
    span: Optional[Span] = _span_field()

    def of_type(self, kind: type) -> Tuple[Any, ...]:
        return tuple(d for d in self.declarations if isinstance(d, kind))

    def find(self, name: str) -> Optional[Declaration]:
        for decl in self.declarations:
            if declaration_name(decl) == name:
                return decl
        return None

    @property
    def simulate_block(self) -> Optional[Simulate]:
        blocks = self.of_type(Simulate)
        return blocks[0] if blocks else None


def node_to_dict(node: Any) -> Any:
    """JSON-friendly view of any AST value, tagged with node type names."""
    if isinstance(node, Enum):
        return node.value
    if is_dataclass(node) and not isinstance(node, type):
        out: Dict[str, Any] = {"type": type(node).__name__}
        for f in fields(node):
            value = getattr(node, f.name)
            if value is None or value == ():
                continue
            out[f.name] = node_to_dict(value)
        return out
    if isinstance(node, (tuple, list)):
        return [node_to_dict(v) for v in node]
    return node
