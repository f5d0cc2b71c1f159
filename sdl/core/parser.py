"""
SDL Parser
==========

Recursive-descent parser turning SDL source text into a ``Scenario`` AST.

``parse()`` never raises on malformed input: syntax problems become
SDL-E001 diagnostics. A malformed declaration is dropped and parsing resumes
at the next declaration; a missing scenario header or an unterminated
scenario block yields ``ast=None``.

Expression precedence, lowest first::

    or < and < comparison < + - < * / % < unary (- + not ±) < ^
"""

from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

from sdl.core.lexer import Token, TokenType, tokenize
from sdl.core.types import (
    DISTRIBUTION_PARAMS,
    MODEL_KINDS,
    Assumption,
    BinaryExpression,
    Bind,
    BooleanLiteral,
    Branch,
    Calibrate,
    CurrencyLiteral,
    DateValue,
    Declaration,
    Diagnostic,
    DistributionExpression,
    Duration,
    Expression,
    FunctionCall,
    Identifier,
    Impact,
    Import,
    Metadata,
    ModelExpression,
    NumberLiteral,
    OnTrigger,
    Parameter,
    PercentageLiteral,
    Scenario,
    Simulate,
    Span,
    StringLiteral,
    Timeframe,
    TimeseriesEntry,
    UnaryExpression,
    Variable,
    Watch,
    WatchRule,
    error,
    node_to_dict,
)

DECLARATION_KEYWORDS = frozenset([
    "assumption", "variable", "parameter", "impact", "branch",
    "simulate", "watch", "calibrate", "import",
])
BRANCH_DECLARATIONS = frozenset(["assumption", "variable", "parameter", "impact"])
METADATA_KEYS = frozenset([
    "timeframe", "resolution", "confidence", "author", "version", "description",
    "tags", "subtitle", "category", "icon", "color", "difficulty",
])
RESERVED_WORDS = frozenset(["and", "or", "not", "true", "false"])

RESOLUTIONS = ("yearly", "quarterly", "monthly", "weekly", "daily")
INTERPOLATIONS = ("linear", "step", "spline")
SIMULATION_METHODS = ("monte_carlo", "latin_hypercube", "sobol")
OUTPUT_TYPES = ("distribution", "percentiles", "summary", "full")
CALIBRATION_METHODS = ("bayesian_update", "maximum_likelihood", "ensemble")
REFRESH_RATES = ("realtime", "hourly", "daily", "weekly", "monthly", "quarterly", "yearly")
CONTROL_TYPES = ("slider", "toggle", "dropdown", "input")

_COMPARISON_OPS = {
    TokenType.EQ: "==", TokenType.NEQ: "!=",
    TokenType.LT: "<", TokenType.LE: "<=",
    TokenType.GT: ">", TokenType.GE: ">=",
}
_ADDITIVE_OPS = {TokenType.PLUS: "+", TokenType.MINUS: "-"}
_MULTIPLICATIVE_OPS = {TokenType.STAR: "*", TokenType.SLASH: "/", TokenType.PERCENT: "%"}


class ParseError(Exception):
    """Raised inside the parser to abandon the current construct."""

    def __init__(self, diagnostic: Diagnostic):
        self.diagnostic = diagnostic
        super().__init__(diagnostic.message)


@dataclass
class ParseResult:
    ast: Optional[Scenario]
    diagnostics: List[Diagnostic] = field(default_factory=list)

    @property
    def errors(self) -> List[Diagnostic]:
        return [d for d in self.diagnostics if d.is_error]

    @property
    def ok(self) -> bool:
        return self.ast is not None and not self.errors

    def to_dict(self) -> dict:
        return {
            "ast": node_to_dict(self.ast) if self.ast is not None else None,
            "diagnostics": [d.to_dict() for d in self.diagnostics],
        }


def _describe(token: Token) -> str:
    if token.type == TokenType.EOF:
        return "end of input"
    return f"'{token.text}'"


class Parser:
    def __init__(self, tokens: List[Token]):
        self.tokens = tokens
        self.pos = 0
        self.diagnostics: List[Diagnostic] = []

    # ------------------------------------------------------------------
    # Token helpers
    # ------------------------------------------------------------------

    @property
    def current(self) -> Token:
        return self.tokens[self.pos]

    def peek(self, offset: int = 1) -> Token:
        index = min(self.pos + offset, len(self.tokens) - 1)
        return self.tokens[index]

    def check(self, token_type: TokenType) -> bool:
        return self.current.type == token_type

    def advance(self) -> Token:
        token = self.current
        if token.type != TokenType.EOF:
            self.pos += 1
        return token

    def expect(self, token_type: TokenType, what: Optional[str] = None) -> Token:
        if not self.check(token_type):
            raise self._error(f"Expected {what or repr(token_type.value)}, got {_describe(self.current)}")
        return self.advance()

    def expect_word(self, word: str) -> Token:
        if not self.current.is_word(word):
            raise self._error(f"Expected '{word}', got {_describe(self.current)}")
        return self.advance()

    def _error(self, message: str, token: Optional[Token] = None, hint: Optional[str] = None) -> ParseError:
        token = token or self.current
        return ParseError(error("SDL-E001", message, token.span, hint))

    def _skip_separators(self) -> None:
        while self.check(TokenType.SEMICOLON) or self.check(TokenType.COMMA):
            self.advance()

    def _at_property(self) -> bool:
        return self.check(TokenType.IDENT) and self.peek().type == TokenType.COLON

    # ------------------------------------------------------------------
    # Error recovery
    # ------------------------------------------------------------------

    def _recover(self, start: int) -> None:
        """Skip the construct that began at ``start``.

        Resumes after its balanced ``{ ... }`` body, or at the next
        declaration keyword / metadata key found outside any braces.
        """
        self.pos = min(start + 1, len(self.tokens) - 1)
        depth = 0
        while not self.check(TokenType.EOF):
            token = self.current
            if token.type == TokenType.LBRACE:
                depth += 1
            elif token.type == TokenType.RBRACE:
                if depth == 0:
                    return
                depth -= 1
                if depth == 0:
                    self.advance()
                    return
            elif depth == 0 and token.type == TokenType.IDENT:
                if token.text in DECLARATION_KEYWORDS and self.peek().type != TokenType.COLON:
                    return
                if token.text in METADATA_KEYS and self.peek().type == TokenType.COLON:
                    return
            self.advance()

    def _skip_property(self, owner: str) -> None:
        token = self.advance()
        self.diagnostics.append(error(
            "SDL-E001", f"Unknown property '{token.text}' in {owner}", token.span))
        depth = 0
        while not self.check(TokenType.EOF):
            current = self.current
            if depth == 0 and (
                current.type in (TokenType.SEMICOLON, TokenType.RBRACE)
                or current.span.line > token.span.line
            ):
                return
            if current.type in (TokenType.LBRACE, TokenType.LBRACKET, TokenType.LPAREN):
                depth += 1
            elif current.type in (TokenType.RBRACE, TokenType.RBRACKET, TokenType.RPAREN):
                depth -= 1
            self.advance()

    # ------------------------------------------------------------------
    # Top level
    # ------------------------------------------------------------------

    def parse_file(self) -> Optional[Scenario]:
        declarations: List[Declaration] = []

        self._skip_separators()
        while self.current.is_word("import"):
            start = self.pos
            try:
                declarations.append(self._parse_import())
            except ParseError as e:
                self.diagnostics.append(e.diagnostic)
                self._recover(start)
            self._skip_separators()

        if not self.current.is_word("scenario"):
            self.diagnostics.append(error(
                "SDL-E001", f"Expected 'scenario', got {_describe(self.current)}", self.current.span,
                hint='A file must contain a block like: scenario "Name" { ... }'))
            return None

        header = self.advance()
        if not self.check(TokenType.STRING):
            self.diagnostics.append(error(
                "SDL-E001", "Scenario name must be a quoted string", self.current.span))
            return None
        name = self.advance().value
        if not self.check(TokenType.LBRACE):
            self.diagnostics.append(error(
                "SDL-E001", f"Expected '{{' after scenario name, got {_describe(self.current)}",
                self.current.span))
            return None
        self.advance()

        metadata: Dict[str, object] = {}
        while True:
            self._skip_separators()
            if self.check(TokenType.EOF):
                self.diagnostics.append(error(
                    "SDL-E001", f"Unterminated scenario block \"{name}\": missing '}}'", header.span))
                return None
            if self.check(TokenType.RBRACE):
                self.advance()
                break

            start = self.pos
            token = self.current
            try:
                if token.type == TokenType.IDENT and token.text in METADATA_KEYS and self._at_property():
                    self._parse_metadata_entry(metadata)
                elif token.type == TokenType.IDENT and token.text in DECLARATION_KEYWORDS:
                    declarations.append(self._parse_declaration())
                else:
                    raise self._error(
                        f"Unexpected {_describe(token)} in scenario body",
                        hint="Expected metadata (key: value) or a declaration block.")
            except ParseError as e:
                self.diagnostics.append(e.diagnostic)
                self._recover(start)

        self._skip_separators()
        if not self.check(TokenType.EOF):
            self.diagnostics.append(error(
                "SDL-E001", f"Unexpected {_describe(self.current)} after scenario block", self.current.span))

        return Scenario(name=name, metadata=Metadata(**metadata),
                        declarations=tuple(declarations), span=header.span)

    def _parse_metadata_entry(self, metadata: Dict[str, object]) -> None:
        key = self.advance().text
        self.expect(TokenType.COLON)

        if key == "timeframe":
            start = self._date()
            self.expect(TokenType.ARROW, "'->' between timeframe dates")
            metadata[key] = Timeframe(start, self._date())
        elif key == "resolution":
            metadata[key] = self._choice(RESOLUTIONS, "resolution")
        elif key == "confidence":
            metadata[key] = self._number(allow_percent=True)
        elif key == "tags":
            metadata[key] = self._string_list()
        elif key in ("category", "difficulty"):
            metadata[key] = self._word_or_string()
        else:
            metadata[key] = self._string()

    # ------------------------------------------------------------------
    # Declarations
    # ------------------------------------------------------------------

    def _parse_declaration(self, nested: bool = False) -> Declaration:
        keyword = self.current.text
        if nested and keyword not in BRANCH_DECLARATIONS:
            raise self._error(f"'{keyword}' cannot be declared inside a branch")
        parsers = {
            "assumption": self._parse_assumption,
            "variable": self._parse_variable,
            "parameter": self._parse_parameter,
            "impact": self._parse_impact,
            "branch": self._parse_branch,
            "simulate": self._parse_simulate,
            "watch": self._parse_watch,
            "calibrate": self._parse_calibrate,
            "import": self._parse_import,
        }
        return parsers[keyword]()

    def _block(self, owner: str, handlers: Dict[str, Callable[[], None]],
               extra: Optional[Callable[[], bool]] = None) -> None:
        """Parse ``{ key: value ... }`` dispatching each key to its handler."""
        self.expect(TokenType.LBRACE, f"'{{' to open {owner}")
        while True:
            self._skip_separators()
            if self.check(TokenType.RBRACE):
                self.advance()
                return
            if self.check(TokenType.EOF):
                raise self._error(f"Unterminated {owner}: missing '}}'")
            if extra is not None and extra():
                continue
            token = self.current
            if token.type == TokenType.IDENT and token.text in handlers:
                self.advance()
                handlers[token.text]()
            else:
                self._skip_property(owner)

    def _field(self, props: Dict[str, object], key: str, parse_fn: Callable[[], object]) -> Callable[[], None]:
        def handler() -> None:
            self.expect(TokenType.COLON, f"':' after '{key}'")
            props[key] = parse_fn()
        return handler

    def _parse_assumption(self) -> Assumption:
        start = self.expect_word("assumption")
        name = self._identifier()
        props: Dict[str, object] = {}

        def value() -> None:
            self.expect(TokenType.COLON, "':' after 'value'")
            props["value"] = self.parse_expression()
            if self.current.is_word("by"):
                self.advance()
                props["by_date"] = self._date()

        def bind() -> None:
            props["bind"] = self._parse_bind()

        def watch() -> None:
            props["watch"] = self._parse_watch_body(None, self.tokens[self.pos - 1])

        self._block(f"assumption '{name}'", {
            "value": value,
            "source": self._field(props, "source", self._string),
            "confidence": self._field(props, "confidence", lambda: self._number(allow_percent=True)),
            "uncertainty": self._field(props, "uncertainty", self._distribution),
            "bind": bind,
            "watch": watch,
        })
        return Assumption(name=name, span=start.span, **props)

    def _parse_variable(self) -> Variable:
        start = self.expect_word("variable")
        name = self._identifier()
        props: Dict[str, object] = {}
        timeseries: List[TimeseriesEntry] = []

        def timeseries_entry() -> bool:
            if self.current.type in (TokenType.NUMBER, TokenType.DATE) and self.peek().type == TokenType.COLON:
                date = self._date()
                self.advance()
                timeseries.append(TimeseriesEntry(date, self.parse_expression()))
                return True
            return False

        self._block(f"variable '{name}'", {
            "description": self._field(props, "description", self._string),
            "unit": self._field(props, "unit", self._string),
            "label": self._field(props, "label", self._string),
            "icon": self._field(props, "icon", self._string),
            "color": self._field(props, "color", self._string),
            "depends_on": self._field(props, "depends_on", self._name_list),
            "model": self._field(props, "model", self._model),
            "uncertainty": self._field(props, "uncertainty", self._distribution),
            "interpolation": self._field(props, "interpolation", lambda: self._choice(INTERPOLATIONS, "interpolation")),
        }, extra=timeseries_entry)
        return Variable(name=name, timeseries=tuple(timeseries), span=start.span, **props)

    def _parse_parameter(self) -> Parameter:
        start = self.expect_word("parameter")
        name = self._identifier()
        props: Dict[str, object] = {}

        self._block(f"parameter '{name}'", {
            "value": self._field(props, "value", self.parse_expression),
            "range": self._field(props, "range", self._range),
            "uncertainty": self._field(props, "uncertainty", self._distribution),
            "description": self._field(props, "description", self._string),
            "label": self._field(props, "label", self._string),
            "unit": self._field(props, "unit", self._string),
            "step": self._field(props, "step", self.parse_expression),
            "source": self._field(props, "source", self._string),
            "format": self._field(props, "format", self._string),
            "control": self._field(props, "control", lambda: self._choice(CONTROL_TYPES, "control")),
            "icon": self._field(props, "icon", self._string),
            "color": self._field(props, "color", self._string),
        })
        return Parameter(name=name, span=start.span, **props)

    def _parse_impact(self) -> Impact:
        start = self.expect_word("impact")
        name = self._identifier()
        props: Dict[str, object] = {}

        self._block(f"impact '{name}'", {
            "description": self._field(props, "description", self._string),
            "unit": self._field(props, "unit", self._string),
            "label": self._field(props, "label", self._string),
            "icon": self._field(props, "icon", self._string),
            "color": self._field(props, "color", self._string),
            "derives_from": self._field(props, "derives_from", self._name_list),
            "formula": self._field(props, "formula", self.parse_expression),
        })
        return Impact(name=name, span=start.span, **props)

    def _parse_branch(self) -> Branch:
        start = self.expect_word("branch")
        if self.check(TokenType.STRING):
            name = self.advance().value
        else:
            name = self._identifier()
        self.expect_word("when")
        condition = self.parse_expression()
        props: Dict[str, object] = {}
        declarations: List[Declaration] = []

        def fork() -> None:
            self.expect(TokenType.COLON, "':' after 'fork'")
            self.expect_word("scenario")
            props["fork"] = self._string()

        def nested_declaration() -> bool:
            token = self.current
            if token.type == TokenType.IDENT and token.text in DECLARATION_KEYWORDS \
                    and self.peek().type != TokenType.COLON:
                decl_start = self.pos
                try:
                    declarations.append(self._parse_declaration(nested=True))
                except ParseError as e:
                    self.diagnostics.append(e.diagnostic)
                    self._recover(decl_start)
                return True
            return False

        self._block(f"branch \"{name}\"", {
            "probability": self._field(props, "probability", lambda: self._number(allow_percent=True)),
            "fork": fork,
        }, extra=nested_declaration)
        return Branch(name=name, condition=condition, declarations=tuple(declarations),
                      span=start.span, **props)

    def _parse_simulate(self) -> Simulate:
        start = self.expect_word("simulate")
        props: Dict[str, object] = {}

        self._block("simulate block", {
            "runs": self._field(props, "runs", self._integer),
            "method": self._field(props, "method", lambda: self._choice(SIMULATION_METHODS, "simulation method")),
            "seed": self._field(props, "seed", self._integer),
            "output": self._field(props, "output", lambda: self._choice(OUTPUT_TYPES, "output")),
            "percentiles": self._field(props, "percentiles", self._number_list),
            "convergence": self._field(props, "convergence", self._number),
            "timeout": self._field(props, "timeout", self._duration),
        })
        return Simulate(span=start.span, **props)

    def _parse_watch(self) -> Watch:
        start = self.expect_word("watch")
        target = self._dotted_name()
        return self._parse_watch_body(target, start)

    def _parse_watch_body(self, target: Optional[str], start: Token) -> Watch:
        rules: List[WatchRule] = []
        props: Dict[str, object] = {}

        def rule(severity: str) -> Callable[[], None]:
            def handler() -> None:
                self.expect_word("when")
                if self.check(TokenType.COLON):
                    self.advance()
                rules.append(WatchRule(severity, self.parse_expression()))
            return handler

        def on_trigger() -> None:
            if self.check(TokenType.COLON):
                self.advance()
            trigger: Dict[str, object] = {}
            self._block("on_trigger block", {
                "recalculate": self._field(trigger, "recalculate", self._boolean),
                "notify": self._field(trigger, "notify", self._string_list),
                "suggest": self._field(trigger, "suggest", self._string),
            })
            props["on_trigger"] = OnTrigger(**trigger)

        owner = f"watch '{target}'" if target else "watch block"
        self._block(owner, {"warn": rule("warn"), "error": rule("error"), "on_trigger": on_trigger})
        return Watch(target=target, rules=tuple(rules), span=start.span, **props)

    def _parse_calibrate(self) -> Calibrate:
        start = self.expect_word("calibrate")
        target = self._dotted_name()
        props: Dict[str, object] = {}

        self._block(f"calibrate '{target}'", {
            "historical": self._field(props, "historical", self._string),
            "method": self._field(props, "method", lambda: self._choice(CALIBRATION_METHODS, "calibration method")),
            "window": self._field(props, "window", self._duration),
            "prior": self._field(props, "prior", self._distribution),
            "update_frequency": self._field(props, "update_frequency", lambda: self._choice(REFRESH_RATES, "update frequency")),
        })
        return Calibrate(target=target, span=start.span, **props)

    def _parse_bind(self) -> Bind:
        start = self.tokens[self.pos - 1]
        if self.check(TokenType.COLON):
            self.advance()
        props: Dict[str, object] = {}
        self._block("bind block", {
            "source": self._field(props, "source", self._string),
            "refresh": self._field(props, "refresh", lambda: self._choice(REFRESH_RATES, "refresh rate")),
            "field": self._field(props, "field", self._string),
            "transform": self._field(props, "transform", self.parse_expression),
            "fallback": self._field(props, "fallback", self.parse_expression),
        })
        return Bind(span=start.span, **props)

    def _parse_import(self) -> Import:
        start = self.expect_word("import")
        path = self._string()
        self.expect_word("as")
        return Import(path=path, alias=self._identifier(), span=start.span)

    # ------------------------------------------------------------------
    # Values
    # ------------------------------------------------------------------

    def _identifier(self) -> str:
        token = self.expect(TokenType.IDENT, "a name")
        return token.text

    def _dotted_name(self) -> str:
        parts = [self._identifier()]
        while self.check(TokenType.DOT):
            self.advance()
            parts.append(self._identifier())
        return ".".join(parts)

    def _name_list(self) -> Tuple[str, ...]:
        if self.check(TokenType.LBRACKET):
            self.advance()
            names = []
            while not self.check(TokenType.RBRACKET):
                names.append(self._dotted_name())
                if not self.check(TokenType.RBRACKET):
                    self.expect(TokenType.COMMA, "',' or ']'")
            self.advance()
            return tuple(names)

        names = [self._dotted_name()]
        # a trailing "name:" after the comma starts the next property
        while self.check(TokenType.COMMA) and self.peek().type == TokenType.IDENT \
                and self.peek(2).type != TokenType.COLON:
            self.advance()
            names.append(self._dotted_name())
        return tuple(names)

    def _string(self) -> str:
        return self.expect(TokenType.STRING, "a quoted string").value

    def _string_list(self) -> Tuple[str, ...]:
        if self.check(TokenType.STRING):
            return (self.advance().value,)
        self.expect(TokenType.LBRACKET, "'['")
        items = []
        while not self.check(TokenType.RBRACKET):
            items.append(self._string())
            if not self.check(TokenType.RBRACKET):
                self.expect(TokenType.COMMA, "',' or ']'")
        self.advance()
        return tuple(items)

    def _word_or_string(self) -> str:
        if self.check(TokenType.STRING):
            return self.advance().value
        return self._identifier()

    def _choice(self, options: Tuple[str, ...], what: str) -> str:
        token = self.current
        value = self._word_or_string()
        if value not in options:
            raise self._error(f"Unknown {what} '{value}'", token, hint=f"Expected one of: {', '.join(options)}")
        return value

    def _number(self, allow_percent: bool = False) -> float:
        sign = 1.0
        if self.check(TokenType.MINUS):
            self.advance()
            sign = -1.0
        token = self.current
        if token.type == TokenType.NUMBER:
            self.advance()
            return sign * token.value
        if allow_percent and token.type == TokenType.PERCENTAGE:
            self.advance()
            return sign * token.value / 100.0
        raise self._error(f"Expected a number, got {_describe(token)}")

    def _integer(self) -> int:
        token = self.current
        value = self._number()
        if value != int(value):
            raise self._error(f"Expected a whole number, got {token.text}", token)
        return int(value)

    def _boolean(self) -> bool:
        token = self.current
        if token.is_word("true", "false"):
            self.advance()
            return token.text == "true"
        raise self._error(f"Expected true or false, got {_describe(token)}")

    def _number_list(self) -> Tuple[float, ...]:
        self.expect(TokenType.LBRACKET, "'['")
        items = []
        while not self.check(TokenType.RBRACKET):
            items.append(self._number())
            if not self.check(TokenType.RBRACKET):
                self.expect(TokenType.COMMA, "',' or ']'")
        self.advance()
        return tuple(items)

    def _date(self) -> DateValue:
        token = self.current
        if token.type == TokenType.DATE:
            self.advance()
            return token.value
        if token.type == TokenType.NUMBER and token.value == int(token.value) and "." not in token.text:
            self.advance()
            return DateValue(int(token.value))
        raise self._error(f"Expected a date (YYYY, YYYY-MM or YYYY-MM-DD), got {_describe(token)}")

    def _duration(self) -> Duration:
        token = self.current
        if token.type != TokenType.DURATION:
            raise self._error(f"Expected a duration such as 5y, 6m, 4w or 30d, got {_describe(token)}")
        self.advance()
        return token.value

    def _range(self) -> Tuple[Expression, Expression]:
        self.expect(TokenType.LBRACKET, "'[' to open range")
        low = self.parse_expression()
        self.expect(TokenType.COMMA, "',' between range bounds")
        high = self.parse_expression()
        self.expect(TokenType.RBRACKET, "']' to close range")
        return (low, high)

    def _distribution(self) -> DistributionExpression:
        start = self.current
        if self.check(TokenType.PLUS_MINUS):
            self.advance()
            return DistributionExpression("normal", (self.parse_expression(),), span=start.span)

        expr = self.parse_expression()
        if not isinstance(expr, FunctionCall) or expr.name not in DISTRIBUTION_PARAMS:
            raise self._error(
                "Expected a distribution", start,
                hint="Use ±X% or one of: " + ", ".join(f"{k}(...)" for k in DISTRIBUTION_PARAMS))
        return DistributionExpression(expr.name, expr.args, expr.named_args, span=start.span)

    def _model(self) -> ModelExpression:
        start = self.current
        expr = self.parse_expression()
        if not isinstance(expr, FunctionCall) or expr.name not in MODEL_KINDS:
            raise self._error(
                "Expected a model", start,
                hint="Use one of: " + ", ".join(f"{k}(...)" for k in sorted(MODEL_KINDS)))
        params = list(expr.named_args)
        if expr.args:
            if expr.name != "polynomial":
                raise self._error(
                    f"Parameters of {expr.name}() must be named, e.g. rate=0.05", start)
            params = [(f"c{i}", arg) for i, arg in enumerate(expr.args)] + params
        return ModelExpression(expr.name, tuple(params), span=start.span)

    # ------------------------------------------------------------------
    # Expressions
    # ------------------------------------------------------------------

    def parse_expression(self) -> Expression:
        return self._parse_or()

    def _parse_or(self) -> Expression:
        left = self._parse_and()
        while self.current.is_word("or"):
            token = self.advance()
            left = BinaryExpression("or", left, self._parse_and(), span=token.span)
        return left

    def _parse_and(self) -> Expression:
        left = self._parse_comparison()
        while self.current.is_word("and"):
            token = self.advance()
            left = BinaryExpression("and", left, self._parse_comparison(), span=token.span)
        return left

    def _parse_comparison(self) -> Expression:
        left = self._parse_additive()
        while self.current.type in _COMPARISON_OPS:
            token = self.advance()
            left = BinaryExpression(_COMPARISON_OPS[token.type], left, self._parse_additive(), span=token.span)
        return left

    def _parse_additive(self) -> Expression:
        left = self._parse_multiplicative()
        while self.current.type in _ADDITIVE_OPS:
            token = self.advance()
            left = BinaryExpression(_ADDITIVE_OPS[token.type], left, self._parse_multiplicative(), span=token.span)
        return left

    def _parse_multiplicative(self) -> Expression:
        left = self._parse_unary()
        while self.current.type in _MULTIPLICATIVE_OPS:
            token = self.advance()
            left = BinaryExpression(_MULTIPLICATIVE_OPS[token.type], left, self._parse_unary(), span=token.span)
        return left

    def _parse_unary(self) -> Expression:
        token = self.current
        if token.type in (TokenType.MINUS, TokenType.PLUS, TokenType.PLUS_MINUS):
            self.advance()
            return UnaryExpression(token.text if token.type != TokenType.PLUS_MINUS else "±",
                                   self._parse_unary(), span=token.span)
        if token.is_word("not"):
            self.advance()
            return UnaryExpression("not", self._parse_unary(), span=token.span)
        return self._parse_power()

    def _parse_power(self) -> Expression:
        base = self._parse_primary()
        if self.check(TokenType.CARET):
            token = self.advance()
            return BinaryExpression("^", base, self._parse_unary(), span=token.span)
        return base

    def _parse_primary(self) -> Expression:
        token = self.current

        if token.type == TokenType.NUMBER:
            self.advance()
            return NumberLiteral(token.value, span=token.span)
        if token.type == TokenType.PERCENTAGE:
            self.advance()
            return PercentageLiteral(token.value, span=token.span)
        if token.type == TokenType.CURRENCY:
            self.advance()
            amount, currency, magnitude = token.value
            return CurrencyLiteral(amount, currency, magnitude, span=token.span)
        if token.type == TokenType.STRING:
            self.advance()
            return StringLiteral(token.value, span=token.span)
        if token.type == TokenType.LPAREN:
            self.advance()
            inner = self.parse_expression()
            self.expect(TokenType.RPAREN, "')'")
            return inner
        if token.type == TokenType.IDENT:
            if token.text in ("true", "false"):
                self.advance()
                return BooleanLiteral(token.text == "true", span=token.span)
            if token.text in RESERVED_WORDS:
                raise self._error(f"Unexpected keyword '{token.text}' in expression")
            if self.peek().type == TokenType.LPAREN:
                return self._parse_call()
            return Identifier(self._dotted_name(), span=token.span)

        raise self._error(f"Expected an expression, got {_describe(token)}")

    def _parse_call(self) -> FunctionCall:
        name_token = self.advance()
        self.expect(TokenType.LPAREN)
        args: List[Expression] = []
        named: List[Tuple[str, Expression]] = []
        while not self.check(TokenType.RPAREN):
            if self.check(TokenType.IDENT) and self.peek().type in (TokenType.ASSIGN, TokenType.EQ):
                key = self.advance().text
                self.advance()
                named.append((key, self.parse_expression()))
            elif named:
                raise self._error("Positional argument after named argument")
            else:
                args.append(self.parse_expression())
            if not self.check(TokenType.RPAREN):
                self.expect(TokenType.COMMA, "',' or ')'")
        self.advance()
        return FunctionCall(name_token.text, tuple(args), tuple(named), span=name_token.span)


def parse(source: str) -> ParseResult:
    """Parse SDL source text.

    Returns:
        ParseResult with the scenario AST (None when the input is too
        malformed to recover) and every lexical and syntax diagnostic.
    """
    tokens, diagnostics = tokenize(source)
    parser = Parser(tokens)
    ast = parser.parse_file()
    return ParseResult(ast=ast, diagnostics=diagnostics + parser.diagnostics)
