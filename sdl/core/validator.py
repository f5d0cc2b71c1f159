"""
Semantic validation and causal graph construction.

``validate()`` accumulates every finding as a ``Diagnostic`` with a stable
code and builds the causal graph over declared names. A dependency cycle
produces a single SDL-E004 error and withholds the graph, which downstream
components read as "not simulatable".
"""

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set, Tuple

from sdl.core.types import (
    BUILTIN_FUNCTIONS,
    DISTRIBUTION_PARAMS,
    Assumption,
    BinaryExpression,
    Branch,
    Calibrate,
    CurrencyLiteral,
    Declaration,
    Diagnostic,
    DistributionExpression,
    Expression,
    FunctionCall,
    Identifier,
    Impact,
    Import,
    NumberLiteral,
    Parameter,
    PercentageLiteral,
    Scenario,
    Simulate,
    Span,
    UnaryExpression,
    Variable,
    Watch,
    declaration_name,
    error,
    iter_nodes,
    referenced_names,
    warning,
)

GRAPH_NODE_TYPES = (Assumption, Parameter, Variable, Impact, Import)
CONSTANT_TYPES = (Assumption, Parameter)
WATCH_NAMES = frozenset(["actual", "assumed"])
TRANSFORM_NAMES = frozenset(["value"])


@dataclass(frozen=True)
class CausalGraph:
    nodes: Tuple[str, ...]
    edges: Tuple[Tuple[str, str], ...]  # (referenced, declaring)
    topological_order: Tuple[str, ...]

    def predecessors(self, name: str) -> List[str]:
        return [src for src, dst in self.edges if dst == name]

    def to_dict(self) -> dict:
        return {
            "nodes": list(self.nodes),
            "edges": [{"from": src, "to": dst} for src, dst in self.edges],
            "topological_order": list(self.topological_order),
        }


@dataclass
class ValidationResult:
    diagnostics: List[Diagnostic] = field(default_factory=list)
    causal_graph: Optional[CausalGraph] = None

    @property
    def errors(self) -> List[Diagnostic]:
        return [d for d in self.diagnostics if d.is_error]

    @property
    def warnings(self) -> List[Diagnostic]:
        return [d for d in self.diagnostics if not d.is_error]

    @property
    def valid(self) -> bool:
        return not self.errors and self.causal_graph is not None

    def to_dict(self) -> dict:
        return {
            "valid": self.valid,
            "diagnostics": [d.to_dict() for d in self.diagnostics],
            "causal_graph": self.causal_graph.to_dict() if self.causal_graph else None,
        }


def _static_number(expr: Optional[Expression]) -> Optional[float]:
    """Value of an expression built only from literals, as written (10% -> 10)."""
    if isinstance(expr, (NumberLiteral, PercentageLiteral, CurrencyLiteral)):
        return float(expr.value)
    if isinstance(expr, UnaryExpression) and expr.operator in ("-", "+", "±"):
        inner = _static_number(expr.operand)
        if inner is None:
            return None
        return -inner if expr.operator == "-" else inner
    if isinstance(expr, BinaryExpression) and expr.operator in ("+", "-", "*", "/"):
        left, right = _static_number(expr.left), _static_number(expr.right)
        if left is None or right is None:
            return None
        if expr.operator == "+":
            return left + right
        if expr.operator == "-":
            return left - right
        if expr.operator == "*":
            return left * right
        return left / right if right != 0 else None
    return None


class Validator:
    def __init__(self, ast: Scenario):
        self.ast = ast
        self.diagnostics: List[Diagnostic] = []
        self.symbols: Dict[str, Declaration] = {}
        self.declared_order: Dict[str, int] = {}

    def run(self) -> ValidationResult:
        self._check_metadata()
        self._collect_symbols()

        for index, decl in enumerate(self.ast.declarations):
            self._check_declaration(decl, index)

        graph = self._build_graph()
        return ValidationResult(diagnostics=self.diagnostics, causal_graph=graph)

    def _add(self, diagnostic: Diagnostic) -> None:
        self.diagnostics.append(diagnostic)

    # ------------------------------------------------------------------
    # Scenario level
    # ------------------------------------------------------------------

    def _check_metadata(self) -> None:
        meta = self.ast.metadata
        if meta.timeframe is None:
            self._add(warning(
                "SDL-W001", f"Scenario \"{self.ast.name}\" has no timeframe; defaulting to 2025 -> 2050",
                self.ast.span, hint="Add e.g. timeframe: 2025 -> 2050"))
        elif meta.timeframe.start.sort_key() >= meta.timeframe.end.sort_key():
            self._add(error(
                "SDL-E008", f"Timeframe start {meta.timeframe.start} is not before end {meta.timeframe.end}",
                self.ast.span))

        if meta.confidence is not None and not 0.0 <= meta.confidence <= 1.0:
            self._add(error(
                "SDL-E003", f"Scenario confidence {meta.confidence:g} is outside [0, 1]", self.ast.span))

    def _collect_symbols(self) -> None:
        for index, decl in enumerate(self.ast.declarations):
            name = declaration_name(decl)
            if name is None:
                continue
            if name in self.symbols:
                self._add(error(
                    "SDL-E006", f"Duplicate declaration '{name}'", decl.span,
                    hint=f"'{name}' is already declared as {type(self.symbols[name]).__name__.lower()}"))
                continue
            self.symbols[name] = decl
            self.declared_order[name] = index

    def _node(self, name: str) -> Optional[Declaration]:
        decl = self.symbols.get(name.split(".", 1)[0])
        return decl if isinstance(decl, GRAPH_NODE_TYPES) else None

    # ------------------------------------------------------------------
    # Declarations
    # ------------------------------------------------------------------

    def _check_declaration(self, decl: Declaration, index: int, branch: Optional[Branch] = None) -> None:
        if isinstance(decl, Assumption):
            self._check_assumption(decl, index, branch)
        elif isinstance(decl, Parameter):
            self._check_parameter(decl, index, branch)
        elif isinstance(decl, Variable):
            self._check_variable(decl, branch)
        elif isinstance(decl, Impact):
            self._check_impact(decl)
        elif isinstance(decl, Branch):
            self._check_branch(decl, index)
        elif isinstance(decl, Simulate):
            self._check_simulate(decl)
        elif isinstance(decl, Watch):
            self._check_watch(decl)
        elif isinstance(decl, Calibrate):
            self._check_calibrate(decl)

    def _check_assumption(self, decl: Assumption, index: int, branch: Optional[Branch]) -> None:
        owner = f"assumption '{decl.name}'"
        if branch is None and not decl.source:
            self._add(warning("SDL-W004", f"Assumption '{decl.name}' has no source", decl.span))
        if decl.confidence is not None and not 0.0 <= decl.confidence <= 1.0:
            self._add(error(
                "SDL-E003", f"Confidence {decl.confidence:g} of {owner} is outside [0, 1]", decl.span))
        if decl.value is not None:
            self._check_constant_expression(decl.value, owner, index, decl.span)
        if decl.uncertainty is not None:
            self._check_distribution(decl.uncertainty, owner, index)
        if decl.bind is not None:
            for expr in (decl.bind.transform, decl.bind.fallback):
                if expr is not None:
                    self._check_expression(expr, owner, decl.span, allowed=TRANSFORM_NAMES)
        if decl.watch is not None:
            self._check_watch_rules(decl.watch, decl.name)

    def _check_parameter(self, decl: Parameter, index: int, branch: Optional[Branch]) -> None:
        owner = f"parameter '{decl.name}'"
        for expr in (decl.value, decl.step):
            if expr is not None:
                self._check_constant_expression(expr, owner, index, decl.span)
        if decl.range is not None:
            for bound in decl.range:
                self._check_constant_expression(bound, owner, index, decl.span)
            low, high = (_static_number(b) for b in decl.range)
            if low is not None and high is not None and low >= high:
                self._add(error(
                    "SDL-E003", f"Range of {owner} is empty: min {low:g} >= max {high:g}", decl.span))
        if decl.uncertainty is not None:
            self._check_distribution(decl.uncertainty, owner, index)

    def _check_variable(self, decl: Variable, branch: Optional[Branch]) -> None:
        owner = f"variable '{decl.name}'"
        self._check_dependencies(decl.depends_on, owner, decl.span, "depends_on")

        previous = None
        for entry in decl.timeseries:
            if previous is not None and entry.date.sort_key() <= previous.sort_key():
                self._add(error(
                    "SDL-E008", f"Timeseries of {owner} is not chronological: {entry.date} follows {previous}",
                    entry.value.span or decl.span))
            previous = entry.date
            self._check_expression(entry.value, owner, decl.span, constants_only=True)

        if decl.model is not None:
            if decl.model.kind == "spline" and not decl.timeseries:
                self._add(warning(
                    "SDL-W007", f"{owner.capitalize()} uses model spline() without timeseries anchors "
                    f"and evaluates to 0", decl.span,
                    hint="spline() interpolates the timeseries; add anchors such as 2025: 10"))
            for _, expr in decl.model.params:
                self._check_expression(expr, owner, decl.span)
                self._check_declared_reads(expr, decl.depends_on, owner, decl.span, "depends_on")

        if decl.uncertainty is not None:
            self._check_distribution(decl.uncertainty, owner)
        elif branch is None:
            self._add(warning(
                "SDL-W002", f"Variable '{decl.name}' declares no uncertainty", decl.span,
                hint="Add e.g. uncertainty: normal(±10%)"))

    def _check_impact(self, decl: Impact) -> None:
        owner = f"impact '{decl.name}'"
        self._check_dependencies(decl.derives_from, owner, decl.span, "derives_from")
        if decl.formula is not None:
            self._check_expression(decl.formula, owner, decl.span)
            self._check_declared_reads(decl.formula, decl.derives_from, owner, decl.span, "derives_from")
        else:
            # without a formula the impact sums its inputs
            for name in decl.derives_from:
                if isinstance(self._node(name), Import):
                    self._add(error(
                        "SDL-E005", f"{owner.capitalize()} sums '{name}' from an import; "
                        f"imported scenarios are not resolved", decl.span,
                        hint="Add a formula that reads local declarations"))

    def _check_branch(self, decl: Branch, index: int) -> None:
        owner = f"branch \"{decl.name}\""
        self._check_expression(decl.condition, owner, decl.span)
        if decl.probability is not None and not 0.0 <= decl.probability <= 1.0:
            self._add(error(
                "SDL-E003", f"Probability {decl.probability:g} of {owner} is outside [0, 1]", decl.span))

        for nested in decl.declarations:
            name = declaration_name(nested)
            target = self.symbols.get(name)
            if not isinstance(target, type(nested)):
                self._add(warning(
                    "SDL-W005",
                    f"{type(nested).__name__} '{name}' in {owner} overrides no top-level "
                    f"{type(nested).__name__.lower()} and is ignored",
                    nested.span))
                continue
            self._check_declaration(nested, self.declared_order[name], branch=decl)

    def _check_simulate(self, decl: Simulate) -> None:
        if decl.runs is not None and decl.runs < 1:
            self._add(error("SDL-E003", f"Simulation runs must be at least 1, got {decl.runs}", decl.span))
        for p in decl.percentiles or ():
            if not 0.0 <= p <= 100.0:
                self._add(error("SDL-E003", f"Percentile {p:g} is outside [0, 100]", decl.span))
        if decl.convergence is not None:
            if not 0.0 < decl.convergence < 1.0:
                self._add(error(
                    "SDL-E003", f"Convergence threshold {decl.convergence:g} is outside (0, 1)", decl.span))
            elif decl.convergence > 0.1:
                self._add(warning(
                    "SDL-W003", f"Convergence threshold {decl.convergence:g} is unusually loose",
                    decl.span, hint="Thresholds of 0.01-0.05 are typical"))

    def _check_watch(self, decl: Watch) -> None:
        if self._node(decl.target) is None:
            self._add(error("SDL-E005", f"Watch target '{decl.target}' is not declared", decl.span))
        self._check_watch_rules(decl, decl.target)

    def _check_watch_rules(self, decl: Watch, target: str) -> None:
        for rule in decl.rules:
            self._check_expression(rule.condition, f"watch '{target}'", decl.span, allowed=WATCH_NAMES)

    def _check_calibrate(self, decl: Calibrate) -> None:
        owner = f"calibrate '{decl.target}'"
        if self._node(decl.target) is None:
            self._add(error("SDL-E005", f"Calibration target '{decl.target}' is not declared", decl.span))
        if decl.prior is not None:
            self._check_distribution(decl.prior, owner)

    # ------------------------------------------------------------------
    # References and expressions
    # ------------------------------------------------------------------

    def _check_dependencies(self, names: Iterable[str], owner: str, span: Optional[Span], key: str) -> None:
        for name in names:
            if self._node(name) is None:
                self._add(error(
                    "SDL-E005", f"Unresolved reference '{name}' in {key} of {owner}", span))

    def _check_expression(self, expr: Expression, owner: str, span: Optional[Span],
                          allowed: Optional[Set[str]] = None, constants_only: bool = False,
                          before: Optional[int] = None) -> None:
        """Check functions and identifiers used by ``expr``.

        Args:
            allowed: when given, the only names the expression may read
            constants_only: identifiers must be assumptions or parameters
            before: identifiers must be constants declared before this index
        """
        for node in iter_nodes(expr):
            if isinstance(node, FunctionCall) and node.name not in BUILTIN_FUNCTIONS:
                self._add(error(
                    "SDL-E009", f"Unknown function '{node.name}' in {owner}", node.span or span,
                    hint="Available: " + ", ".join(sorted(BUILTIN_FUNCTIONS))))

        for ident in referenced_names(expr):
            where = ident.span or span
            if allowed is not None:
                if ident.name not in allowed:
                    self._add(error(
                        "SDL-E005", f"'{ident.name}' cannot be used in {owner}; "
                        f"available names: {', '.join(sorted(allowed))}", where))
                continue

            target = self._node(ident.name)
            if target is None:
                self._add(error("SDL-E005", f"Unresolved reference '{ident.name}' in {owner}", where))
            elif isinstance(target, Import):
                self._add(error(
                    "SDL-E005", f"{owner.capitalize()} reads '{ident.name}' from import '{ident.root}'; "
                    f"imported scenarios are not resolved", where,
                    hint=f"Declare the value locally; '{ident.root}' may only appear in depends_on"))
            elif constants_only or before is not None:
                if not isinstance(target, CONSTANT_TYPES):
                    self._add(error(
                        "SDL-E005", f"{owner.capitalize()} reads {type(target).__name__.lower()} "
                        f"'{ident.name}'; only assumptions and parameters are allowed here", where))
                elif before is not None and self.declared_order[ident.root] >= before:
                    self._add(error(
                        "SDL-E005", f"{owner.capitalize()} reads '{ident.name}' before it is declared", where))

    def _check_constant_expression(self, expr: Expression, owner: str, index: int, span: Optional[Span]) -> None:
        self._check_expression(expr, owner, span, before=index)

    def _check_declared_reads(self, expr: Expression, declared: Tuple[str, ...], owner: str,
                              span: Optional[Span], key: str) -> None:
        listed = {name.split(".", 1)[0] for name in declared}
        for ident in referenced_names(expr):
            target = self._node(ident.name)
            if isinstance(target, (Variable, Impact)) and ident.root not in listed:
                self._add(warning(
                    "SDL-W006", f"{owner.capitalize()} reads '{ident.name}' which is not listed in {key}",
                    ident.span or span, hint=f"Add '{ident.root}' to {key} to make the dependency explicit"))

    def _check_distribution(self, dist: DistributionExpression, owner: str, before: Optional[int] = None) -> None:
        span = dist.span
        expected = DISTRIBUTION_PARAMS[dist.kind]

        for key, _ in dist.named_params:
            if key not in expected:
                self._add(error(
                    "SDL-E007", f"{dist.kind}() of {owner} has no parameter '{key}'", span,
                    hint=f"Expected: {', '.join(expected)}"))

        for expr in list(dist.params) + [v for _, v in dist.named_params]:
            self._check_expression(expr, owner, span, before=before)

        args = dist.arguments()
        values = [_static_number(a) for a in args]
        count = len(args)

        if dist.kind == "normal":
            if count not in (1, 2) or any(a is None for a in args):
                self._add(error(
                    "SDL-E007", f"normal() of {owner} takes a spread or (mean, std), got {count} parameters", span))
                return
            sigma = values[-1]
            if sigma is not None and sigma < 0:
                self._add(error("SDL-E007", f"normal() of {owner} has negative spread {sigma:g}", span))
            return

        if count != len(expected) or any(a is None for a in args):
            self._add(error(
                "SDL-E007", f"{dist.kind}() of {owner} takes {len(expected)} parameters "
                f"({', '.join(expected)}), got {count}", span))
            return
        if any(v is None for v in values):
            return

        if dist.kind == "uniform" and not values[0] < values[1]:
            self._add(error(
                "SDL-E007", f"uniform() of {owner} needs min < max, got {values[0]:g} >= {values[1]:g}", span))
        elif dist.kind == "beta" and not (values[0] > 0 and values[1] > 0):
            self._add(error(
                "SDL-E007", f"beta() of {owner} needs alpha > 0 and beta > 0", span))
        elif dist.kind == "triangular" and not values[0] <= values[1] <= values[2]:
            self._add(error(
                "SDL-E007", f"triangular() of {owner} needs min <= mode <= max", span))
        elif dist.kind == "lognormal" and not values[1] > 0:
            self._add(error(
                "SDL-E007", f"lognormal() of {owner} needs sigma > 0, got {values[1]:g}", span))

    # ------------------------------------------------------------------
    # Causal graph
    # ------------------------------------------------------------------

    def _branch_overrides(self) -> Dict[str, List[Declaration]]:
        overrides: Dict[str, List[Declaration]] = {}
        for branch in self.ast.of_type(Branch):
            for nested in branch.declarations:
                name = declaration_name(nested)
                if isinstance(nested, (Variable, Impact)) and isinstance(self.symbols.get(name), type(nested)):
                    overrides.setdefault(name, []).append(nested)
        return overrides

    def _dynamic_reads(self, decls: Iterable[Declaration]) -> List[str]:
        """Variables and impacts a declaration reads while a timestep is computed.

        Covers model parameters, uncertainty parameters and formulas, plus the
        declared dependencies of branch overrides.
        """
        exprs: List[Expression] = []
        names: List[str] = []
        for decl in decls:
            if isinstance(decl, Variable):
                names.extend(decl.depends_on)
                if decl.model is not None:
                    exprs.extend(expr for _, expr in decl.model.params)
                if decl.uncertainty is not None:
                    exprs.extend(decl.uncertainty.params)
                    exprs.extend(expr for _, expr in decl.uncertainty.named_params)
            elif isinstance(decl, Impact):
                names.extend(decl.derives_from)
                if decl.formula is not None:
                    exprs.append(decl.formula)
        for expr in exprs:
            names.extend(ident.name for ident in referenced_names(expr))

        reads: List[str] = []
        for name in names:
            root = name.split(".", 1)[0]
            if isinstance(self.symbols.get(root), (Variable, Impact)) and root not in reads:
                reads.append(root)
        return reads

    def _build_graph(self) -> Optional[CausalGraph]:
        nodes = [declaration_name(d) for d in self.ast.declarations
                 if isinstance(d, GRAPH_NODE_TYPES) and self.symbols.get(declaration_name(d)) is d]
        node_set = set(nodes)

        edges: List[Tuple[str, str]] = []
        preds: Dict[str, List[str]] = {name: [] for name in nodes}
        overrides = self._branch_overrides()
        for name in nodes:
            decl = self.symbols[name]
            refs = decl.depends_on if isinstance(decl, Variable) else \
                decl.derives_from if isinstance(decl, Impact) else ()
            for ref in refs:
                root = ref.split(".", 1)[0]
                if root in node_set:
                    edges.append((root, name))
                    if root not in preds[name]:
                        preds[name].append(root)
            # unlisted reads only constrain the order; they add no edge
            for root in self._dynamic_reads([decl] + overrides.get(name, [])):
                if root in node_set and root not in preds[name]:
                    preds[name].append(root)

        cycle = None
        order: List[str] = []
        WHITE, GRAY, BLACK = 0, 1, 2
        color = {name: WHITE for name in nodes}

        for start in nodes:
            if color[start] != WHITE or cycle:
                continue
            color[start] = GRAY
            stack = [(start, iter(preds[start]))]
            while stack and cycle is None:
                node, children = stack[-1]
                child = next(children, None)
                if child is None:
                    stack.pop()
                    color[node] = BLACK
                    order.append(node)
                elif color[child] == GRAY:
                    path = [n for n, _ in stack]
                    cycle = path[path.index(child):] + [child]
                elif color[child] == WHITE:
                    color[child] = GRAY
                    stack.append((child, iter(preds[child])))

        if cycle is not None:
            # predecessor walk: reverse to read in dependency direction
            path = " -> ".join(reversed(cycle))
            self._add(error(
                "SDL-E004", f"Dependency cycle: {path}", self.symbols[cycle[0]].span,
                hint="Break the cycle by removing one of the references between these declarations"))
            return None

        return CausalGraph(nodes=tuple(nodes), edges=tuple(edges), topological_order=tuple(order))


def validate(ast: Optional[Scenario]) -> ValidationResult:
    """Validate a parsed scenario.

    Returns:
        ValidationResult; ``causal_graph`` is None when ``ast`` is None or
        the dependencies contain a cycle.
    """
    if ast is None:
        return ValidationResult(
            diagnostics=[error("SDL-E001", "Nothing to validate: the source did not parse")],
            causal_graph=None,
        )
    return Validator(ast).run()
