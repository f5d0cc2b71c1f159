"""Tests for the SDL parser: declarations, expressions and error recovery."""

import pytest

from conftest import parse_ok
from sdl.core.lexer import tokenize
from sdl.core.parser import Parser, parse
from sdl.core.types import (
    Assumption,
    BinaryExpression,
    Branch,
    Calibrate,
    CurrencyLiteral,
    DateValue,
    DistributionExpression,
    Duration,
    FunctionCall,
    Identifier,
    Impact,
    Import,
    NumberLiteral,
    Parameter,
    PercentageLiteral,
    Simulate,
    Timeframe,
    UnaryExpression,
    Variable,
    Watch,
)


def expr(text):
    tokens, _ = tokenize(text)
    return Parser(tokens).parse_expression()


def scenario(body, header="timeframe: 2025 -> 2040"):
    return f'scenario "Test" {{\n  {header}\n{body}\n}}'


# =============================================================================
# Scenario and metadata
# =============================================================================

class TestScenarioHeader:

    def test_metadata(self):
        ast = parse_ok('''
        scenario "Energy 2040" {
          timeframe: 2025 -> 2040
          resolution: quarterly
          confidence: 60%
          author: "Lab"
          tags: ["energy", "climate"]
          category: energy
          difficulty: "advanced"
        }
        ''')
        assert ast.name == "Energy 2040"
        assert ast.metadata.timeframe == Timeframe(DateValue(2025), DateValue(2040))
        assert ast.metadata.resolution == "quarterly"
        assert ast.metadata.confidence == pytest.approx(0.6)
        assert ast.metadata.tags == ("energy", "climate")
        assert ast.metadata.category == "energy"
        assert ast.metadata.difficulty == "advanced"
        assert ast.declarations == ()

    def test_missing_header_yields_no_ast(self):
        result = parse("assumption x { value: 1 }")
        assert result.ast is None
        assert result.errors[0].code == "SDL-E001"

    def test_missing_name_yields_no_ast(self):
        result = parse("scenario { }")
        assert result.ast is None
        assert "quoted string" in result.errors[0].message

    def test_unterminated_scenario_yields_no_ast(self):
        result = parse('scenario "x" {\n  assumption a { value: 1 }\n')
        assert result.ast is None
        assert "Unterminated" in result.errors[-1].message

    def test_garbage_never_raises(self):
        result = parse("}}}{{{ ??? \"")
        assert result.ast is None
        assert result.errors

    def test_unknown_resolution(self):
        result = parse(scenario("", header="resolution: hourly"))
        assert result.errors[0].code == "SDL-E001"
        assert "hourly" in result.errors[0].message

    def test_top_level_import(self):
        ast = parse_ok('import "base.sdl" as base\nscenario "x" { timeframe: 2025 -> 2030 }')
        assert ast.declarations == (Import(path="base.sdl", alias="base"),)
        assert ast.find("base").path == "base.sdl"


# =============================================================================
# Declarations
# =============================================================================

class TestDeclarations:

    def test_assumption(self):
        ast = parse_ok(scenario('''
          assumption adoption {
            value: 35% by 2030
            source: "IEA 2025"
            confidence: 0.7
            uncertainty: normal(±10%)
          }
        '''))
        decl = ast.find("adoption")
        assert isinstance(decl, Assumption)
        assert decl.value == PercentageLiteral(35.0)
        assert decl.by_date == DateValue(2030)
        assert decl.source == "IEA 2025"
        assert decl.confidence == 0.7
        assert decl.uncertainty.kind == "normal"
        assert decl.uncertainty.relative

    def test_plus_minus_shorthand(self):
        ast = parse_ok(scenario("assumption a { value: 10; uncertainty: ±5% }"))
        dist = ast.find("a").uncertainty
        assert dist == DistributionExpression("normal", (PercentageLiteral(5.0),))
        assert dist.relative

    def test_named_distribution_parameters(self):
        ast = parse_ok(scenario("assumption a { value: 10; uncertainty: normal(mean=10, std=2) }"))
        dist = ast.find("a").uncertainty
        assert dist.params == ()
        assert dist.arguments() == (NumberLiteral(10.0), NumberLiteral(2.0))
        assert not dist.relative

    def test_currency_value(self):
        ast = parse_ok(scenario("assumption budget { value: 5M EUR }"))
        assert ast.find("budget").value == CurrencyLiteral(5_000_000.0, "EUR", "M")

    def test_bind_and_nested_watch(self):
        ast = parse_ok(scenario('''
          assumption price {
            value: 80
            bind {
              source: "https://example.org/eu-ets"
              refresh: monthly
              field: "price"
              transform: value * 1.1
              fallback: 75
            }
            watch {
              warn when: actual < assumed * 0.8
              error when actual < assumed * 0.5
            }
          }
        '''))
        decl = ast.find("price")
        assert decl.bind.source == "https://example.org/eu-ets"
        assert decl.bind.refresh == "monthly"
        assert decl.bind.field == "price"
        assert decl.bind.fallback == NumberLiteral(75.0)
        assert decl.watch.target is None
        assert [r.severity for r in decl.watch.rules] == ["warn", "error"]

    def test_variable_timeseries(self):
        ast = parse_ok(scenario('''
          variable demand {
            description: "Demand"
            unit: "TWh"
            2025: 310
            2030-06: 320
            2040: base_load * 1.2
            depends_on: base_load, efficiency
            interpolation: spline
            uncertainty: normal(±5%)
          }
        '''))
        decl = ast.find("demand")
        assert isinstance(decl, Variable)
        assert [e.date for e in decl.timeseries] == [DateValue(2025), DateValue(2030, 6), DateValue(2040)]
        assert decl.timeseries[2].value == BinaryExpression("*", Identifier("base_load"), NumberLiteral(1.2))
        assert decl.depends_on == ("base_load", "efficiency")
        assert decl.interpolation == "spline"

    def test_bracketed_and_dotted_dependencies(self):
        ast = parse_ok(scenario("variable v { depends_on: [energy.demand, b] }"))
        assert ast.find("v").depends_on == ("energy.demand", "b")

    def test_model(self):
        ast = parse_ok(scenario("variable v { model: logistic(k=0.3, midpoint=2032, max=90) }"))
        model = ast.find("v").model
        assert model.kind == "logistic"
        assert model.param("k") == NumberLiteral(0.3)
        assert model.param("max", "ceiling") == NumberLiteral(90.0)

    def test_polynomial_positional_coefficients(self):
        ast = parse_ok(scenario("variable v { model: polynomial(1, 2, 3) }"))
        assert [k for k, _ in ast.find("v").model.params] == ["c0", "c1", "c2"]

    def test_positional_model_parameters_are_rejected(self):
        result = parse(scenario("variable v { model: linear(1, 2) }\nvariable w { 2025: 1 }"))
        assert [d.code for d in result.errors] == ["SDL-E001"]
        assert result.ast.find("v") is None
        assert result.ast.find("w") is not None

    def test_parameter(self):
        ast = parse_ok(scenario('''
          parameter tax {
            value: 40
            range: [0, 100]
            step: 5
            label: "Carbon tax"
            unit: "EUR/t"
            format: "{value} EUR"
            control: slider
          }
        '''))
        decl = ast.find("tax")
        assert isinstance(decl, Parameter)
        assert decl.range == (NumberLiteral(0.0), NumberLiteral(100.0))
        assert decl.control == "slider"
        assert decl.label == "Carbon tax"

    def test_impact(self):
        ast = parse_ok(scenario('''
          impact cost {
            derives_from: [demand, price]
            formula: demand * price / 1000
          }
        '''))
        decl = ast.find("cost")
        assert isinstance(decl, Impact)
        assert decl.derives_from == ("demand", "price")
        assert decl.formula.operator == "/"

    def test_branch(self):
        ast = parse_ok(scenario('''
          branch "Shock" when price > 100 and demand < 50 {
            probability: 30%
            fork: scenario "Shock world"
            assumption price { value: 150 }
            variable demand { 2025: 40 }
          }
        '''))
        decl = ast.of_type(Branch)[0]
        assert decl.name == "Shock"
        assert decl.condition.operator == "and"
        assert decl.probability == pytest.approx(0.3)
        assert decl.fork == "Shock world"
        assert [type(d) for d in decl.declarations] == [Assumption, Variable]

    def test_branch_rejects_nested_simulate(self):
        result = parse(scenario('branch "b" when x > 1 { simulate { runs: 10 } }'))
        assert any("cannot be declared inside a branch" in d.message for d in result.errors)

    def test_simulate(self):
        ast = parse_ok(scenario('''
          simulate {
            runs: 5000
            method: latin_hypercube
            seed: 7
            output: full
            percentiles: [5, 50, 95]
            convergence: 0.01
            timeout: 30s
          }
        '''))
        sim = ast.simulate_block
        assert isinstance(sim, Simulate)
        assert sim.runs == 5000
        assert sim.method == "latin_hypercube"
        assert sim.percentiles == (5.0, 50.0, 95.0)
        assert sim.timeout == Duration(30.0, "s")

    def test_fractional_runs_are_rejected(self):
        result = parse(scenario("simulate { runs: 10.5 }"))
        assert result.errors[0].code == "SDL-E001"

    def test_watch(self):
        ast = parse_ok(scenario('''
          watch energy.price {
            warn when: actual > assumed * 1.2
            on_trigger {
              recalculate: true
              notify: ["ops", "research"]
              suggest: "Re-run the scenario"
            }
          }
        '''))
        decl = ast.of_type(Watch)[0]
        assert decl.target == "energy.price"
        assert decl.on_trigger.recalculate is True
        assert decl.on_trigger.notify == ("ops", "research")

    def test_calibrate(self):
        ast = parse_ok(scenario('''
          calibrate price {
            historical: "https://example.org/prices"
            method: ensemble
            window: 10y
            prior: normal(80, 10)
            update_frequency: monthly
          }
        '''))
        decl = ast.of_type(Calibrate)[0]
        assert decl.target == "price"
        assert decl.method == "ensemble"
        assert decl.window.years == 10.0
        assert decl.prior.arguments() == (NumberLiteral(80.0), NumberLiteral(10.0))

    def test_keywords_usable_as_names(self):
        ast = parse_ok(scenario("assumption source { value: 3 }\nimpact value { formula: source * 2 }"))
        assert ast.find("value").formula == BinaryExpression("*", Identifier("source"), NumberLiteral(2.0))


# =============================================================================
# Error recovery
# =============================================================================

class TestRecovery:

    def test_malformed_declaration_is_skipped(self):
        result = parse(scenario("assumption a { value: }\nvariable v { 2025: 1 }"))
        assert [d.code for d in result.errors] == ["SDL-E001"]
        assert result.ast.find("a") is None
        assert isinstance(result.ast.find("v"), Variable)

    def test_unknown_property_keeps_declaration(self):
        result = parse(scenario('assumption a {\n  value: 1\n  colour: "red"\n}'))
        assert [d.code for d in result.errors] == ["SDL-E001"]
        assert "colour" in result.errors[0].message
        assert result.ast.find("a").value == NumberLiteral(1.0)

    def test_every_malformed_declaration_is_reported(self):
        result = parse(scenario('''
          assumption a { value: * }
          assumption b { value: 2 }
          variable c { interpolation: cubic }
          impact d { formula: b * 2 }
        '''))
        assert len(result.errors) == 2
        assert [d.name for d in result.ast.declarations] == ["b", "d"]

    def test_diagnostics_carry_positions(self):
        result = parse('scenario "x" {\n  assumption a { value: }\n}')
        span = result.errors[0].span
        assert span.line == 2


# =============================================================================
# Expressions
# =============================================================================

class TestExpressions:

    def test_precedence(self):
        assert expr("a + b * c ^ 2") == BinaryExpression(
            "+", Identifier("a"),
            BinaryExpression("*", Identifier("b"),
                             BinaryExpression("^", Identifier("c"), NumberLiteral(2.0))))

    def test_power_is_right_associative(self):
        assert expr("2 ^ 3 ^ 2") == BinaryExpression(
            "^", NumberLiteral(2.0), BinaryExpression("^", NumberLiteral(3.0), NumberLiteral(2.0)))

    def test_unary_minus_applies_to_power(self):
        assert expr("-2 ^ 2") == UnaryExpression("-", BinaryExpression("^", NumberLiteral(2.0), NumberLiteral(2.0)))

    def test_logic_binds_looser_than_comparison(self):
        tree = expr("a > 1 or b < 2 and not c")
        assert tree.operator == "or"
        assert tree.right.operator == "and"
        assert tree.right.right == UnaryExpression("not", Identifier("c"))

    def test_parentheses(self):
        assert expr("(a + b) * c").operator == "*"

    def test_call_with_named_arguments(self):
        assert expr("clamp(x, low=0, high=1)") == FunctionCall(
            "clamp", (Identifier("x"),), (("low", NumberLiteral(0.0)), ("high", NumberLiteral(1.0))))

    def test_dotted_identifier(self):
        assert expr("energy.demand") == Identifier("energy.demand")
