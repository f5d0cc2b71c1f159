"""Tests for semantic validation and the causal graph."""

from conftest import parse_ok
from sdl.core.validator import validate


def check(body, header="timeframe: 2025 -> 2040"):
    ast = parse_ok(f'scenario "Test" {{\n  {header}\n{body}\n}}')
    return validate(ast)


def codes(result):
    return [d.code for d in result.diagnostics]


def error_codes(result):
    return [d.code for d in result.errors]


# =============================================================================
# Valid scenarios
# =============================================================================

class TestValidScenarios:

    def test_bundled_scenarios_are_clean(self, energy_ast, demography_ast):
        for ast in (energy_ast, demography_ast):
            result = validate(ast)
            assert result.valid
            assert result.diagnostics == []

    def test_minimal_scenario(self):
        result = check('''
          assumption a { value: 10; source: "test" }
          variable v { 2025: a; 2040: 20; uncertainty: normal(±10%) }
        ''')
        assert result.valid
        assert result.diagnostics == []

    def test_validate_none(self):
        result = validate(None)
        assert error_codes(result) == ["SDL-E001"]
        assert result.causal_graph is None
        assert not result.valid

    def test_to_dict(self):
        result = check('variable v { 2025: 1; uncertainty: normal(1) }')
        d = result.to_dict()
        assert d["valid"] is True
        assert d["causal_graph"]["nodes"] == ["v"]


# =============================================================================
# Metadata and ranges
# =============================================================================

class TestRanges:

    def test_missing_timeframe_warns(self):
        result = check('variable v { 2025: 1; uncertainty: normal(1) }', header='author: "x"')
        assert codes(result) == ["SDL-W001"]
        assert result.valid

    def test_timeframe_start_after_end(self):
        result = check("", header="timeframe: 2040 -> 2030")
        assert error_codes(result) == ["SDL-E008"]

    def test_scenario_confidence_out_of_range(self):
        result = check("", header="timeframe: 2025 -> 2040\n  confidence: 150%")
        assert error_codes(result) == ["SDL-E003"]

    def test_assumption_confidence_out_of_range(self):
        result = check('assumption a { value: 1; source: "x"; confidence: 1.5 }')
        assert error_codes(result) == ["SDL-E003"]

    def test_branch_probability_out_of_range(self):
        result = check('''
          variable v { 2025: 1; uncertainty: normal(1) }
          branch "b" when v > 0 { probability: 1.5 }
        ''')
        assert error_codes(result) == ["SDL-E003"]

    def test_simulate_limits(self):
        result = check("simulate { runs: 0; percentiles: [5, 150]; convergence: 1.5 }")
        assert error_codes(result) == ["SDL-E003", "SDL-E003", "SDL-E003"]

    def test_loose_convergence_warns(self):
        result = check("simulate { convergence: 0.2 }")
        assert codes(result) == ["SDL-W003"]

    def test_empty_parameter_range(self):
        result = check("parameter p { value: 5; range: [10, 5] }")
        assert error_codes(result) == ["SDL-E003"]


# =============================================================================
# Names and references
# =============================================================================

class TestReferences:

    def test_duplicate_name(self):
        result = check('''
          assumption a { value: 1; source: "x" }
          parameter a { value: 2 }
        ''')
        assert error_codes(result) == ["SDL-E006"]

    def test_unresolved_dependency(self):
        result = check("variable v { 2025: 1; depends_on: missing; uncertainty: normal(1) }")
        assert error_codes(result) == ["SDL-E005"]
        assert "missing" in result.errors[0].message

    def test_unresolved_identifier_in_formula(self):
        result = check("impact i { formula: ghost * 2 }")
        assert error_codes(result) == ["SDL-E005"]

    def test_unknown_function(self):
        result = check("impact i { formula: frobnicate(2) }")
        assert error_codes(result) == ["SDL-E009"]

    def test_dotted_reference_resolves_by_first_segment(self):
        ast = parse_ok('''
          import "base.sdl" as base
          scenario "x" {
            timeframe: 2025 -> 2040
            variable v { 2025: 1; depends_on: base.demand; uncertainty: normal(1) }
          }
        ''')
        result = validate(ast)
        assert result.valid
        assert result.causal_graph.edges == (("base", "v"),)

    def test_import_alias_cannot_be_read(self):
        """Imports are not resolved, so an alias may only be listed as a dependency."""
        ast = parse_ok('''
          import "eu.sdl" as eu
          scenario "x" {
            timeframe: 2025 -> 2040
            variable v { 2025: 1; depends_on: eu; uncertainty: normal(1) }
            impact cost { derives_from: [v]; formula: eu.gdp * 2 }
            impact total { derives_from: [eu] }
          }
        ''')
        result = validate(ast)
        assert error_codes(result) == ["SDL-E005", "SDL-E005"]
        assert "eu.gdp" in result.errors[0].message
        assert "total" in result.errors[1].message

    def test_dotted_read_of_local_declaration(self):
        result = check('''
          variable x { 2025: 5; uncertainty: normal(1) }
          impact cost { derives_from: x.total; formula: x.total * 2 }
        ''')
        assert result.diagnostics == []
        assert result.causal_graph.edges == (("x", "cost"),)

    def test_anchor_may_only_read_constants(self):
        result = check('''
          variable a { 2025: 1; uncertainty: normal(1) }
          variable b { 2025: a; uncertainty: normal(1) }
        ''')
        assert error_codes(result) == ["SDL-E005"]
        assert "only assumptions and parameters" in result.errors[0].message

    def test_constant_reads_later_declaration(self):
        result = check('''
          assumption a { value: b * 2; source: "x" }
          assumption b { value: 1; source: "x" }
        ''')
        assert error_codes(result) == ["SDL-E005"]
        assert "before it is declared" in result.errors[0].message

    def test_constant_reads_earlier_declaration(self):
        result = check('''
          assumption b { value: 1; source: "x" }
          assumption a { value: b * 2; source: "x" }
        ''')
        assert result.valid

    def test_watch_condition_names(self):
        result = check('''
          assumption a { value: 1; source: "x" }
          watch a { warn when: actual < a }
        ''')
        assert error_codes(result) == ["SDL-E005"]

    def test_watch_and_calibrate_targets(self):
        result = check('''
          watch ghost { warn when: actual < assumed }
          calibrate phantom { method: bayesian_update }
        ''')
        assert error_codes(result) == ["SDL-E005", "SDL-E005"]

    def test_bind_transform_reads_value_only(self):
        result = check('''
          assumption a {
            value: 1
            source: "x"
            bind { source: "https://example.org"; transform: value * scale }
          }
        ''')
        assert error_codes(result) == ["SDL-E005"]

    def test_errors_accumulate(self):
        result = check('''
          assumption a { value: 1; source: "x" }
          assumption a { value: 2; source: "x" }
          impact i { formula: ghost + frobnicate(1) }
        ''')
        assert sorted(error_codes(result)) == ["SDL-E005", "SDL-E006", "SDL-E009"]


# =============================================================================
# Declarations
# =============================================================================

class TestDeclarationChecks:

    def test_variable_without_uncertainty_warns(self):
        result = check("variable v { 2025: 1 }")
        assert codes(result) == ["SDL-W002"]
        assert result.valid

    def test_assumption_without_source_warns(self):
        result = check("assumption a { value: 1 }")
        assert codes(result) == ["SDL-W004"]

    def test_spline_model_without_anchors_warns(self):
        result = check("variable v { model: spline(); uncertainty: normal(1) }")
        assert codes(result) == ["SDL-W007"]
        assert result.valid

        result = check("variable v { 2025: 1; 2030: 4; model: spline(); uncertainty: normal(1) }")
        assert result.diagnostics == []

    def test_non_chronological_timeseries(self):
        result = check("variable v { 2030: 1; 2025: 2; uncertainty: normal(1) }")
        assert error_codes(result) == ["SDL-E008"]

    def test_duplicate_timeseries_date(self):
        result = check("variable v { 2030: 1; 2030: 2; uncertainty: normal(1) }")
        assert error_codes(result) == ["SDL-E008"]

    def test_invalid_distributions(self):
        result = check('''
          assumption u { value: 1; source: "x"; uncertainty: uniform(5, 1) }
          assumption b { value: 1; source: "x"; uncertainty: beta(0, 2) }
          assumption t { value: 1; source: "x"; uncertainty: triangular(1, 5, 3) }
          assumption l { value: 1; source: "x"; uncertainty: lognormal(0, 0) }
          assumption n { value: 1; source: "x"; uncertainty: normal(1, -2) }
          assumption m { value: 1; source: "x"; uncertainty: beta(2) }
        ''')
        assert error_codes(result) == ["SDL-E007"] * 6

    def test_unknown_distribution_parameter(self):
        result = check('assumption a { value: 1; source: "x"; uncertainty: normal(mean=1, sd=2) }')
        assert "SDL-E007" in error_codes(result)

    def test_branch_override_without_target_warns(self):
        result = check('''
          variable v { 2025: 1; uncertainty: normal(1) }
          branch "b" when v > 0 { assumption ghost { value: 3 } }
        ''')
        assert codes(result) == ["SDL-W005"]

    def test_branch_override_is_validated(self):
        result = check('''
          variable v { 2025: 1; uncertainty: normal(1) }
          branch "b" when v > 0 { variable v { 2030: 1; 2025: 2 } }
        ''')
        assert error_codes(result) == ["SDL-E008"]

    def test_formula_reads_unlisted_variable(self):
        result = check('''
          variable a { 2025: 1; uncertainty: normal(1) }
          variable b { 2025: 2; uncertainty: normal(1) }
          impact i { derives_from: [a]; formula: a + b }
        ''')
        assert codes(result) == ["SDL-W006"]
        assert result.valid


# =============================================================================
# Causal graph
# =============================================================================

class TestCausalGraph:

    def test_topological_order_follows_dependencies(self):
        result = check('''
          impact c { derives_from: [a, b]; formula: a + b }
          variable a { 2025: 1; uncertainty: normal(1) }
          variable b { 2025: 1; depends_on: a; uncertainty: normal(1) }
        ''')
        graph = result.causal_graph
        assert graph.nodes == ("c", "a", "b")
        assert graph.topological_order == ("a", "b", "c")
        assert ("a", "b") in graph.edges
        assert graph.predecessors("c") == ["a", "b"]

    def test_independent_nodes_keep_declaration_order(self):
        result = check('''
          assumption z { value: 1; source: "x" }
          parameter y { value: 2 }
          variable x { 2025: 1; uncertainty: normal(1) }
        ''')
        assert result.causal_graph.topological_order == ("z", "y", "x")

    def test_mutual_cycle(self):
        result = check('''
          variable a { 2025: 1; depends_on: b; uncertainty: normal(1) }
          variable b { 2025: 1; depends_on: a; uncertainty: normal(1) }
        ''')
        cycles = [d for d in result.diagnostics if d.code == "SDL-E004"]
        assert len(cycles) == 1
        assert "a" in cycles[0].message and "b" in cycles[0].message
        assert result.causal_graph is None
        assert not result.valid

    def test_self_cycle(self):
        result = check("variable a { 2025: 1; depends_on: a; uncertainty: normal(1) }")
        assert error_codes(result) == ["SDL-E004"]
        assert "a -> a" in result.errors[0].message

    def test_long_cycle_reported_once(self):
        result = check('''
          impact a { derives_from: c }
          impact b { derives_from: a }
          impact c { derives_from: b }
          impact d { derives_from: c }
        ''')
        assert error_codes(result) == ["SDL-E004"]
        assert result.causal_graph is None

    def test_unlisted_reads_order_without_edges(self):
        result = check('''
          impact cost { formula: x * 2 }
          variable v { model: linear(intercept=base, slope=0); uncertainty: normal(0) }
          variable base { 2025: 4; uncertainty: normal(0) }
          variable x { 2025: 3; uncertainty: normal(base) }
        ''')
        graph = result.causal_graph
        assert codes(result) == ["SDL-W006", "SDL-W006"]
        assert graph.edges == ()
        order = graph.topological_order
        assert order.index("base") < order.index("x") < order.index("cost")
        assert order.index("base") < order.index("v")

    def test_branch_override_reads_constrain_order(self):
        result = check('''
          variable y { 2025: 1; uncertainty: normal(0) }
          variable z { 2025: 9; uncertainty: normal(0) }
          branch "switch" when z > 5 { variable y { model: linear(intercept=z, slope=0) } }
        ''')
        assert result.valid
        assert result.causal_graph.topological_order == ("z", "y")

    def test_cycle_through_unlisted_reads(self):
        result = check('''
          impact a { formula: b + 1 }
          impact b { formula: a + 1 }
        ''')
        assert error_codes(result) == ["SDL-E004"]
        assert result.causal_graph is None

    def test_model_reading_itself_is_a_cycle(self):
        result = check("variable a { model: linear(intercept=a, slope=1); uncertainty: normal(1) }")
        assert error_codes(result) == ["SDL-E004"]
        assert "a -> a" in result.errors[0].message
