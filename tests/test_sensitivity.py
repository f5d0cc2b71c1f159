"""Tests for one-at-a-time sensitivity analysis."""

import pytest

from conftest import parse_ok
from sdl.config import get_engine_defaults
from sdl.engine.monte_carlo import simulate
from sdl.engine.sensitivity import (
    InteractiveParameter,
    extract_interactive_parameters,
    run_sensitivity_analysis,
)

SOURCE = '''
scenario "Sensitivity" {
  timeframe: 2025 -> 2030

  parameter growth { value: 2; range: [1, 4]; label: "Growth" }
  parameter noise { value: 5; control: slider }
  parameter fixed { value: 3 }

  variable v {
    model: linear(intercept=100, slope=growth)
    uncertainty: normal(±1%)
  }

  impact out {
    derives_from: [v]
    formula: v * 2
  }
}
'''


@pytest.fixture
def ast():
    return parse_ok(SOURCE)


class TestInteractiveParameters:

    def test_extraction(self, ast):
        params = {p.name: p for p in extract_interactive_parameters(ast)}
        assert set(params) == {"growth", "noise"}

        growth = params["growth"]
        assert (growth.label, growth.default, growth.min, growth.max) == ("Growth", 2.0, 1.0, 4.0)

    def test_slider_without_range_spans_default(self, ast):
        """A slider with no declared range runs from 0.1x to 3x its default."""
        noise = next(p for p in extract_interactive_parameters(ast) if p.name == "noise")
        assert noise.label == "noise"
        assert noise.min == pytest.approx(0.5)
        assert noise.max == pytest.approx(15.0)

    def test_bundled_scenarios(self, energy_ast, demography_ast):
        assert [p.name for p in extract_interactive_parameters(energy_ast)] == [
            "renewables_build_rate", "efficiency_gain"]
        assert [p.name for p in extract_interactive_parameters(demography_ast)] == ["retirement_age"]


class TestSensitivityAnalysis:

    def test_ranking(self, ast):
        results = run_sensitivity_analysis(ast, runs=200)
        assert [r.parameter for r in results] == ["growth", "noise"]

        growth = results[0]
        assert growth.label == "Growth"
        swing = growth.output("v")
        assert swing.baseline_value == pytest.approx(110, rel=0.01)
        assert swing.low_value < swing.baseline_value < swing.high_value
        assert swing.swing_pct == pytest.approx(15 / 110 * 100, rel=0.05)
        assert growth.output("out").swing_pct == pytest.approx(swing.swing_pct)

    def test_unused_parameter_has_no_swing(self, ast):
        """Shared seeds mean a parameter nothing reads moves no observable."""
        noise = run_sensitivity_analysis(ast, runs=100)[-1]
        assert noise.parameter == "noise"
        assert noise.total_swing == 0.0
        assert all(o.swing == 0.0 for o in noise.outputs)

    def test_observable_subset(self, ast):
        results = run_sensitivity_analysis(ast, observables=["out"], runs=50)
        assert [o.observable for o in results[0].outputs] == ["out"]

    def test_explicit_parameters(self, ast):
        custom = [InteractiveParameter("growth", "g", default=2.0, min=0.0, max=2.0)]
        results = run_sensitivity_analysis(ast, parameters=custom, runs=50)
        assert len(results) == 1
        assert results[0].output("v").high_value == pytest.approx(110, rel=0.01)

    def test_workers_do_not_change_results(self, ast):
        serial = run_sensitivity_analysis(ast, runs=100, workers=1)
        parallel = run_sensitivity_analysis(ast, runs=100, workers=2)
        assert [r.to_dict() for r in serial] == [r.to_dict() for r in parallel]

    def test_no_interactive_parameters(self):
        ast = parse_ok('scenario "x" { variable v { 2025: 1; uncertainty: normal(1) } }')
        assert run_sensitivity_analysis(ast, runs=10) == []

    def test_missing_output_raises(self, ast):
        results = run_sensitivity_analysis(ast, runs=20)
        with pytest.raises(KeyError):
            results[0].output("nope")


class TestSeed:

    @pytest.fixture
    def seeds(self, monkeypatch):
        seen = []

        def recording(scenario, **kwargs):
            seen.append(kwargs["seed"])
            return simulate(scenario, **kwargs)

        monkeypatch.setattr("sdl.engine.sensitivity.simulate", recording)
        return seen

    def test_seed_from_simulate_block(self, seeds):
        ast = parse_ok(SOURCE.replace('timeframe: 2025 -> 2030', 'timeframe: 2025 -> 2030\n  simulate { seed: 11 }'))
        run_sensitivity_analysis(ast, runs=20)
        assert seeds and set(seeds) == {11}

    def test_seed_from_config(self, ast, seeds):
        run_sensitivity_analysis(ast, runs=20)
        assert set(seeds) == {get_engine_defaults()["seed"]}

    def test_explicit_seed(self, ast, seeds):
        run_sensitivity_analysis(ast, runs=20, seed=5)
        assert set(seeds) == {5}
