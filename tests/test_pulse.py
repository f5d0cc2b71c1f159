"""Tests for the Pulse pipeline: fetch, calibrate, watch and two-phase delivery."""

import json
import threading
from datetime import date

import pytest

from conftest import parse_ok
from sdl.engine import simulate
from sdl.pulse import (
    CallableAdapter,
    FallbackRegistry,
    ObservedPoint,
    pulse,
    pulse_fast,
    pulse_two_phase,
)

LIVE_SOURCE = '''
scenario "Live" {
  timeframe: 2025 -> 2030

  assumption p {
    value: 100
    source: "x"
    uncertainty: normal(10)
    bind { source: "test://p" }
    watch {
      warn when: actual < assumed * 0.7
    }
  }

  calibrate p {
    historical: "test://p"
    window: 10y
  }
}
'''


def observations(url):
    return [ObservedPoint(date(year, 1, 1), value, "test feed")
            for year, value in ((2022, 60.0), (2023, 62.0), (2024, 64.0))]


@pytest.fixture
def live_ast():
    return parse_ok(LIVE_SOURCE)


@pytest.fixture
def feed():
    return CallableAdapter(observations, name="test-feed", max_retries=1)


class TestFastPulse:

    def test_bundled_data_only(self, energy_ast):
        result = pulse_fast(energy_ast)

        assert result.phase == "fast"
        assert not result.is_live
        assert result.errors == []
        assert set(result.observed) == {"eu_ets_price", "renewable_share_today"}
        assert all(s.adapter == "fallback" for s in result.observed.values())
        assert result.observed["eu_ets_price"].latest.value == 72.0

    def test_calibrates_and_watches(self, energy_ast):
        result = pulse_fast(energy_ast)
        assert set(result.calibrations) == {"eu_ets_price"}
        assert result.calibrations["eu_ets_price"].data_points_used == 6
        assert result.alerts == []
        assert result.calibrated_ast is not energy_ast

    def test_calibrated_scenario_simulates(self, energy_ast):
        result = pulse_fast(energy_ast)
        simulation = simulate(result.calibrated_ast, runs=50, seed=1)
        assert simulation.final("carbon_price").median > 0

    def test_serializes(self, demography_ast):
        d = pulse_fast(demography_ast).to_dict()
        assert d["phase"] == "fast"
        assert d["is_live"] is False
        assert "fertility_rate" in d["observed"]
        json.dumps(d)


class TestLivePulse:

    def test_live_result(self, live_ast, feed):
        result = pulse(live_ast, adapters=[feed], timeout_seconds=5)

        assert result.phase == "live"
        assert result.is_live
        assert result.observed["p"].adapter == "test-feed"
        assert result.calibrations["p"].data_points_used == 3
        assert result.calibrated_ast.find("p").uncertainty != live_ast.find("p").uncertainty

        assert len(result.alerts) == 1
        assert result.alerts[0].severity == "warn"
        assert result.alerts[0].actual == 64.0

    def test_skip_stages(self, live_ast, feed):
        result = pulse(live_ast, adapters=[feed], skip_fetch=True)
        assert result.observed == {}
        assert result.alerts == []
        assert result.calibrated_ast is live_ast
        assert not result.is_live

        result = pulse(live_ast, adapters=[feed], timeout_seconds=5, skip_calibration=True, skip_watch=True)
        assert result.calibrations == {}
        assert result.calibrated_ast is None
        assert result.alerts == []
        assert result.is_live

    def test_failing_source_is_recorded(self, live_ast):
        """Fetch failures end up in errors; pulse itself does not raise."""
        def broken(url):
            raise OSError("connection refused")

        result = pulse(live_ast, adapters=[CallableAdapter(broken, max_retries=1)], timeout_seconds=5)
        assert not result.is_live
        assert result.observed == {}
        assert [e.target for e in result.errors] == ["p"]
        assert "connection refused" in result.errors[0].error
        assert result.calibrations == {}

    def test_declared_fallback_is_not_live(self):
        ast = parse_ok('''
          scenario "Offline" {
            assumption p { value: 1; source: "x"; bind { source: "test://nowhere"; fallback: 2 } }
          }
        ''')
        result = pulse(ast, adapters=[], timeout_seconds=5)
        assert result.observed["p"].adapter == "declared-fallback"
        assert not result.is_live


class TestTwoPhasePulse:

    def test_refined_supersedes_initial(self, live_ast):
        release = threading.Event()

        def gated(url):
            release.wait(5)
            return observations(url)

        two_phase = pulse_two_phase(live_ast, adapters=[CallableAdapter(gated, max_retries=1)],
                                    timeout_seconds=5, registry=FallbackRegistry())
        try:
            assert two_phase.initial.phase == "fast"
            assert two_phase.latest() is two_phase.initial
        finally:
            release.set()

        refined = two_phase.wait(timeout=10)
        assert refined.phase == "live"
        assert refined.is_live
        assert two_phase.latest() is refined
