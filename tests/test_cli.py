"""Tests for the sdl command-line interface."""

import json
import logging

from sdl.cli import main
from sdl.logging_config import configure_logging


def run(capsys, *argv):
    code = main([str(a) for a in argv])
    captured = capsys.readouterr()
    return code, captured.out, captured.err


class TestParseAndValidate:

    def test_parse(self, capsys, energy_path):
        code, out, _ = run(capsys, "parse", energy_path)
        assert code == 0
        assert json.loads(out)["ast"]["name"] == "Energy Transition Italy 2025-2040"

    def test_validate(self, capsys, energy_path):
        code, out, _ = run(capsys, "validate", energy_path)
        payload = json.loads(out)
        assert code == 0
        assert payload["valid"] is True
        assert "power_emissions" in payload["causal_graph"]["topological_order"]

    def test_cycle_fails_validation(self, capsys, tmp_path):
        path = tmp_path / "cycle.sdl"
        path.write_text('''
          scenario "Cycle" {
            timeframe: 2025 -> 2030
            variable a { 2025: 1; depends_on: b; uncertainty: normal(1) }
            variable b { 2025: 1; depends_on: a; uncertainty: normal(1) }
          }
        ''')
        code, out, err = run(capsys, "validate", path)
        assert code == 1
        assert "SDL-E004" in err
        assert json.loads(out)["causal_graph"] is None

    def test_syntax_error(self, capsys, tmp_path):
        path = tmp_path / "broken.sdl"
        path.write_text('scenario "Broken" {\n  assumption a { value: }\n}\n')
        code, _, err = run(capsys, "parse", path)
        assert code == 1
        assert "broken.sdl:2:" in err
        assert "SDL-E001" in err

    def test_missing_file(self, capsys, tmp_path):
        code, _, err = run(capsys, "validate", tmp_path / "nope.sdl")
        assert code == 1
        assert "cannot read" in err

    def test_no_command(self, capsys):
        assert main([]) == 1


class TestSimulate:

    def test_simulate_to_stdout(self, capsys, energy_path):
        code, out, _ = run(capsys, "simulate", energy_path, "--runs", 50, "--seed", 3)
        payload = json.loads(out)
        assert code == 0
        assert payload["runs"] == 50
        assert payload["seed"] == 3
        assert "carbon_price" in payload["variables"]
        assert "p50" in payload["variables"]["carbon_price"][-1]["percentiles"]

    def test_simulate_to_file(self, capsys, energy_path, tmp_path):
        output = tmp_path / "out" / "result.json"
        code, out, err = run(capsys, "simulate", energy_path, "--runs", 20, "--output", output)
        assert code == 0
        assert out == ""
        assert "Wrote" in err
        assert json.loads(output.read_text())["runs"] == 20

    def test_simulate_invalid_scenario(self, capsys, tmp_path):
        path = tmp_path / "invalid.sdl"
        path.write_text('scenario "Invalid" { impact i { formula: ghost } }')
        code, out, err = run(capsys, "simulate", path, "--runs", 10)
        assert code == 1
        assert out == ""
        assert "SDL-E005" in err

    def test_simulate_with_offline_calibration(self, capsys, energy_path):
        code, out, err = run(capsys, "simulate", energy_path, "--runs", 30, "--calibrate", "--offline")
        assert code == 0
        assert "Calibrated 1 target(s) (fast data)" in err
        assert json.loads(out)["runs"] == 30


class TestSensitivityAndPulse:

    def test_sensitivity(self, capsys, demography_path):
        code, out, _ = run(capsys, "sensitivity", demography_path, "--runs", 30)
        payload = json.loads(out)
        assert code == 0
        assert [p["name"] for p in payload["parameters"]] == ["retirement_age"]
        assert payload["results"][0]["parameter"] == "retirement_age"

    def test_pulse_offline(self, capsys, energy_path):
        code, out, _ = run(capsys, "pulse", energy_path, "--offline")
        payload = json.loads(out)
        assert code == 0
        assert payload["phase"] == "fast"
        assert payload["is_live"] is False
        assert "eu_ets_price" in payload["calibrations"]


class TestLogging:

    def test_log_file_option(self, capsys, monkeypatch, energy_path, tmp_path):
        calls = []
        monkeypatch.setattr("sdl.cli.configure_logging", lambda level, log_file: calls.append(log_file))

        log_file = tmp_path / "run.log"
        assert run(capsys, "--log-file", log_file, "validate", energy_path)[0] == 0
        assert run(capsys, "validate", energy_path)[0] == 0
        assert run(capsys, "--log-file", "", "validate", energy_path)[0] == 0
        assert calls == [str(log_file), "logs/sdl.log", None]

    def test_configure_logging_writes_file(self, tmp_path):
        root = logging.getLogger()
        saved_handlers, saved_level = root.handlers[:], root.level
        root.handlers = []
        try:
            log_file = tmp_path / "logs" / "sdl.log"
            configure_logging(logging.INFO, log_file=str(log_file))
            logging.getLogger("sdl.test").info("written to file")
            for handler in root.handlers:
                handler.flush()
            assert "written to file" in log_file.read_text()
        finally:
            for handler in root.handlers:
                handler.close()
            root.handlers = saved_handlers
            root.setLevel(saved_level)
