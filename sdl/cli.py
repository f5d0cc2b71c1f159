"""
Command-line interface for SDL scenarios.

Usage:
    sdl parse scenarios/energy_transition.sdl
    sdl validate scenarios/energy_transition.sdl
    sdl simulate scenarios/energy_transition.sdl --runs 2000 --seed 42 --output out.json
    sdl sensitivity scenarios/energy_transition.sdl --runs 500
    sdl pulse scenarios/energy_transition.sdl --offline

Diagnostics go to stderr, JSON results to stdout (or --output). The exit
status is 1 when the scenario has error diagnostics or cannot be run.
"""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, List, Optional, Tuple

from sdl.config import get_engine_defaults
from sdl.core.parser import ParseResult, parse
from sdl.core.types import Diagnostic
from sdl.core.validator import ValidationResult, validate
from sdl.engine.errors import SimulationError
from sdl.engine.monte_carlo import simulate
from sdl.engine.sensitivity import extract_interactive_parameters, run_sensitivity_analysis
from sdl.logging_config import DEFAULT_LOG_FILE, configure_logging
from sdl.pulse import pulse, pulse_fast

logger = logging.getLogger(__name__)


def _print_diagnostics(diagnostics: List[Diagnostic], filename: str) -> None:
    for d in diagnostics:
        print(d.format(filename), file=sys.stderr)
        if d.hint:
            print(f"    hint: {d.hint}", file=sys.stderr)


def _emit(payload: Any, output: Optional[str]) -> None:
    text = json.dumps(payload, indent=2, default=str)
    if output:
        path = Path(output)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text + "\n")
        print(f"Wrote {path}", file=sys.stderr)
    else:
        print(text)


def _load(args: argparse.Namespace) -> Optional[ParseResult]:
    try:
        source = Path(args.file).read_text(encoding="utf-8")
    except OSError as e:
        print(f"Error: cannot read {args.file}: {e}", file=sys.stderr)
        return None
    parsed = parse(source)
    _print_diagnostics(parsed.diagnostics, args.file)
    return parsed


def _load_valid(args: argparse.Namespace) -> Tuple[Optional[ParseResult], Optional[ValidationResult]]:
    parsed = _load(args)
    if parsed is None or parsed.ast is None or parsed.errors:
        return parsed, None
    validation = validate(parsed.ast)
    _print_diagnostics(validation.diagnostics, args.file)
    if not validation.valid:
        return parsed, None
    return parsed, validation


def cmd_parse(args: argparse.Namespace) -> int:
    """Print the AST as JSON."""
    parsed = _load(args)
    if parsed is None:
        return 1
    _emit(parsed.to_dict(), args.output)
    return 1 if parsed.ast is None or parsed.errors else 0


def cmd_validate(args: argparse.Namespace) -> int:
    """Print diagnostics and the causal graph."""
    parsed = _load(args)
    if parsed is None or parsed.ast is None:
        return 1
    validation = validate(parsed.ast)
    _print_diagnostics(validation.diagnostics, args.file)
    payload = validation.to_dict()
    payload["diagnostics"] = [d.to_dict() for d in parsed.diagnostics] + payload["diagnostics"]
    _emit(payload, args.output)
    return 0 if validation.valid and not parsed.errors else 1


def cmd_simulate(args: argparse.Namespace) -> int:
    """Run the Monte Carlo engine."""
    parsed, validation = _load_valid(args)
    if validation is None:
        return 1

    ast = parsed.ast
    if args.calibrate:
        pulse_result = pulse_fast(ast) if args.offline else pulse(ast)
        if pulse_result.calibrated_ast is not None and pulse_result.calibrations:
            ast = pulse_result.calibrated_ast
            validation = validate(ast)
            print(f"Calibrated {len(pulse_result.calibrations)} target(s) ({pulse_result.phase} data)",
                  file=sys.stderr)

    try:
        result = simulate(ast, runs=args.runs, seed=args.seed, workers=args.workers, validation=validation)
    except SimulationError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    _emit(result.to_dict(), args.output)
    return 0


def cmd_sensitivity(args: argparse.Namespace) -> int:
    """Rank interactive parameters by output swing."""
    parsed, validation = _load_valid(args)
    if validation is None:
        return 1

    parameters = extract_interactive_parameters(parsed.ast)
    if not parameters:
        print("No interactive parameters (control: slider or range) declared", file=sys.stderr)
    try:
        results = run_sensitivity_analysis(
            parsed.ast,
            parameters=parameters,
            runs=args.runs,
            seed=args.seed,
            workers=args.workers if args.workers is not None else get_engine_defaults()["workers"],
            validation=validation,
        )
    except SimulationError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    _emit({
        "parameters": [p.to_dict() for p in parameters],
        "results": [r.to_dict() for r in results],
    }, args.output)
    return 0


def cmd_pulse(args: argparse.Namespace) -> int:
    """Fetch observed data, calibrate and evaluate watch rules."""
    parsed = _load(args)
    if parsed is None or parsed.ast is None:
        return 1

    if args.offline:
        result = pulse_fast(parsed.ast)
    else:
        result = pulse(parsed.ast, timeout_seconds=args.timeout)

    for failure in result.errors:
        print(f"warning: no data for '{failure.target}': {failure.error}", file=sys.stderr)
    for alert in result.alerts:
        print(f"{alert.severity}: {alert.message}", file=sys.stderr)

    _emit(result.to_dict(), args.output)
    return 1 if parsed.errors else 0


def main(argv: Optional[list] = None) -> int:
    """Main CLI entrypoint."""
    parser = argparse.ArgumentParser(
        prog="sdl",
        description="Scenario Description Language - parse, validate and simulate scenarios"
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Verbose logging"
    )
    parser.add_argument(
        "--log-file",
        default=DEFAULT_LOG_FILE,
        help=f"Also append logs to this file; pass an empty string to disable (default: {DEFAULT_LOG_FILE})"
    )

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("file", help="Path to a .sdl scenario")
    common.add_argument("--output", "-o", help="Write JSON to this path instead of stdout")

    engine = argparse.ArgumentParser(add_help=False)
    engine.add_argument("--runs", type=int, help="Monte Carlo runs (default: simulate block or config)")
    engine.add_argument("--seed", type=int, help="Base seed for all random streams")
    engine.add_argument("--workers", type=int, help="Worker threads")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    parse_parser = subparsers.add_parser("parse", parents=[common], help="Print the AST")
    parse_parser.set_defaults(func=cmd_parse)

    validate_parser = subparsers.add_parser("validate", parents=[common], help="Validate and print the causal graph")
    validate_parser.set_defaults(func=cmd_validate)

    simulate_parser = subparsers.add_parser("simulate", parents=[common, engine], help="Run a Monte Carlo simulation")
    simulate_parser.add_argument("--calibrate", action="store_true", help="Calibrate with observed data first")
    simulate_parser.add_argument("--offline", action="store_true", help="Use bundled datasets only")
    simulate_parser.set_defaults(func=cmd_simulate)

    sensitivity_parser = subparsers.add_parser("sensitivity", parents=[common, engine],
                                               help="One-at-a-time sensitivity analysis")
    sensitivity_parser.set_defaults(func=cmd_sensitivity)

    pulse_parser = subparsers.add_parser("pulse", parents=[common], help="Fetch data, calibrate, check watch rules")
    pulse_parser.add_argument("--offline", action="store_true", help="Use bundled datasets only")
    pulse_parser.add_argument("--timeout", type=float, help="Fetch timeout in seconds")
    pulse_parser.set_defaults(func=cmd_pulse)

    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 1

    configure_logging(logging.DEBUG if args.verbose else logging.WARNING, log_file=args.log_file or None)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
