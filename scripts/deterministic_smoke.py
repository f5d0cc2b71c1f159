#!/usr/bin/env python3
"""
Deterministic smoke test - verify simulation reproducibility.

Runs the CLI simulation of every bundled scenario three times with the same
seed (twice single-threaded, once with worker threads) and compares the
outputs. ``elapsed_ms`` is dropped before hashing since it is wall-clock time.

Usage:
    python3 scripts/deterministic_smoke.py

Exit codes:
    0 - Simulations are deterministic (all hashes match)
    1 - Outputs differ between runs, or a simulation failed
"""

import hashlib
import json
import os
import shutil
import subprocess
import sys
import tempfile
from pathlib import Path

# Fixed parameters for reproducibility
SEED = 42
N_RUNS = 300
WORKERS = 4

RUN_CONFIGS = [
    ("run1", 1),
    ("run2", 1),
    ("threaded", WORKERS),
]


def compute_sha256(file_path: str) -> str:
    """Hash the simulation JSON without its timing field."""
    with open(file_path, "r") as f:
        result = json.load(f)
    result.pop("elapsed_ms", None)
    canonical = json.dumps(result, sort_keys=True).encode("utf-8")
    return hashlib.sha256(canonical).hexdigest()


def run_simulation(scenario: Path, out_dir: str, run_name: str, workers: int) -> str:
    """
    Simulate one scenario through the CLI.

    Returns the sha256 of the result.
    """
    project_root = Path(__file__).resolve().parent.parent
    output = os.path.join(out_dir, f"{scenario.stem}_{run_name}.json")

    print(f"[{run_name}] {scenario.name} (seed={SEED}, runs={N_RUNS}, workers={workers})...")
    result = subprocess.run(
        [
            sys.executable, "-m", "sdl.cli", "simulate", str(scenario),
            "--runs", str(N_RUNS),
            "--seed", str(SEED),
            "--workers", str(workers),
            "--output", output,
        ],
        capture_output=True,
        text=True,
        cwd=str(project_root)
    )
    if result.returncode != 0:
        print(f"[{run_name}] Simulation failed: {result.stderr}")
        sys.exit(1)

    return compute_sha256(output)


def main():
    project_root = Path(__file__).resolve().parent.parent
    scenarios = sorted((project_root / "scenarios").glob("*.sdl"))

    print("=" * 60)
    print("Deterministic Smoke Test")
    print("=" * 60)
    print(f"Seed: {SEED}")
    print(f"Simulation runs: {N_RUNS}")
    print(f"Scenarios: {[s.name for s in scenarios]}")

    temp_base = tempfile.mkdtemp(prefix="deterministic_smoke_")
    print(f"\nTemp directory: {temp_base}")

    try:
        hashes = {
            scenario.name: {name: run_simulation(scenario, temp_base, name, workers)
                            for name, workers in RUN_CONFIGS}
            for scenario in scenarios
        }

        print("\n" + "=" * 60)
        print("Hash Comparison")
        print("=" * 60)

        all_match = True
        for scenario, by_run in hashes.items():
            reference = by_run["run1"]
            for run_name, digest in by_run.items():
                if digest == reference:
                    print(f"  {scenario} [{run_name}]: MATCH (sha256:{digest[:16]}...)")
                else:
                    print(f"  {scenario} [{run_name}]: MISMATCH")
                    print(f"    run1: sha256:{reference}")
                    print(f"    {run_name}: sha256:{digest}")
                    all_match = False

        print("\n" + "=" * 60)
        if all_match:
            combined = "".join(sorted(f"{k}:{v['run1']}" for k, v in hashes.items()))
            summary_hash = hashlib.sha256(combined.encode()).hexdigest()[:16]
            print("PASS: Simulations are deterministic")
            print(f"Summary hash: {summary_hash}")
            print("=" * 60)
            return 0

        print("FAIL: Simulation outputs differ between runs")
        print("=" * 60)
        return 1

    finally:
        shutil.rmtree(temp_base, ignore_errors=True)


if __name__ == "__main__":
    sys.exit(main())
