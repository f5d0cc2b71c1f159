"""Shared fixtures for the SDL test suite."""

import os
import sys
from pathlib import Path

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sdl.core.parser import parse

SCENARIOS_DIR = Path(__file__).resolve().parent.parent / "scenarios"


def parse_ok(source: str):
    """Parse source that is expected to be free of syntax errors."""
    result = parse(source)
    assert result.ast is not None, [d.message for d in result.diagnostics]
    assert not result.errors, [d.message for d in result.errors]
    return result.ast


@pytest.fixture
def scenarios_dir():
    return SCENARIOS_DIR


@pytest.fixture
def energy_path():
    return SCENARIOS_DIR / "energy_transition.sdl"


@pytest.fixture
def demography_path():
    return SCENARIOS_DIR / "demography.sdl"


@pytest.fixture
def energy_ast(energy_path):
    return parse_ok(energy_path.read_text(encoding="utf-8"))


@pytest.fixture
def demography_ast(demography_path):
    return parse_ok(demography_path.read_text(encoding="utf-8"))
