"""Shared fixtures for the devotional generator tests."""

import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

import pytest

from Devotional_Generator import build_config


@pytest.fixture
def make_config(tmp_path):
    """Config rooted in a temp dir, quiet, with no real providers and no backoff sleeps."""
    def _make(**overrides):
        raw = {
            "run_config": {"base_path": str(tmp_path), "debug": False, "max_attempts": 3},
            "llm_config": {"providers": [], "max_tries": 1, "backoff_factor": 0},
            "novelty_config": {},
        }
        for section, values in overrides.items():
            raw[section].update(values)
        return build_config(raw)
    return _make
