"""Shared test fixtures for confidant."""

import os
import tempfile

import pytest


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def tmp_dir():
    """Provide a temporary directory that is cleaned up after the test."""
    with tempfile.TemporaryDirectory() as d:
        yield d


@pytest.fixture
def tmp_config_file(tmp_dir):
    """Create a temporary YAML config file."""
    import yaml

    config_data = {
        "paths": {
            "data_dir": os.path.join(tmp_dir, "data"),
            "preferences_file": os.path.join(tmp_dir, "data", "llm_preferences.json"),
        },
        "llm": {
            "endpoint": "http://llm.test/v1/chat/completions",
            "server_type": "lmstudio",
            "default_model": "test-model",
            "rate_limit_rpm": 30,
        },
    }
    config_path = os.path.join(tmp_dir, "config.yaml")
    with open(config_path, "w") as f:
        yaml.dump(config_data, f)
    return config_path


@pytest.fixture
def fake_clock():
    return FakeClock()
