"""Shared fixtures for Tails tests."""

import logging
import os
from pathlib import Path
from typing import List

import pytest

from tails.core.events import LineEvent


@pytest.fixture(autouse=True)
def clean_tails_environment(monkeypatch):
    """Keep TAILS_* variables of the outer shell out of every test."""
    for name in list(os.environ):
        if name.upper().startswith("TAILS_"):
            monkeypatch.delenv(name)


@pytest.fixture
def log_file(tmp_path: Path) -> Path:
    """An existing, empty file to tail."""
    path = tmp_path / "app.log"
    path.write_text("")
    return path


@pytest.fixture
def sample_lines() -> List[str]:
    """Lines published in the basic fan-out scenario."""
    return ["line1", "line2", "line3"]


@pytest.fixture
def sample_events(sample_lines: List[str]) -> List[LineEvent]:
    return [LineEvent(line) for line in sample_lines]


@pytest.fixture
def restore_root_logger():
    """Restore root logger handlers and level after a test reconfigures them."""
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield root
    root.handlers[:] = handlers
    root.setLevel(level)
