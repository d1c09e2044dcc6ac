"""
Pytest configuration for the CHIP-8 test suite.

    python -m pytest                 # everything
    python -m pytest -m "not pygame" # skip tests that open pygame

Tests that touch pygame carry the `pygame` marker.  SDL is pointed at its
dummy video/audio drivers so they run without a display or sound card,
and they are skipped when pygame is not installed.
"""

import importlib.util
import os

import pytest

os.environ.setdefault("SDL_VIDEODRIVER", "dummy")
os.environ.setdefault("SDL_AUDIODRIVER", "dummy")
os.environ.setdefault("PYGAME_HIDE_SUPPORT_PROMPT", "1")

HAVE_PYGAME = importlib.util.find_spec("pygame") is not None


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers",
        "pygame: tests that initialise pygame (skipped when it is missing)")


@pytest.hookimpl(trylast=True)
def pytest_collection_modifyitems(config, items):
    if HAVE_PYGAME:
        return
    skip = pytest.mark.skip(reason="pygame not installed")
    for item in items:
        if "pygame" in item.keywords:
            item.add_marker(skip)
