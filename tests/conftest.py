"""Pytest configuration and shared fixtures."""

import pytest

# The unipitt testing plugin is registered via a ``pytest11`` entry
# point (pyproject.toml) for external consumers.  In our own test
# suite we disable it (``-p no:unipitt``) and load explicitly here
# instead, so the unipitt import chain is measured by pytest-cov.
pytest_plugins = ["unipitt.testing._plugin"]


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers", "unit: Unit tests (fast, no external dependencies)"
    )
    config.addinivalue_line(
        "markers", "integration: Integration tests (use real files and tasks)"
    )
