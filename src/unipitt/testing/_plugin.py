"""Pytest plugin providing shared test fixtures for unipitt.

Registers ``mock_mqtt`` and ``sys_fs_root`` fixtures for any test
suite that depends on unipitt, via the ``pytest11`` entry point.

Imports of unipitt modules are deferred into the fixture bodies so
that they happen after ``pytest-cov`` starts tracing.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

if TYPE_CHECKING:
    from pathlib import Path

    from unipitt._mqtt import MockMqttClient


@pytest.fixture
def mock_mqtt() -> MockMqttClient:
    """Fresh MockMqttClient for each test."""
    from unipitt._mqtt import MockMqttClient

    return MockMqttClient()


@pytest.fixture
def sys_fs_root(tmp_path: Path) -> Path:
    """Empty directory standing in for ``/sys/devices/platform/unipi_plc``."""
    root = tmp_path / "unipi_plc"
    root.mkdir()
    return root
