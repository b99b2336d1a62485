"""Shared fixtures: an in-memory session scripted with the peer's output."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from fakes import FakeSession


@pytest.fixture()
def make_session():
    """Return the FakeSession factory."""
    return FakeSession


@pytest.fixture()
def mock_connection() -> MagicMock:
    """Return a mock connection; set ``open_session.return_value`` per test."""
    conn = MagicMock()
    conn.open_session.return_value = FakeSession()
    return conn
