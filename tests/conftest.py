"""Shared pytest configuration and fixtures for the test suite.

This module centralizes:
- Path setup (so ``followledger`` and ``scripts`` import without installing)
- Pytest markers for test categorization (unit, integration, property)
- File-backed SQLite store fixtures
- Collector and registry doubles for capture cycles
"""
from __future__ import annotations

import sys
from pathlib import Path
from unittest.mock import Mock

import pytest


# ==============================================================================
# Path Setup
# ==============================================================================

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))


# ==============================================================================
# Pytest Configuration
# ==============================================================================

def pytest_configure(config):
    """Register custom markers for test categorization."""
    config.addinivalue_line(
        "markers",
        "unit: Fast tests with no I/O",
    )
    config.addinivalue_line(
        "markers",
        "integration: Tests hitting SQLite or the file system",
    )
    config.addinivalue_line(
        "markers",
        "property: Hypothesis property-based tests",
    )


# ==============================================================================
# Collector / Registry Fixtures
# ==============================================================================

@pytest.fixture
def static_collector():
    """Collector serving scripted sets.

    Example:
        def test_capture(static_collector):
            static_collector.set(42, followers=[1, 2], followed=[3])
    """
    from tests.helpers.collectors import StaticCollector
    return StaticCollector()


@pytest.fixture
def blocking_collector():
    """Collector that hangs until the test finishes."""
    from tests.helpers.collectors import BlockingCollector
    collector = BlockingCollector()
    yield collector
    collector.release.set()


@pytest.fixture
def mock_registry():
    """Registry double resolving every account to ``user<id>``.

    Example:
        def test_rename(mock_registry):
            mock_registry.resolve_screen_name.side_effect = None
            mock_registry.resolve_screen_name.return_value = "renamed"
    """
    registry = Mock()
    registry.resolve_screen_name = Mock(side_effect=lambda account_id: f"user{account_id}")
    return registry


# ==============================================================================
# Temporary Database Fixtures
# ==============================================================================

@pytest.fixture
def ledger_settings(tmp_path: Path):
    """Settings pointing at a throwaway SQLite file with no retry delay.

    A file is used rather than ``:memory:`` because every pooled connection to
    an in-memory SQLite URL sees its own empty database.
    """
    from followledger.config import LedgerSettings
    return LedgerSettings(
        database_url=f"sqlite:///{tmp_path / 'ledger.db'}",
        fetch_timeout_seconds=2.0,
        storage_max_attempts=2,
        storage_retry_delay_seconds=0.0,
        reverse_index_page_size=2,
    )


@pytest.fixture
def ledger_engine(ledger_settings):
    from followledger.config import create_ledger_engine
    engine = create_ledger_engine(ledger_settings)
    yield engine
    engine.dispose()


@pytest.fixture
def ledger_store(ledger_engine):
    from followledger.store import BatchStore
    return BatchStore(ledger_engine, max_attempts=2, base_delay_seconds=0.0)
