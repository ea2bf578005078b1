"""Pytest configuration and fixtures for RaceGuard tests."""
import os
import sys
from pathlib import Path

import pytest

# Add the parent directory to the path so we can import raceguard
sys.path.insert(0, str(Path(__file__).parent.parent))

from tests.test_utils import create_temp_json_file


@pytest.fixture
def temp_json_file():
    """Create a temporary JSON input file for testing."""

    def _create_file(data, suffix=".json"):
        return create_temp_json_file(data, suffix)

    return _create_file


@pytest.fixture
def cleanup_temp_files(request):
    """Clean up temporary files after tests."""
    files = []

    def _add_file(filepath):
        if filepath:
            files.append(filepath)
        return filepath

    yield _add_file

    for filepath in files:
        try:
            if filepath and os.path.exists(filepath):
                os.unlink(filepath)
        except (OSError, PermissionError):
            pass


@pytest.fixture
def analyzer():
    """Create a new RaceAnalyzer instance with the default configuration."""
    from raceguard.analyzer import RaceAnalyzer

    return RaceAnalyzer()


@pytest.fixture
def strict_analyzer():
    """RaceAnalyzer that does not treat unknown thread contexts as concurrent."""
    from raceguard.analyzer import RaceAnalyzer
    from raceguard.config import AnalysisConfig

    return RaceAnalyzer(AnalysisConfig(strict_thread_context=True))


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "slow: mark test as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line("markers", "benchmark: mark test as a benchmark")
