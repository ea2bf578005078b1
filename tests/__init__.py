"""Test package for the RaceGuard static analyzer.

This package contains unit tests for each analysis phase plus integration
tests that run whole documents through the analyzer and the CLI.
"""

__all__ = ["test_analyzer", "test_integration", "test_utils"]
