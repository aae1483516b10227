"""Test utilities."""
import os
import sys


def is_pytest() -> bool:
    """Check if running under pytest."""
    return ("PYTEST_CURRENT_TEST" in os.environ) or ("pytest" in sys.modules)


def is_test_mode() -> bool:
    """Check if running in test mode (strict invariants, no artificial delays)."""
    return is_pytest() or os.getenv("APP_ENV", "").lower() in ("test", "ci")
