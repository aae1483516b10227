"""Shared pytest fixtures for the test suite.

Provides:
- An isolated SQLite database per test
- A fully wired TurnHandler with zero execution delay
- Small builders for drafts and sessions
"""
import os
import shutil
import tempfile

import pytest

# Set test mode environment variables early (BEFORE copilot imports)
os.environ["APP_ENV"] = "test"
os.environ["EXECUTION_DELAY_SECONDS"] = "0"
os.environ.pop("AUTO_RETRY_BLOCKED", None)


@pytest.fixture(autouse=True, scope="session")
def _reset_settings_for_tests():
    """Reset settings singleton so test env vars take effect."""
    from copilot.core.config import reset_settings
    reset_settings()
    yield
    reset_settings()


# === DATABASE FIXTURES ===

@pytest.fixture(scope="function")
def test_db():
    """Create an isolated test database for each test function.

    Creates a fresh SQLite database, runs migrations, and cleans up after.
    """
    temp_dir = tempfile.mkdtemp()
    db_path = os.path.join(temp_dir, "test_copilot.db")

    old_db_url = os.environ.get("DATABASE_URL")
    os.environ["DATABASE_URL"] = f"sqlite:///{db_path}"

    from copilot.core.config import reset_settings
    reset_settings()

    try:
        from copilot.db.connect import init_db
        init_db()
        yield db_path
    finally:
        if old_db_url:
            os.environ["DATABASE_URL"] = old_db_url
        else:
            os.environ.pop("DATABASE_URL", None)
        reset_settings()
        shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture
def settings(test_db):
    from copilot.core.config import get_settings
    return get_settings()


@pytest.fixture
def handler(test_db):
    """TurnHandler whose event bets always win."""
    from copilot.orchestrator.turn_handler import build_turn_handler
    return build_turn_handler(event_resolver=lambda draft: True)


@pytest.fixture
def session_id(test_db):
    """An existing, empty session."""
    from copilot.db.repo.sessions_repo import SessionsRepo
    return SessionsRepo().create("sess_test").session_id


# === DRAFT BUILDERS ===

@pytest.fixture
def make_draft():
    """Factory for PositionDraft objects with perp defaults (not persisted)."""
    from copilot.agents.schemas import PerpDetails, PositionDraft
    from copilot.core.ids import new_id
    from copilot.core.time import now_iso

    def _make(session_id="sess_test", market="BTC-PERP", status="draft", **overrides):
        data = dict(
            draft_id=new_id("draft_"),
            session_id=session_id,
            instrument="perp",
            side="long",
            market=market,
            risk_percent=2.0,
            leverage=10.0,
            margin_usd=200.0,
            notional_usd=2000.0,
            status=status,
            details=PerpDetails(entry_price=45000.0),
            created_at=now_iso(),
        )
        data.update(overrides)
        return PositionDraft(**data)

    return _make
