"""Shared test fixtures for ledger test suite."""

import pytest
from unittest.mock import MagicMock, Mock
from uuid import UUID
from pathlib import Path

from dotenv import load_dotenv

# Load .env file BEFORE any other imports that might use env vars
# override=True ensures .env takes precedence over shell env vars
load_dotenv(Path(__file__).parent.parent / ".env", override=True)

# Reset vault client singleton to pick up env vars
import clients.vault_client as vault_module
vault_module._vault_client_instance = None
vault_module._secret_cache.clear()

from utils.actor_context import actor_context, clear_current_actor_id


# =============================================================================
# TEST IDENTITY CONSTANTS
# =============================================================================

# Staff member performing operations (audit actor)
TEST_ACTOR_ID = UUID("00000000-0000-0000-0000-000000000001")

# Members owning invoices and transactions
TEST_MEMBER_ID = UUID("00000000-0000-0000-0000-000000000002")
TEST_MEMBER_B_ID = UUID("00000000-0000-0000-0000-000000000003")


# =============================================================================
# ACTOR CONTEXT FIXTURES
# =============================================================================


@pytest.fixture(autouse=True)
def reset_actor_context():
    """Ensure clean actor context before and after each test."""
    clear_current_actor_id()
    yield
    clear_current_actor_id()


@pytest.fixture
def test_actor_id() -> UUID:
    """The staff member tests act as."""
    return TEST_ACTOR_ID


@pytest.fixture
def test_member_id() -> UUID:
    """The primary member's ID."""
    return TEST_MEMBER_ID


@pytest.fixture
def test_member_b_id() -> UUID:
    """A second member, for multi-account tests."""
    return TEST_MEMBER_B_ID


@pytest.fixture
def as_test_actor(test_actor_id):
    """Run the test as the test staff member."""
    with actor_context(test_actor_id):
        yield test_actor_id


# =============================================================================
# MOCK COLLABORATORS
# =============================================================================


@pytest.fixture
def mock_db():
    """
    PostgresClient stand-in. transaction() yields the mock itself, so calls
    made inside and outside a unit of work land on the same object.
    """
    from clients.postgres_client import PostgresClient

    db = MagicMock(spec=PostgresClient)
    db.transaction.return_value.__enter__.return_value = db
    db.transaction.return_value.__exit__.return_value = False
    return db


@pytest.fixture
def audit():
    """AuditLogger stand-in."""
    from core.audit import AuditLogger
    return Mock(spec=AuditLogger)


@pytest.fixture
def event_bus():
    """Real in-process event bus."""
    from core.event_bus import EventBus
    return EventBus()
