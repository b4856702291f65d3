"""Fixtures for tests that run against a real PostgreSQL database.

Skipped unless LEDGER_DATABASE_URL points at a disposable database. The
schema in db/schema.sql is applied once per session and every test starts
from empty ledger tables.
"""

import os
from pathlib import Path

import pytest

from utils.actor_context import actor_context

SCHEMA_PATH = Path(__file__).parent.parent.parent / "db" / "schema.sql"

TEST_MEMBER_EMAIL = "member@example.com"
TEST_MEMBER_B_EMAIL = "member-b@example.com"


@pytest.fixture(scope="session")
def ledger():
    """Session-scoped wired ledger on the test database."""
    database_url = os.getenv("LEDGER_DATABASE_URL")
    if not database_url:
        pytest.skip("LEDGER_DATABASE_URL not set")

    from core.ledger import build_ledger

    ledger = build_ledger(database_url)
    ledger.postgres.execute(SCHEMA_PATH.read_text())
    yield ledger
    ledger.close()


@pytest.fixture(autouse=True)
def reset_db_state(ledger, test_member_id, test_member_b_id):
    """Reset database state before each test."""
    ledger.postgres.execute("""
        TRUNCATE
            audit_log, payments, transactions, credit_note_items, credit_notes,
            invoice_items, invoices,
            invoice_number_sequences, tax_rates, settings
        CASCADE
    """)

    # Ensure test members exist
    ledger.postgres.execute("""
        INSERT INTO users (id, email, created_at, updated_at)
        VALUES
            (%s, %s, now(), now()),
            (%s, %s, now(), now())
        ON CONFLICT (id) DO UPDATE SET email = EXCLUDED.email, tax_rate_override = NULL
    """, (test_member_id, TEST_MEMBER_EMAIL, test_member_b_id, TEST_MEMBER_B_EMAIL))

    yield


@pytest.fixture
def as_staff(test_actor_id):
    with actor_context(test_actor_id):
        yield test_actor_id
