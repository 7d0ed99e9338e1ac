import os

os.environ.setdefault("APP_ENV", "testing")

import uuid

import pytest

from auth import InMemoryIdentityProvider, configure_identity
from idempotency import reset_ledger
from main import app
from repositories import get_account_repository, reset_repositories

TOKENS = {
    "token-u1": "u1",
    "token-u2": "u2",
}


@pytest.fixture(autouse=True)
def reset_state():
    """Reset repositories, ledger selection and identities before each test."""
    reset_repositories()
    reset_ledger()
    configure_identity(InMemoryIdentityProvider(TOKENS))
    app.dependency_overrides.clear()
    yield
    app.dependency_overrides.clear()


@pytest.fixture
def account():
    """An active account owned by u1."""
    return get_account_repository().add_account("u1", name="Checking", initial_balance=1000)


@pytest.fixture
def income_payload(account):
    return {
        "transaction_type": "income",
        "origin_account_id": account["id"],
        "category_id": str(uuid.uuid4()),
        "amount": 150.25,
        "description": "Salary",
        "transaction_date": "2024-05-01",
    }
