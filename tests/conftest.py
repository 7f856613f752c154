"""
Shared fixtures for treasury engine tests
"""

import pytest

from treasury_core.config import TreasuryConfig
from treasury_core.currency import Currency
from treasury_core.engine import TreasuryEngine
from treasury_core.identity import AuthUser, UserRole
from treasury_core.providers import (
    MockBankVerificationProvider, MockTransferProvider, ProviderRegistry, ProviderStatus,
    TransferProviderName
)
from treasury_core.storage import InMemoryStorage


ORG = "org_acme"
ACCOUNT = "0123456789"
BANK = "058"


def build_engine(transfer_provider=None, **config_overrides):
    """Engine on in-memory storage with mock providers"""
    provider = transfer_provider or MockTransferProvider()
    registry = ProviderRegistry({
        TransferProviderName.MOCK: lambda: provider,
        TransferProviderName.HTTP: lambda: provider,
    })
    settings = {"database_url": "memory://", "log_level": "WARNING"}
    settings.update(config_overrides)
    return TreasuryEngine(
        TreasuryConfig(**settings),
        storage=InMemoryStorage(),
        providers=registry,
        bank_verification=MockBankVerificationProvider(),
    )


@pytest.fixture
def transfer_provider():
    return MockTransferProvider(default_status=ProviderStatus.SUCCESSFUL)


@pytest.fixture
def engine(transfer_provider):
    engine = build_engine(transfer_provider)
    yield engine
    engine.stop()


@pytest.fixture
def owner():
    return AuthUser(user_id="owner", organization_id=ORG, role=UserRole.OWNER)


@pytest.fixture
def admin():
    return AuthUser(user_id="admin", organization_id=ORG, role=UserRole.ADMIN)


@pytest.fixture
def employee():
    return AuthUser(user_id="emp_ada", organization_id=ORG, role=UserRole.EMPLOYEE, department_id="eng")


@pytest.fixture
def wallet(engine):
    return engine.wallets.create_wallet(ORG, Currency.NGN, balance=100_000, primary=True, name="Main")
