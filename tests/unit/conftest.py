"""Shared pytest fixtures for identity lifecycle tests."""

import pytest

from aadpi_terminator.services.identity_lifecycle import IdentityLifecycle
from aadpi_terminator.services.identity_reconciler import IdentityReconciler

from .fakes import (
    FIXED_NOW,
    SUBSCRIPTION_ID,
    TEST_CREDENTIAL,
    FakeIdentityProvider,
    FakeResourceStore,
    make_request,
)


@pytest.fixture
def calls():
    """Shared call log for the fake store and provider."""
    return []


@pytest.fixture
def store(calls):
    return FakeResourceStore(calls)


@pytest.fixture
def provider(calls):
    return FakeIdentityProvider(calls)


@pytest.fixture
def sleeps():
    """Delays requested by the role assignment retry loop."""
    return []


@pytest.fixture
def lifecycle(store, provider, sleeps):
    async def record_sleep(delay: float) -> None:
        sleeps.append(delay)

    return IdentityLifecycle(
        store,
        provider,
        subscription_id=SUBSCRIPTION_ID,
        max_attempts=3,
        initial_delay=2.0,
        max_delay=30.0,
        clock=lambda: FIXED_NOW,
        sleep=record_sleep,
        credential_factory=lambda: TEST_CREDENTIAL,
    )


@pytest.fixture
def reconciler(store, lifecycle):
    return IdentityReconciler(store, lifecycle)


@pytest.fixture
def request_obj(store):
    """IdentityRequest svc-a in namespace default, already in the store."""
    return store.seed(make_request())
