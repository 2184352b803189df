"""Shared fixtures: in-memory doubles wired to one manual clock."""

import pytest
from doubles import (
    FakeExtractionService,
    FakeGateway,
    FakeRefresher,
    InMemoryStore,
    ManualSubstrate,
)


@pytest.fixture
def substrate():
    return ManualSubstrate()


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def gateway(substrate):
    return FakeGateway(substrate.now)


@pytest.fixture
def refresher(substrate):
    return FakeRefresher(substrate.now)


@pytest.fixture
def extraction():
    return FakeExtractionService()
