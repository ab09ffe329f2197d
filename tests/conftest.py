"""Pytest configuration and shared fixtures.

Unit tests run without external services:
- Certificates come from the in-process CA
- S3 is mocked with moto
- Database sessions are mocks or the in-memory FakeSession from factories
"""

import uuid
from unittest.mock import AsyncMock, MagicMock

import pytest

from tests.factories import make_pdf
from vendorsign.core.settings import clear_settings_cache
from vendorsign.services.authz import Principal, RoleClass
from vendorsign.services.ca_adapter import InMemoryCAClient
from vendorsign.services.key_store import KeyMaterialStore


@pytest.fixture(autouse=True)
def _reset_settings_cache():
    """Keep get_settings() from leaking values between tests."""
    clear_settings_cache()
    yield
    clear_settings_cache()


# ---------------------------------------------------------------------------
# Database fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
def mock_session():
    """AsyncSession mock with synchronous ``add`` and a savepoint context."""
    session = AsyncMock()
    session.add = MagicMock()
    savepoint = MagicMock()
    savepoint.__aenter__ = AsyncMock(return_value=savepoint)
    savepoint.__aexit__ = AsyncMock(return_value=False)
    session.begin_nested = MagicMock(return_value=savepoint)
    session.flush = AsyncMock()
    session.commit = AsyncMock()
    session.rollback = AsyncMock()
    return session


# ---------------------------------------------------------------------------
# Crypto fixtures
# ---------------------------------------------------------------------------
@pytest.fixture(scope="session")
def in_memory_ca() -> InMemoryCAClient:
    """One CA for the session; root key generation is the slow part."""
    return InMemoryCAClient()


@pytest.fixture
def ca(in_memory_ca: InMemoryCAClient) -> InMemoryCAClient:
    in_memory_ca.fail_next = None
    return in_memory_ca


@pytest.fixture
def key_store() -> KeyMaterialStore:
    return KeyMaterialStore.ephemeral()


# ---------------------------------------------------------------------------
# Document fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
def pdf_bytes() -> bytes:
    """Single 600x800 page."""
    return make_pdf()


@pytest.fixture
def two_page_pdf() -> bytes:
    return make_pdf(pages=2)


# ---------------------------------------------------------------------------
# Principals
# ---------------------------------------------------------------------------
@pytest.fixture
def admin_principal() -> Principal:
    return Principal(
        principal_id=uuid.uuid4(),
        principal_type="admin_user",
        roles=frozenset([RoleClass.ADMIN.value]),
    )


@pytest.fixture
def signer_principal() -> Principal:
    return Principal(
        principal_id=uuid.uuid4(),
        principal_type="user",
        roles=frozenset([RoleClass.SIGNER.value]),
    )
