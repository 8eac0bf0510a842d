"""Pytest configuration and fixtures for test suite."""

import os
import sys
import tempfile
from pathlib import Path

import pytest

# Set test environment BEFORE any other imports
os.environ.setdefault("APP_ENVIRONMENT", "test")

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
if str(src_path) not in sys.path:
    sys.path.insert(0, str(src_path))


@pytest.fixture
def temp_db():
    """Create a temporary database for testing."""
    with tempfile.NamedTemporaryFile(suffix='.db', delete=False) as f:
        db_path = Path(f.name)
    yield db_path
    if db_path.exists():
        db_path.unlink()


@pytest.fixture
def persistence(temp_db):
    """Create persistence instance with temp database."""
    from database.funnel_session_persistence import FunnelSessionPersistence
    return FunnelSessionPersistence(db_path=temp_db)


@pytest.fixture
def funnel():
    from tests.helpers.funnel_builders import standard_funnel
    return standard_funnel()


@pytest.fixture
def funnel_store(funnel):
    from funnel.collaborators import InMemoryFunnelStore
    return InMemoryFunnelStore([funnel])


@pytest.fixture
def enrollment():
    from funnel.collaborators import InMemoryEnrollmentService
    return InMemoryEnrollmentService()


@pytest.fixture
def identity():
    from funnel.collaborators import InMemoryIdentityProvider
    return InMemoryIdentityProvider()


@pytest.fixture
def app(persistence, funnel_store, enrollment, identity):
    """API application wired to test collaborators."""
    from web import dependencies
    from web.app import create_app

    app = create_app()
    app.dependency_overrides[dependencies.get_persistence] = lambda: persistence
    app.dependency_overrides[dependencies.get_funnel_store] = lambda: funnel_store
    app.dependency_overrides[dependencies.get_enrollment_service] = lambda: enrollment
    app.dependency_overrides[dependencies.get_identity_provider] = lambda: identity
    yield app
    app.dependency_overrides.clear()


@pytest.fixture
def api_client(app):
    """Synchronous FastAPI test client."""
    from fastapi.testclient import TestClient
    return TestClient(app)


@pytest.fixture
def make_session_client(app):
    """
    Factory for FunnelSessionClient instances talking to the app in-process.

    Usage:
        client = make_session_client(user_id="user_1")
    """
    import httpx
    from funnel.client import FunnelSessionClient

    def _make(user_id=None):
        return FunnelSessionClient(
            base_url="http://testserver",
            timeout=5.0,
            user_id=user_id,
            transport=httpx.ASGITransport(app=app),
        )

    return _make
