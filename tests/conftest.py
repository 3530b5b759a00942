# ==== SHARED TEST FIXTURES AND CONFIGURATION ==== #

"""
Shared test fixtures and configuration.

Each test gets its own SQLite database file, so ledger services run real
transactions on separate connections, the way they do against PostgreSQL.
Services are wired to an in-memory compliance sink and a local lock
manager.
"""

import os

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker


# ==== FORCE ENVIRONMENT SETUP BEFORE ANY IMPORTS ==== #

# Set environment variables BEFORE importing any app modules
os.environ.update({
    "APP_ENV": "test",
    "DATABASE_URL": "sqlite+aiosqlite://",
    "JWT_SECRET": "test-secret-key-for-testing-only-0123456789",
    "LOG_LEVEL": "WARNING",
    "LOG_TO_FILES": "false",
    "LEDGER_LOCK_BACKEND": "local",
    "GATEWAY_WEBHOOK_SECRET": "test-gateway-secret",
})

# Now import app modules after environment is set
from app.main import create_app  # noqa: E402
from app.routes import deps  # noqa: E402
from app.security.auth import Actor, Role, create_access_token  # noqa: E402
from app.services.collection_processor import CollectionProcessor  # noqa: E402
from app.services.invoice_service import InvoiceService  # noqa: E402
from app.services.ledger_lock import LedgerLockManager  # noqa: E402
from app.services.note_service import NoteService  # noqa: E402
from app.services.policy_loader import BillingPolicy  # noqa: E402
from app.services.receivable_ledger import ReceivableLedger  # noqa: E402
from app.services.reporting import ReceivablesReport  # noqa: E402
from app.storage.db import Base, build_engine  # noqa: E402

from factories.compliance import RecordingComplianceSink  # noqa: E402
from factories.data_factories import CLIENT_ID, OTHER_CLIENT_ID, LedgerFactory, issue_invoice  # noqa: E402


# ==== DATABASE FIXTURES ==== #


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    """
    Session factory over a fresh SQLite file with the full schema.

    Returns:
        async_sessionmaker: Factory configured like the application's
    """
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)

    await engine.dispose()


@pytest.fixture
def factory(session_factory):
    return LedgerFactory(session_factory)


# ==== SERVICE FIXTURES ==== #


@pytest.fixture
def policy():
    return BillingPolicy()


@pytest.fixture
def sink():
    return RecordingComplianceSink()


@pytest.fixture
def locks():
    return LedgerLockManager(backend="local", timeout_seconds=5)


@pytest.fixture
def invoice_service(session_factory, sink, locks, policy):
    return InvoiceService(session_factory, sink, locks=locks, policy=policy)


@pytest.fixture
def collection_processor(session_factory, sink, locks, policy):
    return CollectionProcessor(session_factory, sink, locks=locks, policy=policy)


@pytest.fixture
def note_service(session_factory, sink, locks, policy):
    return NoteService(session_factory, sink, locks=locks, policy=policy)


@pytest.fixture
def receivable_ledger(session_factory):
    return ReceivableLedger(session_factory)


@pytest.fixture
def receivables_report(session_factory):
    return ReceivablesReport(session_factory)


# ==== ACTOR FIXTURES ==== #


@pytest.fixture
def finance():
    return Actor(user_id="fin-1", role=Role.FINANCE_ADMIN)


@pytest.fixture
def finance_2():
    return Actor(user_id="fin-2", role=Role.FINANCE_ADMIN)


@pytest.fixture
def founder():
    return Actor(user_id="founder-1", role=Role.FOUNDER)


@pytest.fixture
def client_actor():
    return Actor(user_id="acme-user", role=Role.CLIENT, client_id=CLIENT_ID)


@pytest.fixture
def other_client_actor():
    return Actor(user_id="globex-user", role=Role.CLIENT, client_id=OTHER_CLIENT_ID)


# ==== LEDGER STATE FIXTURES ==== #


@pytest_asyncio.fixture
async def sent_invoice(factory, invoice_service, finance):
    """
    A sent invoice of 1,080,000 paise for the standard client.

    Returns:
        Tuple[Invoice, Receivable]: Invoice and its freshly opened receivable
    """
    await factory.standard_client()
    return await issue_invoice(invoice_service, finance)


# ==== APPLICATION FIXTURES ==== #


@pytest.fixture
def api_app(invoice_service, collection_processor, note_service, receivable_ledger, receivables_report):
    """
    FastAPI application whose services run against the test database.

    Returns:
        FastAPI: Test application instance
    """
    application = create_app()
    application.dependency_overrides[deps.get_invoice_service] = lambda: invoice_service
    application.dependency_overrides[deps.get_collection_processor] = lambda: collection_processor
    application.dependency_overrides[deps.get_note_service] = lambda: note_service
    application.dependency_overrides[deps.get_receivable_ledger] = lambda: receivable_ledger
    application.dependency_overrides[deps.get_receivables_report] = lambda: receivables_report
    return application


@pytest_asyncio.fixture
async def client(api_app):
    """
    Create test client.

    Returns:
        AsyncClient: HTTP test client instance
    """
    async with AsyncClient(transport=ASGITransport(app=api_app), base_url="http://test") as ac:
        yield ac


def bearer(user_id: str, role: Role, client_id=None) -> dict:
    return {"Authorization": f"Bearer {create_access_token(user_id, role, client_id)}"}


@pytest.fixture
def finance_headers():
    return bearer("fin-1", Role.FINANCE_ADMIN)


@pytest.fixture
def founder_headers():
    return bearer("founder-1", Role.FOUNDER)


@pytest.fixture
def client_headers():
    return bearer("acme-user", Role.CLIENT, CLIENT_ID)
