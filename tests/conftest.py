"""Pytest fixtures for payment link ledger tests."""

from __future__ import annotations

from collections.abc import Generator
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from paylink.config import ClaimRetryPolicy, LedgerConfig, Settings
from paylink.database import create_schema, sync_session_factory
from paylink.events import DomainEvent, EventEmitter
from paylink.lifecycle import LinkLifecycle
from paylink.providers import StubTransferEngine
from paylink.services.link_store import Link

# File-backed SQLite so that separate sessions (and threads) share one database.
# For full Postgres behaviour, point DATABASE_URL_SYNC at a test Postgres database.


@pytest.fixture
def db_url(tmp_path) -> str:
    """Per-test SQLite database file."""
    return f"sqlite:///{tmp_path / 'paylink.db'}"


@pytest.fixture
def sync_engine(db_url: str) -> Generator[Engine, None, None]:
    """Create test database engine with schema."""
    engine = create_engine(db_url, echo=False, connect_args={"timeout": 30})
    create_schema(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(sync_engine: Engine) -> sessionmaker[Session]:
    """Session factory bound to the test engine."""
    return sync_session_factory(sync_engine)


@pytest.fixture
def session(session_factory: sessionmaker[Session]) -> Generator[Session, None, None]:
    """Database session for each test."""
    with session_factory() as session:
        yield session


@pytest.fixture
def transfer_engine() -> StubTransferEngine:
    """In-memory transfer engine."""
    return StubTransferEngine()


@pytest.fixture
def recorded_events() -> list[DomainEvent]:
    """Events captured by the emitter fixture."""
    return []


@pytest.fixture
def emitter(recorded_events: list[DomainEvent]) -> EventEmitter:
    """Emitter recording every event."""
    emitter = EventEmitter()
    emitter.on_all(recorded_events.append)
    return emitter


@pytest.fixture
def ledger_config() -> LedgerConfig:
    """Ledger config with no in-place claim retry."""
    return LedgerConfig(claim_retry=ClaimRetryPolicy(max_attempts=1))


@pytest.fixture
def settings(db_url: str, ledger_config: LedgerConfig) -> Settings:
    """Explicit settings pointing at the test database."""
    return Settings(
        database_url=db_url.replace("sqlite:", "sqlite+aiosqlite:", 1),
        database_url_sync=db_url,
        host="127.0.0.1",
        port=8000,
        debug=False,
        log_level="INFO",
        engine="stub",
        relayer_url=None,
        relayer_timeout_seconds=5.0,
        ledger=ledger_config,
    )


@pytest.fixture
def lifecycle(
    session: Session,
    transfer_engine: StubTransferEngine,
    ledger_config: LedgerConfig,
    emitter: EventEmitter,
) -> LinkLifecycle:
    """Lifecycle facade over the test session."""
    return LinkLifecycle(session, transfer_engine, config=ledger_config, emitter=emitter)


@pytest.fixture
def created_link(lifecycle: LinkLifecycle) -> Link:
    """A link in state created: 100 X with a fee of 6."""
    return lifecycle.create_link(
        amount=Decimal("100"),
        asset="X",
        creator_ref="wallet-a",
        fee_amount=Decimal("6"),
    )


@pytest.fixture
def funded_link(lifecycle: LinkLifecycle, created_link: Link) -> Link:
    """A link in state funded by transfer tx-fund-1."""
    result = lifecycle.report_funding(created_link.id, "tx-fund-1")
    assert result.ok
    return result.link
