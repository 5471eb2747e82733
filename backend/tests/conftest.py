"""Shared fixtures: a file-backed SQLite database per test and fresh services."""

from typing import Dict

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from steward.common.base import Base
from steward.common.cache import CacheService
from steward.domains.authority import models  # noqa: F401
from steward.domains.authority.engine import ActionEngine
from steward.domains.authority.schemas import ActionTypeInfo
from steward.domains.authority.services.action_type_service import ActionTypeService
from steward.domains.authority.services.authority_service import AuthorityService
from steward.domains.authority.services.feedback_service import FeedbackService
from steward.domains.authority.services.ledger_service import ActionLedgerService

USER_ID = "user-alice"
OTHER_USER_ID = "user-bob"


@pytest_asyncio.fixture
async def db_engine(tmp_path):
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'steward_test.db'}",
        connect_args={"timeout": 30},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def session(session_factory):
    async with session_factory() as s:
        yield s


@pytest.fixture
def cache():
    return CacheService()


@pytest.fixture
def action_types(cache):
    return ActionTypeService(cache=cache)


@pytest.fixture
def authority(action_types):
    return AuthorityService(action_types)


@pytest.fixture
def ledger(action_types):
    return ActionLedgerService(action_types)


@pytest.fixture
def feedback():
    return FeedbackService()


@pytest.fixture
def action_engine(action_types, authority, ledger):
    return ActionEngine(action_types=action_types, authority=authority, ledger=ledger)


@pytest_asyncio.fixture
async def catalog(action_types, session) -> Dict[str, ActionTypeInfo]:
    """Seeded built-in catalog, keyed by action type name"""
    await action_types.seed_built_in_action_types(session)
    return {t.name: t for t in await action_types.list_action_types(session)}


@pytest.fixture
def make_log(ledger, catalog, session):
    """Create a ledger entry with sensible defaults"""

    async def _make(
        action_type_name: str = "send_email_reply",
        user_id: str = USER_ID,
        status: str = "pending_approval",
        target_type: str = "email",
        target_id: str = "msg-1",
        **kwargs,
    ):
        return await ledger.create_action_log(
            user_id,
            catalog[action_type_name].id,
            target_type,
            target_id,
            kwargs.pop("description", f"{action_type_name} on {target_id}"),
            session,
            status=status,
            **kwargs,
        )

    return _make
