"""动作类型目录服务: 只读目录 + 读穿缓存 (显式失效)"""

import logging
import time
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from steward.common.cache import CacheService, get_cache_service
from steward.common.config import settings
from steward.domains.authority.exceptions import UnknownActionTypeError
from steward.domains.authority.models import ActionType
from steward.domains.authority.schemas import ActionTypeInfo

logger = logging.getLogger(__name__)

CACHE_DOMAIN = "action_types"

# Seeded at deployment time; the engine never writes to the catalog otherwise.
BUILT_IN_ACTION_TYPES: List[Dict[str, Any]] = [
    {
        "name": "decline_spam_meeting",
        "category": "calendar",
        "description": "Decline obvious spam meeting invites from unknown senders",
        "risk_level": "low",
        "default_authority_level": "auto",
        "reversible": True,
    },
    {
        "name": "protect_focus_time",
        "category": "calendar",
        "description": "Decline invites that conflict with protected focus blocks",
        "risk_level": "low",
        "default_authority_level": "notify",
        "reversible": True,
    },
    {
        "name": "reschedule_meeting",
        "category": "calendar",
        "description": "Propose moving a meeting to a better time",
        "risk_level": "medium",
        "default_authority_level": "approval_required",
        "reversible": True,
    },
    {
        "name": "send_email_reply",
        "category": "email",
        "description": "Send a reply to a routine email (scheduling, acknowledgements)",
        "risk_level": "medium",
        "default_authority_level": "notify",
        "reversible": False,
    },
    {
        "name": "reply_decline_request",
        "category": "email",
        "description": "Send a polite decline to a request",
        "risk_level": "high",
        "default_authority_level": "approval_required",
        "reversible": False,
    },
    {
        "name": "follow_up_nudge",
        "category": "email",
        "description": "Nudge someone who has not responded",
        "risk_level": "low",
        "default_authority_level": "approval_required",
        "reversible": False,
    },
    {
        "name": "create_reminder",
        "category": "task",
        "description": "File a reminder for a commitment or deadline",
        "risk_level": "low",
        "default_authority_level": "auto",
        "reversible": True,
    },
    {
        "name": "snooze_commitment",
        "category": "task",
        "description": "Snooze a commitment reminder to a later time",
        "risk_level": "low",
        "default_authority_level": "auto",
        "reversible": True,
    },
    {
        "name": "complete_commitment",
        "category": "task",
        "description": "Mark a commitment as completed",
        "risk_level": "medium",
        "default_authority_level": "approval_required",
        "reversible": True,
    },
    {
        "name": "delegate_task",
        "category": "task",
        "description": "Hand a task off to someone else",
        "risk_level": "high",
        "default_authority_level": "approval_required",
        "reversible": False,
    },
    {
        "name": "send_digest_notification",
        "category": "notification",
        "description": "Push a digest or reminder notification to the user",
        "risk_level": "low",
        "default_authority_level": "auto",
        "reversible": False,
    },
    {
        "name": "modify_financial_record",
        "category": "finance",
        "description": "Create or change a financial record (payment, invoice, budget line)",
        "risk_level": "high",
        "default_authority_level": "approval_required",
        "reversible": True,
    },
]


class ActionTypeService:
    """Action type registry.

    The catalog is small and read-mostly, so it is read through the cache as a
    whole. Anything that writes catalog rows must call :meth:`invalidate`.
    """

    def __init__(self, cache: Optional[CacheService] = None, ttl: Optional[int] = None):
        self.cache = cache or get_cache_service()
        self.ttl = ttl if ttl is not None else settings.action_type_cache_ttl
        self._last_miss_reload: Optional[float] = None

    async def _load_catalog(self, session: AsyncSession) -> List[Dict[str, Any]]:
        async def _fetch():
            logger.debug("Action type catalog cache miss, loading from database")
            result = await session.execute(
                select(ActionType)
                .order_by(ActionType.category, ActionType.name)
                .execution_options(populate_existing=True)
            )
            return [t.to_dict() for t in result.scalars().all()]

        return await self.cache.get_or_set(
            self.cache.key(CACHE_DOMAIN, "all"), _fetch, ttl=self.ttl,
        )

    async def list_action_types(self, session: AsyncSession) -> List[ActionTypeInfo]:
        rows = await self._load_catalog(session)
        return [ActionTypeInfo(**row) for row in rows]

    async def _find(self, key: str, value: str, session: AsyncSession) -> Optional[ActionTypeInfo]:
        for row in await self._load_catalog(session):
            if row[key] == value:
                return ActionTypeInfo(**row)

        # A row seeded by another process is picked up with one reload, rate-limited
        now = time.monotonic()
        if (
            self._last_miss_reload is not None
            and now - self._last_miss_reload < settings.action_type_miss_reload_seconds
        ):
            return None
        self._last_miss_reload = now
        await self.invalidate()
        for row in await self._load_catalog(session):
            if row[key] == value:
                return ActionTypeInfo(**row)
        return None

    async def find_action_type(self, action_type_id: str, session: AsyncSession) -> Optional[ActionTypeInfo]:
        return await self._find("id", action_type_id, session)

    async def get_action_type(self, action_type_id: str, session: AsyncSession) -> ActionTypeInfo:
        """Return the action type or raise UnknownActionTypeError"""
        action_type = await self.find_action_type(action_type_id, session)
        if action_type is None:
            logger.warning(f"Action type not found: {action_type_id}")
            raise UnknownActionTypeError(action_type_id)
        return action_type

    async def get_action_type_by_name(self, name: str, session: AsyncSession) -> ActionTypeInfo:
        action_type = await self._find("name", name, session)
        if action_type is None:
            logger.warning(f"Action type not found by name: {name}")
            raise UnknownActionTypeError(name)
        return action_type

    async def list_by_category(self, category: str, session: AsyncSession) -> List[ActionTypeInfo]:
        return [t for t in await self.list_action_types(session) if t.category == category]

    async def list_by_risk_level(self, risk_level: str, session: AsyncSession) -> List[ActionTypeInfo]:
        return [t for t in await self.list_action_types(session) if t.risk_level == risk_level]

    async def seed_built_in_action_types(
        self,
        session: AsyncSession,
        definitions: Optional[List[Dict[str, Any]]] = None,
    ) -> Dict[str, int]:
        """Insert missing built-in types by name; existing rows are left untouched."""
        definitions = definitions if definitions is not None else BUILT_IN_ACTION_TYPES

        result = await session.execute(select(ActionType.name))
        existing_names = set(result.scalars().all())

        created = 0
        for definition in definitions:
            if definition["name"] in existing_names:
                continue
            session.add(ActionType(**definition))
            existing_names.add(definition["name"])
            created += 1

        await session.commit()
        await self.invalidate()

        existing = len(definitions) - created
        logger.info(f"Action type catalog seeded: created={created} existing={existing}")
        return {"created": created, "existing": existing}

    async def invalidate(self) -> None:
        await self.cache.invalidate(CACHE_DOMAIN)


_action_type_service: Optional[ActionTypeService] = None


def get_action_type_service() -> ActionTypeService:
    global _action_type_service
    if _action_type_service is None:
        _action_type_service = ActionTypeService()
    return _action_type_service
