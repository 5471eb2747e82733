"""授权解析服务: 用户覆盖优先于动作类型默认等级

Resolution is a pure function of stored state: no decay, no expiry. Writes go
through dialect-native INSERT ... ON CONFLICT so the (user_id, action_type_id)
uniqueness is enforced by the database, not by check-then-insert.
"""

import logging
import uuid
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

from pydantic import ValidationError
from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from steward.common.base import utcnow
from steward.domains.authority.conditions import ConditionResult, evaluate_conditions
from steward.domains.authority.exceptions import UnknownActionTypeError
from steward.domains.authority.models import ActionType, AuthoritySetting
from steward.domains.authority.schemas import (
    ActionContext,
    AuthorityConditions,
    AuthorityLevel,
    BulkAuthorityUpdateItem,
    RiskLevel,
)
from steward.domains.authority.services.action_type_service import (
    ActionTypeService,
    get_action_type_service,
)

logger = logging.getLogger(__name__)

ConditionsInput = Union[AuthorityConditions, Sequence[Any], None]


@dataclass(frozen=True)
class EffectiveAuthority:
    level: AuthorityLevel
    is_override: bool
    conditions: Optional[AuthorityConditions] = None


@dataclass(frozen=True)
class AuthorityCheck:
    level: AuthorityLevel
    is_override: bool
    conditions: Optional[AuthorityConditions]
    conditions_met: bool
    reason: Optional[str] = None


@dataclass
class BulkUpdateItemResult:
    action_type_id: Optional[str]
    success: bool
    setting: Optional[Dict[str, Any]] = None
    error: Optional[str] = None


@dataclass
class BulkUpdateReport:
    results: List[BulkUpdateItemResult] = field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if not r.success)


def _dialect_insert(session: AsyncSession):
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        raise RuntimeError(f"Unsupported database dialect for upserts: {dialect}")
    return insert


def _conditions_json(conditions: ConditionsInput) -> Optional[List[Dict[str, Any]]]:
    if conditions is None:
        return None
    if not isinstance(conditions, AuthorityConditions):
        conditions = AuthorityConditions(conditions=list(conditions))
    return conditions.to_json() or None


def _new_setting_row(user_id: str, action_type_id: str, level: str, conditions) -> Dict[str, Any]:
    now = utcnow()
    return {
        "id": str(uuid.uuid4()),
        "user_id": user_id,
        "action_type_id": action_type_id,
        "authority_level": level,
        "conditions": conditions,
        "created_at": now,
        "updated_at": now,
    }


class AuthorityService:
    """Authority resolver and per-user setting writer"""

    def __init__(self, action_types: Optional[ActionTypeService] = None):
        self.action_types = action_types or get_action_type_service()

    # ── Reads ──

    async def _find_setting(
        self, user_id: str, action_type_id: str, session: AsyncSession
    ) -> Optional[AuthoritySetting]:
        result = await session.execute(
            select(AuthoritySetting)
            .where(
                AuthoritySetting.user_id == user_id,
                AuthoritySetting.action_type_id == action_type_id,
            )
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_setting(
        self, user_id: str, action_type_id: str, session: AsyncSession
    ) -> Optional[Dict[str, Any]]:
        setting = await self._find_setting(user_id, action_type_id, session)
        return setting.to_dict() if setting else None

    async def list_user_settings(self, user_id: str, session: AsyncSession) -> List[Dict[str, Any]]:
        """User settings joined with their action type, ordered by category and name"""
        result = await session.execute(
            select(AuthoritySetting, ActionType)
            .join(ActionType, AuthoritySetting.action_type_id == ActionType.id)
            .where(AuthoritySetting.user_id == user_id)
            .order_by(ActionType.category, ActionType.name)
            .execution_options(populate_existing=True)
        )
        return [
            {**setting.to_dict(), "action_type": action_type.to_dict()}
            for setting, action_type in result.all()
        ]

    async def get_effective_authority_level(
        self, user_id: str, action_type_id: str, session: AsyncSession
    ) -> EffectiveAuthority:
        """User override if present, else the action type default"""
        action_type = await self.action_types.get_action_type(action_type_id, session)
        setting = await self._find_setting(user_id, action_type_id, session)
        if setting is not None:
            return EffectiveAuthority(
                level=AuthorityLevel(setting.authority_level),
                is_override=True,
                conditions=self._parse_conditions(setting),
            )

        return EffectiveAuthority(
            level=action_type.default_authority_level,
            is_override=False,
            conditions=None,
        )

    async def check_authority(
        self,
        user_id: str,
        action_type_name: str,
        session: AsyncSession,
        context: Optional[ActionContext] = None,
    ) -> AuthorityCheck:
        """Resolve the effective level and evaluate its conditions against *context*"""
        action_type = await self.action_types.get_action_type_by_name(action_type_name, session)
        effective = await self.get_effective_authority_level(user_id, action_type.id, session)

        if effective.level == AuthorityLevel.DISABLED:
            return AuthorityCheck(
                level=effective.level,
                is_override=effective.is_override,
                conditions=effective.conditions,
                conditions_met=False,
                reason="Action type is disabled",
            )

        if effective.is_override and effective.conditions is None:
            setting = await self._find_setting(user_id, action_type.id, session)
            if setting is not None and setting.conditions and self._parse_conditions(setting) is None:
                return AuthorityCheck(
                    level=effective.level,
                    is_override=True,
                    conditions=None,
                    conditions_met=False,
                    reason="Stored conditions are invalid",
                )

        if effective.conditions is None:
            return AuthorityCheck(
                level=effective.level,
                is_override=effective.is_override,
                conditions=effective.conditions,
                conditions_met=True,
            )

        # Without a context only the clock is known; bounding conditions then fail closed
        context = context or ActionContext(now=datetime.now(timezone.utc))
        outcome: ConditionResult = evaluate_conditions(effective.conditions, context)
        return AuthorityCheck(
            level=effective.level,
            is_override=effective.is_override,
            conditions=effective.conditions,
            conditions_met=outcome.met,
            reason=outcome.reason,
        )

    @staticmethod
    def _parse_conditions(setting: AuthoritySetting) -> Optional[AuthorityConditions]:
        if not setting.conditions:
            return None
        try:
            return AuthorityConditions.from_json(setting.conditions)
        except ValidationError as e:
            logger.warning(f"Invalid stored conditions on setting {setting.id}: {e}")
            return None

    # ── Writes ──

    async def upsert_authority_setting(
        self,
        user_id: str,
        action_type_id: str,
        authority_level: Union[AuthorityLevel, str],
        session: AsyncSession,
        conditions: ConditionsInput = None,
    ) -> Dict[str, Any]:
        """Create the user's setting for this type or update it in place.

        ``conditions=None`` keeps whatever conditions are stored; an empty list
        clears them.
        """
        await self.action_types.get_action_type(action_type_id, session)
        level = AuthorityLevel(authority_level).value

        insert = _dialect_insert(session)
        stmt = insert(AuthoritySetting).values(
            _new_setting_row(user_id, action_type_id, level, _conditions_json(conditions))
        )
        set_ = {
            "authority_level": stmt.excluded.authority_level,
            "updated_at": stmt.excluded.updated_at,
        }
        if conditions is not None:
            set_["conditions"] = stmt.excluded.conditions
        stmt = stmt.on_conflict_do_update(
            index_elements=["user_id", "action_type_id"],
            set_=set_,
        )
        await session.execute(stmt)
        await session.commit()

        setting = await self._find_setting(user_id, action_type_id, session)
        logger.info(f"Authority setting upserted: user={user_id} type={action_type_id} level={level}")
        return setting.to_dict()

    async def initialize_user_authority_settings(
        self, user_id: str, session: AsyncSession
    ) -> List[Dict[str, Any]]:
        """Create a default-level setting for every type the user has none for.

        Safe to call repeatedly and concurrently: the complement is computed
        first and rows that lose a race are dropped by the unique constraint.
        """
        created_ids = await self._insert_missing_settings(user_id, session, level=None)
        await session.commit()

        if not created_ids:
            return []

        result = await session.execute(
            select(AuthoritySetting).where(AuthoritySetting.id.in_(created_ids))
        )
        created = [s.to_dict() for s in result.scalars().all()]
        logger.info(f"Initialized {len(created)} authority settings for user {user_id}")
        return created

    async def _insert_missing_settings(
        self, user_id: str, session: AsyncSession, level: Optional[str]
    ) -> List[str]:
        action_types = await self.action_types.list_action_types(session)
        result = await session.execute(
            select(AuthoritySetting.action_type_id).where(AuthoritySetting.user_id == user_id)
        )
        existing_type_ids = set(result.scalars().all())

        rows = [
            _new_setting_row(user_id, t.id, level or t.default_authority_level.value, None)
            for t in action_types
            if t.id not in existing_type_ids
        ]
        if not rows:
            return []

        insert = _dialect_insert(session)
        stmt = insert(AuthoritySetting).values(rows).on_conflict_do_nothing(
            index_elements=["user_id", "action_type_id"],
        )
        await session.execute(stmt)

        # Rows skipped by ON CONFLICT keep the id of the concurrent writer
        ids = [row["id"] for row in rows]
        inserted = await session.execute(
            select(AuthoritySetting.id).where(AuthoritySetting.id.in_(ids))
        )
        return list(inserted.scalars().all())

    async def set_all_authority_levels(
        self,
        user_id: str,
        authority_level: Union[AuthorityLevel, str],
        session: AsyncSession,
    ) -> int:
        """Set every action type to one level for this user ("pause / enable all")"""
        level = AuthorityLevel(authority_level).value

        await self._insert_missing_settings(user_id, session, level=level)
        result = await session.execute(
            update(AuthoritySetting)
            .where(AuthoritySetting.user_id == user_id)
            .values({AuthoritySetting.authority_level: level, AuthoritySetting.updated_at: utcnow()})
            .execution_options(synchronize_session=False)
        )
        await session.commit()

        touched = result.rowcount or 0
        logger.info(f"Set {touched} authority settings to {level} for user {user_id}")
        return touched

    async def bulk_update_authority_settings(
        self,
        user_id: str,
        updates: Iterable[Union[BulkAuthorityUpdateItem, Dict[str, Any]]],
        session: AsyncSession,
    ) -> BulkUpdateReport:
        """Upsert each item independently; earlier items stay committed on failure"""
        report = BulkUpdateReport()

        for raw in updates:
            if isinstance(raw, BulkAuthorityUpdateItem):
                action_type_id = raw.action_type_id
            else:
                action_type_id = raw.get("action_type_id")
            try:
                item = raw if isinstance(raw, BulkAuthorityUpdateItem) else BulkAuthorityUpdateItem(**raw)
                setting = await self.upsert_authority_setting(
                    user_id,
                    item.action_type_id,
                    item.authority_level,
                    session,
                    conditions=item.conditions,
                )
                report.results.append(
                    BulkUpdateItemResult(action_type_id=item.action_type_id, success=True, setting=setting)
                )
            except (UnknownActionTypeError, ValidationError, ValueError) as e:
                logger.warning(f"Bulk authority update item {action_type_id} failed: {e}")
                report.results.append(
                    BulkUpdateItemResult(action_type_id=action_type_id, success=False, error=str(e))
                )

        logger.info(
            f"Bulk authority update for user {user_id}: "
            f"succeeded={report.succeeded} failed={report.failed}"
        )
        return report

    async def enable_conservative_automation(self, user_id: str, session: AsyncSession) -> int:
        """Risk-based levels: high and medium risk need approval, low risk keeps its default"""
        updated = 0
        for action_type in await self.action_types.list_action_types(session):
            default = action_type.default_authority_level
            if action_type.risk_level == RiskLevel.LOW.value or default == AuthorityLevel.DISABLED:
                level = default
            else:
                level = AuthorityLevel.APPROVAL_REQUIRED
            await self.upsert_authority_setting(user_id, action_type.id, level, session)
            updated += 1
        return updated

    async def delete_user_authority_settings(self, user_id: str, session: AsyncSession) -> int:
        """Account removal only; settings are otherwise never hard-deleted"""
        result = await session.execute(
            delete(AuthoritySetting)
            .where(AuthoritySetting.user_id == user_id)
            .execution_options(synchronize_session=False)
        )
        await session.commit()
        deleted = result.rowcount or 0
        logger.info(f"Deleted {deleted} authority settings for removed user {user_id}")
        return deleted


_authority_service: Optional[AuthorityService] = None


def get_authority_service() -> AuthorityService:
    global _authority_service
    if _authority_service is None:
        _authority_service = AuthorityService()
    return _authority_service
