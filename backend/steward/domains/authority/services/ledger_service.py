"""动作审计账本: 状态机迁移

Every transition is a read followed by a single-row UPDATE guarded by the
status that was read. When two writers race, the loser's UPDATE matches no
row and the call returns ``None``; nothing is raised for illegal transitions.

    pending_approval ──approve──▶ approved ──executed──▶ executed ──reverse──▶ reversed
          │                           │
          ├──reject──▶ rejected       └──failed──▶ failed
          └──failed──▶ failed
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Collection, Dict, List, Optional, Union

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from steward.common.base import utcnow
from steward.common.config import settings
from steward.domains.authority.models import ActionLog, ActionType
from steward.domains.authority.schemas import (
    ActionLogStatus,
    ActionTargetType,
    AuthorityLevel,
    NON_TERMINAL_STATUSES,
    ReversedBy,
)
from steward.domains.authority.services.action_type_service import (
    ActionTypeService,
    get_action_type_service,
)

logger = logging.getLogger(__name__)

# Statuses an entry may be created in
INITIAL_STATUSES = frozenset({
    ActionLogStatus.PENDING_APPROVAL,
    ActionLogStatus.APPROVED,
    ActionLogStatus.EXECUTED,
})


@dataclass
class BatchResult:
    succeeded: int = 0
    failed: int = 0
    failed_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"succeeded": self.succeeded, "failed": self.failed, "failed_ids": self.failed_ids}


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class ActionLedgerService:
    """动作日志管理: 创建、查询、合法状态迁移"""

    def __init__(self, action_types: Optional[ActionTypeService] = None):
        self.action_types = action_types or get_action_type_service()

    # ── Creation ──

    async def create_action_log(
        self,
        user_id: str,
        action_type_id: str,
        target_type: Union[ActionTargetType, str],
        target_id: str,
        description: str,
        session: AsyncSession,
        authority_level: Union[AuthorityLevel, str] = AuthorityLevel.APPROVAL_REQUIRED,
        status: Union[ActionLogStatus, str] = ActionLogStatus.PENDING_APPROVAL,
        payload: Optional[Dict[str, Any]] = None,
        confidence_score: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Record one proposed action.

        ``approved`` is the auto-approved form (``triggered_by="auto"``, no
        ``approved_at``); ``executed`` records an effect that already happened.
        """
        status = ActionLogStatus(status)
        if status not in INITIAL_STATUSES:
            raise ValueError(f"Action log cannot be created in status: {status.value}")
        await self.action_types.get_action_type(action_type_id, session)

        action_metadata = dict(metadata or {})
        if status != ActionLogStatus.PENDING_APPROVAL:
            action_metadata.setdefault("triggered_by", "auto")

        log = ActionLog(
            user_id=user_id,
            action_type_id=action_type_id,
            authority_level=AuthorityLevel(authority_level).value,
            status=status.value,
            target_type=ActionTargetType(target_type).value,
            target_id=target_id,
            description=description,
            payload=payload,
            confidence_score=confidence_score,
            action_metadata=action_metadata,
            executed_at=utcnow() if status == ActionLogStatus.EXECUTED else None,
        )
        session.add(log)
        await session.commit()
        await session.refresh(log)
        logger.info(f"Action log created: {log.id} user={user_id} status={log.status}")
        return log.to_dict()

    # ── Queries ──

    async def _load(
        self, action_log_id: str, session: AsyncSession, user_id: Optional[str] = None
    ) -> Optional[ActionLog]:
        query = select(ActionLog).where(ActionLog.id == action_log_id)
        if user_id is not None:
            query = query.where(ActionLog.user_id == user_id)
        result = await session.execute(query.execution_options(populate_existing=True))
        return result.scalar_one_or_none()

    async def get_action_log(
        self, action_log_id: str, session: AsyncSession, user_id: Optional[str] = None
    ) -> Optional[Dict[str, Any]]:
        log = await self._load(action_log_id, session, user_id)
        return log.to_dict() if log else None

    async def list_action_logs(
        self,
        user_id: str,
        session: AsyncSession,
        status: Optional[Union[ActionLogStatus, str]] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        query = select(ActionLog).where(ActionLog.user_id == user_id)
        if status is not None:
            query = query.where(ActionLog.status == ActionLogStatus(status).value)
        query = (
            query.order_by(ActionLog.created_at.desc())
            .offset(offset)
            .limit(limit or settings.action_log_list_limit)
        )
        result = await session.execute(query.execution_options(populate_existing=True))
        return [log.to_dict() for log in result.scalars().all()]

    async def find_pending_approvals(
        self, user_id: str, session: AsyncSession, limit: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        """审批收件箱 (含动作类型)

        An entry whose action type has vanished is still listed, with
        ``action_type`` set to None, so the inbox keeps rendering.
        """
        query = (
            select(ActionLog, ActionType)
            .outerjoin(ActionType, ActionLog.action_type_id == ActionType.id)
            .where(
                ActionLog.user_id == user_id,
                ActionLog.status == ActionLogStatus.PENDING_APPROVAL.value,
            )
            .order_by(ActionLog.created_at.desc())
            .limit(limit or settings.pending_approvals_limit)
        )
        result = await session.execute(query.execution_options(populate_existing=True))

        inbox = []
        for log, action_type in result.all():
            if action_type is None:
                logger.warning(
                    f"Pending action {log.id} references missing action type {log.action_type_id}"
                )
            inbox.append({
                **log.to_dict(),
                "action_type": action_type.to_dict() if action_type else None,
            })
        return inbox

    async def find_action_logs_by_target(
        self,
        user_id: str,
        target_type: Union[ActionTargetType, str],
        target_id: str,
        session: AsyncSession,
    ) -> List[Dict[str, Any]]:
        query = (
            select(ActionLog)
            .where(
                ActionLog.user_id == user_id,
                ActionLog.target_type == ActionTargetType(target_type).value,
                ActionLog.target_id == target_id,
            )
            .order_by(ActionLog.created_at.desc())
        )
        result = await session.execute(query.execution_options(populate_existing=True))
        return [log.to_dict() for log in result.scalars().all()]

    async def find_action_logs_by_date_range(
        self,
        user_id: str,
        start: datetime,
        end: datetime,
        session: AsyncSession,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Entries created in [start, end], newest first"""
        query = (
            select(ActionLog)
            .where(
                ActionLog.user_id == user_id,
                ActionLog.created_at >= _as_utc(start),
                ActionLog.created_at <= _as_utc(end),
            )
            .order_by(ActionLog.created_at.desc())
            .limit(limit or settings.date_range_limit)
        )
        result = await session.execute(query.execution_options(populate_existing=True))
        return [log.to_dict() for log in result.scalars().all()]

    # ── Transitions ──

    async def _transition(
        self,
        action_log_id: str,
        session: AsyncSession,
        allowed_from: Collection[ActionLogStatus],
        build_values: Callable[[ActionLog], Dict[Any, Any]],
        action: str,
        user_id: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        log = await self._load(action_log_id, session, user_id)
        if log is None:
            logger.info(f"{action} skipped: action {action_log_id} not found")
            return None

        observed = log.status
        if ActionLogStatus(observed) not in allowed_from:
            logger.info(f"{action} skipped: action {action_log_id} is {observed}")
            return None

        values = build_values(log)
        result = await session.execute(
            update(ActionLog)
            .where(ActionLog.id == action_log_id, ActionLog.status == observed)
            .values(values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await session.rollback()
            logger.info(f"{action} lost race: action {action_log_id} left {observed} concurrently")
            return None

        await session.commit()
        updated = await self._load(action_log_id, session)
        logger.info(f"{action}: action {action_log_id} {observed} -> {updated.status}")
        return updated.to_dict()

    @staticmethod
    def _merge(log: ActionLog, extra: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        # additive: keys the caller omits are kept
        return {**(log.action_metadata or {}), **(extra or {})}

    async def approve_action(
        self,
        action_log_id: str,
        session: AsyncSession,
        metadata: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        """pending_approval → approved"""
        return await self._transition(
            action_log_id,
            session,
            allowed_from={ActionLogStatus.PENDING_APPROVAL},
            build_values=lambda log: {
                ActionLog.status: ActionLogStatus.APPROVED.value,
                ActionLog.approved_at: utcnow(),
                ActionLog.action_metadata: self._merge(log, metadata),
            },
            action="approve",
            user_id=user_id,
        )

    async def reject_action(
        self,
        action_log_id: str,
        session: AsyncSession,
        reason: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        """pending_approval → rejected"""
        extra = {"rejection_reason": reason} if reason else None
        return await self._transition(
            action_log_id,
            session,
            allowed_from={ActionLogStatus.PENDING_APPROVAL},
            build_values=lambda log: {
                ActionLog.status: ActionLogStatus.REJECTED.value,
                ActionLog.rejected_at: utcnow(),
                ActionLog.action_metadata: self._merge(log, extra),
            },
            action="reject",
            user_id=user_id,
        )

    async def mark_action_executed(
        self,
        action_log_id: str,
        session: AsyncSession,
        metadata: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        """approved (manually or auto) → executed"""
        return await self._transition(
            action_log_id,
            session,
            allowed_from={ActionLogStatus.APPROVED},
            build_values=lambda log: {
                ActionLog.status: ActionLogStatus.EXECUTED.value,
                ActionLog.executed_at: utcnow(),
                ActionLog.action_metadata: self._merge(log, metadata),
            },
            action="mark executed",
            user_id=user_id,
        )

    async def mark_action_failed(
        self,
        action_log_id: str,
        reason: str,
        session: AsyncSession,
        user_id: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        """pending_approval | approved → failed"""
        return await self._transition(
            action_log_id,
            session,
            allowed_from=NON_TERMINAL_STATUSES,
            build_values=lambda log: {
                ActionLog.status: ActionLogStatus.FAILED.value,
                ActionLog.action_metadata: self._merge(log, {"failure_reason": reason}),
            },
            action="mark failed",
            user_id=user_id,
        )

    async def mark_action_reversed(
        self,
        action_log_id: str,
        session: AsyncSession,
        reversed_by: Union[ReversedBy, str] = ReversedBy.USER,
        reason: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        """executed → reversed

        Records intent only; undoing the external effect is the executor's job.
        ``executed_at`` is kept as it was.
        """
        extra = {
            "reversed_at": utcnow().isoformat(),
            "reversed_by": ReversedBy(reversed_by).value,
            "reversal_reason": reason,
        }
        return await self._transition(
            action_log_id,
            session,
            allowed_from={ActionLogStatus.EXECUTED},
            build_values=lambda log: {
                ActionLog.status: ActionLogStatus.REVERSED.value,
                ActionLog.action_metadata: self._merge(log, extra),
            },
            action="reverse",
            user_id=user_id,
        )

    # ── Batches (per-item commit, no atomicity) ──

    async def batch_approve_actions(
        self, action_log_ids: List[str], session: AsyncSession, user_id: Optional[str] = None
    ) -> BatchResult:
        batch = BatchResult()
        for action_log_id in action_log_ids:
            if await self.approve_action(action_log_id, session, user_id=user_id):
                batch.succeeded += 1
            else:
                batch.failed += 1
                batch.failed_ids.append(action_log_id)
        logger.info(f"Batch approve: succeeded={batch.succeeded} failed={batch.failed}")
        return batch

    async def batch_reject_actions(
        self,
        action_log_ids: List[str],
        session: AsyncSession,
        reason: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> BatchResult:
        batch = BatchResult()
        for action_log_id in action_log_ids:
            if await self.reject_action(action_log_id, session, reason=reason, user_id=user_id):
                batch.succeeded += 1
            else:
                batch.failed += 1
                batch.failed_ids.append(action_log_id)
        logger.info(f"Batch reject: succeeded={batch.succeeded} failed={batch.failed}")
        return batch

    # ── Account removal ──

    async def delete_user_action_logs(self, user_id: str, session: AsyncSession) -> int:
        result = await session.execute(
            delete(ActionLog)
            .where(ActionLog.user_id == user_id)
            .execution_options(synchronize_session=False)
        )
        await session.commit()
        deleted = result.rowcount or 0
        logger.info(f"Deleted {deleted} action logs for removed user {user_id}")
        return deleted


_ledger_service: Optional[ActionLedgerService] = None


def get_ledger_service() -> ActionLedgerService:
    global _ledger_service
    if _ledger_service is None:
        _ledger_service = ActionLedgerService()
    return _ledger_service
