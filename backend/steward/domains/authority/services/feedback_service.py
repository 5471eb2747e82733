"""反馈与校准数据访问: 用户对已完成动作的评价、相似历史动作、统计"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from steward.common.config import settings
from steward.domains.authority.models import ActionLog
from steward.domains.authority.schemas import (
    FEEDBACK_STATUSES,
    SIMILAR_ACTION_STATUSES,
    ActionLogStatus,
    ActionTargetType,
    UserFeedback,
)

logger = logging.getLogger(__name__)

# stats key per stored status
_STATUS_KEYS = {
    ActionLogStatus.PENDING_APPROVAL.value: "pending",
    ActionLogStatus.APPROVED.value: "approved",
    ActionLogStatus.REJECTED.value: "rejected",
    ActionLogStatus.EXECUTED.value: "executed",
    ActionLogStatus.FAILED.value: "failed",
    ActionLogStatus.REVERSED.value: "reversed",
}


def empty_stats() -> Dict[str, Any]:
    return {
        "total": 0,
        **{key: 0 for key in _STATUS_KEYS.values()},
        "feedback_stats": {f.value: 0 for f in UserFeedback},
    }


class FeedbackService:
    """Feedback attachment and read-side queries for an external calibration job"""

    async def add_user_feedback(
        self,
        action_log_id: str,
        feedback: Union[UserFeedback, str],
        session: AsyncSession,
        user_id: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        """Attach feedback once, and only to a finished entry; otherwise None"""
        label = UserFeedback(feedback).value

        stmt = update(ActionLog).where(
            ActionLog.id == action_log_id,
            ActionLog.status.in_([s.value for s in FEEDBACK_STATUSES]),
            ActionLog.user_feedback.is_(None),
        )
        if user_id is not None:
            stmt = stmt.where(ActionLog.user_id == user_id)

        result = await session.execute(
            stmt.values({ActionLog.user_feedback: label})
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await session.rollback()
            logger.info(f"Feedback refused for action {action_log_id}: not finished or already rated")
            return None
        await session.commit()

        refreshed = await session.execute(
            select(ActionLog)
            .where(ActionLog.id == action_log_id)
            .execution_options(populate_existing=True)
        )
        log = refreshed.scalar_one()
        logger.info(f"Feedback recorded: action {action_log_id} -> {label}")
        return log.to_dict()

    async def find_similar_past_actions(
        self,
        user_id: str,
        action_type_id: str,
        target_type: Union[ActionTargetType, str],
        session: AsyncSession,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """相似历史动作 (同类型 + 同目标类型)，最新在前"""
        query = (
            select(ActionLog)
            .where(
                ActionLog.user_id == user_id,
                ActionLog.action_type_id == action_type_id,
                ActionLog.target_type == ActionTargetType(target_type).value,
                ActionLog.status.in_([s.value for s in SIMILAR_ACTION_STATUSES]),
            )
            .order_by(ActionLog.created_at.desc())
            .limit(limit or settings.similar_actions_limit)
        )
        result = await session.execute(query.execution_options(populate_existing=True))
        return [log.to_dict() for log in result.scalars().all()]

    async def get_actions_with_feedback(
        self, user_id: str, session: AsyncSession, limit: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        query = (
            select(ActionLog)
            .where(ActionLog.user_id == user_id, ActionLog.user_feedback.is_not(None))
            .order_by(ActionLog.created_at.desc())
            .limit(limit or settings.feedback_history_limit)
        )
        result = await session.execute(query.execution_options(populate_existing=True))
        return [log.to_dict() for log in result.scalars().all()]

    async def get_action_log_stats(
        self, user_id: str, session: AsyncSession, since: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """按状态与反馈分类计数；空窗口返回全零"""
        filters = [ActionLog.user_id == user_id]
        if since is not None:
            if since.tzinfo is None:
                since = since.replace(tzinfo=timezone.utc)
            filters.append(ActionLog.created_at >= since.astimezone(timezone.utc))

        stats = empty_stats()

        by_status = await session.execute(
            select(ActionLog.status, func.count()).where(*filters).group_by(ActionLog.status)
        )
        for status, count in by_status.all():
            key = _STATUS_KEYS.get(status)
            if key is None:
                logger.warning(f"Unexpected action log status in stats: {status}")
                continue
            stats[key] = count
            stats["total"] += count

        by_feedback = await session.execute(
            select(ActionLog.user_feedback, func.count())
            .where(*filters, ActionLog.user_feedback.is_not(None))
            .group_by(ActionLog.user_feedback)
        )
        for feedback, count in by_feedback.all():
            if feedback in stats["feedback_stats"]:
                stats["feedback_stats"][feedback] = count

        return stats

    async def get_pending_approval_count(self, user_id: str, session: AsyncSession) -> int:
        result = await session.execute(
            select(func.count())
            .select_from(ActionLog)
            .where(
                ActionLog.user_id == user_id,
                ActionLog.status == ActionLogStatus.PENDING_APPROVAL.value,
            )
        )
        return result.scalar_one()


_feedback_service: Optional[FeedbackService] = None


def get_feedback_service() -> FeedbackService:
    global _feedback_service
    if _feedback_service is None:
        _feedback_service = FeedbackService()
    return _feedback_service
