"""动作授权: FastAPI 路由 (审批收件箱、授权设置、统计)

Thin wrapper: every decision is made by the engine and its services.
"""

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from steward.common.database import get_db_session
from steward.domains.authority.deps import get_current_user_id, get_engine
from steward.domains.authority.engine import ActionEngine
from steward.domains.authority.exceptions import UnknownActionTypeError
from steward.domains.authority.schemas import (
    ActionLogStatus,
    ApproveActionRequest,
    AuthorityLevel,
    AuthoritySettingUpdateRequest,
    BatchActionRequest,
    BulkAuthorityUpdateRequest,
    FeedbackRequest,
    RejectActionRequest,
    ReverseActionRequest,
    SetAllLevelsRequest,
)
from steward.domains.authority.services.feedback_service import FeedbackService, get_feedback_service

logger = logging.getLogger(__name__)

router = APIRouter()


def _ok(data) -> dict:
    return {"success": True, "data": data}


def _not_found(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=detail)


async def _transition_refused(
    action_log_id: str, user_id: str, engine: ActionEngine, session: AsyncSession
) -> HTTPException:
    """None from a transition: 404 if the entry is gone, else 409 with its current status"""
    current = await engine.ledger.get_action_log(action_log_id, session, user_id=user_id)
    if current is None:
        return _not_found(f"Action not found: {action_log_id}")
    return HTTPException(
        status_code=status.HTTP_409_CONFLICT,
        detail=f"Action is already {current['status']}, refresh and retry",
    )


# ══════════════════════════════════════════
# Action type catalog
# ══════════════════════════════════════════

@router.get("/action-types", summary="动作类型目录")
async def list_action_types(
    category: Optional[str] = Query(None),
    session: AsyncSession = Depends(get_db_session),
    engine: ActionEngine = Depends(get_engine),
):
    if category:
        types = await engine.action_types.list_by_category(category, session)
    else:
        types = await engine.action_types.list_action_types(session)
    return _ok([t.model_dump(mode="json") for t in types])


# ══════════════════════════════════════════
# Authority settings
# ══════════════════════════════════════════

@router.get("/settings", summary="当前用户的授权设置")
async def list_settings(
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db_session),
    engine: ActionEngine = Depends(get_engine),
):
    return _ok(await engine.authority.list_user_settings(user_id, session))


@router.put("/settings/{action_type_name}", summary="设置单个动作类型的授权等级")
async def update_setting(
    action_type_name: str,
    request: AuthoritySettingUpdateRequest,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db_session),
    engine: ActionEngine = Depends(get_engine),
):
    try:
        action_type = await engine.action_types.get_action_type_by_name(action_type_name, session)
    except UnknownActionTypeError as e:
        raise _not_found(str(e))

    setting = await engine.authority.upsert_authority_setting(
        user_id,
        action_type.id,
        request.authority_level,
        session,
        conditions=request.conditions,
    )
    return _ok(setting)


@router.post("/settings/bulk", summary="批量更新授权设置")
async def bulk_update_settings(
    request: BulkAuthorityUpdateRequest,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db_session),
    engine: ActionEngine = Depends(get_engine),
):
    report = await engine.authority.bulk_update_authority_settings(user_id, request.updates, session)
    return _ok({
        "succeeded": report.succeeded,
        "failed": report.failed,
        "results": [
            {
                "action_type_id": r.action_type_id,
                "success": r.success,
                "setting": r.setting,
                "error": r.error,
            }
            for r in report.results
        ],
    })


@router.post("/settings/initialize", summary="为当前用户初始化默认授权设置")
async def initialize_settings(
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db_session),
    engine: ActionEngine = Depends(get_engine),
):
    return _ok(await engine.initialize_authority_for_user(user_id, session))


@router.post("/settings/set-all", summary="所有动作类型设为同一等级")
async def set_all_levels(
    request: SetAllLevelsRequest,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db_session),
    engine: ActionEngine = Depends(get_engine),
):
    updated = await engine.authority.set_all_authority_levels(user_id, request.authority_level, session)
    return _ok({"updated": updated})


@router.post("/settings/disable-all", summary="紧急停止: 禁用全部自动化")
async def disable_all_automation(
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db_session),
    engine: ActionEngine = Depends(get_engine),
):
    updated = await engine.authority.set_all_authority_levels(user_id, AuthorityLevel.DISABLED, session)
    logger.info(f"All automation disabled for user {user_id}")
    return _ok({"updated": updated})


@router.post("/settings/enable-conservative", summary="按风险等级启用保守自动化")
async def enable_conservative_automation(
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db_session),
    engine: ActionEngine = Depends(get_engine),
):
    updated = await engine.authority.enable_conservative_automation(user_id, session)
    return _ok({"updated": updated})


# ══════════════════════════════════════════
# Action ledger
# ══════════════════════════════════════════

@router.get("/actions", summary="动作日志")
async def list_actions(
    status_filter: Optional[ActionLogStatus] = Query(None, alias="status"),
    limit: Optional[int] = Query(None, ge=1, le=500),
    offset: int = Query(0, ge=0),
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db_session),
    engine: ActionEngine = Depends(get_engine),
):
    logs = await engine.ledger.list_action_logs(
        user_id, session, status=status_filter, limit=limit, offset=offset,
    )
    return _ok(logs)


@router.get("/actions/pending", summary="待审批收件箱")
async def list_pending_actions(
    limit: Optional[int] = Query(None, ge=1, le=500),
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db_session),
    engine: ActionEngine = Depends(get_engine),
):
    return _ok(await engine.ledger.find_pending_approvals(user_id, session, limit=limit))


@router.get("/actions/pending/count", summary="待审批数量")
async def count_pending_actions(
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db_session),
    feedback: FeedbackService = Depends(get_feedback_service),
):
    return _ok({"count": await feedback.get_pending_approval_count(user_id, session)})


@router.post("/actions/batch-approve", summary="批量批准")
async def batch_approve(
    request: BatchActionRequest,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db_session),
    engine: ActionEngine = Depends(get_engine),
):
    batch = await engine.ledger.batch_approve_actions(request.ids, session, user_id=user_id)
    return _ok(batch.to_dict())


@router.post("/actions/batch-reject", summary="批量拒绝")
async def batch_reject(
    request: BatchActionRequest,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db_session),
    engine: ActionEngine = Depends(get_engine),
):
    batch = await engine.ledger.batch_reject_actions(
        request.ids, session, reason=request.reason, user_id=user_id,
    )
    return _ok(batch.to_dict())


@router.post("/actions/{action_log_id}/approve", summary="批准动作")
async def approve_action(
    action_log_id: str,
    request: Optional[ApproveActionRequest] = None,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db_session),
    engine: ActionEngine = Depends(get_engine),
):
    edited = request.edited_content if request else None
    updated = await engine.approve_action_manually(
        action_log_id, session, edited_content=edited, user_id=user_id,
    )
    if updated is None:
        raise await _transition_refused(action_log_id, user_id, engine, session)
    return _ok(updated)


@router.post("/actions/{action_log_id}/reject", summary="拒绝动作")
async def reject_action(
    action_log_id: str,
    request: Optional[RejectActionRequest] = None,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db_session),
    engine: ActionEngine = Depends(get_engine),
):
    reason = request.reason if request else None
    updated = await engine.ledger.reject_action(action_log_id, session, reason=reason, user_id=user_id)
    if updated is None:
        raise await _transition_refused(action_log_id, user_id, engine, session)
    return _ok(updated)


@router.post("/actions/{action_log_id}/reverse", summary="撤销已执行动作 (审计标记)")
async def reverse_action(
    action_log_id: str,
    request: Optional[ReverseActionRequest] = None,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db_session),
    engine: ActionEngine = Depends(get_engine),
):
    request = request or ReverseActionRequest()
    updated = await engine.reverse_action(
        action_log_id,
        session,
        reversed_by=request.reversed_by,
        reason=request.reason,
        user_id=user_id,
    )
    if updated is None:
        raise await _transition_refused(action_log_id, user_id, engine, session)
    return _ok(updated)


@router.post("/actions/{action_log_id}/feedback", summary="动作反馈")
async def add_feedback(
    action_log_id: str,
    request: FeedbackRequest,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db_session),
    engine: ActionEngine = Depends(get_engine),
    feedback: FeedbackService = Depends(get_feedback_service),
):
    updated = await feedback.add_user_feedback(action_log_id, request.feedback, session, user_id=user_id)
    if updated is None:
        current = await engine.ledger.get_action_log(action_log_id, session, user_id=user_id)
        if current is None:
            raise _not_found(f"Action not found: {action_log_id}")
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Feedback can only be given once, after the action has finished",
        )
    return _ok(updated)


# ══════════════════════════════════════════
# Calibration stats
# ══════════════════════════════════════════

@router.get("/stats", summary="动作统计 (状态/反馈)")
async def get_stats(
    since: Optional[datetime] = Query(None),
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db_session),
    feedback: FeedbackService = Depends(get_feedback_service),
):
    return _ok(await feedback.get_action_log_stats(user_id, session, since=since))
