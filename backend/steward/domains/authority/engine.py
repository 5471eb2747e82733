"""动作授权引擎: 提议 → 授权判定 → 记账 → 执行结果回写

Composes the registry, the resolver and the ledger. The engine itself holds
no state; everything it decides is a function of what is stored.
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from steward.common.base import utcnow
from steward.common.config import settings
from steward.domains.authority.exceptions import ActionNotExecutableError
from steward.domains.authority.schemas import (
    EXECUTE_IMMEDIATELY_LEVELS,
    ActionContext,
    ActionLogStatus,
    ActionRequest,
    ActionTypeInfo,
    AuthorityLevel,
    ReversedBy,
)
from steward.domains.authority.services.action_type_service import (
    ActionTypeService,
    get_action_type_service,
)
from steward.domains.authority.services.authority_service import (
    AuthorityService,
    get_authority_service,
)
from steward.domains.authority.services.ledger_service import (
    ActionLedgerService,
    get_ledger_service,
)

logger = logging.getLogger(__name__)

# Receives the approved ledger entry, returns result metadata to record
Executor = Callable[[Dict[str, Any]], Awaitable[Optional[Dict[str, Any]]]]


@dataclass
class ActionDecision:
    """授权判定结果"""

    action_type: ActionTypeInfo
    authority_level: AuthorityLevel
    is_override: bool
    should_execute: bool
    action_log: Optional[Dict[str, Any]] = None
    reasons: list = field(default_factory=list)

    @property
    def requires_approval(self) -> bool:
        return self.authority_level == AuthorityLevel.APPROVAL_REQUIRED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action_type": self.action_type.model_dump(mode="json"),
            "authority_level": self.authority_level.value,
            "is_override": self.is_override,
            "should_execute": self.should_execute,
            "requires_approval": self.requires_approval,
            "action_log": self.action_log,
            "reasons": self.reasons,
        }


@dataclass
class ExecutionOutcome:
    """执行结果"""

    success: bool
    action_log: Optional[Dict[str, Any]]
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None


class ActionEngine:
    def __init__(
        self,
        action_types: Optional[ActionTypeService] = None,
        authority: Optional[AuthorityService] = None,
        ledger: Optional[ActionLedgerService] = None,
    ):
        self.action_types = action_types or get_action_type_service()
        self.authority = authority or AuthorityService(self.action_types)
        self.ledger = ledger or get_ledger_service()

    async def process_action_request(
        self,
        user_id: str,
        request: ActionRequest,
        session: AsyncSession,
        context: Optional[ActionContext] = None,
    ) -> ActionDecision:
        """Decide a proposed action and record it.

        ``disabled`` records nothing. ``auto`` / ``notify`` record an
        auto-approved entry the caller should execute now and report back via
        :meth:`execute_action`. ``approval_required`` (including escalation by
        an unmet condition) records a ``pending_approval`` entry.
        """
        action_type = await self.action_types.get_action_type_by_name(request.action_type_name, session)

        if context is None:
            context = ActionContext(
                now=utcnow(),
                confidence=(request.confidence_score / 100) if request.confidence_score is not None else None,
                fields=dict(request.payload or {}),
            )
        check = await self.authority.check_authority(user_id, action_type.name, session, context=context)

        if check.level == AuthorityLevel.DISABLED:
            logger.info(f"Action {action_type.name} disabled for user {user_id}, not recorded")
            return ActionDecision(
                action_type=action_type,
                authority_level=AuthorityLevel.DISABLED,
                is_override=check.is_override,
                should_execute=False,
                reasons=[check.reason] if check.reason else [],
            )

        level = check.level
        metadata = dict(request.metadata)
        reasons = []
        if not check.conditions_met and level != AuthorityLevel.APPROVAL_REQUIRED:
            metadata["escalated_from"] = level.value
            metadata["escalation_reason"] = check.reason
            reasons.append(check.reason)
            logger.info(f"Action {action_type.name} escalated to approval: {check.reason}")
            level = AuthorityLevel.APPROVAL_REQUIRED

        if level in EXECUTE_IMMEDIATELY_LEVELS:
            status = ActionLogStatus.APPROVED
            if level == AuthorityLevel.NOTIFY:
                metadata["notify_user"] = True
        else:
            status = ActionLogStatus.PENDING_APPROVAL

        action_log = await self.ledger.create_action_log(
            user_id,
            action_type.id,
            request.target_type,
            request.target_id,
            request.description,
            session,
            authority_level=level,
            status=status,
            payload=request.payload,
            confidence_score=request.confidence_score,
            metadata=metadata,
        )
        return ActionDecision(
            action_type=action_type,
            authority_level=level,
            is_override=check.is_override,
            should_execute=status == ActionLogStatus.APPROVED,
            action_log=action_log,
            reasons=reasons,
        )

    async def execute_action(
        self,
        action_log_id: str,
        executor: Executor,
        session: AsyncSession,
        timeout: Optional[float] = None,
        user_id: Optional[str] = None,
    ) -> ExecutionOutcome:
        """Run *executor* for an approved entry and record the outcome.

        Executor errors and timeouts mark the entry failed. Cancellation of the
        caller propagates and leaves the entry approved.
        """
        action_log = await self.ledger.get_action_log(action_log_id, session, user_id=user_id)
        if action_log is None:
            raise ActionNotExecutableError(action_log_id, "not_found")
        if action_log["status"] != ActionLogStatus.APPROVED.value:
            raise ActionNotExecutableError(action_log_id, action_log["status"])

        timeout = timeout if timeout is not None else settings.execution_timeout_seconds
        start_time = time.time()
        try:
            result = await asyncio.wait_for(executor(action_log), timeout=timeout)
        except asyncio.TimeoutError:
            reason = f"Timeout after {timeout}s"
            logger.warning(f"Action {action_log_id} execution timed out after {timeout}s")
            return await self._record_failure(action_log_id, reason, session, user_id)
        except Exception as e:
            reason = f"{type(e).__name__}: {e}"
            logger.warning(f"Action {action_log_id} execution failed: {reason}")
            return await self._record_failure(action_log_id, reason, session, user_id)

        latency_ms = int((time.time() - start_time) * 1000)
        # Executor results may hold datetimes and other non-JSON values
        result = json.loads(json.dumps(result, default=str))
        try:
            updated = await self.ledger.mark_action_executed(
                action_log_id,
                session,
                metadata={"execution_result": result, "execution_ms": latency_ms},
                user_id=user_id,
            )
        except SQLAlchemyError as e:
            await session.rollback()
            reason = f"Executed but result could not be recorded, effect may have happened: {e}"
            logger.error(f"Action {action_log_id} {reason}")
            return await self._record_failure(action_log_id, reason, session, user_id)
        if updated is None:
            current = await self.ledger.get_action_log(action_log_id, session)
            return ExecutionOutcome(
                success=False,
                action_log=current,
                result=result,
                error="Action state changed during execution",
            )
        return ExecutionOutcome(success=True, action_log=updated, result=result)

    async def _record_failure(
        self, action_log_id: str, reason: str, session: AsyncSession, user_id: Optional[str]
    ) -> ExecutionOutcome:
        updated = await self.ledger.mark_action_failed(action_log_id, reason, session, user_id=user_id)
        if updated is None:
            updated = await self.ledger.get_action_log(action_log_id, session)
        return ExecutionOutcome(success=False, action_log=updated, error=reason)

    async def initialize_authority_for_user(self, user_id: str, session: AsyncSession) -> Dict[str, Any]:
        """新用户: 确保目录已写入，并为每个动作类型建立默认设置"""
        catalog = await self.action_types.seed_built_in_action_types(session)
        created = await self.authority.initialize_user_authority_settings(user_id, session)
        return {"catalog": catalog, "created_settings": len(created)}

    async def approve_action_manually(
        self,
        action_log_id: str,
        session: AsyncSession,
        edited_content: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        metadata: Dict[str, Any] = {"approved_by": "user"}
        if edited_content is not None:
            metadata["edited_content"] = edited_content
        return await self.ledger.approve_action(action_log_id, session, metadata=metadata, user_id=user_id)

    async def reverse_action(
        self,
        action_log_id: str,
        session: AsyncSession,
        reversed_by: Union[ReversedBy, str] = ReversedBy.USER,
        reason: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        return await self.ledger.mark_action_reversed(
            action_log_id, session, reversed_by=reversed_by, reason=reason, user_id=user_id,
        )


_action_engine: Optional[ActionEngine] = None


def get_action_engine() -> ActionEngine:
    global _action_engine
    if _action_engine is None:
        _action_engine = ActionEngine(authority=get_authority_service())
    return _action_engine
