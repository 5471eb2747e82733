"""Authority conditions: pure evaluation of tagged condition variants.

Every condition attached to an authority setting must hold for the setting's
level to apply. Evaluation never raises: malformed input yields ``met=False``
with a reason. Bounding conditions (``max_amount``, ``min_confidence``,
``vip_only``) fail closed when the context lacks the value they bound;
filter conditions (domain lists, field rules) are skipped instead.
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime, time, timezone
from typing import Any, Callable, Dict, Iterable, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from steward.domains.authority.schemas import (
    ActionContext,
    AllowedDomainsCondition,
    AuthorityConditions,
    BlockedDomainsCondition,
    FieldRuleCondition,
    MaxAmountCondition,
    MinConfidenceCondition,
    TimeWindowCondition,
    VipOnlyCondition,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConditionResult:
    met: bool
    reason: Optional[str] = None


MET = ConditionResult(met=True)


def _fail(reason: str) -> ConditionResult:
    return ConditionResult(met=False, reason=reason)


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _domain_matches(domain: str, pattern: str) -> bool:
    domain = domain.lower().strip(".")
    pattern = pattern.lower().strip(".")
    return domain == pattern or domain.endswith("." + pattern)


def _local_time(now: datetime, tz_name: Optional[str]) -> Optional[time]:
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    if tz_name:
        try:
            now = now.astimezone(ZoneInfo(tz_name))
        except (ZoneInfoNotFoundError, ValueError):
            return None
    else:
        now = now.astimezone(timezone.utc)
    return now.time().replace(second=0, microsecond=0)


def _check_max_amount(cond: MaxAmountCondition, ctx: ActionContext) -> ConditionResult:
    amount = _as_number(ctx.lookup(cond.field))
    if amount is None:
        return _fail(f"Amount '{cond.field}' unknown, ceiling {cond.value} cannot be checked")
    if amount > cond.value:
        return _fail(f"Amount {amount} exceeds ceiling {cond.value}")
    return MET


def _check_time_window(cond: TimeWindowCondition, ctx: ActionContext) -> ConditionResult:
    current = _local_time(ctx.now, cond.timezone)
    if current is None:
        return _fail(f"Unknown timezone: {cond.timezone}")

    start = time.fromisoformat(cond.start)
    end = time.fromisoformat(cond.end)
    if start <= end:
        inside = start <= current <= end
    else:
        # window wraps past midnight
        inside = current >= start or current <= end

    if not inside:
        return _fail(f"Outside allowed time window ({cond.start} - {cond.end})")
    return MET


def _check_allowed_domains(cond: AllowedDomainsCondition, ctx: ActionContext) -> ConditionResult:
    if not cond.domains or not ctx.sender_domain:
        return MET
    if any(_domain_matches(ctx.sender_domain, d) for d in cond.domains):
        return MET
    return _fail(f"Sender domain {ctx.sender_domain} not in allowed list")


def _check_blocked_domains(cond: BlockedDomainsCondition, ctx: ActionContext) -> ConditionResult:
    if not cond.domains or not ctx.sender_domain:
        return MET
    if any(_domain_matches(ctx.sender_domain, d) for d in cond.domains):
        return _fail(f"Sender domain {ctx.sender_domain} is blocked")
    return MET


def _check_vip_only(cond: VipOnlyCondition, ctx: ActionContext) -> ConditionResult:
    if ctx.is_vip:
        return MET
    return _fail("VIP status required")


def _check_min_confidence(cond: MinConfidenceCondition, ctx: ActionContext) -> ConditionResult:
    if ctx.confidence is None:
        return _fail(f"Confidence unknown, threshold {cond.value} cannot be checked")
    if ctx.confidence < cond.value:
        return _fail(f"Confidence {ctx.confidence} below threshold {cond.value}")
    return MET


def _check_field_rule(cond: FieldRuleCondition, ctx: ActionContext) -> ConditionResult:
    actual = ctx.lookup(cond.field)
    if actual is None:
        return MET

    if cond.operator == "equals":
        passed = actual == cond.value
    elif cond.operator == "contains":
        passed = str(cond.value) in str(actual)
    elif cond.operator == "matches":
        try:
            passed = re.search(str(cond.value), str(actual)) is not None
        except re.error:
            return _fail(f"Invalid pattern in rule on {cond.field}")
    else:
        left, right = _as_number(actual), _as_number(cond.value)
        if left is None or right is None:
            return _fail(f"Non-numeric comparison on {cond.field}")
        passed = left > right if cond.operator == "gt" else left < right

    if not passed:
        return _fail(f"Rule failed: {cond.field} {cond.operator} {cond.value}")
    return MET


_CHECKS: Dict[str, Callable[[Any, ActionContext], ConditionResult]] = {
    "max_amount": _check_max_amount,
    "time_window": _check_time_window,
    "allowed_domains": _check_allowed_domains,
    "blocked_domains": _check_blocked_domains,
    "vip_only": _check_vip_only,
    "min_confidence": _check_min_confidence,
    "field_rule": _check_field_rule,
}


def evaluate_conditions(
    conditions: Optional[AuthorityConditions],
    context: ActionContext,
) -> ConditionResult:
    """Evaluate all conditions in order; the first failure decides."""
    if conditions is None:
        return MET
    return _evaluate_all(conditions.conditions, context)


def _evaluate_all(items: Iterable[Any], context: ActionContext) -> ConditionResult:
    for cond in items:
        check = _CHECKS.get(getattr(cond, "kind", None))
        if check is None:
            return _fail(f"Unsupported condition: {getattr(cond, 'kind', cond)!r}")
        result = check(cond, context)
        if not result.met:
            logger.debug(f"Condition {cond.kind} not met: {result.reason}")
            return result
    return MET
