"""Authority domain: Pydantic 枚举、条件表达式与请求/响应模型"""

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ── Enumerations ──

class AuthorityLevel(str, Enum):
    AUTO = "auto"                            # execute without asking
    NOTIFY = "notify"                        # execute, then inform the user
    APPROVAL_REQUIRED = "approval_required"  # must be approved first
    DISABLED = "disabled"                    # forbidden


class ActionCategory(str, Enum):
    CALENDAR = "calendar"
    EMAIL = "email"
    TASK = "task"
    NOTIFICATION = "notification"
    FINANCE = "finance"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ActionLogStatus(str, Enum):
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXECUTED = "executed"
    FAILED = "failed"
    REVERSED = "reversed"


class ActionTargetType(str, Enum):
    EMAIL = "email"
    CALENDAR_EVENT = "calendar_event"
    COMMITMENT = "commitment"
    PERSON = "person"
    REMINDER = "reminder"
    FINANCIAL_RECORD = "financial_record"


class UserFeedback(str, Enum):
    CORRECT = "correct"
    SHOULD_ASK = "should_ask"
    SHOULD_AUTO = "should_auto"
    WRONG = "wrong"


class ReversedBy(str, Enum):
    USER = "user"
    SYSTEM = "system"


# Levels that let the collaborator execute immediately
EXECUTE_IMMEDIATELY_LEVELS = frozenset({AuthorityLevel.AUTO, AuthorityLevel.NOTIFY})

# Statuses from which execution may still fail
NON_TERMINAL_STATUSES = frozenset({ActionLogStatus.PENDING_APPROVAL, ActionLogStatus.APPROVED})

# Statuses after which feedback can be given
FEEDBACK_STATUSES = frozenset({
    ActionLogStatus.EXECUTED,
    ActionLogStatus.FAILED,
    ActionLogStatus.REJECTED,
    ActionLogStatus.REVERSED,
})

# Candidate set for similar-past-action retrieval
SIMILAR_ACTION_STATUSES = frozenset({
    ActionLogStatus.EXECUTED,
    ActionLogStatus.APPROVED,
    ActionLogStatus.REJECTED,
})


# ── Catalog ──

class ActionTypeInfo(BaseModel):
    """Immutable action type catalog row"""

    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: str
    name: str
    category: str
    description: Optional[str] = None
    risk_level: str
    default_authority_level: AuthorityLevel
    reversible: bool = False


# ── Conditions (tagged variants, discriminated by ``kind``) ──

_HHMM = r"^([01]\d|2[0-3]):[0-5]\d$"


class MaxAmountCondition(BaseModel):
    kind: Literal["max_amount"] = "max_amount"
    value: float = Field(..., ge=0, description="Inclusive ceiling")
    field: str = Field("amount", description="Context field holding the amount")


class TimeWindowCondition(BaseModel):
    kind: Literal["time_window"] = "time_window"
    start: str = Field(..., pattern=_HHMM, description="HH:MM, inclusive")
    end: str = Field(..., pattern=_HHMM, description="HH:MM, inclusive; may be before start")
    timezone: Optional[str] = Field(None, description="IANA zone, UTC if omitted")


class AllowedDomainsCondition(BaseModel):
    kind: Literal["allowed_domains"] = "allowed_domains"
    domains: List[str] = Field(default_factory=list)


class BlockedDomainsCondition(BaseModel):
    kind: Literal["blocked_domains"] = "blocked_domains"
    domains: List[str] = Field(default_factory=list)


class VipOnlyCondition(BaseModel):
    kind: Literal["vip_only"] = "vip_only"


class MinConfidenceCondition(BaseModel):
    kind: Literal["min_confidence"] = "min_confidence"
    value: float = Field(..., ge=0, le=1)


class FieldRuleCondition(BaseModel):
    kind: Literal["field_rule"] = "field_rule"
    field: str
    operator: Literal["equals", "contains", "matches", "gt", "lt"]
    value: Union[str, float, int, bool]


Condition = Annotated[
    Union[
        MaxAmountCondition,
        TimeWindowCondition,
        AllowedDomainsCondition,
        BlockedDomainsCondition,
        VipOnlyCondition,
        MinConfidenceCondition,
        FieldRuleCondition,
    ],
    Field(discriminator="kind"),
]


class AuthorityConditions(BaseModel):
    """All conditions must hold for the configured level to apply"""

    conditions: List[Condition] = Field(default_factory=list)

    def to_json(self) -> List[Dict[str, Any]]:
        return [c.model_dump(mode="json") for c in self.conditions]

    @classmethod
    def from_json(cls, raw: Optional[List[Dict[str, Any]]]) -> Optional["AuthorityConditions"]:
        if raw is None:
            return None
        return cls(conditions=raw)


class ActionContext(BaseModel):
    """Facts about a proposed action, supplied by the collaborator"""

    now: datetime
    amount: Optional[float] = None
    sender_domain: Optional[str] = None
    is_vip: Optional[bool] = None
    confidence: Optional[float] = Field(None, ge=0, le=1)
    fields: Dict[str, Any] = Field(default_factory=dict)

    def lookup(self, name: str) -> Any:
        if name in self.fields:
            return self.fields[name]
        return getattr(self, name, None) if name in type(self).model_fields else None


# ── Requests ──

class ActionRequest(BaseModel):
    """A proposed action from a collaborator"""

    action_type_name: str
    target_type: ActionTargetType
    target_id: str
    description: str
    payload: Optional[Dict[str, Any]] = None
    confidence_score: Optional[int] = Field(None, ge=0, le=100)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class AuthoritySettingUpdateRequest(BaseModel):
    authority_level: AuthorityLevel
    conditions: Optional[List[Condition]] = None


class BulkAuthorityUpdateItem(BaseModel):
    action_type_id: str
    authority_level: AuthorityLevel
    conditions: Optional[List[Condition]] = None


class BulkAuthorityUpdateRequest(BaseModel):
    updates: List[BulkAuthorityUpdateItem] = Field(..., min_length=1)


class ApproveActionRequest(BaseModel):
    edited_content: Optional[str] = Field(None, description="User-edited draft to execute instead")


class RejectActionRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=1000)


class BatchActionRequest(BaseModel):
    ids: List[str] = Field(..., min_length=1)
    reason: Optional[str] = Field(None, max_length=1000)

    @field_validator("ids")
    @classmethod
    def _dedupe(cls, ids: List[str]) -> List[str]:
        return list(dict.fromkeys(ids))


class ReverseActionRequest(BaseModel):
    reversed_by: ReversedBy = ReversedBy.USER
    reason: Optional[str] = Field(None, max_length=1000)


class FeedbackRequest(BaseModel):
    feedback: UserFeedback


class SetAllLevelsRequest(BaseModel):
    authority_level: AuthorityLevel
