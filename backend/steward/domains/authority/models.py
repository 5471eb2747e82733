"""
Authority domain models - 动作类型目录、用户授权设置、动作审计日志
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from steward.common.base import Base, TimestampMixin, UUIDMixin, get_table_args, get_table_ref

SCHEMA = "authority"


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class ActionType(Base, UUIDMixin, TimestampMixin):
    """
    动作类型目录 (只读)
    部署时写入，引擎只读取
    """

    __tablename__ = "action_type"
    __table_args__ = get_table_args(
        Index("idx_action_type_category", "category"),
        schema=SCHEMA
    )

    # 唯一名称 (send_email_reply, create_reminder, ...)
    name: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)

    # 分类 (calendar, email, task, notification, finance)
    category: Mapped[str] = mapped_column(String(30), nullable=False)

    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # 风险等级 (low, medium, high)
    risk_level: Mapped[str] = mapped_column(String(10), nullable=False)

    # 默认授权等级 (auto, notify, approval_required, disabled)
    default_authority_level: Mapped[str] = mapped_column(String(30), nullable=False)

    # 外部系统层面是否可撤销
    reversible: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "category": self.category,
            "description": self.description,
            "risk_level": self.risk_level,
            "default_authority_level": self.default_authority_level,
            "reversible": self.reversible,
        }

    def __repr__(self):
        return f"<ActionType(name={self.name}, default={self.default_authority_level})>"


class AuthoritySetting(Base, UUIDMixin, TimestampMixin):
    """
    用户授权设置 (覆盖动作类型默认等级)
    每个 (user_id, action_type_id) 最多一行，由唯一约束保证
    """

    __tablename__ = "authority_setting"
    __table_args__ = get_table_args(
        UniqueConstraint("user_id", "action_type_id", name="uq_authority_setting_user_action"),
        Index("idx_authority_setting_user_id", "user_id"),
        schema=SCHEMA
    )

    user_id: Mapped[str] = mapped_column(String(64), nullable=False)

    action_type_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey(f"{get_table_ref('action_type', SCHEMA)}.id", ondelete="CASCADE"),
        nullable=False
    )

    authority_level: Mapped[str] = mapped_column(String(30), nullable=False)

    # 条件表达式列表 ([{"kind": "max_amount", "value": 100}, ...])
    conditions: Mapped[Optional[List[Dict[str, Any]]]] = mapped_column(JSON, nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "action_type_id": self.action_type_id,
            "authority_level": self.authority_level,
            "conditions": self.conditions,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    def __repr__(self):
        return f"<AuthoritySetting(user={self.user_id}, type={self.action_type_id}, level={self.authority_level})>"


class ActionLog(Base, UUIDMixin, TimestampMixin):
    """动作审计日志: 每个提议动作一条，状态只沿合法迁移前进"""

    __tablename__ = "action_log"
    __table_args__ = get_table_args(
        Index("idx_action_log_user_status", "user_id", "status"),
        Index("idx_action_log_action_type_id", "action_type_id"),
        Index("idx_action_log_target", "target_type", "target_id"),
        Index("idx_action_log_created_at", "created_at"),
        schema=SCHEMA
    )

    user_id: Mapped[str] = mapped_column(String(64), nullable=False)

    action_type_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey(f"{get_table_ref('action_type', SCHEMA)}.id", ondelete="RESTRICT"),
        nullable=False
    )

    # 创建时生效的授权等级
    authority_level: Mapped[str] = mapped_column(String(30), nullable=False)

    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending_approval")

    # 受影响的外部实体
    target_type: Mapped[str] = mapped_column(String(30), nullable=False)
    target_id: Mapped[str] = mapped_column(String(255), nullable=False)

    description: Mapped[str] = mapped_column(Text, nullable=False)
    payload: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)

    # 0-100
    confidence_score: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    user_feedback: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)

    approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    rejected_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    executed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # "metadata" is reserved on declarative classes
    action_metadata: Mapped[Dict[str, Any]] = mapped_column("metadata", JSON, nullable=False, default=dict)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "action_type_id": self.action_type_id,
            "authority_level": self.authority_level,
            "status": self.status,
            "target_type": self.target_type,
            "target_id": self.target_id,
            "description": self.description,
            "payload": self.payload,
            "confidence_score": self.confidence_score,
            "user_feedback": self.user_feedback,
            "metadata": self.action_metadata or {},
            "approved_at": _iso(self.approved_at),
            "rejected_at": _iso(self.rejected_at),
            "executed_at": _iso(self.executed_at),
            "created_at": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<ActionLog(id={self.id}, status={self.status})>"
