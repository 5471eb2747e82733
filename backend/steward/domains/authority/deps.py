"""
Authority API Dependencies - 调用者身份与服务注入
"""
from typing import Optional
import logging

from fastapi import Depends, Header, HTTPException, status

from steward.domains.authority.engine import ActionEngine, get_action_engine

logger = logging.getLogger(__name__)

USER_ID_HEADER = "X-User-Id"


async def get_current_user_id_optional(
    x_user_id: Optional[str] = Header(None, alias=USER_ID_HEADER),
) -> Optional[str]:
    """
    调用者身份（可选）
    认证由上游网关完成，这里只读取透传的用户ID
    """
    if x_user_id is None:
        return None
    user_id = x_user_id.strip()
    return user_id or None


async def get_current_user_id(
    user_id: Optional[str] = Depends(get_current_user_id_optional),
) -> str:
    """调用者身份（必须，缺失返回401）"""
    if user_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
        )
    return user_id


def get_engine() -> ActionEngine:
    return get_action_engine()
