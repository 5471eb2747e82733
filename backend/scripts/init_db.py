#!/usr/bin/env python3
"""
数据库初始化脚本 - 创建表并写入内置动作类型目录

Usage:
    python scripts/init_db.py
    python scripts/init_db.py --user-id alice   # 同时为用户初始化默认授权设置
"""

import argparse
import asyncio
import sys
from pathlib import Path

# 添加项目根目录到路径
backend_path = Path(__file__).parent.parent
sys.path.insert(0, str(backend_path))

from steward.common.base import Base
from steward.common.database import db_manager
from steward.domains.authority.engine import get_action_engine


async def init_database(user_id: str = None):
    """初始化数据库 - 建表 + 目录种子数据"""
    print("🔧 Initializing database...")

    await db_manager.initialize()

    print("📦 Creating tables...")
    await db_manager.create_tables()
    print("✅ All tables created successfully!")

    print("\n📋 Tables:")
    for table in sorted(Base.metadata.tables.keys()):
        print(f"  - {table}")

    engine = get_action_engine()
    async with db_manager.get_session() as session:
        seeded = await engine.action_types.seed_built_in_action_types(session)
        print(f"\n🌱 Action types: {seeded['created']} created, {seeded['existing']} already present")

        if user_id:
            created = await engine.authority.initialize_user_authority_settings(user_id, session)
            print(f"👤 {len(created)} authority settings created for {user_id}")

    await db_manager.dispose()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Create tables and seed the action type catalog")
    parser.add_argument("--user-id", help="also initialize default authority settings for this user")
    args = parser.parse_args()
    asyncio.run(init_database(args.user_id))
