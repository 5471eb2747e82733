"""
steward - 动作授权与审计服务
"""

from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI

from steward.common.cache import init_cache_service
from steward.common.config import settings
from steward.common.database import db_manager
from steward.common.logging_config import setup_logging

setup_logging(
    log_level=settings.log_level,
    log_dir=settings.log_dir,
    log_file_prefix=settings.log_file_prefix,
    backup_count=settings.log_backup_count,
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用生命周期管理"""
    logger.info("🚀 Application starting...")
    await db_manager.initialize()
    await db_manager.create_tables()
    init_cache_service(db_manager.redis_client if db_manager.redis_available else None)

    from steward.domains.authority.engine import get_action_engine
    async with db_manager.get_session() as session:
        await get_action_engine().action_types.seed_built_in_action_types(session)
    logger.info("✅ Database initialization completed")

    yield

    logger.info("Application shutting down...")
    await db_manager.dispose()


app = FastAPI(
    title=settings.app_name,
    description="Action authority & audit engine - 授权判定、审批收件箱、审计日志",
    version=settings.app_version,
    lifespan=lifespan,
)


@app.get("/")
async def root():
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "docs": "/docs",
        "health": "/health",
    }


@app.get("/health")
async def health_check():
    """健康检查端点"""
    return {
        "status": "healthy" if db_manager.sql_available else "degraded",
        "databases": {
            "sql": {
                "available": db_manager.sql_available,
                "status": "✓ connected" if db_manager.sql_available else "✗ disconnected",
            },
            "redis": {
                "available": db_manager.redis_available,
                "status": "✓ connected" if db_manager.redis_available else "⚠ in-memory cache only",
            },
        },
    }


from steward.domains.authority.api import router as authority_router  # noqa: E402

app.include_router(authority_router, prefix="/api/authority", tags=["authority"])


if __name__ == "__main__":
    import uvicorn

    logger.info("📍 API Server: http://localhost:8888")
    uvicorn.run("steward.main:app", host="0.0.0.0", port=8888, reload=settings.debug)
