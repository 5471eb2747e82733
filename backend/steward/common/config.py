"""
配置管理 - 从环境变量加载配置
"""

from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    """应用配置"""

    # 应用配置
    app_name: str = "steward"
    app_version: str = "0.1.0"
    debug: bool = False

    # 数据库配置 (sqlite / postgresql)
    database_type: str = "sqlite"
    sqlite_path: str = "./data/steward.db"

    # PostgreSQL配置
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_user: str = "steward"
    postgres_password: str = "steward_dev_pass"
    postgres_db: str = "steward"

    # Redis配置 (可选，仅用于缓存)
    redis_enabled: bool = False
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_db: int = 0
    redis_password: Optional[str] = None

    # Action type catalog cache
    action_type_cache_ttl: int = 300
    # Unknown ids/names force at most one catalog reload per interval
    action_type_miss_reload_seconds: float = 5.0

    # Executor callables are cancelled after this many seconds
    execution_timeout_seconds: float = 30.0

    # Default query limits
    pending_approvals_limit: int = 50
    action_log_list_limit: int = 50
    similar_actions_limit: int = 10
    feedback_history_limit: int = 100
    date_range_limit: int = 100

    # 日志配置
    log_level: str = "INFO"
    log_dir: str = "./logs"
    log_file_prefix: str = "steward"
    log_backup_count: int = 30

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        env_prefix = "STEWARD_"

    @property
    def postgres_url(self) -> str:
        """PostgreSQL异步连接URL"""
        return f"postgresql+asyncpg://{self.postgres_user}:{self.postgres_password}@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"

    @property
    def sqlite_url(self) -> str:
        """SQLite异步连接URL"""
        return f"sqlite+aiosqlite:///{self.sqlite_path}"

    @property
    def database_url(self) -> str:
        """当前数据库类型对应的连接URL"""
        if self.database_type == "sqlite":
            return self.sqlite_url
        return self.postgres_url

    @property
    def redis_url(self) -> str:
        """Redis连接URL"""
        if self.redis_password:
            return f"redis://:{self.redis_password}@{self.redis_host}:{self.redis_port}/{self.redis_db}"
        return f"redis://{self.redis_host}:{self.redis_port}/{self.redis_db}"


# 全局配置实例
settings = Settings()
