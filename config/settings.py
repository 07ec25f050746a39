"""全局配置管理

所有用户可配置项均通过 .env 文件设置，运行时自动加载到此处。

使用方式：
    1. 手动创建 .env 文件（参考 .env.example）
    2. 或直接通过环境变量覆盖，例如 DATABASE_URL=sqlite:///data/dev.db
"""
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """应用配置 - 所有字段均可通过 .env 或环境变量覆盖"""

    # ========== 数据库 ==========
    database_url: str = "sqlite:///data/pipeline.db"

    # ========== 日志 ==========
    log_level: str = "INFO"

    # ========== API 服务 ==========
    api_host: str = "0.0.0.0"
    api_port: int = 8080

    # ========== 一致性审计 ==========
    audit_history_limit: int = 30      # 保留最近 N 次审计记录
    audit_scan_limit: int = 500        # 单项检查最多列出的受影响记录数
    audit_max_workers: int = 4         # 并行检查线程数
    audit_schedule_hour: int = 21
    audit_schedule_minute: int = 0

    # ========== 忠诚计数器 ==========
    loyalty_baseline: int = 0          # 日志为空时的起始值

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False
        extra = "ignore"


# 全局配置实例
settings = Settings()
