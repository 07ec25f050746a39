"""对外接口模块

- api.create_app: FastAPI 应用（结果录入、一致性审计、跟进队列）

架构设计：
    录入表单 / 批量导入 / 管理工具 ──→ HTTP ──→ OutcomeOrchestrator ──→ 数据库
                                              ConsistencyAuditor  ──→ 数据库
"""
from interface.api import create_app

__all__ = ["create_app"]
