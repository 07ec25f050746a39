"""数据库模块：连接、仓库与统一门面 DatabaseManager。"""
from .manager import DatabaseManager

__all__ = ["DatabaseManager"]
