"""销售漏斗结果引擎

- normalizer: 结果规范化与“结果 → 状态”映射
- commission / cadence: 提成与跟进节奏（纯函数）
- loyalty: 忠诚计数服务
- orchestrator: 记录结果的唯一入口
- auditor: 一致性审计与修复
"""
from .auditor import ConsistencyAuditor
from .orchestrator import (
    OutcomeOrchestrator, OutcomeParams, OutcomeResult, SecondVisitDraft
)

__all__ = [
    "ConsistencyAuditor",
    "OutcomeOrchestrator",
    "OutcomeParams",
    "OutcomeResult",
    "SecondVisitDraft",
]
