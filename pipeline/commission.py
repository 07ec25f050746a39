"""提成计算

纯查表：成交档位 → 固定提成金额，非成交结果为 0。
调用方不得接受外部传入的提成金额，提成只来自这里。
"""
from decimal import Decimal
from typing import Optional, Union

from config.policy import PipelinePolicy, pipeline_policy
from .normalizer import CanonicalResult, normalize_result

ZERO = Decimal("0.00")


def compute_commission(sale_tier: Union[CanonicalResult, str, None],
                       policy: Optional[PipelinePolicy] = None) -> Decimal:
    """计算提成。

    Args:
        sale_tier: 规范化结果，或待规范化的原始文案。
        policy: 策略对象，默认使用全局策略。

    Returns:
        保留两位小数的 Decimal 金额。
    """
    policy = policy or pipeline_policy
    result = normalize_result(sale_tier, policy)
    amount = policy.get_commission_table().get(result.value)
    if amount is None:
        return ZERO
    return Decimal(amount).quantize(ZERO)
