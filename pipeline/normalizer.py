"""结果规范化

把自由文本的到课结果转换为封闭的 CanonicalResult，
并把结果映射为预约状态。全系统只在这里推导“结果 → 状态”。
本模块没有副作用，不做 I/O。
"""
from enum import Enum
from typing import Optional

from config.policy import PipelinePolicy, pipeline_policy


class CanonicalResult(str, Enum):
    """规范化到课结果"""
    TIER_A_SALE = "tier_a_sale"
    TIER_B_SALE = "tier_b_sale"
    TIER_C_SALE = "tier_c_sale"
    NO_SHOW = "no_show"
    DECLINED = "declined"
    NOT_INTERESTED = "not_interested"
    FOLLOW_UP_NEEDED = "follow_up_needed"
    SECOND_VISIT_SCHEDULED = "second_visit_scheduled"
    UNRESOLVED = "unresolved"


class AppointmentStatus(str, Enum):
    """规范化预约状态"""
    ACTIVE = "active"
    SECOND_VISIT_SCHEDULED = "second_visit_scheduled"
    NO_SHOW = "no_show"
    DECLINED = "declined"
    PURCHASED = "purchased"
    CANCELLED = "cancelled"
    SOFT_DELETED = "soft_deleted"


SALE_RESULTS = frozenset({
    CanonicalResult.TIER_A_SALE,
    CanonicalResult.TIER_B_SALE,
    CanonicalResult.TIER_C_SALE,
})

# 引擎不再自动触发副作用的状态
TERMINAL_STATUSES = frozenset({
    AppointmentStatus.PURCHASED,
    AppointmentStatus.DECLINED,
    AppointmentStatus.CANCELLED,
    AppointmentStatus.SOFT_DELETED,
})

# 历史数据中的状态文案
_STATUS_ALIASES = {
    "active": AppointmentStatus.ACTIVE,
    "unscheduled": AppointmentStatus.ACTIVE,
    "closed – bought": AppointmentStatus.PURCHASED,
    "closed - bought": AppointmentStatus.PURCHASED,
    "closed bought": AppointmentStatus.PURCHASED,
    "closed_purchased": AppointmentStatus.PURCHASED,
    "purchased": AppointmentStatus.PURCHASED,
    "not interested": AppointmentStatus.DECLINED,
    "not_interested": AppointmentStatus.DECLINED,
    "declined": AppointmentStatus.DECLINED,
    "2nd intro scheduled": AppointmentStatus.SECOND_VISIT_SCHEDULED,
    "second_visit_scheduled": AppointmentStatus.SECOND_VISIT_SCHEDULED,
    "no show": AppointmentStatus.NO_SHOW,
    "no-show": AppointmentStatus.NO_SHOW,
    "no_show": AppointmentStatus.NO_SHOW,
    "cancelled": AppointmentStatus.CANCELLED,
    "canceled": AppointmentStatus.CANCELLED,
    "deleted (soft)": AppointmentStatus.SOFT_DELETED,
    "soft_deleted": AppointmentStatus.SOFT_DELETED,
}

def normalize_result(raw_label: Optional[str],
                     policy: Optional[PipelinePolicy] = None
                     ) -> CanonicalResult:
    """将原始结果文案规范化。

    依次尝试：别名精确匹配 → 规范值本身 → 成交档位关键词子串匹配，
    都不匹配时返回 UNRESOLVED。

    Args:
        raw_label: 原始结果文案（忽略大小写和首尾空白）。
        policy: 策略对象，默认使用全局策略。

    Returns:
        CanonicalResult。
    """
    if isinstance(raw_label, CanonicalResult):
        return raw_label
    if not raw_label or not raw_label.strip():
        return CanonicalResult.UNRESOLVED

    policy = policy or pipeline_policy
    key = raw_label.strip().lower()

    alias = policy.get_result_aliases().get(key)
    if alias:
        return CanonicalResult(alias)

    try:
        return CanonicalResult(key)
    except ValueError:
        pass

    for tier, keywords in policy.get_sale_tier_keywords():
        if any(keyword in key for keyword in keywords):
            return CanonicalResult(tier)

    return CanonicalResult.UNRESOLVED


def map_result_to_status(result: CanonicalResult) -> AppointmentStatus:
    """结果 → 预约状态（全函数）。

    Raises:
        TypeError: 传入的不是 CanonicalResult。
    """
    if not isinstance(result, CanonicalResult):
        raise TypeError(f"Expected CanonicalResult, got {result!r}")

    if result in SALE_RESULTS:
        return AppointmentStatus.PURCHASED
    if result == CanonicalResult.NOT_INTERESTED:
        return AppointmentStatus.DECLINED
    if result == CanonicalResult.SECOND_VISIT_SCHEDULED:
        return AppointmentStatus.SECOND_VISIT_SCHEDULED
    # NO_SHOW / DECLINED / FOLLOW_UP_NEEDED 保持 active 以便再次跟进
    return AppointmentStatus.ACTIVE


def normalize_status(raw_label: Optional[str]) -> AppointmentStatus:
    """将历史状态文案规范化，无法识别时视为 ACTIVE。"""
    if isinstance(raw_label, AppointmentStatus):
        return raw_label
    if not raw_label:
        return AppointmentStatus.ACTIVE
    return _STATUS_ALIASES.get(
        raw_label.strip().lower(), AppointmentStatus.ACTIVE
    )


def is_sale_result(result: CanonicalResult) -> bool:
    return result in SALE_RESULTS


def follow_up_trigger_for(result: CanonicalResult) -> Optional[str]:
    """结果对应的跟进触发类型；不触发跟进时返回 None。"""
    if result == CanonicalResult.NO_SHOW:
        return "no_show"
    if result == CanonicalResult.DECLINED:
        return "declined"
    return None
