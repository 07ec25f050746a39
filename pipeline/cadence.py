"""跟进节奏生成

根据触发类型（爽约 / 未成交 / 改期中）和触发日期，生成一批待发送的跟进记录。
纯函数：只返回记录字典，由调用方写入跟进队列。
"""
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from config.policy import PipelinePolicy, pipeline_policy


class FollowUpTrigger(str, Enum):
    """跟进触发类型"""
    NO_SHOW = "no_show"
    DECLINED = "declined"
    PLANNING_RESCHEDULE = "planning_reschedule"


class FollowUpStatus(str, Enum):
    """跟进记录状态"""
    PENDING = "pending"
    SENT = "sent"
    CONVERTED = "converted"
    DORMANT = "dormant"
    SNOOZED = "snoozed"


@dataclass
class FollowUpPerson:
    """跟进对象"""
    name: str
    appointment_id: Optional[int] = None
    lead_id: Optional[int] = None
    is_vip: bool = False
    primary_objection: Optional[str] = None


def _to_date(value: Union[date, str]) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return datetime.strptime(value, "%Y-%m-%d").date()
    except (TypeError, ValueError):
        raise ValueError(
            f"Invalid trigger date: {value!r}, expected YYYY-MM-DD"
        )


def generate_follow_ups(person: FollowUpPerson,
                        trigger_type: Union[FollowUpTrigger, str],
                        trigger_date: Union[date, str],
                        policy: Optional[PipelinePolicy] = None
                        ) -> List[Dict[str, Any]]:
    """生成一批跟进记录。

    Args:
        person: 跟进对象。
        trigger_type: 触发类型，决定使用哪套天数偏移。
        trigger_date: 触发日期（date 或 YYYY-MM-DD）。
        policy: 策略对象，默认使用全局策略。

    Returns:
        跟进记录字典列表，touch_number 从 1 开始且与位置一致，
        状态均为 pending。

    Raises:
        ValueError: 触发类型未知或日期无效。
    """
    policy = policy or pipeline_policy
    trigger = FollowUpTrigger(trigger_type)
    start = _to_date(trigger_date)
    offsets = policy.get_cadences()[trigger.value]

    return [
        {
            "appointment_id": person.appointment_id,
            "lead_id": person.lead_id,
            "person_name": person.name,
            "person_type": trigger.value,
            "trigger_date": start,
            "touch_number": index,
            "scheduled_date": start + timedelta(days=offset),
            "status": FollowUpStatus.PENDING.value,
            "is_vip": person.is_vip,
            "primary_objection": person.primary_objection,
        }
        for index, offset in enumerate(offsets, start=1)
    ]
