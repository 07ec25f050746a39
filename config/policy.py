"""
业务策略接口 - 支持可替换的策略表

提成金额、跟进节奏、线索来源名单、结果别名等策略表统一定义在此，
编排器（OutcomeOrchestrator）、忠诚计数器和一致性审计都读取同一个策略对象。
新门店可以实现自己的 PipelinePolicy，替换默认策略。
"""
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Dict, List, Tuple


class PipelinePolicy(ABC):
    """业务策略抽象基类"""

    #: 策略版本，写入审计事件元数据，便于追溯当时生效的规则
    version: str = "0"

    @abstractmethod
    def get_commission_table(self) -> Dict[str, Decimal]:
        """获取成交档位 → 提成金额表（键为 CanonicalResult 的值）"""
        pass

    @abstractmethod
    def get_cadences(self) -> Dict[str, Tuple[int, ...]]:
        """获取跟进触发类型 → 天数偏移列表"""
        pass

    @abstractmethod
    def get_result_aliases(self) -> Dict[str, str]:
        """获取原始结果标签（小写）→ CanonicalResult 值"""
        pass

    @abstractmethod
    def get_sale_tier_keywords(self) -> List[Tuple[str, Tuple[str, ...]]]:
        """获取成交档位关键词，按匹配优先级排序"""
        pass

    @abstractmethod
    def get_loyalty_excluded_sources(self) -> List[str]:
        """获取不计入忠诚计数的线索来源"""
        pass

    @abstractmethod
    def get_personal_referral_sources(self) -> List[str]:
        """获取由预约人（booked_by）计入业绩的线索来源"""
        pass

    @abstractmethod
    def get_self_booked_sources(self) -> List[str]:
        """获取客户自助预约的线索来源（无需预约人）"""
        pass

    # ---- 便捷判断 ----

    def is_loyalty_excluded(self, lead_source) -> bool:
        """线索来源是否被排除在忠诚计数之外（忽略大小写）"""
        if not lead_source:
            return False
        key = lead_source.strip().lower()
        return key in {s.lower() for s in self.get_loyalty_excluded_sources()}

    def is_personal_referral(self, lead_source) -> bool:
        if not lead_source:
            return False
        key = lead_source.strip().lower()
        return key in {s.lower() for s in self.get_personal_referral_sources()}

    def is_self_booked(self, lead_source) -> bool:
        if not lead_source:
            return False
        key = lead_source.strip().lower()
        return key in {s.lower() for s in self.get_self_booked_sources()}


class StudioPolicy(PipelinePolicy):
    """体验课工作室默认策略"""

    version = "2024.1"

    def get_commission_table(self) -> Dict[str, Decimal]:
        return {
            "tier_a_sale": Decimal("15.00"),
            "tier_b_sale": Decimal("12.00"),
            "tier_c_sale": Decimal("3.00"),
        }

    def get_cadences(self) -> Dict[str, Tuple[int, ...]]:
        return {
            "no_show": (0, 5, 12),
            "declined": (0, 6, 13),
            # 改期中的客户沿用爽约节奏
            "planning_reschedule": (0, 5, 12),
        }

    def get_result_aliases(self) -> Dict[str, str]:
        return {
            "no-show": "no_show",
            "no show": "no_show",
            "noshow": "no_show",
            "didn't buy": "declined",
            "didnt buy": "declined",
            "didnt_buy": "declined",
            "not interested": "not_interested",
            "follow-up needed": "follow_up_needed",
            "follow up needed": "follow_up_needed",
            "booked 2nd intro": "second_visit_scheduled",
            "2nd intro scheduled": "second_visit_scheduled",
            "second visit scheduled": "second_visit_scheduled",
            "unresolved": "unresolved",
        }

    def get_sale_tier_keywords(self) -> List[Tuple[str, Tuple[str, ...]]]:
        return [
            ("tier_a_sale", ("tier-a", "tier a", "premier")),
            ("tier_b_sale", ("tier-b", "tier b", "elite")),
            ("tier_c_sale", ("tier-c", "tier c", "basic")),
        ]

    def get_loyalty_excluded_sources(self) -> List[str]:
        return [
            "Comp Session (staff booked)",
            "Comp Session",
            "VIP Class",
        ]

    def get_personal_referral_sources(self) -> List[str]:
        return ["My Personal Friend I Invited"]

    def get_self_booked_sources(self) -> List[str]:
        return [
            "Online Intro Offer (self-booked)",
            "Online Intro Offer",
        ]


# 全局策略实例
pipeline_policy: PipelinePolicy = StudioPolicy()
