"""数据库管理器 —— 统一门面（Facade）。

DatabaseManager 是 database 模块的统一入口，组合了所有子仓库，
提供两套 API：

1. **子仓库访问**（细粒度）：
   通过 ``db.appointments``、``db.runs`` 等属性直接访问子仓库，
   返回 ORM 对象，适合编排器、审计等需要精细控制事务的场景。

2. **便捷方法**（粗粒度）：
   提供扁平化的方法（如 ``create_appointment()``、``get_follow_ups()``），
   返回字典/基本类型，适合 API、脚本和测试准备数据。
"""
from typing import Optional, List, Dict, Any
from datetime import date

from sqlalchemy.orm import Session

from config.settings import settings
from .connection import DatabaseConnection
from .entity_repos import LeadRepository, QuestionnaireRepository
from .business_repos import (
    AppointmentRepository, RunRepository, FollowUpRepository
)
from .system_repos import (
    OutcomeEventRepository, LoyaltyRepository, AuditRunRepository
)


class DatabaseManager:
    """数据库管理器 —— 统一门面。

    Attributes:
        conn: 数据库连接管理器。
        leads: 线索仓库。
        questionnaires: 问卷仓库。
        appointments: 预约仓库。
        runs: 到课记录仓库。
        follow_ups: 跟进队列仓库。
        outcome_events: 结果事件仓库。
        loyalty: 忠诚计数仓库。
        audit_runs: 审计记录仓库。

    Example::

        db = DatabaseManager("sqlite:///data/pipeline.db")
        db.create_tables()

        appointment_id = db.create_appointment({
            "member_name": "Jane Doe", "class_date": "2024-01-28",
        })
        db.get_follow_ups(appointment_id)
    """

    def __init__(self, database_url: Optional[str] = None) -> None:
        """初始化数据库管理器。

        Args:
            database_url: 数据库连接URL。如果为None则使用settings配置。
        """
        # 基础设施层
        self.conn = DatabaseConnection(database_url)

        # 实体仓库
        self.leads = LeadRepository(self.conn)
        self.questionnaires = QuestionnaireRepository(self.conn)

        # 业务记录仓库
        self.appointments = AppointmentRepository(self.conn)
        self.runs = RunRepository(self.conn)
        self.follow_ups = FollowUpRepository(self.conn)

        # 系统数据仓库
        self.outcome_events = OutcomeEventRepository(self.conn)
        self.loyalty = LoyaltyRepository(
            self.conn, baseline=settings.loyalty_baseline
        )
        self.audit_runs = AuditRunRepository(
            self.conn, keep=settings.audit_history_limit
        )

    # ================================================================
    # 基础设施方法
    # ================================================================

    def create_tables(self) -> None:
        """创建所有数据库表（幂等操作）。"""
        self.conn.create_tables()

    def get_session(self) -> Session:
        """获取数据库会话。"""
        return self.conn.get_session()

    def execute_raw_sql(self, sql: str, params: Optional[dict] = None) -> Any:
        """执行原始SQL语句。"""
        return self.conn.execute_raw_sql(sql, params)

    def close(self) -> None:
        """关闭数据库连接。"""
        self.conn.close()

    @property
    def database_url(self) -> str:
        """数据库连接URL。"""
        return self.conn.database_url

    @property
    def engine(self):
        """SQLAlchemy 引擎。"""
        return self.conn.engine

    # ================================================================
    # 便捷写入方法
    # ================================================================

    def create_lead(self, lead_data: Dict[str, Any]) -> int:
        """创建线索，返回ID。"""
        return self.leads.create(lead_data).id

    def create_appointment(self, data: Dict[str, Any]) -> int:
        """创建预约，返回ID。"""
        return self.appointments.create(data).id

    def create_run(self, data: Dict[str, Any]) -> int:
        """创建到课记录（导入/测试用），返回ID。"""
        return self.runs.create(data).id

    def create_questionnaire(self, appointment_id: int,
                             status: str = "sent") -> int:
        """为预约创建问卷，返回ID。"""
        return self.questionnaires.create(appointment_id, status).id

    # ================================================================
    # 便捷查询方法
    # ================================================================

    def get_appointment_info(self, appointment_id: int
                             ) -> Optional[Dict[str, Any]]:
        """获取预约信息（字典）。"""
        appointment = self.appointments.get(appointment_id)
        if appointment is None:
            return None
        return {
            "id": appointment.id,
            "member_name": appointment.member_name,
            "class_date": appointment.class_date,
            "class_time": appointment.class_time,
            "status": appointment.status,
            "booking_type": appointment.booking_type,
            "lead_source": appointment.lead_source,
            "booked_by": appointment.booked_by,
            "intro_owner": appointment.intro_owner,
            "coach_name": appointment.coach_name,
            "phone": appointment.phone,
            "email": appointment.email,
            "closed_at": appointment.closed_at,
            "closed_by": appointment.closed_by,
            "originating_appointment_id":
                appointment.originating_appointment_id,
        }

    def get_run_info(self, run_id: int) -> Optional[Dict[str, Any]]:
        """获取到课记录信息（字典）。"""
        run = self.runs.get(run_id)
        if run is None:
            return None
        return {
            "id": run.id,
            "appointment_id": run.appointment_id,
            "member_name": run.member_name,
            "run_date": run.run_date,
            "coach_name": run.coach_name,
            "intro_owner": run.intro_owner,
            "result": run.result,
            "result_canon": run.result_canon,
            "commission_amount": run.commission_amount,
            "primary_objection": run.primary_objection,
            "buy_date": run.buy_date,
            "loyalty_incremented_at": run.loyalty_incremented_at,
        }

    def get_follow_ups(self, appointment_id: int) -> List[Dict[str, Any]]:
        """获取预约的跟进记录（字典列表，按触达次数排序）。"""
        return [
            {
                "id": entry.id,
                "person_name": entry.person_name,
                "person_type": entry.person_type,
                "touch_number": entry.touch_number,
                "scheduled_date": entry.scheduled_date,
                "status": entry.status,
            }
            for entry in self.follow_ups.get_for_appointment(appointment_id)
        ]

    def get_due_follow_ups(self, today: Optional[date] = None
                           ) -> List[Dict[str, Any]]:
        """获取今日到期的跟进记录。"""
        return [
            {
                "id": entry.id,
                "appointment_id": entry.appointment_id,
                "person_name": entry.person_name,
                "person_type": entry.person_type,
                "touch_number": entry.touch_number,
                "scheduled_date": entry.scheduled_date,
            }
            for entry in self.follow_ups.get_due(today or date.today())
        ]

    def mark_follow_up_sent(self, entry_id: int, editor: str
                            ) -> Optional[Dict[str, Any]]:
        """标记跟进已发送；记录不存在时返回 None。"""
        entry = self.follow_ups.mark_sent(entry_id, editor)
        return self._follow_up_status(entry) if entry else None

    def snooze_follow_up(self, entry_id: int, until: date
                         ) -> Optional[Dict[str, Any]]:
        """暂缓跟进到指定日期；记录不存在时返回 None。"""
        entry = self.follow_ups.snooze(entry_id, until)
        return self._follow_up_status(entry) if entry else None

    @staticmethod
    def _follow_up_status(entry) -> Dict[str, Any]:
        return {
            "id": entry.id,
            "appointment_id": entry.appointment_id,
            "touch_number": entry.touch_number,
            "status": entry.status,
            "sent_at": entry.sent_at,
            "sent_by": entry.sent_by,
            "snoozed_until": entry.snoozed_until,
        }

    def get_outcome_events(self, appointment_id: int
                           ) -> List[Dict[str, Any]]:
        """获取预约的结果事件（字典列表）。"""
        return [
            {
                "id": event.id,
                "run_id": event.run_id,
                "old_result": event.old_result,
                "new_result": event.new_result,
                "old_status": event.old_status,
                "new_status": event.new_status,
                "edited_by": event.edited_by,
                "source_component": event.source_component,
                "edit_reason": event.edit_reason,
                "metadata": event.event_metadata or {},
                "created_at": event.created_at,
            }
            for event in self.outcome_events.get_for_appointment(
                appointment_id
            )
        ]

    def get_loyalty_value(self) -> int:
        """获取当前忠诚计数。"""
        return self.loyalty.current_value()

    def get_audit_history(self, limit: int = 30) -> List[Dict[str, Any]]:
        """获取最近的审计汇总（新在前，不含明细）。"""
        return [
            {
                "id": record.id,
                "run_at": record.run_at,
                "run_by": record.run_by,
                "total_checks": record.total_checks,
                "pass_count": record.pass_count,
                "warn_count": record.warn_count,
                "fail_count": record.fail_count,
            }
            for record in self.audit_runs.get_history(limit)
        ]
