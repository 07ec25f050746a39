"""SQLAlchemy ORM 模型定义。

本模块定义了销售漏斗的所有数据库表，包括：
- 线索、预约（体验课）、问卷等基础实体
- 到课记录（Run）、跟进队列等业务记录
- 结果事件、忠诚计数日志、审计记录等系统数据

状态类字段统一存储规范化后的枚举值（见 pipeline.normalizer），
不存储展示用的文案。
"""
from typing import Dict, Any, List, Optional
from sqlalchemy import (
    Column, Integer, String, Text, Boolean, Date, DateTime,
    DECIMAL, ForeignKey, JSON, UniqueConstraint
)
from sqlalchemy.orm import declarative_base
from sqlalchemy.orm import relationship
from datetime import datetime, date

# SQLAlchemy declarative base，所有模型都继承自此类
Base = declarative_base()

# 允许使用旧式类型注解（兼容 SQLAlchemy 2.0）
Base.__allow_unmapped__ = True


class Lead(Base):
    """线索表模型。

    预约之前的潜在客户。审计会检查仍处于 new 阶段、
    但按电话/邮箱已能匹配到预约记录的线索。

    Attributes:
        id: 主键，自增整数。
        first_name: 名，必填。
        last_name: 姓，可选。
        phone: 电话（原始格式）。
        email: 邮箱。
        source: 线索来源。
        stage: 阶段：new / contacted / booked / already_in_system / lost。
        extra_data: JSON扩展字段。
        created_at: 创建时间。
    """
    __tablename__ = "leads"

    id: int = Column(Integer, primary_key=True, autoincrement=True)
    first_name: str = Column(String(50), nullable=False)
    last_name: Optional[str] = Column(String(50))
    phone: Optional[str] = Column(String(30))
    email: Optional[str] = Column(String(120))
    source: Optional[str] = Column(String(100))
    stage: str = Column(String(30), default="new")
    extra_data: Dict[str, Any] = Column(JSON, default={})
    created_at: datetime = Column(DateTime, default=datetime.utcnow)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name or ''}".strip()


class Appointment(Base):
    """预约（体验课）表模型。

    一次预约的体验课。status 只能由 OutcomeOrchestrator 写入
    （审计修复除外），取值见 AppointmentStatus。

    Attributes:
        id: 主键，自增整数。
        member_name: 客户姓名，必填。
        class_date: 上课日期，必填。
        class_time: 上课时间（HH:MM），可选。
        class_start_at: 上课开始时间戳，可选。
        status: 规范化状态，默认 active。
        booking_type: 预约类型：regular / vip / comp。
        lead_source: 线索来源。
        booked_by: 预约人（获得预约业绩）。
        intro_owner: 体验课负责人（获得成交业绩）。
        coach_name: 教练。
        phone / email / phone_source: 联系方式及电话来源。
        is_vip: 是否 VIP 场次。
        is_comp: 是否赠课。
        ignore_from_metrics: 是否排除在统计之外。
        questionnaire_status: 问卷状态：not_sent / sent / completed。
        originating_appointment_id: 二次体验课指向的原预约。
        closed_at / closed_by: 成交关闭时间及操作人。
        last_edited_by / last_edited_at / edit_reason: 编辑溯源。
        deleted_at: 软删除时间。
    """
    __tablename__ = "appointments"

    id: int = Column(Integer, primary_key=True, autoincrement=True)
    member_name: str = Column(String(100), nullable=False)
    class_date: date = Column(Date, nullable=False)
    class_time: Optional[str] = Column(String(10))
    class_start_at: Optional[datetime] = Column(DateTime)
    status: str = Column(String(30), default="active", nullable=False)
    booking_type: str = Column(String(20), default="regular")
    lead_source: Optional[str] = Column(String(100))
    booked_by: Optional[str] = Column(String(50))
    intro_owner: Optional[str] = Column(String(50))
    coach_name: Optional[str] = Column(String(50))
    phone: Optional[str] = Column(String(30))
    email: Optional[str] = Column(String(120))
    phone_source: Optional[str] = Column(String(30))
    is_vip: bool = Column(Boolean, default=False)
    is_comp: bool = Column(Boolean, default=False)
    ignore_from_metrics: bool = Column(Boolean, default=False)
    questionnaire_status: str = Column(String(20), default="not_sent")
    originating_appointment_id: Optional[int] = Column(
        Integer, ForeignKey("appointments.id")
    )
    closed_at: Optional[datetime] = Column(DateTime)
    closed_by: Optional[str] = Column(String(50))
    last_edited_by: Optional[str] = Column(String(50))
    last_edited_at: Optional[datetime] = Column(DateTime)
    edit_reason: Optional[str] = Column(Text)
    deleted_at: Optional[datetime] = Column(DateTime)
    extra_data: Dict[str, Any] = Column(JSON, default={})
    created_at: datetime = Column(DateTime, default=datetime.utcnow)

    # Relationships
    runs: List["Run"] = relationship("Run", back_populates="appointment")
    follow_ups: List["FollowUpEntry"] = relationship(
        "FollowUpEntry", back_populates="appointment"
    )
    questionnaires: List["Questionnaire"] = relationship(
        "Questionnaire", back_populates="appointment"
    )


class Questionnaire(Base):
    """预约问卷表模型。

    Attributes:
        id: 主键。
        appointment_id: 关联预约ID。
        status: not_sent / sent / completed / submitted。
        completed_at: 完成时间。
    """
    __tablename__ = "questionnaires"

    id: int = Column(Integer, primary_key=True, autoincrement=True)
    appointment_id: int = Column(
        Integer, ForeignKey("appointments.id"), nullable=False
    )
    status: str = Column(String(20), default="not_sent")
    completed_at: Optional[datetime] = Column(DateTime)
    created_at: datetime = Column(DateTime, default=datetime.utcnow)

    appointment: "Appointment" = relationship(
        "Appointment", back_populates="questionnaires"
    )


class Run(Base):
    """到课记录表模型。

    一次体验课（或课后补录）的实际结果。commission_amount 永远是
    提成计算器的输出，不接受手工录入。

    Attributes:
        id: 主键，自增整数。
        appointment_id: 关联预约ID，可为空（未关联的记录会被审计标记）。
        member_name: 客户姓名。
        run_date / run_time: 到课日期和时间。
        coach_name: 教练。
        intro_owner: 成交业绩归属人。
        lead_source: 线索来源。
        result: 原始结果文案。
        result_canon: 规范化结果（CanonicalResult 的值）。
        commission_amount: 提成金额，DECIMAL(10,2)。
        primary_objection: 主要异议。
        buy_date: 成交日期，首次进入成交档位时写入，之后不清除。
        is_vip / ignore_from_metrics: 标记。
        loyalty_incremented_at / loyalty_incremented_by: 忠诚计数幂等标记。
        last_edited_by / last_edited_at / edit_reason: 编辑溯源。
    """
    __tablename__ = "runs"

    id: int = Column(Integer, primary_key=True, autoincrement=True)
    appointment_id: Optional[int] = Column(
        Integer, ForeignKey("appointments.id")
    )
    member_name: str = Column(String(100), nullable=False)
    run_date: Optional[date] = Column(Date)
    run_time: Optional[str] = Column(String(10))
    coach_name: Optional[str] = Column(String(50))
    intro_owner: Optional[str] = Column(String(50))
    lead_source: Optional[str] = Column(String(100))
    result: Optional[str] = Column(String(100))
    result_canon: str = Column(String(30), default="unresolved")
    commission_amount: float = Column(DECIMAL(10, 2), default=0)
    primary_objection: Optional[str] = Column(String(100))
    buy_date: Optional[date] = Column(Date)
    is_vip: bool = Column(Boolean, default=False)
    ignore_from_metrics: bool = Column(Boolean, default=False)
    loyalty_incremented_at: Optional[datetime] = Column(DateTime)
    loyalty_incremented_by: Optional[str] = Column(String(50))
    last_edited_by: Optional[str] = Column(String(50))
    last_edited_at: Optional[datetime] = Column(DateTime)
    edit_reason: Optional[str] = Column(Text)
    extra_data: Dict[str, Any] = Column(JSON, default={})
    created_at: datetime = Column(DateTime, default=datetime.utcnow)

    appointment: Optional["Appointment"] = relationship(
        "Appointment", back_populates="runs"
    )


class FollowUpEntry(Base):
    """跟进队列表模型。

    每条记录是一次计划中的联系（第 N 次触达）。
    同一预约的 touch_number 唯一。

    Attributes:
        id: 主键。
        appointment_id / lead_id: 关联预约或线索（二选一）。
        person_name: 客户姓名。
        person_type: 触发类型：no_show / declined / planning_reschedule。
        trigger_date: 触发日期。
        touch_number: 第几次触达，从 1 开始。
        scheduled_date: 计划日期。
        status: pending / sent / converted / dormant / snoozed。
        is_vip: 是否 VIP。
        primary_objection: 主要异议。
        sent_at / sent_by: 发送时间及发送人。
        snoozed_until: 暂缓到期日。
    """
    __tablename__ = "follow_up_entries"

    id: int = Column(Integer, primary_key=True, autoincrement=True)
    appointment_id: Optional[int] = Column(
        Integer, ForeignKey("appointments.id")
    )
    lead_id: Optional[int] = Column(Integer, ForeignKey("leads.id"))
    person_name: str = Column(String(100), nullable=False)
    person_type: str = Column(String(30), nullable=False)
    trigger_date: date = Column(Date, nullable=False)
    touch_number: int = Column(Integer, nullable=False)
    scheduled_date: date = Column(Date, nullable=False)
    status: str = Column(String(20), default="pending", nullable=False)
    is_vip: bool = Column(Boolean, default=False)
    primary_objection: Optional[str] = Column(String(100))
    sent_at: Optional[datetime] = Column(DateTime)
    sent_by: Optional[str] = Column(String(50))
    snoozed_until: Optional[date] = Column(Date)
    created_at: datetime = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint(
            "appointment_id", "touch_number",
            name="uq_follow_up_appointment_touch"
        ),
    )

    appointment: Optional["Appointment"] = relationship(
        "Appointment", back_populates="follow_ups"
    )


class OutcomeEvent(Base):
    """结果事件表模型（只追加）。

    每次结果变更写入一条，记录新旧结果、新旧状态、操作人和副作用情况。
    """
    __tablename__ = "outcome_events"

    id: int = Column(Integer, primary_key=True, autoincrement=True)
    appointment_id: Optional[int] = Column(Integer)
    run_id: Optional[int] = Column(Integer)
    old_result: Optional[str] = Column(String(100))
    new_result: Optional[str] = Column(String(100))
    old_status: Optional[str] = Column(String(30))
    new_status: Optional[str] = Column(String(30))
    edited_by: str = Column(String(50), nullable=False)
    source_component: str = Column(String(50), nullable=False)
    edit_reason: Optional[str] = Column(Text)
    # "metadata" 是 Declarative 保留属性
    event_metadata: Dict[str, Any] = Column("metadata", JSON, default={})
    created_at: datetime = Column(DateTime, default=datetime.utcnow)


class LoyaltyLogEntry(Base):
    """忠诚计数日志表模型（只追加）。

    当前计数为最新一条记录的 value。
    """
    __tablename__ = "loyalty_log"

    id: int = Column(Integer, primary_key=True, autoincrement=True)
    logged_date: date = Column(Date, nullable=False)
    value: int = Column(Integer, nullable=False)
    note: Optional[str] = Column(Text)
    created_by: Optional[str] = Column(String(50))
    created_at: datetime = Column(DateTime, default=datetime.utcnow)


class AuditRunLog(Base):
    """审计运行记录表模型。

    Attributes:
        run_at: 审计时间。
        total_checks / pass_count / warn_count / fail_count: 汇总计数。
        results: 各项检查结果（JSON 列表）。
    """
    __tablename__ = "audit_runs"

    id: int = Column(Integer, primary_key=True, autoincrement=True)
    run_at: datetime = Column(DateTime, default=datetime.utcnow)
    run_by: Optional[str] = Column(String(50))
    total_checks: int = Column(Integer, default=0)
    pass_count: int = Column(Integer, default=0)
    warn_count: int = Column(Integer, default=0)
    fail_count: int = Column(Integer, default=0)
    results: List[Dict[str, Any]] = Column(JSON, default=[])
