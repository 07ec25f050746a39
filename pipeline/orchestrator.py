"""结果编排器 —— 记录体验课结果的唯一入口

一次 apply_outcome 调用把到课结果依次传播到：

1. 到课记录（Run）：原始/规范化结果、提成、异议、成交日期
2. 预约（Appointment）：规范化状态、成交关闭信息
3. 忠诚计数（成交且到课记录尚未计数时触发，重试可补做）
4. 跟进队列（按状态迁移增删；批次缺失时重建）
5. 结果事件（审计日志）
6. 可选的二次体验课预约

第 1、2 步是权威写入，在同一事务中提交，失败即整体失败；
第 3 步起都是次要副作用，失败只记录日志和 failed_effects，不影响成功状态，
遗留的不一致由 ConsistencyAuditor 发现和修复。

使用方式：
    ```python
    orchestrator = OutcomeOrchestrator(db)
    result = orchestrator.apply_outcome(OutcomeParams(
        appointment_id=12,
        member_name="Jane Doe",
        attempt_date="2024-01-28",
        new_result="No-show",
        editor="alex",
        source_label="outcome_form",
    ))
    ```
"""
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

from loguru import logger
from sqlalchemy.orm import Session

from config.policy import PipelinePolicy, pipeline_policy
from database import DatabaseManager
from database.base_crud import BaseCRUD
from database.models import Appointment, Run
from .cadence import FollowUpPerson, generate_follow_ups
from .commission import compute_commission
from .errors import InvalidOutcomeError, RecordNotFoundError
from .loyalty import LoyaltyCounterService
from .normalizer import (
    AppointmentStatus, CanonicalResult, follow_up_trigger_for,
    is_sale_result, map_result_to_status, normalize_result,
)


class ApplyStatus(str, Enum):
    """apply_outcome 的执行结果"""
    APPLIED = "applied"        # 权威写入及全部副作用成功
    PARTIAL = "partial"        # 权威写入成功，部分副作用失败
    NO_CHANGE = "no_change"    # 结果无法识别，未做任何修改
    FAILED = "failed"          # 权威写入失败


@dataclass
class SecondVisitDraft:
    """二次体验课草稿"""
    start_at: datetime
    coach_name: Optional[str] = None


@dataclass
class OutcomeParams:
    """apply_outcome 参数。

    不包含提成字段：提成只由 compute_commission 计算。
    """
    appointment_id: Optional[int]
    member_name: str
    attempt_date: Union[date, str]
    new_result: str
    editor: str
    source_label: str
    previous_result: Optional[str] = None
    sale_tier: Optional[str] = None
    lead_source: Optional[str] = None
    objection: Optional[str] = None
    coach_name: Optional[str] = None
    reason: Optional[str] = None
    run_id: Optional[int] = None
    second_visit: Optional[SecondVisitDraft] = None


@dataclass
class OutcomeResult:
    """apply_outcome 返回值"""
    success: bool
    run_id: Optional[int] = None
    did_increment_loyalty: bool = False
    did_generate_follow_ups: bool = False
    error: Optional[str] = None
    new_appointment_id: Optional[int] = None
    new_appointment_start_at: Optional[datetime] = None
    new_appointment_coach: Optional[str] = None
    failed_effects: List[str] = field(default_factory=list)
    skipped: bool = False

    @property
    def status(self) -> ApplyStatus:
        if not self.success:
            return ApplyStatus.FAILED
        if self.skipped:
            return ApplyStatus.NO_CHANGE
        if self.failed_effects:
            return ApplyStatus.PARTIAL
        return ApplyStatus.APPLIED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "status": self.status.value,
            "run_id": self.run_id,
            "did_increment_loyalty": self.did_increment_loyalty,
            "did_generate_follow_ups": self.did_generate_follow_ups,
            "error": self.error,
            "new_appointment_id": self.new_appointment_id,
            "new_appointment_start_at": (
                self.new_appointment_start_at.isoformat()
                if self.new_appointment_start_at else None
            ),
            "new_appointment_coach": self.new_appointment_coach,
            "failed_effects": list(self.failed_effects),
        }


@dataclass
class _Transition:
    """权威写入完成后的快照，供后续副作用使用"""
    appointment: Optional[Appointment]
    run_id: int
    previous_raw: Optional[str]
    previous: CanonicalResult
    current: CanonicalResult
    old_status: Optional[str]
    new_status: Optional[str]
    commission: Decimal
    sale_date: Optional[date]
    attempt_date: date
    loyalty_marked: bool = False


class OutcomeOrchestrator:
    """结果编排器"""

    def __init__(self, db: DatabaseManager,
                 policy: Optional[PipelinePolicy] = None,
                 loyalty: Optional[LoyaltyCounterService] = None,
                 clock: Optional[Callable[[], datetime]] = None) -> None:
        """
        Args:
            db: 数据库管理器。
            policy: 策略对象，默认使用全局策略。
            loyalty: 忠诚计数服务，默认按同一策略创建。
            clock: 返回当前时间的函数（测试中可注入固定时间）。
        """
        self.db = db
        self.policy = policy or pipeline_policy
        self._clock = clock or datetime.utcnow
        self.loyalty = loyalty or LoyaltyCounterService(
            db, policy=self.policy, clock=self._clock
        )

    # ================================================================
    # 入口
    # ================================================================

    def apply_outcome(self, params: OutcomeParams) -> OutcomeResult:
        """记录一次到课结果并传播到相关记录。

        Args:
            params: 结果参数。

        Returns:
            OutcomeResult。权威写入失败时 success 为 False；
            结果无法识别时 success 为 True 且 skipped 为 True。
        """
        current = self._resolve_result(params)
        if current == CanonicalResult.UNRESOLVED:
            logger.debug(
                f"Unresolved result {params.new_result!r} for appointment "
                f"{params.appointment_id}, nothing to apply"
            )
            return OutcomeResult(success=True, run_id=params.run_id,
                                 skipped=True)

        # 第 1-2 步：权威写入
        try:
            transition = self._write_authoritative(params, current)
        except Exception as e:
            logger.error(
                f"Failed to apply outcome {params.new_result!r} to "
                f"appointment {params.appointment_id}: {e}"
            )
            return OutcomeResult(success=False, error=str(e))

        result = OutcomeResult(success=True, run_id=transition.run_id)
        appointment = transition.appointment
        suppressed = appointment is not None and (
            appointment.is_comp or appointment.ignore_from_metrics
        )
        if suppressed:
            logger.debug(
                f"Appointment {appointment.id} excluded from metrics, "
                f"skipping loyalty and follow-up effects"
            )

        # 第 3 步：忠诚计数（以到课记录上的计数标记为准，上次失败时可补做）
        if (not suppressed and is_sale_result(transition.current)
                and not transition.loyalty_marked):
            try:
                result.did_increment_loyalty = (
                    self.loyalty.increment_if_eligible(
                        transition.run_id, params.editor
                    )
                )
            except Exception as e:
                logger.opt(exception=e).warning(
                    f"Loyalty increment failed for run {transition.run_id}"
                )
                result.failed_effects.append("loyalty")

        # 第 4 步：跟进队列
        if not suppressed and appointment is not None:
            try:
                result.did_generate_follow_ups = self._sync_follow_ups(
                    params, transition
                )
            except Exception as e:
                logger.opt(exception=e).warning(
                    f"Follow-up sync failed for appointment {appointment.id}"
                )
                result.failed_effects.append("follow_ups")

        # 第 5 步：结果事件
        try:
            self._write_event(params, transition, result)
        except Exception as e:
            logger.opt(exception=e).warning(
                f"Outcome event write failed for run {transition.run_id}"
            )
            result.failed_effects.append("outcome_event")

        # 第 6 步：二次体验课
        if params.second_visit is not None:
            try:
                self._create_second_visit(params, appointment, result)
            except Exception as e:
                logger.opt(exception=e).warning(
                    f"Second visit creation failed for appointment "
                    f"{params.appointment_id}"
                )
                result.failed_effects.append("second_visit")

        logger.info(
            f"Outcome applied: appointment={params.appointment_id} "
            f"run={transition.run_id} "
            f"{transition.previous.value} -> {transition.current.value} "
            f"status={result.status.value}"
        )
        return result

    # ================================================================
    # 权威写入
    # ================================================================

    def _resolve_result(self, params: OutcomeParams) -> CanonicalResult:
        """规范化新结果；sale_tier 指定了成交档位时以其为准。"""
        current = normalize_result(params.new_result, self.policy)
        if params.sale_tier:
            tier = normalize_result(params.sale_tier, self.policy)
            if is_sale_result(tier) and (
                    is_sale_result(current)
                    or current == CanonicalResult.UNRESOLVED):
                return tier
        return current

    def _write_authoritative(self, params: OutcomeParams,
                             current: CanonicalResult) -> _Transition:
        if params.appointment_id is None and params.run_id is None:
            raise InvalidOutcomeError(
                "Either appointment_id or run_id is required"
            )
        attempt_date = BaseCRUD._parse_date(
            params.attempt_date, "Attempt date"
        )

        with self.db.get_session() as session:
            try:
                appointment = self._load_appointment(session, params)
                run = self._locate_run(session, params, appointment)
                if appointment is None and run is not None:
                    appointment = run.appointment

                previous_raw = params.previous_result
                if previous_raw is not None:
                    previous = normalize_result(previous_raw, self.policy)
                elif run is not None:
                    # 已存的规范结果包含成交档位，原始文本可能不含
                    previous_raw = run.result
                    previous = normalize_result(run.result_canon, self.policy)
                else:
                    previous = CanonicalResult.UNRESOLVED

                if run is None:
                    run = self._create_run(
                        session, params, appointment, attempt_date
                    )
                self._update_run(run, params, current, appointment)

                old_status = new_status = None
                if appointment is not None:
                    old_status = appointment.status
                    new_status = self._update_appointment(
                        appointment, params, current
                    ).value

                session.commit()
            except Exception:
                session.rollback()
                raise

            return _Transition(
                appointment=appointment,
                run_id=run.id,
                previous_raw=previous_raw,
                previous=previous,
                current=current,
                old_status=old_status,
                new_status=new_status,
                commission=Decimal(run.commission_amount),
                sale_date=run.buy_date,
                attempt_date=attempt_date,
                loyalty_marked=run.loyalty_incremented_at is not None,
            )

    def _load_appointment(self, session: Session,
                          params: OutcomeParams) -> Optional[Appointment]:
        if params.appointment_id is None:
            return None
        appointment = self.db.appointments.get(
            params.appointment_id, session=session
        )
        if appointment is None:
            raise RecordNotFoundError("Appointment", params.appointment_id)
        return appointment

    def _locate_run(self, session: Session, params: OutcomeParams,
                    appointment: Optional[Appointment]) -> Optional[Run]:
        """优先使用显式的 run_id，否则取预约最近的一条到课记录。"""
        if params.run_id is not None:
            run = self.db.runs.get(params.run_id, session=session)
            if run is None:
                raise RecordNotFoundError("Run", params.run_id)
            if run.appointment_id is None and appointment is not None:
                run.appointment_id = appointment.id
                run.appointment = appointment
            return run
        return self.db.runs.get_latest_for_appointment(
            appointment.id, session=session
        )

    def _resolve_owner(self, appointment: Appointment,
                       lead_source: Optional[str], editor: str) -> str:
        """成交业绩归属：亲友推荐来源归预约人，其余归体验课负责人。"""
        if self.policy.is_personal_referral(lead_source) \
                and appointment.booked_by:
            return appointment.booked_by
        return appointment.intro_owner or editor

    def _create_run(self, session: Session, params: OutcomeParams,
                    appointment: Appointment, attempt_date: date) -> Run:
        lead_source = params.lead_source or appointment.lead_source
        run = Run(
            appointment_id=appointment.id,
            member_name=params.member_name or appointment.member_name,
            run_date=attempt_date,
            run_time=appointment.class_time,
            coach_name=params.coach_name or appointment.coach_name,
            intro_owner=self._resolve_owner(
                appointment, lead_source, params.editor
            ),
            lead_source=lead_source,
            is_vip=bool(appointment.is_vip),
            ignore_from_metrics=bool(
                appointment.is_comp or appointment.ignore_from_metrics
            ),
            extra_data={},
        )
        session.add(run)
        session.flush()
        run.appointment = appointment
        logger.debug(f"Created run {run.id} for appointment {appointment.id}")
        return run

    def _update_run(self, run: Run, params: OutcomeParams,
                    current: CanonicalResult,
                    appointment: Optional[Appointment]) -> None:
        now = self._clock()
        run.result = params.new_result.strip()
        run.result_canon = current.value
        run.commission_amount = compute_commission(current, self.policy)
        if params.objection is not None:
            run.primary_objection = params.objection
        if params.coach_name:
            run.coach_name = params.coach_name
        if params.lead_source:
            run.lead_source = params.lead_source
        # 成交日期只在首次成交时写入，之后不清除
        if is_sale_result(current) and run.buy_date is None:
            run.buy_date = now.date()
        run.last_edited_by = params.editor
        run.last_edited_at = now
        run.edit_reason = params.reason

    def _update_appointment(self, appointment: Appointment,
                            params: OutcomeParams,
                            current: CanonicalResult) -> AppointmentStatus:
        now = self._clock()
        new_status = map_result_to_status(current)
        appointment.status = new_status.value
        if new_status == AppointmentStatus.PURCHASED:
            if appointment.closed_at is None:
                appointment.closed_at = now
                appointment.closed_by = params.editor
        else:
            appointment.closed_at = None
            appointment.closed_by = None
        appointment.last_edited_by = params.editor
        appointment.last_edited_at = now
        appointment.edit_reason = params.reason
        return new_status

    # ================================================================
    # 次要副作用
    # ================================================================

    def _sync_follow_ups(self, params: OutcomeParams,
                         transition: _Transition) -> bool:
        """按状态迁移形态更新跟进队列。

        Returns:
            是否生成了新的跟进批次。
        """
        appointment = transition.appointment
        previous, current = transition.previous, transition.current
        was_trigger = follow_up_trigger_for(previous)
        now_trigger = follow_up_trigger_for(current)
        follow_ups = self.db.follow_ups

        with self.db.get_session() as session:
            generated = False
            if is_sale_result(current) and not is_sale_result(previous):
                follow_ups.delete_active(appointment.id, session=session)
            elif now_trigger and (
                    now_trigger != was_trigger
                    or not follow_ups.has_batch(
                        appointment.id, now_trigger, session=session
                    )):
                # 触发类型发生变化，或该类型批次缺失：整批替换
                person = FollowUpPerson(
                    name=params.member_name or appointment.member_name,
                    appointment_id=appointment.id,
                    is_vip=bool(appointment.is_vip),
                    primary_objection=(
                        params.objection
                        if current == CanonicalResult.DECLINED else None
                    ),
                )
                entries = generate_follow_ups(
                    person, now_trigger, transition.attempt_date, self.policy
                )
                follow_ups.replace_batch(
                    appointment.id, entries, session=session
                )
                generated = True
            elif current == CanonicalResult.NOT_INTERESTED:
                follow_ups.delete_active(appointment.id, session=session)
            session.commit()
        return generated

    def _write_event(self, params: OutcomeParams, transition: _Transition,
                     result: OutcomeResult) -> None:
        reason = params.reason or (
            f"{params.source_label}: "
            f"{transition.previous_raw or 'unknown'} → {params.new_result}"
        )
        self.db.outcome_events.append({
            "appointment_id": (
                transition.appointment.id if transition.appointment else None
            ),
            "run_id": transition.run_id,
            "old_result": transition.previous_raw,
            "new_result": params.new_result,
            "old_status": transition.old_status,
            "new_status": transition.new_status,
            "edited_by": params.editor,
            "source_component": params.source_label,
            "edit_reason": reason,
            "metadata": {
                "canonical_result": transition.current.value,
                "previous_canonical_result": transition.previous.value,
                "loyalty_incremented": result.did_increment_loyalty,
                "follow_ups_generated": result.did_generate_follow_ups,
                "commission": str(transition.commission),
                "sale_date": (
                    transition.sale_date.isoformat()
                    if transition.sale_date else None
                ),
                "failed_effects": list(result.failed_effects),
                "policy_version": self.policy.version,
            },
        })

    def _create_second_visit(self, params: OutcomeParams,
                             appointment: Optional[Appointment],
                             result: OutcomeResult) -> None:
        """创建二次体验课预约，继承联系方式和业绩归属。"""
        if appointment is None:
            raise InvalidOutcomeError(
                "Second visit requires an originating appointment"
            )
        draft = params.second_visit
        created = self.db.appointments.create({
            "member_name": appointment.member_name,
            "class_date": draft.start_at.date(),
            "class_time": draft.start_at.strftime("%H:%M"),
            "class_start_at": draft.start_at,
            "coach_name": draft.coach_name,
            "lead_source": appointment.lead_source,
            "booked_by": appointment.booked_by,
            "intro_owner": appointment.intro_owner,
            "phone": appointment.phone,
            "email": appointment.email,
            "phone_source": appointment.phone_source,
            "is_vip": appointment.is_vip,
            "originating_appointment_id": appointment.id,
        })
        result.new_appointment_id = created.id
        result.new_appointment_start_at = draft.start_at
        result.new_appointment_coach = draft.coach_name
        logger.info(
            f"Second visit {created.id} scheduled from appointment "
            f"{appointment.id} at {draft.start_at.isoformat()}"
        )
