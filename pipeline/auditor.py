"""一致性审计

对预约、到课记录、跟进队列、线索之间的数据漂移做只读检查，
并为部分检查提供显式调用的修复动作（fix_action）。

- run_full_audit() 并行执行所有检查，任何检查都不写数据
- run_fix(action) 只在被显式调用时执行对应的最小修复
- save_run() 保存审计汇总，只保留最近 N 次

检查读取的策略表与编排器是同一个 PipelinePolicy，
“结果 → 状态”的推导也只调用 pipeline.normalizer。
"""
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from loguru import logger
from sqlalchemy import or_
from sqlalchemy.orm import Session

from config.policy import PipelinePolicy, pipeline_policy
from config.settings import settings
from database import DatabaseManager
from database.business_repos import ACTIVE_FOLLOW_UP_STATUSES
from database.models import (
    Appointment, FollowUpEntry, Lead, Questionnaire, Run
)
from .commission import compute_commission
from .normalizer import (
    AppointmentStatus, CanonicalResult, SALE_RESULTS, TERMINAL_STATUSES,
    map_result_to_status, normalize_status,
)
from .phones import normalize_phone


class CheckStatus(str, Enum):
    PASS = "pass"
    WARN = "warn"
    FAIL = "fail"


@dataclass
class AuditCheckResult:
    """单项检查结果"""
    check_name: str
    category: str
    status: CheckStatus
    count: int
    description: str
    affected_ids: List[int] = field(default_factory=list)
    affected_names: List[str] = field(default_factory=list)
    suggested_fix: Optional[str] = None
    fix_action: Optional[str] = None
    # 无法自动修复、需要人工补录的记录：{"id", "name", "field"}
    manual_fix_ids: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "check_name": self.check_name,
            "category": self.category,
            "status": self.status.value,
            "count": self.count,
            "description": self.description,
            "affected_ids": list(self.affected_ids),
            "affected_names": list(self.affected_names),
            "suggested_fix": self.suggested_fix,
            "fix_action": self.fix_action,
            "manual_fix_ids": list(self.manual_fix_ids),
        }


@dataclass
class AuditRunResult:
    """一次完整审计的汇总"""
    timestamp: datetime
    results: List[AuditCheckResult]

    @property
    def total_checks(self) -> int:
        return len(self.results)

    @property
    def pass_count(self) -> int:
        return sum(1 for r in self.results if r.status == CheckStatus.PASS)

    @property
    def warn_count(self) -> int:
        return sum(1 for r in self.results if r.status == CheckStatus.WARN)

    @property
    def fail_count(self) -> int:
        return sum(1 for r in self.results if r.status == CheckStatus.FAIL)

    def get(self, check_name: str) -> Optional[AuditCheckResult]:
        """按名称获取检查结果。"""
        for result in self.results:
            if result.check_name == check_name:
                return result
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "total_checks": self.total_checks,
            "pass_count": self.pass_count,
            "warn_count": self.warn_count,
            "fail_count": self.fail_count,
            "results": [r.to_dict() for r in self.results],
        }


@dataclass
class FixResult:
    """修复结果"""
    fixed: int
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"fixed": self.fixed, "error": self.error}


def _plural(count: int, singular: str, plural: str) -> str:
    return singular if count == 1 else plural


def _live_appointments(session: Session):
    """未删除、未取消的预约查询。"""
    return session.query(Appointment).filter(
        Appointment.deleted_at.is_(None),
        Appointment.status.notin_((
            AppointmentStatus.SOFT_DELETED.value,
            AppointmentStatus.CANCELLED.value,
        )),
    )


def _blank(column):
    return or_(column.is_(None), column == "")


class ConsistencyAuditor:
    """一致性审计器"""

    def __init__(self, db: DatabaseManager,
                 policy: Optional[PipelinePolicy] = None,
                 scan_limit: Optional[int] = None,
                 max_workers: Optional[int] = None,
                 clock: Optional[Callable[[], datetime]] = None) -> None:
        self.db = db
        self.policy = policy or pipeline_policy
        self.scan_limit = scan_limit or settings.audit_scan_limit
        self.max_workers = max_workers or settings.audit_max_workers
        self._clock = clock or datetime.utcnow

        # (检查名称, 分类, 检查函数)，顺序即报告顺序
        self.checks = [
            ("Lead Source Missing", "Booking Attribution",
             self._check_lead_source_missing),
            ("Booked By Missing", "Booking Attribution",
             self._check_booked_by_missing),
            ("VIP Booking Type Mismatch", "VIP Data",
             self._check_vip_booking_type),
            ("Questionnaire Status Sync", "Questionnaire",
             self._check_questionnaire_status),
            ("Unlinked Runs", "Data Orphans",
             self._check_unlinked_runs),
            ("Follow-Up Queue Cleanup", "Follow-Up Queue",
             self._check_follow_up_cleanup),
            ("Leads Already in System", "Lead Data",
             self._check_leads_already_in_system),
            ("Leads Missing Source", "Lead Data",
             self._check_leads_missing_source),
            ("Phone Number Missing", "Booking Attribution",
             self._check_phone_missing),
            ("Commission Zero on Sale", "Commission",
             self._check_commission_zero),
            ("Outcome Status Sync", "Outcomes",
             self._check_outcome_status_sync),
            ("Missing Class Start Time", "Booking Attribution",
             self._check_missing_start_time),
            ("Second Visit Phone Missing", "Data Inheritance",
             self._check_second_visit_phone),
        ]

        self.fixes: Dict[str, Callable[[Session], int]] = {
            "fix_booked_by_missing": self._fix_booked_by_missing,
            "fix_vip_booking_types": self._fix_vip_booking_types,
            "fix_questionnaire_statuses": self._fix_questionnaire_statuses,
            "fix_followup_resolved": self._fix_followup_resolved,
            "fix_leads_already_in_system": self._fix_leads_already_in_system,
            "fix_phone_from_leads": self._fix_phone_from_leads,
            "fix_commission_from_policy": self._fix_commission_from_policy,
            "fix_outcome_status_sync": self._fix_outcome_status_sync,
            "fix_second_visit_phones": self._fix_second_visit_phones,
        }

    # ================================================================
    # 审计
    # ================================================================

    def run_full_audit(self) -> AuditRunResult:
        """并行执行所有检查（只读）。

        单项检查抛出异常时记为 fail，不影响其它检查。
        """
        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            futures = [
                pool.submit(self._run_check, name, category, check)
                for name, category, check in self.checks
            ]
            results = [future.result() for future in futures]

        audit = AuditRunResult(timestamp=self._clock(), results=results)
        logger.info(
            f"Audit finished: {audit.total_checks} checks, "
            f"{audit.pass_count} pass, {audit.warn_count} warn, "
            f"{audit.fail_count} fail"
        )
        return audit

    def _run_check(self, name: str, category: str,
                   check: Callable[[Session, str, str], AuditCheckResult]
                   ) -> AuditCheckResult:
        try:
            with self.db.get_session() as session:
                return check(session, name, category)
        except Exception as e:
            logger.opt(exception=e).error(f"Audit check '{name}' raised")
            return AuditCheckResult(
                check_name=name,
                category=category,
                status=CheckStatus.FAIL,
                count=0,
                description=f"Check could not run: {e}",
            )

    # ---- 预约归属 ----

    def _check_lead_source_missing(self, session, name, category):
        rows = _live_appointments(session).filter(
            _blank(Appointment.lead_source)
        ).order_by(Appointment.id).limit(self.scan_limit).all()
        count = len(rows)
        return AuditCheckResult(
            check_name=name,
            category=category,
            status=CheckStatus.FAIL if count else CheckStatus.PASS,
            count=count,
            description=(
                f"{count} {_plural(count, 'appointment has', 'appointments have')}"
                f" no lead source recorded"
                if count else "All appointments have a lead source recorded"
            ),
            affected_ids=[r.id for r in rows],
            affected_names=[r.member_name for r in rows],
            suggested_fix=(
                "Open each appointment and add the correct lead source"
                if count else None
            ),
        )

    def _booked_by_candidates(self, session) -> List[Appointment]:
        rows = _live_appointments(session).filter(
            _blank(Appointment.booked_by)
        ).order_by(Appointment.id).limit(self.scan_limit).all()
        return [r for r in rows if not self.policy.is_self_booked(r.lead_source)]

    def _check_booked_by_missing(self, session, name, category):
        rows = self._booked_by_candidates(session)
        count = len(rows)
        auto = [r for r in rows if r.intro_owner and r.intro_owner.strip()]
        manual = [r for r in rows if r not in auto]

        suggested = None
        if count:
            suggested = (
                f"{len(auto)} can be filled from the intro owner, "
                f"{len(manual)} need manual entry"
                if auto else "Add the staff member who booked each appointment"
            )
        return AuditCheckResult(
            check_name=name,
            category=category,
            status=CheckStatus.WARN if count else CheckStatus.PASS,
            count=count,
            description=(
                f"{count} {_plural(count, 'appointment is', 'appointments are')}"
                f" missing booking credit"
                if count else "All appointments have booking credit"
            ),
            affected_ids=[r.id for r in rows],
            affected_names=[r.member_name for r in rows],
            suggested_fix=suggested,
            fix_action="fix_booked_by_missing" if auto else None,
            manual_fix_ids=[
                {"id": r.id, "name": r.member_name, "field": "booked_by"}
                for r in manual
            ],
        )

    def _vip_mismatch_query(self, session):
        return _live_appointments(session).filter(
            Appointment.is_vip.is_(True),
            Appointment.booking_type.notin_(("vip", "comp")),
        )

    def _check_vip_booking_type(self, session, name, category):
        rows = self._vip_mismatch_query(session).order_by(
            Appointment.id
        ).limit(self.scan_limit).all()
        count = len(rows)
        return AuditCheckResult(
            check_name=name,
            category=category,
            status=CheckStatus.FAIL if count else CheckStatus.PASS,
            count=count,
            description=(
                f"{count} VIP-flagged "
                f"{_plural(count, 'appointment is', 'appointments are')}"
                f" classified as a regular booking"
                if count else "All VIP appointments are correctly classified"
            ),
            affected_ids=[r.id for r in rows],
            affected_names=[r.member_name for r in rows],
            suggested_fix="Set the booking type to VIP" if count else None,
            fix_action="fix_vip_booking_types" if count else None,
        )

    def _questionnaire_mismatches(self, session) -> List[Appointment]:
        completed = session.query(Questionnaire.appointment_id).filter(
            Questionnaire.status.in_(("completed", "submitted"))
        )
        return _live_appointments(session).filter(
            Appointment.id.in_(completed),
            Appointment.questionnaire_status != "completed",
        ).order_by(Appointment.id).limit(self.scan_limit).all()

    def _check_questionnaire_status(self, session, name, category):
        rows = self._questionnaire_mismatches(session)
        count = len(rows)
        return AuditCheckResult(
            check_name=name,
            category=category,
            status=CheckStatus.FAIL if count else CheckStatus.PASS,
            count=count,
            description=(
                f"{count} {_plural(count, 'appointment shows', 'appointments show')}"
                f" an incomplete questionnaire that was actually completed"
                if count else "Questionnaire statuses match their responses"
            ),
            affected_ids=[r.id for r in rows],
            affected_names=[r.member_name for r in rows],
            suggested_fix=(
                "Mark these questionnaires as completed" if count else None
            ),
            fix_action="fix_questionnaire_statuses" if count else None,
        )

    # ---- 孤立数据与跟进队列 ----

    def _check_unlinked_runs(self, session, name, category):
        rows = session.query(Run).filter(
            Run.appointment_id.is_(None)
        ).order_by(Run.id).limit(self.scan_limit).all()
        count = len(rows)
        return AuditCheckResult(
            check_name=name,
            category=category,
            status=CheckStatus.WARN if count else CheckStatus.PASS,
            count=count,
            description=(
                f"{count} {_plural(count, 'run is', 'runs are')}"
                f" not linked to any appointment"
                if count else "All runs are linked to an appointment"
            ),
            affected_ids=[r.id for r in rows],
            affected_names=[r.member_name for r in rows],
            suggested_fix=(
                "Link each run to its appointment" if count else None
            ),
        )

    def _stale_follow_ups(self, session) -> List[FollowUpEntry]:
        """已成交或已关闭的预约上仍在队列中的跟进。

        预约状态可能是导入的历史文案，按规范化后的状态判断。
        """
        rows = session.query(FollowUpEntry, Appointment.status).join(
            Appointment, FollowUpEntry.appointment_id == Appointment.id
        ).filter(
            FollowUpEntry.status.in_(ACTIVE_FOLLOW_UP_STATUSES),
        ).order_by(FollowUpEntry.id).all()
        stale = [
            entry for entry, status in rows
            if normalize_status(status) in TERMINAL_STATUSES
        ]
        return stale[:self.scan_limit]

    def _check_follow_up_cleanup(self, session, name, category):
        rows = self._stale_follow_ups(session)
        count = len(rows)
        return AuditCheckResult(
            check_name=name,
            category=category,
            status=CheckStatus.FAIL if count else CheckStatus.PASS,
            count=count,
            description=(
                f"{count} pending follow-up "
                f"{_plural(count, 'entry belongs', 'entries belong')}"
                f" to people who already bought or declined"
                if count else "No stale follow-ups in the queue"
            ),
            affected_ids=[r.id for r in rows],
            affected_names=[r.person_name for r in rows],
            suggested_fix=(
                "Retire these follow-ups so staff stop contacting them"
                if count else None
            ),
            fix_action="fix_followup_resolved" if count else None,
        )

    # ---- 线索 ----

    def _leads_already_in_system(self, session) -> List[Lead]:
        leads = session.query(Lead).filter(
            Lead.stage.in_(("new", "contacted"))
        ).order_by(Lead.id).limit(self.scan_limit).all()
        if not leads:
            return []

        phones, emails = set(), set()
        for appointment in _live_appointments(session).all():
            phone = normalize_phone(appointment.phone)
            if phone:
                phones.add(phone)
            if appointment.email:
                emails.add(appointment.email.strip().lower())

        matched = []
        for lead in leads:
            phone = normalize_phone(lead.phone)
            email = (lead.email or "").strip().lower()
            if (phone and phone in phones) or (email and email in emails):
                matched.append(lead)
        return matched

    def _check_leads_already_in_system(self, session, name, category):
        rows = self._leads_already_in_system(session)
        count = len(rows)
        return AuditCheckResult(
            check_name=name,
            category=category,
            status=CheckStatus.WARN if count else CheckStatus.PASS,
            count=count,
            description=(
                f"{count} new {_plural(count, 'lead already has', 'leads already have')}"
                f" an appointment"
                if count else "No new leads match existing appointments"
            ),
            affected_ids=[r.id for r in rows],
            affected_names=[r.full_name for r in rows],
            suggested_fix=(
                "Move these leads to 'already in system'" if count else None
            ),
            fix_action="fix_leads_already_in_system" if count else None,
        )

    def _check_leads_missing_source(self, session, name, category):
        rows = session.query(Lead).filter(
            _blank(Lead.source)
        ).order_by(Lead.id).limit(self.scan_limit).all()
        count = len(rows)
        return AuditCheckResult(
            check_name=name,
            category=category,
            status=CheckStatus.WARN if count else CheckStatus.PASS,
            count=count,
            description=(
                f"{count} {_plural(count, 'lead is', 'leads are')}"
                f" missing a source"
                if count else "All leads have a source recorded"
            ),
            affected_ids=[r.id for r in rows],
            affected_names=[r.full_name for r in rows],
        )

    # ---- 联系方式 ----

    def _lead_phone_by_email(self, session) -> Dict[str, str]:
        mapping = {}
        for lead in session.query(Lead).filter(
                Lead.email.isnot(None), Lead.phone.isnot(None)).all():
            phone = normalize_phone(lead.phone)
            if phone and lead.email.strip():
                mapping[lead.email.strip().lower()] = phone
        return mapping

    def _phone_missing(self, session) -> List[Appointment]:
        return _live_appointments(session).filter(
            _blank(Appointment.phone)
        ).order_by(Appointment.id).limit(self.scan_limit).all()

    def _check_phone_missing(self, session, name, category):
        rows = self._phone_missing(session)
        count = len(rows)
        lead_phones = self._lead_phone_by_email(session) if rows else {}
        matchable = [
            r for r in rows
            if r.email and r.email.strip().lower() in lead_phones
        ]
        return AuditCheckResult(
            check_name=name,
            category=category,
            status=CheckStatus.WARN if count else CheckStatus.PASS,
            count=count,
            description=(
                f"{count} {_plural(count, 'appointment has', 'appointments have')}"
                f" no phone number"
                if count else "All appointments have a phone number"
            ),
            affected_ids=[r.id for r in rows],
            affected_names=[r.member_name for r in rows],
            suggested_fix=(
                f"{len(matchable)} can be copied from matching leads"
                if matchable else (
                    "Add phone numbers manually" if count else None
                )
            ),
            fix_action="fix_phone_from_leads" if matchable else None,
            manual_fix_ids=[
                {"id": r.id, "name": r.member_name, "field": "phone"}
                for r in rows if r not in matchable
            ],
        )

    def _second_visits_missing_phone(self, session) -> List[Appointment]:
        return _live_appointments(session).filter(
            Appointment.originating_appointment_id.isnot(None),
            _blank(Appointment.phone),
        ).order_by(Appointment.id).limit(self.scan_limit).all()

    def _check_second_visit_phone(self, session, name, category):
        rows = self._second_visits_missing_phone(session)
        count = len(rows)
        return AuditCheckResult(
            check_name=name,
            category=category,
            status=CheckStatus.FAIL if count else CheckStatus.PASS,
            count=count,
            description=(
                f"{count} second {_plural(count, 'visit is', 'visits are')}"
                f" missing the phone number from the original appointment"
                if count else "All second visits have inherited phone data"
            ),
            affected_ids=[r.id for r in rows],
            affected_names=[r.member_name for r in rows],
            suggested_fix=(
                "Copy the phone from the originating appointment"
                if count else None
            ),
            fix_action="fix_second_visit_phones" if count else None,
        )

    # ---- 结果与提成 ----

    def _zero_commission_runs(self, session) -> List[Run]:
        return session.query(Run).filter(
            Run.result_canon.in_([r.value for r in SALE_RESULTS]),
            or_(Run.commission_amount.is_(None), Run.commission_amount == 0),
        ).order_by(Run.id).limit(self.scan_limit).all()

    def _check_commission_zero(self, session, name, category):
        rows = self._zero_commission_runs(session)
        count = len(rows)
        return AuditCheckResult(
            check_name=name,
            category=category,
            status=CheckStatus.FAIL if count else CheckStatus.PASS,
            count=count,
            description=(
                f"{count} {_plural(count, 'sale has', 'sales have')}"
                f" zero commission recorded"
                if count else "All sales have commission recorded"
            ),
            affected_ids=[r.id for r in rows],
            affected_names=[r.member_name for r in rows],
            suggested_fix=(
                "Recalculate commission from the current policy"
                if count else None
            ),
            fix_action="fix_commission_from_policy" if count else None,
        )

    def _status_mismatches(self, session) -> List[tuple]:
        """(预约, 期望状态) 列表：预约状态与其最近一条有效到课结果不符。"""
        latest_by_appointment: Dict[int, Run] = {}
        runs = session.query(Run).filter(
            Run.appointment_id.isnot(None),
            Run.result_canon != CanonicalResult.UNRESOLVED.value,
            Run.ignore_from_metrics.is_(False),
        ).order_by(Run.id).all()
        for run in runs:
            latest_by_appointment[run.appointment_id] = run
        if not latest_by_appointment:
            return []

        appointments = _live_appointments(session).filter(
            Appointment.id.in_(list(latest_by_appointment))
        ).order_by(Appointment.id).all()

        mismatches = []
        for appointment in appointments:
            run = latest_by_appointment[appointment.id]
            expected = map_result_to_status(CanonicalResult(run.result_canon))
            if appointment.status != expected.value:
                mismatches.append((appointment, expected))
        return mismatches[:self.scan_limit]

    def _check_outcome_status_sync(self, session, name, category):
        rows = self._status_mismatches(session)
        count = len(rows)
        return AuditCheckResult(
            check_name=name,
            category=category,
            status=CheckStatus.FAIL if count else CheckStatus.PASS,
            count=count,
            description=(
                f"{count} {_plural(count, 'appointment has', 'appointments have')}"
                f" a status that does not match the recorded outcome"
                if count else "All outcome results match their appointment status"
            ),
            affected_ids=[appointment.id for appointment, _ in rows],
            affected_names=[appointment.member_name for appointment, _ in rows],
            suggested_fix=(
                "Sync appointment status to match the recorded outcome"
                if count else None
            ),
            fix_action="fix_outcome_status_sync" if count else None,
        )

    def _check_missing_start_time(self, session, name, category):
        rows = _live_appointments(session).filter(
            Appointment.class_start_at.is_(None),
            Appointment.class_time.isnot(None),
        ).order_by(Appointment.id).limit(self.scan_limit).all()
        count = len(rows)
        return AuditCheckResult(
            check_name=name,
            category=category,
            # 少量缺失属正常录入延迟
            status=CheckStatus.WARN if count > 10 else CheckStatus.PASS,
            count=count,
            description=(
                f"{count} {_plural(count, 'appointment has', 'appointments have')}"
                f" a class time but no start timestamp"
                if count else "All appointments with a class time have a start timestamp"
            ),
            affected_ids=[r.id for r in rows],
            affected_names=[r.member_name for r in rows],
        )

    # ================================================================
    # 修复
    # ================================================================

    def run_fix(self, fix_action: str) -> FixResult:
        """执行一个修复动作。

        Args:
            fix_action: 检查结果中的 fix_action 键。

        Returns:
            FixResult。未知动作或修复失败时 fixed 为 0 且带 error。
        """
        fix = self.fixes.get(fix_action)
        if fix is None:
            logger.warning(f"Unknown fix action: {fix_action}")
            return FixResult(fixed=0, error=f"Unknown fix action: {fix_action}")

        try:
            with self.db.get_session() as session:
                fixed = fix(session)
                session.commit()
        except Exception as e:
            logger.opt(exception=e).error(f"Fix '{fix_action}' failed")
            return FixResult(fixed=0, error=str(e))

        logger.info(f"Fix '{fix_action}' repaired {fixed} records")
        return FixResult(fixed=fixed)

    def run_all_fixes(self, audit: Optional[AuditRunResult] = None
                      ) -> Dict[str, FixResult]:
        """对所有未通过且可自动修复的检查依次执行修复。

        Args:
            audit: 已有的审计结果；为 None 时先执行一次审计。

        Returns:
            检查名称 → FixResult。
        """
        audit = audit or self.run_full_audit()
        outcomes = {}
        for check in audit.results:
            if check.fix_action and check.status != CheckStatus.PASS:
                outcomes[check.check_name] = self.run_fix(check.fix_action)
        total = sum(r.fixed for r in outcomes.values())
        logger.info(f"Ran {len(outcomes)} fixes, {total} records repaired")
        return outcomes

    def _fix_booked_by_missing(self, session) -> int:
        fixed = 0
        for appointment in self._booked_by_candidates(session):
            if appointment.intro_owner and appointment.intro_owner.strip():
                appointment.booked_by = appointment.intro_owner
                fixed += 1
        return fixed

    def _fix_vip_booking_types(self, session) -> int:
        rows = self._vip_mismatch_query(session).all()
        for appointment in rows:
            appointment.booking_type = "vip"
        return len(rows)

    def _fix_questionnaire_statuses(self, session) -> int:
        rows = self._questionnaire_mismatches(session)
        for appointment in rows:
            appointment.questionnaire_status = "completed"
        return len(rows)

    def _fix_followup_resolved(self, session) -> int:
        ids = [entry.id for entry in self._stale_follow_ups(session)]
        return self.db.follow_ups.retire(ids, session=session)

    def _fix_leads_already_in_system(self, session) -> int:
        ids = [lead.id for lead in self._leads_already_in_system(session)]
        return self.db.leads.set_stage(
            ids, "already_in_system", session=session
        )

    def _fix_phone_from_leads(self, session) -> int:
        lead_phones = self._lead_phone_by_email(session)
        fixed = 0
        for appointment in self._phone_missing(session):
            if not appointment.email:
                continue
            phone = lead_phones.get(appointment.email.strip().lower())
            if phone:
                appointment.phone = phone
                appointment.phone_source = "copied_from_lead"
                fixed += 1
        return fixed

    def _fix_second_visit_phones(self, session) -> int:
        fixed = 0
        for appointment in self._second_visits_missing_phone(session):
            origin = session.get(
                Appointment, appointment.originating_appointment_id
            )
            if origin is None or not origin.phone:
                continue
            appointment.phone = normalize_phone(origin.phone) or origin.phone
            appointment.phone_source = "inherited_from_original"
            fixed += 1
        return fixed

    def _fix_commission_from_policy(self, session) -> int:
        fixed = 0
        for run in self._zero_commission_runs(session):
            amount = compute_commission(
                CanonicalResult(run.result_canon), self.policy
            )
            if amount > Decimal("0"):
                run.commission_amount = amount
                fixed += 1
        return fixed

    def _fix_outcome_status_sync(self, session) -> int:
        now = self._clock()
        mismatches = self._status_mismatches(session)
        for appointment, expected in mismatches:
            appointment.status = expected.value
            appointment.last_edited_by = "consistency_auditor"
            appointment.last_edited_at = now
            appointment.edit_reason = "Status synced to recorded outcome"
        return len(mismatches)

    # ================================================================
    # 审计历史
    # ================================================================

    def save_run(self, audit: AuditRunResult,
                 run_by: Optional[str] = None) -> int:
        """保存审计汇总（自动裁剪为最近 N 次）。"""
        return self.db.audit_runs.save(audit.to_dict(), run_by=run_by)

    def get_history(self, limit: int = 30) -> List[Dict[str, Any]]:
        """最近的审计汇总（新在前）。"""
        return self.db.get_audit_history(limit)
