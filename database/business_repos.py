"""业务记录仓库 —— 核心业务数据的数据访问层。

管理销售漏斗中的核心业务记录（预约、到课记录、跟进队列）。
预约状态与到课结果只应由 OutcomeOrchestrator 写入；
这里提供的是不含业务规则的读写原语。
"""
from typing import Optional, List, Dict, Any
from datetime import date, datetime
from sqlalchemy.orm import Session
from loguru import logger

from .base_crud import BaseCRUD
from .connection import DatabaseConnection
from .models import Appointment, Run, FollowUpEntry

# 仍在队列中、尚未处理的跟进状态
ACTIVE_FOLLOW_UP_STATUSES = ("pending", "snoozed")


class AppointmentRepository(BaseCRUD):
    """预约 仓库。"""

    def __init__(self, conn: DatabaseConnection) -> None:
        super().__init__(conn)

    def create(self, data: Dict[str, Any],
               session: Optional[Session] = None) -> Appointment:
        """创建预约。

        Args:
            data: 预约数据字典，支持以下键：
                - member_name: 客户姓名（必填）
                - class_date: 上课日期，YYYY-MM-DD 或 date 对象（必填）
                - class_time: 上课时间 HH:MM（可选）
                - class_start_at: 上课开始时间戳（可选）
                - status: 规范化状态（可选，默认 active）
                - booking_type / lead_source / booked_by / intro_owner
                  / coach_name / phone / email / phone_source（可选）
                - is_vip / is_comp / ignore_from_metrics（可选，默认 False）
                - questionnaire_status（可选，默认 not_sent）
                - originating_appointment_id（可选）
            session: 外部会话（可选）。

        Returns:
            新建的 Appointment 对象。

        Raises:
            ValueError: 缺少姓名或日期格式无效。
        """
        if not data.get("member_name"):
            raise ValueError("Appointment member_name is required")
        class_date = self._parse_date(data.get("class_date"), "Class date")

        def _do(sess):
            appointment = Appointment(
                member_name=data["member_name"],
                class_date=class_date,
                class_time=data.get("class_time"),
                class_start_at=data.get("class_start_at"),
                status=data.get("status", "active"),
                booking_type=data.get("booking_type", "regular"),
                lead_source=data.get("lead_source"),
                booked_by=data.get("booked_by"),
                intro_owner=data.get("intro_owner"),
                coach_name=data.get("coach_name"),
                phone=data.get("phone"),
                email=data.get("email"),
                phone_source=data.get("phone_source"),
                is_vip=data.get("is_vip", False),
                is_comp=data.get("is_comp", False),
                ignore_from_metrics=data.get("ignore_from_metrics", False),
                questionnaire_status=data.get(
                    "questionnaire_status", "not_sent"
                ),
                originating_appointment_id=data.get(
                    "originating_appointment_id"
                ),
                extra_data=data.get("extra_data", {}),
            )
            sess.add(appointment)
            sess.flush()
            return appointment

        if session:
            return _do(session)

        with self._get_session() as sess:
            appointment = _do(sess)
            sess.commit()
            return appointment

    def get(self, appointment_id: int,
            session: Optional[Session] = None) -> Optional[Appointment]:
        """按ID获取预约。"""
        return self.get_by_id(Appointment, appointment_id, session=session)


class RunRepository(BaseCRUD):
    """到课记录 仓库。"""

    def __init__(self, conn: DatabaseConnection) -> None:
        super().__init__(conn)

    def create(self, data: Dict[str, Any],
               session: Optional[Session] = None) -> Run:
        """创建到课记录。

        仅用于导入或测试准备数据；正常流程中由编排器创建。
        commission_amount 不在可接受的键中。

        Args:
            data: 记录数据字典，支持以下键：
                - member_name: 客户姓名（必填）
                - appointment_id / run_date / run_time / coach_name
                  / intro_owner / lead_source / result / result_canon
                  / primary_objection / buy_date（可选）
                - is_vip / ignore_from_metrics（可选）

        Returns:
            新建的 Run 对象。
        """
        if not data.get("member_name"):
            raise ValueError("Run member_name is required")
        run_date = None
        if data.get("run_date") is not None:
            run_date = self._parse_date(data["run_date"], "Run date")

        def _do(sess):
            run = Run(
                appointment_id=data.get("appointment_id"),
                member_name=data["member_name"],
                run_date=run_date,
                run_time=data.get("run_time"),
                coach_name=data.get("coach_name"),
                intro_owner=data.get("intro_owner"),
                lead_source=data.get("lead_source"),
                result=data.get("result"),
                result_canon=data.get("result_canon", "unresolved"),
                primary_objection=data.get("primary_objection"),
                buy_date=data.get("buy_date"),
                is_vip=data.get("is_vip", False),
                ignore_from_metrics=data.get("ignore_from_metrics", False),
                extra_data=data.get("extra_data", {}),
            )
            sess.add(run)
            sess.flush()
            return run

        if session:
            return _do(session)

        with self._get_session() as sess:
            run = _do(sess)
            sess.commit()
            return run

    def get(self, run_id: int,
            session: Optional[Session] = None) -> Optional[Run]:
        """按ID获取到课记录。"""
        return self.get_by_id(Run, run_id, session=session)

    def get_latest_for_appointment(self, appointment_id: int,
                                   session: Optional[Session] = None
                                   ) -> Optional[Run]:
        """获取预约最近的一条到课记录（按创建顺序）。"""
        def _query(sess):
            return sess.query(Run).filter(
                Run.appointment_id == appointment_id
            ).order_by(Run.id.desc()).first()

        if session:
            return _query(session)

        with self._get_session() as sess:
            return _query(sess)


class FollowUpRepository(BaseCRUD):
    """跟进队列 仓库。

    批量写入遵循“先删后插”：同一预约的 (appointment_id, touch_number)
    唯一，插入新一批前必须先删除旧批次。
    """

    def __init__(self, conn: DatabaseConnection) -> None:
        super().__init__(conn)

    def add_batch(self, entries: List[Dict[str, Any]],
                  session: Optional[Session] = None) -> List[FollowUpEntry]:
        """批量插入跟进记录。

        Args:
            entries: 跟进记录字典列表（键与 FollowUpEntry 字段一致）。

        Returns:
            新建的 FollowUpEntry 列表。
        """
        def _do(sess):
            records = [FollowUpEntry(**entry) for entry in entries]
            sess.add_all(records)
            sess.flush()
            return records

        if session:
            return _do(session)

        with self._get_session() as sess:
            records = _do(sess)
            sess.commit()
            return records

    def delete_for_appointment(self, appointment_id: int,
                               statuses: Optional[tuple] = None,
                               session: Optional[Session] = None) -> int:
        """删除预约的跟进记录。

        Args:
            appointment_id: 预约ID。
            statuses: 仅删除这些状态的记录；为 None 时删除全部。

        Returns:
            删除的记录数。
        """
        def _do(sess):
            query = sess.query(FollowUpEntry).filter(
                FollowUpEntry.appointment_id == appointment_id
            )
            if statuses:
                query = query.filter(FollowUpEntry.status.in_(statuses))
            return query.delete(synchronize_session=False)

        if session:
            count = _do(session)
        else:
            with self._get_session() as sess:
                count = _do(sess)
                sess.commit()
        if count:
            logger.debug(
                f"Deleted {count} follow-up entries for appointment "
                f"{appointment_id}"
            )
        return count

    def delete_active(self, appointment_id: int,
                      session: Optional[Session] = None) -> int:
        """删除预约尚未处理（pending / snoozed）的跟进记录，保留已发送历史。"""
        return self.delete_for_appointment(
            appointment_id, statuses=ACTIVE_FOLLOW_UP_STATUSES,
            session=session
        )

    def replace_batch(self, appointment_id: int,
                      entries: List[Dict[str, Any]],
                      session: Optional[Session] = None
                      ) -> List[FollowUpEntry]:
        """先删除预约的旧批次，再插入新批次。"""
        def _do(sess):
            self.delete_for_appointment(appointment_id, session=sess)
            return self.add_batch(entries, session=sess)

        if session:
            return _do(session)

        with self._get_session() as sess:
            records = _do(sess)
            sess.commit()
            return records

    def get_for_appointment(self, appointment_id: int,
                            session: Optional[Session] = None
                            ) -> List[FollowUpEntry]:
        """获取预约的跟进记录（按触达次数排序）。"""
        def _query(sess):
            return sess.query(FollowUpEntry).filter(
                FollowUpEntry.appointment_id == appointment_id
            ).order_by(FollowUpEntry.touch_number).all()

        if session:
            return _query(session)

        with self._get_session() as sess:
            return _query(sess)

    def has_batch(self, appointment_id: int, person_type: str,
                  session: Optional[Session] = None) -> bool:
        """预约是否已有该触发类型的跟进记录（任意状态）。"""
        def _query(sess):
            return sess.query(FollowUpEntry.id).filter(
                FollowUpEntry.appointment_id == appointment_id,
                FollowUpEntry.person_type == person_type,
            ).first() is not None

        if session:
            return _query(session)

        with self._get_session() as sess:
            return _query(sess)

    def get_due(self, today: date, include_vip: bool = False,
                session: Optional[Session] = None) -> List[FollowUpEntry]:
        """获取到期待发送的跟进记录。

        包括计划日期已到的 pending 记录，以及暂缓已到期的 snoozed 记录。
        VIP 客户默认排除（由专人跟进）。
        """
        def _query(sess):
            query = sess.query(FollowUpEntry).filter(
                FollowUpEntry.scheduled_date <= today,
                (
                    (FollowUpEntry.status == "pending")
                    | (
                        (FollowUpEntry.status == "snoozed")
                        & (FollowUpEntry.snoozed_until <= today)
                    )
                ),
            )
            if not include_vip:
                query = query.filter(FollowUpEntry.is_vip.is_(False))
            return query.order_by(
                FollowUpEntry.scheduled_date, FollowUpEntry.id
            ).all()

        if session:
            return _query(session)

        with self._get_session() as sess:
            return _query(sess)

    def mark_sent(self, entry_id: int, editor: str,
                  session: Optional[Session] = None
                  ) -> Optional[FollowUpEntry]:
        """标记跟进已发送。"""
        return self.update_by_id(
            FollowUpEntry, entry_id, session=session,
            status="sent", sent_at=datetime.utcnow(), sent_by=editor
        )

    def snooze(self, entry_id: int, until: date,
               session: Optional[Session] = None
               ) -> Optional[FollowUpEntry]:
        """暂缓跟进到指定日期。"""
        return self.update_by_id(
            FollowUpEntry, entry_id, session=session,
            status="snoozed", snoozed_until=until
        )

    def retire(self, entry_ids: List[int],
               session: Optional[Session] = None) -> int:
        """将跟进记录软退役为 dormant。

        Returns:
            更新的记录数。
        """
        if not entry_ids:
            return 0

        def _do(sess):
            return sess.query(FollowUpEntry).filter(
                FollowUpEntry.id.in_(entry_ids)
            ).update({"status": "dormant"}, synchronize_session=False)

        if session:
            return _do(session)

        with self._get_session() as sess:
            count = _do(sess)
            sess.commit()
            return count
