"""系统数据仓库 —— 系统级数据的数据访问层。

管理系统辅助数据（结果事件、忠诚计数日志、审计运行记录），
这些数据用于追溯、统计和数据健康监控。
"""
from typing import Optional, List, Dict, Any
from datetime import date, datetime
from sqlalchemy.orm import Session
from loguru import logger

from .base_crud import BaseCRUD
from .connection import DatabaseConnection
from .models import OutcomeEvent, LoyaltyLogEntry, AuditRunLog


class OutcomeEventRepository(BaseCRUD):
    """结果事件 仓库（只追加）。"""

    def __init__(self, conn: DatabaseConnection) -> None:
        super().__init__(conn)

    def append(self, event_data: Dict[str, Any],
               session: Optional[Session] = None) -> int:
        """写入一条结果事件。

        Args:
            event_data: 事件数据字典，支持以下键：
                - appointment_id / run_id: 关联记录（可选）
                - old_result / new_result: 新旧结果
                - old_status / new_status: 新旧预约状态
                - edited_by: 操作人（必填）
                - source_component: 来源组件（必填）
                - edit_reason: 原因说明（可选）
                - metadata: 副作用元数据（可选）

        Returns:
            新建事件ID。
        """
        def _do(sess):
            event = OutcomeEvent(
                appointment_id=event_data.get("appointment_id"),
                run_id=event_data.get("run_id"),
                old_result=event_data.get("old_result"),
                new_result=event_data.get("new_result"),
                old_status=event_data.get("old_status"),
                new_status=event_data.get("new_status"),
                edited_by=event_data["edited_by"],
                source_component=event_data["source_component"],
                edit_reason=event_data.get("edit_reason"),
                event_metadata=event_data.get("metadata", {}),
            )
            sess.add(event)
            sess.flush()
            return event.id

        if session:
            return _do(session)

        with self._get_session() as sess:
            event_id = _do(sess)
            sess.commit()
            return event_id

    def get_for_appointment(self, appointment_id: int,
                            session: Optional[Session] = None
                            ) -> List[OutcomeEvent]:
        """获取预约的所有结果事件（按写入顺序）。"""
        return self.get_all(
            OutcomeEvent, filters={"appointment_id": appointment_id},
            session=session
        )


class LoyaltyRepository(BaseCRUD):
    """忠诚计数日志 仓库。

    计数器只增不减；当前值为最新一条日志的 value。
    """

    def __init__(self, conn: DatabaseConnection, baseline: int = 0) -> None:
        super().__init__(conn)
        self.baseline = baseline

    def current_value(self, session: Optional[Session] = None) -> int:
        """获取当前计数（日志为空时返回基线值）。"""
        def _query(sess):
            latest = sess.query(LoyaltyLogEntry).order_by(
                LoyaltyLogEntry.id.desc()
            ).first()
            return latest.value if latest else self.baseline

        if session:
            return _query(session)

        with self._get_session() as sess:
            return _query(sess)

    def increment(self, note: str, created_by: str,
                  logged_date: Optional[date] = None,
                  session: Optional[Session] = None) -> int:
        """追加一条 latest + 1 的日志。

        Returns:
            递增后的计数值。
        """
        def _do(sess):
            new_value = self.current_value(session=sess) + 1
            sess.add(LoyaltyLogEntry(
                logged_date=logged_date or date.today(),
                value=new_value,
                note=note,
                created_by=created_by,
            ))
            sess.flush()
            return new_value

        if session:
            return _do(session)

        with self._get_session() as sess:
            value = _do(sess)
            sess.commit()
            return value


class AuditRunRepository(BaseCRUD):
    """审计运行记录 仓库。

    每次保存后只保留最近 keep 条记录。
    """

    def __init__(self, conn: DatabaseConnection, keep: int = 30) -> None:
        super().__init__(conn)
        self.keep = keep

    def save(self, summary: Dict[str, Any], run_by: Optional[str] = None,
             session: Optional[Session] = None) -> int:
        """保存审计汇总并裁剪旧记录。

        Args:
            summary: 审计汇总，键包括 timestamp / total_checks /
                pass_count / warn_count / fail_count / results。
            run_by: 触发人（可选）。

        Returns:
            新记录ID。
        """
        def _do(sess):
            run_at = summary.get("timestamp")
            if isinstance(run_at, str):
                run_at = datetime.fromisoformat(run_at)
            record = AuditRunLog(
                run_at=run_at or datetime.utcnow(),
                run_by=run_by,
                total_checks=summary.get("total_checks", 0),
                pass_count=summary.get("pass_count", 0),
                warn_count=summary.get("warn_count", 0),
                fail_count=summary.get("fail_count", 0),
                results=summary.get("results", []),
            )
            sess.add(record)
            sess.flush()
            self._prune(sess)
            return record.id

        if session:
            return _do(session)

        with self._get_session() as sess:
            record_id = _do(sess)
            sess.commit()
            return record_id

    def _prune(self, sess: Session) -> int:
        keep_ids = [
            row.id for row in sess.query(AuditRunLog.id).order_by(
                AuditRunLog.id.desc()
            ).limit(self.keep).all()
        ]
        pruned = sess.query(AuditRunLog).filter(
            AuditRunLog.id.notin_(keep_ids)
        ).delete(synchronize_session=False)
        if pruned:
            logger.debug(f"Pruned {pruned} old audit runs")
        return pruned

    def get_history(self, limit: int = 30,
                    session: Optional[Session] = None) -> List[AuditRunLog]:
        """获取最近的审计记录（新在前）。"""
        def _query(sess):
            return sess.query(AuditRunLog).order_by(
                AuditRunLog.id.desc()
            ).limit(limit).all()

        if session:
            return _query(session)

        with self._get_session() as sess:
            return _query(sess)
