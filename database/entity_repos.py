"""实体仓库 —— 基础实体的数据访问层。

管理销售漏斗中的基础实体（线索、问卷）。
每个仓库继承 BaseCRUD 获得通用能力，并添加领域特定的查询方法。
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from .base_crud import BaseCRUD
from .connection import DatabaseConnection
from .models import Lead, Questionnaire


class LeadRepository(BaseCRUD):
    """线索 仓库。"""

    def __init__(self, conn: DatabaseConnection) -> None:
        super().__init__(conn)

    def create(self, lead_data: Dict[str, Any],
               session: Optional[Session] = None) -> Lead:
        """创建线索。

        Args:
            lead_data: 线索数据字典，支持以下键：
                - first_name: 名（必填）
                - last_name / phone / email / source: 可选
                - stage: 阶段（可选，默认 new）
            session: 外部会话（可选）。

        Returns:
            新建的 Lead 对象。

        Raises:
            ValueError: 缺少 first_name。
        """
        if not lead_data.get("first_name"):
            raise ValueError("Lead first_name is required")

        def _do(sess):
            lead = Lead(
                first_name=lead_data["first_name"],
                last_name=lead_data.get("last_name"),
                phone=lead_data.get("phone"),
                email=lead_data.get("email"),
                source=lead_data.get("source"),
                stage=lead_data.get("stage", "new"),
                extra_data=lead_data.get("extra_data", {}),
            )
            sess.add(lead)
            sess.flush()
            return lead

        if session:
            return _do(session)

        with self._get_session() as sess:
            lead = _do(sess)
            sess.commit()
            return lead

    def set_stage(self, lead_ids: List[int], stage: str,
                  session: Optional[Session] = None) -> int:
        """批量更新线索阶段。

        Returns:
            更新的记录数。
        """
        if not lead_ids:
            return 0

        def _do(sess):
            return sess.query(Lead).filter(
                Lead.id.in_(lead_ids)
            ).update({"stage": stage}, synchronize_session=False)

        if session:
            return _do(session)

        with self._get_session() as sess:
            count = _do(sess)
            sess.commit()
            return count


class QuestionnaireRepository(BaseCRUD):
    """预约问卷 仓库。"""

    COMPLETED_STATUSES = ("completed", "submitted")

    def __init__(self, conn: DatabaseConnection) -> None:
        super().__init__(conn)

    def create(self, appointment_id: int, status: str = "sent",
               session: Optional[Session] = None) -> Questionnaire:
        """为预约创建问卷记录。"""
        def _do(sess):
            questionnaire = Questionnaire(
                appointment_id=appointment_id,
                status=status,
                completed_at=(
                    datetime.utcnow()
                    if status in self.COMPLETED_STATUSES else None
                ),
            )
            sess.add(questionnaire)
            sess.flush()
            return questionnaire

        if session:
            return _do(session)

        with self._get_session() as sess:
            questionnaire = _do(sess)
            sess.commit()
            return questionnaire
