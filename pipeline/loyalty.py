"""忠诚计数服务

累计成交数的计数器（只增不减）。每条到课记录最多计数一次，
由记录上的 loyalty_incremented_at / loyalty_incremented_by 标记保证幂等。
"""
from datetime import datetime
from typing import Callable, Optional

from loguru import logger
from sqlalchemy.orm import Session

from config.policy import PipelinePolicy, pipeline_policy
from database import DatabaseManager
from database.models import Run
from .errors import RecordNotFoundError
from .normalizer import CanonicalResult, is_sale_result


class LoyaltyCounterService:
    """忠诚计数服务"""

    def __init__(self, db: DatabaseManager,
                 policy: Optional[PipelinePolicy] = None,
                 clock: Optional[Callable[[], datetime]] = None) -> None:
        self.db = db
        self.policy = policy or pipeline_policy
        self._clock = clock or datetime.utcnow

    def is_eligible(self, run: Run) -> bool:
        """到课记录是否满足计数条件。

        条件：规范化结果为成交档位、幂等标记未设置、
        未被排除在统计之外、线索来源不在排除名单中。
        """
        if not is_sale_result(CanonicalResult(run.result_canon)):
            return False
        if run.loyalty_incremented_at is not None:
            return False
        if run.ignore_from_metrics:
            return False
        lead_source = run.lead_source
        if not lead_source and run.appointment is not None:
            lead_source = run.appointment.lead_source
        return not self.policy.is_loyalty_excluded(lead_source)

    def increment_if_eligible(self, run_id: int, editor: str,
                              session: Optional[Session] = None) -> bool:
        """满足条件时计数 +1，并在同一事务中写入幂等标记。

        Args:
            run_id: 到课记录ID。
            editor: 操作人。
            session: 外部会话（可选，传入时由调用方提交）。

        Returns:
            是否执行了计数。

        Raises:
            RecordNotFoundError: 到课记录不存在。
        """
        def _do(sess):
            run = self.db.runs.get(run_id, session=sess)
            if run is None:
                raise RecordNotFoundError("Run", run_id)
            if not self.is_eligible(run):
                return False

            now = self._clock()
            value = self.db.loyalty.increment(
                note=f"Run {run.id}: {run.member_name} ({run.result})",
                created_by=editor,
                logged_date=now.date(),
                session=sess,
            )
            run.loyalty_incremented_at = now
            run.loyalty_incremented_by = editor
            sess.flush()
            logger.info(
                f"Loyalty counter incremented to {value} by run {run.id}"
            )
            return True

        if session:
            return _do(session)

        with self.db.get_session() as sess:
            incremented = _do(sess)
            sess.commit()
            return incremented

    def current_value(self) -> int:
        """当前计数。"""
        return self.db.loyalty.current_value()
