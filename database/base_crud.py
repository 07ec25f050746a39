"""通用 CRUD 基类。

所有仓库继承 BaseCRUD 获得按主键读写、按条件列表查询等通用能力。
每个方法都接受可选的外部会话：传入时在调用方事务内执行且不提交，
未传入时自行开启会话并提交。
"""
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Type, TypeVar

from sqlalchemy.orm import Session

from .connection import DatabaseConnection

ModelT = TypeVar("ModelT")


class BaseCRUD:
    """通用 CRUD 操作。

    Attributes:
        conn: 数据库连接管理器。
    """

    def __init__(self, conn: DatabaseConnection) -> None:
        self.conn = conn

    def _get_session(self) -> Session:
        return self.conn.get_session()

    def get_by_id(self, model: Type[ModelT], record_id: int,
                  session: Optional[Session] = None) -> Optional[ModelT]:
        """按主键获取记录。

        Returns:
            ORM 对象，不存在时返回 None。
        """
        if session:
            return session.get(model, record_id)

        with self._get_session() as sess:
            return sess.get(model, record_id)

    def get_all(self, model: Type[ModelT],
                filters: Optional[Dict[str, Any]] = None,
                session: Optional[Session] = None) -> List[ModelT]:
        """按等值条件获取记录列表（按主键升序）。"""
        def _query(sess):
            query = sess.query(model)
            if filters:
                query = query.filter_by(**filters)
            return query.order_by(model.id).all()

        if session:
            return _query(session)

        with self._get_session() as sess:
            return _query(sess)

    def update_by_id(self, model: Type[ModelT], record_id: int,
                     session: Optional[Session] = None,
                     **fields: Any) -> Optional[ModelT]:
        """按主键更新字段。

        Returns:
            更新后的 ORM 对象，不存在时返回 None。
        """
        def _do(sess):
            record = sess.get(model, record_id)
            if record is None:
                return None
            for key, value in fields.items():
                setattr(record, key, value)
            sess.flush()
            return record

        if session:
            return _do(session)

        with self._get_session() as sess:
            record = _do(sess)
            sess.commit()
            return record

    @staticmethod
    def _parse_date(date_value: Any, field_name: str = "Date") -> date:
        """解析日期值。

        Args:
            date_value: 日期值（str、date 或 datetime 对象）。
            field_name: 字段名称（用于错误提示）。

        Returns:
            date 对象。

        Raises:
            ValueError: 格式无效或缺失。
        """
        if isinstance(date_value, datetime):
            return date_value.date()
        if isinstance(date_value, date):
            return date_value
        if isinstance(date_value, str):
            try:
                return datetime.strptime(date_value, "%Y-%m-%d").date()
            except ValueError:
                raise ValueError(
                    f"Invalid date format: {date_value}, "
                    f"expected YYYY-MM-DD"
                )
        raise ValueError(f"{field_name} is required")
