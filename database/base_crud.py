"""通用 CRUD 基类。

所有仓库继承 BaseCRUD，获得：
- 会话获取（``_get_session``）
- 按模型的通用增删改查
- 工作单元（``unit_of_work``）：一次提交，任何异常整体回滚

每个方法都接受可选的 ``session`` 参数。传入时在调用方的事务里执行、
不提交；不传时自行开启会话并提交。
"""
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Type

from loguru import logger
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from business.clock import parse_date
from business.errors import NotFoundError, PersistenceError

from .connection import DatabaseConnection


class BaseCRUD:
    """通用 CRUD 基类。

    Attributes:
        conn: 数据库连接管理器。
    """

    def __init__(self, conn: DatabaseConnection) -> None:
        self.conn = conn

    def _get_session(self) -> Session:
        return self.conn.get_session()

    @contextmanager
    def unit_of_work(self) -> Iterator[Session]:
        """开启一个工作单元。

        块正常结束时提交一次；抛出任何异常都会回滚。
        ``SQLAlchemyError`` 会被记录并转换为 PersistenceError，
        业务异常原样向上抛出。

        Example::

            with repo.unit_of_work() as session:
                repo.create(Worker, session=session, name="Ana")
        """
        session = self._get_session()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Unit of work rolled back: {e}")
            raise PersistenceError(f"Storage write failed: {e}") from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def create(self, model: Type[Any], session: Optional[Session] = None,
               **kwargs) -> Any:
        """创建一条记录。

        Args:
            model: ORM 模型类。
            session: 外部会话（可选）。
            **kwargs: 字段值。

        Returns:
            新建的 ORM 对象。
        """
        def _do(sess):
            obj = model(**kwargs)
            sess.add(obj)
            sess.flush()
            sess.refresh(obj)
            return obj

        if session:
            return _do(session)

        with self._get_session() as sess:
            obj = _do(sess)
            sess.commit()
            sess.refresh(obj)
            return obj

    def get_by_id(self, model: Type[Any], record_id: int,
                  session: Optional[Session] = None) -> Optional[Any]:
        """按主键获取记录，不存在返回 None。"""
        if session:
            return session.get(model, record_id)

        with self._get_session() as sess:
            return sess.get(model, record_id)

    def get_required(self, model: Type[Any], record_id: Any,
                     session: Optional[Session] = None) -> Any:
        """按主键获取记录，不存在时抛出 NotFoundError。"""
        obj = self.get_by_id(model, record_id, session=session) if record_id is not None else None
        if obj is None:
            raise NotFoundError(f"{model.__name__} {record_id} not found")
        return obj

    def get_all(self, model: Type[Any],
                filters: Optional[Dict[str, Any]] = None,
                limit: Optional[int] = None,
                session: Optional[Session] = None) -> List[Any]:
        """按等值条件查询记录列表。

        Args:
            model: ORM 模型类。
            filters: ``{字段名: 值}`` 等值过滤条件（可选）。
            limit: 最大返回条数（可选）。
            session: 外部会话（可选）。
        """
        def _query(sess):
            query = sess.query(model)
            for field, value in (filters or {}).items():
                query = query.filter(getattr(model, field) == value)
            query = query.order_by(model.id)
            if limit:
                query = query.limit(limit)
            return query.all()

        if session:
            return _query(session)

        with self._get_session() as sess:
            return _query(sess)

    def update_by_id(self, model: Type[Any], record_id: int,
                     session: Optional[Session] = None,
                     **kwargs) -> Optional[Any]:
        """按主键更新字段，记录不存在返回 None。"""
        def _do(sess):
            obj = sess.get(model, record_id)
            if obj is None:
                return None
            for field, value in kwargs.items():
                setattr(obj, field, value)
            sess.flush()
            return obj

        if session:
            return _do(session)

        with self._get_session() as sess:
            obj = _do(sess)
            if obj is not None:
                sess.commit()
                sess.refresh(obj)
            return obj

    def delete_by_id(self, model: Type[Any], record_id: int,
                     session: Optional[Session] = None) -> bool:
        """按主键删除记录。

        Returns:
            删除成功返回 True，记录不存在返回 False。
        """
        def _do(sess):
            obj = sess.get(model, record_id)
            if obj is None:
                return False
            sess.delete(obj)
            sess.flush()
            return True

        if session:
            return _do(session)

        with self._get_session() as sess:
            deleted = _do(sess)
            sess.commit()
            return deleted

    @staticmethod
    def _parse_date(value: Any, field_name: str = "Date"):
        """解析日期值（``YYYY-MM-DD`` 字符串或 date 对象）。

        Raises:
            ValidationError: 日期格式无效或缺失。
        """
        return parse_date(value, field_name)
