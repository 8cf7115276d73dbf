"""系统数据仓库：审计事件的数据访问层。

每次状态迁移与结算都写入一条 AuditEvent（修改前后快照），
与业务写入处于同一个工作单元，同时通过 loguru 输出日志，
供外部审计模块消费。
"""
from typing import Optional, List, Dict, Any
from datetime import date, datetime
from decimal import Decimal
from sqlalchemy.orm import Session
from loguru import logger

from .base_crud import BaseCRUD
from .connection import DatabaseConnection
from .models import AuditEvent


def _json_safe(value: Any) -> Any:
    """把快照中的 Decimal / datetime 转换为可写入 JSON 列的值。"""
    if isinstance(value, dict):
        return {k: _json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_safe(v) for v in value]
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, datetime):
        return value.strftime("%Y-%m-%d %H:%M:%S")
    if isinstance(value, date):
        return value.isoformat()
    return value


class AuditRepository(BaseCRUD):
    """审计事件仓库。"""

    def __init__(self, conn: DatabaseConnection) -> None:
        super().__init__(conn)

    def record(self, entity_type: str, entity_id: int, action: str,
               before: Optional[Dict[str, Any]] = None,
               after: Optional[Dict[str, Any]] = None,
               session: Optional[Session] = None) -> AuditEvent:
        """写入一条审计事件。

        Args:
            entity_type: 实体类型（appointment / ledger_entry / package / credit_payment / commission_payment）。
            entity_id: 实体ID。
            action: 动作（create / update / delete / transition / settle / cancel）。
            before: 修改前快照（可选）。
            after: 修改后快照（可选）。
            session: 外部会话（可选，传入时与业务写入同一事务）。

        Returns:
            AuditEvent 对象。
        """
        logger.info(
            f"Audit {entity_type}#{entity_id} {action}: "
            f"{_json_safe(before)} -> {_json_safe(after)}"
        )
        return self.create(
            AuditEvent,
            session=session,
            entity_type=entity_type,
            entity_id=entity_id,
            action=action,
            before=_json_safe(before),
            after=_json_safe(after),
        )

    def get_for_entity(self, entity_type: str, entity_id: int,
                       session: Optional[Session] = None) -> List[AuditEvent]:
        """获取某个实体的全部审计事件（按时间先后）。"""
        return self.get_all(
            AuditEvent,
            filters={"entity_type": entity_type, "entity_id": entity_id},
            session=session,
        )

    def get_recent(self, limit: int = 50,
                   session: Optional[Session] = None) -> List[AuditEvent]:
        def _query(sess):
            return sess.query(AuditEvent).order_by(
                AuditEvent.id.desc()
            ).limit(limit).all()

        if session:
            return _query(session)

        with self._get_session() as sess:
            return _query(sess)
