"""业务记录仓库：核心业务数据的数据访问层。

管理预约、财务流水（含分账）、赊账还款、预付套餐和提成发放，
这些记录是日常经营活动产生的交易数据。

仓库只做查询与持久化，金额计算和状态规则在 business 包中完成。
"""
from typing import Optional, List, Dict, Any, Set
from datetime import date, datetime, time, timedelta
from sqlalchemy import and_
from sqlalchemy.orm import Session

from .base_crud import BaseCRUD
from .connection import DatabaseConnection
from .models import (
    Appointment, LedgerEntry, LedgerSplit, CreditPayment,
    Package, PackageUsage, CommissionPayment
)


def _day_bounds(day: date):
    start = datetime.combine(day, time(0, 0))
    return start, start + timedelta(days=1)


class AppointmentRepository(BaseCRUD):
    """预约仓库。"""

    def __init__(self, conn: DatabaseConnection) -> None:
        super().__init__(conn)

    def require(self, appointment_id: int,
                session: Optional[Session] = None) -> Appointment:
        return self.get_required(Appointment, appointment_id, session=session)

    def get_by_day(self, day: date, worker_id: Optional[int] = None,
                   include_cancelled: bool = True,
                   session: Optional[Session] = None) -> List[Appointment]:
        """获取某一天的预约，按员工和开始时间排序。

        Args:
            day: 目标日期。
            worker_id: 只看某位员工（可选）。
            include_cancelled: 是否包含已取消的预约。
            session: 外部会话（可选）。
        """
        start, end = _day_bounds(day)

        def _query(sess):
            query = sess.query(Appointment).filter(
                Appointment.start_time >= start,
                Appointment.start_time < end,
            )
            if worker_id is not None:
                query = query.filter(Appointment.worker_id == worker_id)
            if not include_cancelled:
                query = query.filter(Appointment.status != "cancelled")
            return query.order_by(
                Appointment.worker_id, Appointment.start_time
            ).all()

        if session:
            return _query(session)

        with self._get_session() as sess:
            return _query(sess)

    def get_blocking(self, worker_id: int, day: date,
                     session: Optional[Session] = None) -> List[Appointment]:
        """同一员工当天仍占用时间的预约（已取消的不占用）。"""
        return self.get_by_day(
            day, worker_id=worker_id, include_cancelled=False, session=session
        )

    def get_due(self, now: datetime,
                session: Optional[Session] = None) -> List[Appointment]:
        """所有 ``pending`` 且 ``start_time <= now`` 的预约。"""
        def _query(sess):
            return sess.query(Appointment).filter(
                and_(
                    Appointment.status == "pending",
                    Appointment.start_time <= now,
                )
            ).order_by(Appointment.start_time, Appointment.id).all()

        if session:
            return _query(session)

        with self._get_session() as sess:
            return _query(sess)


class LedgerRepository(BaseCRUD):
    """财务流水仓库（含共享服务分账）。"""

    def __init__(self, conn: DatabaseConnection) -> None:
        super().__init__(conn)

    def require(self, entry_id: int,
                session: Optional[Session] = None) -> LedgerEntry:
        return self.get_required(LedgerEntry, entry_id, session=session)

    def replace_splits(self, entry: LedgerEntry,
                       splits: List[Dict[str, Any]],
                       session: Session) -> List[LedgerSplit]:
        """用新的分账明细替换流水上已有的分账。

        必须在调用方的工作单元内执行。
        """
        if entry.splits:
            entry.splits.clear()
            session.flush()

        created = [LedgerSplit(**data) for data in splits]
        entry.splits.extend(created)
        session.flush()
        entry.is_shared = bool(created)
        return created

    def get_by_date_range(self, start: date, end: date,
                          worker_id: Optional[int] = None,
                          session: Optional[Session] = None
                          ) -> List[LedgerEntry]:
        """按服务日期获取流水（含两端日期）。"""
        range_start, _ = _day_bounds(start)
        _, range_end = _day_bounds(end)

        def _query(sess):
            query = sess.query(LedgerEntry).filter(
                LedgerEntry.date >= range_start,
                LedgerEntry.date < range_end,
            )
            if worker_id is not None:
                query = query.filter(LedgerEntry.worker_id == worker_id)
            return query.order_by(LedgerEntry.date, LedgerEntry.id).all()

        if session:
            return _query(session)

        with self._get_session() as sess:
            return _query(sess)

    def get_pending_credits(self, client_id: Optional[int] = None,
                            session: Optional[Session] = None
                            ) -> List[LedgerEntry]:
        """获取所有未结清的赊账流水。"""
        def _query(sess):
            query = sess.query(LedgerEntry).filter(
                LedgerEntry.is_credit.is_(True),
                LedgerEntry.status == "pending",
            )
            if client_id is not None:
                query = query.filter(LedgerEntry.client_id == client_id)
            return query.order_by(LedgerEntry.date).all()

        if session:
            return _query(session)

        with self._get_session() as sess:
            return _query(sess)


class CreditPaymentRepository(BaseCRUD):
    """赊账还款仓库。"""

    def __init__(self, conn: DatabaseConnection) -> None:
        super().__init__(conn)

    def get_by_entry(self, ledger_entry_id: int,
                     session: Optional[Session] = None
                     ) -> Optional[CreditPayment]:
        def _query(sess):
            return sess.query(CreditPayment).filter(
                CreditPayment.ledger_entry_id == ledger_entry_id
            ).first()

        if session:
            return _query(session)

        with self._get_session() as sess:
            return _query(sess)

    def get_by_date_range(self, start: date, end: date,
                          session: Optional[Session] = None
                          ) -> List[CreditPayment]:
        """按还款日期获取还款记录（含两端日期）。"""
        def _query(sess):
            return sess.query(CreditPayment).filter(
                CreditPayment.payment_date >= start,
                CreditPayment.payment_date <= end,
            ).order_by(CreditPayment.payment_date, CreditPayment.id).all()

        if session:
            return _query(session)

        with self._get_session() as sess:
            return _query(sess)


class PackageRepository(BaseCRUD):
    """预付套餐仓库。"""

    def __init__(self, conn: DatabaseConnection) -> None:
        super().__init__(conn)

    def require(self, package_id: int,
                session: Optional[Session] = None) -> Package:
        return self.get_required(Package, package_id, session=session)

    def get_by_client(self, client_id: int, active_only: bool = False,
                      session: Optional[Session] = None) -> List[Package]:
        filters: Dict[str, Any] = {"client_id": client_id}
        if active_only:
            filters["status"] = "active"
        return self.get_all(Package, filters=filters, session=session)

    def get_expirable(self, today: date,
                      session: Optional[Session] = None) -> List[Package]:
        """``active`` 且 ``valid_until`` 早于今天的套餐。"""
        def _query(sess):
            return sess.query(Package).filter(
                Package.status == "active",
                Package.valid_until.isnot(None),
                Package.valid_until < today,
            ).order_by(Package.id).all()

        if session:
            return _query(session)

        with self._get_session() as sess:
            return _query(sess)

    def get_usages(self, package_id: int,
                   session: Optional[Session] = None) -> List[PackageUsage]:
        return self.get_all(
            PackageUsage, filters={"package_id": package_id}, session=session
        )


class CommissionPaymentRepository(BaseCRUD):
    """提成发放仓库。"""

    def __init__(self, conn: DatabaseConnection) -> None:
        super().__init__(conn)

    def get_recent(self, worker_id: Optional[int] = None, limit: int = 50,
                   session: Optional[Session] = None
                   ) -> List[CommissionPayment]:
        """最近的发放记录，按发放时间倒序。"""
        def _query(sess):
            query = sess.query(CommissionPayment)
            if worker_id is not None:
                query = query.filter(CommissionPayment.worker_id == worker_id)
            return query.order_by(
                CommissionPayment.paid_at.desc(), CommissionPayment.id.desc()
            ).limit(limit).all()

        if session:
            return _query(session)

        with self._get_session() as sess:
            return _query(sess)

    def paid_entry_ids(self, worker_id: Optional[int] = None,
                       session: Optional[Session] = None
                       ) -> Dict[int, Set[int]]:
        """已发放过提成的流水ID，按员工分组。

        共享服务的一条流水可能属于多位员工，因此"已发放"按 (员工, 流水) 判断。
        """
        filters = {"worker_id": worker_id} if worker_id is not None else None
        paid: Dict[int, Set[int]] = {}
        for payment in self.get_all(CommissionPayment, filters=filters, session=session):
            paid.setdefault(payment.worker_id, set()).update(payment.ledger_entry_ids or [])
        return paid
