"""预约生命周期状态机。

::

    pending ──(到点，自动)──> executing ──(结算)──> completed
       │                          │
       └──────────(取消)──────────┴──> cancelled

``completed`` 与 ``cancelled`` 为终态。``pending → executing`` 由
``LifecycleService.advance_due`` 周期性扫描完成：一次事务内翻转所有
已到开始时间的预约，重复执行是幂等的，延迟执行也不会丢失。

套餐有自己的状态表：active → expired | completed | cancelled；expired → cancelled。
"""
from datetime import datetime
from enum import Enum
from typing import Dict, FrozenSet, List, Optional

from loguru import logger

from .clock import Clock, SystemClock
from .errors import StateError


class AppointmentStatus(str, Enum):
    PENDING = "pending"
    EXECUTING = "executing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class LedgerStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class PackageStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


APPOINTMENT_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    "pending": frozenset({"executing", "completed", "cancelled"}),
    "executing": frozenset({"completed", "cancelled"}),
    "completed": frozenset(),
    "cancelled": frozenset(),
}

PACKAGE_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    "active": frozenset({"expired", "completed", "cancelled"}),
    "expired": frozenset({"cancelled"}),
    "completed": frozenset(),
    "cancelled": frozenset(),
}


def _value(status) -> str:
    return status.value if isinstance(status, Enum) else str(status)


def can_transition(current, target,
                   table: Optional[Dict[str, FrozenSet[str]]] = None) -> bool:
    table = table or APPOINTMENT_TRANSITIONS
    return _value(target) in table.get(_value(current), frozenset())


def ensure_transition(current, target,
                      table: Optional[Dict[str, FrozenSet[str]]] = None) -> None:
    """校验状态迁移是否合法。

    Raises:
        StateError: 迁移不在状态表中（包括从终态迁出）。
    """
    if not can_transition(current, target, table):
        raise StateError(
            f"Invalid status transition: {_value(current)} -> {_value(target)}"
        )


def is_terminal(status) -> bool:
    return not APPOINTMENT_TRANSITIONS.get(_value(status), frozenset())


def ensure_editable(status) -> None:
    """只有非终态的预约才可以改期、调整时长或修改描述。"""
    if is_terminal(status):
        raise StateError(
            f"Appointment in status '{_value(status)}' can no longer be edited"
        )


def ensure_package_transition(current, target) -> None:
    ensure_transition(current, target, PACKAGE_TRANSITIONS)


class LifecycleService:
    """自动状态推进服务。

    Args:
        db: DatabaseManager。
        clock: 时钟（默认系统时钟）。
    """

    def __init__(self, db, clock: Optional[Clock] = None) -> None:
        self.db = db
        self.clock = clock or SystemClock()

    def advance_due(self, now: Optional[datetime] = None) -> List[int]:
        """把所有已到开始时间的 pending 预约翻转为 executing。

        同一次扫描也会把 ``valid_until`` 已过的 active 套餐标记为 expired。

        Args:
            now: 当前时间（默认取注入的时钟）。

        Returns:
            本次翻转的预约 ID 列表；没有到期预约时返回空列表。
        """
        now = now or self.clock.now()
        with self.db.unit_of_work() as session:
            due = self.db.appointments.get_due(now, session=session)
            for appointment in due:
                ensure_transition(appointment.status, AppointmentStatus.EXECUTING)
                appointment.status = AppointmentStatus.EXECUTING.value
                self.db.audit.record(
                    "appointment", appointment.id, "transition",
                    before={"status": AppointmentStatus.PENDING.value},
                    after={"status": AppointmentStatus.EXECUTING.value},
                    session=session,
                )
            expired = self._expire_packages(now, session)
            transitioned = [a.id for a in due]

        if transitioned:
            logger.info(f"Lifecycle scan moved {len(transitioned)} appointment(s) to executing: {transitioned}")
        if expired:
            logger.info(f"Lifecycle scan expired package(s): {expired}")
        return transitioned

    def _expire_packages(self, now: datetime, session) -> List[int]:
        expired = []
        for package in self.db.packages.get_expirable(now.date(), session=session):
            ensure_package_transition(package.status, PackageStatus.EXPIRED)
            package.status = PackageStatus.EXPIRED.value
            self.db.audit.record(
                "package", package.id, "transition",
                before={"status": PackageStatus.ACTIVE.value},
                after={"status": PackageStatus.EXPIRED.value},
                session=session,
            )
            expired.append(package.id)
        return expired

    def run_scan(self) -> List[int]:
        """调度器入口：用注入的时钟执行一次扫描。"""
        return self.advance_due(self.clock.now())
