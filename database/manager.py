"""数据库管理器：统一门面（Facade）。

DatabaseManager 是 database 模块的统一入口，组合了所有子仓库，
提供两套 API：

1. **子仓库访问**（细粒度）：
   通过 ``db.workers``、``db.appointments`` 等属性直接访问子仓库，
   返回 ORM 对象，适合业务服务在工作单元内组合使用。

2. **便捷方法**（粗粒度）：
   提供扁平化的方法（如 ``get_daily_appointments()``、``get_worker_list()``），
   返回字典/基本类型，适合 API 层直接输出。
"""
from typing import Optional, List, Dict, Any, Iterator, Union
from contextlib import contextmanager
from datetime import date
from sqlalchemy.orm import Session

from business.clock import format_hhmm, format_local, parse_date

from .connection import DatabaseConnection
from .entity_repos import (
    WorkerRepository, ClientRepository,
    ServiceCatalogRepository, PaymentMethodRepository
)
from .business_repos import (
    AppointmentRepository, LedgerRepository,
    CreditPaymentRepository, PackageRepository, CommissionPaymentRepository
)
from .system_repos import AuditRepository
from .models import (
    Appointment, LedgerEntry, CreditPayment, Package, PackageUsage, Worker,
    CommissionPayment
)


def _money(value) -> float:
    return float(value) if value is not None else 0.0


def appointment_to_dict(appointment: Appointment) -> Dict[str, Any]:
    """预约快照（审计与 API 输出共用）。"""
    return {
        "id": appointment.id,
        "worker_id": appointment.worker_id,
        "client_id": appointment.client_id,
        "start_time": format_local(appointment.start_time),
        "duration_minutes": appointment.duration_minutes,
        "service_description": appointment.service_description,
        "estimated_value": _money(appointment.estimated_value),
        "status": appointment.status,
        "ledger_entry_id": appointment.ledger_entry_id,
    }


def ledger_entry_to_dict(entry: LedgerEntry) -> Dict[str, Any]:
    """财务流水快照（含分账明细）。"""
    return {
        "id": entry.id,
        "worker_id": entry.worker_id,
        "client_id": entry.client_id,
        "date": format_local(entry.date),
        "end_time": entry.end_time,
        "service_names": entry.service_names,
        "entry_type": entry.entry_type,
        "value_total": _money(entry.value_total),
        "commission_worker": _money(entry.commission_worker),
        "commission_house": _money(entry.commission_house),
        "payment_fee_amount": _money(entry.payment_fee_amount),
        "payment_method": entry.payment_method,
        "status": entry.status,
        "is_credit": bool(entry.is_credit),
        "is_promotional": bool(entry.is_promotional),
        "reference_value": (
            _money(entry.reference_value)
            if entry.reference_value is not None else None
        ),
        "is_shared": bool(entry.is_shared),
        "paid_at": format_local(entry.paid_at) if entry.paid_at else None,
        "package_id": entry.package_id,
        "splits": [
            {
                "worker_id": s.worker_id,
                "share_value": _money(s.share_value),
                "commission_gross": _money(s.commission_gross),
                "fee_amount": _money(s.fee_amount),
                "commission_worker": _money(s.commission_worker),
            }
            for s in entry.splits
        ],
    }


def credit_payment_to_dict(payment: CreditPayment) -> Dict[str, Any]:
    return {
        "id": payment.id,
        "ledger_entry_id": payment.ledger_entry_id,
        "value_paid": _money(payment.value_paid),
        "payment_method": payment.payment_method,
        "payment_date": payment.payment_date.isoformat(),
        "fee_amount": _money(payment.fee_amount),
        "commission_worker": _money(payment.commission_worker),
        "commission_house": _money(payment.commission_house),
        "notes": payment.notes,
    }


def package_to_dict(package: Package) -> Dict[str, Any]:
    return {
        "id": package.id,
        "client_id": package.client_id,
        "service_id": package.service_id,
        "seller_worker_id": package.seller_worker_id,
        "name": package.name,
        "total_sessions": package.total_sessions,
        "used_sessions": package.used_sessions,
        "remaining_sessions": package.total_sessions - package.used_sessions,
        "value_total": _money(package.value_total),
        "value_per_session": _money(package.value_per_session),
        "payment_method": package.payment_method,
        "sale_ledger_entry_id": package.sale_ledger_entry_id,
        "refund_ledger_entry_id": package.refund_ledger_entry_id,
        "sold_on": package.sold_on.isoformat() if package.sold_on else None,
        "valid_until": package.valid_until.isoformat() if package.valid_until else None,
        "status": package.status,
        "cancel_reason": package.cancel_reason,
        "refund_value": (
            _money(package.refund_value)
            if package.refund_value is not None else None
        ),
    }


def commission_payment_to_dict(payment: CommissionPayment) -> Dict[str, Any]:
    return {
        "id": payment.id,
        "worker_id": payment.worker_id,
        "period_start": payment.period_start.isoformat(),
        "period_end": payment.period_end.isoformat(),
        "gross": _money(payment.gross),
        "deductions": _money(payment.deductions),
        "net": _money(payment.net),
        "payment_method": payment.payment_method,
        "ledger_entry_ids": list(payment.ledger_entry_ids or []),
        "notes": payment.notes,
        "paid_at": format_local(payment.paid_at),
    }


def package_usage_to_dict(usage: PackageUsage) -> Dict[str, Any]:
    return {
        "id": usage.id,
        "package_id": usage.package_id,
        "worker_id": usage.worker_id,
        "use_date": usage.use_date.isoformat(),
        "start_time": usage.start_time,
        "end_time": usage.end_time,
        "ledger_entry_id": usage.ledger_entry_id,
        "notes": usage.notes,
    }


class DatabaseManager:
    """数据库管理器：统一门面。

    Attributes:
        conn: 数据库连接管理器。
        workers: 员工仓库。
        clients: 顾客仓库。
        services: 服务目录仓库。
        payment_methods: 支付方式仓库。
        appointments: 预约仓库。
        ledger: 财务流水仓库。
        credit_payments: 赊账还款仓库。
        packages: 套餐仓库。
        commission_payments: 提成发放仓库。
        audit: 审计事件仓库。

    Example::

        db = DatabaseManager("sqlite:///data/agenda.db")
        db.create_tables()

        # 通过子仓库访问（返回 ORM 对象）
        worker = db.workers.get_or_create("Ana", 50)

        # 工作单元：一次提交，出错整体回滚
        with db.unit_of_work() as session:
            db.appointments.require(1, session=session)

        # 通过便捷方法访问（返回字典）
        rows = db.get_daily_appointments("2025-11-19")
    """

    def __init__(self, database_url: Optional[str] = None) -> None:
        """初始化数据库管理器。

        Args:
            database_url: 数据库连接URL。如果为None则使用settings配置。
        """
        # 基础设施层
        self.conn = DatabaseConnection(database_url)

        # 实体仓库
        self.workers = WorkerRepository(self.conn)
        self.clients = ClientRepository(self.conn)
        self.services = ServiceCatalogRepository(self.conn)
        self.payment_methods = PaymentMethodRepository(self.conn)

        # 业务记录仓库
        self.appointments = AppointmentRepository(self.conn)
        self.ledger = LedgerRepository(self.conn)
        self.credit_payments = CreditPaymentRepository(self.conn)
        self.packages = PackageRepository(self.conn)
        self.commission_payments = CommissionPaymentRepository(self.conn)

        # 系统数据仓库
        self.audit = AuditRepository(self.conn)

    # ================================================================
    # 基础设施方法
    # ================================================================

    def create_tables(self) -> None:
        """创建所有数据库表（幂等操作）。"""
        self.conn.create_tables()

    def get_session(self) -> Session:
        """获取数据库会话。"""
        return self.conn.get_session()

    @contextmanager
    def unit_of_work(self) -> Iterator[Session]:
        """开启工作单元，详见 BaseCRUD.unit_of_work。"""
        with self.audit.unit_of_work() as session:
            yield session

    @property
    def database_url(self) -> str:
        """数据库连接URL。"""
        return self.conn.database_url

    @property
    def engine(self):
        """SQLAlchemy 引擎对象。"""
        return self.conn.engine

    def execute_raw_sql(self, sql: str,
                        params: Optional[dict] = None) -> Any:
        """执行原始 SQL 语句。"""
        return self.conn.execute_raw_sql(sql, params)

    def ping(self) -> bool:
        """数据库是否可连接。"""
        return self.conn.ping()

    def close(self) -> None:
        """关闭数据库连接，释放所有资源。"""
        self.conn.close()

    # ================================================================
    # 便捷查询方法
    # ================================================================

    def get_daily_appointments(self, target_date: Union[str, date],
                               worker_id: Optional[int] = None
                               ) -> List[Dict[str, Any]]:
        """获取指定日期的预约（含已取消的）。

        Args:
            target_date: 日期，支持 ``YYYY-MM-DD`` 字符串或 date 对象。
            worker_id: 只看某位员工（可选）。

        Returns:
            预约字典列表，额外包含 ``end_time``（HH:MM）。
        """
        day = parse_date(target_date)
        rows = []
        for a in self.appointments.get_by_day(day, worker_id=worker_id):
            row = appointment_to_dict(a)
            end_minutes = a.start_time.hour * 60 + a.start_time.minute + a.duration_minutes
            row["end_time"] = format_hhmm(end_minutes)
            rows.append(row)
        return rows

    def get_worker_list(self, active_only: bool = True
                        ) -> List[Dict[str, Any]]:
        """获取员工列表。"""
        if active_only:
            workers = self.workers.get_active()
        else:
            workers = self.workers.get_all(Worker)

        return [
            {
                "id": w.id,
                "name": w.name,
                "commission_percentage": (
                    float(w.commission_percentage)
                    if w.commission_percentage is not None else None
                ),
                "is_active": w.is_active,
            }
            for w in workers
        ]

    def get_ledger_entry(self, entry_id: int) -> Dict[str, Any]:
        """获取一条流水（含分账），不存在抛出 NotFoundError。"""
        with self.get_session() as session:
            return ledger_entry_to_dict(
                self.ledger.require(entry_id, session=session)
            )

    def get_pending_credits(self, client_id: Optional[int] = None
                            ) -> List[Dict[str, Any]]:
        """获取未结清的赊账流水。"""
        with self.get_session() as session:
            return [
                ledger_entry_to_dict(e)
                for e in self.ledger.get_pending_credits(client_id, session=session)
            ]

    def get_client_packages(self, client_id: int, active_only: bool = False
                            ) -> List[Dict[str, Any]]:
        """获取顾客的套餐（含使用记录）。"""
        with self.get_session() as session:
            result = []
            for package in self.packages.get_by_client(
                client_id, active_only=active_only, session=session
            ):
                row = package_to_dict(package)
                row["usages"] = [package_usage_to_dict(u) for u in package.usages]
                result.append(row)
            return result

    def get_commission_payouts(self, worker_id: Optional[int] = None
                               ) -> List[Dict[str, Any]]:
        """获取最近的提成发放记录（新的在前）。"""
        return [
            commission_payment_to_dict(p)
            for p in self.commission_payments.get_recent(worker_id)
        ]

    def get_audit_trail(self, entity_type: str, entity_id: int
                        ) -> List[Dict[str, Any]]:
        """获取某个实体的审计事件。"""
        return [
            {
                "id": e.id,
                "action": e.action,
                "before": e.before,
                "after": e.after,
                "created_at": format_local(e.created_at),
            }
            for e in self.audit.get_for_entity(entity_type, entity_id)
        ]
