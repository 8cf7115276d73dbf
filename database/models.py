"""SQLAlchemy ORM 模型定义。

本模块定义了所有数据库表的ORM模型，包括：
- 员工、顾客、服务目录、支付方式等参考数据（由外部目录维护，核心只读）
- 预约、财务流水（lançamento）、分账、赊账还款等业务记录
- 预付套餐及其使用记录
- 员工提成发放记录
- 审计事件（每次状态迁移与结算的前后快照）
"""
from typing import Dict, Any, List, Optional
from sqlalchemy import (
    Column, Integer, String, Text, Boolean, Date, DateTime,
    DECIMAL, ForeignKey, JSON, UniqueConstraint
)
from sqlalchemy.orm import declarative_base
from sqlalchemy.orm import relationship
from datetime import datetime, date

# SQLAlchemy declarative base，所有模型都继承自此类
# 设置 __allow_unmapped__ = True 以兼容 SQLAlchemy 2.0 的类型注解要求
Base = declarative_base()

Base.__allow_unmapped__ = True


class Worker(Base):
    """员工（colaborador）表模型。

    Attributes:
        id: 主键，自增整数。
        name: 员工姓名，必填，最大长度100字符。
        commission_percentage: 提成比例，DECIMAL(5,2)，范围0-100；
            为空时结算使用 settings.default_commission_percentage。
        is_active: 是否在职，默认True。
        created_at: 创建时间。

    Relationships:
        appointments: 该员工名下的预约。
        ledger_entries: 该员工作为执行人的财务流水。
    """
    __tablename__ = "workers"

    id: int = Column(Integer, primary_key=True, autoincrement=True)
    name: str = Column(String(100), nullable=False)
    commission_percentage: Optional[float] = Column(DECIMAL(5, 2))
    is_active: bool = Column(Boolean, default=True)
    created_at: datetime = Column(DateTime, default=datetime.utcnow)

    appointments: List["Appointment"] = relationship("Appointment", back_populates="worker")
    ledger_entries: List["LedgerEntry"] = relationship("LedgerEntry", back_populates="worker")


class Client(Base):
    """顾客表模型。

    Attributes:
        id: 主键。
        name: 顾客姓名，必填。
        phone: 联系电话，可选。
        notes: 备注，可选。
    """
    __tablename__ = "clients"

    id: int = Column(Integer, primary_key=True, autoincrement=True)
    name: str = Column(String(100), nullable=False)
    phone: Optional[str] = Column(String(20))
    notes: Optional[str] = Column(Text)
    created_at: datetime = Column(DateTime, default=datetime.utcnow)

    appointments: List["Appointment"] = relationship("Appointment", back_populates="client")


class ServiceCatalogItem(Base):
    """服务目录表模型（不可变参考数据）。

    Attributes:
        id: 主键。
        name: 服务名称，唯一（如：Corte、Escova、Manicure）。
        duration_minutes: 标准时长（分钟）。
        base_price: 基础价格，DECIMAL(10,2)。
        is_active: 是否上架。
    """
    __tablename__ = "service_catalog"

    id: int = Column(Integer, primary_key=True, autoincrement=True)
    name: str = Column(String(100), nullable=False, unique=True)
    duration_minutes: int = Column(Integer, nullable=False, default=60)
    base_price: float = Column(DECIMAL(10, 2), nullable=False, default=0)
    is_active: bool = Column(Boolean, default=True)
    created_at: datetime = Column(DateTime, default=datetime.utcnow)


class PaymentMethod(Base):
    """支付方式表模型。

    ``credit``（赊账）与 ``promotional``（赠送/置换）为保留代码，
    结算时手续费恒为 0。

    Attributes:
        id: 主键。
        code: 支付方式代码，唯一（如：pix、cartao_credito）。
        name: 显示名称。
        fee_percentage: 手续费率，DECIMAL(5,2)。
        is_active: 是否可用。
    """
    __tablename__ = "payment_methods"

    id: int = Column(Integer, primary_key=True, autoincrement=True)
    code: str = Column(String(30), nullable=False, unique=True)
    name: str = Column(String(50), nullable=False)
    fee_percentage: float = Column(DECIMAL(5, 2), default=0)
    is_active: bool = Column(Boolean, default=True)


class Appointment(Base):
    """预约表模型（时间轴上的一个块）。

    Attributes:
        id: 主键。
        worker_id: 执行员工，外键。
        client_id: 顾客，外键。
        start_time: 开始时间（本地墙上时间，无时区语义）。
        duration_minutes: 时长（分钟）。
        service_description: 服务名称以 " + " 连接。
        estimated_value: 预估金额。
        status: pending / executing / completed / cancelled。
        ledger_entry_id: 结算后关联的财务流水，唯一（一对零或一）。

    Relationships:
        worker / client / ledger_entry。
    """
    __tablename__ = "appointments"

    id: int = Column(Integer, primary_key=True, autoincrement=True)
    worker_id: int = Column(Integer, ForeignKey("workers.id"), nullable=False)
    client_id: int = Column(Integer, ForeignKey("clients.id"), nullable=False)
    start_time: datetime = Column(DateTime, nullable=False, index=True)
    duration_minutes: int = Column(Integer, nullable=False, default=60)
    service_description: str = Column(String(200), nullable=False, default="")
    estimated_value: float = Column(DECIMAL(10, 2), default=0)
    status: str = Column(String(20), nullable=False, default="pending")  # pending / executing / completed / cancelled
    ledger_entry_id: Optional[int] = Column(Integer, ForeignKey("ledger_entries.id"), unique=True)
    created_at: datetime = Column(DateTime, default=datetime.utcnow)
    updated_at: datetime = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    worker: "Worker" = relationship("Worker", back_populates="appointments")
    client: "Client" = relationship("Client", back_populates="appointments")
    ledger_entry: Optional["LedgerEntry"] = relationship("LedgerEntry", back_populates="appointment")


class LedgerEntry(Base):
    """财务流水（lançamento）表模型，财务数据的唯一真相来源。

    Attributes:
        id: 主键。
        worker_id: 执行员工（共享服务时为主员工）。
        client_id: 顾客，可选。
        date: 服务日期时间（本地）。
        end_time: 结束时刻 ``HH:MM``，仅用于展示。
        service_names: 服务名称。
        entry_type: service / package_sale / package_session / package_refund。
        value_total: 总金额（赠送为0，套餐退款为负）。
        commission_worker: 员工净提成（毛提成 - 手续费）。
        commission_house: 店铺所得。
        payment_fee_amount: 支付手续费。
        payment_method: 支付方式代码，可为空。
        status: pending / completed / cancelled。
        is_credit: 赊账（fiado）标记。
        is_promotional: 赠送/置换（troca/grátis）标记。
        reference_value: 赠送时的参考价值。
        is_shared: 是否多人共享服务。
        paid_at: 实际收款时间。
        package_id: 关联套餐，可选。

    Relationships:
        splits: 共享服务的分账明细。
        appointment: 反向关联的预约。
        credit_payment: 赊账的还款记录。
    """
    __tablename__ = "ledger_entries"

    id: int = Column(Integer, primary_key=True, autoincrement=True)
    worker_id: int = Column(Integer, ForeignKey("workers.id"), nullable=False)
    client_id: Optional[int] = Column(Integer, ForeignKey("clients.id"))
    date: datetime = Column(DateTime, nullable=False, index=True)
    end_time: Optional[str] = Column(String(5))
    service_names: Optional[str] = Column(String(200))
    entry_type: str = Column(String(20), nullable=False, default="service")
    value_total: float = Column(DECIMAL(10, 2), nullable=False, default=0)
    commission_worker: float = Column(DECIMAL(10, 2), nullable=False, default=0)
    commission_house: float = Column(DECIMAL(10, 2), nullable=False, default=0)
    payment_fee_amount: float = Column(DECIMAL(10, 2), nullable=False, default=0)
    payment_method: Optional[str] = Column(String(30))
    status: str = Column(String(20), nullable=False, default="completed")  # pending / completed / cancelled
    is_credit: bool = Column(Boolean, default=False)
    is_promotional: bool = Column(Boolean, default=False)
    reference_value: Optional[float] = Column(DECIMAL(10, 2))
    is_shared: bool = Column(Boolean, default=False)
    paid_at: Optional[datetime] = Column(DateTime)
    package_id: Optional[int] = Column(Integer, ForeignKey("packages.id"))
    notes: Optional[str] = Column(Text)
    created_at: datetime = Column(DateTime, default=datetime.utcnow)

    worker: "Worker" = relationship("Worker", back_populates="ledger_entries")
    splits: List["LedgerSplit"] = relationship(
        "LedgerSplit", back_populates="ledger_entry", cascade="all, delete-orphan"
    )
    appointment: Optional["Appointment"] = relationship(
        "Appointment", back_populates="ledger_entry", uselist=False
    )
    credit_payment: Optional["CreditPayment"] = relationship(
        "CreditPayment", back_populates="ledger_entry", uselist=False
    )


class LedgerSplit(Base):
    """共享服务分账明细（divisão）。

    每位员工按自己的提成比例、针对自己的份额独立计算提成。
    """
    __tablename__ = "ledger_splits"

    id: int = Column(Integer, primary_key=True, autoincrement=True)
    ledger_entry_id: int = Column(Integer, ForeignKey("ledger_entries.id"), nullable=False)
    worker_id: int = Column(Integer, ForeignKey("workers.id"), nullable=False)
    share_value: float = Column(DECIMAL(10, 2), nullable=False)
    commission_gross: float = Column(DECIMAL(10, 2), nullable=False, default=0)
    fee_amount: float = Column(DECIMAL(10, 2), nullable=False, default=0)
    commission_worker: float = Column(DECIMAL(10, 2), nullable=False, default=0)

    ledger_entry: "LedgerEntry" = relationship("LedgerEntry", back_populates="splits")

    __table_args__ = (
        UniqueConstraint('ledger_entry_id', 'worker_id', name='uq_ledger_split_worker'),
    )


class CreditPayment(Base):
    """赊账还款记录（pagamento de fiado）。

    收入在 payment_date 当天确认，而不是原服务日期。
    """
    __tablename__ = "credit_payments"

    id: int = Column(Integer, primary_key=True, autoincrement=True)
    ledger_entry_id: int = Column(Integer, ForeignKey("ledger_entries.id"), nullable=False, unique=True)
    value_paid: float = Column(DECIMAL(10, 2), nullable=False)
    payment_method: str = Column(String(30), nullable=False)
    payment_date: date = Column(Date, nullable=False, index=True)
    fee_amount: float = Column(DECIMAL(10, 2), nullable=False, default=0)
    commission_worker: float = Column(DECIMAL(10, 2), nullable=False, default=0)
    commission_house: float = Column(DECIMAL(10, 2), nullable=False, default=0)
    notes: Optional[str] = Column(Text)
    created_at: datetime = Column(DateTime, default=datetime.utcnow)

    ledger_entry: "LedgerEntry" = relationship("LedgerEntry", back_populates="credit_payment")


class Package(Base):
    """预付套餐（pacote）表模型。

    Attributes:
        total_sessions / used_sessions: 0 ≤ used ≤ total。
        value_total: 售价。
        value_per_session: 每次价值 = value_total / total_sessions。
        status: active / expired / completed / cancelled。
        sale_ledger_entry_id: 售卖时产生的流水。
        refund_ledger_entry_id: 退款流水（负金额）。
    """
    __tablename__ = "packages"

    id: int = Column(Integer, primary_key=True, autoincrement=True)
    client_id: int = Column(Integer, ForeignKey("clients.id"), nullable=False)
    service_id: int = Column(Integer, ForeignKey("service_catalog.id"), nullable=False)
    seller_worker_id: int = Column(Integer, ForeignKey("workers.id"), nullable=False)
    name: str = Column(String(200), nullable=False)
    total_sessions: int = Column(Integer, nullable=False)
    used_sessions: int = Column(Integer, nullable=False, default=0)
    value_total: float = Column(DECIMAL(10, 2), nullable=False)
    value_per_session: float = Column(DECIMAL(10, 2), nullable=False)
    payment_method: Optional[str] = Column(String(30))
    sale_ledger_entry_id: Optional[int] = Column(Integer)
    refund_ledger_entry_id: Optional[int] = Column(Integer)
    sold_on: date = Column(Date, nullable=False)
    valid_until: Optional[date] = Column(Date)
    status: str = Column(String(20), nullable=False, default="active")  # active / expired / completed / cancelled
    cancelled_at: Optional[datetime] = Column(DateTime)
    cancel_reason: Optional[str] = Column(Text)
    refund_value: Optional[float] = Column(DECIMAL(10, 2))
    created_at: datetime = Column(DateTime, default=datetime.utcnow)

    usages: List["PackageUsage"] = relationship(
        "PackageUsage", back_populates="package", order_by="PackageUsage.id"
    )


class PackageUsage(Base):
    """套餐使用记录：每条记录消耗一次。"""
    __tablename__ = "package_usages"

    id: int = Column(Integer, primary_key=True, autoincrement=True)
    package_id: int = Column(Integer, ForeignKey("packages.id"), nullable=False)
    worker_id: int = Column(Integer, ForeignKey("workers.id"), nullable=False)
    use_date: date = Column(Date, nullable=False)
    start_time: Optional[str] = Column(String(5))
    end_time: Optional[str] = Column(String(5))
    ledger_entry_id: Optional[int] = Column(Integer, ForeignKey("ledger_entries.id"))
    notes: Optional[str] = Column(Text)
    created_at: datetime = Column(DateTime, default=datetime.utcnow)

    package: "Package" = relationship("Package", back_populates="usages")


class CommissionPayment(Base):
    """员工提成发放记录（pagamento de comissão）。

    Attributes:
        worker_id: 领取提成的员工。
        period_start / period_end: 结算周期（含两端日期）。
        gross: 毛提成合计。
        deductions: 手续费扣减合计。
        net: 实发金额 = gross - deductions。
        payment_method: 发放方式，默认 pix。
        ledger_entry_ids: 本次发放覆盖的流水ID；同一员工的同一条流水只能发放一次。
        paid_at: 发放时间。
    """
    __tablename__ = "commission_payments"

    id: int = Column(Integer, primary_key=True, autoincrement=True)
    worker_id: int = Column(Integer, ForeignKey("workers.id"), nullable=False, index=True)
    period_start: date = Column(Date, nullable=False)
    period_end: date = Column(Date, nullable=False)
    gross: float = Column(DECIMAL(10, 2), nullable=False, default=0)
    deductions: float = Column(DECIMAL(10, 2), nullable=False, default=0)
    net: float = Column(DECIMAL(10, 2), nullable=False, default=0)
    payment_method: str = Column(String(30), nullable=False, default="pix")
    ledger_entry_ids: List[int] = Column(JSON, nullable=False, default=list)
    notes: Optional[str] = Column(Text)
    paid_at: datetime = Column(DateTime, nullable=False)
    created_at: datetime = Column(DateTime, default=datetime.utcnow)

    worker: "Worker" = relationship("Worker")


class AuditEvent(Base):
    """审计事件表模型。

    每次状态迁移与结算写入一条，记录被修改字段的前后快照，
    供外部审计/日志模块消费。

    Attributes:
        entity_type: appointment / ledger_entry / package / credit_payment。
        entity_id: 实体ID。
        action: create / update / delete / transition / settle / cancel。
        before: 修改前快照（JSON）。
        after: 修改后快照（JSON）。
    """
    __tablename__ = "audit_events"

    id: int = Column(Integer, primary_key=True, autoincrement=True)
    entity_type: str = Column(String(50), nullable=False)
    entity_id: int = Column(Integer, nullable=False)
    action: str = Column(String(20), nullable=False)
    before: Optional[Dict[str, Any]] = Column(JSON)
    after: Optional[Dict[str, Any]] = Column(JSON)
    created_at: datetime = Column(DateTime, default=datetime.utcnow)
