"""数据库模块。

对外暴露 DatabaseManager（统一门面）与 ORM 模型。
"""
from .manager import DatabaseManager
from .models import (
    Base, Worker, Client, ServiceCatalogItem, PaymentMethod,
    Appointment, LedgerEntry, LedgerSplit, CreditPayment,
    Package, PackageUsage, CommissionPayment, AuditEvent,
)

__all__ = [
    "DatabaseManager",
    "Base", "Worker", "Client", "ServiceCatalogItem", "PaymentMethod",
    "Appointment", "LedgerEntry", "LedgerSplit", "CreditPayment",
    "Package", "PackageUsage", "CommissionPayment", "AuditEvent",
]
