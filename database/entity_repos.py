"""实体仓库：参考数据的数据访问层。

管理员工、顾客、服务目录和支付方式。这些目录由外部模块维护，
核心只按 ID 读取；``get_or_create`` 供初始化脚本和测试播种数据。

每个仓库继承 BaseCRUD 获得通用能力，并添加领域特定的查询方法。
"""
from decimal import Decimal
from typing import Optional, List
from sqlalchemy import or_
from sqlalchemy.orm import Session

from business.errors import ValidationError
from business.settlement import RESERVED_METHODS, ZERO, to_decimal

from .base_crud import BaseCRUD
from .connection import DatabaseConnection
from .models import (
    Worker, Client, ServiceCatalogItem, PaymentMethod
)


class WorkerRepository(BaseCRUD):
    """员工（colaborador）仓库。"""

    def __init__(self, conn: DatabaseConnection) -> None:
        super().__init__(conn)

    def get_or_create(self, name: str,
                      commission_percentage: Optional[float] = None,
                      session: Optional[Session] = None) -> Worker:
        """获取或创建员工（按姓名匹配）。

        Args:
            name: 员工姓名。
            commission_percentage: 新建时的提成比例（可选）。
            session: 外部会话（可选）。

        Returns:
            Worker 对象。
        """
        def _do(sess):
            worker = sess.query(Worker).filter(Worker.name == name).first()
            if not worker:
                worker = Worker(
                    name=name, commission_percentage=commission_percentage
                )
                sess.add(worker)
                sess.flush()
                sess.refresh(worker)
            return worker

        if session:
            return _do(session)

        with self._get_session() as sess:
            worker = _do(sess)
            sess.commit()
            return worker

    def require(self, worker_id: int,
                session: Optional[Session] = None) -> Worker:
        return self.get_required(Worker, worker_id, session=session)

    def get_active(self, session: Optional[Session] = None) -> List[Worker]:
        """获取所有在职员工。"""
        return self.get_all(Worker, filters={"is_active": True}, session=session)

    def deactivate(self, worker_id: int,
                   session: Optional[Session] = None) -> Optional[Worker]:
        return self.update_by_id(
            Worker, worker_id, session=session, is_active=False
        )


class ClientRepository(BaseCRUD):
    """顾客仓库。"""

    def __init__(self, conn: DatabaseConnection) -> None:
        super().__init__(conn)

    def get_or_create(self, name: str, phone: Optional[str] = None,
                      session: Optional[Session] = None) -> Client:
        """获取或创建顾客（按姓名匹配）。"""
        def _do(sess):
            client = sess.query(Client).filter(Client.name == name).first()
            if not client:
                client = Client(name=name, phone=phone)
                sess.add(client)
                sess.flush()
                sess.refresh(client)
            return client

        if session:
            return _do(session)

        with self._get_session() as sess:
            client = _do(sess)
            sess.commit()
            return client

    def require(self, client_id: int,
                session: Optional[Session] = None) -> Client:
        return self.get_required(Client, client_id, session=session)

    def search(self, keyword: str,
               session: Optional[Session] = None) -> List[Client]:
        """按姓名或电话搜索顾客。"""
        def _query(sess):
            return sess.query(Client).filter(
                or_(
                    Client.name.contains(keyword),
                    Client.phone.contains(keyword)
                )
            ).order_by(Client.name).all()

        if session:
            return _query(session)

        with self._get_session() as sess:
            return _query(sess)


class ServiceCatalogRepository(BaseCRUD):
    """服务目录仓库。

    服务目录是不可变参考数据，预约时用于拼接服务描述与估算金额。
    """

    def __init__(self, conn: DatabaseConnection) -> None:
        super().__init__(conn)

    def get_or_create(self, name: str, duration_minutes: int = 60,
                      base_price: float = 0,
                      session: Optional[Session] = None) -> ServiceCatalogItem:
        """获取或创建服务（按名称匹配）。"""
        def _do(sess):
            item = sess.query(ServiceCatalogItem).filter(
                ServiceCatalogItem.name == name
            ).first()
            if not item:
                item = ServiceCatalogItem(
                    name=name,
                    duration_minutes=duration_minutes,
                    base_price=base_price,
                )
                sess.add(item)
                sess.flush()
                sess.refresh(item)
            return item

        if session:
            return _do(session)

        with self._get_session() as sess:
            item = _do(sess)
            sess.commit()
            return item

    def require(self, service_id: int,
                session: Optional[Session] = None) -> ServiceCatalogItem:
        return self.get_required(ServiceCatalogItem, service_id, session=session)

    def get_many(self, service_ids: List[int],
                 session: Optional[Session] = None) -> List[ServiceCatalogItem]:
        """按给定顺序获取多个服务，任一不存在抛出 NotFoundError。"""
        return [self.require(sid, session=session) for sid in service_ids]

    def get_active(self, session: Optional[Session] = None
                   ) -> List[ServiceCatalogItem]:
        return self.get_all(
            ServiceCatalogItem, filters={"is_active": True}, session=session
        )


class PaymentMethodRepository(BaseCRUD):
    """支付方式仓库（手续费率登记表）。

    ``credit`` 与 ``promotional`` 为保留代码，手续费恒为 0。
    """

    def __init__(self, conn: DatabaseConnection) -> None:
        super().__init__(conn)

    def get_or_create(self, code: str, name: Optional[str] = None,
                      fee_percentage: float = 0,
                      session: Optional[Session] = None) -> PaymentMethod:
        def _do(sess):
            method = sess.query(PaymentMethod).filter(
                PaymentMethod.code == code
            ).first()
            if not method:
                method = PaymentMethod(
                    code=code,
                    name=name or code,
                    fee_percentage=0 if code in RESERVED_METHODS else fee_percentage,
                )
                sess.add(method)
                sess.flush()
                sess.refresh(method)
            return method

        if session:
            return _do(session)

        with self._get_session() as sess:
            method = _do(sess)
            sess.commit()
            return method

    def get_by_code(self, code: str,
                    session: Optional[Session] = None) -> Optional[PaymentMethod]:
        def _query(sess):
            return sess.query(PaymentMethod).filter(
                PaymentMethod.code == code
            ).first()

        if session:
            return _query(session)

        with self._get_session() as sess:
            return _query(sess)

    def fee_percentage(self, code: Optional[str],
                       session: Optional[Session] = None) -> Decimal:
        """查询支付方式的手续费率。

        保留代码和空值返回 0；未登记的代码返回 0 并由调用方决定是否拒绝。
        """
        if not code or code in RESERVED_METHODS:
            return ZERO
        method = self.get_by_code(code, session=session)
        if method is None or method.fee_percentage is None:
            return ZERO
        return to_decimal(method.fee_percentage)

    def require_payable(self, code: Optional[str],
                        session: Optional[Session] = None) -> PaymentMethod:
        """获取一个可用于实际收款的支付方式。

        Raises:
            ValidationError: 未提供、为保留代码、不存在或已停用。
        """
        if not code:
            raise ValidationError("payment_method is required")
        if code in RESERVED_METHODS:
            raise ValidationError(
                f"Payment method '{code}' is reserved and cannot settle a payment"
            )
        method = self.get_by_code(code, session=session)
        if method is None or not method.is_active:
            raise ValidationError(f"Unknown or inactive payment method: {code}")
        return method

    def get_active(self, session: Optional[Session] = None
                   ) -> List[PaymentMethod]:
        return self.get_all(
            PaymentMethod, filters={"is_active": True}, session=session
        )
