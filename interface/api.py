"""HTTP API - 预约时间轴与结算

路由：
- GET    /health                              → 健康检查
- GET    /api/timeline?date=YYYY-MM-DD        → 当天时间轴（位置、进度、当前时间线）
- GET    /api/workers                         → 员工列表
- POST   /api/appointments                    → 创建预约
- GET    /api/appointments/{id}               → 预约详情
- PUT    /api/appointments/{id}               → 编辑预约
- DELETE /api/appointments/{id}               → 删除预约（流水保留）
- POST   /api/appointments/{id}/cancel        → 取消预约
- POST   /api/appointments/{id}/reschedule    → 提交拖拽改期
- POST   /api/appointments/{id}/resize        → 提交调整时长
- POST   /api/appointments/{id}/finalize      → 结算预约
- POST   /api/ledger                          → 独立收款
- GET    /api/ledger/{id}                     → 流水详情
- GET    /api/credits                         → 未结清赊账
- POST   /api/ledger/{id}/credit-payment      → 登记赊账还款
- POST   /api/packages                        → 售卖套餐
- GET    /api/packages/{id}                   → 套餐详情
- POST   /api/packages/{id}/cancel            → 取消套餐
- POST   /api/packages/usage                  → 登记套餐使用
- GET    /api/reports/revenue?start=&end=     → 每日收入
- GET    /api/reports/commissions?start=&end= → 员工提成
- POST   /api/commissions/payouts              → 登记提成发放
- GET    /api/commissions/payouts?worker_id=   → 提成发放记录

错误统一返回 ``{"error": "..."}``：
400 输入错误，404 记录不存在，409 状态/次数冲突，500 存储失败。
"""
import threading
from typing import Any, Dict, Optional

from loguru import logger

from business.appointments import AppointmentService
from business.billing import BillingService
from business.commissions import CommissionService
from business.clock import Clock, SystemClock, parse_local_datetime
from business.errors import (
    AgendaError, CapacityError, NotFoundError, PersistenceError, StateError,
    ValidationError
)
from business.interaction import (
    InteractionEngine, RescheduleCommand, ResizeCommand, snap_duration
)
from business.packages import PackageService
from business.reporting import ReportingService
from business.validation import require, to_int


def error_status(error: AgendaError) -> int:
    """业务异常 → HTTP 状态码。"""
    if isinstance(error, NotFoundError):
        return 404
    if isinstance(error, ValidationError):
        return 400
    if isinstance(error, (StateError, CapacityError)):
        return 409
    if isinstance(error, PersistenceError):
        return 500
    return 400


def create_app(db, clock: Optional[Clock] = None):
    """创建 FastAPI 应用

    Args:
        db: DatabaseManager
        clock: 时钟（默认系统时钟，测试时注入 FixedClock）
    """
    from fastapi import FastAPI, Request
    from fastapi.responses import JSONResponse

    clock = clock or SystemClock()
    appointments = AppointmentService(db, clock)
    packages = PackageService(db, clock)
    billing = BillingService(db, clock, packages)
    reporting = ReportingService(db)
    commissions = CommissionService(db, clock)
    interaction = InteractionEngine(appointments)

    app = FastAPI(
        title="Salon Agenda",
        description="预约时间轴与结算引擎",
        version="1.0.0",
    )

    @app.exception_handler(AgendaError)
    async def agenda_error_handler(request: Request, exc: AgendaError):
        status = error_status(exc)
        if status >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc}")
        else:
            logger.warning(f"{request.method} {request.url.path} rejected: {exc}")
        return JSONResponse(status_code=status, content={"error": str(exc)})

    # ==================== 时间轴 ====================

    @app.get("/api/timeline")
    async def timeline(date: Optional[str] = None):
        """当天时间轴"""
        return appointments.timeline(date or clock.today())

    @app.get("/api/workers")
    async def workers_list():
        """员工列表"""
        return {"data": db.get_worker_list(active_only=False)}

    # ==================== 预约 ====================

    @app.post("/api/appointments")
    async def create_appointment(data: dict):
        """创建预约"""
        return appointments.create(data)

    @app.get("/api/appointments/{appointment_id}")
    async def get_appointment(appointment_id: int):
        return appointments.get(appointment_id)

    @app.put("/api/appointments/{appointment_id}")
    async def update_appointment(appointment_id: int, data: dict):
        """编辑预约"""
        return appointments.update(appointment_id, data)

    @app.delete("/api/appointments/{appointment_id}")
    async def delete_appointment(appointment_id: int):
        """删除预约"""
        appointments.delete(appointment_id)
        return {"success": True}

    @app.post("/api/appointments/{appointment_id}/cancel")
    async def cancel_appointment(appointment_id: int):
        return appointments.cancel(appointment_id)

    @app.post("/api/appointments/{appointment_id}/reschedule")
    async def reschedule_appointment(appointment_id: int, data: dict):
        """提交拖拽改期：start_time + worker_id 一次写入"""
        command = RescheduleCommand(
            appointment_id=appointment_id,
            new_start=parse_local_datetime(require(data, "start_time")),
            new_worker_id=to_int(require(data, "worker_id"), "worker_id"),
        )
        return _commit_response(interaction.commit(command))

    @app.post("/api/appointments/{appointment_id}/resize")
    async def resize_appointment(appointment_id: int, data: dict):
        """提交调整时长（吸附到 15 分钟，最少 15 分钟）"""
        minutes = require(data, "duration_minutes")
        try:
            minutes = float(minutes)
        except (TypeError, ValueError):
            raise ValidationError("duration_minutes must be a number")
        command = ResizeCommand(
            appointment_id=appointment_id,
            duration_minutes=snap_duration(minutes),
        )
        return _commit_response(interaction.commit(command))

    @app.post("/api/appointments/{appointment_id}/finalize")
    async def finalize_appointment(appointment_id: int, data: dict):
        """结算预约"""
        return billing.finalize_appointment(appointment_id, data)

    # ==================== 流水 / 赊账 ====================

    @app.post("/api/ledger")
    async def create_ledger_entry(data: dict):
        """独立收款"""
        return billing.create_entry(data)

    @app.get("/api/ledger/{entry_id}")
    async def get_ledger_entry(entry_id: int):
        return db.get_ledger_entry(entry_id)

    @app.get("/api/credits")
    async def pending_credits(client_id: Optional[int] = None):
        """未结清赊账"""
        return {"data": db.get_pending_credits(client_id)}

    @app.post("/api/ledger/{entry_id}/credit-payment")
    async def credit_payment(entry_id: int, data: dict):
        """登记赊账还款"""
        return billing.record_credit_payment(entry_id, data)

    # ==================== 套餐 ====================

    @app.post("/api/packages")
    async def sell_package(data: dict):
        """售卖套餐"""
        return packages.sell(data)

    @app.post("/api/packages/usage")
    async def package_usage(data: dict):
        """登记套餐使用"""
        return packages.record_usage(data)

    @app.get("/api/packages/{package_id}")
    async def get_package(package_id: int):
        return packages.get(package_id)

    @app.post("/api/packages/{package_id}/cancel")
    async def cancel_package(package_id: int, data: Optional[Dict[str, Any]] = None):
        """取消套餐"""
        return packages.cancel(package_id, data or {})

    # ==================== 报表 ====================

    @app.get("/api/reports/revenue")
    async def revenue_report(start: str, end: str):
        rows = reporting.revenue_by_day(start, end)
        return {
            "data": rows,
            "total": round(sum(r["revenue"] for r in rows), 2),
        }

    @app.get("/api/reports/commissions")
    async def commissions_report(start: str, end: str):
        return {"data": reporting.commissions_by_worker(start, end)}

    @app.post("/api/commissions/payouts")
    async def pay_commissions(data: dict):
        """登记提成发放"""
        return {"success": True, "payout": commissions.pay(data)}

    @app.get("/api/commissions/payouts")
    async def commission_payouts(worker_id: Optional[int] = None):
        return {"data": commissions.history(worker_id)}

    # ==================== 健康检查 ====================

    @app.get("/health")
    async def health_check():
        """健康检查"""
        return {
            "status": "ok",
            "db_connected": db.ping(),
            "now": clock.now().strftime("%Y-%m-%d %H:%M:%S"),
        }

    return app


def _commit_response(result):
    from fastapi.responses import JSONResponse

    if result.ok:
        return {"success": True, "appointment": result.appointment}
    return JSONResponse(
        status_code=409,
        content={
            "success": False,
            "error": result.error,
            "appointment": result.appointment,
        },
    )


class ApiServer:
    """在独立线程中运行 uvicorn，由 app.py 统一管理信号与关闭"""

    def __init__(self, app, host: str = "0.0.0.0", port: int = 8080):
        self.app = app
        self.host = host
        self.port = port
        self._server = None
        self._server_thread: Optional[threading.Thread] = None

    def start(self):
        """启动服务器"""
        import uvicorn

        config = uvicorn.Config(
            self.app,
            host=self.host,
            port=self.port,
            log_level="warning",
            loop="asyncio",
        )
        self._server = uvicorn.Server(config)
        # 禁用 uvicorn 内置的信号处理器
        self._server.install_signal_handlers = lambda: None

        self._server_thread = threading.Thread(target=self._server.run, daemon=True)
        self._server_thread.start()
        logger.info(f"API server started: http://{self.host}:{self.port}")

    def stop(self):
        """停止服务器，确保端口被释放"""
        if self._server is None:
            return
        self._server.should_exit = True
        if self._server_thread and self._server_thread.is_alive():
            self._server_thread.join(timeout=3.0)
        if self._server_thread and self._server_thread.is_alive():
            logger.warning("API server did not stop within 3s, forcing exit")
            self._server.force_exit = True
            self._server_thread.join(timeout=2.0)
        logger.info("API server stopped")
