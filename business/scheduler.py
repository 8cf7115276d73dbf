"""定时任务调度器 - 周期性生命周期扫描

``pending → executing`` 的自动迁移由这里注册的间隔任务驱动；
任务本身是幂等的，``max_instances=1`` + ``coalesce=True`` 保证
被跳过或延迟的运行不会造成重复迁移。
"""
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from typing import Callable, Optional
from loguru import logger
from config.settings import settings
import asyncio


class Scheduler:
    """定时任务调度器

    业务逻辑通过回调函数注入，调度器本身不包含业务规则
    """

    def __init__(self, event_loop: Optional[asyncio.AbstractEventLoop] = None):
        """初始化调度器

        Args:
            event_loop: 事件循环（可选，默认使用当前事件循环）
        """
        if event_loop is None:
            try:
                event_loop = asyncio.get_running_loop()
            except RuntimeError:
                event_loop = asyncio.new_event_loop()
                asyncio.set_event_loop(event_loop)
        self.scheduler = AsyncIOScheduler(event_loop=event_loop)

    def add_interval_task(
        self,
        task_func: Callable,
        seconds: int,
        task_id: str = 'interval_task',
        task_name: str = '周期任务'
    ):
        """添加固定间隔任务

        Args:
            task_func: 任务函数
            seconds: 间隔秒数
            task_id: 任务ID
            task_name: 任务名称
        """
        self.scheduler.add_job(
            task_func,
            trigger=IntervalTrigger(seconds=seconds),
            id=task_id,
            name=task_name,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        logger.info(f"Added interval task '{task_name}' every {seconds}s")

    def add_lifecycle_scan(self, lifecycle, seconds: Optional[int] = None):
        """注册生命周期扫描任务

        Args:
            lifecycle: LifecycleService 实例
            seconds: 扫描间隔（默认 settings.lifecycle_scan_interval_seconds）
        """
        def _scan():
            try:
                lifecycle.run_scan()
            except Exception as e:
                # 下一次扫描会重新处理，这里只记录
                logger.error(f"Lifecycle scan failed: {e}")

        self.add_interval_task(
            _scan,
            seconds=seconds or settings.lifecycle_scan_interval_seconds,
            task_id='lifecycle_scan',
            task_name='预约状态扫描',
        )

    def start(self):
        """启动调度器"""
        self.scheduler.start()
        logger.info("Scheduler started")

    def stop(self):
        """停止调度器"""
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")

    def remove_job(self, job_id: str):
        """移除任务

        Args:
            job_id: 任务ID
        """
        try:
            self.scheduler.remove_job(job_id)
            logger.info(f"Job {job_id} removed")
        except Exception as e:
            logger.warning(f"Failed to remove job {job_id}: {e}")
