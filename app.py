#!/usr/bin/env python3
"""门店预约与结算 - 应用入口

启动：
1. HTTP API（时间轴、预约、结算、套餐、报表）
2. 周期性生命周期扫描（pending → executing，过期套餐）

使用方式：
    python app.py

    # 指定端口
    python app.py --port 8080

    # 指定数据库
    python app.py --db sqlite:///data/agenda.db

环境变量（在 .env 文件中配置）：
    DATABASE_URL                      数据库连接地址
    WEB_HOST / WEB_PORT               监听地址与端口
    LIFECYCLE_SCAN_INTERVAL_SECONDS   状态扫描间隔（默认 60）
    LOG_LEVEL                         日志级别（默认 INFO）
"""
import argparse
import asyncio
import signal
import sys

from loguru import logger


def _setup_logging(level: str):
    logger.remove()
    logger.add(sys.stderr, level=level.upper())


async def _cleanup(server, scheduler, db):
    """统一资源清理函数。

    确保 API 服务器、调度器和数据库连接被正确关闭，释放端口和文件句柄。
    """
    logger.info("正在清理资源...")

    # 1. 停止调度器（不再触发新的扫描）
    if scheduler is not None:
        try:
            scheduler.stop()
        except Exception as e:
            logger.warning(f"停止调度器时出错: {e}")

    # 2. 停止 API 服务器（释放端口）
    if server is not None:
        try:
            server.stop()
        except Exception as e:
            logger.warning(f"停止 API 服务器时出错: {e}")

    # 3. 关闭数据库连接（释放连接池）
    if db is not None:
        try:
            db.close()
        except Exception as e:
            logger.warning(f"关闭数据库连接时出错: {e}")

    logger.info("服务已停止")


async def main():
    from config.settings import settings

    parser = argparse.ArgumentParser(description="门店预约与结算服务")
    parser.add_argument("--host", default=settings.web_host,
                        help=f"监听地址 (默认: {settings.web_host})")
    parser.add_argument("--port", type=int, default=settings.web_port,
                        help=f"监听端口 (默认: {settings.web_port})")
    parser.add_argument("--db", default=None,
                        help="数据库连接 URL")
    parser.add_argument("--no-scheduler", action="store_true",
                        help="不启动生命周期扫描")
    args = parser.parse_args()

    _setup_logging(settings.log_level)

    # 用于 finally 清理的引用
    server = None
    scheduler = None
    db = None

    try:
        # 初始化数据库
        from database import DatabaseManager
        db = DatabaseManager(args.db)
        db.create_tables()
        logger.info(f"数据库已连接: {db.database_url}")

        from business.clock import SystemClock
        from business.lifecycle import LifecycleService
        from interface.api import ApiServer, create_app

        clock = SystemClock()

        # 启动时先扫描一次，补上停机期间到期的预约
        lifecycle = LifecycleService(db, clock)
        lifecycle.run_scan()

        if not args.no_scheduler:
            from business.scheduler import Scheduler
            scheduler = Scheduler(asyncio.get_running_loop())
            scheduler.add_lifecycle_scan(lifecycle)
            scheduler.start()

        server = ApiServer(create_app(db, clock), host=args.host, port=args.port)
        server.start()

        print()
        print("=" * 60)
        print("  预约与结算服务已启动!")
        print(f"  访问地址: http://localhost:{args.port}")
        print(f"  数据库: {db.database_url}")
        print(f"  状态扫描: {'未启用' if args.no_scheduler else '每 %s 秒' % settings.lifecycle_scan_interval_seconds}")
        print("=" * 60)
        print("  按 Ctrl+C 停止服务")
        print()

        # 设置信号处理，使用 asyncio 的信号处理确保事件循环能正确响应
        loop = asyncio.get_running_loop()
        shutdown_event = asyncio.Event()
        _shutdown_requested = False

        def signal_handler(signum):
            """处理退出信号"""
            nonlocal _shutdown_requested
            if _shutdown_requested:
                # 第二次收到信号，强制退出
                logger.warning("再次收到退出信号，强制退出...")
                for task in asyncio.all_tasks(loop):
                    task.cancel()
                return
            _shutdown_requested = True
            logger.info(f"收到信号 {signum}，正在关闭服务...")
            shutdown_event.set()

        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, signal_handler, sig)

        # 保持运行，直到收到退出信号
        await shutdown_event.wait()

    except asyncio.CancelledError:
        logger.info("任务被取消，正在清理...")
    except KeyboardInterrupt:
        logger.info("收到键盘中断信号")
    finally:
        await _cleanup(server, scheduler, db)


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except (KeyboardInterrupt, SystemExit):
        pass
    finally:
        print("\n已停止。")
