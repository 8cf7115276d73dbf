"""初始化数据库"""
import sys
import os

# 添加项目根目录到路径
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from database import DatabaseManager
from config.business_config import business_config
from loguru import logger


def init_database(database_url=None):
    """初始化数据库和种子数据"""
    logger.info("Initializing database...")

    # 创建数据库管理器
    db = DatabaseManager(database_url)

    # 创建所有表
    logger.info("Creating tables...")
    db.create_tables()

    # 插入种子数据
    logger.info("Inserting seed data...")

    for service in business_config.get_service_catalog():
        db.services.get_or_create(
            name=service['name'],
            duration_minutes=service['duration_minutes'],
            base_price=service['base_price'],
        )
        logger.info(f"Created service: {service['name']}")

    for method in business_config.get_payment_methods():
        db.payment_methods.get_or_create(
            code=method['code'],
            name=method['name'],
            fee_percentage=method.get('fee_percentage', 0),
        )
        logger.info(f"Created payment method: {method['code']}")

    for worker in business_config.get_workers():
        db.workers.get_or_create(
            name=worker['name'],
            commission_percentage=worker.get('commission_percentage'),
        )
        logger.info(f"Created worker: {worker['name']}")

    logger.info("Database initialization completed!")
    return db


if __name__ == "__main__":
    init_database(sys.argv[1] if len(sys.argv) > 1 else None)
