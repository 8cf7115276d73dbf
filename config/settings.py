"""全局配置管理

所有用户可配置项均通过 .env 文件设置，运行时自动加载到此处。

使用方式：
    1. 手动创建 .env 文件（字段名与下方属性同名，大小写不敏感）
    2. 或直接通过环境变量覆盖，如 DATABASE_URL=sqlite:///data/agenda.db
"""
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """应用配置 - 所有字段均可通过 .env 或环境变量覆盖"""

    # ========== 数据库 ==========
    database_url: str = "sqlite:///data/agenda.db"

    # ========== 时间轴（营业时间窗口） ==========
    timeline_start_hour: int = 6    # 06:00
    timeline_end_hour: int = 22     # 22:00
    drag_snap_minutes: int = 30     # 拖拽吸附间隔
    resize_snap_minutes: int = 15   # 调整时长吸附间隔
    min_duration_minutes: int = 15  # 最短服务时长
    default_duration_minutes: int = 60
    reject_overlapping_appointments: bool = True  # 同一员工时间重叠时拒绝

    # ========== 结算 ==========
    default_commission_percentage: float = 50.0

    # ========== 定时任务 ==========
    lifecycle_scan_interval_seconds: int = 60

    # ========== Web 平台配置 ==========
    web_host: str = "0.0.0.0"
    web_port: int = 8080

    # ========== 日志 ==========
    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False
        extra = "ignore"


# 全局配置实例
settings = Settings()
