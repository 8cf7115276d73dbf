"""用户接口模块 - HTTP API

- create_app: 构建 FastAPI 应用（预约、时间轴、结算、套餐、报表）
- ApiServer: 在独立线程中运行 uvicorn

使用示例：
    ```python
    from database import DatabaseManager
    from interface import ApiServer, create_app

    db = DatabaseManager("sqlite:///data/agenda.db")
    db.create_tables()
    server = ApiServer(create_app(db), port=8080)
    server.start()
    ```
"""
from interface.api import ApiServer, create_app, error_status

__all__ = [
    "ApiServer",
    "create_app",
    "error_status",
]
