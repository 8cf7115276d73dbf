"""Entrypoint cleanup tests."""
import asyncio

import pytest
from loguru import logger

from app import _cleanup


class _Resource:

    def __init__(self, fail=False):
        self.closed = False
        self.fail = fail

    def _shutdown(self):
        self.closed = True
        if self.fail:
            raise RuntimeError("port still bound")

    stop = _shutdown
    close = _shutdown


@pytest.fixture
def messages():
    captured = []
    sink_id = logger.add(lambda m: captured.append(m.record["message"]), level="INFO")
    yield captured
    logger.remove(sink_id)


class TestCleanup:

    def test_stops_everything_in_order(self, messages):
        scheduler, server, db = _Resource(), _Resource(), _Resource()
        asyncio.run(_cleanup(server, scheduler, db))
        assert scheduler.closed and server.closed and db.closed
        assert messages[0] == "正在清理资源..."
        assert messages[-1] == "服务已停止"

    def test_one_failure_does_not_block_the_rest(self, messages):
        server, db = _Resource(fail=True), _Resource()
        asyncio.run(_cleanup(server, None, db))
        assert db.closed
        assert any("停止 API 服务器时出错" in m for m in messages)

    def test_nothing_started(self, messages):
        asyncio.run(_cleanup(None, None, None))
        assert messages == ["正在清理资源...", "服务已停止"]
