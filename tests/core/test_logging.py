"""Tests for confidant.core.utils.logging."""

import os
import sys

import pytest
from loguru import logger

from confidant.core.llm.rate_limiter import RateLimiter
from confidant.core.utils.logging import setup_logging
from confidant.gateway.request_queue import RequestQueue
from confidant.gateway.requests import GatewayRequest


@pytest.fixture
def log_file(tmp_dir):
    path = os.path.join(tmp_dir, "confidant.log")
    yield path
    logger.remove()
    logger.add(sys.stderr)


def read_log(path):
    logger.remove()
    with open(path) as f:
        return f.read()


class TestSetupLogging:
    def test_records_outside_a_request_show_placeholder(self, log_file):
        setup_logging(level="info", log_file=log_file)
        logger.info("gateway starting")

        line = read_log(log_file).strip()
        assert "| INFO | - |" in line
        assert line.endswith("gateway starting")

    def test_level_filters_file_sink(self, log_file):
        setup_logging(level="WARNING", log_file=log_file)
        logger.info("quiet")
        logger.warning("loud")

        contents = read_log(log_file)
        assert "quiet" not in contents
        assert "loud" in contents

    async def test_queue_binds_request_id(self, log_file):
        setup_logging(level="DEBUG", log_file=log_file)

        async def executor(item):
            logger.info("calling server")
            return "ok"

        request = GatewayRequest.create("hi")
        assert await RequestQueue(executor, RateLimiter()).enqueue(request) == "ok"

        lines = [line for line in read_log(log_file).splitlines() if "calling server" in line]
        assert len(lines) == 1
        assert f"| {request.id} |" in lines[0]
