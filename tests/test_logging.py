"""Tests for structlog setup and request-scoped log context."""

import json
import logging

import pytest
import structlog

from marketview.logging import get_logger, request_context, setup_logging


@pytest.fixture(autouse=True)
def restore_logging():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)
    structlog.reset_defaults()
    structlog.contextvars.clear_contextvars()
    for name in ("httpx", "httpcore", "aiosqlite", "uvicorn.access"):
        logging.getLogger(name).setLevel(logging.NOTSET)


def _last_json_line(err: str) -> dict:
    return json.loads(err.strip().splitlines()[-1])


def test_json_format_emits_one_object_per_event(capsys: pytest.CaptureFixture) -> None:
    setup_logging("INFO", log_format="json")

    get_logger("marketview.tests.json").info("chart_served", candles=37)

    record = _last_json_line(capsys.readouterr().err)
    assert record["event"] == "chart_served"
    assert record["candles"] == 37
    assert record["level"] == "info"
    assert record["logger"] == "marketview.tests.json"


def test_request_context_tags_nested_events(capsys: pytest.CaptureFixture) -> None:
    setup_logging("INFO", log_format="json")
    logger = get_logger("marketview.tests.context")

    with request_context(symbol="BTCUSDT", route="chart"):
        logger.info("coin_cache_hit", coin_id="bitcoin")
    logger.info("after_request")

    lines = [json.loads(line) for line in capsys.readouterr().err.strip().splitlines()]
    assert lines[-2]["symbol"] == "BTCUSDT"
    assert lines[-2]["route"] == "chart"
    assert "symbol" not in lines[-1]


def test_level_filters_debug(capsys: pytest.CaptureFixture) -> None:
    setup_logging("INFO", log_format="json")

    get_logger("marketview.tests.level").debug("window_selected")

    assert capsys.readouterr().err == ""


@pytest.mark.parametrize("level,expected", [("INFO", logging.WARNING), ("DEBUG", logging.DEBUG)])
def test_http_client_logs_quieted(level: str, expected: int) -> None:
    setup_logging(level)

    assert logging.getLogger("httpx").level == expected
    assert logging.getLogger("httpcore").level == expected
