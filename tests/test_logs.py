from __future__ import annotations

import json
import logging
import time
from threading import Thread

import httpx
import pytest

from canary_releaser.logs import (
    SlackWebhookHandler,
    configure_logging,
    parse_level,
    shutdown_logging,
)


def test_parse_level_accepts_known_names() -> None:
    assert parse_level("debug") == logging.DEBUG
    assert parse_level("WARN") == logging.WARNING
    assert parse_level("error") == logging.ERROR


def test_parse_level_rejects_unknown_names() -> None:
    with pytest.raises(ValueError, match="invalid log level: loud"):
        parse_level("loud")


def test_configure_logging_tags_records_with_host(capsys: pytest.CaptureFixture[str]) -> None:
    logger = configure_logging("info", hostname="node-a")

    logging.getLogger("canary_releaser.canary").info("canary_release_success %s", "{}")
    logging.getLogger("canary_releaser.canary").debug("hidden")

    output = capsys.readouterr().out
    assert "host=node-a canary_releaser.canary canary_release_success {}" in output
    assert "hidden" not in output
    assert logger.propagate is False
    assert len(logger.handlers) == 1


def test_configure_logging_sends_slack_alerts_off_the_caller_thread() -> None:
    posted: list[dict[str, str]] = []

    def _slow_webhook(request: httpx.Request) -> httpx.Response:
        time.sleep(0.3)
        posted.append(json.loads(request.content))
        return httpx.Response(200, text="ok")

    logger = configure_logging(
        "warn",
        slack_webhook_url="https://hooks.slack.test/T000",
        slack_channel="#deploys",
        hostname="node-a",
        slack_transport=httpx.MockTransport(_slow_webhook),
    )
    assert not any(isinstance(h, SlackWebhookHandler) for h in logger.handlers)

    def _log(index: int) -> None:
        logging.getLogger("canary_releaser.canary").warning("rollback_success %s", index)

    started = time.monotonic()
    threads = [Thread(target=_log, args=(index,)) for index in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    elapsed = time.monotonic() - started

    assert elapsed < 0.3
    shutdown_logging()

    assert len(posted) == 4
    assert {payload["channel"] for payload in posted} == {"#deploys"}
    assert all("host=node-a" in payload["text"] for payload in posted)
    assert sorted(payload["text"][-1] for payload in posted) == ["0", "1", "2", "3"]


def test_slack_handler_posts_formatted_record() -> None:
    posted: list[dict[str, str]] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        posted.append(json.loads(request.content))
        return httpx.Response(200, text="ok")

    handler = SlackWebhookHandler(
        "https://hooks.slack.test/T000",
        channel="#deploys",
        transport=httpx.MockTransport(_handler),
    )
    handler.setFormatter(logging.Formatter("%(levelname)s %(message)s"))
    logger = logging.getLogger("canary_releaser.test_slack")
    logger.addHandler(handler)
    try:
        logger.error("rollback_success %s", '{"tag": "v1.0.0"}')
    finally:
        logger.removeHandler(handler)
        handler.close()

    assert posted == [{"text": 'ERROR rollback_success {"tag": "v1.0.0"}', "channel": "#deploys"}]


def test_slack_handler_swallows_webhook_failures(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(logging, "raiseExceptions", False)
    handler = SlackWebhookHandler(
        "https://hooks.slack.test/T000",
        transport=httpx.MockTransport(lambda request: httpx.Response(500)),
    )
    record = logging.LogRecord("canary_releaser", logging.ERROR, __file__, 1, "boom", None, None)
    try:
        handler.emit(record)
    finally:
        handler.close()
