"""Logging setup: host-tagged records with optional Slack fan-out."""

from __future__ import annotations

import logging
import queue
import socket
import sys
from logging.handlers import QueueHandler, QueueListener

import httpx

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}

LOG_FORMAT = "%(asctime)s %(levelname)s host=%(host)s %(name)s %(message)s"

_slack_listener: QueueListener | None = None


def parse_level(level: str) -> int:
    try:
        return _LEVELS[level.lower()]
    except KeyError:
        raise ValueError(f"invalid log level: {level}") from None


class HostFilter(logging.Filter):
    def __init__(self, hostname: str) -> None:
        super().__init__()
        self.hostname = hostname

    def filter(self, record: logging.LogRecord) -> bool:
        record.host = self.hostname
        return True


class SlackWebhookHandler(logging.Handler):
    """Posts formatted records to a Slack incoming webhook."""

    def __init__(
        self,
        webhook_url: str,
        channel: str = "",
        level: int = logging.NOTSET,
        timeout_s: float = 5.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        super().__init__(level)
        self.webhook_url = webhook_url
        self.channel = channel
        self._client = httpx.Client(timeout=timeout_s, transport=transport)

    def emit(self, record: logging.LogRecord) -> None:
        payload: dict[str, str] = {"text": self.format(record)}
        if self.channel:
            payload["channel"] = self.channel
        try:
            response = self._client.post(self.webhook_url, json=payload)
            response.raise_for_status()
        except httpx.HTTPError:
            self.handleError(record)

    def close(self) -> None:
        self._client.close()
        super().close()


def configure_logging(
    level: str = "info",
    slack_webhook_url: str = "",
    slack_channel: str = "",
    hostname: str | None = None,
    slack_transport: httpx.BaseTransport | None = None,
) -> logging.Logger:
    """Route ``canary_releaser`` records to stdout and, optionally, to Slack.

    Slack posts are made from a :class:`QueueListener` thread so a slow webhook
    never holds up the logging caller. Call :func:`shutdown_logging` before
    exiting to flush queued alerts.
    """
    global _slack_listener

    log_level = parse_level(level)
    host_filter = HostFilter(hostname or socket.gethostname())
    formatter = logging.Formatter(LOG_FORMAT)

    shutdown_logging()
    logger = logging.getLogger("canary_releaser")
    for existing in list(logger.handlers):
        logger.removeHandler(existing)
        existing.close()
    logger.setLevel(log_level)
    logger.propagate = False

    stream = logging.StreamHandler(sys.stdout)
    stream.setFormatter(formatter)
    stream.addFilter(host_filter)
    logger.addHandler(stream)

    if slack_webhook_url:
        slack = SlackWebhookHandler(
            slack_webhook_url, slack_channel, level=log_level, transport=slack_transport
        )
        slack.setFormatter(formatter)
        slack.addFilter(host_filter)
        records: queue.SimpleQueue[logging.LogRecord] = queue.SimpleQueue()
        queue_handler = QueueHandler(records)
        queue_handler.setLevel(log_level)
        logger.addHandler(queue_handler)
        _slack_listener = QueueListener(records, slack, respect_handler_level=True)
        _slack_listener.start()
    return logger


def shutdown_logging() -> None:
    """Stop the Slack listener after it has posted every queued record."""
    global _slack_listener

    listener, _slack_listener = _slack_listener, None
    if listener is None:
        return
    listener.stop()
    for handler in listener.handlers:
        handler.close()
