"""Process-wide logging setup shared by the API and both workers."""

from __future__ import annotations

import logging

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"

# Chatty client libraries; their DEBUG output drowns the pipeline logs
_NOISY_LOGGERS = ("botocore", "aiobotocore", "boto3", "urllib3", "amqp", "kombu", "httpx", "openai")


def configure_logging(debug: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format=LOG_FORMAT,
    )
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
