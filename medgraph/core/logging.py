# medgraph/core/logging.py
import logging

from medgraph.core.config import settings

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: str | None = None) -> None:
    logging.basicConfig(
        level=(level or settings.LOG_LEVEL).upper(),
        format=LOG_FORMAT,
    )
    # The SDK logs every HTTP request at INFO.
    logging.getLogger("httpx").setLevel(logging.WARNING)
