from __future__ import annotations

import logging

from cvrelay.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
_HANDLER_NAME = "cvrelay"


def configure_logging() -> None:
    # Install one stream handler; repeated calls from app and worker startup are no-ops.
    settings = get_settings()
    root = logging.getLogger()
    root.setLevel(settings.log_level.upper())
    if any(handler.get_name() == _HANDLER_NAME for handler in root.handlers):
        return
    handler = logging.StreamHandler()
    handler.set_name(_HANDLER_NAME)
    handler.setFormatter(logging.Formatter(_LOG_FORMAT))
    root.addHandler(handler)
    # httpx logs every request at INFO, which would echo upload URLs and tokens in query strings.
    logging.getLogger("httpx").setLevel(logging.WARNING)
