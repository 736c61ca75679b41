import logging
import os
import sys
from typing import Optional

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

# 第三方库的请求级 DEBUG 太吵，统一压到 WARNING
NOISY_LOGGERS = ("urllib3", "requests", "kombu", "amqp")


def configure_logging(level: Optional[str] = None) -> logging.Logger:
    """
    API / Celery worker / scripts 都在启动时调一次，可重复调用。
    uvicorn 已经挂了 handler 时只调 level，不重复加输出。
    """
    wanted = (level or os.getenv("LOG_LEVEL") or "INFO").upper()
    root = logging.getLogger()

    if root.handlers:
        root.setLevel(wanted)
    else:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(handler)
        root.setLevel(wanted)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(logging.WARNING, root.level))

    logging.captureWarnings(True)
    return logging.getLogger("syncbridge")
