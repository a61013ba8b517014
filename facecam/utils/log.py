"""日志配置

导入即配置根日志；级别可用环境变量 FACECAM_LOG_LEVEL 或 CLI --log-level 覆盖。
"""

import logging
import os

from contextlib import contextmanager

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
LOG_LEVEL_ENV = "FACECAM_LOG_LEVEL"

logging.basicConfig(level=os.environ.get(LOG_LEVEL_ENV, "INFO").upper(), format=LOG_FORMAT)


def get_logger(name):
    """获取 facecam 模块日志记录器"""
    return logging.getLogger(name)


def set_level(level):
    """Set the root level from a name ("debug") or a logging constant."""
    if isinstance(level, str):
        value = logging.getLevelName(level.upper())
        if not isinstance(value, int):
            raise ValueError(f"unknown log level: {level}")
        level = value
    logging.getLogger().setLevel(level)
    return level


@contextmanager
def suppress_fds(enabled=True):
    """Point FD 1/2 at /dev/null while insightface/onnxruntime load models.

    Their banners are printed from native code, so redirecting sys.stdout alone is
    not enough. At DEBUG level pass enabled=False to keep that output.
    """
    if not enabled:
        yield
        return
    devnull = os.open(os.devnull, os.O_RDWR)
    saved = (os.dup(1), os.dup(2))
    try:
        os.dup2(devnull, 1)
        os.dup2(devnull, 2)
        yield
    finally:
        for fd, old in zip((1, 2), saved):
            os.dup2(old, fd)
            os.close(old)
        os.close(devnull)
