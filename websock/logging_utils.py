import hashlib
import json
import logging
import sys
import time
from pathlib import Path
from typing import Union

_RESERVED = (
    "msg", "args", "exc_info", "exc_text", "stack_info", "stack_level", "created",
    "msecs", "relativeCreated", "levelno", "levelname", "pathname", "filename",
    "module", "lineno", "funcName", "thread", "threadName", "processName", "process",
    "taskName",
)


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(record.created)),
            "level": record.levelname,
            "name": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        # Allow extra fields via record.__dict__ (filtered)
        for k, v in record.__dict__.items():
            if k in _RESERVED or k in payload:
                continue
            try:
                json.dumps({k: v})
                payload[k] = v
            except (TypeError, ValueError):
                payload[k] = str(v)
        return json.dumps(payload)


def get_logger(name: str = "websock") -> logging.Logger:
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger
    logger.setLevel(logging.INFO)
    h = logging.StreamHandler(sys.stdout)
    h.setFormatter(JsonFormatter())
    logger.addHandler(h)
    logger.propagate = False
    return logger


def configure_file_logger(path: Union[str, Path], name: str = "websock") -> logging.Logger:
    """Mirror JSON log lines into ``path`` in addition to stdout."""
    logger = get_logger(name)
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    for handler in logger.handlers:
        if isinstance(handler, logging.FileHandler) and Path(handler.baseFilename) == target.resolve():
            return logger
    fh = logging.FileHandler(target, encoding="utf-8")
    fh.setFormatter(JsonFormatter())
    logger.addHandler(fh)
    return logger


def set_verbose(verbose: bool, name: str = "websock") -> None:
    get_logger(name).setLevel(logging.DEBUG if verbose else logging.INFO)


def mask_session_id(session_id: str, reveal: bool = False) -> str:
    """Session IDs are masked to a short hash unless ``reveal`` is set."""
    if reveal:
        return session_id
    return "sid-" + hashlib.sha256(session_id.encode("utf-8")).hexdigest()[:8]
