import json
import logging

from websock.logging_utils import JsonFormatter, configure_file_logger, get_logger, mask_session_id, set_verbose


def _record(**extra) -> logging.LogRecord:
    record = logging.LogRecord("websock", logging.INFO, __file__, 1, "hello %s", ("world",), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_json_formatter_includes_extras():
    line = JsonFormatter().format(_record(session="sid-1234", blob=b"\x00"))
    payload = json.loads(line)
    assert payload["msg"] == "hello world"
    assert payload["level"] == "INFO"
    assert payload["session"] == "sid-1234"
    assert payload["blob"] == str(b"\x00")
    assert "lineno" not in payload


def test_mask_session_id():
    sid = "0123456789abcdef0123456789abcdef"
    masked = mask_session_id(sid)
    assert masked.startswith("sid-") and sid not in masked
    assert masked == mask_session_id(sid)
    assert mask_session_id(sid, reveal=True) == sid


def test_file_logger(tmp_path):
    name = "websock.test-file"
    path = tmp_path / "logs" / "websock.jsonl"
    logger = configure_file_logger(path, name)
    configure_file_logger(path, name)
    assert sum(isinstance(h, logging.FileHandler) for h in logger.handlers) == 1
    logger.info("written", extra={"k": 1})
    for handler in logger.handlers:
        handler.flush()
    entry = json.loads(path.read_text().splitlines()[-1])
    assert entry["msg"] == "written" and entry["k"] == 1
    for handler in list(logger.handlers):
        if isinstance(handler, logging.FileHandler):
            logger.removeHandler(handler)
            handler.close()


def test_set_verbose():
    name = "websock.test-verbose"
    set_verbose(True, name)
    assert get_logger(name).level == logging.DEBUG
    set_verbose(False, name)
    assert get_logger(name).level == logging.INFO
