# tests/test_logging.py
import json
import logging

from chainsync.core.logging import configure_logging, format_duration, get_logger


def test_format_duration():
    assert format_duration(0) == "00:00:00"
    assert format_duration(3725.9) == "01:02:05"
    assert format_duration(90_000) == "25:00:00"


def test_worker_log_file_is_json_lines(tmp_path):
    root = logging.getLogger()
    saved = list(root.handlers), root.level
    try:
        configure_logging(service="sync", worker="worker-3", level="DEBUG", log_dir=str(tmp_path))
        get_logger("worker").info("worker starting", extra={"event": "worker_starting", "worker_id": 3, "range": "[1,10]"})
        for h in root.handlers:
            h.flush()
        line = (tmp_path / "worker-3.log").read_text(encoding="utf-8").strip().splitlines()[-1]
    finally:
        for h in root.handlers:
            h.close()
        root.handlers[:] = saved[0]
        root.setLevel(saved[1])

    rec = json.loads(line)
    assert rec["event"] == "worker_starting"
    assert rec["worker"] == "worker-3"
    assert rec["service"] == "sync"
    assert rec["worker_id"] == 3
    assert rec["range"] == "[1,10]"
