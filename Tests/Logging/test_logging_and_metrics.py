# test_logging_and_metrics.py
#
# Imports
import json
import logging
import os
import sys
#
# Third-Party Imports
import pytest
from loguru import logger
#
# Local Imports
from termchat_history.Logging_Config import configure_logging, retention_function
from termchat_history.Metrics.metrics_logger import MetricsLogger, log_counter
#
########################################################################################################################
#
# Functions:


@pytest.fixture
def log_files(tmp_path):
    log_file = tmp_path / "logs" / "termchat_history.log"
    metrics_file = tmp_path / "logs" / "metrics.json"
    configure_logging("DEBUG", log_file=log_file, metrics_file=metrics_file)
    yield log_file, metrics_file
    logger.remove()
    logger.add(sys.stderr)
    logging.basicConfig(handlers=[], force=True)


def read_metrics(metrics_file):
    logger.complete()
    return [json.loads(line) for line in metrics_file.read_text(encoding="utf-8").splitlines() if line.strip()]


def test_metrics_go_to_the_json_sink(log_files):
    _, metrics_file = log_files
    metrics = MetricsLogger(base_labels={"component": "sync_worker"})

    metrics.log_counter("sync_entries_pushed_total", 3, {"table": "history_global"})
    metrics.log_gauge("sync_queue_pending", 7)
    metrics.log_counter("sync_entries_dead_lettered_total", 0)

    entries = read_metrics(metrics_file)
    assert [(e["event"], e["type"], e["value"]) for e in entries] == [
        ("sync_entries_pushed_total", "counter", 3),
        ("sync_queue_pending", "gauge", 7),
    ]
    assert entries[0]["labels"] == {"component": "sync_worker", "table": "history_global"}
    assert all(e["levelname"] == "METRIC" for e in entries)


def test_timed_records_status_and_extra_labels(log_files):
    _, metrics_file = log_files
    metrics = MetricsLogger()

    with metrics.timed("sync_cycle_duration_seconds", {"reason": "manual"}) as labels:
        labels["outcome"] = "completed"
    with pytest.raises(RuntimeError):
        with metrics.timed("sync_cycle_duration_seconds"):
            raise RuntimeError("boom")

    ok, failed = read_metrics(metrics_file)
    assert ok["type"] == "histogram"
    assert ok["labels"] == {"reason": "manual", "outcome": "completed", "status": "success"}
    assert failed["labels"]["status"] == "failure"
    assert ok["value"] >= 0


def test_module_level_counter(log_files):
    _, metrics_file = log_files
    log_counter("history_commands_total")
    assert read_metrics(metrics_file)[0]["event"] == "history_commands_total"


def test_stdlib_logging_reaches_the_log_file(log_files):
    log_file, metrics_file = log_files

    logging.getLogger("termchat_history.DB.History_Cache_DB").warning("cache says hello")
    logger.info("loguru says hello")
    logger.complete()

    text = log_file.read_text(encoding="utf-8")
    assert "cache says hello" in text
    assert "loguru says hello" in text
    assert "hello" not in metrics_file.read_text(encoding="utf-8")


def test_retention_keeps_five_newest(tmp_path):
    files = []
    for i in range(7):
        path = tmp_path / f"app.{i}.log"
        path.write_text("x", encoding="utf-8")
        os.utime(path, (1_000_000 + i, 1_000_000 + i))
        files.append(str(path))

    removed = retention_function(list(reversed(files)))

    assert sorted(removed) == sorted(files[:2])
    assert retention_function(files[:3]) == []

#
# End of test_logging_and_metrics.py
########################################################################################################################
