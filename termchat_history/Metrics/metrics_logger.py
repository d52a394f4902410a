# metrics_logger.py
#
# Imports
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Optional, Dict, Union, Iterator
import psutil
#
# Third-party Imports
from loguru import logger
#
# Local Imports
#
############################################################################################################
#
# Functions:

LabelValue = Union[str, int, float, bool]
LabelDict = Dict[str, LabelValue]

METRIC_LEVEL = "METRIC"

# Custom level so sinks can pick metrics out of the regular log stream.
try:
    logger.level(METRIC_LEVEL)
except ValueError:
    logger.level(METRIC_LEVEL, no=25, color="<blue>")


def _log_metric(
        metric_name: str,
        metric_type: str,
        value: Any,
        labels: Optional[LabelDict] = None,
):
    bound_logger = logger.bind(
        event=metric_name,
        type=metric_type,
        value=value,
        labels=labels or {},
        timestamp=datetime.now(timezone.utc).isoformat(),
    )
    bound_logger.log(METRIC_LEVEL, f"{metric_type.capitalize()} '{metric_name}': {value}")


class MetricsLogger:
    """
    Emits counters, gauges and histograms as structured METRIC log records, with a set of base
    labels attached to every metric (e.g. the component name).
    """

    def __init__(self, base_labels: Optional[LabelDict] = None):
        self._base_labels = base_labels or {}

    def _get_labels(self, labels: Optional[LabelDict]) -> LabelDict:
        final_labels = self._base_labels.copy()
        if labels:
            final_labels.update(labels)
        return final_labels

    def log_counter(self, name: str, value: int = 1, labels: Optional[LabelDict] = None):
        if value:
            _log_metric(name, "counter", value, self._get_labels(labels))

    def log_gauge(self, name: str, value: float, labels: Optional[LabelDict] = None):
        _log_metric(name, "gauge", value, self._get_labels(labels))

    def log_histogram(self, name: str, value: float, labels: Optional[LabelDict] = None):
        _log_metric(name, "histogram", value, self._get_labels(labels))

    @contextmanager
    def timed(self, name: str, labels: Optional[LabelDict] = None) -> Iterator[Dict[str, LabelValue]]:
        """
        Times the enclosed block and logs it as a histogram, labelled with `status`
        (success/failure). The yielded dict can be filled with extra labels inside the block.
        """
        extra_labels: Dict[str, LabelValue] = {}
        start_time = time.perf_counter()
        status = "success"
        try:
            yield extra_labels
        except Exception:
            status = "failure"
            raise
        finally:
            elapsed_time = time.perf_counter() - start_time
            final_labels = {**(labels or {}), **extra_labels, "status": status}
            self.log_histogram(name, elapsed_time, final_labels)

    def log_resource_usage(self, labels: Optional[LabelDict] = None):
        process = psutil.Process()
        combined_labels = self._get_labels(labels)
        self.log_gauge("process_memory_mb", process.memory_info().rss / (1024 ** 2), combined_labels)
        self.log_gauge("process_cpu_percent", process.cpu_percent(interval=0.1), combined_labels)


# Shared instance for one-off metrics
default_metrics = MetricsLogger()
log_counter = default_metrics.log_counter
log_gauge = default_metrics.log_gauge
log_histogram = default_metrics.log_histogram

#
# End of metrics_logger.py
############################################################################################################
