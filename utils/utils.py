"""
Utilities Module for the Private Voting Core
Logging setup, performance monitoring, durable JSON storage and hex helpers
"""

import logging
import json
import os
import re
import tempfile
import threading
import time
from collections import deque
from datetime import datetime
from pathlib import Path
from typing import Deque, Dict, Any, List, Optional
import platform
from dataclasses import dataclass

import numpy as np
import psutil

from .errors import StorageError, ValidationError

HEX_RE = re.compile(r'^[0-9a-f]*$')

DEFAULT_METRIC_HISTORY = 10000


@dataclass
class PerformanceMetrics:
    operation: str
    duration_seconds: float
    cpu_percent: float
    memory_mb: float
    timestamp: float
    additional_data: Dict[str, Any] = None


def setup_logging(log_level: str = "INFO", log_file: Optional[Path] = None):
    """Setup logging with a file handler and a stream handler"""
    if log_file is None:
        log_dir = Path("logs")
        log_file = log_dir / \
            f"voting_core_{datetime.now().strftime('%Y%m%d_%H%M%S')}.log"

    log_file = Path(log_file)
    log_file.parent.mkdir(parents=True, exist_ok=True)

    # Clear existing handlers to avoid duplicates
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format='%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s',
        handlers=[
            logging.FileHandler(log_file),
            logging.StreamHandler()
        ]
    )

    logging.getLogger("asyncio").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)

    logger = logging.getLogger(__name__)
    logger.info(f"Logging initialized. Log file: {log_file}")

    return logger


class PerformanceMonitor:
    """Performance monitor with context manager support.

    Keeps the most recent `max_history` measurements; older ones are dropped.
    """

    def __init__(self, max_history: int = DEFAULT_METRIC_HISTORY):
        if max_history < 1:
            raise ValidationError("max_history must be at least 1")
        self.metrics: Deque[PerformanceMetrics] = deque(maxlen=max_history)
        self._lock = threading.Lock()
        self.process = psutil.Process()

    def start_operation(self, operation_name: str) -> 'OperationContext':
        """Start monitoring an operation - returns context manager"""
        return OperationContext(self, operation_name)

    def record_metric(self, metric: PerformanceMetrics):
        with self._lock:
            self.metrics.append(metric)

    def get_summary(self) -> Dict[str, Any]:
        """Get performance summary grouped by operation name"""
        with self._lock:
            metrics_snapshot = list(self.metrics)

        if not metrics_snapshot:
            return {
                'total_operations': 0,
                'total_duration': 0.0,
                'operations': {}
            }

        operation_groups: Dict[str, List[PerformanceMetrics]] = {}
        for metric in metrics_snapshot:
            operation_groups.setdefault(metric.operation, []).append(metric)

        summary = {
            'total_operations': len(metrics_snapshot),
            'operations': {}
        }

        for op_name, metrics in operation_groups.items():
            durations = np.array([m.duration_seconds for m in metrics])
            memory_usages = [m.memory_mb for m in metrics if m.memory_mb > 0]
            total = float(durations.sum())

            summary['operations'][op_name] = {
                'count': len(metrics),
                'total_duration': total,
                'avg_duration': float(np.mean(durations)),
                'min_duration': float(durations.min()),
                'max_duration': float(durations.max()),
                'std_duration': float(np.std(durations)) if len(durations) > 1 else 0.0,
                'peak_memory_mb': max(memory_usages) if memory_usages else 0.0,
                'failures': sum(1 for m in metrics
                                if m.additional_data and m.additional_data.get('exception')),
                'throughput_ops_per_sec': len(metrics) / total if total > 0 else 0.0
            }

        summary['total_duration'] = sum(
            op_data['total_duration']
            for op_data in summary['operations'].values()
        )

        return summary

    def reset(self):
        with self._lock:
            self.metrics.clear()


class OperationContext:
    """Context manager for performance monitoring"""

    def __init__(self, monitor: PerformanceMonitor, operation_name: str):
        self.monitor = monitor
        self.operation_name = operation_name
        self.start_time = None
        self.start_memory = 0.0

    def __enter__(self):
        self.start_time = time.time()
        try:
            self.start_memory = self.monitor.process.memory_info().rss / 1024 / 1024
        except psutil.Error as e:
            logging.debug(f"Performance monitoring error: {e}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        duration = time.time() - self.start_time

        end_memory = self.start_memory
        cpu_percent = 0.0
        try:
            end_memory = self.monitor.process.memory_info().rss / 1024 / 1024
            cpu_percent = self.monitor.process.cpu_percent()
        except psutil.Error as e:
            logging.debug(f"Performance monitoring error: {e}")

        self.monitor.record_metric(PerformanceMetrics(
            operation=self.operation_name,
            duration_seconds=duration,
            cpu_percent=cpu_percent,
            memory_mb=max(self.start_memory, end_memory),
            timestamp=self.start_time,
            additional_data={'exception': exc_type is not None}
        ))
        return False


def get_system_info() -> Dict[str, Any]:
    """Get system information for metrics reports"""
    info = {
        'platform': platform.platform(),
        'python_version': platform.python_version(),
        'machine': platform.machine(),
        'timestamp': datetime.now().isoformat()
    }

    try:
        vm = psutil.virtual_memory()
        info.update({
            'cpu_count_logical': psutil.cpu_count(logical=True),
            'total_memory_gb': round(vm.total / 1024 / 1024 / 1024, 2),
            'memory_percent_used': vm.percent,
        })
    except psutil.Error as e:
        logging.debug(f"System info error: {e}")
        info['psutil_error'] = str(e)

    return info


def normalize_hex(value: str, expected_length: Optional[int] = None, name: str = "value") -> str:
    """Strip whitespace and an optional 0x prefix, lower-case, and validate"""
    if not isinstance(value, str):
        raise ValidationError(f"{name} must be a hex string")

    normalized = re.sub(r'\s+', '', value).lower()
    if normalized.startswith('0x'):
        normalized = normalized[2:]

    if not normalized or not HEX_RE.match(normalized) or len(normalized) % 2:
        raise ValidationError(f"{name} is not valid hex")
    if expected_length is not None and len(normalized) != expected_length:
        raise ValidationError(
            f"{name} must be {expected_length} hex characters, got {len(normalized)}")

    return normalized


def write_json_atomic(path: Path, data: Any, mode: int = 0o600):
    """Durably replace a JSON file: write temp file, fsync, then rename"""
    path = Path(path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
        fd, tmp_path = tempfile.mkstemp(
            dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
        try:
            os.fchmod(fd, mode)
            with os.fdopen(fd, 'w') as f:
                json.dump(data, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise
    except OSError as e:
        raise StorageError(f"Cannot write {path}: {e}") from e


def read_json(path: Path) -> Optional[Any]:
    """Read a JSON file; None when it does not exist"""
    path = Path(path)
    try:
        with open(path, 'r') as f:
            return json.load(f)
    except FileNotFoundError:
        return None
    except (OSError, json.JSONDecodeError) as e:
        raise StorageError(f"Cannot read {path}: {e}") from e


def now_ms() -> int:
    """Current wall-clock time in milliseconds"""
    return int(time.time() * 1000)


def format_duration(seconds: float) -> str:
    """Format duration in human-readable format"""
    if seconds < 1:
        return f"{seconds*1000:.1f}ms"
    elif seconds < 60:
        return f"{seconds:.2f}s"
    minutes = int(seconds // 60)
    return f"{minutes}m {seconds % 60:.1f}s"


__all__ = [
    'PerformanceMetrics',
    'PerformanceMonitor',
    'OperationContext',
    'setup_logging',
    'get_system_info',
    'normalize_hex',
    'write_json_atomic',
    'read_json',
    'now_ms',
    'format_duration',
]
