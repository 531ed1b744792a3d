"""
Utilities for the Nullifiable Voting System
Logging setup, performance monitoring and result serialization
"""

import logging
import json
import os
import time
import shutil
import platform
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Dict, Any, List, Optional
from dataclasses import dataclass, field, asdict

import numpy as np
import psutil

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s'


@dataclass
class PerformanceMetrics:
    operation: str
    duration_seconds: float
    cpu_percent: float
    memory_mb: float
    timestamp: float
    items: int = 1
    failed: bool = False


def setup_logging(log_level: str = "INFO", log_file: Optional[Path] = None,
                  log_dir: Path = Path("logs")) -> logging.Logger:
    """Install file and stream handlers on the root logger"""
    if log_file is None:
        log_file = Path(log_dir) / \
            f"voting_system_{datetime.now().strftime('%Y%m%d_%H%M%S')}.log"

    log_file = Path(log_file)
    log_file.parent.mkdir(parents=True, exist_ok=True)

    # Clear existing handlers to avoid duplicates
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format=LOG_FORMAT,
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


def hardware_concurrency() -> int:
    """Number of CPUs available to this process"""
    try:
        return max(1, len(psutil.Process().cpu_affinity()))
    except (AttributeError, psutil.Error):
        # cpu_affinity is not available on every platform
        return psutil.cpu_count(logical=True) or os.cpu_count() or 1


class PerformanceMonitor:
    """Collects timing, CPU and memory for proof batches and tally runs"""

    def __init__(self):
        self.metrics: List[PerformanceMetrics] = []
        self.process = psutil.Process()

    def start_operation(self, operation_name: str, items: int = 1) -> 'OperationContext':
        return OperationContext(self, operation_name, items)

    def record_metric(self, metric: PerformanceMetrics):
        self.metrics.append(metric)

    def get_summary(self) -> Dict[str, Any]:
        """Per-operation statistics"""
        summary = {
            'total_operations': len(self.metrics),
            'total_duration': 0.0,
            'operations': {}
        }
        if not self.metrics:
            return summary

        operation_groups: Dict[str, List[PerformanceMetrics]] = {}
        for metric in self.metrics:
            operation_groups.setdefault(metric.operation, []).append(metric)

        for op_name, metrics in operation_groups.items():
            durations = np.array([m.duration_seconds for m in metrics])
            memory = np.array([m.memory_mb for m in metrics])
            cpu = [m.cpu_percent for m in metrics if m.cpu_percent > 0]
            items = sum(m.items for m in metrics)
            total = float(durations.sum())

            summary['operations'][op_name] = {
                'count': len(metrics),
                'failures': sum(1 for m in metrics if m.failed),
                'total_duration': total,
                'avg_duration': float(durations.mean()),
                'min_duration': float(durations.min()),
                'max_duration': float(durations.max()),
                'std_duration': float(durations.std()) if len(durations) > 1 else 0.0,
                'p95_duration': float(np.percentile(durations, 95)),
                'avg_cpu_percent': float(np.mean(cpu)) if cpu else 0.0,
                'peak_memory_mb': float(memory.max()),
                'items_per_sec': items / total if total > 0 else 0.0
            }

        summary['total_duration'] = sum(
            op_data['total_duration']
            for op_data in summary['operations'].values()
        )
        return summary

    def save_metrics(self, filepath: Path):
        filepath = Path(filepath)
        filepath.parent.mkdir(parents=True, exist_ok=True)

        metrics_data = {
            'metrics': [asdict(m) for m in self.metrics],
            'summary': self.get_summary(),
            'system_info': get_system_info(),
            'timestamp': datetime.now().isoformat()
        }

        with open(filepath, 'w') as f:
            json.dump(metrics_data, f, indent=2, default=str)

    def reset(self):
        self.metrics.clear()


class OperationContext:
    """Context manager recording one monitored operation"""

    def __init__(self, monitor: PerformanceMonitor, operation_name: str, items: int = 1):
        self.monitor = monitor
        self.operation_name = operation_name
        self.items = items
        self.start_time = 0.0
        self.start_memory = 0.0

    def _memory_mb(self) -> float:
        try:
            return self.monitor.process.memory_info().rss / 1024 / 1024
        except psutil.Error as e:
            logging.debug(f"Performance monitoring error: {e}")
            return 0.0

    def __enter__(self):
        self.start_time = time.time()
        self.start_memory = self._memory_mb()
        try:
            # First call primes the counter
            self.monitor.process.cpu_percent()
        except psutil.Error as e:
            logging.debug(f"Performance monitoring error: {e}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        duration = time.time() - self.start_time
        try:
            cpu = self.monitor.process.cpu_percent()
        except psutil.Error as e:
            logging.debug(f"Performance monitoring error: {e}")
            cpu = 0.0

        self.monitor.record_metric(PerformanceMetrics(
            operation=self.operation_name,
            duration_seconds=duration,
            cpu_percent=cpu,
            memory_mb=max(self.start_memory, self._memory_mb()),
            timestamp=self.start_time,
            items=self.items,
            failed=exc_type is not None
        ))
        return False


def get_system_info() -> Dict[str, Any]:
    info = {
        'platform': platform.platform(),
        'python_version': platform.python_version(),
        'machine': platform.machine(),
        'hardware_concurrency': hardware_concurrency(),
        'timestamp': datetime.now().isoformat()
    }

    try:
        vm = psutil.virtual_memory()
        info.update({
            'cpu_count_physical': psutil.cpu_count(logical=False),
            'cpu_count_logical': psutil.cpu_count(logical=True),
            'total_memory_gb': round(vm.total / 1024 / 1024 / 1024, 2),
            'available_memory_gb': round(vm.available / 1024 / 1024 / 1024, 2),
        })
    except psutil.Error as e:
        logging.debug(f"System info error: {e}")

    return info

def _to_serializable(obj):
    if hasattr(obj, '__dataclass_fields__'):
        return asdict(obj)
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, Path):
        return str(obj)
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, np.generic):
        return obj.item()
    if isinstance(obj, bytes):
        return obj.hex()
    return str(obj)


def save_results(results: Dict[str, Any], filepath: Path):
    """Save results to JSON file"""
    filepath = Path(filepath)
    filepath.parent.mkdir(parents=True, exist_ok=True)

    with open(filepath, 'w') as f:
        json.dump(results, f, indent=2, default=_to_serializable)


def check_command_exists(command: str) -> bool:
    return shutil.which(command) is not None


def format_duration(seconds: float) -> str:
    """Format duration in human-readable format"""
    if seconds < 1:
        return f"{seconds*1000:.1f}ms"
    elif seconds < 60:
        return f"{seconds:.2f}s"
    elif seconds < 3600:
        minutes = int(seconds // 60)
        secs = seconds % 60
        return f"{minutes}m {secs:.1f}s"
    else:
        hours = int(seconds // 3600)
        minutes = int((seconds % 3600) // 60)
        secs = seconds % 60
        return f"{hours}h {minutes}m {secs:.1f}s"
