"""
Performance monitoring utilities
Timing for provider calls and workflow operations, summarized on /health
"""

import asyncio
import logging
import time
import functools
import threading
from typing import Dict, Any, Callable
from datetime import datetime

logger = logging.getLogger(__name__)

_stats_lock = threading.Lock()
_operation_stats: Dict[str, Dict[str, float]] = {}

def record_operation(operation_name: str, duration_ms: float, success: bool):
    """Accumulate call count, failures and latency for an operation"""
    with _stats_lock:
        stats = _operation_stats.setdefault(operation_name, {
            'calls': 0, 'failures': 0, 'total_ms': 0.0, 'max_ms': 0.0
        })
        stats['calls'] += 1
        if not success:
            stats['failures'] += 1
        stats['total_ms'] += duration_ms
        stats['max_ms'] = max(stats['max_ms'], duration_ms)

class OperationTimer:
    """Simple operation timer for performance monitoring"""

    def __init__(self, operation_name: str):
        self.operation_name = operation_name
        self.start_time = None
        self.end_time = None

    def __enter__(self):
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.end_time = time.perf_counter()
        duration = (self.end_time - self.start_time) * 1000
        record_operation(self.operation_name, duration, exc_type is None)

        if exc_type is None:
            logger.debug(f"⏱️ {self.operation_name}: {duration:.2f}ms")
        else:
            logger.warning(f"⏱️ {self.operation_name}: {duration:.2f}ms (failed: {exc_type.__name__})")

    @property
    def duration_ms(self) -> float:
        """Get duration in milliseconds"""
        if self.start_time and self.end_time:
            return (self.end_time - self.start_time) * 1000
        return 0.0

def monitor_performance(operation_name: str):
    """
    Decorator to monitor function performance

    Args:
        operation_name: Name of the operation being monitored
    """
    def decorator(func: Callable):
        @functools.wraps(func)
        async def async_wrapper(*args, **kwargs):
            with OperationTimer(operation_name):
                return await func(*args, **kwargs)

        @functools.wraps(func)
        def sync_wrapper(*args, **kwargs):
            with OperationTimer(operation_name):
                return func(*args, **kwargs)

        if asyncio.iscoroutinefunction(func):
            return async_wrapper
        return sync_wrapper

    return decorator

def get_performance_stats() -> Dict[str, Any]:
    """Per-operation call counts, failures and latency"""
    with _stats_lock:
        operations = {
            name: {
                'calls': int(stats['calls']),
                'failures': int(stats['failures']),
                'avg_ms': round(stats['total_ms'] / stats['calls'], 2) if stats['calls'] else 0.0,
                'max_ms': round(stats['max_ms'], 2),
            }
            for name, stats in _operation_stats.items()
        }
    return {
        'operations': operations,
        'timestamp': datetime.utcnow().isoformat(),
    }

def reset_performance_stats():
    with _stats_lock:
        _operation_stats.clear()
