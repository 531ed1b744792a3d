"""Utilities for the voting system."""

from .utils import (
    setup_logging,
    save_results,
    PerformanceMonitor,
    get_system_info,
    hardware_concurrency,
    check_command_exists,
    format_duration
)

__all__ = [
    'setup_logging',
    'save_results',
    'PerformanceMonitor',
    'get_system_info',
    'hardware_concurrency',
    'check_command_exists',
    'format_duration'
]
