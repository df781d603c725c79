"""
Scheduler module.
Contains the time wheel, cron evaluation and the tick loop.
"""

from taskqueue.scheduler.cron import first_occurrence, next_occurrence, validate_cron
from taskqueue.scheduler.main import Scheduler
from taskqueue.scheduler.timewheel import TimeWheel

__all__ = [
    "Scheduler",
    "TimeWheel",
    "first_occurrence",
    "next_occurrence",
    "validate_cron",
]
