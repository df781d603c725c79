"""
Reaper module.
Contains the lease reaper for recovering expired jobs.
"""

from taskqueue.reaper.main import Reaper

__all__ = ["Reaper"]
