"""
Reaper module.
Contains the sweep that returns stale task claims to the queue.
"""

from taskqueue.reaper.main import Reaper, run

__all__ = ["Reaper", "run"]
