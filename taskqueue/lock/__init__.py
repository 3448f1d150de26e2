"""
Process lock for single-consumer hosts.
"""

from taskqueue.lock.process_lock import ProcessLock, pid_is_alive

__all__ = ["ProcessLock", "pid_is_alive"]
