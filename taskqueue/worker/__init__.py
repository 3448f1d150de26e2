"""
Worker module.
Contains the consumer process and the task handler registry.
"""

from taskqueue.worker.handlers import HandlerRegistry, register_handler, registry
from taskqueue.worker.main import Worker, run

__all__ = ["HandlerRegistry", "Worker", "register_handler", "registry", "run"]
