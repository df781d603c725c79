"""
Worker module.
Contains the worker pool and the handler registry.
"""

from taskqueue.worker.handlers import HandlerRegistry, register_builtin_handlers
from taskqueue.worker.main import WorkerPool

__all__ = ["HandlerRegistry", "WorkerPool", "register_builtin_handlers"]
