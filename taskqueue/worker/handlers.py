"""
Task handler registry and builtin handlers.

Handlers must be idempotent - a task may run more than once when its
consumer crashes after the handler finished but before the result was
recorded.
"""

import asyncio
import inspect
import logging
from collections.abc import Callable
from typing import Any

from taskqueue.exceptions import UnknownTaskError
from taskqueue.types.task import HandlerFunc

logger = logging.getLogger(__name__)


class HandlerRegistry:
    """
    Dispatches tasks to handlers by task name.

    Implements the TaskHandler protocol, so a registry can be passed
    straight to TaskStore.process_batch.

    Example:
        registry = HandlerRegistry()

        @registry.register("send_email")
        async def send_email(name: str, payload: dict) -> None:
            ...
    """

    def __init__(self) -> None:
        self._handlers: dict[str, HandlerFunc] = {}

    def register(self, name: str) -> Callable[[HandlerFunc], HandlerFunc]:
        """
        Decorator to register a handler for a task name.

        Args:
            name: The task name this handler processes.

        Returns:
            Decorator function.
        """
        def decorator(handler: HandlerFunc) -> HandlerFunc:
            self._handlers[name] = handler
            logger.debug(f"Registered handler for task: {name}")
            return handler
        return decorator

    def get(self, name: str) -> HandlerFunc | None:
        return self._handlers.get(name)

    def names(self) -> list[str]:
        """List all registered task names."""
        return list(self._handlers.keys())

    def __contains__(self, name: object) -> bool:
        return name in self._handlers

    async def handle(self, name: str, payload: Any) -> None:
        """
        Run the handler registered for ``name``.

        Raises:
            UnknownTaskError: If no handler is registered for the name.
        """
        handler = self._handlers.get(name)
        if handler is None:
            raise UnknownTaskError(name)
        outcome = handler(name, payload)
        if inspect.isawaitable(outcome):
            await outcome


# Default registry used by the worker process
registry = HandlerRegistry()
register_handler = registry.register


# ============================================================================
# Built-in task handlers
# ============================================================================


@register_handler("echo")
async def handle_echo(name: str, payload: Any) -> None:
    """Log the payload; useful to check a deployment end to end."""
    logger.info("Echo task", extra={"task_name": name, "payload": payload})


@register_handler("sleep")
async def handle_sleep(name: str, payload: Any) -> None:
    """
    Sleep handler for testing slow tasks.

    Payload may contain:
    - duration_seconds: How long to sleep (default 1)
    """
    duration = float(payload.get("duration_seconds", 1)) if isinstance(payload, dict) else 1.0
    await asyncio.sleep(duration)
