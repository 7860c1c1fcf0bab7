"""Job handler registry."""

from collections.abc import Callable
from typing import Optional


class JobRegistry:
    """Maps job names to the coroutines that run them."""

    def __init__(self):
        self._handlers: dict[str, Callable] = {}

    def handler(self, job_name: str):
        """
        Decorator to register a job handler.

        Usage:
            @registry.handler("send_email")
            async def send_email(ctx, payload: bytes):
                ...
        """

        def decorator(func: Callable):
            self.register(job_name, func)
            return func

        return decorator

    def register(self, job_name: str, func: Callable) -> None:
        """Register ``func`` for ``job_name``, replacing any earlier handler."""
        self._handlers[job_name] = func

    def get_handler(self, job_name: str) -> Optional[Callable]:
        return self._handlers.get(job_name)

    def all_handlers(self) -> dict[str, Callable]:
        return self._handlers.copy()

    def __contains__(self, job_name: str) -> bool:
        return job_name in self._handlers


# Global registry instance
job_registry = JobRegistry()
