"""
Imperative post-create actions.

Some steps are not resources of their own: writing a generated config file
into a bucket once the API exists, seeding a table, invalidating a cache.
ActionProvider lets such steps take part in the graph like any resource, so
they are ordered by their refs and re-run only when their inputs change.
"""

import asyncio
import inspect
from typing import Any, Callable
from dataclasses import dataclass

from moraine.core.errors import ProviderNotFoundError
from moraine.providers.base import ResourceProvider


@dataclass
class ActionHandler:
    """Callables run for one action kind."""

    on_apply: Callable[[dict[str, Any]], Any]
    on_delete: Callable[[dict[str, Any]], Any] | None = None


class ActionProvider(ResourceProvider):
    """
    Provider backed by user callables.

    ``on_apply`` receives the resolved inputs and may return a dict of
    outputs (anything else is ignored). ``on_delete`` receives the recorded
    outputs.

    Example:
        actions = ActionProvider()

        @actions.action("action:WriteConfig")
        def write_config(inputs):
            s3.put_object(Bucket=inputs["bucket"], Key="config.js", Body=inputs["body"])
            return {"key": "config.js"}

        providers.register("action", actions)
    """

    def __init__(self):
        self._handlers: dict[str, ActionHandler] = {}

    def register(
        self,
        kind: str,
        on_apply: Callable[[dict[str, Any]], Any],
        on_delete: Callable[[dict[str, Any]], Any] | None = None,
    ) -> None:
        self._handlers[kind] = ActionHandler(on_apply=on_apply, on_delete=on_delete)

    def action(self, kind: str) -> Callable:
        """Decorator form of ``register`` for the apply callable."""

        def decorator(func: Callable[[dict[str, Any]], Any]) -> Callable[[dict[str, Any]], Any]:
            self.register(kind, func)
            return func

        return decorator

    def _handler(self, kind: str) -> ActionHandler:
        if kind not in self._handlers:
            raise ProviderNotFoundError(kind)
        return self._handlers[kind]

    async def apply(self, kind: str, inputs: dict[str, Any]) -> dict[str, Any]:
        result = await _call(self._handler(kind).on_apply, inputs)
        return dict(result) if isinstance(result, dict) else {}

    async def delete(self, kind: str, outputs: dict[str, Any]) -> None:
        on_delete = self._handler(kind).on_delete
        if on_delete is None:
            return
        await _call(on_delete, outputs)

    def get_provider_name(self) -> str:
        """Return provider name."""
        return "action"


async def _call(func: Callable[[dict[str, Any]], Any], arg: dict[str, Any]) -> Any:
    """Await coroutine handlers; run plain ones in a worker thread."""
    if inspect.iscoroutinefunction(func):
        return await func(arg)
    result = await asyncio.to_thread(func, arg)
    if inspect.isawaitable(result):
        result = await result
    return result
