"""
Lifecycle hooks of documents.

A hook is any callable taking the document. It may return nothing, an awaitable, or an
iterable of awaitables. All awaitables of a phase run concurrently and the phase completes
only once all of them have; the first failure aborts the lifecycle.

Hooks are declared by overriding the phase method, by decorating a method with ``on``,
or by calling ``register_hook`` on the class::

    class Ghost(Document):
        async def pre_save(self):
            self.updated = datetime.now(timezone.utc)

        @on("post_delete")
        def forget(self):
            return [cache.evict(self.id), audit.log("deleted", self.id)]

    Ghost.register_hook("post_find", lambda ghost: ghost.haunt())
"""

import asyncio
import inspect
from collections.abc import Awaitable, Callable, Iterable
from typing import Any

PHASES = (
    "pre_validate",
    "post_validate",
    "pre_save",
    "post_save",
    "pre_delete",
    "post_delete",
    "post_find",
)

HOOK_MARKER = "__docmapper_hook_phases__"

Hook = Callable[[Any], Any]


def check_phase(phase: str) -> None:
    if phase not in PHASES:
        raise ValueError(f"Unknown hook phase '{phase}'. Expected one of {', '.join(PHASES)}.")


def on(phase: str) -> Callable[[Hook], Hook]:
    """Marks a document method as a hook of ``phase``."""
    check_phase(phase)

    def decorator(func: Hook) -> Hook:
        setattr(func, HOOK_MARKER, tuple(getattr(func, HOOK_MARKER, ())) + (phase,))
        return func

    return decorator


def _collect_awaitables(outcome: Any) -> list[Awaitable]:
    if outcome is None:
        return []
    if inspect.isawaitable(outcome):
        return [outcome]
    if isinstance(outcome, Iterable) and not isinstance(outcome, (str, bytes, dict)):
        return [item for item in outcome if inspect.isawaitable(item)]
    return []


def _discard(awaitables: list[Awaitable]) -> None:
    for awaitable in awaitables:
        if inspect.iscoroutine(awaitable):
            awaitable.close()
        elif isinstance(awaitable, asyncio.Future):
            awaitable.cancel()


async def run_hooks(callbacks: list[Callable[[], Any]]) -> None:
    """
    Invokes every callback, then awaits all returned awaitables together.

    Raises:
        Exception: The first failure of any callback or awaitable.
    """
    pending: list[Awaitable] = []
    try:
        for callback in callbacks:
            pending.extend(_collect_awaitables(callback()))
    except BaseException:
        _discard(pending)
        raise
    if pending:
        await asyncio.gather(*pending)
