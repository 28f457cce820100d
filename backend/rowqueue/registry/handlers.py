"""Handler registry — maps payload kinds to the code that performs the work."""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable

from rowqueue.errors import NoHandlerError
from rowqueue.schemas.payloads import FollowUpParams, NoopParams, NoopPayload, SendEmailPayload

logger = logging.getLogger("rowqueue.registry.handlers")

Handler = Callable[[Any, Any], Awaitable[None] | None]


def _is_async_callable(handler: Handler) -> bool:
    if inspect.iscoroutinefunction(handler):
        return True
    call = getattr(handler, "__call__", None)
    return call is not None and inspect.iscoroutinefunction(call)


class HandlerRegistry:
    """Dispatch table from payload ``kind`` to a handler callable.

    Handlers take ``(payload, params)``.  Async callables (coroutine
    functions, or objects with an ``async def __call__``) are awaited on the
    loop; other callables run in a worker thread so they cannot stall it.  An
    awaitable returned from either path is awaited before the job counts as
    handled.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, Handler] = {}

    def register(self, kind: str) -> Callable[[Handler], Handler]:
        def _decorator(func: Handler) -> Handler:
            if kind in self._handlers:
                logger.warning("Replacing handler for payload kind '%s'", kind)
            self._handlers[kind] = func
            return func

        return _decorator

    def kinds(self) -> list[str]:
        return sorted(self._handlers)

    def get(self, kind: str) -> Handler:
        try:
            return self._handlers[kind]
        except KeyError:
            raise NoHandlerError(kind) from None

    async def handle(
        self,
        payload: NoopPayload | SendEmailPayload,
        params: NoopParams | FollowUpParams | None = None,
    ) -> None:
        handler = self.get(payload.kind)
        if _is_async_callable(handler):
            result = handler(payload, params)
        else:
            result = await asyncio.to_thread(handler, payload, params)
        if inspect.isawaitable(result):
            await result


default_registry = HandlerRegistry()


@default_registry.register("Noop")
async def handle_noop(payload: NoopPayload, params: NoopParams | FollowUpParams | None) -> None:
    logger.info("   --- NOOP!")


@default_registry.register("SendEmail")
async def handle_send_email(payload: SendEmailPayload, params: NoopParams | FollowUpParams | None) -> None:
    # Delivery itself belongs to the mail transport; this records the intent.
    follow_up = isinstance(params, FollowUpParams) and params.value
    logger.info("   --- EMAIL[%s] follow_up=%s", payload.email.upper(), follow_up)
