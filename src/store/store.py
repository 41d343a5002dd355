"""Single-consumer state store.

Producers (user input, AI stream chunks, Connect events, timers) call
:meth:`Store.send` from anywhere on the event loop; one consumer task pulls
actions off an unbounded :class:`asyncio.Queue` and applies them with
:func:`chat_reducer` strictly in submission order.  Only that task ever
writes ``_state``.

Usage
-----
>>> async with Store() as store:
...     store.send(SetCurrentUser(user=customer))
...     await store.join()
...     store.state.current_user
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator

from src.store.actions import Action
from src.store.reducer import ChatState, chat_reducer

logger = logging.getLogger(__name__)

_CLOSED = object()


class Store:
    """Actor-style owner of one conversation's :class:`ChatState`."""

    def __init__(self, initial_state: ChatState | None = None) -> None:
        self._state = initial_state or ChatState()
        self._queue: asyncio.Queue[Action] = asyncio.Queue()
        self._subscribers: list[asyncio.Queue] = []
        self._consumer: asyncio.Task | None = None

    # ── Lifecycle ────────────────────────────────────────────────────

    def start(self) -> None:
        """Start the consumer task.  Must be called from a running loop."""
        if self._consumer is None or self._consumer.done():
            self._consumer = asyncio.get_running_loop().create_task(
                self._consume(), name="chat-store-consumer",
            )

    async def close(self) -> None:
        """Apply everything already queued, then stop the consumer."""
        if self._consumer is not None and not self._consumer.done():
            await self._queue.join()
            self._consumer.cancel()
            try:
                await self._consumer
            except asyncio.CancelledError:
                pass
        self._consumer = None
        for queue in self._subscribers:
            queue.put_nowait(_CLOSED)
        self._subscribers.clear()

    async def __aenter__(self) -> Store:
        self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    # ── Public API ───────────────────────────────────────────────────

    @property
    def state(self) -> ChatState:
        """The latest applied snapshot."""
        return self._state

    def send(self, action: Action) -> None:
        """Enqueue *action* without waiting for it to be applied."""
        self._queue.put_nowait(action)

    async def join(self) -> None:
        """Wait until every action queued so far has been applied."""
        if self._consumer is None:
            raise RuntimeError("Store consumer is not running; call start() first")
        await self._queue.join()

    async def dispatch(self, action: Action) -> ChatState:
        """Enqueue *action* and return the state once it has been applied."""
        self.send(action)
        await self.join()
        return self._state

    async def subscribe(self) -> AsyncIterator[ChatState]:
        """Yield the current snapshot, then every subsequent distinct snapshot.

        Iteration ends when the store is closed.
        """
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers.append(queue)
        try:
            yield self._state
            while True:
                item = await queue.get()
                if item is _CLOSED:
                    return
                yield item
        finally:
            if queue in self._subscribers:
                self._subscribers.remove(queue)

    # ── Internal ─────────────────────────────────────────────────────

    async def _consume(self) -> None:
        while True:
            action = await self._queue.get()
            try:
                new_state = chat_reducer(self._state, action)
            except Exception:
                logger.exception("Reducer failed on %s; action dropped", type(action).__name__)
            else:
                if new_state is not self._state and new_state != self._state:
                    self._state = new_state
                    for queue in self._subscribers:
                        queue.put_nowait(new_state)
            finally:
                self._queue.task_done()
