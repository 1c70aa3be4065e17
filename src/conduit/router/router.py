"""Output router — fans each session's events out to its subscribers."""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime

from conduit.config.models import OverflowPolicy
from conduit.protocol.events import Envelope, EventSource, RoutedEvent

logger = logging.getLogger(__name__)

Consumer = Callable[[Envelope], Awaitable[None]]
"""An async callable that receives one envelope at a time."""

_subscription_ids = itertools.count(1)


class Subscription:
    """One consumer of one session, with its own bounded queue and pump task.

    The pump awaits the consumer for each envelope in order.  A consumer
    that raises is logged and keeps receiving.
    """

    def __init__(
        self,
        key: str,
        consumer: Consumer,
        maxsize: int,
        policy: OverflowPolicy,
    ) -> None:
        self.key = key
        self.consumer = consumer
        self.policy = policy
        self.id = next(_subscription_ids)
        self.dropped = 0
        self.queue: asyncio.Queue[Envelope] = asyncio.Queue(maxsize=maxsize)
        self._task = asyncio.create_task(
            self._pump(), name=f"conduit-sub-{key}-{self.id}"
        )
        self._task.add_done_callback(self._pump_done)

    @property
    def active(self) -> bool:
        return not self._task.done()

    def offer(self, envelope: Envelope) -> bool:
        """Enqueue without blocking.  Returns ``False`` if the consumer must be dropped."""
        try:
            self.queue.put_nowait(envelope)
        except asyncio.QueueFull:
            pass
        else:
            return True

        if self.policy == "disconnect":
            logger.warning(
                "Session %s: subscriber %d is %d envelopes behind; disconnecting",
                self.key,
                self.id,
                self.queue.qsize(),
            )
            return False

        oldest = self.queue.get_nowait()
        self.queue.task_done()
        self.dropped += 1
        logger.warning(
            "Session %s: subscriber %d queue full; dropped seq %d (%d dropped so far)",
            self.key,
            self.id,
            oldest.seq,
            self.dropped,
        )
        self.queue.put_nowait(envelope)
        return True

    async def join(self) -> None:
        """Wait until everything queued so far has been handed to the consumer."""
        if self.active:
            await self.queue.join()

    async def cancel(self) -> None:
        if not self._task.done():
            self._task.cancel()
        await asyncio.gather(self._task, return_exceptions=True)
        # Release anyone blocked in join() on envelopes that will never run.
        while not self.queue.empty():
            self.queue.get_nowait()
            self.queue.task_done()

    async def _pump(self) -> None:
        while True:
            envelope = await self.queue.get()
            try:
                await self.consumer(envelope)
            except Exception:
                logger.exception(
                    "Session %s: subscriber %d failed on seq %d (%s)",
                    self.key,
                    self.id,
                    envelope.seq,
                    envelope.event.kind,
                )
            finally:
                self.queue.task_done()

    def _pump_done(self, task: asyncio.Task[None]) -> None:
        if not task.cancelled() and task.exception() is not None:
            logger.error("Session %s: subscriber %d pump died: %s", self.key, self.id, task.exception())


class OutputRouter:
    """Per-session publish/subscribe with strict per-session ordering.

    :meth:`publish` stamps each event with the session's next sequence
    number and offers it to every subscriber's queue without blocking, so a
    slow consumer never holds up the producer or other consumers.  Must be
    used from the event loop thread.
    """

    def __init__(
        self,
        queue_size: int = 1000,
        overflow: OverflowPolicy = "drop_oldest",
    ) -> None:
        self._queue_size = queue_size
        self._overflow: OverflowPolicy = overflow
        self._subscriptions: dict[str, list[Subscription]] = {}
        self._seq: dict[str, int] = {}
        self._closed = False

    def subscribe(
        self,
        key: str,
        consumer: Consumer,
        maxsize: int | None = None,
        policy: OverflowPolicy | None = None,
    ) -> Subscription:
        """Deliver every later event of session *key* to *consumer*."""
        if self._closed:
            msg = "Router is closed"
            raise RuntimeError(msg)
        subscription = Subscription(
            key,
            consumer,
            maxsize=maxsize or self._queue_size,
            policy=policy or self._overflow,
        )
        self._subscriptions.setdefault(key, []).append(subscription)
        logger.debug("Session %s: subscriber %d attached", key, subscription.id)
        return subscription

    async def unsubscribe(self, key: str, consumer: Consumer | Subscription) -> None:
        """Detach *consumer* (or a specific subscription) from session *key*."""
        subs = self._subscriptions.get(key, [])
        # Bound methods are rebuilt on each attribute access; compare by equality.
        removed = [s for s in subs if s is consumer or s.consumer == consumer]
        for sub in removed:
            subs.remove(sub)
            await sub.cancel()
        if not subs:
            self._subscriptions.pop(key, None)

    def subscribers(self, key: str) -> int:
        return len(self._subscriptions.get(key, ()))

    def publish(
        self,
        key: str,
        event: RoutedEvent,
        *,
        source: EventSource = EventSource.LIVE,
        uuid: str | None = None,
    ) -> Envelope:
        """Sequence *event* and queue it for every subscriber of *key*.

        Returns the envelope even when nobody is subscribed.
        """
        seq = self._seq.get(key, 0)
        self._seq[key] = seq + 1
        envelope = Envelope(
            key=key,
            seq=seq,
            ts=_iso_now(),
            source=source,
            uuid=uuid,
            event=event,
        )
        if self._closed:
            logger.debug("Router closed; not delivering seq %d of %s", seq, key)
            return envelope

        dropped: list[Subscription] = []
        for sub in self._subscriptions.get(key, ()):
            if not sub.offer(envelope):
                dropped.append(sub)
        for sub in dropped:
            self._subscriptions[key].remove(sub)
            task = asyncio.ensure_future(sub.cancel())
            task.add_done_callback(_log_failure)
        return envelope

    async def drain(self, key: str) -> None:
        """Wait until every subscriber of *key* has consumed what was published."""
        subs = list(self._subscriptions.get(key, ()))
        await asyncio.gather(*(sub.join() for sub in subs))

    async def release(self, key: str) -> None:
        """Drain and detach every subscriber of *key*, then forget its sequence."""
        await self.drain(key)
        for sub in self._subscriptions.pop(key, []):
            await sub.cancel()
        self._seq.pop(key, None)

    async def close(self) -> None:
        """Stop delivery to every subscriber.  Queued envelopes are discarded."""
        self._closed = True
        subs = [sub for group in self._subscriptions.values() for sub in group]
        self._subscriptions.clear()
        await asyncio.gather(*(sub.cancel() for sub in subs))
        logger.debug("Router closed (%d subscribers detached)", len(subs))


def _iso_now() -> str:
    """Return the current UTC time as ISO 8601 with milliseconds."""
    return datetime.now(tz=UTC).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


def _log_failure(task: asyncio.Future[None]) -> None:
    if not task.cancelled() and task.exception() is not None:
        logger.error("Failed to detach subscriber: %s", task.exception())
