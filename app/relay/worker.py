"""
Outbox relay: polls the outbox table and publishes pending messages.

Each cycle fetches a bounded batch with the readiness query, groups it by
partition key and publishes every group strictly in creation order while
different groups proceed concurrently. A failed publish is recorded on the
message and stops its group for the cycle, so later messages sharing the key
are never delivered ahead of it. Publish failures never stop the loop, and
storage failures are retried with backoff for as long as the process lives.
"""

import asyncio
import contextlib
import logging
import signal
import zlib
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List, Optional

from tortoise.exceptions import BaseORMException

from app.core.config import (
    BATCH_SIZE,
    LOG_FORMAT,
    LOG_LEVEL,
    MAX_RETRIES,
    POLLING_INTERVAL,
    PUBLISH_TIMEOUT,
    RELAY_CONCURRENCY,
    RELAY_SHARD_COUNT,
    RELAY_SHARD_INDEX,
    RETRY_BACKOFF_BASE,
    RETRY_BACKOFF_MAX,
    SHUTDOWN_TIMEOUT,
    STORAGE_ALERT_THRESHOLD,
    STORAGE_BACKOFF_MAX,
    SWEEP_EXPIRED,
)
from app.core.db import close_db, init_db
from app.models.outbox import OutboxMessage, utcnow
from app.relay.exceptions import PermanentPublishError
from app.relay.policy import RetryDecision, RetryPolicy
from app.relay.publisher import BrokerPublisher, build_publisher, resolve_topic
from app.relay.readiness import ready_for_processing
from app.relay.store import DeliveryOutcome, apply_outcome, sweep_expired

log = logging.getLogger("outbox_relay")

STORAGE_ERRORS = (BaseORMException, ConnectionError, OSError)


@dataclass
class RelayPassResult:
    fetched: int = 0
    published: int = 0
    failed: int = 0
    dead_lettered: int = 0
    skipped: int = 0
    lost_races: int = 0
    swept: int = 0

    @property
    def idle(self) -> bool:
        return self.fetched == 0


def group_by_partition(messages: List[OutboxMessage]) -> List[List[OutboxMessage]]:
    """
    Splits a batch into independently publishable groups.

    Messages sharing a partition key form one group in creation order;
    messages without a key are groups of their own.
    """
    groups: List[List[OutboxMessage]] = []
    by_key: Dict[str, List[OutboxMessage]] = {}
    for message in messages:
        if message.partition_key is None:
            groups.append([message])
            continue
        if message.partition_key not in by_key:
            by_key[message.partition_key] = []
            groups.append(by_key[message.partition_key])
        by_key[message.partition_key].append(message)

    for group in groups:
        group.sort(key=lambda m: m.created_at)
    return groups


def shard_of(message: OutboxMessage, shard_count: int) -> int:
    key = message.partition_key if message.partition_key is not None else str(message.id)
    return zlib.crc32(key.encode("utf-8")) % shard_count


class RelayWorker:
    """
    Background relay from the outbox table to a broker.

    Safe to run as several instances against one table: state changes are
    conditional updates (see app.relay.store). Setting shard_count > 1 gives
    each instance exclusive ownership of a slice of partition keys, which
    keeps per-key ordering across instances too.
    """

    def __init__(
        self,
        publisher: BrokerPublisher,
        *,
        policy: Optional[RetryPolicy] = None,
        batch_size: int = BATCH_SIZE,
        poll_interval: float = POLLING_INTERVAL,
        publish_timeout: float = PUBLISH_TIMEOUT,
        max_concurrency: int = RELAY_CONCURRENCY,
        shard_index: int = RELAY_SHARD_INDEX,
        shard_count: int = RELAY_SHARD_COUNT,
        sweep_expired: bool = SWEEP_EXPIRED,
        topic_resolver: Callable[[str], str] = resolve_topic,
        clock: Callable[[], datetime] = utcnow,
    ):
        if not 0 <= shard_index < shard_count:
            raise ValueError(f"shard_index {shard_index} outside 0..{shard_count - 1}")

        self.publisher = publisher
        self.policy = policy or RetryPolicy(
            max_retries=MAX_RETRIES,
            backoff_base_seconds=RETRY_BACKOFF_BASE,
            backoff_max_seconds=RETRY_BACKOFF_MAX,
        )
        self.batch_size = batch_size
        self.poll_interval = poll_interval
        self.publish_timeout = publish_timeout
        self.shard_index = shard_index
        self.shard_count = shard_count
        self.sweep_expired = sweep_expired
        self.topic_resolver = topic_resolver
        self.clock = clock

        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._wakeup = asyncio.Event()
        self._stopping = False
        self._task: Optional[asyncio.Task] = None
        self._storage_failures = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def owns(self, message: OutboxMessage) -> bool:
        return self.shard_count == 1 or shard_of(message, self.shard_count) == self.shard_index

    def notify(self) -> None:
        """Wakes the loop early, e.g. right after a new message was committed."""
        self._wakeup.set()

    def request_stop(self) -> None:
        """No new publish starts after this; in-flight attempts finish."""
        self._stopping = True
        self._wakeup.set()

    # ----------- Single cycle -----------

    async def run_once(self, now: Optional[datetime] = None) -> RelayPassResult:
        """
        Runs one poll -> publish -> update cycle.

        With an explicit `now` every timestamp of the cycle uses it; otherwise
        each state change is stamped from the worker's clock.
        """
        clock = self.clock if now is None else (lambda: now)
        now = clock()
        result = RelayPassResult()

        if self.sweep_expired:
            result.swept = await sweep_expired(now)

        batch = await self._fetch_batch(now)
        result.fetched = len(batch)
        if not batch:
            return result

        groups = group_by_partition(batch)
        outcomes = await asyncio.gather(
            *(self._relay_group(group, result, clock) for group in groups),
            return_exceptions=True,
        )
        # Storage errors surface after every group finished its in-flight update
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                raise outcome

        if result.published or result.failed or result.lost_races:
            log.info(
                f"Relay pass: fetched={result.fetched} published={result.published} "
                f"failed={result.failed} dead_lettered={result.dead_lettered} "
                f"skipped={result.skipped} lost_races={result.lost_races}"
            )
        return result

    async def _fetch_batch(self, now: datetime) -> List[OutboxMessage]:
        """
        Up to batch_size ready messages owned by this relay.

        With shards, pages through the ready set past messages other shards own.
        """
        if self.shard_count == 1:
            return await ready_for_processing(self.policy.max_retries, self.batch_size, now)

        owned: List[OutboxMessage] = []
        offset = 0
        while len(owned) < self.batch_size:
            page = await ready_for_processing(self.policy.max_retries, self.batch_size, now, offset=offset)
            owned.extend(m for m in page if self.owns(m))
            if len(page) < self.batch_size:
                break
            offset += len(page)
        return owned[:self.batch_size]

    async def _relay_group(
        self, group: List[OutboxMessage], result: RelayPassResult, clock: Callable[[], datetime]
    ) -> None:
        async with self._semaphore:
            for position, message in enumerate(group):
                remaining = len(group) - position
                if self._stopping:
                    result.skipped += remaining
                    return

                if not message.is_due(clock()):
                    # Later messages of the key must wait for this one
                    result.skipped += remaining
                    return

                if not await self._attempt(message, result, clock):
                    result.skipped += remaining - 1
                    return

    async def _attempt(
        self, message: OutboxMessage, result: RelayPassResult, clock: Callable[[], datetime]
    ) -> bool:
        """Publishes one message and persists the outcome. True means the group may continue."""
        topic = self.topic_resolver(message.event_type)
        outcome = DeliveryOutcome(message=message, topic_name=topic)

        try:
            await asyncio.wait_for(
                self.publisher.publish(topic, message.partition_key, message.content, message.metadata),
                timeout=self.publish_timeout,
            )
        except asyncio.TimeoutError:
            outcome.error = f"Publish to '{topic}' timed out after {self.publish_timeout}s"
        except PermanentPublishError as e:
            outcome.error = str(e) or type(e).__name__
            outcome.permanent = True
        except Exception as e:
            outcome.error = str(e) or type(e).__name__

        transition = await apply_outcome(outcome, self.policy, clock())

        if not transition.applied:
            result.lost_races += 1
            return outcome.succeeded

        if outcome.succeeded:
            result.published += 1
            log.debug(f"Message {message.id} ({message.event_type}) published to '{topic}'")
            return True

        result.failed += 1
        if transition.decision == RetryDecision.DEAD_LETTER:
            result.dead_lettered += 1
            log.error(
                f"Message {message.id} ({message.event_type}) dead-lettered after "
                f"{message.retry_count} attempts: {outcome.error}"
            )
        else:
            log.warning(
                f"Message {message.id} ({message.event_type}) publish failed "
                f"(attempt {message.retry_count}/{self.policy.max_retries}): {outcome.error}"
            )
        return False

    # ----------- Loop -----------

    def storage_backoff(self) -> float:
        return min(self.poll_interval * (2 ** self._storage_failures), STORAGE_BACKOFF_MAX)

    async def _wait(self, timeout: float) -> None:
        try:
            await asyncio.wait_for(self._wakeup.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            pass
        finally:
            self._wakeup.clear()

    async def run_forever(self) -> None:
        """Main loop for the relay."""
        log.info(
            f"--- Outbox Relay Started (batch_size={self.batch_size}, "
            f"max_retries={self.policy.max_retries}, shard={self.shard_index}/{self.shard_count}) ---"
        )
        while not self._stopping:
            try:
                result = await self.run_once()
                self._storage_failures = 0
            except STORAGE_ERRORS as e:
                self._storage_failures += 1
                delay = self.storage_backoff()
                if self._storage_failures >= STORAGE_ALERT_THRESHOLD:
                    log.critical(
                        f"ALERT: outbox storage unavailable for {self._storage_failures} consecutive "
                        f"cycles: {e}. Retrying in {delay:.1f}s."
                    )
                else:
                    log.error(f"Relay cycle failed on storage: {e}. Retrying in {delay:.1f}s.")
                await self._wait(delay)
                continue
            except Exception:
                log.exception("Unexpected error in relay cycle")
                await self._wait(self.poll_interval)
                continue

            if self._stopping:
                break
            if result.fetched >= self.batch_size and (result.published or result.failed):
                # More messages are likely waiting
                await asyncio.sleep(0)
            else:
                await self._wait(self.poll_interval)

        log.info("--- Outbox Relay Stopped ---")

    async def start(self) -> None:
        if self.running:
            log.warning("Outbox relay already running")
            return
        self._stopping = False
        self._task = asyncio.create_task(self.run_forever())

    async def stop(self, timeout: float = SHUTDOWN_TIMEOUT) -> None:
        """Stops the loop once the current partition-group attempts complete."""
        self.request_stop()
        if self._task is None:
            return
        try:
            await asyncio.wait_for(asyncio.shield(self._task), timeout=timeout)
        except asyncio.TimeoutError:
            log.warning("Outbox relay shutdown timed out, cancelling")
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        self._task = None


# In-app relay instance, started by the API lifespan
_worker: Optional[RelayWorker] = None


async def start_relay_worker(publisher: Optional[BrokerPublisher] = None, **kwargs) -> RelayWorker:
    global _worker
    if _worker is None:
        _worker = RelayWorker(publisher or build_publisher(), **kwargs)
    await _worker.start()
    return _worker


async def stop_relay_worker() -> None:
    global _worker
    if _worker is not None:
        await _worker.stop()
        await _worker.publisher.close()
        _worker = None


def get_relay_worker() -> Optional[RelayWorker]:
    return _worker


SHUTDOWN_SIGNALS = (signal.SIGINT, signal.SIGTERM)


async def main():
    """
    Runs the relay as a standalone process.

    SIGINT/SIGTERM request a stop: the in-flight publishes and their state
    updates complete before the loop exits and connections are closed.
    """
    await init_db()
    worker = RelayWorker(build_publisher())

    loop = asyncio.get_running_loop()
    for sig in SHUTDOWN_SIGNALS:
        loop.add_signal_handler(sig, worker.request_stop)
    try:
        await worker.run_forever()
    finally:
        for sig in SHUTDOWN_SIGNALS:
            loop.remove_signal_handler(sig)
        await worker.publisher.close()
        await close_db()


if __name__ == "__main__":
    logging.basicConfig(level=LOG_LEVEL, format=LOG_FORMAT)
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        log.info("Relay service stopped.")
