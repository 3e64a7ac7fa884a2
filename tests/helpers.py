import asyncio
import json
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Dict, List, Optional

from app.relay.publisher import BrokerPublisher

T0 = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


def at(seconds: float) -> datetime:
    """A point in time relative to T0."""
    return T0 + timedelta(seconds=seconds)


def payload(seq: int) -> str:
    return json.dumps({"seq": seq})


class ScriptedPublisher(BrokerPublisher):
    """
    Publisher double recording every call in order.

    `failures` maps a payload to the exceptions its successive attempts raise;
    once the script is used up the payload publishes fine.
    """

    def __init__(self, failures: Optional[Dict[str, List[Exception]]] = None, delay: float = 0.0):
        self.calls = []
        self.failures = failures or {}
        self.delay = delay
        self.on_publish: Optional[Callable[[str], Awaitable[None]]] = None
        self.closed = False

    async def publish(self, topic, partition_key, payload, metadata=None):
        self.calls.append((topic, partition_key, payload, metadata))
        if self.on_publish is not None:
            await self.on_publish(payload)
        if self.delay:
            await asyncio.sleep(self.delay)
        script = self.failures.get(payload)
        if script:
            raise script.pop(0)

    async def close(self):
        self.closed = True

    def payloads(self, partition_key=None):
        return [c[2] for c in self.calls if partition_key is None or c[1] == partition_key]
