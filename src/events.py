"""
Watch events - List-and-watch streams of object changes.

A Watcher lists a kind once, replays every item as an ADDED event, then
follows the watch stream from the list's resource version. When the
server reports the resource version as expired (410 Gone) the watcher
lists again, so handlers see every live object at least once per relist.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

from kube import ApiError, KubeClient

logger = logging.getLogger(__name__)


class EventType(Enum):
    """Types of watch events."""

    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"
    BOOKMARK = "BOOKMARK"


@dataclass
class WatchEvent:
    """A change to a single object."""

    event_type: EventType
    object: Dict[str, Any]

    @property
    def resource_version(self) -> str:
        return (self.object.get("metadata") or {}).get("resourceVersion", "")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WatchEvent":
        """
        Create an event from a raw watch stream entry.

        Raises:
            ValueError: If the event type is not recognised
        """
        return cls(event_type=EventType(data["type"]), object=data.get("object") or {})


EventHandler = Callable[[WatchEvent], Awaitable[None]]


class Watcher:
    """
    Keeps handlers informed of every change to one kind of object.

    Args:
        client: Object-store client
        kind: Registered kind to watch
        handler: Coroutine called for each event, in order
        namespace: Namespace to watch, or None for all namespaces
        retry_delay: Pause before relisting after a failure
        timeout_seconds: Server-side timeout of each watch request
    """

    def __init__(
        self,
        client: KubeClient,
        kind: str,
        handler: EventHandler,
        namespace: Optional[str] = None,
        retry_delay: float = 5.0,
        timeout_seconds: int = 300,
    ):
        self.client = client
        self.kind = kind
        self.handler = handler
        self.namespace = namespace
        self.retry_delay = retry_delay
        self.timeout_seconds = timeout_seconds
        self.running = False
        self._synced = asyncio.Event()

    @property
    def has_synced(self) -> bool:
        """True once the initial list has been delivered to the handler."""
        return self._synced.is_set()

    async def wait_for_sync(self) -> None:
        await self._synced.wait()

    async def run(self) -> None:
        """List and watch until stop() is called or the task is cancelled."""
        self.running = True
        logger.info(f"Starting watch on {self.kind}")

        while self.running:
            try:
                resource_version = await self._list()
                await self._watch(resource_version)
            except ApiError as e:
                if e.status == 410:
                    logger.info(f"Watch on {self.kind} expired, relisting")
                    continue
                logger.error(f"Watch on {self.kind} failed: {e}")
                await asyncio.sleep(self.retry_delay)
            except Exception as e:
                logger.error(f"Error in watch loop for {self.kind}: {e}", exc_info=True)
                await asyncio.sleep(self.retry_delay)

    def stop(self) -> None:
        self.running = False

    async def _list(self) -> str:
        listing = await self.client.list(self.kind, self.namespace)
        items = listing.get("items") or []
        logger.debug(f"Listed {len(items)} {self.kind} objects")

        for item in items:
            await self._dispatch(WatchEvent(EventType.ADDED, item))

        self._synced.set()
        return (listing.get("metadata") or {}).get("resourceVersion", "")

    async def _watch(self, resource_version: str) -> None:
        while self.running:
            async for raw in self.client.watch(
                self.kind,
                self.namespace,
                resource_version=resource_version,
                timeout_seconds=self.timeout_seconds,
            ):
                try:
                    event = WatchEvent.from_dict(raw)
                except (KeyError, ValueError):
                    logger.warning(f"Ignoring malformed {self.kind} watch event: {raw}")
                    continue

                if event.resource_version:
                    resource_version = event.resource_version
                if event.event_type == EventType.BOOKMARK:
                    continue
                await self._dispatch(event)

    async def _dispatch(self, event: WatchEvent) -> None:
        try:
            await self.handler(event)
        except Exception as e:
            logger.error(
                f"Error handling {event.event_type.value} event for {self.kind}: {e}",
                exc_info=True,
            )
