"""Event pipeline, record dispatcher and the controller tying them together."""

from __future__ import annotations

import logging
import queue
import threading
import time
from typing import List, Optional, Sequence

from external_mdns.records import RecordPolicy, construct_records
from external_mdns.resource import Action, Resource
from external_mdns.responder import RecordPublisher
from external_mdns.sources import ResourceSource

logger = logging.getLogger(__name__)


class DispatchError(RuntimeError):
    """The responder refused a publish or unpublish."""

    def __init__(self, operation: str, record: str, cause: Exception):
        super().__init__(f"Failed to {operation} record '{record}': {cause}")
        self.operation = operation
        self.record = record
        self.cause = cause


# =============================================================================
# Event Pipeline
# =============================================================================


class EventPipeline:
    """Multi-producer, single-consumer channel of resources.

    ``put`` blocks while the queue is full so a slow consumer pushes back on
    the adapters. Each adapter's resources come out in the order it put them.
    """

    def __init__(self, maxsize: int = 64, poll_interval: float = 0.5):
        self._queue: "queue.Queue[Resource]" = queue.Queue(maxsize=maxsize)
        self._poll_interval = poll_interval

    def put(self, resource: Resource, stop: threading.Event) -> bool:
        """Enqueue a resource; returns False if ``stop`` was set first."""
        while not stop.is_set():
            try:
                self._queue.put(resource, timeout=self._poll_interval)
                return True
            except queue.Full:
                continue
        return False

    def get(self, stop: threading.Event) -> Optional[Resource]:
        """Wait for the next resource; returns None once ``stop`` is set."""
        while not stop.is_set():
            try:
                return self._queue.get(timeout=self._poll_interval)
            except queue.Empty:
                continue
        return None

    def qsize(self) -> int:
        return self._queue.qsize()


# =============================================================================
# Dispatcher
# =============================================================================


class Dispatcher:
    """Route synthesized records to the responder.

    Added resources are published, Deleted ones unpublished. Responder
    failures are not retried: they surface as ``DispatchError``.
    """

    def __init__(self, publisher: RecordPublisher, policy: RecordPolicy):
        self.publisher = publisher
        self.policy = policy

    def dispatch(self, resource: Resource) -> None:
        if resource.action == Action.UPDATED:
            logger.warning(
                f"Ignoring unsplit update for {list(resource.names)} in '{resource.namespace}'"
            )
            return

        for record in construct_records(resource, self.policy):
            if not record:
                continue
            if resource.action == Action.ADDED:
                logger.info(f"Publishing new DNS record: {record}")
                self._call("publish", record)
            else:
                logger.info(f"Removing DNS record: {record}")
                self._call("unpublish", record)

    def dispatch_update(self, old: Resource, new: Resource) -> None:
        """Retract every record of ``old`` and then publish ``new``."""
        self.dispatch(old.with_action(Action.DELETED))
        self.dispatch(new.with_action(Action.ADDED))

    def _call(self, operation: str, record: str) -> None:
        try:
            getattr(self.publisher, operation)(record)
        except Exception as e:
            raise DispatchError(operation, record, e) from e


# =============================================================================
# Controller
# =============================================================================


def wait_for_cache_sync(
    sources: Sequence[ResourceSource],
    stop: threading.Event,
    timeout: float,
    poll_interval: float = 0.1,
) -> bool:
    """Block until every source reports synced, ``stop`` is set or time runs out."""
    deadline = time.monotonic() + timeout
    while not stop.is_set():
        pending = [s.name for s in sources if not s.has_synced()]
        if not pending:
            return True
        if time.monotonic() >= deadline:
            logger.error(f"Timed out waiting for caches to sync: {', '.join(pending)}")
            return False
        stop.wait(poll_interval)
    return False


class Controller:
    """Run the adapters and drain their pipeline one resource at a time."""

    def __init__(
        self,
        *,
        sources: Sequence[ResourceSource],
        pipeline: EventPipeline,
        dispatcher: Dispatcher,
        cache_sync_timeout: float = 60.0,
    ):
        self.sources = list(sources)
        self.pipeline = pipeline
        self.dispatcher = dispatcher
        self.cache_sync_timeout = cache_sync_timeout
        self._threads: List[threading.Thread] = []

    def start_sources(self, stop: threading.Event) -> None:
        for source in self.sources:
            thread = threading.Thread(
                target=self._run_source,
                args=(source, stop),
                name=f"source-{source.name}",
                daemon=True,
            )
            thread.start()
            self._threads.append(thread)

    def _run_source(self, source: ResourceSource, stop: threading.Event) -> None:
        try:
            source.run(stop)
        except Exception as e:
            logger.error(f"Source '{source.name}' failed: {e}", exc_info=True)

    def run(self, stop: threading.Event) -> None:
        """Process resources until ``stop`` is set.

        Raises:
            DispatchError: if the responder fails; all sources are stopped
        """
        self.start_sources(stop)
        if wait_for_cache_sync(self.sources, stop, self.cache_sync_timeout):
            logger.info("Caches synced, processing events")

        try:
            while not stop.is_set():
                resource = self.pipeline.get(stop)
                if resource is None:
                    break
                self.dispatcher.dispatch(resource)
        except DispatchError:
            stop.set()
            raise

        logger.info("Stopping external-mdns")

    def join(self, timeout: Optional[float] = None) -> None:
        for thread in self._threads:
            thread.join(timeout)
