"""Unit tests for the event pipeline, dispatcher and controller."""

import threading
from typing import Iterator, List, Tuple

import pytest

from external_mdns.pipeline import (
    Controller,
    DispatchError,
    Dispatcher,
    EventPipeline,
    wait_for_cache_sync,
)
from external_mdns.records import RecordPolicy
from external_mdns.resource import Action, Resource, SourceType
from external_mdns.responder import MdnsResponder, RecordPublisher
from external_mdns.sources import MembershipEvent, MembershipSource, ServiceSource

# =============================================================================
# Mocks
# =============================================================================


class MockPublisher(RecordPublisher):
    """Publisher recording every call in order."""

    def __init__(self, fail_on: str = ""):
        self.calls: List[Tuple[str, str]] = []
        self.fail_on = fail_on
        self.done = threading.Event()
        self.expected_calls = 0

    def _record(self, operation: str, record: str) -> None:
        if self.fail_on and self.fail_on in record:
            raise OSError("responder unavailable")
        self.calls.append((operation, record))
        if self.expected_calls and len(self.calls) >= self.expected_calls:
            self.done.set()

    def publish(self, record: str) -> None:
        self._record("publish", record)

    def unpublish(self, record: str) -> None:
        self._record("unpublish", record)


class EventListSource(MembershipSource):
    """Membership source that replays events and then waits for stop."""

    def __init__(self, events: List[MembershipEvent], synced: bool = True):
        self._events = events
        self._synced = synced

    @property
    def name(self) -> str:
        return "events"

    def events(self, stop: threading.Event) -> Iterator[MembershipEvent]:
        yield from self._events
        stop.wait()

    def has_synced(self) -> bool:
        return self._synced


def make_resource(action: Action, ip: str = "10.0.0.5", name: str = "foo") -> Resource:
    return Resource(
        source_type=SourceType.SERVICE,
        action=action,
        names=(name,),
        namespace="kube-system",
        ips=(ip,),
    )


def lb_service(name: str, ip: str, version: str) -> dict:
    return {
        "metadata": {"name": name, "namespace": "kube-system", "resourceVersion": version},
        "spec": {"type": "LoadBalancer"},
        "status": {"loadBalancer": {"ingress": [{"ip": ip}]}},
    }


POLICY = RecordPolicy(ttl=120)

# =============================================================================
# Event Pipeline
# =============================================================================


def test_pipeline_preserves_fifo_order() -> None:
    pipeline = EventPipeline()
    stop = threading.Event()
    resources = [make_resource(Action.ADDED, name=f"svc{i}") for i in range(5)]

    for resource in resources:
        assert pipeline.put(resource, stop)

    assert [pipeline.get(stop) for _ in resources] == resources


def test_pipeline_get_returns_none_after_stop() -> None:
    pipeline = EventPipeline(poll_interval=0.01)
    stop = threading.Event()
    stop.set()
    assert pipeline.get(stop) is None


def test_pipeline_put_gives_up_when_full_and_stopped() -> None:
    pipeline = EventPipeline(maxsize=1, poll_interval=0.01)
    stop = threading.Event()
    assert pipeline.put(make_resource(Action.ADDED), stop)

    stop.set()
    assert pipeline.put(make_resource(Action.ADDED), stop) is False


# =============================================================================
# Dispatcher
# =============================================================================


def test_added_resource_is_published() -> None:
    publisher = MockPublisher()
    Dispatcher(publisher, POLICY).dispatch(make_resource(Action.ADDED))

    assert publisher.calls == [
        ("publish", "foo.kube-system.local. 120 IN A 10.0.0.5"),
        ("publish", "foo-kube-system.local. 120 IN A 10.0.0.5"),
        ("publish", "5.0.0.10.in-addr.arpa. 120 IN PTR foo.kube-system.local."),
        ("publish", "5.0.0.10.in-addr.arpa. 120 IN PTR foo-kube-system.local."),
    ]


def test_deleted_resource_is_unpublished() -> None:
    publisher = MockPublisher()
    Dispatcher(publisher, POLICY).dispatch(make_resource(Action.DELETED))

    assert len(publisher.calls) == 4
    assert all(op == "unpublish" for op, _ in publisher.calls)


def test_unsplit_update_is_ignored() -> None:
    publisher = MockPublisher()
    Dispatcher(publisher, POLICY).dispatch(make_resource(Action.UPDATED))
    assert publisher.calls == []


def test_update_unpublishes_everything_before_publishing() -> None:
    publisher = MockPublisher()
    dispatcher = Dispatcher(publisher, POLICY)

    dispatcher.dispatch_update(
        make_resource(Action.UPDATED, ip="10.0.0.5"),
        make_resource(Action.UPDATED, ip="10.0.0.6"),
    )

    operations = [op for op, _ in publisher.calls]
    assert operations == ["unpublish"] * 4 + ["publish"] * 4
    assert all("10.0.0.5" in r or "5.0.0.10" in r for op, r in publisher.calls if op == "unpublish")
    assert all("10.0.0.6" in r or "6.0.0.10" in r for op, r in publisher.calls if op == "publish")


def test_publisher_failure_raises_dispatch_error() -> None:
    publisher = MockPublisher(fail_on="foo-kube-system")

    with pytest.raises(DispatchError) as exc_info:
        Dispatcher(publisher, POLICY).dispatch(make_resource(Action.ADDED))

    assert exc_info.value.operation == "publish"
    assert "foo-kube-system" in exc_info.value.record
    assert len(publisher.calls) == 1


# =============================================================================
# Controller
# =============================================================================


def test_wait_for_cache_sync_times_out() -> None:
    source = ServiceSource(EventListSource([], synced=False), EventPipeline())
    assert wait_for_cache_sync([source], threading.Event(), timeout=0.05, poll_interval=0.01) is False


def test_controller_sequences_update_through_responder() -> None:
    old = lb_service("foo", "10.0.0.5", "1")
    new = lb_service("foo", "10.0.0.6", "2")
    events = [
        MembershipEvent(Action.ADDED, old),
        MembershipEvent(Action.UPDATED, new, old),
    ]
    pipeline = EventPipeline(poll_interval=0.01)
    publisher = MockPublisher()
    publisher.expected_calls = 12
    controller = Controller(
        sources=[ServiceSource(EventListSource(events), pipeline)],
        pipeline=pipeline,
        dispatcher=Dispatcher(publisher, POLICY),
        cache_sync_timeout=1,
    )
    stop = threading.Event()

    runner = threading.Thread(target=controller.run, args=(stop,))
    runner.start()
    assert publisher.done.wait(5)
    stop.set()
    runner.join(5)
    controller.join(5)

    operations = [op for op, _ in publisher.calls]
    assert operations == ["publish"] * 4 + ["unpublish"] * 4 + ["publish"] * 4
    assert publisher.calls[4][1] == "foo.kube-system.local. 120 IN A 10.0.0.5"
    assert publisher.calls[8][1] == "foo.kube-system.local. 120 IN A 10.0.0.6"


def test_controller_stops_everything_on_dispatch_error() -> None:
    events = [MembershipEvent(Action.ADDED, lb_service("foo", "10.0.0.5", "1"))]
    pipeline = EventPipeline(poll_interval=0.01)
    controller = Controller(
        sources=[ServiceSource(EventListSource(events), pipeline)],
        pipeline=pipeline,
        dispatcher=Dispatcher(MockPublisher(fail_on="foo"), POLICY),
        cache_sync_timeout=1,
    )
    stop = threading.Event()

    with pytest.raises(DispatchError):
        controller.run(stop)

    assert stop.is_set()
    controller.join(5)


def test_malformed_service_hostname_does_not_stop_controller() -> None:
    bad = lb_service("a", "10.0.0.5", "1")
    bad["metadata"]["annotations"] = {"external-mdns.blakecovarrubias.com/hostname": "my app"}
    events = [
        MembershipEvent(Action.ADDED, bad),
        MembershipEvent(Action.ADDED, lb_service("b", "10.0.0.6", "1")),
    ]
    pipeline = EventPipeline(poll_interval=0.01)
    responder = MdnsResponder()
    controller = Controller(
        sources=[ServiceSource(EventListSource(events), pipeline)],
        pipeline=pipeline,
        dispatcher=Dispatcher(responder, POLICY),
        cache_sync_timeout=1,
    )
    stop = threading.Event()

    runner = threading.Thread(target=controller.run, args=(stop,))
    runner.start()
    pause = threading.Event()
    for _ in range(500):
        if len(responder.records()) >= 4:
            break
        pause.wait(0.01)
    stop.set()
    runner.join(5)
    controller.join(5)

    published = responder.records()
    assert len(published) == 4
    assert any(r.startswith("b.kube-system.local.") for r in published)
    assert not any("my app" in r for r in published)
