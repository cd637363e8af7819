import pytest

from gpushare.events import (
    EVENT_REASON_BINDING_FAILED,
    EVENT_REASON_BINDING_SUCCEED,
    EVENT_REASON_FILTERING_FAILED,
    EVENT_REASON_FILTERING_SUCCEED,
    EVENT_TYPE_NORMAL,
    EVENT_TYPE_WARNING,
    Event,
    EventRecorder,
    record_binding_result,
    record_filter_result,
)
from gpushare.types import Pod


@pytest.fixture
def pod():
    return Pod(name="p1", namespace="default", uid="u1")


def test_record_stores_event_with_component(pod):
    recorder = EventRecorder("hami-scheduler")
    event = recorder.record(pod, EVENT_TYPE_NORMAL, "Reason", "message")
    assert event == Event("default", "p1", "u1", EVENT_TYPE_NORMAL, "Reason", "message", "hami-scheduler")
    assert recorder.events == [event]


def test_events_returns_copy(pod):
    recorder = EventRecorder()
    recorder.record(pod, EVENT_TYPE_NORMAL, "A", "m")
    snapshot = recorder.events
    snapshot.clear()
    assert len(recorder.events) == 1


def test_binding_success_message(pod):
    recorder = EventRecorder()
    event = record_binding_result(recorder, pod, EVENT_REASON_BINDING_SUCCEED, ["node1"], None)
    assert event.event_type == EVENT_TYPE_NORMAL
    assert event.reason == EVENT_REASON_BINDING_SUCCEED
    assert event.message == "Successfully binding node [node1] to default/p1"


def test_binding_failure_uses_error_text(pod):
    recorder = EventRecorder()
    event = record_binding_result(
        recorder, pod, EVENT_REASON_BINDING_FAILED, [], RuntimeError("boom")
    )
    assert event.event_type == EVENT_TYPE_WARNING
    assert event.message == "boom"


def test_filter_success_message(pod):
    recorder = EventRecorder()
    event = record_filter_result(
        recorder, pod, EVENT_REASON_FILTERING_SUCCEED, ["n1", "n2"], None
    )
    assert event.message == "Successfully filtered to following nodes: [n1 n2] for default/p1 "


def test_filter_failure_is_warning(pod):
    recorder = EventRecorder()
    event = record_filter_result(
        recorder, pod, EVENT_REASON_FILTERING_FAILED, [], ValueError("no node")
    )
    assert (event.event_type, event.reason, event.message) == (
        EVENT_TYPE_WARNING,
        EVENT_REASON_FILTERING_FAILED,
        "no node",
    )


def test_no_pod_records_nothing():
    recorder = EventRecorder()
    assert record_binding_result(recorder, None, EVENT_REASON_BINDING_SUCCEED, [], None) is None
    assert record_filter_result(recorder, None, EVENT_REASON_FILTERING_FAILED, [], None) is None
    assert recorder.events == []