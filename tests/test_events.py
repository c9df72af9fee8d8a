"""
Pipeline Events Tests
=====================
"""

from stageflow.core.pipeline.events import EventType, PipelineEvent, PipelineEvents


def _event() -> PipelineEvent:
    return PipelineEvent(type=EventType.TASK_CREATED, task_id="t1", status="pending")


async def test_sync_and_async_subscribers():
    bus = PipelineEvents()
    seen = []

    async def async_subscriber(event):
        seen.append(("async", event.task_id))

    bus.subscribe(lambda event: seen.append(("sync", event.task_id)))
    bus.subscribe(async_subscriber)

    await bus.emit(_event())

    assert seen == [("sync", "t1"), ("async", "t1")]


async def test_failing_subscriber_does_not_stop_others():
    bus = PipelineEvents()
    seen = []

    def broken(event):
        raise RuntimeError("subscriber down")

    bus.subscribe(broken)
    bus.subscribe(seen.append)

    await bus.emit(_event())

    assert len(seen) == 1


async def test_unsubscribe():
    bus = PipelineEvents()
    seen = []
    unsubscribe = bus.subscribe(seen.append)

    unsubscribe()
    unsubscribe()
    await bus.emit(_event())

    assert seen == []
