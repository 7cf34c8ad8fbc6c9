import pytest

from governor import router
from governor.config import settings
from governor.events import EventType, GovernanceEvent
from governor.router import Executor, JobPayload, QueueFullError


class FakeRedis:
    def __init__(self, depth: int = 0) -> None:
        self.depth = depth
        self.added: list[tuple[str, dict]] = []

    async def xlen(self, stream: str) -> int:
        return self.depth

    async def xadd(self, stream: str, fields: dict) -> str:
        self.added.append((stream, fields))
        return f"{len(self.added)}-0"


@pytest.fixture
def fake_redis(monkeypatch: pytest.MonkeyPatch) -> FakeRedis:
    fake = FakeRedis()
    monkeypatch.setattr(router, "get_redis_client", lambda: fake)
    return fake


def test_route_task() -> None:
    assert router.route_task("ENGINEERING") == Executor.CURSOR
    assert router.route_task("code_change") == Executor.CURSOR
    assert router.route_task("CONTENT") == Executor.OPENCLAW_AGENT
    assert router.route_task(None) == Executor.OPENCLAW_AGENT
    assert router.stream_for_executor(Executor.CURSOR) == "stream:jobs:cursor"


def test_payload_omits_empty_fields() -> None:
    payload = JobPayload(task_id="t-1", task_type="DOCS", executor="OPENCLAW_AGENT").to_dict()

    assert payload == {
        "schema_version": "1.0",
        "task_id": "t-1",
        "task_type": "DOCS",
        "executor": "OPENCLAW_AGENT",
        "retry_count": "0",
    }


@pytest.mark.asyncio
async def test_ready_event_is_enqueued(fake_redis: FakeRedis) -> None:
    await router.ready_signal_handler(
        GovernanceEvent(
            type=EventType.TASK_READY,
            task_id="t-1",
            agent_id="a-1",
            data={"task_type": "ENGINEERING", "project_id": "proj-1"},
        )
    )

    ((stream, fields),) = fake_redis.added
    assert stream == "stream:jobs:cursor"
    assert fields["task_id"] == "t-1"
    assert fields["agent_id"] == "a-1"
    assert fields["project_id"] == "proj-1"
    assert fields["executor"] == "CURSOR"


@pytest.mark.asyncio
async def test_other_events_are_ignored(fake_redis: FakeRedis) -> None:
    await router.ready_signal_handler(GovernanceEvent(type=EventType.TASK_TRANSITIONED, task_id="t-1"))

    assert fake_redis.added == []


@pytest.mark.asyncio
async def test_full_stream_rejects_job(fake_redis: FakeRedis) -> None:
    fake_redis.depth = settings.redis_queue_max_depth

    with pytest.raises(QueueFullError):
        await router.enqueue_job(JobPayload(task_id="t-1", task_type="DOCS", executor="OPENCLAW_AGENT"))
    assert fake_redis.added == []
