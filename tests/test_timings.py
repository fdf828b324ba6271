import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from keyshop.errors import StoreUnavailable
from keyshop.infra import timings
from keyshop.model.keystore import guarded


@pytest.fixture(autouse=True)
def clean_timings():
    timings.reset()
    yield
    timings.reset()


async def test_guarded_records_timing():
    async with guarded("test.op"):
        pass
    async with guarded("test.op"):
        pass
    [rec] = timings.snapshot()
    assert rec["kind"] == "test.op"
    assert rec["n"] == 2
    assert rec["max_ms"] >= rec["mean_ms"] >= 0


async def test_guarded_translates_redis_errors():
    with pytest.raises(StoreUnavailable) as ei:
        async with guarded("test.fail"):
            raise RedisConnectionError("down")
    assert isinstance(ei.value.__cause__, RedisConnectionError)
    # failed calls still count
    assert [r["kind"] for r in timings.snapshot()] == ["test.fail"]


async def test_guarded_leaves_other_errors_alone():
    with pytest.raises(ValueError):
        async with guarded("test.other"):
            raise ValueError("bug")


async def test_snapshot_empty():
    assert timings.snapshot() == []
