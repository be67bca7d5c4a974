from datetime import timedelta

import pytest

from smarthome_edge.adapters.memory_store import MemoryStore
from smarthome_edge.analytics import SensorAnalytics
from smarthome_edge.core.errors import InvalidSensor, PersistenceFailure
from smarthome_edge.core.models import SensorRecord, utcnow


def record(age: timedelta, *, gas: int = 100, light: int = 400, alerts=()) -> SensorRecord:
    return SensorRecord(
        gas=gas,
        light=light,
        soil=20,
        water=5,
        infrared=0,
        timestamp=utcnow() - age,
        alerts=tuple(alerts),
    )


class BrokenStore(MemoryStore):
    async def find(self, query, *, sort=None, limit=0, skip=0):
        raise RuntimeError("connection reset")

    async def aggregate(self, pipeline):
        raise RuntimeError("connection reset")


@pytest.mark.asyncio
async def test_history_is_newest_first_with_total() -> None:
    store = MemoryStore()
    await store.insert_many(
        [record(timedelta(minutes=minutes), gas=minutes) for minutes in (30, 10, 20)]
    )
    analytics = SensorAnalytics(store)

    records, total = await analytics.history(limit=2)

    assert total == 3
    assert [item.gas for item in records] == [10, 20]


@pytest.mark.asyncio
async def test_history_applies_time_window() -> None:
    store = MemoryStore()
    await store.insert_many(
        [record(timedelta(hours=hours), gas=hours) for hours in (1, 5, 30)]
    )
    analytics = SensorAnalytics(store)

    now = utcnow()
    records, total = await analytics.history(
        start=now - timedelta(hours=6), end=now - timedelta(hours=2)
    )

    assert total == 1
    assert records[0].gas == 5


@pytest.mark.asyncio
async def test_statistics_for_single_sensor() -> None:
    store = MemoryStore()
    await store.insert_many(
        [
            record(timedelta(hours=1), gas=100),
            record(timedelta(hours=2), gas=300),
            record(timedelta(hours=48), gas=10_000),
        ]
    )
    analytics = SensorAnalytics(store)

    stats = await analytics.statistics("gas", hours=24)

    assert stats.count == 2
    assert stats.values == {"gas_mean": 200.0, "gas_min": 100, "gas_max": 300}
    assert stats.as_dict()["count"] == 2


@pytest.mark.asyncio
async def test_statistics_for_all_sensors() -> None:
    store = MemoryStore()
    await store.insert_many([record(timedelta(minutes=5))])

    stats = await SensorAnalytics(store).statistics()

    assert stats.count == 1
    for channel in ("light", "gas", "soil", "water"):
        assert f"{channel}_mean" in stats.values


@pytest.mark.asyncio
async def test_statistics_with_no_data() -> None:
    stats = await SensorAnalytics(MemoryStore()).statistics("soil")

    assert stats.count == 0
    assert stats.as_dict() == {"count": 0}


@pytest.mark.asyncio
async def test_statistics_rejects_unknown_sensor() -> None:
    with pytest.raises(InvalidSensor):
        await SensorAnalytics(MemoryStore()).statistics("temperature")


@pytest.mark.asyncio
async def test_trends_bucket_by_hour() -> None:
    store = MemoryStore()
    await store.insert_many(
        [
            record(timedelta(minutes=1), light=100),
            record(timedelta(minutes=2), light=300),
            record(timedelta(hours=3), light=900),
        ]
    )

    points = await SensorAnalytics(store).trends(hours=24)

    assert sum(point.count for point in points) == 3
    assert points == sorted(points, key=lambda point: point.hour)
    assert len(points) in (2, 3)
    assert points[-1].light in (100.0, 200.0, 300.0)


@pytest.mark.asyncio
async def test_alerts_only_returns_records_with_alerts() -> None:
    store = MemoryStore()
    await store.insert_many(
        [
            record(timedelta(minutes=3), alerts=["old"]),
            record(timedelta(minutes=2)),
            record(timedelta(minutes=1), alerts=["new"]),
        ]
    )

    alerts = await SensorAnalytics(store).alerts(limit=10)

    assert [item.alerts for item in alerts] == [("new",), ("old",)]


@pytest.mark.asyncio
async def test_store_errors_are_wrapped() -> None:
    analytics = SensorAnalytics(BrokenStore())

    with pytest.raises(PersistenceFailure):
        await analytics.history()
    with pytest.raises(PersistenceFailure):
        await analytics.trends()
    with pytest.raises(PersistenceFailure):
        await analytics.alerts()
