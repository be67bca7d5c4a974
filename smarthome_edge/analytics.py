"""Read-side queries over persisted sensor records."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Tuple

from .constants import HOUR_BUCKET_FORMAT, SENSOR_CHANNELS
from .core.errors import EdgeError, InvalidSensor, PersistenceFailure
from .core.models import SensorRecord, Statistics, TrendPoint, utcnow
from .core.protocols import TelemetryStore

LOGGER = logging.getLogger(__name__)

NEWEST_FIRST = (("timestamp", -1),)


def validate_sensor(sensor: str) -> str:
    if sensor not in SENSOR_CHANNELS:
        raise InvalidSensor(f"Invalid sensor type: {sensor!r}")
    return sensor


class SensorAnalytics:
    """History, statistics, trend and alert queries for the HTTP boundary."""

    def __init__(self, store: TelemetryStore) -> None:
        self._store = store

    async def history(
        self,
        *,
        limit: int = 100,
        skip: int = 0,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> Tuple[list[SensorRecord], int]:
        """Return one page of records (newest first) and the total count."""

        query: Dict[str, Any] = {}
        time_filter: Dict[str, Any] = {}
        if start is not None:
            time_filter["$gte"] = start
        if end is not None:
            time_filter["$lte"] = end
        if time_filter:
            query["timestamp"] = time_filter

        try:
            return await self._store.find(
                query, sort=NEWEST_FIRST, limit=max(0, limit), skip=max(0, skip)
            )
        except EdgeError:
            raise
        except Exception as exc:
            raise PersistenceFailure(f"failed to get sensor history: {exc}") from exc

    async def statistics(
        self, sensor: Optional[str] = None, *, hours: int = 24
    ) -> Statistics:
        """Mean/min/max for one channel, or for every channel when ``sensor`` is None."""

        channels = (validate_sensor(sensor),) if sensor else SENSOR_CHANNELS

        group: Dict[str, Any] = {"_id": None, "count": {"$sum": 1}}
        for channel in channels:
            group[f"{channel}_mean"] = {"$avg": f"${channel}"}
            group[f"{channel}_min"] = {"$min": f"${channel}"}
            group[f"{channel}_max"] = {"$max": f"${channel}"}

        pipeline = [
            {"$match": {"timestamp": {"$gte": _window_start(hours)}}},
            {"$group": group},
        ]

        try:
            results = await self._store.aggregate(pipeline)
        except EdgeError:
            raise
        except Exception as exc:
            raise PersistenceFailure(f"failed to calculate statistics: {exc}") from exc

        if not results:
            return Statistics(count=0)

        row = results[0]
        values = {
            key: value
            for key, value in row.items()
            if key not in ("_id", "count") and value is not None
        }
        return Statistics(count=int(row.get("count", 0)), values=values)

    async def trends(self, *, hours: int = 24) -> list[TrendPoint]:
        """Hourly channel averages over the trailing window, oldest first."""

        pipeline = [
            {"$match": {"timestamp": {"$gte": _window_start(hours)}}},
            {
                "$group": {
                    "_id": {
                        "$dateToString": {
                            "format": HOUR_BUCKET_FORMAT,
                            "date": "$timestamp",
                        }
                    },
                    "light": {"$avg": "$light"},
                    "gas": {"$avg": "$gas"},
                    "soil": {"$avg": "$soil"},
                    "water": {"$avg": "$water"},
                    "count": {"$sum": 1},
                }
            },
            {"$sort": {"_id": 1}},
        ]

        try:
            results = await self._store.aggregate(pipeline)
        except EdgeError:
            raise
        except Exception as exc:
            raise PersistenceFailure(f"failed to calculate trends: {exc}") from exc

        return [
            TrendPoint(
                hour=str(row["_id"]),
                light=float(row.get("light") or 0.0),
                gas=float(row.get("gas") or 0.0),
                soil=float(row.get("soil") or 0.0),
                water=float(row.get("water") or 0.0),
                count=int(row.get("count", 0)),
            )
            for row in results
        ]

    async def alerts(self, *, limit: int = 50) -> list[SensorRecord]:
        """Most recent records that raised at least one alert."""

        query = {"alerts": {"$exists": True, "$not": {"$size": 0}}}
        try:
            records, _total = await self._store.find(
                query, sort=NEWEST_FIRST, limit=max(0, limit)
            )
        except EdgeError:
            raise
        except Exception as exc:
            raise PersistenceFailure(f"failed to get alerts: {exc}") from exc
        return records


def _window_start(hours: int) -> datetime:
    return utcnow() - timedelta(hours=max(0, hours))
