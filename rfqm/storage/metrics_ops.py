from __future__ import annotations

from typing import Any

from rfqm.common import guarded_call

from .helpers import metric_field as _metric_field


class RedisMetricsOps:
    async def _expire_metrics_key(self, key: str) -> None:
        if self.settings.metrics_ttl_seconds > 0:
            await self._require_redis().expire(key, self.settings.metrics_ttl_seconds)

    async def increment(self, name: str, value: float = 1, **labels: Any) -> None:
        key = self.settings.metrics_counter_key

        async def write() -> None:
            await self._require_redis().hincrbyfloat(key, _metric_field(name, labels), float(value))
            await self._expire_metrics_key(key)

        await guarded_call(
            write,
            logger=self._logger,
            event="metric_write_failed",
            message="Failed to increment counter",
            metric=name,
        )

    async def set_gauge(self, name: str, value: float, **labels: Any) -> None:
        key = self.settings.metrics_gauge_key

        async def write() -> None:
            await self._require_redis().hset(key, _metric_field(name, labels), str(value))
            await self._expire_metrics_key(key)

        await guarded_call(
            write,
            logger=self._logger,
            event="metric_write_failed",
            message="Failed to set gauge",
            metric=name,
        )

    async def observe(self, name: str, value: float, **labels: Any) -> None:
        key = self.settings.metrics_summary_key
        field = _metric_field(name, labels)

        async def write() -> None:
            pipeline = self._require_redis().pipeline(transaction=True)
            pipeline.hincrbyfloat(key, f"{field}_count", 1.0)
            pipeline.hincrbyfloat(key, f"{field}_sum", float(value))
            await pipeline.execute()
            await self._expire_metrics_key(key)

        await guarded_call(
            write,
            logger=self._logger,
            event="metric_write_failed",
            message="Failed to observe summary",
            metric=name,
        )
