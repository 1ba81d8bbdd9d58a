"""
CacheWarmer - Refreshes popular cache entries before callers need them.

Each cycle builds a bounded worklist from two sources:
- predefined targets that should always be warm
- cached entries close to expiry whose query is popular enough

Work goes through the client's normal fetch path, so warming is subject to
the same rate limits and circuit breakers as real traffic.
"""

import asyncio
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from loguru import logger

from outbound.services.errors import ServiceError
from outbound.utils import logged_job

if TYPE_CHECKING:
    from outbound.services.client import ResilientClient

Loader = Callable[[], Awaitable[Any]]

WARMING_JOB_ID = "cache_warming"


@dataclass(frozen=True)
class WarmingConfig:
    """Configuration for cache warming."""

    enabled: bool = True
    interval: timedelta = timedelta(minutes=5)
    refresh_threshold: float = 0.25  # remaining TTL fraction that triggers a refresh
    min_popularity: int = 3
    max_queries_per_cycle: int = 10


class WarmReason(str, Enum):
    PREDEFINED = "predefined"
    EXPIRING = "expiring"
    MANUAL = "manual"


@dataclass(frozen=True)
class WarmTarget:
    """A resource/key pair to keep warm, with the loader that produces it."""

    resource_class: str
    key: str
    loader: Loader
    query: str | None = None
    priority: int = 100


@dataclass
class WarmingTask:
    """One unit of warming work, alive for a single cycle."""

    resource_class: str
    key: str
    loader: Loader
    priority: int
    reason: WarmReason
    query: str | None = None


@dataclass
class WarmingStats:
    total_warmed: int = 0
    total_refreshed: int = 0
    failed_warmings: int = 0
    last_cycle_at: datetime | None = None
    active_queries: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_warmed": self.total_warmed,
            "total_refreshed": self.total_refreshed,
            "failed_warmings": self.failed_warmings,
            "last_cycle_at": self.last_cycle_at.isoformat() if self.last_cycle_at else None,
            "active_queries": self.active_queries,
        }


class CacheWarmer:
    """
    Background refresher for popular, soon-to-expire entries.

    Usage:
        warmer = CacheWarmer(client, WarmingConfig(interval=timedelta(minutes=5)))
        warmer.add_predefined(WarmTarget("search", "typescript", load_typescript))
        warmer.schedule(scheduler)

        # or drive it by hand
        await warmer.run_cycle()
    """

    def __init__(
        self,
        client: "ResilientClient",
        config: WarmingConfig | None = None,
        predefined: list[WarmTarget] | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self._client = client
        self.config = config or WarmingConfig()
        self._predefined: list[WarmTarget] = list(predefined or [])
        self._clock = clock
        self._stats = WarmingStats()
        self._is_warming = False
        self._scheduler: AsyncIOScheduler | None = None

    @property
    def is_running(self) -> bool:
        """Whether a cycle is in progress."""
        return self._is_warming

    def is_enabled(self) -> bool:
        return self.config.enabled

    def add_predefined(self, target: WarmTarget) -> None:
        self._predefined.append(target)
        logger.debug(f"Predefined warm target: {target.resource_class}:{target.key}")

    def schedule(self, scheduler: AsyncIOScheduler) -> None:
        """Register the periodic cycle on ``scheduler``; runs once right away."""
        if not self.config.enabled:
            logger.info("Cache warming disabled, not scheduling")
            return

        self._scheduler = scheduler
        scheduler.add_job(
            self._scheduled_cycle,
            trigger="interval",
            seconds=self.config.interval.total_seconds(),
            id=WARMING_JOB_ID,
            name="Cache Warmer",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            next_run_time=datetime.now(),
        )
        logger.info(
            f"Cache warmer scheduled: every {self.config.interval.total_seconds():.0f}s"
        )

    def update_config(self, **changes: Any) -> None:
        """Apply config changes; reschedules when the interval changes."""
        previous = self.config
        self.config = replace(self.config, **changes)

        job = self._scheduler.get_job(WARMING_JOB_ID) if self._scheduler else None
        if job is not None and self.config.interval != previous.interval:
            self._scheduler.reschedule_job(
                WARMING_JOB_ID,
                trigger="interval",
                seconds=self.config.interval.total_seconds(),
            )
            logger.info(
                f"Cache warmer rescheduled: every {self.config.interval.total_seconds():.0f}s"
            )

    @logged_job
    async def _scheduled_cycle(self) -> None:
        await self.run_cycle()

    async def run_cycle(self) -> int:
        """
        Run a single warming cycle.

        Returns the number of tasks processed; 0 when another cycle is
        already in progress.
        """
        if self._is_warming:
            logger.info("Warming cycle already in progress, skipping")
            return 0

        self._is_warming = True
        self._stats.last_cycle_at = self._clock()
        try:
            tasks = self.build_worklist()
            logger.info(f"Warming cycle started: {len(tasks)} tasks")
            succeeded = await self._execute(tasks)
            logger.info(
                f"Warming cycle completed: {succeeded}/{len(tasks)} tasks succeeded"
            )
            return len(tasks)
        finally:
            self._is_warming = False

    async def warm(self, targets: list[WarmTarget]) -> int:
        """Warm ``targets`` immediately. Returns how many succeeded."""
        logger.info(f"Manually warming {len(targets)} targets")
        tasks = [
            WarmingTask(
                resource_class=t.resource_class,
                key=t.key,
                loader=t.loader,
                priority=t.priority,
                reason=WarmReason.MANUAL,
                query=t.query,
            )
            for t in targets
        ]
        succeeded = await self._execute(tasks)
        logger.info(f"Manual warming completed: {succeeded}/{len(tasks)} successful")
        return succeeded

    def build_worklist(self) -> list[WarmingTask]:
        """Predefined targets first, then expiring popular entries; bounded."""
        now = self._clock()
        cache = self._client.cache
        threshold = self.config.refresh_threshold
        tasks: list[WarmingTask] = []
        predefined_keys = set()

        # Predefined targets are warmed every cycle regardless of freshness
        for target in self._predefined:
            predefined_keys.add(
                self._client.cache_key(target.resource_class, target.key)
            )
            tasks.append(
                WarmingTask(
                    resource_class=target.resource_class,
                    key=target.key,
                    loader=target.loader,
                    priority=target.priority,
                    reason=WarmReason.PREDEFINED,
                    query=target.query,
                )
            )

        for entry in cache.entries():
            if entry.key in predefined_keys or entry.is_expired(now):
                continue
            if entry.remaining_fraction(now) > threshold:
                continue

            registration = self._client.registration(entry.key)
            if registration is None:
                continue

            score = self._client.popularity.count(registration.popularity_key)
            if score < self.config.min_popularity:
                continue

            tasks.append(
                WarmingTask(
                    resource_class=registration.resource_class,
                    key=registration.key,
                    loader=registration.loader,
                    priority=score,
                    reason=WarmReason.EXPIRING,
                    query=registration.query,
                )
            )

        tasks.sort(key=lambda t: (t.reason != WarmReason.PREDEFINED, -t.priority))
        return tasks[: self.config.max_queries_per_cycle]

    def stats(self) -> WarmingStats:
        return replace(self._stats, active_queries=len(self._client.cache))

    def reset_stats(self) -> None:
        self._stats = WarmingStats()

    async def _execute(self, tasks: list[WarmingTask]) -> int:
        results = await asyncio.gather(
            *(self._warm_one(task) for task in tasks), return_exceptions=True
        )

        succeeded = 0
        for task, result in zip(tasks, results):
            if isinstance(result, BaseException):
                logger.opt(exception=result).error(
                    f"Unexpected error warming {task.resource_class}:{task.key}"
                )
                self._stats.failed_warmings += 1
            elif result:
                succeeded += 1
                if task.reason == WarmReason.EXPIRING:
                    self._stats.total_refreshed += 1
                else:
                    self._stats.total_warmed += 1
            else:
                self._stats.failed_warmings += 1
        return succeeded

    async def _warm_one(self, task: WarmingTask) -> bool:
        from outbound.services.client import FetchContext

        logger.debug(
            f"Warming {task.resource_class}:{task.key} ({task.reason.value})"
        )
        try:
            await self._client.fetch(
                task.resource_class,
                task.key,
                task.loader,
                FetchContext(query=task.query),
                refresh=True,
                warming=True,
            )
        except ServiceError as e:
            logger.error(f"Failed to warm {task.resource_class}:{task.key}: {e}")
            return False
        return True
