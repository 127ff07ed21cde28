"""
Cache warming.

Proactively loads frequently read data into a domain strategy so the
first reader after a deploy or a flush does not pay the origin cost.
"""

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ..logging_config import get_logger
from ..metrics_collector import MetricsCollector, MetricUnit
from .strategies import StrategyRegistry

DURATION_METRIC = 'cache_warming_duration_seconds'
DURATION_BUCKETS = [0.1, 0.5, 1, 5, 10, 30, 60, float('inf')]


class WarmingMode(str, Enum):
    """When a warming job runs."""
    IMMEDIATE = "immediate"
    SCHEDULED = "scheduled"
    ON_DEMAND = "on_demand"


@dataclass
class WarmingJob:
    """Cache warming job configuration."""
    name: str
    strategy: str
    data_loader: Callable[[], Awaitable[Dict[str, Any]]]
    mode: WarmingMode = WarmingMode.IMMEDIATE
    schedule_interval: Optional[float] = None  # seconds
    priority: int = 1  # 1 = highest, 10 = lowest
    enabled: bool = True
    last_run: Optional[float] = None
    next_run: Optional[float] = None
    run_count: int = 0
    success_count: int = 0
    error_count: int = 0
    avg_duration: float = 0.0
    tags: List[str] = field(default_factory=list)

    def __post_init__(self):
        self.mode = WarmingMode(self.mode)
        if self.mode == WarmingMode.SCHEDULED and not self.schedule_interval:
            raise ValueError(f"Scheduled warming job {self.name} needs a positive schedule_interval")


class CacheWarmer:
    """Runs warming jobs against the domain strategies."""

    def __init__(
        self,
        registry: StrategyRegistry,
        metrics: Optional[MetricsCollector] = None,
        check_interval: float = 30.0,
        clock: Callable[[], float] = time.time,
    ):
        self.registry = registry
        self.metrics = metrics
        self.check_interval = check_interval
        self.clock = clock
        self.logger = get_logger(__name__, 'cache_warmer')

        self.jobs: Dict[str, WarmingJob] = {}
        self.running = False
        self.worker_task: Optional[asyncio.Task] = None

        self.stats = {
            'jobs_registered': 0,
            'jobs_executed': 0,
            'jobs_succeeded': 0,
            'jobs_failed': 0,
            'total_items_warmed': 0,
            'total_warming_time': 0.0
        }

    def register_job(self, job: WarmingJob) -> None:
        """
        Register a cache warming job.

        Raises:
            CacheConfigurationException: If the job names an unknown strategy
        """
        self.registry.get(job.strategy)
        self.jobs[job.name] = job
        self.stats['jobs_registered'] += 1

        if job.mode == WarmingMode.SCHEDULED:
            job.next_run = self.clock() + job.schedule_interval

        self.logger.info(f"Registered cache warming job: {job.name}", operation="register_job",
                         strategy=job.strategy, mode=job.mode.value)

    def unregister_job(self, job_name: str) -> bool:
        """Unregister a cache warming job."""
        if job_name in self.jobs:
            del self.jobs[job_name]
            self.logger.info(f"Unregistered cache warming job: {job_name}", operation="unregister_job")
            return True
        return False

    def get_job(self, job_name: str) -> Optional[WarmingJob]:
        return self.jobs.get(job_name)

    def list_jobs(self, mode: Optional[WarmingMode] = None, enabled_only: bool = True) -> List[WarmingJob]:
        """List warming jobs in priority order."""
        jobs = list(self.jobs.values())

        if mode:
            jobs = [job for job in jobs if job.mode == mode]

        if enabled_only:
            jobs = [job for job in jobs if job.enabled]

        return sorted(jobs, key=lambda j: j.priority)

    async def run_job(self, job_name: str) -> bool:
        """Execute a specific warming job."""
        job = self.jobs.get(job_name)
        if not job or not job.enabled:
            self.logger.warning(f"Job {job_name} not found or disabled", operation="run_job")
            return False

        strategy = self.registry.get(job.strategy)
        start_time = time.monotonic()

        try:
            self.logger.info(f"Starting cache warming job: {job_name}", operation="run_job")

            data = await job.data_loader()
            warmed = await strategy.warmup(data) if data else 0
        except Exception as e:
            duration = time.monotonic() - start_time
            self._finish(job, duration, success=False)
            self.logger.error(f"Cache warming job {job_name} failed: {e}", operation="run_job",
                              error_type=type(e).__name__)
            return False

        duration = time.monotonic() - start_time
        self._finish(job, duration, success=True)
        self.stats['total_items_warmed'] += warmed

        if not data:
            self.logger.warning(f"No data returned from job {job_name}", operation="run_job")
        else:
            self.logger.info(
                f"Cache warming job {job_name} completed: {warmed}/{len(data)} items in {duration:.2f}s",
                operation="run_job", warmed=warmed,
            )
        return True

    def _finish(self, job: WarmingJob, duration: float, success: bool) -> None:
        job.run_count += 1
        job.last_run = self.clock()
        job.avg_duration = (job.avg_duration * (job.run_count - 1) + duration) / job.run_count

        if success:
            job.success_count += 1
            self.stats['jobs_succeeded'] += 1
        else:
            job.error_count += 1
            self.stats['jobs_failed'] += 1

        if job.mode == WarmingMode.SCHEDULED:
            job.next_run = job.last_run + job.schedule_interval

        self.stats['jobs_executed'] += 1
        self.stats['total_warming_time'] += duration

        if self.metrics is not None:
            status = 'success' if success else 'failed'
            self.metrics.get_counter(f'cache_warming_jobs_{status}_total').increment()
            self.metrics.get_histogram(
                DURATION_METRIC, "Cache warming job duration", unit=MetricUnit.SECONDS, buckets=DURATION_BUCKETS
            ).observe(duration, job=job.name, status=status)

    async def warm_strategy(self, strategy: str) -> int:
        """Run every enabled job feeding one strategy, in priority order."""
        jobs = [job for job in self.list_jobs() if job.strategy == strategy]

        if not jobs:
            self.logger.info(f"No warming jobs found for strategy: {strategy}", operation="warm_strategy")
            return 0

        success_count = 0
        for job in jobs:
            if await self.run_job(job.name):
                success_count += 1

        self.logger.info(f"Completed warming for strategy {strategy}: {success_count}/{len(jobs)} successful",
                         operation="warm_strategy")
        return success_count

    async def warm_all(self) -> int:
        """Run all immediate jobs concurrently."""
        jobs = self.list_jobs(mode=WarmingMode.IMMEDIATE)

        if not jobs:
            return 0

        self.logger.info(f"Warming {len(jobs)} immediate jobs", operation="warm_all")

        results = await asyncio.gather(*(self.run_job(job.name) for job in jobs))

        success_count = sum(1 for result in results if result)
        self.logger.info(f"Completed immediate warming: {success_count}/{len(jobs)} successful",
                         operation="warm_all")
        return success_count

    def due_jobs(self) -> List[WarmingJob]:
        now = self.clock()
        return [
            job for job in self.list_jobs(mode=WarmingMode.SCHEDULED)
            if job.next_run is not None and now >= job.next_run
        ]

    async def run_due_jobs(self) -> int:
        """Run scheduled jobs whose interval has elapsed."""
        jobs = self.due_jobs()
        if jobs:
            self.logger.info(f"Running {len(jobs)} scheduled warming jobs", operation="run_due_jobs")
        ran = 0
        for job in jobs:
            await self.run_job(job.name)
            ran += 1
        return ran

    async def start_scheduler(self) -> None:
        """Start the cache warming scheduler."""
        if self.running:
            self.logger.warning("Cache warming scheduler is already running", operation="start_scheduler")
            return

        self.running = True
        self.worker_task = asyncio.create_task(self._scheduler_worker())
        self.logger.info("Cache warming scheduler started", operation="start_scheduler")

    async def stop_scheduler(self) -> None:
        """Stop the cache warming scheduler."""
        if not self.running:
            return

        self.running = False

        if self.worker_task:
            self.worker_task.cancel()
            try:
                await self.worker_task
            except asyncio.CancelledError:
                pass
            self.worker_task = None

        self.logger.info("Cache warming scheduler stopped", operation="stop_scheduler")

    async def _scheduler_worker(self) -> None:
        while self.running:
            try:
                await self.run_due_jobs()
                await asyncio.sleep(self.check_interval)
            except asyncio.CancelledError:
                break
            except Exception as e:
                self.logger.error(f"Error in cache warming scheduler: {e}", operation="scheduler")
                await asyncio.sleep(self.check_interval * 2)

    def get_stats(self) -> Dict[str, Any]:
        """Get cache warming statistics."""
        job_stats = {}
        for name, job in self.jobs.items():
            job_stats[name] = {
                'strategy': job.strategy,
                'mode': job.mode.value,
                'enabled': job.enabled,
                'run_count': job.run_count,
                'success_count': job.success_count,
                'error_count': job.error_count,
                'success_rate': job.success_count / job.run_count if job.run_count > 0 else 0,
                'avg_duration': job.avg_duration,
                'last_run': job.last_run,
                'next_run': job.next_run,
            }

        stats = {
            'overall': self.stats,
            'jobs': job_stats,
            'scheduler_running': self.running
        }

        if self.metrics is not None:
            histogram = self.metrics.histograms.get(DURATION_METRIC)
            stats['durations'] = {
                'histogram': histogram.get_statistics() if histogram else None,
                'recent': self.metrics.get_metric_summary(DURATION_METRIC),
            }

        return stats
