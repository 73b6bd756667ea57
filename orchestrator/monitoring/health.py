"""Periodic health checks: queue snapshots, alerts, emergency rollback and retention."""

import asyncio
import time
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, List, Optional

import redis.asyncio as redis
from sqlalchemy.orm import sessionmaker
import structlog

from orchestrator.config import Settings
from orchestrator.database import probe
from orchestrator.manager import QueueManager
from orchestrator.models import QueueHealth, utcnow
from orchestrator.monitoring.metrics import MetricsCollector
from orchestrator.schemas import (
    BrokerHealth,
    DatastoreHealth,
    HealthAlert,
    PerformanceHealth,
    QueueServiceHealth,
    ServicesHealth,
    SystemHealth,
)
from orchestrator.store import JobStore

logger = structlog.get_logger()

ROLLBACK_ERROR_ALERTS = 3
ROLLBACK_QUEUE_DOWN_ALERTS = 2
QUEUE_DOWN_ACTIONS = ("restart_workers", "restart_queue")


@dataclass
class QueueObservation:
    """Everything one cycle learned about one queue."""

    queue_name: str
    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0
    paused: int = 0
    consumers: int = 0
    message_rate: float = 0.0
    consume_rate: float = 0.0
    is_running: bool = True
    average_processing_time_ms: float = 0.0
    average_wait_time_ms: float = 0.0
    throughput: float = 0.0

    @property
    def messages(self) -> int:
        return self.waiting + self.paused + self.delayed

    @property
    def consumed_per_hour(self) -> float:
        return self.consume_rate * 3600


@dataclass
class HealthCycleReport:
    snapshots: List[QueueHealth] = field(default_factory=list)
    alerts: List[HealthAlert] = field(default_factory=list)
    rollback: bool = False
    rollback_reasons: List[str] = field(default_factory=list)


class HealthMonitor:
    """Runs health cycles on a fixed interval and answers on-demand health queries."""

    def __init__(
        self,
        manager: QueueManager,
        store: JobStore,
        session_factory: sessionmaker,
        settings: Settings,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.manager = manager
        self.store = store
        self.session_factory = session_factory
        self.settings = settings
        self.metrics = metrics
        self._task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Run one cycle now, then one every ``health_check_interval_seconds``."""
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.create_task(self._loop())
        logger.info("Health monitor started", interval_seconds=self.settings.health_check_interval_seconds)

    async def stop(self) -> None:
        if self._task is None:
            return
        task, self._task = self._task, None
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        logger.info("Health monitor stopped")

    async def _loop(self):
        interval = self.settings.health_check_interval_seconds
        while True:
            started = time.monotonic()
            try:
                await self.run_cycle()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Health check cycle failed", error=str(e))
                if self.metrics:
                    self.metrics.record_health_check("error")
            await asyncio.sleep(max(0.0, interval - (time.monotonic() - started)))

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    async def run_cycle(self) -> HealthCycleReport:
        """Observe, snapshot, alert, maybe roll back, then apply retention."""
        broker = await self.broker_health()
        datastore = self.datastore_health()
        observations = await self.observe_queues()
        performance = self.store.performance_stats(utcnow() - timedelta(hours=1))

        report = HealthCycleReport()
        for observation in observations:
            issues = self.snapshot_issues(observation)
            snapshot = self.store.save_snapshot(QueueHealth.from_observation(
                observation.queue_name,
                issues,
                waiting=observation.waiting + observation.paused,
                processing=observation.active,
                completed=observation.completed,
                failed=observation.failed,
                delayed=observation.delayed,
                average_processing_time_ms=observation.average_processing_time_ms,
                average_wait_time_ms=observation.average_wait_time_ms,
                throughput=observation.throughput,
                consumers=observation.consumers,
                message_rate=observation.message_rate,
            ))
            report.snapshots.append(snapshot)
            if self.metrics:
                self.metrics.update_queue_size(observation.queue_name, observation.messages)
                self.metrics.update_active_workers(observation.queue_name, observation.consumers)
                self.metrics.update_queue_health(observation.queue_name, snapshot.is_healthy)

        report.alerts = self.generate_alerts(observations, performance)

        recent_failures = self.store.count_failures_since(utcnow() - timedelta(hours=1))
        report.rollback_reasons = self.rollback_reasons(broker, datastore, report.alerts, recent_failures)
        if report.rollback_reasons:
            report.rollback = True
            report.alerts.append(await self.emergency_rollback(report.rollback_reasons))

        for alert in report.alerts:
            self._log_alert(alert)
            if self.metrics:
                self.metrics.record_health_alert(alert.type, alert.service)

        self.apply_retention()
        if self.metrics:
            self.metrics.record_health_check("rollback" if report.rollback else "ok")
        logger.info("Health check completed", queues=len(report.snapshots), alerts=len(report.alerts),
                    rollback=report.rollback)
        return report

    async def observe_queues(self) -> List[QueueObservation]:
        since = utcnow() - timedelta(hours=1)
        observations = []
        for queue_name in sorted(self.manager.queues):
            stats = await self.manager.get_queue_stats(queue_name)
            window = self.store.queue_window_stats(queue_name, since)
            observations.append(QueueObservation(
                queue_name=queue_name,
                waiting=stats["waiting"],
                active=stats["active"],
                completed=stats["completed"],
                failed=stats["failed"],
                delayed=stats["delayed"],
                paused=stats["paused"],
                consumers=await self.manager.count_consumers(queue_name),
                message_rate=window["created"] / 3600,
                consume_rate=window["finished"] / 3600,
                is_running=await self.manager.is_running(queue_name),
                average_processing_time_ms=window["avg_processing_time_ms"],
                average_wait_time_ms=window["avg_wait_time_ms"],
                throughput=window["finished"] / 60,
            ))
        return observations

    async def broker_health(self) -> BrokerHealth:
        if not await self.manager.broker.health_check():
            return BrokerHealth(status="unhealthy")
        try:
            info = await self.manager.broker.server_info()
        except redis.RedisError as e:
            logger.warning("Broker info unavailable", error=str(e))
            info = {}
        return BrokerHealth(status="healthy", **info)

    def datastore_health(self) -> DatastoreHealth:
        result = probe(self.session_factory)
        healthy = result["ok"] and result["response_time_ms"] <= self.settings.health_db_response_threshold_ms
        return DatastoreHealth(
            status="healthy" if healthy else "unhealthy",
            response_time=round(result["response_time_ms"], 2),
        )

    # ------------------------------------------------------------------
    # Rules
    # ------------------------------------------------------------------

    def snapshot_issues(self, observation: QueueObservation) -> List[str]:
        issues = []
        if observation.messages > self.settings.health_backlog_threshold:
            issues.append(f"High backlog: {observation.messages} messages")
        if observation.consumers == 0 and observation.messages > 0:
            issues.append("No active consumers")
        if not observation.is_running:
            issues.append("Queue not running")
        if observation.messages > 0 and observation.consumed_per_hour < self.settings.health_low_throughput_per_hour:
            issues.append(f"Low throughput: {observation.consumed_per_hour:.1f}/hour")
        return issues

    def generate_alerts(self, observations: List[QueueObservation],
                        performance: List[Dict[str, Any]]) -> List[HealthAlert]:
        now = utcnow()
        alerts = []
        for obs in observations:
            if obs.messages > self.settings.health_backlog_threshold:
                alerts.append(HealthAlert(
                    type="warning", service="queue", queue=obs.queue_name, timestamp=now,
                    message=f"High message backlog in queue {obs.queue_name}",
                    threshold=self.settings.health_backlog_threshold, current_value=obs.messages,
                ))
            if obs.consumers == 0 and obs.messages > 0:
                alerts.append(HealthAlert(
                    type="error", service="queue", queue=obs.queue_name, timestamp=now,
                    message=f"No consumers for queue {obs.queue_name} with pending messages",
                    threshold=1, current_value=0, action="restart_workers",
                ))
            if not obs.is_running:
                alerts.append(HealthAlert(
                    type="error", service="queue", queue=obs.queue_name, timestamp=now,
                    message=f"Queue {obs.queue_name} is not running",
                    action="restart_queue",
                ))
            if obs.messages > 0 and obs.consumed_per_hour < self.settings.health_low_throughput_per_hour:
                alerts.append(HealthAlert(
                    type="warning", service="queue", queue=obs.queue_name, timestamp=now,
                    message=f"Low throughput in queue {obs.queue_name}",
                    threshold=self.settings.health_low_throughput_per_hour,
                    current_value=round(obs.consumed_per_hour, 2),
                ))

        failure_threshold = self.settings.health_failure_rate_threshold * 100
        for stat in performance:
            if stat["failureRate"] > failure_threshold:
                alerts.append(HealthAlert(
                    type="warning", service="jobs", job_type=stat["jobType"], timestamp=now,
                    message=f"High failure rate for {stat['jobType']} jobs",
                    threshold=failure_threshold, current_value=round(stat["failureRate"], 2),
                ))
            avg = stat.get("avgProcessingTime")
            if avg is not None and avg > self.settings.health_processing_time_threshold_ms:
                alerts.append(HealthAlert(
                    type="warning", service="jobs", job_type=stat["jobType"], timestamp=now,
                    message=f"Slow processing for {stat['jobType']} jobs",
                    threshold=self.settings.health_processing_time_threshold_ms, current_value=round(avg, 2),
                ))
        return alerts

    def rollback_reasons(self, broker: BrokerHealth, datastore: DatastoreHealth,
                         alerts: List[HealthAlert], recent_failures: int) -> List[str]:
        """Why the system should be rolled back; empty when it should not."""
        reasons = []
        if broker.status != "healthy":
            reasons.append("broker unhealthy")
        if datastore.status != "healthy":
            reasons.append("datastore unhealthy")
        errors = [a for a in alerts if a.type == "error"]
        if len(errors) >= ROLLBACK_ERROR_ALERTS:
            reasons.append(f"{len(errors)} error alerts")
        down = [a for a in alerts if a.action in QUEUE_DOWN_ACTIONS]
        if len(down) >= ROLLBACK_QUEUE_DOWN_ALERTS:
            reasons.append(f"{len(down)} queues without consumers or not running")
        if recent_failures > self.settings.health_recent_failure_limit:
            reasons.append(f"{recent_failures} jobs failed in the last hour")
        return reasons

    async def emergency_rollback(self, reasons: List[str]) -> HealthAlert:
        logger.critical("Emergency rollback conditions met", reasons=reasons,
                        pause_queues=self.settings.health_emergency_pause_queues)
        if self.settings.health_emergency_pause_queues:
            for queue_name in sorted(self.manager.queues):
                await self.manager.pause_queue(queue_name)
        return HealthAlert(
            type="error", service="system", timestamp=utcnow(),
            message="Emergency rollback triggered: " + ", ".join(reasons),
            action="emergency_rollback",
            metadata={"reasons": reasons, "queuesPaused": self.settings.health_emergency_pause_queues},
        )

    def apply_retention(self) -> Dict[str, int]:
        now = utcnow()
        removed_jobs = 0
        for queue_name in sorted(self.manager.queues):
            cleaned = self.store.clean_finished(queue_name, now - timedelta(days=self.settings.job_retention_days))
            removed_jobs += sum(cleaned.values())
        removed = {
            "jobs": removed_jobs,
            "history": self.store.purge_history(now - timedelta(days=self.settings.history_retention_days)),
            "snapshots": self.store.purge_snapshots(now - timedelta(days=self.settings.health_retention_days)),
        }
        if any(removed.values()):
            logger.info("Retention pass removed records", **removed)
        return removed

    # ------------------------------------------------------------------
    # On-demand health
    # ------------------------------------------------------------------

    async def get_system_health(self) -> SystemHealth:
        try:
            broker = await self.broker_health()
            datastore = self.datastore_health()
            observations = await self.observe_queues()
            performance = self.store.performance_stats(utcnow() - timedelta(hours=1))
            alerts = self.generate_alerts(observations, performance)
        except Exception as e:
            logger.error("System health check failed", error=str(e))
            return SystemHealth(
                overall="unhealthy",
                timestamp=utcnow(),
                services=ServicesHealth(
                    broker=BrokerHealth(status="unhealthy"),
                    datastore=DatastoreHealth(status="unhealthy"),
                ),
                performance=PerformanceHealth(alerts=[HealthAlert(
                    type="error", service="system", timestamp=utcnow(),
                    message=f"Health check failed: {e}",
                )]),
            )

        if broker.status != "healthy" or datastore.status != "healthy" or any(a.type == "error" for a in alerts):
            overall = "unhealthy"
        elif any(a.type == "warning" for a in alerts):
            overall = "degraded"
        else:
            overall = "healthy"

        return SystemHealth(
            overall=overall,
            timestamp=utcnow(),
            services=ServicesHealth(
                broker=broker,
                datastore=datastore,
                queues={
                    obs.queue_name: QueueServiceHealth(
                        messages=obs.messages,
                        consumers=obs.consumers,
                        message_rate=round(obs.message_rate, 4),
                        consume_rate=round(obs.consume_rate, 4),
                        status="running" if obs.is_running else "stopped",
                    )
                    for obs in observations
                },
            ),
            performance=PerformanceHealth(stats=performance, alerts=alerts),
        )

    def _log_alert(self, alert: HealthAlert) -> None:
        context = alert.model_dump(exclude_none=True, exclude={"type", "message", "timestamp"})
        if alert.type == "error":
            logger.error(alert.message, **context)
        elif alert.type == "warning":
            logger.warning(alert.message, **context)
        else:
            logger.info(alert.message, **context)
