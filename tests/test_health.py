"""Tests for the health monitor rules and cycle."""

from datetime import timedelta

import pytest

from orchestrator.models import JobType, QueueHealth, utcnow
from orchestrator.monitoring.health import HealthMonitor, QueueObservation
from orchestrator.schemas import BrokerHealth, DatastoreHealth, HealthAlert

from conftest import sync_payload


@pytest.fixture
def monitor(manager, session_factory, settings, metrics):
    return HealthMonitor(manager, manager.store, session_factory, settings, metrics)


def alert(kind="error", action=None):
    return HealthAlert(type=kind, service="queue", message="x", timestamp=utcnow(), action=action)


class TestSnapshotIssues:
    async def test_idle_queue_is_healthy(self, monitor):
        assert monitor.snapshot_issues(QueueObservation("q")) == []

    async def test_backlog_without_consumers(self, monitor, settings):
        observation = QueueObservation("q", waiting=settings.health_backlog_threshold + 1)
        issues = monitor.snapshot_issues(observation)
        assert any(i.startswith("High backlog") for i in issues)
        assert "No active consumers" in issues
        assert any(i.startswith("Low throughput") for i in issues)

    async def test_paused_queue_is_not_running(self, monitor):
        issues = monitor.snapshot_issues(QueueObservation("q", is_running=False, consumers=1))
        assert issues == ["Queue not running"]

    def test_paused_and_delayed_count_as_messages(self):
        assert QueueObservation("q", waiting=1, paused=2, delayed=3).messages == 6


class TestAlerts:
    async def test_queue_alerts(self, monitor):
        observation = QueueObservation("q", waiting=5, consumers=0)
        alerts = monitor.generate_alerts([observation], [])
        no_consumers = [a for a in alerts if a.action == "restart_workers"]
        assert len(no_consumers) == 1
        assert no_consumers[0].type == "error"
        assert no_consumers[0].queue == "q"

    async def test_job_failure_rate_alert(self, monitor):
        stats = [{"jobType": "product-batch", "failureRate": 25.0, "avgProcessingTime": 10.0}]
        (failure,) = monitor.generate_alerts([], stats)
        assert failure.service == "jobs"
        assert failure.job_type == "product-batch"
        assert failure.threshold == pytest.approx(10.0)

    async def test_slow_processing_alert(self, monitor, settings):
        slow = settings.health_processing_time_threshold_ms * 2
        stats = [{"jobType": "marketplace-sync", "failureRate": 0.0, "avgProcessingTime": slow}]
        (warning,) = monitor.generate_alerts([], stats)
        assert warning.type == "warning"
        assert "Slow processing" in warning.message


class TestRollback:
    async def test_healthy_system_needs_no_rollback(self, monitor):
        assert monitor.rollback_reasons(BrokerHealth(status="healthy"), DatastoreHealth(status="healthy"),
                                        [alert("warning")], 0) == []

    async def test_each_trigger(self, monitor, settings):
        broker = BrokerHealth(status="unhealthy")
        datastore = DatastoreHealth(status="unhealthy")
        alerts = [alert(), alert(), alert(action="restart_workers"), alert(action="restart_queue")]
        reasons = monitor.rollback_reasons(broker, datastore, alerts, settings.health_recent_failure_limit + 1)
        assert reasons[0] == "broker unhealthy"
        assert reasons[1] == "datastore unhealthy"
        assert "4 error alerts" in reasons
        assert any("queues without consumers" in r for r in reasons)
        assert any("jobs failed in the last hour" in r for r in reasons)

    async def test_rollback_is_observational_by_default(self, monitor, manager):
        result = await monitor.emergency_rollback(["broker unhealthy"])
        assert result.action == "emergency_rollback"
        assert result.metadata["queuesPaused"] is False
        assert all([not await manager.broker.is_paused(q) for q in manager.queues])

    async def test_rollback_can_pause_queues(self, manager, session_factory, metrics):
        settings = manager.settings.model_copy(update={"health_emergency_pause_queues": True})
        monitor = HealthMonitor(manager, manager.store, session_factory, settings, metrics)
        await monitor.emergency_rollback(["datastore unhealthy"])
        assert all([await manager.broker.is_paused(q) for q in manager.queues])


class TestCycle:
    async def test_idle_cycle_snapshots_every_queue(self, monitor, manager):
        report = await monitor.run_cycle()
        assert {s.queue_name for s in report.snapshots} == manager.queues
        assert all(s.is_healthy and s.issues == [] for s in report.snapshots)
        assert not report.rollback
        assert len(manager.store.latest_snapshots("marketplace-sync")) == 1

    async def test_pending_work_without_consumers(self, monitor, manager):
        await manager.add_job("marketplace-sync", JobType.MARKETPLACE_SYNC, sync_payload())
        report = await monitor.run_cycle()
        (snapshot,) = [s for s in report.snapshots if s.queue_name == "marketplace-sync"]
        assert not snapshot.is_healthy
        assert "No active consumers" in snapshot.issues
        assert snapshot.waiting == 1

    async def test_two_dead_queues_trigger_rollback(self, monitor, manager):
        await manager.add_job("marketplace-sync", JobType.MARKETPLACE_SYNC, sync_payload())
        await manager.add_job("product-processing", JobType.PRODUCT_INDIVIDUAL,
                              sync_payload(productId="p1"))
        report = await monitor.run_cycle()
        assert report.rollback
        assert report.alerts[-1].action == "emergency_rollback"

    async def test_retention_drops_old_snapshots(self, monitor, manager):
        manager.store.save_snapshot(QueueHealth.from_observation(
            "marketplace-sync", [], timestamp=utcnow() - timedelta(days=30)))
        removed = monitor.apply_retention()
        assert removed["snapshots"] == 1

    async def test_cycle_updates_metrics(self, monitor, metrics):
        await monitor.run_cycle()
        text = metrics.get_metrics().decode()
        assert 'health_checks_total{outcome="ok"} 1.0' in text
        assert 'queue_healthy{queue="marketplace-sync"} 1.0' in text


class TestSystemHealth:
    async def test_idle_system_is_healthy(self, monitor):
        health = await monitor.get_system_health()
        assert health.overall == "healthy"
        assert health.services.broker.status == "healthy"
        assert health.services.datastore.status == "healthy"
        assert health.services.queues["marketplace-sync"].status == "running"

    async def test_unreachable_broker_is_unhealthy(self, monitor, manager, monkeypatch):
        async def down():
            return False

        monkeypatch.setattr(manager.broker, "health_check", down)
        health = await monitor.get_system_health()
        assert health.overall == "unhealthy"
        assert health.services.broker.status == "unhealthy"

    async def test_paused_queue_reports_stopped(self, monitor, manager):
        await manager.pause_queue("ai-optimization")
        health = await monitor.get_system_health()
        assert health.services.queues["ai-optimization"].status == "stopped"
        assert health.overall == "unhealthy"

    async def test_failure_in_check_returns_fallback(self, monitor, manager, monkeypatch):
        async def broken(queue_name):
            raise RuntimeError("redis went away")

        monkeypatch.setattr(manager, "get_queue_stats", broken)
        health = await monitor.get_system_health()
        assert health.overall == "unhealthy"
        assert "redis went away" in health.performance.alerts[0].message
