"""Prometheus metrics collection for the sync orchestrator."""

from prometheus_client import Counter, Histogram, Gauge, Info, CollectorRegistry, generate_latest
import structlog

logger = structlog.get_logger()


class MetricsCollector:
    """Collects and exposes Prometheus metrics for queues, jobs and health checks."""

    def __init__(self, version: str = "1.0.0"):
        """Initialize metrics collector."""
        self.registry = CollectorRegistry()

        # Job metrics
        self.jobs_submitted = Counter(
            'jobs_submitted_total',
            'Total number of jobs submitted',
            ['queue', 'job_type'],
            registry=self.registry
        )

        self.jobs_completed = Counter(
            'jobs_completed_total',
            'Total number of jobs that reached a final status',
            ['job_type', 'status'],
            registry=self.registry
        )

        self.job_execution_time = Histogram(
            'job_execution_seconds',
            'Job execution time in seconds',
            ['job_type'],
            buckets=[0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0, float('inf')],
            registry=self.registry
        )

        self.job_retries = Counter(
            'job_retries_total',
            'Total number of job retries',
            ['job_type'],
            registry=self.registry
        )

        # Queue metrics
        self.queue_size = Gauge(
            'queue_size',
            'Jobs waiting or delayed in a queue',
            ['queue'],
            registry=self.registry
        )

        self.active_workers = Gauge(
            'active_workers',
            'Workers currently sending heartbeats for a queue',
            ['queue'],
            registry=self.registry
        )

        self.queue_healthy = Gauge(
            'queue_healthy',
            '1 if the latest health snapshot of a queue had no issues',
            ['queue'],
            registry=self.registry
        )

        # Health metrics
        self.health_alerts = Counter(
            'health_alerts_total',
            'Health alerts raised by the monitor',
            ['type', 'service'],
            registry=self.registry
        )

        self.health_checks = Counter(
            'health_checks_total',
            'Health monitor cycles run',
            ['outcome'],
            registry=self.registry
        )

        # System metrics
        self.system_info = Info(
            'system_info',
            'System information',
            registry=self.registry
        )

        self.system_info.info({
            'version': version,
            'component': 'marketplace_sync_orchestrator'
        })

    def record_job_submitted(self, queue: str, job_type: str):
        """Record a job submission."""
        self.jobs_submitted.labels(queue=queue, job_type=job_type).inc()
        logger.debug("Job submission recorded", queue=queue, job_type=job_type)

    def record_job_completed(self, job_type: str, status: str, execution_time: float):
        """Record a job reaching completed or terminal failed."""
        self.jobs_completed.labels(job_type=job_type, status=status).inc()
        self.job_execution_time.labels(job_type=job_type).observe(execution_time)
        logger.debug("Job completion recorded",
                     job_type=job_type,
                     status=status,
                     execution_time=execution_time)

    def record_job_retry(self, job_type: str):
        """Record a job retry."""
        self.job_retries.labels(job_type=job_type).inc()

    def update_queue_size(self, queue: str, size: int):
        self.queue_size.labels(queue=queue).set(size)

    def update_active_workers(self, queue: str, count: int):
        self.active_workers.labels(queue=queue).set(count)

    def update_queue_health(self, queue: str, healthy: bool):
        self.queue_healthy.labels(queue=queue).set(1 if healthy else 0)

    def record_health_alert(self, alert_type: str, service: str):
        self.health_alerts.labels(type=alert_type, service=service).inc()

    def record_health_check(self, outcome: str):
        self.health_checks.labels(outcome=outcome).inc()

    def get_metrics(self) -> bytes:
        """Get metrics in Prometheus format."""
        return generate_latest(self.registry)
