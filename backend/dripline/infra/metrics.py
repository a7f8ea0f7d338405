import logging
import time

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    generate_latest,
)

logger = logging.getLogger(__name__)


class Metrics:
    def __init__(self, enabled: bool = False) -> None:
        self._configure(enabled)

    def _configure(self, enabled: bool) -> None:
        self.enabled = enabled
        self.registry = CollectorRegistry(auto_describe=True)
        if not enabled:
            self.automation_triggers = None
            self.automation_events = None
            self.nurture_enrollments = None
            self.billing_gate_checks = None
            self.message_sends = None
            self.job_heartbeat = None
            self.job_last_success = None
            self.job_errors = None
            self.circuit_state = None
            return

        self.automation_triggers = Counter(
            "automation_triggers_total",
            "Scheduled trigger evaluations by outcome.",
            ["outcome"],
            registry=self.registry,
        )
        self.automation_events = Counter(
            "automation_events_total",
            "Event dispatches by trigger kind and outcome.",
            ["trigger_kind", "outcome"],
            registry=self.registry,
        )
        self.nurture_enrollments = Counter(
            "nurture_enrollments_total",
            "Nurture enrollment transitions by outcome.",
            ["outcome"],
            registry=self.registry,
        )
        self.billing_gate_checks = Counter(
            "billing_gate_checks_total",
            "Billing gate decisions by result (cache misses only).",
            ["result"],
            registry=self.registry,
        )
        self.message_sends = Counter(
            "message_sends_total",
            "Outbound message attempts by channel and status.",
            ["channel", "status"],
            registry=self.registry,
        )
        self.job_heartbeat = Gauge(
            "job_heartbeat_timestamp",
            "Unix timestamp of the last job heartbeat.",
            ["job"],
            registry=self.registry,
        )
        self.job_last_success = Gauge(
            "job_last_success_timestamp",
            "Unix timestamp of the last successful job run.",
            ["job"],
            registry=self.registry,
        )
        self.job_errors = Counter(
            "job_errors_total",
            "Job failures by reason.",
            ["job", "reason"],
            registry=self.registry,
        )
        self.circuit_state = Gauge(
            "circuit_state",
            "Circuit breaker state (0=closed, 0.5=half_open, 1=open).",
            ["circuit"],
            registry=self.registry,
        )

    def record_automation_trigger(self, outcome: str, count: int = 1) -> None:
        if not self.enabled or self.automation_triggers is None:
            return
        if count <= 0:
            return
        self.automation_triggers.labels(outcome=outcome).inc(count)

    def record_automation_event(self, trigger_kind: str, outcome: str) -> None:
        if not self.enabled or self.automation_events is None:
            return
        self.automation_events.labels(trigger_kind=trigger_kind or "unknown", outcome=outcome).inc()

    def record_nurture(self, outcome: str, count: int = 1) -> None:
        if not self.enabled or self.nurture_enrollments is None:
            return
        if count <= 0:
            return
        self.nurture_enrollments.labels(outcome=outcome).inc(count)

    def record_billing_gate(self, result: str) -> None:
        if not self.enabled or self.billing_gate_checks is None:
            return
        self.billing_gate_checks.labels(result=result or "unknown").inc()

    def record_message_send(self, channel: str, status: str) -> None:
        if not self.enabled or self.message_sends is None:
            return
        self.message_sends.labels(channel=channel, status=status or "unknown").inc()

    def record_job_heartbeat(self, job: str, timestamp: float | None = None) -> None:
        if not self.enabled or self.job_heartbeat is None:
            return
        ts = timestamp if timestamp is not None else time.time()
        self.job_heartbeat.labels(job=job).set(ts)

    def record_job_success(self, job: str, timestamp: float | None = None) -> None:
        if not self.enabled or self.job_last_success is None:
            return
        ts = timestamp if timestamp is not None else time.time()
        self.job_last_success.labels(job=job).set(ts)

    def record_job_error(self, job: str, reason: str) -> None:
        if not self.enabled or self.job_errors is None:
            return
        safe_reason = reason or "unknown"
        self.job_errors.labels(job=job, reason=safe_reason).inc()

    def record_circuit_state(self, circuit: str, state: str) -> None:
        if not self.enabled or self.circuit_state is None:
            return
        value = {"closed": 0, "half_open": 0.5, "open": 1}.get(state, -1)
        self.circuit_state.labels(circuit=circuit).set(value)

    def render(self) -> tuple[bytes, str]:
        if not self.enabled:
            return b"metrics_disabled 1\n", "text/plain; version=0.0.4"
        try:
            return generate_latest(self.registry), CONTENT_TYPE_LATEST
        except Exception:  # noqa: BLE001
            logger.exception("metrics_render_failed")
            return b"metrics_render_failed 1\n", "text/plain; version=0.0.4"


metrics = Metrics(enabled=False)


def configure_metrics(enabled: bool) -> Metrics:
    metrics._configure(enabled)
    return metrics
