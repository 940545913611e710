"""Tests for fire-and-forget security event recording."""

import asyncio

from sessiontrust.service.anomaly import AnomalyKind, AnomalyVerdict, Severity
from sessiontrust.service.events import (
    FailureReason,
    SecurityEventEmitter,
    SecurityEventType,
    SecurityOutcome,
)
from sessiontrust.storage.models import Location, NetworkContext

NETWORK = NetworkContext(
    ip_address="198.51.100.4",
    user_agent="pytest",
    location=Location(country="GB", city="London", latitude=51.5074, longitude=-0.1278),
)


class FlakyStore:
    """Audit store that fails the first ``failures`` writes of each kind."""

    def __init__(self, failures: int = 0):
        self.failures = failures
        self.event_calls = 0
        self.alert_calls = 0
        self.events = []
        self.alerts = []

    def create_audit_event(self, event):
        self.event_calls += 1
        if self.event_calls <= self.failures:
            raise ConnectionError("audit store unavailable")
        self.events.append(event)

    def create_security_alert(self, alert):
        self.alert_calls += 1
        if self.alert_calls <= self.failures:
            raise ConnectionError("audit store unavailable")
        self.alerts.append(alert)


def _verdict():
    return AnomalyVerdict(
        kind=AnomalyKind.IMPOSSIBLE_TRAVEL,
        severity=Severity.CRITICAL,
        description="Impossible travel detected",
        details={"distance_km": 5570.0, "time_hours": 1.0},
    )


class TestEventShape:
    def test_login_failure_classification(self, clock):
        store = FlakyStore()
        emitter = SecurityEventEmitter(store, clock=clock)
        emitter.record(
            SecurityOutcome.login_failed(FailureReason.INVALID_PASSWORD, NETWORK, user_id="u1")
        )

        [event] = store.events
        assert event.event_type == "login_failed"
        assert event.category == "authentication"
        assert event.severity == "warning"
        assert event.success is False
        assert event.failure_reason == "invalid_password"
        assert event.user_id == "u1"
        assert event.ip_address == "198.51.100.4"
        assert event.location_country == "GB"
        assert event.location_city == "London"
        assert event.created_at == clock()

    def test_mfa_required_is_informational(self):
        store = FlakyStore()
        SecurityEventEmitter(store).record(
            SecurityOutcome.login_failed(FailureReason.MFA_REQUIRED, None, user_id="u1")
        )
        assert store.events[0].severity == "info"
        assert store.events[0].ip_address is None

    def test_revoke_all_carries_count(self):
        store = FlakyStore()
        SecurityEventEmitter(store).record(SecurityOutcome.all_sessions_revoked("u1", 3))
        [event] = store.events
        assert event.category == "session_management"
        assert event.severity == "warning"
        assert event.metadata == {"revoked_count": 3}

    def test_success_events(self):
        store = FlakyStore()
        emitter = SecurityEventEmitter(store)
        emitter.record(SecurityOutcome.registered("u1", "s1", "d1", NETWORK))
        emitter.record(SecurityOutcome.logged_in("u1", "s2", "d1", NETWORK))
        emitter.record(SecurityOutcome.session_revoked("u1", "s1"))
        emitter.record(SecurityOutcome.device_trusted("u1", "d1"))
        emitter.record(SecurityOutcome.mfa_enabled("u1"))
        emitter.record(SecurityOutcome.mfa_disabled("u1"))

        assert [(e.event_type, e.category, e.severity) for e in store.events] == [
            ("user_registered", "authentication", "info"),
            ("user_login", "authentication", "info"),
            ("session_revoked", "session_management", "info"),
            ("device_trusted", "security", "info"),
            ("mfa_enabled", "security", "info"),
            ("mfa_disabled", "security", "info"),
        ]
        assert all(e.success for e in store.events)

    def test_anomaly_writes_alert_and_event(self):
        store = FlakyStore()
        SecurityEventEmitter(store).record(
            SecurityOutcome.anomaly(_verdict(), "u1", session_id="s1", device_id="d1", network=NETWORK)
        )

        [event] = store.events
        [alert] = store.alerts
        assert event.event_type == SecurityEventType.ANOMALY_DETECTED.value
        assert event.severity == "critical"
        assert event.metadata["anomaly"] == "impossible_travel"
        assert alert.alert_type == "impossible_travel"
        assert alert.severity == "critical"
        assert alert.description == "Impossible travel detected"
        assert alert.metadata == {"distance_km": 5570.0, "time_hours": 1.0}
        assert alert.location_city == "London"
        assert alert.is_resolved is False


class TestDelivery:
    async def test_detached_delivery_settles_on_drain(self):
        store = FlakyStore()
        emitter = SecurityEventEmitter(store, retry_delay=0)

        emitter.record(SecurityOutcome.mfa_enabled("u1"))
        assert emitter.pending == 1
        assert store.events == []

        await emitter.drain()
        assert emitter.pending == 0
        assert len(store.events) == 1

    async def test_retries_until_delivered(self):
        store = FlakyStore(failures=2)
        emitter = SecurityEventEmitter(store, max_attempts=3, retry_delay=0)

        emitter.record(SecurityOutcome.mfa_enabled("u1"))
        await emitter.drain()

        assert store.event_calls == 3
        assert len(store.events) == 1

    async def test_gives_up_without_raising(self):
        store = FlakyStore(failures=10)
        emitter = SecurityEventEmitter(store, max_attempts=3, retry_delay=0)

        emitter.record(SecurityOutcome.mfa_enabled("u1"))
        await emitter.drain()

        assert store.event_calls == 3
        assert store.events == []

    async def test_caller_cancellation_does_not_cancel_delivery(self):
        store = FlakyStore()
        emitter = SecurityEventEmitter(store, retry_delay=0)

        async def handler():
            emitter.record(SecurityOutcome.mfa_enabled("u1"))
            await asyncio.sleep(10)

        task = asyncio.ensure_future(handler())
        await asyncio.sleep(0)
        task.cancel()
        await emitter.drain()

        assert len(store.events) == 1

    def test_inline_delivery_without_loop_swallows_failures(self):
        store = FlakyStore(failures=10)
        emitter = SecurityEventEmitter(store, max_attempts=2, retry_delay=0)

        emitter.record(SecurityOutcome.mfa_enabled("u1"))

        assert store.event_calls == 2
        assert emitter.pending == 0

    def test_inline_retry_succeeds(self):
        store = FlakyStore(failures=1)
        emitter = SecurityEventEmitter(store, max_attempts=3, retry_delay=0)
        emitter.record(SecurityOutcome.mfa_disabled("u1"))
        assert len(store.events) == 1
