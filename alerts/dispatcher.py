"""Notification dispatch with per-channel rate limits and bounded retries."""
import logging
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from alerts.templates import render_message
from models.enums import DispatchOutcome, EventKind
from utils.rate_limiter import FixedWindowLimiter

logger = logging.getLogger("opsmonitor.alerts.dispatcher")


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff: ``backoff_seconds * 2**attempt`` capped at ``max_backoff``."""
    max_retries: int = 0
    backoff_seconds: float = 1.0
    max_backoff: float = 30.0

    def delay(self, attempt):
        return min(self.backoff_seconds * (2 ** attempt), self.max_backoff)

    @property
    def worst_case_wait(self):
        return sum(self.delay(a) for a in range(self.max_retries))


@dataclass
class ChannelOutcome:
    channel_id: str
    channel_type: str
    outcome: DispatchOutcome
    recipients: list = field(default_factory=list)
    attempts: int = 0
    error: Optional[str] = None


@dataclass
class DispatchReport:
    alert_id: str
    rule_id: str
    event_kind: EventKind
    dispatched_at: Optional[datetime] = None
    outcomes: list = field(default_factory=list)

    def _with(self, outcome):
        return [o for o in self.outcomes if o.outcome == outcome]

    @property
    def sent(self):
        return self._with(DispatchOutcome.SENT)

    @property
    def failed(self):
        return self._with(DispatchOutcome.FAILED) + self._with(DispatchOutcome.NO_TRANSPORT)

    @property
    def rate_limited(self):
        return self._with(DispatchOutcome.RATE_LIMITED)

    @property
    def ok(self):
        return not self.failed

    def outcome_for(self, channel_id):
        for o in self.outcomes:
            if o.channel_id == channel_id:
                return o
        return None


class NotificationDispatcher:
    """Send an alert event through every enabled channel on its rule.

    Each (rule, channel, event kind) has a fixed rate-limit window of the
    channel's ``rate_limit_minutes``; the first attempt opens it and further
    attempts inside it are recorded as ``rate_limited`` without sending.
    Channels are delivered in parallel and a failure on one never affects
    the others.
    """

    def __init__(self, channels, clock, limiter=None, retry=None, send_timeout=10,
                 parallel=True, max_workers=8, templates=None, store=None, sleep=time.sleep):
        self.channels = dict(channels or {})
        self.clock = clock
        self.limiter = limiter or FixedWindowLimiter()
        self.retry = retry or RetryPolicy()
        self.send_timeout = send_timeout
        self.parallel = parallel
        self.templates = templates
        self.store = store
        self._sleep = sleep
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="dispatch") if parallel else None

    def close(self):
        if self._executor:
            self._executor.shutdown(wait=False)

    def dispatch(self, alert, rule, event_kind):
        event_kind = EventKind(event_kind)
        now = self.clock.now()
        report = DispatchReport(alert_id=alert.id, rule_id=rule.id, event_kind=event_kind, dispatched_at=now)

        deliveries = []
        for ref in rule.channels:
            if not ref.enabled:
                continue
            key = (rule.id, ref.id, event_kind.value)
            if not self.limiter.try_acquire(key, ref.rate_limit_minutes * 60, now):
                logger.debug(f"Rate limited: {rule.id}/{ref.id} ({event_kind.value})")
                report.outcomes.append(ChannelOutcome(
                    ref.id, ref.type.value, DispatchOutcome.RATE_LIMITED, list(ref.recipients),
                ))
                continue
            message = render_message(alert, rule, event_kind, ref.template, self.templates, now=now)
            deliveries.append((ref, message))

        report.outcomes.extend(self._deliver_all(deliveries))

        if report.sent or report.failed:
            logger.info(
                f"Dispatched {event_kind.value} for {alert.id}: "
                f"{len(report.sent)} sent, {len(report.failed)} failed, {len(report.rate_limited)} rate limited"
            )
        if self.store is not None and report.outcomes:
            try:
                self.store.log_dispatch(report, now=now)
            except Exception as e:
                logger.warning(f"Failed to record dispatch for {alert.id}: {e}")
        return report

    def _deliver_all(self, deliveries):
        if not self.parallel or len(deliveries) <= 1:
            return [self._deliver(ref, message) for ref, message in deliveries]

        deadline = self.send_timeout * (self.retry.max_retries + 1) + self.retry.worst_case_wait
        futures = [(ref, self._executor.submit(self._deliver, ref, message)) for ref, message in deliveries]
        outcomes = []
        for ref, future in futures:
            try:
                outcomes.append(future.result(timeout=deadline))
            except FutureTimeout:
                logger.warning(f"Channel {ref.id} timed out after {deadline:.0f}s")
                outcomes.append(ChannelOutcome(ref.id, ref.type.value, DispatchOutcome.FAILED,
                                               list(ref.recipients), error="timed out"))
        return outcomes

    def _deliver(self, ref, message):
        transport = self.channels.get(ref.type)
        if transport is None:
            logger.warning(f"No transport configured for channel type {ref.type.value}")
            return ChannelOutcome(ref.id, ref.type.value, DispatchOutcome.NO_TRANSPORT, list(ref.recipients),
                                  error=f"no {ref.type.value} transport")

        pending = list(ref.recipients) or [""]
        errors = {}
        attempts = 0
        for attempt in range(self.retry.max_retries + 1):
            attempts += 1
            errors = {}
            for recipient in pending:
                try:
                    if not transport.send(recipient, message):
                        errors[recipient] = "delivery refused"
                except Exception as e:
                    errors[recipient] = str(e)
            if not errors:
                return ChannelOutcome(ref.id, ref.type.value, DispatchOutcome.SENT, list(ref.recipients),
                                      attempts=attempts)
            pending = list(errors)
            if attempt < self.retry.max_retries:
                wait = self.retry.delay(attempt)
                logger.warning(f"Channel {ref.id} failed for {len(pending)} recipient(s), retrying in {wait:.1f}s")
                self._sleep(wait)

        error = "; ".join(f"{r or ref.type.value}: {msg}" for r, msg in errors.items())
        logger.warning(f"Channel {ref.id} delivery failed: {error}")
        return ChannelOutcome(ref.id, ref.type.value, DispatchOutcome.FAILED, list(ref.recipients),
                              attempts=attempts, error=error)
