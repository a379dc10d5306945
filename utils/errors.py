"""Error taxonomy for the monitoring engine."""


class MonitorError(Exception):
    """Base class for all monitoring engine errors."""


class ConfigurationError(MonitorError):
    """Invalid rule, condition, predicate or config value.

    Raised at registration time so a bad definition never reaches the
    evaluation loop.
    """


class TransientSourceError(MonitorError):
    """Metric source or channel timed out or failed; safe to retry next tick."""
    def __init__(self, message, source=None, query=None):
        super().__init__(message)
        self.source = source
        self.query = query


class DispatchError(MonitorError):
    """A notification channel failed to deliver a message."""
    def __init__(self, message, channel_id=None, recipient=None):
        super().__init__(message)
        self.channel_id = channel_id
        self.recipient = recipient


class NotFoundError(MonitorError):
    """Unknown alert, rule, plan or test id."""
