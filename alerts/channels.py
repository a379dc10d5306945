"""Notification transports, one per channel type.

Every transport implements ``send(recipient, message) -> bool`` where
``message`` is a ``RenderedMessage``. A False return or a raised exception
both count as a failed delivery; the dispatcher records either per channel.
HTTP transports are bounded by a request timeout.
"""
import hashlib
import hmac
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol, runtime_checkable

import requests
from rich.console import Console

from models.enums import ChannelType
from utils.errors import DispatchError

logger = logging.getLogger("opsmonitor.alerts.channels")

DEFAULT_TIMEOUT = 10


@runtime_checkable
class NotificationChannel(Protocol):
    def send(self, recipient: str, message) -> bool: ...


def _post_json(url, payload, timeout, headers=None, body=None):
    try:
        resp = requests.post(
            url,
            data=body if body is not None else json.dumps(payload),
            headers={"Content-Type": "application/json", **(headers or {})},
            timeout=timeout,
        )
    except requests.RequestException as e:
        raise DispatchError(f"POST {url} failed: {e}", recipient=url)
    if not resp.ok:
        logger.warning(f"POST {url} returned HTTP {resp.status_code}")
        return False
    return True


class ConsoleChannel:
    """Print notifications to the terminal with rich formatting."""

    STYLES = {
        "critical": "bold white on red",
        "high": "bold red",
        "medium": "bold yellow",
        "low": "bold blue",
    }

    def __init__(self, console=None):
        self.console = console or Console()

    def send(self, recipient, message):
        style = self.STYLES.get(message.severity, "")
        self.console.print(f"[{style}]{message.subject}[/] → {recipient}: {message.body}")
        return True


class FileChannel:
    """Append notifications to a JSON lines log file."""

    def __init__(self, log_path="data/notifications.jsonl"):
        self.log_path = Path(log_path)

    def send(self, recipient, message):
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "recipient": recipient,
            "subject": message.subject,
            "body": message.body,
            "severity": message.severity,
            "event": message.event_kind,
            **{k: v for k, v in message.payload.items() if k not in ("severity", "event")},
        }
        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.log_path, "a") as f:
            f.write(json.dumps(entry) + "\n")
        return True


class EmailChannel:
    """Email via SMTP; the recipient is an address."""

    def __init__(self, sender):
        self.sender = sender

    def send(self, recipient, message):
        return self.sender.send_alert(recipient, message.subject, message.body, message.severity)


class SlackChannel:
    """Slack incoming webhook; the recipient is a channel name like ``#alerts``."""

    def __init__(self, webhook_url, timeout=DEFAULT_TIMEOUT):
        self.webhook_url = webhook_url
        self.timeout = timeout

    def send(self, recipient, message):
        if not self.webhook_url:
            raise DispatchError("Slack webhook_url not configured", recipient=recipient)
        payload = {
            "channel": recipient,
            "text": f"*{message.subject}*\n{message.body}",
        }
        return _post_json(self.webhook_url, payload, self.timeout)


class WebhookChannel:
    """Signed JSON POST; the recipient is the target URL.

    When a secret is configured the body is signed with HMAC-SHA256 and sent
    as ``X-Webhook-Signature: sha256=<hex>``.
    """

    def __init__(self, secret=None, timeout=DEFAULT_TIMEOUT):
        self.secret = secret
        self.timeout = timeout

    def sign(self, body):
        return hmac.new(self.secret.encode(), body.encode(), hashlib.sha256).hexdigest()

    def send(self, recipient, message):
        payload = {
            "event": f"alert.{message.event_kind}",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "data": message.payload,
        }
        body = json.dumps(payload)
        headers = {"User-Agent": "OpsMonitor-Webhook/1.0"}
        if self.secret:
            headers["X-Webhook-Signature"] = f"sha256={self.sign(body)}"
        return _post_json(recipient, payload, self.timeout, headers=headers, body=body)


class SmsChannel:
    """SMS through an HTTP gateway; the recipient is a phone number."""

    MAX_LENGTH = 160

    def __init__(self, gateway_url, api_key="", timeout=DEFAULT_TIMEOUT):
        self.gateway_url = gateway_url
        self.api_key = api_key
        self.timeout = timeout

    def send(self, recipient, message):
        if not self.gateway_url:
            raise DispatchError("SMS gateway_url not configured", recipient=recipient)
        text = f"{message.subject}: {message.body}"[: self.MAX_LENGTH]
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else None
        return _post_json(self.gateway_url, {"to": recipient, "message": text}, self.timeout, headers=headers)


class PagerDutyChannel:
    """PagerDuty Events API v2; the recipient is a routing key."""

    EVENTS_URL = "https://events.pagerduty.com/v2/enqueue"
    SEVERITY_MAP = {"critical": "critical", "high": "error", "medium": "warning", "low": "info"}

    def __init__(self, events_url=None, timeout=DEFAULT_TIMEOUT):
        self.events_url = events_url or self.EVENTS_URL
        self.timeout = timeout

    def send(self, recipient, message):
        action = "resolve" if message.event_kind == "resolved" else "trigger"
        payload = {
            "routing_key": recipient,
            "event_action": action,
            "dedup_key": message.payload.get("alert_id"),
            "payload": {
                "summary": message.subject,
                "severity": self.SEVERITY_MAP.get(message.severity, "warning"),
                "source": "opsmonitor",
                "custom_details": message.payload,
            },
        }
        return _post_json(self.events_url, payload, self.timeout)


def build_channels(config):
    """Create the transport registry described by the ``notifications`` config."""
    from notifications.email_sender import EmailSender

    notif = config.get("notifications", {})
    timeout = notif.get("send_timeout_seconds", DEFAULT_TIMEOUT)
    channels = {
        ChannelType.CONSOLE: ConsoleChannel(),
        ChannelType.FILE: FileChannel(notif.get("file", {}).get("path", "data/notifications.jsonl")),
        ChannelType.WEBHOOK: WebhookChannel(notif.get("webhook", {}).get("secret"), timeout=timeout),
        ChannelType.PAGERDUTY: PagerDutyChannel(notif.get("pagerduty", {}).get("events_url"), timeout=timeout),
    }
    if notif.get("email", {}).get("enabled", False):
        channels[ChannelType.EMAIL] = EmailChannel(EmailSender(config, timeout=timeout))
    slack_url = notif.get("slack", {}).get("webhook_url")
    if slack_url:
        channels[ChannelType.SLACK] = SlackChannel(slack_url, timeout=timeout)
    sms = notif.get("sms", {})
    if sms.get("gateway_url"):
        channels[ChannelType.SMS] = SmsChannel(sms["gateway_url"], sms.get("api_key", ""), timeout=timeout)
    return channels
