"""
SMTP email sender for alert notifications.

Handles:
  - SMTP connection with TLS
  - MIME multipart construction (HTML + plaintext fallback)
  - Credential management (env vars > config file)
"""
import os
import ssl
import smtplib
import logging
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr, formatdate
from html import escape

logger = logging.getLogger("opsmonitor.notifications.email_sender")

_SEVERITY_COLORS = {
    "critical": "#FF1744",
    "high": "#FF9100",
    "medium": "#FFC107",
    "low": "#2196F3",
}


class EmailSender:
    """
    SMTP email sender.

    Credential resolution order:
      1. Environment variables: OPSMON_SMTP_USER, OPSMON_SMTP_PASS
      2. Config file: notifications.email.smtp_username / smtp_password
    """

    def __init__(self, config: dict, timeout=10):
        email_config = config.get("notifications", {}).get("email", {})
        self.smtp_host = email_config.get("smtp_host", "localhost")
        self.smtp_port = email_config.get("smtp_port", 587)
        self.use_tls = email_config.get("use_tls", True)
        self.from_address = email_config.get("from_address", "")
        self.from_name = email_config.get("from_name", "Ops Monitor")
        self.timeout = timeout

        self.username = os.environ.get("OPSMON_SMTP_USER", email_config.get("smtp_username", ""))
        self.password = os.environ.get("OPSMON_SMTP_PASS", email_config.get("smtp_password", ""))

    def is_configured(self) -> bool:
        """Check if all required SMTP fields are present."""
        return all([self.smtp_host, self.from_address])

    def build_message(self, to_address, subject, body, severity="medium") -> MIMEMultipart:
        color = _SEVERITY_COLORS.get(severity, "#FFC107")
        html = f"""
        <div style="font-family: system-ui, sans-serif; max-width: 560px; margin: 0 auto; padding: 20px;">
            <div style="padding: 16px; border-left: 4px solid {color}; background: #F5F6FA;">
                <h3 style="margin-top: 0; color: {color};">{escape(subject)}</h3>
                <p>{escape(body)}</p>
            </div>
            <p style="color: #636E72; font-size: 12px;">Ops Monitor &mdash; automated alert</p>
        </div>
        """
        msg = MIMEMultipart("alternative")
        msg["From"] = formataddr((self.from_name, self.from_address))
        msg["To"] = to_address
        msg["Subject"] = subject
        msg["Date"] = formatdate(localtime=True)
        msg.attach(MIMEText(f"{subject}\n\n{body}", "plain", "utf-8"))
        msg.attach(MIMEText(html, "html", "utf-8"))
        return msg

    def send_alert(self, to_address, subject, body, severity="medium") -> bool:
        if not self.is_configured():
            logger.warning("Email not configured - skipping alert email")
            return False
        return self._send(self.build_message(to_address, subject, body, severity))

    def test_connection(self) -> dict:
        """Test SMTP connectivity without sending an email."""
        try:
            with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
                server.ehlo()
                if self.use_tls:
                    server.starttls(context=ssl.create_default_context())
                    server.ehlo()
                if self.username:
                    server.login(self.username, self.password)
                return {"status": "ok", "message": "SMTP connection successful"}
        except smtplib.SMTPAuthenticationError as e:
            return {"status": "error", "message": f"Authentication failed: {e}"}
        except (smtplib.SMTPException, OSError) as e:
            return {"status": "error", "message": str(e)}

    def _send(self, msg: MIMEMultipart) -> bool:
        """Send a constructed MIME message. SMTP errors propagate to the caller."""
        with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
            server.ehlo()
            if self.use_tls:
                server.starttls(context=ssl.create_default_context())
                server.ehlo()
            if self.username:
                server.login(self.username, self.password)
            server.send_message(msg)
        logger.info(f"Email sent to {msg['To']}: {msg['Subject']}")
        return True
