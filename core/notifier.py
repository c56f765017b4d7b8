"""
notifier.py -- Outbound delivery of one-time codes.

SMS goes through an HTTP gateway (SMS_GATEWAY_URL) that accepts a JSON body
{"to": ..., "message": ...} with a Bearer token. Email goes through SMTP.

When a channel is not configured and DEBUG is on, the message is written to
the log instead so local signups work without a gateway. Outside debug mode an
unconfigured channel counts as a delivery failure.

Both senders return True on success, False on failure. They never raise.
"""

import logging
import smtplib
from email.mime.text import MIMEText

import requests

from core.config import get_settings

logger = logging.getLogger("idecs.notifier")

# Module-level session shared across all gateway calls for connection pooling.
_session = requests.Session()
_session.max_redirects = 3


def send_sms(phone: str, message: str) -> bool:
    """Deliver a text message to phone via the configured SMS gateway."""
    cfg = get_settings()
    if not cfg.sms_gateway_url:
        if cfg.debug:
            logger.info("SMS gateway not configured, message to %s: %s", phone, message)
            return True
        logger.error("SMS gateway not configured; cannot deliver to %s", phone)
        return False

    headers = {}
    if cfg.sms_gateway_token:
        headers["Authorization"] = f"Bearer {cfg.sms_gateway_token}"
    try:
        resp = _session.post(
            cfg.sms_gateway_url,
            json={"to": phone, "message": message},
            headers=headers,
            timeout=10,
        )
        resp.raise_for_status()
        return True
    except requests.RequestException as e:
        logger.warning("SMS delivery failed for %s: %s", phone, e)
        return False


def send_email(to_email: str, subject: str, body: str) -> bool:
    """Deliver a plain-text email via SMTP."""
    cfg = get_settings()
    if not cfg.smtp_host:
        if cfg.debug:
            logger.info("SMTP not configured, email to %s (%s): %s", to_email, subject, body)
            return True
        logger.error("SMTP not configured; cannot deliver to %s", to_email)
        return False

    msg = MIMEText(body, "plain", "utf-8")
    msg["Subject"] = subject
    msg["From"] = cfg.mail_from
    msg["To"] = to_email
    try:
        with smtplib.SMTP(cfg.smtp_host, cfg.smtp_port, timeout=cfg.smtp_timeout) as server:
            server.starttls()
            if cfg.smtp_user and cfg.smtp_password:
                server.login(cfg.smtp_user, cfg.smtp_password)
            server.sendmail(cfg.mail_from, [to_email], msg.as_string())
        return True
    except (smtplib.SMTPException, OSError) as e:
        logger.warning("Email delivery failed for %s: %s", to_email, e)
        return False
