import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from app.config import Settings, settings as default_settings

logger = logging.getLogger(__name__)


def get_smtp_config(config: Settings | None = None) -> dict:
    config = config or default_settings
    return {
        "host": config.smtp_host,
        "port": config.smtp_port,
        "username": config.smtp_username,
        "password": config.smtp_password,
        "use_tls": config.smtp_use_tls,
        "use_ssl": config.smtp_use_ssl,
        "timeout": config.smtp_timeout_seconds,
        "from_email": config.smtp_from_email,
        "from_name": config.smtp_from_name,
    }


def _create_smtp_client(host: str, port: int, use_ssl: bool, timeout: float | None = None):
    if use_ssl:
        if timeout is None:
            return smtplib.SMTP_SSL(host, port)
        return smtplib.SMTP_SSL(host, port, timeout=timeout)
    if timeout is None:
        return smtplib.SMTP(host, port)
    return smtplib.SMTP(host, port, timeout=timeout)


def send_email(
    to_email: str,
    subject: str,
    body_html: str,
    body_text: str | None = None,
    config: dict | None = None,
) -> bool:
    """
    Send an email via SMTP.

    Args:
        to_email: Recipient email address
        subject: Email subject
        body_html: HTML body content
        body_text: Plain text body (optional)
        config: SMTP config dict (defaults to application settings)

    Returns:
        True if email was sent successfully, False otherwise
    """
    config = config or get_smtp_config()

    msg = MIMEMultipart("alternative")
    msg["Subject"] = subject
    msg["From"] = f"{config['from_name']} <{config['from_email']}>"
    msg["To"] = to_email

    if body_text:
        msg.attach(MIMEText(body_text, "plain"))
    msg.attach(MIMEText(body_html, "html"))

    host = str(config.get("host") or "")
    if not host:
        logger.warning("SMTP host is not configured; email to %s not sent", to_email)
        return False
    try:
        # Leaving the block sends QUIT and closes the socket, also on errors.
        with _create_smtp_client(
            host,
            int(config.get("port") or 587),
            bool(config.get("use_ssl")),
            config.get("timeout"),
        ) as server:
            if config.get("use_tls") and not config.get("use_ssl"):
                server.starttls()

            username = config.get("username")
            password = config.get("password")
            if username and password:
                server.login(username, password)

            server.sendmail(config["from_email"], [to_email], msg.as_string())
        return True
    except smtplib.SMTPAuthenticationError as exc:
        logger.error("SMTP authentication failed for %s: %s", to_email, exc)
        return False
    except (smtplib.SMTPException, OSError) as exc:
        logger.error("Failed to send email to %s: %s", to_email, exc)
        return False
