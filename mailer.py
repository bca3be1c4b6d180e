# mailer.py
# Outgoing email: template rendering from the email_templates table and SMTP delivery.

import logging
import re
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from flask import current_app

from database import get_db_connection

logger = logging.getLogger(__name__)

PLACEHOLDER = re.compile(r"\{\{\s*(\w+)\s*\}\}")


def substitute(text, context):
    """Replaces {{name}} placeholders; unknown names are left as they are."""
    def replace(match):
        key = match.group(1)
        return str(context[key]) if key in context else match.group(0)
    return PLACEHOLDER.sub(replace, text)


def render_template(name, context, default_subject, default_body):
    """Returns (subject, html) from the active template `name`, or from the defaults."""
    conn = get_db_connection()
    template = conn.execute(
        "SELECT subject, body FROM email_templates WHERE name = ? AND is_active = 1", (name,)
    ).fetchone()
    conn.close()
    if template:
        subject, body = template["subject"], template["body"]
    else:
        subject, body = default_subject, default_body
    return substitute(subject, context), substitute(body, context)


def send_email(to, subject, html):
    """Sends an HTML email. Returns False when mail is not configured or delivery fails."""
    config = current_app.config
    if not config.get("MAIL_SERVER"):
        logger.info("Mail server not configured; skipping email '%s' to %s", subject, to)
        return False

    msg = MIMEMultipart('alternative')
    msg['Subject'] = subject
    msg['From'] = config.get("MAIL_DEFAULT_SENDER") or config.get("MAIL_USERNAME")
    msg['To'] = to
    msg.attach(MIMEText(html, 'html'))

    try:
        server = smtplib.SMTP(config["MAIL_SERVER"], config.get("MAIL_PORT", 587), timeout=30)
        try:
            if config.get("MAIL_USE_TLS", True):
                server.starttls()
            if config.get("MAIL_USERNAME"):
                server.login(config["MAIL_USERNAME"], config.get("MAIL_PASSWORD") or "")
            server.send_message(msg)
        finally:
            server.quit()
    except (smtplib.SMTPException, OSError):
        logger.exception("Error sending email '%s' to %s", subject, to)
        return False

    logger.info("Email '%s' sent to %s", subject, to)
    return True


def send_template_email(to, name, context, default_subject, default_body):
    subject, html = render_template(name, context, default_subject, default_body)
    return send_email(to, subject, html)
