"""
Performance Indicator Platform
Email Service.

Provides email sending capabilities with template support.
When SMTP is not configured, emails are logged but not sent (dev/test mode).

Uses:
    - Flask-Mail compatible config (MAIL_SERVER, MAIL_PORT, etc.)
    - Falls back to logging-only mode when SMTP is not configured
    - All emails are recorded in EmailLog for audit

Configuration (env vars):
    MAIL_SERVER     SMTP host (default: None → log-only mode)
    MAIL_PORT       SMTP port (default: 587)
    MAIL_USE_TLS    Use TLS (default: true)
    MAIL_USERNAME   SMTP username
    MAIL_PASSWORD   SMTP password
    MAIL_DEFAULT_SENDER  Default from address
"""

from __future__ import annotations

import logging
import smtplib
from datetime import datetime, timezone
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any

from flask import current_app
from markupsafe import escape

from app.models import db
from app.models.scheduling import EmailLog

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
#  Email Templates
# ═══════════════════════════════════════════════════════════════════════════

_LAYOUT = """
<div style="background-color: #f8f9fa; padding: 40px 20px; font-family: 'Segoe UI', Arial, sans-serif;">
    <div style="max-width: 600px; margin: 0 auto; background: white; border-radius: 16px;
                overflow: hidden; border: 1px solid #e5e7eb;">
        <div style="background-color: {header_color}; padding: 30px; text-align: center;">
            <h2 style="color: white; margin: 0; font-size: 20px;">{heading}</h2>
        </div>
        <div style="padding: 40px; color: #333333;">
            {body}
            <div style="text-align: center; margin-top: 30px;">
                <a href="{app_url}" style="background-color: #1a3a32; color: white; padding: 14px 28px;
                   text-decoration: none; border-radius: 8px; font-weight: bold; display: inline-block;">
                    {cta}
                </a>
            </div>
        </div>
        <div style="background-color: #f8fafc; padding: 20px; text-align: center; border-top: 1px solid #f1f5f9;">
            <p style="font-size: 11px; color: #94a3b8; margin: 0; text-transform: uppercase;">
                Performance Indicator Platform
            </p>
        </div>
    </div>
</div>
"""

_TEMPLATES: dict[str, dict[str, str]] = {
    "indicator_assigned": {
        "subject": "[OFFICIAL] New Performance Indicator Assigned: {indicator_title}",
        "heading": "New Indicator Assigned",
        "header_color": "#1a3a32",
        "cta": "ACCESS DASHBOARD",
        "body": """
            <p style="margin-top: 0;">You have been assigned a new performance indicator:</p>
            <div style="background: #f1f5f9; padding: 20px; border-radius: 12px; border-left: 4px solid #c2a336;">
                <h3 style="margin: 0 0 10px 0; color: #1a3a32;">{indicator_title}</h3>
                <p style="margin: 0; font-size: 14px; color: #64748b;">
                    <strong>Assigned By:</strong> {assigned_by}<br />
                    <strong>Deadline:</strong> {due_date}
                </p>
            </div>
            <p style="font-size: 14px; color: #64748b;">
                Please ensure all evidence is uploaded prior to the deadline for ratification.
            </p>
        """,
        "text": "OFFICIAL ASSIGNMENT: {indicator_title}. Assigned by: {assigned_by}. "
                "Due: {due_date}. Access: {app_url}",
    },
    "indicator_rejected": {
        "subject": "[ACTION REQUIRED] Revision Needed: {indicator_title}",
        "heading": "Revision Required",
        "header_color": "#be123c",
        "cta": "RE-SUBMIT EVIDENCE",
        "body": """
            <p>Your submission for <strong>{indicator_title}</strong> requires updates
               based on the following reviewer notes:</p>
            <div style="background: #fff1f2; border-left: 4px solid #be123c; padding: 20px;
                        font-style: italic; color: #9f1239;">"{remark}"</div>
        """,
        "text": "REVISION REQUIRED: {indicator_title}. Notes: {remark}. Access: {app_url}",
    },
    "indicator_approved": {
        "subject": "[SUCCESS] Indicator Approved: {indicator_title}",
        "heading": "Indicator Approved",
        "header_color": "#06402b",
        "cta": "VIEW INDICATOR",
        "body": """
            <p>Your submission for <strong>{indicator_title}</strong> has been reviewed
               and {outcome}.</p>
        """,
        "text": 'SUCCESS: Your submission for "{indicator_title}" has been {outcome}. '
                "Access it here: {app_url}",
    },
    "indicator_overdue": {
        "subject": "Overdue Task: {indicator_title}",
        "heading": "Overdue Task",
        "header_color": "#1e3a2b",
        "cta": "VIEW TASK DETAILS",
        "body": """
            <p style="margin-top: 0;">Dear <strong>{user_name}</strong>,</p>
            <p>The following task is overdue:</p>
            <div style="background: #f1f5f9; padding: 20px; border-radius: 12px; border-left: 4px solid #efbf04;">
                <p style="margin: 0; font-weight: 700; color: #1e3a2b;">{indicator_title}</p>
                <p style="margin: 5px 0 0 0; font-size: 13px; color: #64748b;">Deadline: {due_date}</p>
            </div>
            <p>Kindly let us know the challenges you are facing in completing the task
               and any support you may need.</p>
        """,
        "text": 'Dear {user_name}, the task "{indicator_title}" is overdue (deadline {due_date}). '
                "Access: {app_url}",
    },
}


class EmailService:
    """
    Email sending service with template support.

    In development/test mode (no MAIL_SERVER configured), emails are
    logged to the database but not actually sent via SMTP.
    """

    @staticmethod
    def is_configured() -> bool:
        """Check if SMTP is configured."""
        return bool(current_app.config.get("MAIL_SERVER"))

    @staticmethod
    def get_template(template_name: str) -> dict[str, str] | None:
        """Get an email template by name."""
        return _TEMPLATES.get(template_name)

    @classmethod
    def render(cls, template_name: str, context: dict[str, Any]) -> tuple[str, str, str] | None:
        """Return ``(subject, html, text)`` for a named template, or None.

        Context values are HTML-escaped in the HTML body only.
        """
        template = cls.get_template(template_name)
        if not template:
            return None
        ctx = _SafeDict(context)
        ctx.setdefault("app_url", current_app.config.get("FRONTEND_URL", ""))
        html_ctx = _SafeDict({key: escape(value) for key, value in ctx.items()})
        subject = template["subject"].format_map(ctx)
        html_body = _LAYOUT.format_map(_SafeDict(
            header_color=template["header_color"],
            heading=template["heading"],
            cta=template["cta"],
            app_url=html_ctx["app_url"],
            body=template["body"].format_map(html_ctx),
        ))
        text_body = template["text"].format_map(ctx)
        return subject, html_body, text_body

    @classmethod
    def send(
        cls,
        *,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: str | None = None,
        to_name: str | None = None,
        template_name: str | None = None,
        kind: str = "system",
        indicator_id: int | None = None,
    ) -> EmailLog:
        """
        Send an email and log it.

        If SMTP is not configured, the email is logged with status='sent'
        (in dev mode) to simulate sending without actual delivery.

        Returns:
            The EmailLog record for this email.
        """
        log = EmailLog(
            recipient_email=to_email,
            recipient_name=to_name,
            subject=subject,
            template_name=template_name,
            kind=kind,
            status="queued",
            indicator_id=indicator_id,
        )
        db.session.add(log)
        db.session.flush()

        if not cls.is_configured():
            # Dev/test mode — log only
            log.status = "sent"
            log.sent_at = datetime.now(timezone.utc)
            logger.info(
                "Email (dev mode): to=%s subject='%s' template=%s",
                to_email, subject, template_name,
            )
            db.session.commit()
            return log

        try:
            cls._send_smtp(to_email=to_email, to_name=to_name, subject=subject,
                           html_body=html_body, text_body=text_body)
            log.status = "sent"
            log.sent_at = datetime.now(timezone.utc)
            logger.info("Email sent: to=%s subject='%s'", to_email, subject)
        except (smtplib.SMTPException, OSError) as exc:
            log.status = "failed"
            log.error_message = str(exc)[:1000]
            logger.error("Email failed: to=%s error=%s", to_email, exc)

        db.session.commit()
        return log

    @classmethod
    def send_from_template(
        cls,
        *,
        to_email: str,
        template_name: str,
        context: dict[str, Any],
        to_name: str | None = None,
        kind: str = "system",
        indicator_id: int | None = None,
    ) -> EmailLog | None:
        """
        Send an email using a named template.

        Template variables are interpolated from the context dict.
        """
        rendered = cls.render(template_name, context)
        if rendered is None:
            logger.warning("Email template not found: %s", template_name)
            return None
        subject, html_body, text_body = rendered

        return cls.send(
            to_email=to_email,
            to_name=to_name,
            subject=subject,
            html_body=html_body,
            text_body=text_body,
            template_name=template_name,
            kind=kind,
            indicator_id=indicator_id,
        )

    @staticmethod
    def _send_smtp(*, to_email: str, to_name: str | None, subject: str,
                   html_body: str, text_body: str | None) -> None:
        """Actually send via SMTP."""
        cfg = current_app.config
        server = cfg.get("MAIL_SERVER")
        port = cfg.get("MAIL_PORT", 587)
        use_tls = cfg.get("MAIL_USE_TLS", True)
        username = cfg.get("MAIL_USERNAME")
        password = cfg.get("MAIL_PASSWORD")
        sender = cfg.get("MAIL_DEFAULT_SENDER") or f"noreply@{server}"

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = sender
        msg["To"] = f"{to_name} <{to_email}>" if to_name else to_email
        if text_body:
            msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))

        with smtplib.SMTP(server, port, timeout=30) as smtp:
            if use_tls:
                smtp.starttls()
            if username and password:
                smtp.login(username, password)
            smtp.send_message(msg)


class _SafeDict(dict):
    """Dict that returns {key} for missing keys instead of raising."""

    def __missing__(self, key):
        return f"{{{key}}}"


def get_mailer():
    return current_app.extensions["mailer"]
