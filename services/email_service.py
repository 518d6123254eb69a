"""Centralized transactional email delivery with retry logic."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from email.utils import parseaddr

from flask import current_app, render_template
from flask_mail import Mail, Message

mail = Mail()
logger = logging.getLogger(__name__)


@dataclass
class EmailPayload:
    to_email: str
    subject: str
    template_name: str
    context: dict


def init_mail(app):
    mail.init_app(app)


def is_valid_recipient(email: str) -> bool:
    _, parsed = parseaddr(email or "")
    return bool(parsed and "@" in parsed)


def send_templated_email(payload: EmailPayload, *, retries: int | None = None, backoff_s: float = 1.5) -> bool:
    if not is_valid_recipient(payload.to_email):
        logger.warning("Skipping email; invalid recipient: %s", payload.to_email)
        return False

    if retries is None:
        retries = current_app.config.get("MAIL_MAX_RETRIES", 3)

    html_body = render_template(f"emails/{payload.template_name}.html", **payload.context)
    text_body = render_template(f"emails/{payload.template_name}.txt", **payload.context)

    msg = Message(
        subject=payload.subject,
        recipients=[payload.to_email],
        html=html_body,
        body=text_body,
    )

    for attempt in range(1, max(1, retries) + 1):
        try:
            mail.send(msg)
            logger.info("Email sent: subject=%s to=%s", payload.subject, payload.to_email)
            return True
        except Exception as exc:  # noqa: BLE001
            logger.exception("Email send failed on attempt %s: %s", attempt, exc)
            if attempt < retries:
                time.sleep(backoff_s * attempt)

    return False


def send_workspace_invite_email(to_email: str, workspace_name: str, inviter_name: str, role: str, signup_link: str) -> bool:
    return send_templated_email(
        EmailPayload(
            to_email=to_email,
            subject=f"You've been invited to {workspace_name}",
            template_name="invite",
            context={
                "workspace_name": workspace_name,
                "inviter_name": inviter_name,
                "role": role,
                "signup_link": signup_link,
            },
        )
    )
