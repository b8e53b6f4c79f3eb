# Overview: Transactional email delivery through the Resend HTTP API.

from __future__ import annotations

import html

import httpx
from flask import current_app

from .errors import ExternalServiceFailure


RESEND_URL = "https://api.resend.com/emails"

# name -> (subject, body); both are str.format templates
TEMPLATES: dict[str, tuple[str, str]] = {
    "verification": (
        "Verify your ToolUnity email",
        "<p>Hi {username},</p><p>Confirm your email address: <a href=\"{link}\">{link}</a></p>"
        "<p>This link expires in 24 hours.</p>",
    ),
    "password_reset": (
        "Reset your ToolUnity password",
        "<p>Hi {username},</p><p>Choose a new password: <a href=\"{link}\">{link}</a></p>"
        "<p>This link expires in {minutes} minutes. If you did not ask for it, ignore this email.</p>",
    ),
    "rental_requested": (
        "New rental request for {tool_name}",
        "<p>Someone wants to rent <strong>{tool_name}</strong> from {start_date} to {end_date}.</p>"
        "<p>You'll earn £{owner_payout}. Respond within {timeout_hours} hours or the request "
        "is declined automatically.</p><p><a href=\"{link}\">View request</a></p>",
    ),
    "rental_accepted": (
        "Your rental request for {tool_name} has been accepted",
        "<p>The owner accepted your request to rent <strong>{tool_name}</strong> "
        "from {start_date} to {end_date}.</p><p>Owner contact: {owner_email}</p>",
    ),
    "rental_rejected": (
        "Rental request for {tool_name} was declined",
        "<p>Your request to rent <strong>{tool_name}</strong> was declined.</p>"
        "<p>Reason: {reason}</p><p>A full refund of £{total} has been issued.</p>",
    ),
    "rental_expired": (
        "Your rental request for {tool_name} has expired",
        "<p>The owner did not respond in time. A full refund of £{total} has been issued.</p>",
    ),
    "deposit_claimed": (
        "Damage reported for {tool_name} - deposit under review",
        "<p>The owner reported an issue with <strong>{tool_name}</strong>:</p>"
        "<blockquote>{reason}</blockquote><p>Your £{deposit} deposit is held while we review.</p>",
    ),
    "deposit_released": (
        "Your £{deposit} deposit has been refunded",
        "<p>No issues were reported for <strong>{tool_name}</strong>, so your deposit is on its way back.</p>",
    ),
    "deposit_refunded": (
        "Your £{deposit} deposit for {tool_name} has been refunded",
        "<p>We reviewed the claim and refunded your deposit.</p><p>{admin_notes}</p>",
    ),
    "deposit_forfeited": (
        "Deposit decision for {tool_name}",
        "<p>We reviewed the claim and the £{deposit} deposit has been paid to the owner.</p><p>{admin_notes}</p>",
    ),
}


def pounds(cents: int | None) -> str:
    return f"{(cents or 0) / 100:.2f}"


class Mailer:
    def __init__(self, app=None):
        self.api_key = ""
        self.sender = ""
        self.timeout = 10.0
        if app is not None:
            self.init_app(app)

    def init_app(self, app) -> None:
        self.api_key = app.config.get("RESEND_API_KEY", "")
        self.sender = app.config.get("MAIL_FROM", "")
        self.timeout = float(app.config.get("MAIL_TIMEOUT_SECONDS", 10))
        app.extensions["mailer"] = self

    def render(self, template: str, **context) -> tuple[str, str]:
        if template not in TEMPLATES:
            raise KeyError(f"Unknown email template '{template}'")
        subject, body = TEMPLATES[template]
        # Member-supplied text (tool names, claim reasons) lands in HTML
        escaped = {key: html.escape(str(value)) for key, value in context.items()}
        return subject.format(**context), body.format(**escaped)

    def send(self, template: str, to: str, **context) -> str | None:
        """
        Send a templated email. Returns the provider message id.

        Without an API key the message is logged and dropped (development).
        """
        subject, body = self.render(template, **context)

        if not self.api_key:
            current_app.logger.info("Email '%s' to %s not sent: RESEND_API_KEY not configured", template, to)
            return None

        try:
            response = httpx.post(
                RESEND_URL,
                headers={"Authorization": f"Bearer {self.api_key}"},
                json={"from": self.sender, "to": to, "subject": subject, "html": body},
                timeout=self.timeout,
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise ExternalServiceFailure(f"Email delivery failed: {exc}", service="resend") from exc

        return response.json().get("id")


def notify(template: str, to: str | None, **context) -> bool:
    """
    Best-effort notification for state transitions.

    A mail failure never undoes the transition that triggered it.
    """
    if not to:
        return False
    mailer = current_app.extensions["mailer"]
    try:
        mailer.send(template, to, **context)
    except ExternalServiceFailure as exc:
        current_app.logger.warning("Notification '%s' to %s failed: %s", template, to, exc)
        return False
    return True
