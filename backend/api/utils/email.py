from flask import current_app
from flask_mail import Message
from backend.extensions import mail


def send_email(subject, recipients, body, reply_to=None, sender=None):
    """
    Send a plain-text UTF-8 e-mail. Raises whatever the mail transport raises;
    callers decide whether a failure matters.
    """
    if isinstance(recipients, str):
        recipients = [recipients]
    recipients = [r for r in (recipients or []) if r]
    if not recipients:
        raise ValueError("send_email called without recipients")

    msg = Message(
        subject=subject or "",
        recipients=recipients,
        body=body or "",
        sender=sender or current_app.config.get("MAIL_DEFAULT_SENDER"),
        reply_to=reply_to,
    )
    msg.charset = "utf-8"

    mail.send(msg)
    return msg
