import html
from typing import Dict, Optional, Tuple

import resend
from flask import current_app


def send_email_via_resend(payload: Dict[str, object], api_key: str) -> Tuple[bool, Optional[str]]:
    configured_api_key = (api_key or "").strip()
    if not configured_api_key:
        return False, "Resend API key is not configured."

    previous_api_key = getattr(resend, "api_key", None)
    resend.api_key = configured_api_key
    try:
        response = resend.Emails.send(payload)
    except Exception as exc:
        return False, str(exc)
    finally:
        resend.api_key = previous_api_key

    if not isinstance(response, dict) or not response.get("id"):
        return False, str(response)

    return True, None


def build_email_html(title: str, paragraphs, action_url: Optional[str] = None, action_label: str = "") -> str:
    body = "".join(
        f'<p style="margin:0 0 18px 0;font-size:15px;line-height:1.7;color:#4a5568;">{html.escape(text)}</p>'
        for text in paragraphs
    )
    button = ""
    if action_url:
        button = (
            f'<p style="text-align:center;margin:28px 0;"><a href="{html.escape(action_url)}" '
            'style="background:#202523;color:#ffffff;text-decoration:none;padding:14px 32px;'
            f'border-radius:8px;font-weight:600;">{html.escape(action_label)}</a></p>'
            f'<p style="font-size:13px;color:#718096;word-break:break-all;">{html.escape(action_url)}</p>'
        )
    return f"""<!DOCTYPE html>
<html lang="en">
  <body style="margin:0;padding:24px;background:#f7fafc;font-family:'Segoe UI',Roboto,sans-serif;color:#202523;">
    <div style="max-width:600px;margin:0 auto;background:#ffffff;border-radius:16px;border:1px solid #e2e8f0;padding:40px;">
      <h1 style="margin:0 0 24px 0;font-size:24px;">{html.escape(title)}</h1>
      {body}
      {button}
      <p style="margin:32px 0 0 0;font-size:13px;color:#718096;">The PX39 Team</p>
    </div>
  </body>
</html>"""


def _send(recipient: str, subject: str, html_body: str, text_body: str, reply_to: Optional[str] = None):
    config = current_app.config
    payload: Dict[str, object] = {
        "from": config["EMAIL_FROM"],
        "to": [recipient],
        "subject": subject,
        "html": html_body,
        "text": text_body,
    }
    if reply_to:
        payload["reply_to"] = reply_to
    return send_email_via_resend(payload, config["RESEND_API_KEY"])


def send_verification_email(recipient: str, token: str):
    link = f"{current_app.config['FRONTEND_URL']}/verify-email?token={token}"
    html_body = build_email_html(
        "Verify your PX39 account",
        [
            "Thanks for signing up. Confirm your email address to activate your account.",
            "The link is valid for one hour.",
        ],
        link,
        "Verify email",
    )
    text_body = f"Verify your PX39 account within one hour: {link}"
    return _send(recipient, "Verify Your PX39 Account", html_body, text_body)


def send_reset_password_email(recipient: str, token: str):
    link = f"{current_app.config['FRONTEND_URL']}/reset-password?token={token}"
    html_body = build_email_html(
        "Reset your password",
        [
            "We received a request to reset your PX39 password.",
            "The link is valid for one hour. Ignore this email if you did not ask for it.",
        ],
        link,
        "Reset password",
    )
    text_body = f"Reset your PX39 password within one hour: {link}"
    return _send(recipient, "Reset Your PX39 Password", html_body, text_body)


def send_magic_link_email(recipient: str, token: str, backend_url: str):
    link = f"{backend_url.rstrip('/')}/auth/magic?token={token}"
    html_body = build_email_html(
        "Your secure login link",
        ["Use the button below to sign in. The link expires in 15 minutes."],
        link,
        "Sign in",
    )
    text_body = f"Sign in to PX39 within 15 minutes: {link}"
    return _send(recipient, "Your Secure PX39 Login Link", html_body, text_body)


def send_inbound_contact_email(name: str, email: str, phone: str, message: str):
    inbox = current_app.config["CONTACT_INBOX_EMAIL"]
    if not inbox:
        return False, "Contact inbox is not configured."
    html_body = build_email_html(
        f"New contact message from {name}",
        [f"From: {name} <{email}>", f"Phone: {phone or '-'}", message],
    )
    text_body = f"From: {name} <{email}>\nPhone: {phone or '-'}\n\n{message}"
    return _send(inbox, f"New contact message from {name}", html_body, text_body, reply_to=email)


def send_contact_auto_reply(recipient: str, name: str, message: Optional[str] = None):
    if message:
        subject = "Reply from PX39 Support"
        paragraphs = [
            f"Hi {name or 'there'},",
            message,
            "If you'd like to continue the conversation, just reply to this email.",
        ]
    else:
        subject = "We've received your message - PX39"
        message = (
            "Thanks for contacting PX39. We've received your message and our team "
            "will reply within 24 hours."
        )
        paragraphs = [f"Hi {name or 'there'},", message]
    html_body = build_email_html(subject, paragraphs)
    return _send(recipient, subject, html_body, message)
