import logging
import smtplib
from datetime import date, time
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from app.core.config import settings

logger = logging.getLogger(__name__)


def _send_email_sync(to_email: str, subject: str, html_body: str) -> None:
    """Send email via SMTP (blocking). Use from background task."""
    if not settings.email_enabled:
        logger.debug("Email disabled (SMTP not configured), skipping send")
        return
    msg = MIMEMultipart("alternative")
    msg["Subject"] = subject
    msg["From"] = f"{settings.from_name} <{settings.from_email}>"
    msg["To"] = to_email
    msg.attach(MIMEText(html_body, "html", "utf-8"))
    try:
        with smtplib.SMTP(settings.smtp_host, settings.smtp_port) as server:
            server.starttls()
            server.login(settings.smtp_user, settings.smtp_password)
            server.sendmail(settings.from_email, [to_email], msg.as_string())
        logger.info("Email sent to %s", to_email)
    except Exception as e:
        logger.exception("Failed to send email to %s: %s", to_email, e)


def _html_escape(s: str) -> str:
    return (
        s.replace("&", "&amp;")
        .replace("<", "&lt;")
        .replace(">", "&gt;")
        .replace('"', "&quot;")
    )


def build_session_details_html(
    heading: str,
    greeting: str,
    session_date: date,
    start_time: time,
    end_time: time,
    meeting_link: str | None,
) -> str:
    """HTML body shared by the user and listener notifications."""
    date_str = session_date.strftime("%A, %B %d, %Y")
    time_str = f"{start_time.strftime('%H:%M')} – {end_time.strftime('%H:%M')} (UTC)"
    if meeting_link:
        safe_link = _html_escape(meeting_link)
        link_section = f'<p style="margin:0 0 16px 0;"><a href="{safe_link}">Join the session</a></p>'
    else:
        link_section = '<p style="margin:0 0 16px 0;color:#6b7280;">The meeting link will be sent separately.</p>'
    return f"""
<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>{_html_escape(heading)}</title></head>
<body style="margin:0;padding:24px;font-family:-apple-system,BlinkMacSystemFont,'Segoe UI',Roboto,sans-serif;background-color:#f3f4f6;">
  <div style="max-width:560px;margin:0 auto;background:#ffffff;border-radius:12px;padding:32px;">
    <h1 style="margin:0 0 8px 0;font-size:22px;color:#111827;">{_html_escape(heading)}</h1>
    <p style="margin:0 0 24px 0;font-size:15px;color:#6b7280;">{_html_escape(greeting)}</p>
    <p style="margin:0;font-size:16px;font-weight:600;color:#111827;">{date_str}</p>
    <p style="margin:0 0 24px 0;font-size:16px;color:#111827;">{time_str}</p>
    {link_section}
    <p style="margin:24px 0 0 0;font-size:13px;color:#6b7280;">{_html_escape(settings.site_name)} · {_html_escape(settings.contact_email)}</p>
  </div>
</body>
</html>
"""


def send_booking_confirmation_email(
    to_email: str,
    username: str | None,
    session_date: date,
    start_time: time,
    end_time: time,
    meeting_link: str | None,
) -> None:
    """Compose and send the user's booking confirmation (call from background task)."""
    subject = f"{settings.site_name} – Session Confirmed"
    html = build_session_details_html(
        heading="Session Confirmed",
        greeting=f"Hi {username or 'there'}, your listening session is booked.",
        session_date=session_date,
        start_time=start_time,
        end_time=end_time,
        meeting_link=meeting_link,
    )
    _send_email_sync(to_email, subject, html)


def send_listener_assignment_email(
    to_email: str,
    listener_name: str | None,
    session_date: date,
    start_time: time,
    end_time: time,
    meeting_link: str | None,
) -> None:
    """Tell the assigned listener about a new session (call from background task)."""
    subject = f"{settings.site_name} – New Session Assigned"
    html = build_session_details_html(
        heading="New Session Assigned",
        greeting=f"Hi {listener_name or 'there'}, a new listening session has been booked with you.",
        session_date=session_date,
        start_time=start_time,
        end_time=end_time,
        meeting_link=meeting_link,
    )
    _send_email_sync(to_email, subject, html)
