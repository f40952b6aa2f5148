"""
Email Delivery for overutilization alerts.
"""

import asyncio

import sendgrid
from sendgrid.helpers.mail import Mail

from core.config import Settings
from db.models import AlertEvent


def render_alert_email(alert: AlertEvent) -> tuple[str, str]:
    """Return (subject, html_content) for an alert."""
    location = alert.location or "unknown location"
    subject = f"SlotOps Alert: machine {alert.machine_id} at {alert.utilization:.1f}% utilization"
    created = alert.created_at.isoformat() if alert.created_at else ""

    html_content = f"""
    <div style="font-family: Inter, sans-serif; max-width: 600px; margin: 0 auto;">
      <div style="background: #1e1b4b; color: white; padding: 24px; border-radius: 12px 12px 0 0;">
        <h1 style="margin: 0; font-size: 20px;">SlotOps Alert</h1>
      </div>
      <div style="background: #f8fafc; padding: 24px; border: 1px solid #e2e8f0;">
        <div style="background: #fef2f2; border-left: 4px solid #dc2626;
                    padding: 16px; border-radius: 0 8px 8px 0; margin-bottom: 16px;">
          <p style="margin: 0; font-weight: 600; color: #1e293b;">
            CRITICAL - Machine overutilization
          </p>
        </div>
        <p style="color: #334155; line-height: 1.6;">
          Machine <strong>{alert.machine_id}</strong> reported
          {alert.utilization:.2f}% utilization.
        </p>
        <p style="color: #64748b;"><strong>Location:</strong> {location}</p>
        <p style="color: #64748b;"><strong>Detected:</strong> {created} UTC</p>
      </div>
    </div>
    """
    return subject, html_content


async def send_alert_email(settings: Settings, to_emails: list[str], alert: AlertEvent) -> bool:
    """
    Send an alert notification email via SendGrid.

    Returns True if SendGrid accepted the message. Transport errors
    propagate to the caller.
    """
    if not to_emails:
        return False

    subject, html_content = render_alert_email(alert)
    sg = sendgrid.SendGridAPIClient(api_key=settings.sendgrid_api_key)
    email = Mail(
        from_email=settings.alert_from_email,
        to_emails=to_emails,
        subject=subject,
        html_content=html_content,
    )
    # sendgrid's client is blocking
    response = await asyncio.to_thread(sg.send, email)
    return response.status_code in (200, 201, 202)
