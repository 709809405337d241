# Customer-facing booking emails
import logging
from collections import deque
from typing import Dict

import resend

logger = logging.getLogger(__name__)

# Dry-run sends kept for inspection, oldest dropped first
OUTBOX_SIZE = 100


class EmailService:
    """
    Centralized email service using Resend
    """

    def __init__(self):
        self.disabled = True
        self.from_email = "test@example.com"
        self.booking_base_url = "http://localhost:3000"
        self.outbox = deque(maxlen=OUTBOX_SIZE)

    def init_app(self, app):
        """Configure Resend from the app config; no key means dry-run mode"""
        api_key = app.config.get("RESEND_API_KEY")
        self.from_email = app.config.get("RESEND_FROM_EMAIL", self.from_email)
        self.booking_base_url = app.config.get(
            "PUBLIC_BOOKING_BASE_URL", self.booking_base_url
        )
        if app.config.get("TESTING") or not api_key:
            self.disabled = True
            logger.warning("EmailService running in dry-run mode, emails are not sent")
            return
        resend.api_key = api_key
        self.disabled = False

    def _send(self, to_email, subject, html) -> Dict:
        if not to_email:
            return {"success": False, "error": "No recipient email"}
        if self.disabled:
            self.outbox.append({"to": to_email, "subject": subject})
            logger.info("Email (dry-run) to %s: %s", to_email, subject)
            return {"success": True, "message": "Email skipped (dry-run)"}
        try:
            params = {
                "from": self.from_email,
                "to": [to_email],
                "subject": subject,
                "html": html,
            }
            email_response = resend.Emails.send(params)
            return {
                "success": True,
                "message": "Email sent successfully",
                "email_id": email_response.get("id"),
            }
        except Exception as e:
            logger.error("Failed to send email to %s: %s", to_email, e)
            return {"success": False, "error": str(e)}

    def send_booking_confirmation(
        self,
        to_email,
        customer_name,
        business_name,
        service_name,
        appointment_date,
        appointment_time,
        staff_name,
        manage_url=None,
        confirmation_message=None,
    ):
        """
        Send booking confirmation email right after an online booking
        """
        manage_block = ""
        if manage_url:
            if manage_url.startswith("/"):
                manage_url = self.booking_base_url.rstrip("/") + manage_url
            manage_block = f"""
                <p style="margin: 24px 0;">
                    <a href="{manage_url}" style="padding: 12px 28px; background: #f2421b; color: #ffffff; text-decoration: none; border-radius: 8px;">
                        Manage your booking
                    </a>
                </p>"""
        html = f"""
        <html>
            <body style="font-family: Arial, sans-serif; color: #2d3748;">
                <h2>Appointment Confirmed</h2>
                <p>Hi <strong>{customer_name}</strong>,</p>
                <p>Your appointment at <strong>{business_name}</strong> is booked.</p>
                <table cellpadding="6">
                    <tr><td><strong>Date</strong></td><td>{appointment_date}</td></tr>
                    <tr><td><strong>Time</strong></td><td>{appointment_time}</td></tr>
                    <tr><td><strong>Service</strong></td><td>{service_name}</td></tr>
                    <tr><td><strong>With</strong></td><td>{staff_name}</td></tr>
                </table>
                <p>{confirmation_message or ""}</p>
                {manage_block}
            </body>
        </html>
        """
        return self._send(to_email, f"Booking confirmed - {business_name}", html)

    def send_appointment_reminder(
        self,
        to_email,
        customer_name,
        business_name,
        service_name,
        appointment_date,
        appointment_time,
        hours_until,
    ):
        """
        Reminder sent ahead of the appointment (24h, 2h or 30m)
        """
        html = f"""
        <html>
            <body style="font-family: Arial, sans-serif; color: #2d3748;">
                <h2>Appointment Reminder</h2>
                <p>Hi <strong>{customer_name}</strong>,</p>
                <p>This is a reminder that your <strong>{service_name}</strong> appointment
                at <strong>{business_name}</strong> is coming up in {hours_until}.</p>
                <p><strong>{appointment_date}</strong> at <strong>{appointment_time}</strong></p>
            </body>
        </html>
        """
        return self._send(to_email, f"Reminder: your appointment at {business_name}", html)

    def send_cancellation_notification(
        self,
        to_email,
        customer_name,
        business_name,
        service_name,
        appointment_date,
        appointment_time,
        reason=None,
    ):
        html = f"""
        <html>
            <body style="font-family: Arial, sans-serif; color: #2d3748;">
                <h2>Appointment Cancelled</h2>
                <p>Hi <strong>{customer_name}</strong>,</p>
                <p>Your <strong>{service_name}</strong> appointment at
                <strong>{business_name}</strong> on {appointment_date} at {appointment_time}
                has been cancelled.</p>
                <p>{reason or ""}</p>
            </body>
        </html>
        """
        return self._send(to_email, f"Appointment cancelled - {business_name}", html)


email_service = EmailService()
