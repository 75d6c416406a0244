"""SendGrid Email Service for TrustWork notification emails"""
import os
from html import escape
from sendgrid import SendGridAPIClient
from sendgrid.helpers.mail import Mail, To
from flask import current_app


# Notification types that map onto each e-mail preference flag
PREFERENCE_FOR_TYPE = {
    'message': 'email_message',
    'payment_released': 'email_payment',
    'milestone_submitted': 'email_milestone',
    'milestone_approved': 'email_milestone',
    'milestone_rejected': 'email_milestone',
    'revision_requested': 'email_milestone',
    'dispute_opened': 'email_dispute',
    'dispute_resolved': 'email_dispute',
    'review_received': 'email_review',
    'application_received': 'email_application',
    'application_accepted': 'email_application',
    'gig_completed': 'email_payment'
}


class EmailService:
    """Service for sending transactional emails via SendGrid"""

    def __init__(self):
        self.api_key = os.environ.get('SENDGRID_API_KEY')
        self.from_email = os.environ.get('SENDGRID_FROM_EMAIL')
        self.base_url = os.environ.get('BASE_URL', 'http://localhost:5000')

    def is_configured(self):
        """Check if SendGrid is properly configured"""
        return bool(self.api_key and self.from_email)

    def wants_email(self, preference, notification_type):
        """Users without a preference row get every email"""
        if preference is None:
            return True
        flag = PREFERENCE_FOR_TYPE.get(notification_type)
        if not flag:
            return True
        return bool(getattr(preference, flag, True))

    def render_notification(self, recipient_name, title, message, link=None):
        """Build the HTML and plain-text bodies for a notification"""
        url = f"{self.base_url}{link}" if link else self.base_url
        html_content = (
            f"<p>Hi {escape(recipient_name or 'there')},</p>"
            f"<h2>{escape(title)}</h2>"
            f"<p>{escape(message or '')}</p>"
            f"<p><a href=\"{escape(url)}\">View on TrustWork</a></p>"
        )
        text_content = f"Hi {recipient_name or 'there'},\n\n{title}\n\n{message or ''}\n\n{url}"
        return html_content, text_content

    def send_email(self, to_email, to_name, subject, html_content, text_content=None):
        """
        Send one email

        Returns:
            tuple: (success: bool, message: str, response_status: int or None)
        """
        if not self.is_configured():
            return False, "SendGrid is not configured. Please add SENDGRID_API_KEY and SENDGRID_FROM_EMAIL.", None

        if not to_email:
            return False, "No recipient specified.", None

        try:
            message = Mail(
                from_email=self.from_email,
                to_emails=To(email=to_email, name=to_name) if to_name else to_email,
                subject=subject,
                plain_text_content=text_content,
                html_content=html_content
            )
            response = SendGridAPIClient(self.api_key).send(message)
        except Exception as e:
            current_app.logger.error(f"Error sending email to {to_email}: {str(e)}")
            return False, f"Failed to send email: {str(e)}", None

        if 200 <= response.status_code < 300:
            return True, "Email sent.", response.status_code

        current_app.logger.warning(f"Non-success status {response.status_code} for {to_email}")
        return False, f"SendGrid returned {response.status_code}", response.status_code

    def send_notification_email(self, user, notification_type, title, message, link=None, preference=None):
        """Email a notification unless SendGrid is off or the user opted out"""
        if not self.is_configured() or not user or not user.email:
            return False, "Email not sent", None
        if not self.wants_email(preference, notification_type):
            return False, "User opted out", None

        html_content, text_content = self.render_notification(
            user.full_name or user.username, title, message, link
        )
        return self.send_email(user.email, user.full_name, f"TrustWork - {title}", html_content, text_content)


# Global instance
email_service = EmailService()
