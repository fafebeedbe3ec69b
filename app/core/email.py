import aiosmtplib
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from typing import List, Optional
from jinja2 import Environment, FileSystemLoader, select_autoescape
import logging
import os

from app.core.config import settings

logger = logging.getLogger(__name__)


class EmailService:
    def __init__(self):
        self.smtp_host = settings.SMTP_HOST
        self.smtp_port = settings.SMTP_PORT
        self.smtp_user = settings.SMTP_USER
        self.smtp_password = settings.SMTP_PASSWORD
        self.from_email = settings.SMTP_FROM_EMAIL
        self.from_name = settings.SMTP_FROM_NAME

        # Initialize Jinja2 for email templates
        template_dir = os.path.join(os.path.dirname(__file__), "..", "templates", "emails")
        self.env = Environment(
            loader=FileSystemLoader(template_dir),
            autoescape=select_autoescape(['html', 'xml'])
        )

    async def send_email(
        self,
        to_emails: List[str],
        subject: str,
        html_content: str,
        text_content: Optional[str] = None
    ) -> bool:
        """Send email to recipients"""
        try:
            message = MIMEMultipart("alternative")
            message["Subject"] = subject
            message["From"] = f"{self.from_name} <{self.from_email}>"
            message["To"] = ", ".join(to_emails)

            if text_content:
                message.attach(MIMEText(text_content, "plain"))
            message.attach(MIMEText(html_content, "html"))

            await aiosmtplib.send(
                message,
                hostname=self.smtp_host,
                port=self.smtp_port,
                username=self.smtp_user or None,
                password=self.smtp_password or None,
                start_tls=True,
            )
            return True
        except Exception as e:
            logger.error(f"Error sending email to {to_emails}: {e}")
            return False

    def render_notification(self, name: str, message: str, notification_type: str) -> str:
        template = self.env.get_template("notification.html")
        return template.render(
            app_name=settings.APP_NAME,
            name=name,
            message=message,
            notification_type=notification_type,
        )

    async def send_notification_email(self, email: str, name: str, message: str, notification_type: str) -> bool:
        """Mirror a friend notification to the user's inbox"""
        subject = f"{settings.APP_NAME}: {message}"
        html_content = self.render_notification(name, message, notification_type)
        text_content = f"Hi {name},\n\n{message}\n\nThe {settings.APP_NAME} Team"
        return await self.send_email([email], subject, html_content, text_content)


# Global email service instance
email_service = EmailService()
