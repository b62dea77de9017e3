from __future__ import annotations

import smtplib
import ssl
from datetime import datetime, timezone
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from html import escape
from typing import Optional

from linesauth.logging import get_logger, hash_email

logger = get_logger(__name__)

OTP_PURPOSE_REGISTRATION = "registration"
OTP_PURPOSE_PASSWORD_RESET = "password_reset"

_STYLE = """
        body { font-family: Arial, sans-serif; line-height: 1.6; color: #333; max-width: 600px; margin: 0 auto; padding: 20px; }
        .container { background: linear-gradient(135deg, #667eea 0%, #764ba2 100%); padding: 40px; border-radius: 10px; }
        .content { background: white; padding: 30px; border-radius: 8px; }
        .otp-box { background: #f7fafc; border: 2px dashed #667eea; padding: 20px; text-align: center; margin: 30px 0; border-radius: 8px; }
        .otp-code { font-size: 32px; font-weight: bold; color: #667eea; letter-spacing: 8px; margin: 10px 0; }
        .button { display: inline-block; background: #667eea; color: white; padding: 14px 28px; text-decoration: none; border-radius: 8px; font-weight: bold; }
        .footer { text-align: center; margin-top: 30px; padding-top: 20px; border-top: 1px solid #e2e8f0; color: #718096; font-size: 12px; }
"""


class EmailService:
    """Transactional mail over SMTP.

    ``send(to, subject, html)`` is the transport contract the auth flows use;
    it returns False instead of raising. Without SMTP settings the message is
    logged (dev mode) so local signups still see their passcode.
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "Lines Platform",
        base_url: Optional[str] = None,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = base_url or "http://localhost:3000"

    @property
    def is_configured(self) -> bool:
        """Check if email sending is properly configured."""
        return bool(self.smtp_host and self.from_email)

    def send(self, to_email: str, subject: str, html_body: str) -> bool:
        return self._send_email(to_email, subject, html_body)

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        """Send an email via SMTP.

        Returns True if sent successfully, False otherwise.
        """
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                email_hash=hash_email(to_email),
                subject=subject,
                body_preview=text_body[:200] if text_body else html_body[:200],
            )
            return True

        try:
            msg = MIMEMultipart("alternative")
            msg["Subject"] = subject
            msg["From"] = f"{self.from_name} <{self.from_email}>"
            msg["To"] = to_email

            if text_body:
                msg.attach(MIMEText(text_body, "plain"))
            msg.attach(MIMEText(html_body, "html"))

            context = ssl.create_default_context()

            logger.debug(
                "email_connecting",
                host=self.smtp_host,
                port=self.smtp_port,
                use_tls=self.smtp_use_tls,
                email_hash=hash_email(to_email),
            )

            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=30
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())

            logger.info("email_sent", email_hash=hash_email(to_email), subject=subject)
            return True

        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                email_hash=hash_email(to_email),
                host=self.smtp_host,
                error=str(e),
                error_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPConnectError as e:
            logger.error(
                "email_connect_failed",
                email_hash=hash_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(e),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                email_hash=hash_email(to_email),
                error=str(e),
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                email_hash=hash_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except ssl.SSLError as e:
            logger.error(
                "email_ssl_error",
                email_hash=hash_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(e),
            )
            return False
        except OSError as e:
            # socket failures and timeouts
            logger.error(
                "email_send_failed",
                email_hash=hash_email(to_email),
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

    def render_otp(self, code: str, full_name: str, *, purpose: str) -> tuple[str, str, str]:
        """Return ``(subject, html, text)`` for a passcode notice."""
        name = escape(full_name or "there")
        year = datetime.now(timezone.utc).year
        if purpose == OTP_PURPOSE_PASSWORD_RESET:
            subject = "Reset Your Password - Lines Platform"
            heading = "Password reset requested"
            intro = (
                "We received a request to reset the password on your Lines account. "
                "Use the code below to continue:"
            )
            footer = "If you didn't request a reset, you can safely ignore this email."
        else:
            subject = "Verify Your Email - Lines Platform"
            heading = "Welcome to Lines!"
            intro = (
                "Thank you for registering with Lines Platform. To complete your registration, "
                "please verify your email address using the OTP code below:"
            )
            footer = "If you didn't request this code, please ignore this email."

        html_body = f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>{_STYLE}</style>
</head>
<body>
    <div class="container">
        <div class="content">
            <h1>{heading}</h1>
            <p>Hi {name},</p>
            <p>{intro}</p>
            <div class="otp-box">
                <p style="margin: 0; color: #718096; font-size: 14px;">Your verification code</p>
                <div class="otp-code">{code}</div>
                <p style="margin: 0; color: #718096; font-size: 14px;">Valid for 10 minutes</p>
            </div>
            <p><strong>Security note:</strong> never share this code with anyone.</p>
            <div class="footer">
                <p>{footer}</p>
                <p>&copy; {year} Lines Platform. All rights reserved.</p>
            </div>
        </div>
    </div>
</body>
</html>
"""

        text_body = f"""{heading}

Hi {full_name or "there"},

{intro}

    {code}

This code is valid for 10 minutes. Never share it with anyone.

{footer}

---
Lines Platform
"""
        return subject, html_body, text_body

    def send_otp_code(
        self,
        to_email: str,
        code: str,
        full_name: str,
        *,
        purpose: str = OTP_PURPOSE_REGISTRATION,
    ) -> bool:
        subject, html_body, text_body = self.render_otp(code, full_name, purpose=purpose)
        return self._send_email(to_email, subject, html_body, text_body)

    def send_welcome(self, to_email: str, full_name: str) -> bool:
        """Post-verification greeting; failures are reported, never raised."""
        name = escape(full_name or "there")
        subject = "Welcome to Lines Platform!"

        html_body = f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>{_STYLE}</style>
</head>
<body>
    <div class="container">
        <div class="content">
            <h1>Welcome aboard, {name}!</h1>
            <p>Your account has been successfully verified and activated.</p>
            <p style="text-align: center; margin: 30px 0;">
                <a href="{self.base_url}" class="button">Start Exploring</a>
            </p>
            <p>Happy reading!<br>The Lines Team</p>
        </div>
    </div>
</body>
</html>
"""

        text_body = f"""Welcome aboard, {full_name or "there"}!

Your account has been successfully verified and activated.

Start exploring: {self.base_url}

Happy reading!
The Lines Team
"""

        return self._send_email(to_email, subject, html_body, text_body)
