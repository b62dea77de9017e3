import smtplib

from linesauth.service.email import (
    OTP_PURPOSE_PASSWORD_RESET,
    OTP_PURPOSE_REGISTRATION,
    EmailService,
)


def test_dev_mode_without_smtp_reports_success():
    service = EmailService()
    assert service.is_configured is False
    assert service.send_otp_code("a@example.com", "123456", "Reader") is True
    assert service.send("a@example.com", "Subject", "<p>hi</p>") is True


def test_registration_and_reset_templates_differ():
    service = EmailService()
    subject, html, text = service.render_otp("482913", "Reader", purpose=OTP_PURPOSE_REGISTRATION)
    assert subject == "Verify Your Email - Lines Platform"
    assert "482913" in html and "482913" in text
    reset_subject, reset_html, _ = service.render_otp(
        "482913", "Reader", purpose=OTP_PURPOSE_PASSWORD_RESET
    )
    assert reset_subject == "Reset Your Password - Lines Platform"
    assert reset_html != html


def test_names_are_escaped_in_html():
    _, html, _ = EmailService().render_otp("123456", "<script>x</script>", purpose=OTP_PURPOSE_REGISTRATION)
    assert "<script>" not in html
    assert "&lt;script&gt;" in html


def test_smtp_failure_returns_false(monkeypatch):
    class BrokenSMTP:
        def __init__(self, *args, **kwargs):
            raise smtplib.SMTPConnectError(421, "unavailable")

    monkeypatch.setattr(smtplib, "SMTP", BrokenSMTP)
    service = EmailService(smtp_host="smtp.example.com", from_email="noreply@example.com")
    assert service.is_configured is True
    assert service.send_welcome("a@example.com", "Reader") is False


def test_smtp_sends_with_starttls(monkeypatch):
    sent = []

    class FakeSMTP:
        def __init__(self, host, port, timeout=None):
            sent.append(("connect", host, port))

        def __enter__(self):
            return self

        def __exit__(self, *exc):
            return False

        def starttls(self, context=None):
            sent.append(("starttls",))

        def login(self, user, password):
            sent.append(("login", user))

        def sendmail(self, from_addr, to_addr, message):
            sent.append(("sendmail", from_addr, to_addr))

    monkeypatch.setattr(smtplib, "SMTP", FakeSMTP)
    service = EmailService(
        smtp_host="smtp.example.com",
        smtp_user="mailer",
        smtp_password="pw",
        from_email="noreply@example.com",
    )
    assert service.send_otp_code("a@example.com", "123456", "Reader") is True
    assert sent == [
        ("connect", "smtp.example.com", 587),
        ("starttls",),
        ("login", "mailer"),
        ("sendmail", "noreply@example.com", "a@example.com"),
    ]
