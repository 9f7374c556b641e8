import asyncio
import smtplib
from dataclasses import dataclass
from email.message import EmailMessage
from typing import Any, Literal

from autoflow.core.config import Settings, settings as default_settings
from autoflow.core.errors import ActionExecutionError

EmailDeliveryStatus = Literal["sent", "not_configured", "failed"]


@dataclass(frozen=True)
class EmailDeliveryResult:
    status: EmailDeliveryStatus
    detail: str | None = None


class SmtpEmailSender:
    def __init__(self, config: Settings | None = None):
        self.config = config or default_settings

    def configured(self) -> bool:
        return bool(self.config.smtp_host and self.config.smtp_sender_email)

    def build_message(
        self,
        to: list[str],
        subject: str,
        body: str,
        *,
        cc: list[str] | None = None,
        bcc: list[str] | None = None,
    ) -> EmailMessage:
        message = EmailMessage()
        message["Subject"] = subject
        message["From"] = self.config.smtp_sender_email
        message["To"] = ", ".join(to)
        if cc:
            message["Cc"] = ", ".join(cc)
        if bcc:
            message["Bcc"] = ", ".join(bcc)
        if self.config.smtp_reply_to_email:
            message["Reply-To"] = self.config.smtp_reply_to_email
        message.set_content(body)
        return message

    def deliver(self, message: EmailMessage) -> EmailDeliveryResult:
        if not self.configured():
            return EmailDeliveryResult(status="not_configured", detail="SMTP not configured")

        config = self.config
        try:
            if config.smtp_use_ssl:
                with smtplib.SMTP_SSL(config.smtp_host, config.smtp_port, timeout=20) as server:
                    if config.smtp_username:
                        server.login(config.smtp_username, config.smtp_password or "")
                    server.send_message(message)
            else:
                with smtplib.SMTP(config.smtp_host, config.smtp_port, timeout=20) as server:
                    if config.smtp_use_starttls:
                        server.starttls()
                    if config.smtp_username:
                        server.login(config.smtp_username, config.smtp_password or "")
                    server.send_message(message)
        except Exception as exc:  # noqa: BLE001 - expose short status back to caller
            return EmailDeliveryResult(status="failed", detail=str(exc))

        return EmailDeliveryResult(status="sent", detail=None)

    async def send(
        self,
        to: list[str],
        subject: str,
        body: str,
        *,
        cc: list[str] | None = None,
        bcc: list[str] | None = None,
    ) -> dict[str, Any]:
        message = self.build_message(to, subject, body, cc=cc, bcc=bcc)
        result = await asyncio.to_thread(self.deliver, message)
        if result.status != "sent":
            raise ActionExecutionError(f"Email delivery {result.status}: {result.detail}")
        return {"delivery_status": result.status}
