from __future__ import annotations

import asyncio
import logging
import smtplib
import ssl
from email.message import EmailMessage

from jinja2 import Environment, select_autoescape

from ..config import Settings
from ..domain.notifications import ConfirmationEmail

logger = logging.getLogger(__name__)

SUBJECT = "Confirmación de Reserva"

_env = Environment(autoescape=select_autoescape(default=True, default_for_string=True))

CONFIRMATION_TEMPLATE = _env.from_string(
    """<!DOCTYPE html>
<html>
<head>
  <meta charset="UTF-8">
  <style>
    body { font-family: Arial, sans-serif; line-height: 1.6; color: #333; }
    .container { max-width: 600px; margin: 0 auto; padding: 20px; }
    .header { background-color: #1f4b9e; color: white; padding: 20px; text-align: center; }
    .content { padding: 20px; background-color: #f8f9fa; }
    .info-box { background-color: white; padding: 15px; margin: 10px 0; border-left: 4px solid #1f4b9e; }
    .button { display: inline-block; padding: 12px 24px; background-color: #1f4b9e; color: white; text-decoration: none; }
    .footer { text-align: center; padding: 20px; color: #6c757d; font-size: 12px; }
  </style>
</head>
<body>
  <div class="container">
    <div class="header"><h1>{{ from_name }}</h1></div>
    <div class="content">
      <h2>Reserva registrada</h2>
      <p>Hola <strong>{{ coordinator_name }}</strong>,</p>
      <p>Tu reserva fue registrada y queda pendiente de confirmación:</p>
      <div class="info-box">
        <p><strong>Institución:</strong> {{ school_name }}</p>
        <p><strong>Día:</strong> {{ day_label }}</p>
        <p><strong>Horario:</strong> {{ slot_label }}</p>
        <p><strong>Estudiantes:</strong> {{ student_count }}</p>
        <p><strong>Código de reserva:</strong> {{ reservation_id }}</p>
      </div>
      {% if confirm_link %}
      <p>Confirma tu reserva dentro de las próximas {{ ttl_hours }} horas:</p>
      <p><a class="button" href="{{ confirm_link }}">Confirmar reserva</a></p>
      {% endif %}
    </div>
    <div class="footer"><p>Este es un email automático, por favor no responder.</p></div>
  </div>
</body>
</html>
"""
)


def render_confirmation(message: ConfirmationEmail, *, from_name: str, ttl_hours: int) -> str:
    return CONFIRMATION_TEMPLATE.render(
        from_name=from_name,
        coordinator_name=message.coordinator_name,
        school_name=message.school_name,
        day_label=message.day_label,
        slot_label=message.slot_label,
        student_count=message.student_count,
        reservation_id=message.reservation_id,
        confirm_link=message.confirm_link,
        ttl_hours=ttl_hours,
    )


class SmtpConfirmationNotifier:
    """Sends the confirmation email over SMTP from a worker thread."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    @property
    def configured(self) -> bool:
        return bool(self.settings.smtp_user and self.settings.smtp_pass)

    def build_message(self, message: ConfirmationEmail) -> EmailMessage:
        sender = self.settings.smtp_from or self.settings.smtp_user
        html = render_confirmation(
            message,
            from_name=self.settings.smtp_from_name,
            ttl_hours=self.settings.confirmation_token_ttl_hours,
        )
        msg = EmailMessage()
        msg["Subject"] = f"{SUBJECT} - {self.settings.smtp_from_name}"
        msg["From"] = f"{self.settings.smtp_from_name} <{sender}>"
        msg["To"] = message.email
        msg.set_content(
            f"Reserva {message.reservation_id}: {message.day_label}, {message.slot_label}. "
            f"Confirma en: {message.confirm_link}"
        )
        msg.add_alternative(html, subtype="html")
        return msg

    def _deliver(self, msg: EmailMessage) -> None:
        host, port = self.settings.smtp_host, self.settings.smtp_port
        context = ssl.create_default_context()
        if port == 465:
            with smtplib.SMTP_SSL(host, port, context=context, timeout=15) as server:
                server.login(self.settings.smtp_user, self.settings.smtp_pass)
                server.send_message(msg)
        else:
            with smtplib.SMTP(host, port, timeout=15) as server:
                server.starttls(context=context)
                server.login(self.settings.smtp_user, self.settings.smtp_pass)
                server.send_message(msg)

    async def send_confirmation(self, message: ConfirmationEmail) -> bool:
        if not self.configured:
            logger.warning("SMTP not configured, confirmation email for reservation %s not sent", message.reservation_id)
            return False
        try:
            await asyncio.to_thread(self._deliver, self.build_message(message))
        except (smtplib.SMTPException, OSError):
            logger.exception("failed to send confirmation email for reservation %s", message.reservation_id)
            return False
        logger.info("confirmation email sent for reservation %s", message.reservation_id)
        return True
