"""
Patient notifications.

Email goes through a transactional email HTTP API, SMS through the Twilio
Messages REST API. Sending is fire-and-forget: a failed or unconfigured channel
is logged and reported as ``False``, never raised to the caller.
"""

import logging
from typing import Any

import httpx

from clinic_engine.core import config

logger = logging.getLogger(__name__)

TEMPLATES: dict[str, dict[str, str]] = {
    'booking_confirmed': {
        'subject': 'Appointment confirmed for {date} at {time}',
        'body': 'Hello {patient_name}, your appointment with {clinician_id} on {date} at {time} is confirmed.',
    },
    'appointment_completed': {
        'subject': 'Thank you for visiting',
        'body': 'Hello {patient_name}, your session on {date} at {time} has been completed.',
    },
    'appointment_cancelled': {
        'subject': 'Appointment cancelled',
        'body': 'Hello {patient_name}, your appointment on {date} at {time} has been cancelled.',
    },
    'payment_received': {
        'subject': 'Payment received',
        'body': 'Hello {patient_name}, we received your payment of {amount} for your {kind} bill.',
    },
}


def render_template(template: str, data: dict[str, Any]) -> tuple[str, str]:
    if template not in TEMPLATES:
        raise KeyError(f'Unknown notification template: {template}')

    content = TEMPLATES[template]
    return content['subject'].format(**data), content['body'].format(**data)


class Notifier:
    def __init__(self, client: httpx.Client | None = None):
        self._client = client

    def _post(self, url: str, **kwargs) -> httpx.Response:
        if self._client is not None:
            return self._client.post(url, timeout=config.NOTIFICATION_TIMEOUT_SECONDS, **kwargs)
        with httpx.Client() as client:
            return client.post(url, timeout=config.NOTIFICATION_TIMEOUT_SECONDS, **kwargs)

    def send_email(self, to: str | None, template: str, data: dict[str, Any]) -> bool:
        if not config.NOTIFICATIONS_ENABLED or not to:
            return False
        if not config.EMAIL_API_KEY:
            logger.debug('Email API key not configured, skipping %s email.', template)
            return False

        try:
            subject, body = render_template(template, data)
            response = self._post(
                config.EMAIL_API_URL,
                headers={'Authorization': f'Bearer {config.EMAIL_API_KEY}'},
                json={
                    'from': config.EMAIL_FROM_ADDRESS,
                    'to': [to],
                    'subject': subject,
                    'text': body,
                },
            )
            response.raise_for_status()
        except (httpx.HTTPError, KeyError):
            logger.exception('Failed to send %s email to %s.', template, to)
            return False

        logger.info('Sent %s email to %s.', template, to)
        return True

    def send_sms(self, to: str | None, template: str, data: dict[str, Any]) -> bool:
        if not config.NOTIFICATIONS_ENABLED or not to:
            return False
        if not (config.TWILIO_ACCOUNT_SID and config.TWILIO_AUTH_TOKEN and config.TWILIO_FROM_NUMBER):
            logger.debug('Twilio not configured, skipping %s SMS.', template)
            return False
        if not to.startswith('+'):
            logger.warning('Phone number %s is not in E.164 format, skipping %s SMS.', to, template)
            return False

        try:
            _, body = render_template(template, data)
            response = self._post(
                f'https://api.twilio.com/2010-04-01/Accounts/{config.TWILIO_ACCOUNT_SID}/Messages.json',
                auth=(config.TWILIO_ACCOUNT_SID, config.TWILIO_AUTH_TOKEN),
                data={'To': to, 'From': config.TWILIO_FROM_NUMBER, 'Body': body},
            )
            response.raise_for_status()
        except (httpx.HTTPError, KeyError):
            logger.exception('Failed to send %s SMS to %s.', template, to)
            return False

        logger.info('Sent %s SMS to %s.', template, to)
        return True

    def notify_patient(self, patient, template: str, data: dict[str, Any]) -> None:
        payload = {'patient_name': patient.name, **data}
        self.send_email(patient.email, template, payload)
        self.send_sms(patient.phone, template, payload)
