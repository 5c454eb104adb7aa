"""
Messaging channels for passcode delivery.

Each channel wraps one third-party provider (SendGrid for email, Twilio for
SMS) and reports `(success, error)` instead of raising: a provider outage,
rejection or timeout is that channel's delivery failure and nothing more.
"""

import logging
from typing import Dict, Optional, Tuple

import requests
from django.conf import settings
from django.template.loader import render_to_string

logger = logging.getLogger(__name__)

# Twilio trial accounts reject unverified or malformed destination numbers.
_TWILIO_UNVERIFIED_NUMBER_CODES = {21608, 21211}


def mask_email(email: str) -> str:
    local, _, domain = (email or "").partition("@")
    return f"{local[:2]}****@{domain}" if domain else "****"


def mask_phone(phone: str) -> str:
    return f"{(phone or '')[:5]}****"


def to_e164(phone: str) -> str:
    """Normalise a phone number to the `+<digits>` form the SMS provider expects."""
    formatted = "".join((phone or "").split())
    if not formatted.startswith("+"):
        formatted = "+" + formatted
    return formatted


class MessagingChannel:
    name = ""

    def __init__(self, config: Optional[Dict] = None):
        self._config = config

    @property
    def config(self) -> Dict:
        return self._config if self._config is not None else settings.MESSAGING_CONFIG

    @property
    def timeout(self) -> int:
        return self.config.get("TIMEOUT_SECONDS", 10)

    def _message_context(self, code: str) -> Dict:
        ttl_seconds = settings.OTP_CONFIG["CODE_TTL_SECONDS"]
        return {
            "code": code,
            "ttl_minutes": max(ttl_seconds // 60, 1),
            "site_name": self.config.get("SENDGRID_FROM_NAME") or "Voting System",
        }

    def send(self, to: str, code: str) -> Tuple[bool, Optional[str]]:
        raise NotImplementedError


class EmailChannel(MessagingChannel):
    """Delivers passcodes through the SendGrid v3 mail API."""

    name = "email"
    subject = "Your OTP Verification Code"

    def send(self, to: str, code: str) -> Tuple[bool, Optional[str]]:
        api_key = self.config.get("SENDGRID_API_KEY")
        from_email = self.config.get("SENDGRID_FROM_EMAIL")
        if not api_key or not from_email:
            logger.error("SendGrid not configured - missing credentials")
            return False, "Email service not configured"

        logger.info(f"Sending OTP email to {mask_email(to)}")
        html = render_to_string("otp/otp_email.html", self._message_context(code))
        payload = {
            "personalizations": [{"to": [{"email": to}]}],
            "from": {"email": from_email, "name": self.config.get("SENDGRID_FROM_NAME")},
            "subject": self.subject,
            "content": [{"type": "text/html", "value": html}],
        }

        try:
            response = requests.post(
                self.config["SENDGRID_API_URL"],
                json=payload,
                headers={"Authorization": f"Bearer {api_key}"},
                timeout=self.timeout,
            )
        except requests.Timeout:
            logger.warning(f"SendGrid timed out after {self.timeout}s")
            return False, "Email service timed out"
        except requests.RequestException as e:
            logger.error(f"Email send error: {e}")
            return False, "Email service error"

        logger.debug(f"SendGrid response status: {response.status_code}")
        if 200 <= response.status_code < 300:
            return True, None

        logger.error(f"SendGrid error: {response.status_code} {response.text[:200]}")
        return False, "Email delivery failed"


class SmsChannel(MessagingChannel):
    """Delivers passcodes through the Twilio Messages API."""

    name = "sms"

    def send(self, to: str, code: str) -> Tuple[bool, Optional[str]]:
        account_sid = self.config.get("TWILIO_ACCOUNT_SID")
        auth_token = self.config.get("TWILIO_AUTH_TOKEN")
        from_number = self.config.get("TWILIO_PHONE_NUMBER")
        if not account_sid or not auth_token or not from_number:
            logger.error("Twilio not configured - missing credentials")
            return False, "SMS service not configured"

        phone = to_e164(to)
        logger.info(f"Sending OTP SMS to {mask_phone(phone)}")
        body = render_to_string("otp/otp_sms.txt", self._message_context(code)).strip()
        url = f"{self.config['TWILIO_API_URL']}/Accounts/{account_sid}/Messages.json"

        try:
            response = requests.post(
                url,
                data={"To": phone, "From": from_number, "Body": body},
                auth=(account_sid, auth_token),
                timeout=self.timeout,
            )
        except requests.Timeout:
            logger.warning(f"Twilio timed out after {self.timeout}s")
            return False, "SMS service timed out"
        except requests.RequestException as e:
            logger.error(f"SMS send error: {e}")
            return False, "SMS service error"

        logger.debug(f"Twilio response status: {response.status_code}")
        if 200 <= response.status_code < 300:
            return True, None

        try:
            error_data = response.json()
        except ValueError:
            error_data = {}
        logger.error(f"Twilio error: {response.status_code} {error_data}")
        if error_data.get("code") in _TWILIO_UNVERIFIED_NUMBER_CODES:
            return False, "Phone number not verified. Use a verified number with Twilio trial."
        return False, error_data.get("message") or "SMS delivery failed"


def get_channels() -> Dict[str, MessagingChannel]:
    return {
        EmailChannel.name: EmailChannel(),
        SmsChannel.name: SmsChannel(),
    }
