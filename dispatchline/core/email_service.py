from typing import Dict, Optional

import aiohttp

from .. import config
from ..logging_context import get_call_logger

logger = get_call_logger(__name__)


class EmailService:
    """Mailchimp Transactional sender. Fire-and-forget: failures are logged."""

    def __init__(self, api_key: Optional[str] = None, from_email: Optional[str] = None):
        self.api_key = api_key if api_key is not None else config.MAILCHIMP_API_KEY
        self.from_email = from_email or config.FROM_EMAIL

    async def send_email(self, to_email: str, subject: str, body_text: str) -> Dict:
        if not to_email:
            return {"success": False, "error": "No recipient"}
        if not self.api_key:
            logger.info("[MOCK EMAIL] To: %s, Subject: %s", to_email, subject)
            return {"success": True, "mock": True}

        payload = {
            "key": self.api_key,
            "message": {
                "from_email": self.from_email,
                "subject": subject,
                "text": body_text,
                "to": [{"email": to_email, "type": "to"}],
            },
        }
        try:
            async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=5)) as session:
                async with session.post("https://mandrillapp.com/api/1.0/messages/send", json=payload) as response:
                    if response.status >= 400:
                        logger.warning("Email send failed (%s) to %s", response.status, to_email)
                        return {"success": False, "error": f"HTTP {response.status}"}
            return {"success": True}
        except Exception as e:
            logger.warning("Email send error to %s: %s", to_email, e)
            return {"success": False, "error": str(e)}

    async def send_appointment_confirmation(
        self,
        to_email: str,
        customer_name: str,
        business_name: str,
        appointment_time: str,
        technician_name: Optional[str] = None,
    ) -> Dict:
        tech_info = f"Your technician will be {technician_name}.\n" if technician_name else ""
        body_text = f"""Hello {customer_name or 'there'},

Your appointment with {business_name} is confirmed for {appointment_time}.
{tech_info}
If you need to reschedule, just call us back.

{business_name}"""
        return await self.send_email(to_email, f"Appointment Confirmation - {business_name}", body_text)

    async def send_escalation_notice(self, to_email: str, business_name: str, reason: str, call_id: str) -> Dict:
        body_text = f"A call for {business_name} needs a human follow-up.\n\nReason: {reason}\nCall: {call_id}\n"
        return await self.send_email(to_email, f"Call needs follow-up - {business_name}", body_text)


email_service = EmailService()
