from typing import Dict, List, Optional

from twilio.base.exceptions import TwilioException
from twilio.rest import Client
from twilio.twiml.voice_response import VoiceResponse

from .. import config
from ..logging_context import get_call_logger

logger = get_call_logger(__name__)


class Dispatcher:
    """SMS and voice notifications. Fire-and-forget: never raises to the caller."""

    def __init__(self, account_sid: Optional[str] = None, auth_token: Optional[str] = None, from_number: Optional[str] = None):
        self.client = None
        self.from_number = from_number or config.TWILIO_PHONE_NUMBER
        account_sid = account_sid or config.TWILIO_ACCOUNT_SID
        auth_token = auth_token or config.TWILIO_AUTH_TOKEN
        if account_sid and auth_token:
            try:
                self.client = Client(account_sid, auth_token)
            except TwilioException as e:
                logger.error("Twilio initialization error: %s", e)

    def send_sms(self, to_number: str, message: str) -> Dict:
        if not to_number:
            return {"success": False, "error": "No destination number"}
        if not self.client:
            logger.info("[MOCK SMS] To: %s, Message: %s", to_number, message.splitlines()[0] if message else "")
            return {"success": True, "sid": "mock_sms_sid", "mock": True, "body": message}

        try:
            sms = self.client.messages.create(body=message, from_=self.from_number, to=to_number)
            return {"success": True, "sid": sms.sid, "body": message}
        except Exception as e:
            logger.warning("SMS error to %s: %s", to_number, e)
            return {"success": False, "error": str(e), "body": message}

    def place_call(self, to_number: str, spoken_message: str) -> Optional[str]:
        """Ring the number and read the message out. Returns the call sid, or None."""
        if not self.client or not to_number:
            logger.info("[MOCK CALL] To: %s, Message: %s", to_number, spoken_message)
            return None
        twiml = VoiceResponse()
        twiml.say(spoken_message, voice="alice")
        twiml.pause(length=1)
        twiml.say(spoken_message, voice="alice")
        try:
            call = self.client.calls.create(
                to=to_number,
                from_=self.from_number,
                twiml=str(twiml),
            )
            return call.sid
        except Exception as e:
            logger.warning("Voice call error to %s: %s", to_number, e)
            return None

    def dispatch_technician(
        self,
        technician_name: str,
        technician_phone: str,
        customer_info: Dict,
        appointment_time: str,
        notes: str = "",
        is_emergency: bool = False,
    ) -> Dict:
        priority = "EMERGENCY DISPATCH" if is_emergency else "New Job Assignment"

        message = f"""{priority}

Customer: {customer_info.get('name') or 'N/A'}
Phone: {customer_info.get('phone') or 'N/A'}
Address: {customer_info.get('address') or 'To be confirmed'}
Issue: {notes or 'N/A'}
Time: {appointment_time}

Reply 1 when en route."""

        result = self.send_sms(technician_phone, message)
        result["technician"] = technician_name
        return result

    def send_customer_confirmation(
        self,
        customer_phone: str,
        business_name: str,
        appointment_time: str,
        address: Optional[str] = None,
        technician_name: Optional[str] = None,
    ) -> Dict:
        tech_info = f"Your technician will be {technician_name}. " if technician_name else ""
        where = f" at {address}" if address else ""

        message = f"""Your appointment with {business_name} is confirmed for {appointment_time}{where}.
{tech_info}Reply HELP for assistance or call us to reschedule."""

        return self.send_sms(customer_phone, message)

    def notify_cancellation(self, technician_phone: str, customer_name: Optional[str], appointment_time: str, address: Optional[str] = None) -> Dict:
        message = f"""Job Canceled

Customer: {customer_name or 'N/A'}
Address: {address or 'N/A'}
Time: {appointment_time}

The customer canceled. No need to go."""
        return self.send_sms(technician_phone, message)

    def notify_escalation(self, to_number: str, business_name: str, reason: str, details: Dict) -> Dict:
        message = f"""{business_name}: a call needs a human follow-up.

Reason: {reason}
Caller: {details.get('customer_phone') or 'unknown'}
Call: {details.get('call_id') or 'N/A'}"""
        return self.send_sms(to_number, message)

    def notify_emergency(self, technicians: List[Dict], emergency_details: Dict) -> List[Dict]:
        message = f"""EMERGENCY - backup needed

Customer: {emergency_details.get('customer_phone') or 'N/A'}
Issue: {emergency_details.get('issue') or 'Emergency service needed'}
Location: {emergency_details.get('address') or 'To be confirmed'}

Reply 1 when en route."""

        results = []
        for tech in technicians:
            result = self.send_sms(tech["phone"], message)
            results.append({"technician": tech["name"], "phone": tech["phone"], "notified": result.get("success", False)})
        return results


dispatcher = Dispatcher()
