from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import date

import httpx

logger = logging.getLogger(__name__)


@dataclass
class OutboundMessage:
    phone: str
    text: str


def format_booking_confirmation(queue_number: int, appointment_date: date, window_start: str, window_end: str) -> str:
    return (
        f"Your queue number is confirmed: #{queue_number} on {appointment_date.isoformat()}.\n"
        f"The practice is open between {window_start} and {window_end}.\n"
        "Please watch the queue board for your number."
    )


def format_called(queue_number: int) -> str:
    return f"Queue #{queue_number}: it is your turn now. Please come to the examination room."


def format_emergency_closure(appointment_date: date, reason: str) -> str:
    return (
        f"Sorry, the practice is closed on {appointment_date.isoformat()} due to an emergency. "
        f"Reason: {reason}. Your queue entry is cancelled. Please book a new date through the app "
        "or contact the clinic for help."
    )


def send_message(_msg: OutboundMessage) -> bool:
    api_key = (os.getenv("SMSMODE_API_KEY") or "").strip()
    if not api_key:
        return False

    base_url = (os.getenv("SMSMODE_BASE_URL") or "https://rest.smsmode.com").strip().rstrip("/")
    url = f"{base_url}/sms/v1/messages"

    phone = (_msg.phone or "").strip()
    text = (_msg.text or "").strip()
    if not phone or not text:
        return False

    payload = {
        "recipient": {"to": phone},
        "body": {"text": text},
    }

    try:
        with httpx.Client(timeout=10.0) as client:
            resp = client.post(
                url,
                headers={
                    "X-Api-Key": api_key,
                    "Content-Type": "application/json",
                    "Accept": "application/json",
                },
                json=payload,
            )
            resp.raise_for_status()
    except Exception:
        # SMS delivery is a side channel; queue flows continue without it.
        logger.warning("SMS delivery to %s failed", phone, exc_info=True)
        return False
    return True
