"""
Small helpers shared by the webhook, the turn processor and the archive service.
"""

from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_session_id(call_id: str) -> str:
    """Dialogflow session handle for a call; stable for the call's lifetime."""
    return f"twilio-{call_id}"


def format_phone_number(phone: str) -> str:
    """Normalize a phone number to E.164.

    Numbers already starting with '+' are returned untouched. Nine-digit
    Chilean local numbers (mobile 9..., Santiago 2...) get the +56 prefix.
    """
    if phone.startswith("+"):
        return phone
    digits = "".join(c for c in phone if c.isdigit())
    if not digits:
        return phone
    if len(digits) == 9 and digits[0] in ("9", "2"):
        return "+56" + digits
    return "+" + digits


def truncate_string(text: str, max_len: int) -> str:
    if len(text) <= max_len:
        return text
    return text[:max_len]
