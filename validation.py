import re

from errors import InvalidInput, ValidationError

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PHONE_PATTERN = re.compile(r"^\+?[\d\s\-()]+$")
MIN_PHONE_DIGITS = 7


def is_valid_email(email: str) -> bool:
    return bool(EMAIL_PATTERN.match(email))


def is_valid_phone_number(phone: str) -> bool:
    digits = re.sub(r"\D", "", phone)
    return bool(PHONE_PATTERN.match(phone)) and len(digits) >= MIN_PHONE_DIGITS


def validate_identify_request(email: str = None, phone: str = None):
    """Reject a request before it reaches the store."""
    if not email and not phone:
        raise InvalidInput("Either email or phoneNumber must be provided")
    if email and not is_valid_email(email):
        raise ValidationError("Invalid email format")
    if phone and not is_valid_phone_number(phone):
        raise ValidationError("Invalid phone number format")
