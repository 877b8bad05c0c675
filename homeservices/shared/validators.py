"""Shared validation utilities"""

import re
from typing import Optional

SERVICE_TYPES = ("LAUNDRY", "CLEANING")


def validate_us_phone(phone: Optional[str]) -> Optional[str]:
    """
    Validate and normalize US phone number to E.164 format.

    Args:
        phone: Phone number string in various formats

    Returns:
        Normalized phone number in E.164 format (+1XXXXXXXXXX)

    Raises:
        ValueError: If phone number is invalid
    """
    if not phone:
        return phone

    # Remove all non-digit characters
    digits = re.sub(r"\D", "", phone)

    # Handle +1 prefix
    if digits.startswith("1") and len(digits) == 11:
        digits = digits[1:]

    # US phone numbers should have 10 digits
    if len(digits) != 10:
        raise ValueError("Phone number must be 10 digits for US numbers")

    return f"+1{digits}"


def normalize_inbound_phone(phone: str) -> str:
    """
    Normalize a sender number from the SMS relay.

    US numbers are converted to E.164; anything else is kept as sent
    (stripped) so international senders still map to a stable key.
    """
    phone = (phone or "").strip()
    try:
        return validate_us_phone(phone) or phone
    except ValueError:
        return phone


def validate_zip(zip_code: Optional[str]) -> Optional[str]:
    """Validate a 5-digit US ZIP (ZIP+4 is truncated)"""
    if not zip_code:
        return zip_code

    zip_code = zip_code.strip()
    if not re.match(r"^\d{5}(-\d{4})?$", zip_code):
        raise ValueError("ZIP code must be 5 digits")
    return zip_code[:5]


def validate_service_type(service_type: str) -> str:
    service_type = (service_type or "").strip().upper()
    if service_type not in SERVICE_TYPES:
        raise ValueError(f"service_type must be one of {', '.join(SERVICE_TYPES)}")
    return service_type
