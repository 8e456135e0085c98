"""Match-key normalization for lead deduplication."""

import re
import logging
from typing import Any, Optional

logger = logging.getLogger(__name__)

_NON_DIGITS = re.compile(r"\D")
_WHITESPACE_RUN = re.compile(r"\s+")

US_COUNTRY_CODE = "1"
MIN_PHONE_DIGITS = 10


class NormalizationService:
    """
    Canonicalize raw field values into comparable keys.

    Every method is total: any input (None, empty, wrong type) yields
    either a key or None, never an exception.
    """

    @staticmethod
    def normalize_email(email: Any) -> Optional[str]:
        """
        Normalize email address.
        - Convert to lowercase
        - Strip whitespace
        """
        if not email:
            return None
        normalized = str(email).lower().strip()
        return normalized or None

    @staticmethod
    def normalize_phone(phone: Any) -> Optional[str]:
        """
        Reduce a phone number to its digits.

        An 11-digit number with the US country code loses the leading 1.
        Anything shorter than 10 digits is not a usable key.
        """
        if not phone:
            return None

        digits = _NON_DIGITS.sub("", str(phone))
        if len(digits) == 11 and digits.startswith(US_COUNTRY_CODE):
            return digits[1:]

        return digits if len(digits) >= MIN_PHONE_DIGITS else None

    @staticmethod
    def normalize_name(name: Any) -> Optional[str]:
        """
        Normalize a contact name.
        - Lowercase, trim
        - Collapse internal whitespace
        """
        if not name:
            return None
        normalized = _WHITESPACE_RUN.sub(" ", str(name).lower().strip())
        return normalized or None

    @staticmethod
    def normalize_text(value: Any) -> str:
        """Lowercase a free-text key part; missing values become an empty string."""
        if value is None:
            return ""
        return str(value).lower()


# Singleton instance
normalization_service = NormalizationService()

normalize_email = normalization_service.normalize_email
normalize_phone = normalization_service.normalize_phone
normalize_name = normalization_service.normalize_name
normalize_text = normalization_service.normalize_text
