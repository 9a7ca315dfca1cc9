"""
Input Validation

Money and reference checks shared by the ledgers and the HTTP schemas.
Everything here runs before any mutation, so a rejected request leaves no
partial effect behind.
"""
import re
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any

from app.core.exceptions import ValidationException

CENT = Decimal("0.01")


class ValidationPatterns:
    """Common validation patterns"""

    # merchant / user / campaign refs and external event ids
    REFERENCE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_\-.:@]*$")


class AmountValidator:
    """Monetary amount validation"""

    MAX_VALUE = Decimal("9999999999.99")  # Numeric(12, 2)

    @staticmethod
    def quantize(amount: Decimal) -> Decimal:
        """Round half-up to the smallest currency unit"""
        return amount.quantize(CENT, rounding=ROUND_HALF_UP)

    @staticmethod
    def to_decimal(amount: Any, field: str = "amount") -> Decimal:
        """
        Parse an amount without going through float.

        Raises:
            ValidationException: if the value is not a finite number
        """
        if isinstance(amount, bool) or amount is None:
            raise ValidationException(f"{field} must be a number", field=field)
        try:
            value = amount if isinstance(amount, Decimal) else Decimal(str(amount))
        except (InvalidOperation, ValueError):
            raise ValidationException(f"{field} must be a number", field=field)
        if not value.is_finite():
            raise ValidationException(f"{field} must be a finite number", field=field)
        return value

    @classmethod
    def validate(
        cls,
        amount: Any,
        field: str = "amount",
        min_value: Decimal | None = None,
        max_value: Decimal | None = None,
    ) -> Decimal:
        """
        Validate a positive money amount with at most two decimal places.

        Returns:
            The amount as a Decimal quantized to cents
        """
        value = cls.to_decimal(amount, field)

        if value <= 0:
            raise ValidationException(f"{field} must be positive", field=field)

        if value != cls.quantize(value):
            raise ValidationException(
                f"{field} cannot have more than 2 decimal places", field=field
            )

        if min_value is not None and value < min_value:
            raise ValidationException(f"{field} must be at least {min_value}", field=field)

        upper = max_value if max_value is not None else cls.MAX_VALUE
        if value > upper:
            raise ValidationException(f"{field} cannot exceed {upper}", field=field)

        return cls.quantize(value)


class ReferenceValidator:
    """Validation of opaque references (merchant, user, external event)"""

    MAX_LENGTH = 100

    @classmethod
    def validate(cls, value: Any, field: str, max_length: int | None = None) -> str:
        if not isinstance(value, str) or not value.strip():
            raise ValidationException(f"{field} is required", field=field)

        value = value.strip()
        limit = max_length or cls.MAX_LENGTH
        if len(value) > limit:
            raise ValidationException(
                f"{field} cannot exceed {limit} characters", field=field
            )

        if not ValidationPatterns.REFERENCE.match(value):
            raise ValidationException(f"{field} contains invalid characters", field=field)

        return value


class TextSanitizer:
    """Free-text cleanup for descriptions stored on ledger rows"""

    @staticmethod
    def sanitize(text: str | None, max_length: int = 500) -> str | None:
        if text is None:
            return None

        sanitized = text.replace("\x00", "")
        sanitized = "".join(
            char for char in sanitized
            if char >= " " or char in "\n\t"
        )
        sanitized = re.sub(r" +", " ", sanitized.strip())
        return sanitized[:max_length] or None


# Pydantic field validators for reuse
def money_validator(v: Any) -> Decimal:
    """Pydantic field validator for positive money amounts"""
    try:
        return AmountValidator.validate(v)
    except ValidationException as e:
        raise ValueError(e.message)


def reference_validator(v: Any, max_length: int = 100) -> str:
    """Pydantic field validator for references"""
    try:
        return ReferenceValidator.validate(v, field="reference", max_length=max_length)
    except ValidationException as e:
        raise ValueError(e.message)


def optional_reference_validator(v: Any, max_length: int = 100) -> str | None:
    if v is None:
        return None
    return reference_validator(v, max_length=max_length)
