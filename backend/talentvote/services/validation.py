from __future__ import annotations
import re
from collections.abc import Mapping
from typing import Any, Literal, TypeVar
from pydantic import BaseModel, ConfigDict, Field, PositiveInt, ValidationError, field_validator
from pydantic.networks import validate_email
from talentvote.config import settings

MAX_VOTES_PER_REQUEST = 1000

PaymentMethod = Literal["mobile_money", "card", "bank_transfer"]

_NON_DIGITS = re.compile(r"\D+")


class ValidationFailed(Exception):
    """Carries every failing field at once: {field: [message, ...]}."""

    def __init__(self, errors: dict[str, list[str]]):
        super().__init__("validation failed")
        self.errors = errors


def normalize_phone(raw: str, country_code: str | None = None, local_digits: int | None = None) -> str | None:
    """
    Best-effort canonicalization of a phone number to <country_code><local digits>.

      1. keep digits only
      2. exactly `local_digits` digits        -> prefix the country code
      3. country code + `local_digits` digits -> accepted as is
      4. leading trunk "0"                     -> dropped, then rules 2-3 again
      5. at least `local_digits` digits        -> last `local_digits` digits, prefixed
      6. anything shorter                      -> None (invalid)

    Rule 5 also covers 10-digit national numbers such as "01" + the historic
    8-digit subscriber number. Numbers from another country that happen to be
    long enough are mangled by rule 5; that is a known limitation.

    Examples:
        >>> normalize_phone("90123456", "229", 8)
        '22990123456'
        >>> normalize_phone("022990123456", "229", 8)
        '22990123456'
        >>> normalize_phone("12345", "229", 8) is None
        True
    """
    cc = country_code or settings.phone_country_code
    n = local_digits or settings.phone_local_digits
    digits = _NON_DIGITS.sub("", raw or "")

    def _direct(d: str) -> str | None:
        if len(d) == n:
            return cc + d
        if len(d) == len(cc) + n and d.startswith(cc):
            return d
        return None

    result = _direct(digits)
    if result is None and digits.startswith("0"):
        digits = digits[1:]
        result = _direct(digits)
    if result is None and len(digits) >= n:
        result = cc + digits[-n:]
    if result is None or len(result) != len(cc) + n:
        return None
    return result


class _Strict(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True, extra="ignore")


class _ContactFields(_Strict):
    email: str = Field(max_length=100)
    phone: str
    firstname: str = Field(min_length=1, max_length=50)
    lastname: str = Field(min_length=1, max_length=50)

    @field_validator("email")
    @classmethod
    def _email(cls, v: str) -> str:
        _, address = validate_email(v)
        return address

    @field_validator("phone", mode="before")
    @classmethod
    def _phone(cls, v: Any) -> str:
        if isinstance(v, int) and not isinstance(v, bool):
            v = str(v)
        if not isinstance(v, str):
            raise ValueError("Phone number must be a string")
        normalized = normalize_phone(v)
        if normalized is None:
            raise ValueError(
                f"Invalid phone number: expected {settings.phone_local_digits} local digits "
                f"or {settings.phone_country_code} followed by {settings.phone_local_digits} digits"
            )
        return normalized


class PaymentIntentPayload(_ContactFields):
    candidate_id: PositiveInt
    edition_id: PositiveInt
    category_id: PositiveInt | None = None
    votes_count: int = Field(ge=1, le=MAX_VOTES_PER_REQUEST, strict=True)


class VoteRequestPayload(_Strict):
    candidate_id: PositiveInt
    edition_id: PositiveInt
    category_id: PositiveInt | None = None
    votes_count: int = Field(default=1, ge=1, le=MAX_VOTES_PER_REQUEST, strict=True)
    # ask for the free allowance on an edition that otherwise charges per vote
    use_free_votes: bool = False
    # optional contact overrides for the paid path
    email: str | None = Field(default=None, max_length=100)
    phone: str | None = Field(default=None, max_length=32)
    firstname: str | None = Field(default=None, max_length=50)
    lastname: str | None = Field(default=None, max_length=50)


class ProcessPaymentPayload(_Strict):
    payment_token: str = Field(min_length=1, max_length=64)
    payment_method: PaymentMethod


_M = TypeVar("_M", bound=BaseModel)


def _error_map(exc: ValidationError) -> dict[str, list[str]]:
    errors: dict[str, list[str]] = {}
    for err in exc.errors():
        field = ".".join(str(p) for p in err["loc"]) or "__root__"
        msg = err["msg"]
        if msg.startswith("Value error, "):
            msg = msg[len("Value error, "):]
        errors.setdefault(field, []).append(msg)
    return errors


def _validate(model: type[_M], data: Any) -> _M:
    if not isinstance(data, Mapping):
        raise ValidationFailed({"__root__": ["Expected a JSON object"]})
    try:
        return model.model_validate(dict(data))
    except ValidationError as e:
        raise ValidationFailed(_error_map(e)) from e


def validate_payment_intent(data: Any) -> PaymentIntentPayload:
    return _validate(PaymentIntentPayload, data)


def validate_vote_request(data: Any) -> VoteRequestPayload:
    return _validate(VoteRequestPayload, data)


def validate_process_request(data: Any) -> ProcessPaymentPayload:
    return _validate(ProcessPaymentPayload, data)
