"""Local validation of untrusted wizard payloads.

The wizard posts camelCase JSON (``legalBusinessName``, ``sampleMessages``);
the models accept either that or snake_case. Nothing is dispatched upstream
and no attempt is recorded until a payload passes these checks.

Usage:
    brand = validate_brand(registration.step_payload("brand"))
    gateway.register_brand(brand.to_gateway_payload(), idempotency_key=key)
"""

import re
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from a2p_registry.errors import ValidationError

EIN_PATTERN = re.compile(r"^(\d{2}-\d{7}|\d{9})$")
ZIP_PATTERN = re.compile(r"^\d{5}(-\d{4})?$")
EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
URL_PATTERN = re.compile(r"^https?://[-a-zA-Z0-9@:%._+~#=]{1,256}\.[a-zA-Z0-9()]{1,6}\b\S*$")
E164_PATTERN = re.compile(r"^\+[1-9]\d{7,14}$")

BUSINESS_TYPES = ("corporation", "llc", "partnership", "sole_proprietorship", "nonprofit")
MIN_DESCRIPTION_LENGTH = 50
MAX_SAMPLE_MESSAGE_LENGTH = 160
MIN_SAMPLE_MESSAGES = 2


def normalize_e164(value: str) -> str:
    """Normalize a phone number to E.164.

    Strips formatting characters; a bare 10-digit number is treated as
    US and prefixed with +1, an 11-digit number starting with 1 gets a +.

    Raises:
        ValueError: If the result is not a valid E.164 number.
    """
    raw = str(value).strip()
    digits = re.sub(r"\D", "", raw)
    if raw.startswith("+"):
        candidate = f"+{digits}"
    elif len(digits) == 10:
        candidate = f"+1{digits}"
    elif len(digits) == 11 and digits.startswith("1"):
        candidate = f"+{digits}"
    else:
        candidate = f"+{digits}"
    if not E164_PATTERN.match(candidate):
        raise ValueError(f"'{value}' is not a valid E.164 phone number")
    return candidate


class _WizardModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        str_strip_whitespace=True,
        extra="ignore",
    )


class BusinessAddress(_WizardModel):
    street: str = Field(min_length=1)
    city: str = Field(min_length=1)
    state: str = Field(min_length=1)
    zip_code: str
    country: str = "US"

    @field_validator("zip_code")
    @classmethod
    def check_zip(cls, value: str) -> str:
        if not ZIP_PATTERN.match(value):
            raise ValueError("ZIP code must be 5 digits or ZIP+4")
        return value


class PrimaryContact(_WizardModel):
    first_name: str = Field(min_length=1)
    last_name: str = Field(min_length=1)
    email: str
    phone: str
    title: str = ""

    @field_validator("email")
    @classmethod
    def check_email(cls, value: str) -> str:
        if not EMAIL_PATTERN.match(value):
            raise ValueError("Invalid email address")
        return value

    @field_validator("phone")
    @classmethod
    def check_phone(cls, value: str) -> str:
        return normalize_e164(value)


class BrandPayload(_WizardModel):
    """Company identity collected by the brand step."""

    legal_business_name: str = Field(min_length=1, max_length=255)
    display_name: str = ""
    ein: str
    business_type: Literal[
        "corporation", "llc", "partnership", "sole_proprietorship", "nonprofit"
    ]
    industry: str = Field(min_length=1)
    website: str = ""
    business_address: BusinessAddress
    primary_contact: PrimaryContact
    business_description: str = Field(min_length=MIN_DESCRIPTION_LENGTH)
    registration_number: str = ""
    monthly_volume: str = ""

    @field_validator("ein")
    @classmethod
    def check_ein(cls, value: str) -> str:
        if not EIN_PATTERN.match(value):
            raise ValueError("EIN must be NN-NNNNNNN or 9 digits")
        return value

    @field_validator("business_type", mode="before")
    @classmethod
    def normalize_business_type(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower().replace(" ", "_").replace("-", "_")
        return value

    @field_validator("website")
    @classmethod
    def check_website(cls, value: str) -> str:
        if value and not URL_PATTERN.match(value):
            raise ValueError("Website must be an http(s) URL")
        return value

    def to_gateway_payload(self) -> dict[str, Any]:
        """Request body for the compliance API's brand registration."""
        return {
            "company_name": self.legal_business_name,
            "display_name": self.display_name or self.legal_business_name,
            "ein": self.ein,
            "business_type": self.business_type,
            "vertical": self.industry,
            "website": self.website or None,
            "registration_number": self.registration_number or None,
            "address": self.business_address.model_dump(),
            "support_contact": self.primary_contact.model_dump(),
            "description": self.business_description,
        }


class CampaignPayload(_WizardModel):
    """Messaging use case collected by the campaign step."""

    campaign_name: str = Field(min_length=2, max_length=50)
    campaign_description: str = ""
    use_case: str = Field(min_length=1)
    vertical: str = Field(min_length=1)
    traffic_type: Literal["transactional", "promotional"]
    sample_messages: list[str]
    sample_urls: list[str] = []
    opt_out_language: str = Field(min_length=1)
    send_window: str = ""
    privacy_policy_url: str = ""

    @field_validator("traffic_type", mode="before")
    @classmethod
    def normalize_traffic_type(cls, value: Any) -> Any:
        return value.strip().lower() if isinstance(value, str) else value

    @field_validator("sample_messages")
    @classmethod
    def check_sample_messages(cls, value: list[str]) -> list[str]:
        messages = [m.strip() for m in value if m and m.strip()]
        if len(messages) < MIN_SAMPLE_MESSAGES:
            raise ValueError(f"At least {MIN_SAMPLE_MESSAGES} sample messages are required")
        too_long = [i for i, m in enumerate(messages) if len(m) > MAX_SAMPLE_MESSAGE_LENGTH]
        if too_long:
            raise ValueError(
                f"Sample messages must be at most {MAX_SAMPLE_MESSAGE_LENGTH} characters"
            )
        return messages

    @field_validator("sample_urls")
    @classmethod
    def drop_blank_urls(cls, value: list[str]) -> list[str]:
        return [u.strip() for u in value if u and u.strip()]

    @model_validator(mode="after")
    def promotional_needs_privacy_policy(self) -> "CampaignPayload":
        if self.traffic_type == "promotional" and not self.privacy_policy_url:
            raise ValueError("Privacy policy URL is required for promotional traffic")
        return self

    def to_gateway_payload(self, brand_ref: str) -> dict[str, Any]:
        """Request body for the compliance API's campaign registration."""
        return {
            "brand_reference_id": brand_ref,
            "name": self.campaign_name,
            "description": self.campaign_description or None,
            "use_case": self.use_case,
            "vertical": self.vertical,
            "traffic_type": self.traffic_type,
            "sample_messages": self.sample_messages,
            "sample_urls": self.sample_urls,
            "opt_out_language": self.opt_out_language,
            "privacy_policy_url": self.privacy_policy_url or None,
        }


class CompliancePayload(_WizardModel):
    """Attestations collected by the compliance step."""

    privacy_policy_url: str = Field(min_length=1)
    terms_of_service_url: str = Field(min_length=1)
    tcpa_compliance: bool = False
    can_spam_compliance: bool = False
    ctia_compliance: bool = False
    opt_in_process: str = ""
    opt_out_process: str = ""

    @model_validator(mode="after")
    def attestations_accepted(self) -> "CompliancePayload":
        missing = [
            label
            for label, accepted in (
                ("TCPA", self.tcpa_compliance),
                ("CAN-SPAM", self.can_spam_compliance),
                ("CTIA", self.ctia_compliance),
            )
            if not accepted
        ]
        if missing:
            raise ValueError(f"{', '.join(missing)} attestation(s) must be accepted")
        return self


class PhoneNumberSelection(_WizardModel):
    """Phone numbers chosen in the selection step, normalized and de-duplicated."""

    phone_numbers: list[str]

    @field_validator("phone_numbers", mode="before")
    @classmethod
    def normalize_numbers(cls, value: Any) -> list[str]:
        if not isinstance(value, list):
            raise ValueError("phone_numbers must be a list")
        normalized: list[str] = []
        for item in value:
            number = normalize_e164(item)
            if number not in normalized:
                normalized.append(number)
        return normalized


def _field_errors(exc: PydanticValidationError) -> dict[str, str]:
    errors: dict[str, str] = {}
    for error in exc.errors():
        path = ".".join(str(part) for part in error["loc"]) or "__root__"
        message = error["msg"]
        if message.startswith("Value error, "):
            message = message[len("Value error, "):]
        errors.setdefault(path, message)
    return errors


def _validate(model: type[BaseModel], data: dict | None, step: str, code: str) -> Any:
    if not data:
        raise ValidationError(f"{step} details have not been provided", {step: "missing"}, code)
    try:
        return model.model_validate(data)
    except PydanticValidationError as e:
        field_errors = _field_errors(e)
        summary = "; ".join(f"{k}: {v}" for k, v in field_errors.items())
        raise ValidationError(f"{step} details are invalid: {summary}", field_errors, code) from e


def validate_brand(data: dict | None) -> BrandPayload:
    """Validate the brand step.

    Raises:
        ValidationError: With per-field messages (code E-1001).
    """
    return _validate(BrandPayload, data, "brand", "E-1001")


def validate_campaign(data: dict | None) -> CampaignPayload:
    """Validate the campaign step (code E-1002 on failure)."""
    return _validate(CampaignPayload, data, "campaign", "E-1002")


def validate_compliance(data: dict | None) -> CompliancePayload:
    """Validate the compliance step (code E-1004 on failure)."""
    return _validate(CompliancePayload, data, "compliance", "E-1004")


def validate_phone_numbers(data: dict | list | None) -> list[str]:
    """Validate a selection payload: a list of numbers or ``{"phoneNumbers": [...]}``.

    Returns:
        Normalized, de-duplicated E.164 numbers.
    """
    if isinstance(data, list):
        data = {"phone_numbers": data}
    selection = _validate(PhoneNumberSelection, data, "phone_numbers", "E-1003")
    return selection.phone_numbers
