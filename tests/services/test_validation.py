"""Tests for wizard payload validation."""

import pytest

from a2p_registry.errors import ValidationError
from a2p_registry.services.validation import (
    normalize_e164,
    validate_brand,
    validate_campaign,
    validate_compliance,
    validate_phone_numbers,
)
from tests.helpers import brand_form, campaign_form, compliance_form


class TestNormalizeE164:

    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("+14155550101", "+14155550101"),
            ("(415) 555-0101", "+14155550101"),
            ("1-415-555-0101", "+14155550101"),
            ("+44 20 7946 0958", "+442079460958"),
        ],
    )
    def test_accepted_forms(self, raw, expected):
        assert normalize_e164(raw) == expected

    @pytest.mark.parametrize("raw", ["", "555-0101", "+0123456789", "not a number"])
    def test_rejected_forms(self, raw):
        with pytest.raises(ValueError):
            normalize_e164(raw)


class TestBrand:

    def test_valid_brand(self):
        brand = validate_brand(brand_form())

        assert brand.legal_business_name == "Acme Plumbing LLC"
        assert brand.business_type == "llc"
        assert brand.primary_contact.phone == "+14155550100"

    def test_gateway_payload(self):
        payload = validate_brand(brand_form(displayName="")).to_gateway_payload()

        assert payload["display_name"] == "Acme Plumbing LLC"
        assert payload["address"]["zip_code"] == "94105"

    def test_snake_case_accepted(self):
        data = brand_form()
        data["legal_business_name"] = data.pop("legalBusinessName")

        assert validate_brand(data).legal_business_name == "Acme Plumbing LLC"

    def test_missing_payload(self):
        with pytest.raises(ValidationError) as exc_info:
            validate_brand(None)
        assert exc_info.value.code == "E-1001"
        assert exc_info.value.field_errors == {"brand": "missing"}

    def test_field_errors_are_collected(self):
        data = brand_form(ein="123", businessDescription="Too short")
        data["businessAddress"] = dict(data["businessAddress"], zipCode="ABCDE")

        with pytest.raises(ValidationError) as exc_info:
            validate_brand(data)

        errors = exc_info.value.field_errors
        assert "ein" in errors
        assert "businessDescription" in errors
        assert "businessAddress.zipCode" in errors

    def test_unknown_business_type(self):
        with pytest.raises(ValidationError):
            validate_brand(brand_form(businessType="cooperative"))


class TestCampaign:

    def test_valid_campaign(self):
        campaign = validate_campaign(campaign_form())
        assert campaign.traffic_type == "transactional"
        assert len(campaign.sample_messages) == 2

    def test_needs_two_sample_messages(self):
        with pytest.raises(ValidationError) as exc_info:
            validate_campaign(campaign_form(sampleMessages=["Only one", "  "]))
        assert exc_info.value.code == "E-1002"
        assert "sampleMessages" in exc_info.value.field_errors

    def test_sample_message_length(self):
        with pytest.raises(ValidationError):
            validate_campaign(campaign_form(sampleMessages=["x" * 161, "short one"]))

    def test_promotional_needs_privacy_policy(self):
        with pytest.raises(ValidationError):
            validate_campaign(campaign_form(trafficType="Promotional"))

        campaign = validate_campaign(
            campaign_form(
                trafficType="promotional",
                privacyPolicyUrl="https://acme-plumbing.example.com/privacy",
            )
        )
        assert campaign.traffic_type == "promotional"

    def test_gateway_payload_carries_brand_reference(self):
        payload = validate_campaign(campaign_form()).to_gateway_payload("BN-100")
        assert payload["brand_reference_id"] == "BN-100"


class TestCompliance:

    def test_valid_compliance(self):
        assert validate_compliance(compliance_form()).ctia_compliance

    def test_every_attestation_required(self):
        with pytest.raises(ValidationError) as exc_info:
            validate_compliance(compliance_form(tcpaCompliance=False, ctiaCompliance=False))
        assert exc_info.value.code == "E-1004"
        assert "TCPA" in str(exc_info.value)
        assert "CTIA" in str(exc_info.value)


class TestPhoneNumbers:

    def test_list_or_wrapped(self):
        expected = ["+14155550101", "+14155550102"]
        assert validate_phone_numbers(["4155550101", "+14155550102"]) == expected
        assert validate_phone_numbers({"phoneNumbers": expected}) == expected

    def test_duplicates_collapse_in_order(self):
        numbers = validate_phone_numbers(["+14155550102", "(415) 555-0101", "415.555.0102"])
        assert numbers == ["+14155550102", "+14155550101"]

    def test_malformed_number(self):
        with pytest.raises(ValidationError) as exc_info:
            validate_phone_numbers(["+14155550101", "12"])
        assert exc_info.value.code == "E-1003"
