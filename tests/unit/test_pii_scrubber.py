"""
Unit tests for the PII Scrubber service.
"""
import pytest
from ndr_backend.app.services.pii_scrubber import PIIScrubber


@pytest.fixture
def scrubber():
    return PIIScrubber()


def test_scrub_indian_mobile_numbers(scrubber):
    """+91 and bare 10-digit mobiles are scrubbed."""
    text = "Called +91 98765 43210 and 9123456789, both switched off"
    scrubbed, manifest = scrubber.scrub(text)
    assert "98765 43210" not in scrubbed
    assert "9123456789" not in scrubbed
    assert scrubbed.count("[PHONE_REDACTED]") == 2
    assert all(m["field_type"] == "phone_in" for m in manifest)


def test_scrub_email(scrubber):
    scrubbed, manifest = scrubber.scrub("Customer asked to mail ravi.k@example.com")
    assert "ravi.k@example.com" not in scrubbed
    assert "[EMAIL_REDACTED]" in scrubbed
    assert [m["field_type"] for m in manifest] == ["email"]


def test_scrub_consignee_name_keeps_label(scrubber):
    scrubbed, _ = scrubber.scrub("Consignee: Ravi Kumar not at home")
    assert "Ravi Kumar" not in scrubbed
    assert scrubbed.startswith("Consignee: [NAME_REDACTED]")


def test_scrub_pincode(scrubber):
    scrubbed, manifest = scrubber.scrub("Area 560001 not serviceable today")
    assert "560001" not in scrubbed
    assert "[PINCODE_REDACTED]" in scrubbed
    assert manifest[0]["field_type"] == "pincode"


def test_scrub_manifest_produced(scrubber):
    """Manifest contains hash of original value, not the value itself."""
    text = "Receiver: Anita Rao (9876543210)"
    scrubbed, manifest = scrubber.scrub(text)
    assert len(manifest) == 2
    for item in manifest:
        assert "original_value_hash" in item
        assert "replacement" in item
        assert "Anita" not in item["original_value_hash"]
        assert "9876543210" not in item["original_value_hash"]
        # Truncated SHA-256
        assert len(item["original_value_hash"]) == 16


def test_passthrough_operational_text(scrubber):
    """Shipment references and hub names are NOT scrubbed."""
    text = "Shipment AWB1001 undelivered at Bengaluru Hub, door locked"
    scrubbed, manifest = scrubber.scrub(text)
    assert scrubbed == text
    assert manifest == []


def test_fields_can_be_passed_through():
    scrubber = PIIScrubber(fields_to_pass_through=["pincode"])
    scrubbed, manifest = scrubber.scrub("Wrong pincode 110001 given")
    assert "110001" in scrubbed
    assert manifest == []
