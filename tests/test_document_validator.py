from sophia_api.services.document_templates import BUILTIN_TEMPLATES, TemplateCatalog, compute_missing_fields
from sophia_api.services.document_validator import (
    apply_transforms,
    extract_bank_name_from_url,
    extract_fields,
    mask_phone_number,
    validate_field,
    validate_fields,
)

CATALOG = TemplateCatalog(BUILTIN_TEMPLATES)
REG_BANKS = CATALOG.get("reg_banks_property")
MARKETING = CATALOG.get("marketing_agreement")
VIEWING = CATALOG.get("viewing_form")


class TestPhoneMasking:
    def test_international_number(self):
        assert mask_phone_number("+357 99 07 67 32") == "+357 99 ** 67 32"

    def test_local_number(self):
        assert mask_phone_number("99 07 67 32") == "99 ** 67 32"

    def test_short_number_unchanged(self):
        assert mask_phone_number("+35799076732") == "+35799076732"

    def test_none(self):
        assert mask_phone_number(None) is None


class TestBankInference:
    def test_known_domains(self):
        assert extract_bank_name_from_url("https://www.remuproperties.com/Cyprus/listing-29190") == "Remu Team"
        assert extract_bank_name_from_url("https://www.altamirarealestate.com.cy/x") == "Altamira Team"

    def test_unknown_domain(self):
        assert extract_bank_name_from_url("https://example.com/listing") is None

    def test_transform_fills_bank_name(self):
        processed = apply_transforms(
            REG_BANKS,
            {"property_link": "https://www.remuproperties.com/Cyprus/listing-1", "client_phone": "+357 99 07 67 32"},
        )
        assert processed["bank_name"] == "Remu Team"
        assert processed["client_phone"] == "+357 99 ** 67 32"

    def test_transform_keeps_explicit_bank_name(self):
        processed = apply_transforms(
            REG_BANKS, {"bank_name": "Gordian Team", "property_link": "https://www.remuproperties.com/x"}
        )
        assert processed["bank_name"] == "Gordian Team"


class TestValidateField:
    def test_email(self):
        item = MARKETING.get_field("seller_email")
        assert validate_field(item, "andreas@example.com") == []
        assert validate_field(item, "andreas.example.com") == ["Invalid email format for Seller Email"]

    def test_url(self):
        item = REG_BANKS.get_field("property_link")
        assert validate_field(item, "https://www.remuproperties.com/x") == []
        assert "Invalid URL format for Property Link" in validate_field(item, "remuproperties.com")

    def test_phone_counts_masked_digits(self):
        item = REG_BANKS.get_field("client_phone")
        assert validate_field(item, "+357 99 ** 67 32") == []
        assert validate_field(item, "12 34") == ["Invalid phone number for Client Phone (too few digits)"]

    def test_date(self):
        item = VIEWING.get_field("viewing_date")
        assert validate_field(item, "21/03/2025") == []
        assert validate_field(item, "next tuesday") == ["Invalid date for Viewing Date (use DD/MM/YYYY)"]

    def test_select(self):
        item = MARKETING.get_field("fee_type")
        assert validate_field(item, "Percentage") == []
        assert validate_field(item, "hourly") == ["Fee Type must be one of: percentage, fixed"]

    def test_number(self):
        item = MARKETING.get_field("fee_percentage")
        assert validate_field(item, "5") == []
        assert validate_field(item, "five") == ["Fee Percentage must be a number"]

    def test_length_rules(self):
        item = VIEWING.get_field("client_id_number")
        assert validate_field(item, "K12") == ["ID/Passport Number must be at least 4 characters"]
        assert validate_field(item, "K" * 21) == ["ID/Passport Number must be at most 20 characters"]


class TestValidateFields:
    def test_missing_values_are_not_errors(self):
        report = validate_fields(VIEWING, {"client_name": "Maria Georgiou"})
        assert report.valid

    def test_hidden_fields_are_not_validated(self):
        report = validate_fields(MARKETING, {"fee_type": "fixed", "fee_percentage": "lots"})
        assert report.valid

    def test_unknown_fields_warn(self):
        report = validate_fields(VIEWING, {"shoe_size": "42"})
        assert report.valid
        assert report.warnings == ["Unknown field ignored: shoe_size"]


class TestMissingFields:
    def test_conditional_field_becomes_required(self):
        base = {
            "seller_name": "Andreas",
            "seller_email": "a@example.com",
            "property_address": "12 Makariou Ave",
        }
        assert compute_missing_fields(MARKETING, base) == ["fee_type"]
        assert compute_missing_fields(MARKETING, {**base, "fee_type": "percentage"}) == ["fee_percentage"]
        assert compute_missing_fields(MARKETING, {**base, "fee_type": "fixed"}) == ["fee_amount"]

    def test_optional_fields_never_missing(self):
        missing = compute_missing_fields(REG_BANKS, {})
        assert "bank_name" not in missing
        assert "property_description" not in missing
        assert missing == ["client_name", "client_phone", "property_link", "agent_phone"]


class TestExtractFields:
    def test_labelled_lines(self):
        extracted = extract_fields(
            VIEWING,
            "Client Name: Maria Georgiou\nViewing date: 21/03/2025\nProperty Reference: LIM-4432",
        )
        assert extracted == {
            "client_name": "Maria Georgiou",
            "viewing_date": "21/03/2025",
            "property_reference": "LIM-4432",
        }

    def test_url_and_phones_by_type(self):
        extracted = extract_fields(
            REG_BANKS,
            "https://www.remuproperties.com/Cyprus/listing-29190 client +357 99 07 67 32, agent +357 99 92 11 33",
        )
        assert extracted["property_link"] == "https://www.remuproperties.com/Cyprus/listing-29190"
        assert extracted["client_phone"] == "+357 99 07 67 32"
        assert extracted["agent_phone"] == "+357 99 92 11 33"

    def test_digits_inside_url_are_not_phones(self):
        extracted = extract_fields(REG_BANKS, "https://www.remuproperties.com/Cyprus/listing-2919012345")
        assert "client_phone" not in extracted

    def test_email(self):
        extracted = extract_fields(MARKETING, "his email is andreas@example.com")
        assert extracted["seller_email"] == "andreas@example.com"

    def test_percentage_goes_to_fee_field(self):
        extracted = extract_fields(MARKETING, "fee is 5%", {"fee_type": "percentage"})
        assert extracted["fee_percentage"] == "5"

    def test_bare_reply_fills_single_missing_field(self):
        collected = {"client_name": "Maria", "client_id_number": "K123456", "viewing_date": "21/03/2025"}
        assert extract_fields(VIEWING, "LIM-4432", collected) == {"property_reference": "LIM-4432"}

    def test_bare_reply_with_several_missing_is_ignored(self):
        assert extract_fields(VIEWING, "Maria") == {}

    def test_bare_reply_replaces_single_invalid_field(self):
        collected = {
            "client_name": "Maria",
            "client_id_number": "K123456",
            "viewing_date": "21/03/2025",
            "property_reference": "x",
        }
        extracted = extract_fields(VIEWING, "LIM-4432", collected, invalid=["property_reference"])
        assert extracted == {"property_reference": "LIM-4432"}

    def test_invalid_email_field_is_open_for_new_email(self):
        collected = {"seller_email": "andreas@"}
        extracted = extract_fields(MARKETING, "use andreas@example.com", collected, invalid=["seller_email"])
        assert extracted["seller_email"] == "andreas@example.com"
