import pytest

from authflow.service.identifiers import (
    identifier_bucket,
    is_national_id,
    mask_identifier,
    normalize_identifier,
    normalize_phone,
)


class TestPhoneNormalization:
    @pytest.mark.parametrize(
        "raw",
        [
            "+966512345678",
            "00966512345678",
            "966512345678",
            "0512345678",
            "512345678",
            "+966 51 234 5678",
            "051-234-5678",
        ],
    )
    def test_accepted_shapes_collapse_to_one_form(self, raw):
        assert normalize_phone(raw) == "+966512345678"

    @pytest.mark.parametrize("raw", ["", "0412345678", "51234567", "abc", "+1 555 0100"])
    def test_non_phones_return_none(self, raw):
        assert normalize_phone(raw) is None

    def test_custom_country_code(self):
        assert normalize_phone("0712345678", country_code="44", local_pattern=r"7\d{8}") == "+44712345678"


class TestIdentifierNormalization:
    def test_phone_is_canonicalised(self):
        assert normalize_identifier("0512345678") == "+966512345678"

    def test_national_id_passes_through(self):
        assert normalize_identifier("1012345678") == "1012345678"

    def test_other_identifiers_unchanged(self):
        assert normalize_identifier("someone@example.com") == "someone@example.com"

    def test_national_id_pattern(self):
        assert is_national_id("1012345678")
        assert is_national_id("2012345678")
        assert not is_national_id("3012345678")
        assert not is_national_id("101234567")
        assert not is_national_id("")


def test_identifier_bucket_is_stable_and_opaque():
    bucket = identifier_bucket("+966500000000")
    assert bucket == identifier_bucket("+966500000000")
    assert bucket.startswith("identifier:")
    assert "966500000000" not in bucket


def test_mask_identifier():
    assert mask_identifier("someone@example.com") == "s***@example.com"
    assert mask_identifier("+966512345678").endswith("78")
    assert "1234" not in mask_identifier("+966512345678")
    assert mask_identifier(None) == ""
    assert mask_identifier("abc") == "***"
