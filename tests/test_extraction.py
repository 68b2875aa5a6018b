"""
Tests for parsing business card extraction replies.

Run with: pytest tests/
"""

import json

from synergy_crm.extraction import (
    ExtractedContact,
    decode_embedded_json,
    decode_json,
    match_quoted_fields,
    parse_extraction,
)


CARD = {
    "full_name": "Grace Hopper",
    "email": "grace@navy.mil",
    "phone": "+1 555 0100",
    "company": "US Navy",
    "position": "Rear Admiral",
    "website": "navy.mil",
}


class TestStrictDecode:
    """The whole reply is a JSON object."""

    def test_clean_json(self):
        result = parse_extraction(json.dumps(CARD))

        assert result == ExtractedContact(**CARD)

    def test_missing_fields_are_none(self):
        result = parse_extraction('{"full_name": "Grace Hopper"}')

        assert result.full_name == "Grace Hopper"
        assert result.email is None
        assert result.website is None

    def test_camel_case_keys(self):
        result = parse_extraction('{"fullName": "Grace Hopper", "Email": "g@x.io"}')

        assert result.full_name == "Grace Hopper"
        assert result.email == "g@x.io"

    def test_null_and_nested_values_become_none(self):
        result = parse_extraction('{"full_name": null, "company": {"name": "Navy"}}')

        assert result.full_name is None
        assert result.company is None

    def test_list_wrapped_object(self):
        assert decode_json('[{"email": "g@x.io"}]') == {"email": "g@x.io"}

    def test_not_an_object(self):
        assert decode_json('"just a string"') is None
        assert decode_json("not json") is None


class TestFallbackRules:
    """Replies that need the fallback stage."""

    def test_code_fence(self):
        reply = f"Here is the card:\n```json\n{json.dumps(CARD)}\n```"

        assert parse_extraction(reply) == ExtractedContact(**CARD)

    def test_object_inside_prose(self):
        reply = 'Sure! {"full_name": "Grace Hopper", "email": "grace@navy.mil"} Hope that helps.'

        assert decode_embedded_json(reply) == {
            "full_name": "Grace Hopper",
            "email": "grace@navy.mil",
        }

    def test_truncated_json_uses_quoted_fields(self):
        reply = '{"full_name": "Grace Hopper", "email": "grace@navy.mil", "phone": '

        result = parse_extraction(reply)

        assert result.full_name == "Grace Hopper"
        assert result.email == "grace@navy.mil"
        assert result.phone is None

    def test_quoted_field_name_variants(self):
        record = match_quoted_fields("fullName: 'Grace Hopper', 'company': 'US Navy'")

        assert record["full_name"] == "Grace Hopper"
        assert record["company"] == "US Navy"
        assert record["email"] is None

    def test_earlier_rule_wins(self):
        reply = '```json\n{"full_name": "Grace Hopper"}\n```\n"full_name": "Someone Else"'

        assert parse_extraction(reply).full_name == "Grace Hopper"


class TestUnrecoverable:
    """Parsing never raises."""

    def test_garbage(self):
        result = parse_extraction("I cannot read this image, sorry.")

        assert result.is_empty

    def test_empty_and_none(self):
        assert parse_extraction("").is_empty
        assert parse_extraction(None).is_empty

    def test_as_contact_fields(self):
        fields = ExtractedContact(**CARD).as_contact_fields()

        assert fields["name"] == "Grace Hopper"
        assert "full_name" not in fields
