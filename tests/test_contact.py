"""
Tests for contact mining and rendering.
"""

import pytest

from duki.contact import ContactDetails, extract_contact_details
from duki.utils import ResponseMode

from conftest import CORPUS_ENTRIES, make_entry


def test_extracts_all_fields_from_corpus():
    details = extract_contact_details(CORPUS_ENTRIES, "+91 00000 00000", "default@example.com")
    assert details.phone == "+91 98765 43210"
    assert details.email == "sales@dukejia.example"
    assert details.address == "Plot 12, Industrial Area, Ludhiana"
    assert details.source == "corpus"


def test_missing_fields_use_defaults():
    entries = [make_entry("x", "Write to us at hello@dukejia.example any time.", [1.0])]
    details = extract_contact_details(entries, "+91 93505 13789", "fallback@example.com", "Ludhiana")
    assert details.email == "hello@dukejia.example"
    assert details.phone == "+91 93505 13789"
    assert details.address == "Ludhiana"


def test_no_corpus_contact_is_defaults():
    details = extract_contact_details([], "+91 93505 13789", "Embroidery@grouphca.com")
    assert details.source == "defaults"
    assert details.address == ""


@pytest.mark.parametrize(
    "line, expected",
    [
        ("Call us on 98765 43210 for a demo", "98765 43210"),
        ("Serial 98765 43210 printed on the frame", ""),
        ("Helpline +91 98765 43210", "+91 98765 43210"),
    ],
)
def test_bare_digits_need_a_phone_hint(line, expected):
    details = extract_contact_details([make_entry("x", line, [1.0])])
    assert details.phone == expected


class TestRender:

    def test_english(self):
        details = ContactDetails(phone="+91 93505 13789", email="Embroidery@grouphca.com", address="")
        assert details.render() == (
            "Please contact our sales team at\nWhatsApp: +91 93505 13789\nEmail: Embroidery@grouphca.com"
        )

    def test_hinglish_includes_address(self):
        details = ContactDetails(phone="", email="a@b.co", address="Plot 12, Ludhiana")
        assert details.render(ResponseMode.HINGLISH).splitlines() == [
            "Hamari sales team se yahan sampark karein:",
            "Email: a@b.co",
            "Address: Plot 12, Ludhiana",
        ]
