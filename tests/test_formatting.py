"""
Tests for machine-block formatting and pointwise conversion.
"""

from duki.formatting import (
    MAX_BULLETS,
    enforce_pointwise,
    format_machine_response,
    split_contact_lines,
    split_sentences,
    to_bullets,
)


class TestFormatMachineResponse:

    def test_embroidery_block(self):
        text = (
            "The DY-1201 is a single-head embroidery machine. "
            "It runs 1 head with 12 needles. Embroidery area is 400 x 500 mm."
        )
        block = format_machine_response(text)
        lines = block.splitlines()
        assert lines[0] == "**DY-1201: Embroidery Machine**"
        assert "**Description:** The DY-1201 is a single-head embroidery machine." in lines
        assert "• It runs 1 head with 12 needles." in lines
        assert "• 1 Heads, 12 Needles" in lines
        assert "• Embroidery Area: 400 x 500 mm" in lines
        assert lines[-2:] == ["**Next:**", "• Say “show features” or “full specs” for details"]

    def test_embroidery_without_numbers_says_on_request(self):
        block = format_machine_response("DY 900 is our compact embroidery model.")
        assert block.startswith("**DY-900: Embroidery Machine**")
        assert "• Head & needle info on request" in block
        assert "• Embroidery area available on request" in block

    def test_quilting_block_has_application(self):
        block = format_machine_response("The DY-Q12 quilting machine handles mattress panels.")
        assert block.startswith("**DY-Q12: Quilting Machine**")
        assert "**Application:**" in block
        assert "**Configuration:**" not in block

    def test_text_without_model_is_unchanged(self):
        text = "Our embroidery machines ship from Ludhiana."
        assert format_machine_response(text) == text

    def test_existing_list_is_unchanged(self):
        text = "DY-1201 embroidery:\n- 12 needles\n- 400 x 500 mm"
        assert format_machine_response(text) == text

    def test_contact_reply_is_unchanged(self):
        text = "Please contact our sales team at\nWhatsApp: +91 93505 13789"
        assert format_machine_response(text) == text


class TestEnforcePointwise:

    def test_paragraph_becomes_bullets_with_contact_kept_last(self):
        text = "Delivery takes two weeks. Installation is included.\nWhatsApp: +91 93505 13789"
        assert enforce_pointwise(text) == (
            "• Delivery takes two weeks.\n• Installation is included.\n\nWhatsApp: +91 93505 13789"
        )

    def test_single_sentence_is_unchanged(self):
        assert enforce_pointwise("Yes, it does.") == "Yes, it does."

    def test_heading_passes_through(self):
        block = "**DY-1201: Embroidery Machine**\n\n**Description:** One. Two."
        assert enforce_pointwise(block) == block

    def test_markup_passes_through(self):
        text = "<b>Hi.</b> There."
        assert enforce_pointwise(text) == text

    def test_contact_only_reply_passes_through(self):
        text = "Hamari sales team se yahan sampark karein:\nEmail: a@b.co"
        assert enforce_pointwise(text) == text


class TestHelpers:

    def test_to_bullets_folds_overflow_into_last_bullet(self):
        text = " ".join(f"Point {n}." for n in range(1, 11))
        bullets = to_bullets(text).splitlines()
        assert len(bullets) == MAX_BULLETS
        assert bullets[-1] == "• Point 8. Point 9. Point 10."

    def test_split_sentences_keeps_decimals_together(self):
        assert split_sentences("Speed is 1.2 m/s. 12 needles fitted.") == ["Speed is 1.2 m/s.", "12 needles fitted."]

    def test_split_contact_lines(self):
        rest, contact = split_contact_lines("Info here.\nEmail: x@y.com\nMore info.")
        assert rest == "Info here.\nMore info."
        assert contact == "Email: x@y.com"
