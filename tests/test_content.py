"""
Unit tests for campaign_engine/content.py
"""

import unittest
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


class TestNormalizeStructuredContent(unittest.TestCase):

    def test_legacy_string_split_into_paragraphs(self):
        from campaign_engine.content import normalize_structured_content

        pieces = normalize_structured_content("Dear Ann,\n\nThank you.\n   \n\nBest")

        self.assertEqual([p["piece"] for p in pieces], ["Dear Ann,", "Thank you.", "Best"])
        self.assertTrue(all(p["add_newline_after"] for p in pieces))

    def test_camel_case_flag_accepted(self):
        from campaign_engine.content import normalize_structured_content

        pieces = normalize_structured_content([
            {"piece": "Hi", "references": ["r1", 2], "addNewlineAfter": False},
            "plain string piece",
        ])

        self.assertEqual(pieces[0], {"piece": "Hi", "references": ["r1", "2"], "add_newline_after": False})
        self.assertEqual(pieces[1]["piece"], "plain string piece")

    def test_none_is_empty(self):
        from campaign_engine.content import normalize_structured_content

        self.assertEqual(normalize_structured_content(None), [])

    def test_invalid_shapes_rejected(self):
        from campaign_engine.content import normalize_structured_content
        from campaign_engine.errors import ValidationError

        for bad in (42, [{"text": "no piece"}], [{"piece": "x", "references": "r1"}]):
            with self.assertRaises(ValidationError):
                normalize_structured_content(bad)


class TestMigrateAndRender(unittest.TestCase):

    def test_migrates_old_document(self):
        from campaign_engine.content import CONTENT_VERSION, migrate_email_document

        doc = migrate_email_document({"structured_content": "One.\n\nTwo."})

        self.assertEqual(doc["content_version"], CONTENT_VERSION)
        self.assertEqual(len(doc["structured_content"]), 2)

    def test_current_document_untouched(self):
        from campaign_engine.content import CONTENT_VERSION, migrate_email_document

        pieces = [{"piece": "Hi", "references": [], "add_newline_after": False}]
        doc = migrate_email_document({"structured_content": pieces, "content_version": CONTENT_VERSION})

        self.assertIs(doc["structured_content"], pieces)

    def test_render_plain_text(self):
        from campaign_engine.content import render_plain_text

        text = render_plain_text([
            {"piece": "Dear Ann,", "add_newline_after": True},
            {"piece": "Thank you.", "add_newline_after": False},
            {"piece": "It matters.", "add_newline_after": False},
        ])

        self.assertEqual(text, "Dear Ann,\n\nThank you. It matters.")

    def test_text_to_html_escapes(self):
        from campaign_engine.content import text_to_html

        html = text_to_html("Tom & Jerry <3\n\nSecond")

        self.assertIn("Tom &amp; Jerry &lt;3</p><p>Second", html)


if __name__ == "__main__":
    unittest.main()
