"""
Unit tests for the sanitizer module.
"""

import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "../../backend"))

from sanitizer import sanitize, tag_cluster_spans


SAMPLE = """---
title: Reading notes
tags: [books]
---
# Heading

Some **bold** text with a [link](http://example.com) and [[Page|alias]].

#tag1 #tag2
#tag3

End.
"""


class TestSanitizer:
    """Test suite for sanitize()."""

    def test_strips_markup_and_keeps_text(self):
        result = sanitize(SAMPLE)
        assert result.text == "Heading\n\nSome bold text with a link and alias.\n\nEnd."

    def test_position_map_matches_text_length(self):
        result = sanitize(SAMPLE)
        assert len(result.position_map) == len(result.text)

    def test_position_map_points_at_same_characters(self):
        result = sanitize(SAMPLE)
        for i, ch in enumerate(result.text):
            assert SAMPLE[result.position_map[i]] == ch

    def test_span_maps_back_to_original(self):
        result = sanitize(SAMPLE)
        start = result.text.index("bold")
        a, b = result.to_original(start, start + 4)
        assert SAMPLE[a:b] == "bold"

    def test_degenerate_span_is_clamped(self):
        result = sanitize(SAMPLE)
        a, b = result.to_original(len(result.text), len(result.text))
        assert a == b == len(SAMPLE)
        a, b = result.to_original(3, 3)
        assert a == b <= len(SAMPLE)

    def test_empty_input(self):
        result = sanitize("")
        assert result.text == ""
        assert result.position_map == []
        assert result.to_original(0, 0) == (0, 0)

    def test_code_blocks_and_inline_code_removed(self):
        text = "Before\n\n```python\nprint('x')\n```\n\nUse `foo()` here."
        result = sanitize(text)
        assert "print" not in result.text
        assert "foo()" not in result.text
        assert result.text.startswith("Before")
        assert result.text.endswith("here.")

    def test_media_urls_and_html_removed(self):
        text = "Look ![[diagram.png]] and ![alt](img.png) at <b>www.example.com</b> now https://x.y/z ok"
        result = sanitize(text)
        assert "diagram" not in result.text
        assert "alt" not in result.text
        assert "example" not in result.text
        assert "https" not in result.text
        assert "<b>" not in result.text
        assert result.text.startswith("Look")
        assert result.text.endswith("ok")

    def test_angle_bracket_comparisons_are_kept(self):
        """Test that prose using < and > is not mistaken for HTML."""
        assert sanitize("if a<b and c>d then swap").text == "if a<b and c>d then swap"
        assert sanitize("x < y > z").text == "x < y > z"

    def test_html_tags_with_attributes_removed(self):
        result = sanitize('<span class="x" data-id=3>hi</span> and <br/> done')
        assert result.text == "hi and  done"

    def test_list_markers_and_quotes_stripped(self):
        text = "- first item\n* second item\n1. third item\n> quoted line"
        result = sanitize(text)
        assert result.text == "first item\nsecond item\nthird item\nquoted line"

    def test_snake_case_is_not_emphasis(self):
        result = sanitize("keep snake_case_names and _real emphasis_")
        assert result.text == "keep snake_case_names and real emphasis"

    def test_collapses_blank_runs(self):
        result = sanitize("one\n\n\n\n\ntwo\n   \n\n\nthree")
        assert result.text == "one\n\ntwo\n\nthree"
        assert len(result.position_map) == len(result.text)

    @pytest.mark.parametrize(
        "text",
        [
            "plain",
            "   leading and trailing   ",
            "#only #tags",
            "[[a]] [[b|c]] [d](e)",
            "**unterminated bold",
            "---\nno closing front matter",
            "\n\n\n",
        ],
    )
    def test_map_invariant_holds(self, text):
        result = sanitize(text)
        assert len(result.position_map) == len(result.text)
        for i in range(len(result.text)):
            assert 0 <= result.position_map[i] < len(text)
        a, b = result.to_original(0, len(result.text))
        assert 0 <= a <= b <= len(text)


class TestTagClusters:
    """Tag-dominated lines are removed as merged spans."""

    def test_adjacent_tag_lines_merge(self):
        text = "intro\n#a #b\n\n#c\nbody"
        spans = tag_cluster_spans(text)
        assert len(spans) == 1
        start, end = spans[0]
        assert text[start:end] == "#a #b\n\n#c\n"

    def test_large_gap_splits_clusters(self):
        text = "#a\n\n\n\n#b\n"
        assert len(tag_cluster_spans(text)) == 2

    def test_heading_is_not_a_tag_line(self):
        assert tag_cluster_spans("# Heading\nText") == []

    def test_prose_with_one_tag_is_kept(self):
        assert tag_cluster_spans("A sentence mentioning #topic in passing.") == []
