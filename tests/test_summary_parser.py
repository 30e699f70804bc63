#!/usr/bin/env python3
"""
Tests for the Manifest Parser (bookasm/parse_summary.py)

Run: python -m pytest tests/test_summary_parser.py -q
"""

import pytest

from bookasm.errors import MalformedManifest
from bookasm.parse_summary import (
    Manifest,
    ManifestNode,
    load_manifest,
    manifest_from_entries,
    parse_manifest,
    parse_manifest_yaml,
    parse_summary_md,
)


# ---------------------------------------------------------------------------
# Test data helpers
# ---------------------------------------------------------------------------

SAMPLE_SUMMARY = """\
# Summary

[Introduction](README.md)

# Tutorial

- [Functions Part 1](Tutorial/Functions1.md)
  - [Higher-order Functions](Tutorial/HigherOrder.md)
    - [Exercises](Tutorial/HigherOrderExercises.md)
  - [Folds](Tutorial/Folds.md)
- [Dependent Types](Tutorial/DPair.md)
- [Coming Soon]()

---

[Appendix](Appendix/Install.md)
"""

SAMPLE_YAML = """\
title: Functional Programming in Idris 2
chapters:
  - title: Introduction
    path: README.md
    numbered: false
  - title: Functions
    path: Tutorial/Functions1.md
    children:
      - title: Higher-order Functions
        path: Tutorial/HigherOrder.md
  - title: Types
    path: Tutorial/DPair.md
"""


def _titles(nodes) -> list[str]:
    return [n.title for n in nodes]


# ---------------------------------------------------------------------------
# SUMMARY.md
# ---------------------------------------------------------------------------

class TestParseSummaryStructure:
    def test_root_order(self):
        m = parse_summary_md(SAMPLE_SUMMARY)
        assert _titles(m.roots) == [
            "Introduction", "Functions Part 1", "Dependent Types", "Coming Soon", "Appendix",
        ]

    def test_nesting_and_levels(self):
        m = parse_summary_md(SAMPLE_SUMMARY)
        functions = m.roots[1]
        assert functions.level == 1
        assert _titles(functions.children) == ["Higher-order Functions", "Folds"]
        hof = functions.children[0]
        assert hof.level == 2
        assert hof.level_name == "section"
        assert hof.children[0].title == "Exercises"
        assert hof.children[0].level == 3
        assert hof.children[0].level_name == "subsection"

    def test_preorder_walk(self):
        m = parse_summary_md(SAMPLE_SUMMARY)
        assert [n.path for n in m.walk()] == [
            "README.md",
            "Tutorial/Functions1.md",
            "Tutorial/HigherOrder.md",
            "Tutorial/HigherOrderExercises.md",
            "Tutorial/Folds.md",
            "Tutorial/DPair.md",
            None,
            "Appendix/Install.md",
        ]
        assert len(m) == 8

    def test_prefix_and_suffix_unnumbered(self):
        m = parse_summary_md(SAMPLE_SUMMARY)
        assert m.roots[0].numbered is False
        assert m.roots[-1].numbered is False
        assert all(n.numbered for n in m.roots[1:-1])

    def test_draft_chapter(self):
        m = parse_summary_md(SAMPLE_SUMMARY)
        draft = m.roots[3]
        assert draft.is_draft
        assert draft.path is None
        assert draft.numbered is True

    def test_part_titles(self):
        m = parse_summary_md(SAMPLE_SUMMARY)
        assert m.roots[0].part is None
        assert m.roots[1].part == "Tutorial"
        assert m.roots[1].children[0].part == "Tutorial"

    def test_summary_title_not_used_as_book_title(self):
        assert parse_summary_md(SAMPLE_SUMMARY).title is None
        assert parse_summary_md("# My Book\n\n- [A](a.md)\n").title == "My Book"

    def test_nodes_are_immutable(self):
        m = parse_summary_md(SAMPLE_SUMMARY)
        assert isinstance(m.roots, tuple)
        assert isinstance(m.roots[1].children, tuple)
        with pytest.raises(AttributeError):
            m.roots[1].title = "x"


class TestParseSummaryDetails:
    def test_star_bullets(self):
        m = parse_summary_md("* [A](a.md)\n  * [B](b.md)\n")
        assert m.roots[0].children[0].path == "b.md"

    def test_tab_indent(self):
        m = parse_summary_md("- [A](a.md)\n\t- [B](b.md)\n")
        assert _titles(m.roots[0].children) == ["B"]

    def test_deep_indent_jump_is_a_child(self):
        m = parse_summary_md("- [A](a.md)\n        - [B](b.md)\n- [C](c.md)\n")
        assert _titles(m.roots) == ["A", "C"]
        assert _titles(m.roots[0].children) == ["B"]

    def test_percent_decoded_path(self):
        m = parse_summary_md("- [A](my%20file.md)\n")
        assert m.roots[0].path == "my file.md"

    def test_dot_slash_path(self):
        m = parse_summary_md("- [A](./Tutorial/A.md)\n")
        assert m.roots[0].path == "Tutorial/A.md"

    def test_escaped_brackets_in_title(self):
        m = parse_summary_md("- [Arrays \\[\\] and more](a.md)\n")
        assert m.roots[0].title == "Arrays [] and more"

    def test_comments_skipped(self):
        text = "<!-- single -->\n- [A](a.md)\n<!--\n- [Hidden](h.md)\n-->\n- [B](b.md)\n"
        m = parse_summary_md(text)
        assert _titles(m.roots) == ["A", "B"]

    def test_empty_manifest(self):
        m = parse_summary_md("# Summary\n")
        assert m.roots == ()
        assert len(m) == 0


class TestParseSummaryMalformed:
    def test_indented_first_entry(self):
        with pytest.raises(MalformedManifest) as exc:
            parse_summary_md("  - [Orphan](a.md)\n")
        assert exc.value.line_no == 1
        assert "no preceding parent" in str(exc.value)

    def test_dedent_to_unknown_level(self):
        text = "- [A](a.md)\n    - [B](b.md)\n  - [C](c.md)\n"
        with pytest.raises(MalformedManifest) as exc:
            parse_summary_md(text)
        assert exc.value.line_no == 3
        assert exc.value.path == "c.md"

    def test_unrecognized_line(self):
        with pytest.raises(MalformedManifest) as exc:
            parse_summary_md("- [A](a.md)\nsome prose\n")
        assert exc.value.line_no == 2

    def test_numbered_after_suffix(self):
        with pytest.raises(MalformedManifest):
            parse_summary_md("- [A](a.md)\n[S](s.md)\n- [B](b.md)\n")

    def test_affix_without_target(self):
        with pytest.raises(MalformedManifest):
            parse_summary_md("[Draft prefix]()\n")


# ---------------------------------------------------------------------------
# YAML / entry lists
# ---------------------------------------------------------------------------

class TestManifestFromEntries:
    def test_path_prefix_nesting(self):
        m = manifest_from_entries([
            {"title": "Intro", "path": "intro"},
            {"title": "Sub", "path": "intro/sub"},
        ])
        assert len(m.roots) == 1
        intro = m.roots[0]
        assert intro.path == "intro"
        assert [c.path for c in intro.children] == ["intro/sub"]
        assert intro.children[0].level == 2

    def test_prefix_nesting_ignores_extension(self):
        m = manifest_from_entries([
            {"title": "Intro", "path": "intro.md"},
            {"title": "Sub", "path": "intro/sub.md"},
            {"title": "Deeper", "path": "intro/sub/deeper.md"},
            {"title": "Next", "path": "next.md"},
        ])
        assert _titles(m.roots) == ["Intro", "Next"]
        assert m.roots[0].children[0].children[0].title == "Deeper"

    def test_siblings_stay_flat(self):
        m = manifest_from_entries([
            {"title": "A", "path": "a.md"},
            {"title": "B", "path": "b.md"},
        ])
        assert _titles(m.roots) == ["A", "B"]

    def test_similar_name_is_not_a_child(self):
        m = manifest_from_entries([
            {"title": "Intro", "path": "intro"},
            {"title": "Introduction", "path": "introduction"},
        ])
        assert _titles(m.roots) == ["Intro", "Introduction"]

    def test_explicit_children(self):
        m = manifest_from_entries([
            {"title": "A", "path": "a.md", "children": [{"title": "B", "path": "b.md"}]},
        ])
        assert m.roots[0].children[0].path == "b.md"

    def test_schema_violation(self):
        with pytest.raises(MalformedManifest):
            manifest_from_entries([{"path": "a.md"}])

    def test_unknown_key(self):
        with pytest.raises(MalformedManifest):
            manifest_from_entries([{"title": "A", "path": "a.md", "colour": "red"}])


class TestParseManifestYaml:
    def test_parses_tree(self):
        m = parse_manifest_yaml(SAMPLE_YAML)
        assert m.title == "Functional Programming in Idris 2"
        assert _titles(m.roots) == ["Introduction", "Functions", "Types"]
        assert m.roots[0].numbered is False
        assert m.roots[1].children[0].title == "Higher-order Functions"

    def test_not_a_mapping(self):
        with pytest.raises(MalformedManifest):
            parse_manifest_yaml("- a\n- b\n")

    def test_invalid_yaml(self):
        with pytest.raises(MalformedManifest):
            parse_manifest_yaml("chapters: [unclosed\n")

    def test_missing_title(self):
        with pytest.raises(MalformedManifest):
            parse_manifest_yaml("chapters:\n  - path: a.md\n")


class TestParseManifestDispatch:
    def test_yaml_by_extension(self):
        m = parse_manifest(SAMPLE_YAML, "book_manifest.yaml")
        assert isinstance(m, Manifest)
        assert m.title == "Functional Programming in Idris 2"

    def test_markdown_default(self):
        m = parse_manifest(SAMPLE_SUMMARY)
        assert isinstance(m.roots[0], ManifestNode)
        assert m.roots[0].path == "README.md"

    def test_load_manifest_from_file(self, tmp_path):
        p = tmp_path / "SUMMARY.md"
        p.write_text(SAMPLE_SUMMARY, encoding="utf-8")
        assert len(load_manifest(str(p))) == 8

    def test_load_missing_file(self, tmp_path):
        with pytest.raises(MalformedManifest):
            load_manifest(str(tmp_path / "missing.md"))
