"""Manifest Parser: the book's table of contents as a ManifestNode tree.

Two sources produce the same tree:

  SUMMARY.md (mdBook format)
      # Summary

      [Introduction](README.md)

      # Tutorial

      - [Functions](Tutorial/Functions1.md)
        - [Higher-order Functions](Tutorial/HigherOrder.md)
      - [Draft chapter]()

      ---

      [Appendix](appendix.md)

  YAML manifest
      chapters:
        - title: Intro
          path: intro
        - title: Sub
          path: intro/sub        # nests under "intro" by path prefix

Sibling order is kept exactly as written; it is the book's reading order.
"""

from __future__ import annotations

import posixpath
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator, Optional
from urllib.parse import unquote

import jsonschema
import yaml

from bookasm.config import load_schema
from bookasm.errors import MalformedManifest
from bookasm.load_fragments import normalize_path


MANIFEST_SCHEMA = "manifest_schema_v0.1.json"
LEVEL_NAMES = {1: "chapter", 2: "section", 3: "subsection"}
TAB_WIDTH = 4


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ManifestNode:
    """One table-of-contents entry."""
    title: str
    path: Optional[str]          # None for a draft chapter
    level: int                   # 1=chapter, 2=section, 3=subsection, ...
    children: tuple["ManifestNode", ...] = ()
    numbered: bool = True        # False for prefix/suffix chapters
    part: Optional[str] = None

    @property
    def is_draft(self) -> bool:
        return self.path is None

    @property
    def level_name(self) -> str:
        return LEVEL_NAMES.get(self.level, f"level-{self.level}")

    def walk(self) -> Iterator["ManifestNode"]:
        yield self
        for child in self.children:
            yield from child.walk()


@dataclass(frozen=True)
class Manifest:
    roots: tuple[ManifestNode, ...]
    title: Optional[str] = None

    def walk(self) -> Iterator[ManifestNode]:
        """Pre-order traversal over the whole tree."""
        for root in self.roots:
            yield from root.walk()

    def __len__(self) -> int:
        return sum(1 for _ in self.walk())


@dataclass
class _Draft:
    """Mutable node used while the tree is being built."""
    title: str
    path: Optional[str]
    numbered: bool = True
    part: Optional[str] = None
    children: list["_Draft"] = field(default_factory=list)

    def freeze(self, level: int = 1) -> ManifestNode:
        return ManifestNode(
            title=self.title,
            path=self.path,
            level=level,
            children=tuple(c.freeze(level + 1) for c in self.children),
            numbered=self.numbered,
            part=self.part,
        )


# ---------------------------------------------------------------------------
# SUMMARY.md
# ---------------------------------------------------------------------------

_LINK = r"\[(?P<title>(?:[^\]\\]|\\.)*)\]\((?P<path>[^)]*)\)"
_ITEM_RE = re.compile(r"^(?P<indent>[ \t]*)[-*+]\s+" + _LINK + r"\s*$")
_AFFIX_RE = re.compile(r"^" + _LINK + r"\s*$")
_HEADING_RE = re.compile(r"^#{1,6}\s+(.*?)(?:\s+#+)?\s*$")
_SEPARATOR_RE = re.compile(r"^\s*(-{3,}|\*{3,}|_{3,})\s*$")
_ESCAPE_RE = re.compile(r"\\(.)")


def _indent_width(indent: str) -> int:
    return sum(TAB_WIDTH if c == "\t" else 1 for c in indent)


def _link_parts(m: re.Match) -> tuple[str, Optional[str]]:
    title = _ESCAPE_RE.sub(r"\1", m.group("title")).strip()
    raw = m.group("path").strip()
    if not raw:
        return title, None
    path = normalize_path(unquote(raw))
    return title, path or None


def parse_summary_md(text: str) -> Manifest:
    """Parse mdBook SUMMARY.md text into a Manifest.

    Raises MalformedManifest for nesting that cannot be made into a tree:
    an indented entry with no preceding parent, a dedent that matches no
    open level, a prefix/suffix chapter between numbered chapters, or any
    line that is not part of the format.
    """
    book_title: Optional[str] = None
    part: Optional[str] = None
    roots: list[_Draft] = []
    stack: list[tuple[int, _Draft]] = []    # (indent, node) of open list items
    seen_numbered = False
    seen_suffix = False
    in_comment = False

    for line_no, line in enumerate(text.splitlines(), start=1):
        stripped = line.strip()

        if in_comment:
            if "-->" in stripped:
                in_comment = False
            continue
        if stripped.startswith("<!--"):
            in_comment = "-->" not in stripped
            continue
        if not stripped or _SEPARATOR_RE.match(line):
            continue

        m = _ITEM_RE.match(line)
        if m:
            if seen_suffix:
                raise MalformedManifest(
                    "numbered chapter after a suffix chapter", line_no=line_no)
            indent = _indent_width(m.group("indent"))
            title, path = _link_parts(m)
            node = _Draft(title=title, path=path, part=part)

            if not stack:
                if indent > 0:
                    raise MalformedManifest(
                        f"entry '{title}' is indented but has no preceding parent",
                        line_no=line_no, path=path)
                roots.append(node)
                stack.append((indent, node))
            elif indent > stack[-1][0]:
                stack[-1][1].children.append(node)
                stack.append((indent, node))
            else:
                while stack and stack[-1][0] > indent:
                    stack.pop()
                if not stack or stack[-1][0] != indent:
                    raise MalformedManifest(
                        f"entry '{title}' dedents to an indentation ({indent}) "
                        f"that matches no enclosing level",
                        line_no=line_no, path=path)
                stack.pop()
                if stack:
                    stack[-1][1].children.append(node)
                else:
                    roots.append(node)
                stack.append((indent, node))
            seen_numbered = True
            continue

        m = _AFFIX_RE.match(line)
        if m:
            title, path = _link_parts(m)
            if path is None:
                raise MalformedManifest(
                    f"prefix/suffix chapter '{title}' has no target", line_no=line_no)
            if seen_numbered:
                seen_suffix = True
            roots.append(_Draft(title=title, path=path, numbered=False))
            stack = []
            continue

        m = _HEADING_RE.match(stripped)
        if m and not line[:1].isspace():
            if book_title is None and not roots:
                book_title = m.group(1)
            else:
                part = m.group(1)
                stack = []
            continue

        raise MalformedManifest(f"unrecognized manifest line: {stripped!r}", line_no=line_no)

    title = book_title if book_title and book_title.lower() != "summary" else None
    return Manifest(roots=tuple(r.freeze() for r in roots), title=title)


# ---------------------------------------------------------------------------
# YAML / entry lists
# ---------------------------------------------------------------------------

def _path_stem(path: str) -> str:
    stem, ext = posixpath.splitext(path)
    return stem if ext else path


def _is_under(path: Optional[str], parent: Optional[str]) -> bool:
    if not path or not parent:
        return False
    return path.startswith(_path_stem(parent) + "/")


def _drafts_from_entries(entries: list[dict]) -> list[_Draft]:
    """Build draft nodes for one list level, nesting by path prefix."""
    result: list[_Draft] = []
    open_chain: list[_Draft] = []
    for entry in entries:
        raw = entry.get("path")
        path = normalize_path(raw) if raw else None
        node = _Draft(
            title=entry["title"],
            path=path or None,
            numbered=entry.get("numbered", True),
        )
        node.children.extend(_drafts_from_entries(entry.get("children") or []))

        while open_chain and not _is_under(node.path, open_chain[-1].path):
            open_chain.pop()
        if open_chain:
            open_chain[-1].children.append(node)
        else:
            result.append(node)
        open_chain.append(node)
    return result


def manifest_from_entries(entries: list[dict], title: Optional[str] = None) -> Manifest:
    """Build a Manifest from a list of {title, path, children?, numbered?} mappings."""
    try:
        jsonschema.validate({"chapters": entries}, load_schema(MANIFEST_SCHEMA))
    except jsonschema.ValidationError as e:
        where = "/".join(str(p) for p in e.absolute_path) or "<root>"
        raise MalformedManifest(f"manifest schema FAIL at {where}: {e.message}") from e
    roots = _drafts_from_entries(entries)
    return Manifest(roots=tuple(r.freeze() for r in roots), title=title)


def parse_manifest_yaml(text: str) -> Manifest:
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise MalformedManifest(f"manifest is not valid YAML: {e}") from e
    if not isinstance(data, dict) or "chapters" not in data:
        raise MalformedManifest("manifest YAML must be a mapping with a 'chapters' list")
    title = data.get("title")
    if title is not None and not isinstance(title, str):
        raise MalformedManifest("manifest 'title' must be a string")
    return manifest_from_entries(data["chapters"], title=title)


def parse_manifest(text: str, source_name: str = "SUMMARY.md") -> Manifest:
    """Dispatch on the manifest file's extension."""
    if Path(source_name).suffix.lower() in (".yaml", ".yml"):
        return parse_manifest_yaml(text)
    return parse_summary_md(text)


def load_manifest(path: str) -> Manifest:
    try:
        with open(path, encoding="utf-8") as f:
            text = f.read()
    except OSError as e:
        raise MalformedManifest(f"Failed to read manifest {path}: {e}", path=path) from e
    return parse_manifest(text, path)
