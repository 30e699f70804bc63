"""Fragment Store: per-chapter Markdown fragments keyed by path.

A fragment is one Markdown source file of the book. On load we pull out:
  - the first heading (the fragment's title, used later for variant grouping)
  - the module tag of literate code (``module Tutorial.Functions1``)
  - every outgoing link target, normalized relative to the fragment

Fenced code is never scanned for links or headings.
"""

from __future__ import annotations

import posixpath
import re
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Optional
from urllib.parse import unquote

from bookasm.errors import BookBuildError, DuplicatePath


# ---------------------------------------------------------------------------
# Markdown scanning helpers
# ---------------------------------------------------------------------------

_FENCE_RE = re.compile(r"^\s{0,3}(`{3,}|~{3,})")
ATX_RE = re.compile(r"^\s{0,3}(#{1,6})(?:\s+(.*?))?(?:\s+#+)?\s*$")
SETEXT_RE = re.compile(r"^\s{0,3}(=+|-+)\s*$")
INLINE_CODE_RE = re.compile(r"(`+)(.+?)\1")
LINK_RE = re.compile(
    r"(?<!!)\[((?:[^\[\]\\]|\\.)*)\]\(\s*<?([^)\s>]*)>?(?:\s+[\"'][^\"']*[\"'])?\s*\)"
)
_AUTOLINK_RE = re.compile(r"<([A-Za-z][A-Za-z0-9+.\-]*:[^>\s]+)>")
REFDEF_RE = re.compile(r"^\s{0,3}\[(?!\^)([^\]]+)\]:\s*<?([^\s>]+)>?")
_SCHEME_RE = re.compile(r"^[A-Za-z][A-Za-z0-9+.\-]*:")
_MODULE_RE = re.compile(r"^\s*module\s+([A-Za-z][\w.']*)\s*$")

# Lines that may precede the real heading of a literate fragment.
DEFAULT_BOILERPLATE = (
    re.compile(r"^\s*>?\s*module\s+[\w.']+\s*$"),     # module declaration
    re.compile(r"^\s*>?\s*import\s+(public\s+)?[\w.']+"),
    re.compile(r"^\s*[\w.]*>\s"),                      # REPL prompt: Main> :t foo
    re.compile(r"^\s*(Idris\s*2?|Version)\s+\d[\w.\-]*", re.IGNORECASE),
    re.compile(r"^\s*[_/\\|() ]{6,}\s*$"),              # ASCII-art banner
    re.compile(r"^\s*%\w+"),                           # pragmas: %default total
)


def fence_states(lines: list[str]) -> Iterator[tuple[str, bool]]:
    """Yield (line, in_code) pairs; fence delimiter lines count as code."""
    fence: Optional[str] = None
    for line in lines:
        m = _FENCE_RE.match(line)
        if fence is None:
            if m:
                fence = m.group(1)
                yield line, True
                continue
            yield line, False
        else:
            if m and m.group(1)[0] == fence[0] and len(m.group(1)) >= len(fence) \
                    and not line.strip()[len(m.group(1)):].strip():
                fence = None
            yield line, True


def strip_inline_code(line: str) -> str:
    return INLINE_CODE_RE.sub("", line)


def strip_front_matter(text: str) -> str:
    """Drop a leading YAML front matter block, if any."""
    if not text.startswith("---\n"):
        return text
    end = text.find("\n---", 4)
    if end == -1:
        return text
    nl = text.find("\n", end + 4)
    return "" if nl == -1 else text[nl + 1:]


def is_external(target: str) -> bool:
    return bool(_SCHEME_RE.match(target))


def normalize_path(path: str) -> str:
    """Normalize a fragment path to the store's key form (POSIX, no ./ or leading /)."""
    p = path.replace("\\", "/").strip()
    p = p.lstrip("/")
    if not p:
        return ""
    p = posixpath.normpath(p)
    return "" if p == "." else p


def split_anchor(target: str) -> tuple[str, str]:
    """'a/b.md#x' -> ('a/b.md', 'x')"""
    path, _, anchor = target.partition("#")
    return path, anchor


def normalize_target(source_path: str, target: str) -> str:
    """Resolve a link target as written in ``source_path`` to a store-relative form."""
    target = target.strip()
    if not target or target.startswith("#") or is_external(target):
        return target
    path, anchor = split_anchor(target)
    path = unquote(path.split("?", 1)[0])
    if path.startswith("/"):
        resolved = normalize_path(path)
    else:
        resolved = normalize_path(posixpath.join(posixpath.dirname(source_path), path))
    if not resolved:
        return f"#{anchor}" if anchor else source_path
    return f"{resolved}#{anchor}" if anchor else resolved


# ---------------------------------------------------------------------------
# Fragment parsing
# ---------------------------------------------------------------------------

def _is_boilerplate(line: str, boilerplate: Iterable[re.Pattern]) -> bool:
    return any(p.match(line) for p in boilerplate)


def first_heading(text: str, boilerplate: Iterable[re.Pattern] = ()) -> str:
    """Return the first ATX or setext heading outside code, skipping boilerplate lines."""
    patterns = list(DEFAULT_BOILERPLATE) + list(boilerplate)
    prev: Optional[str] = None
    for line, in_code in fence_states(strip_front_matter(text).splitlines()):
        if in_code:
            prev = None
            continue
        if not line.strip():
            prev = None
            continue
        if _is_boilerplate(line, patterns):
            prev = None
            continue
        m = ATX_RE.match(line)
        if m:
            if m.group(2):
                return m.group(2).strip()
            prev = None
            continue
        if prev is not None and SETEXT_RE.match(line):
            return prev.strip()
        prev = line
    return ""


def extract_module(text: str) -> Optional[str]:
    """Module tag of the first code block that declares one."""
    for line, in_code in fence_states(text.splitlines()):
        if not in_code:
            continue
        m = _MODULE_RE.match(line)
        if m:
            return m.group(1)
    return None


def extract_references(path: str, text: str) -> tuple[str, ...]:
    """Outgoing link targets in document order, de-duplicated, images excluded."""
    seen: dict[str, None] = {}
    for line, in_code in fence_states(text.splitlines()):
        if in_code:
            continue
        m = REFDEF_RE.match(line)
        if m:
            seen.setdefault(normalize_target(path, m.group(2)), None)
            continue
        scan = strip_inline_code(line)
        for m in LINK_RE.finditer(scan):
            if m.group(2):
                seen.setdefault(normalize_target(path, m.group(2)), None)
        for m in _AUTOLINK_RE.finditer(scan):
            seen.setdefault(m.group(1), None)
    return tuple(t for t in seen if t)


@dataclass(frozen=True)
class Fragment:
    """One unit of source content with a unique path."""
    path: str
    text: str
    module: Optional[str]
    references: tuple[str, ...]
    title: str

    @property
    def length(self) -> int:
        return len(self.text)


def parse_fragment(path: str, text: str, boilerplate: Iterable[re.Pattern] = ()) -> Fragment:
    path = normalize_path(path)
    return Fragment(
        path=path,
        text=text,
        module=extract_module(text),
        references=extract_references(path, text),
        title=first_heading(text, boilerplate),
    )


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

class FragmentStore(Mapping):
    """Read-only mapping of normalized path -> Fragment."""

    def __init__(self, fragments: dict[str, Fragment]):
        self._fragments = MappingProxyType(dict(fragments))

    def __getitem__(self, path: str) -> Fragment:
        return self._fragments[path]

    def __iter__(self) -> Iterator[str]:
        return iter(self._fragments)

    def __len__(self) -> int:
        return len(self._fragments)

    def paths(self) -> list[str]:
        return sorted(self._fragments)


def build_fragment_store(
    sources: Iterable[tuple[str, str]],
    boilerplate: Iterable[re.Pattern] = (),
) -> FragmentStore:
    """Build the store from (path, raw_text) pairs.

    Two sources with the same normalized path fail with DuplicatePath, even
    when their content is identical. Different paths holding drafts of the
    same section are fine here; the reconciler deals with those.
    """
    boilerplate = list(boilerplate)
    fragments: dict[str, Fragment] = {}
    for raw_path, text in sources:
        frag = parse_fragment(raw_path, text, boilerplate)
        if frag.path in fragments:
            raise DuplicatePath(frag.path)
        fragments[frag.path] = frag
    return FragmentStore(fragments)


def load_fragment_sources(src_dir: str, exclude: Iterable[str] = ("SUMMARY.md",)) -> list[tuple[str, str]]:
    """Read every *.md under src_dir as (relative_posix_path, text), sorted by path."""
    root = Path(src_dir)
    if not root.is_dir():
        raise BookBuildError(f"fragment directory not found: {src_dir}", path=src_dir)
    excluded = set(exclude)
    sources: list[tuple[str, str]] = []
    for fpath in sorted(root.rglob("*.md"), key=lambda p: p.relative_to(root).as_posix()):
        rel = fpath.relative_to(root).as_posix()
        if rel in excluded or fpath.name in excluded:
            continue
        try:
            text = fpath.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise BookBuildError(f"Failed to load fragment {rel}: {e}", path=rel) from e
        sources.append((rel, text))
    return sources
