"""Book Assembler: resolved + reconciled manifest -> one Markdown document.

For each manifest entry in reading order:
  - substitute the canonical fragment of its variant group
  - assign a hierarchical number from depth and sibling position (2.1.3)
  - emit a heading carrying the number and an anchor, then the fragment body
    with its own title heading removed, inner headings shifted down to the
    entry's depth, and links to other fragments pointed at in-document anchors

Also produces the heading index (number, title, byte offset) and checks that
every link in a chosen fragment lands inside the book.

Inputs are never modified; the same inputs always give the same bytes.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, Iterator, Optional

from bookasm.errors import DanglingReference
from bookasm.load_fragments import (
    ATX_RE,
    INLINE_CODE_RE,
    LINK_RE,
    REFDEF_RE,
    SETEXT_RE,
    Fragment,
    FragmentStore,
    fence_states,
    is_external,
    normalize_target,
    split_anchor,
    strip_front_matter,
)
from bookasm.parse_summary import Manifest, ManifestNode
from bookasm.reconcile_variants import Reconciliation
from bookasm.resolve_refs import is_allowlisted


MAX_HEADING_LEVEL = 6


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class BookEntry:
    """One (manifest node, chosen fragment) pair of the final book."""
    node: ManifestNode
    fragment: Optional[Fragment]     # None for a draft chapter
    number: Optional[str]            # None for unnumbered chapters
    level: int
    anchor: str

    @property
    def title(self) -> str:
        return self.node.title


@dataclass(frozen=True)
class ResolvedBook:
    entries: tuple[BookEntry, ...]
    title: Optional[str] = None
    dropped: tuple[dict, ...] = ()    # manifest nodes merged into an earlier entry

    def fragment_paths(self) -> list[str]:
        return [e.fragment.path for e in self.entries if e.fragment is not None]


@dataclass(frozen=True)
class IndexEntry:
    number: Optional[str]
    title: str
    path: Optional[str]
    level: int
    anchor: str
    offset: int                      # UTF-8 byte offset of the heading line

    def to_dict(self) -> dict:
        return {
            "number": self.number,
            "title": self.title,
            "path": self.path,
            "level": self.level,
            "anchor": self.anchor,
            "offset": self.offset,
        }


@dataclass(frozen=True)
class AssembledBook:
    book: ResolvedBook
    document: str
    index: tuple[IndexEntry, ...]


# ---------------------------------------------------------------------------
# Numbering and entry placement
# ---------------------------------------------------------------------------

_SLUG_STRIP_RE = re.compile(r"[^\w\s-]")
_SLUG_WS_RE = re.compile(r"[\s_]+")


def slugify(text: str) -> str:
    s = _SLUG_STRIP_RE.sub("", text.casefold())
    return _SLUG_WS_RE.sub("-", s).strip("-") or "untitled"


def section_anchor(number: Optional[str], title: str) -> str:
    if number:
        return "section-" + number.replace(".", "-")
    return "chapter-" + slugify(title)


def build_resolved_book(
    manifest: Manifest,
    store: FragmentStore,
    reconciliation: Reconciliation,
) -> ResolvedBook:
    """Place every manifest node, substituting canonical fragments.

    A node whose canonical fragment was already placed earlier is dropped
    and its children are placed where it stood.
    """
    entries: list[BookEntry] = []
    dropped: list[dict] = []
    used: set[str] = set()
    anchors: set[str] = set()

    def _unique(anchor: str) -> str:
        candidate, n = anchor, 2
        while candidate in anchors:
            candidate = f"{anchor}-{n}"
            n += 1
        anchors.add(candidate)
        return candidate

    def _kept(nodes: Iterable[ManifestNode], level: int) -> Iterator[ManifestNode]:
        for node in nodes:
            canon = reconciliation.canonical(node.path)
            if canon is not None and canon in used:
                dropped.append({
                    "title": node.title,
                    "path": node.path,
                    "canonical": canon,
                    "level": level,
                })
                yield from _kept(node.children, level)
                continue
            if canon is not None:
                used.add(canon)
            yield node

    def _place(nodes: Iterable[ManifestNode], prefix: list[str], level: int, numbered: bool):
        counter = 0
        for node in _kept(nodes, level):
            number: Optional[str] = None
            parts = prefix
            if numbered and node.numbered:
                counter += 1
                parts = prefix + [str(counter)]
                number = ".".join(parts)
            canon = reconciliation.canonical(node.path)
            entries.append(BookEntry(
                node=node,
                fragment=store[canon] if canon is not None else None,
                number=number,
                level=level,
                anchor=_unique(section_anchor(number, node.title)),
            ))
            _place(node.children, parts, level + 1, number is not None)

    _place(manifest.roots, [], 1, True)
    return ResolvedBook(entries=tuple(entries), title=manifest.title, dropped=tuple(dropped))


def check_book_references(
    book: ResolvedBook,
    reconciliation: Reconciliation,
    allowlist: Iterable[str] = (),
) -> None:
    """Every link of every chosen fragment must land in the book or the allowlist."""
    allowlist = list(allowlist)
    in_book = set(book.fragment_paths())
    for entry in book.entries:
        frag = entry.fragment
        if frag is None:
            continue
        for target in frag.references:
            if target.startswith("#"):
                continue
            if is_external(target):
                if not is_allowlisted(target, allowlist):
                    raise DanglingReference(frag.path, target, "external URL not in allowlist")
                continue
            path, _ = split_anchor(target)
            if reconciliation.canonical(path) not in in_book:
                raise DanglingReference(frag.path, target, "target is not part of the assembled book")


# ---------------------------------------------------------------------------
# Body transformation
# ---------------------------------------------------------------------------

def _local_anchor(source: str, target: str, anchor_for: dict[str, str],
                  reconciliation: Reconciliation) -> Optional[str]:
    if not target or target.startswith("#") or is_external(target):
        return None
    path, anchor = split_anchor(normalize_target(source, target))
    if not path:
        return f"#{anchor}" if anchor else None
    entry_anchor = anchor_for.get(reconciliation.canonical(path))
    if entry_anchor is None:
        return None
    return f"#{anchor}" if anchor else f"#{entry_anchor}"


def rewrite_links(line: str, source: str, anchor_for: dict[str, str],
                  reconciliation: Reconciliation) -> str:
    """Point local links at in-document anchors, leaving inline code untouched."""
    m = REFDEF_RE.match(line)
    if m:
        new = _local_anchor(source, m.group(2), anchor_for, reconciliation)
        if new is not None:
            return line[:m.start(2)] + new + line[m.end(2):]
        return line
    # Links may carry code in their text ([`map`](funcs.md)); only a link
    # that starts inside a code span is left alone.
    spans = [(c.start(), c.end()) for c in INLINE_CODE_RE.finditer(line)]

    def _sub(link: re.Match) -> str:
        if any(start <= link.start() < end for start, end in spans):
            return link.group(0)
        new = _local_anchor(source, link.group(2), anchor_for, reconciliation)
        if new is None:
            return link.group(0)
        return f"[{link.group(1)}]({new})"
    return LINK_RE.sub(_sub, line)


def transform_body(
    fragment: Fragment,
    level: int,
    anchor_for: dict[str, str],
    reconciliation: Reconciliation,
) -> str:
    lines = strip_front_matter(fragment.text).splitlines()
    shift = level - 1
    out: list[str] = []
    title_dropped = not fragment.title
    skip_underline = False

    states = list(fence_states(lines))
    for i, (line, in_code) in enumerate(states):
        if in_code:
            out.append(line)
            continue
        if skip_underline:
            skip_underline = False
            continue
        if not title_dropped:
            m = ATX_RE.match(line)
            if m and (m.group(2) or "").strip() == fragment.title:
                title_dropped = True
                continue
            if line.strip() == fragment.title and i + 1 < len(states) \
                    and not states[i + 1][1] and SETEXT_RE.match(states[i + 1][0]):
                title_dropped = True
                skip_underline = True
                continue
        m = ATX_RE.match(line)
        if m and shift:
            new_level = min(len(m.group(1)) + shift, MAX_HEADING_LEVEL)
            line = ("#" * new_level + " " + (m.group(2) or "")).rstrip()
        out.append(rewrite_links(line, fragment.path, anchor_for, reconciliation))
    return "\n".join(out).strip("\n")


# ---------------------------------------------------------------------------
# Emission
# ---------------------------------------------------------------------------

def heading_line(entry: BookEntry) -> str:
    hashes = "#" * min(entry.level, MAX_HEADING_LEVEL)
    label = f"{entry.number} {entry.title}" if entry.number else entry.title
    return f"{hashes} {label} {{#{entry.anchor}}}"


def emit_document(book: ResolvedBook, reconciliation: Reconciliation) -> tuple[str, list[IndexEntry]]:
    """Concatenate the book and index every entry heading by byte offset."""
    anchor_for: dict[str, str] = {}
    for entry in book.entries:
        if entry.fragment is not None:
            anchor_for.setdefault(entry.fragment.path, entry.anchor)

    chunks: list[str] = []
    index: list[IndexEntry] = []
    offset = 0
    for entry in book.entries:
        index.append(IndexEntry(
            number=entry.number,
            title=entry.title,
            path=entry.fragment.path if entry.fragment else None,
            level=entry.level,
            anchor=entry.anchor,
            offset=offset,
        ))
        chunk = heading_line(entry) + "\n\n"
        if entry.fragment is not None:
            body = transform_body(entry.fragment, entry.level, anchor_for, reconciliation)
            if body:
                chunk += body + "\n\n"
        chunks.append(chunk)
        offset += len(chunk.encode("utf-8"))

    document = "".join(chunks).rstrip("\n") + "\n" if chunks else ""
    return document, index


def assemble_book(
    manifest: Manifest,
    store: FragmentStore,
    reconciliation: Reconciliation,
    allowlist: Iterable[str] = (),
) -> AssembledBook:
    book = build_resolved_book(manifest, store, reconciliation)
    check_book_references(book, reconciliation, allowlist)
    document, index = emit_document(book, reconciliation)
    return AssembledBook(book=book, document=document, index=tuple(index))
