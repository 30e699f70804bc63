"""Variant Reconciler: pick one canonical fragment per logical section.

Authors keep alternate drafts of a section side by side (two "Higher-order
Functions" files, two "A First Idris Program" files). Fragments in the same
directory whose first headings normalize to the same title form a
DuplicateGroup. The canonical member is chosen deterministically:

  1. longest content (character count) wins
  2. ties: lexicographically smallest path wins
  3. if the tied winner and another tied member have the same path key
     (case-folded, extension removed) -> AmbiguousGroup, for the author

Losing variants are kept in the result for the audit report. The policy is
an editorial heuristic, not a statement about which draft is correct.
"""

from __future__ import annotations

import posixpath
import re
from dataclasses import dataclass
from typing import Optional

from bookasm.errors import AmbiguousGroup
from bookasm.load_fragments import Fragment, FragmentStore


_MD_LINK_RE = re.compile(r"\[([^\]]*)\]\([^)]*\)")
_EMPHASIS_RE = re.compile(r"[`*_~]")
_NUMBERING_RE = re.compile(r"^(?:(?:chapter|section|part|appendix)\s+)?\d+(?:\.\d+)*[.:)]?\s+",
                           re.IGNORECASE)
_PUNCT_RE = re.compile(r"[^\w\s]")
_WS_RE = re.compile(r"\s+")


def normalize_title(title: str) -> str:
    """'## 2.1 *Higher-order* Functions' -> 'higher order functions'"""
    t = title.strip().lstrip("#").strip()
    t = _MD_LINK_RE.sub(r"\1", t)
    t = _EMPHASIS_RE.sub("", t)
    t = _NUMBERING_RE.sub("", t)
    t = t.casefold()
    t = _PUNCT_RE.sub(" ", t)
    return _WS_RE.sub(" ", t).strip()


def group_key(fragment: Fragment) -> tuple[str, str]:
    """(directory, normalized title); untitled fragments key on their own path."""
    directory = posixpath.dirname(fragment.path)
    title = normalize_title(fragment.title)
    if not title:
        return directory, f"path:{fragment.path}"
    return directory, title


def differentiator(path: str) -> str:
    stem, _ = posixpath.splitext(path)
    return stem.casefold()


@dataclass(frozen=True)
class DuplicateGroup:
    """Fragments that represent the same logical book section."""
    directory: str
    title: str
    members: tuple[str, ...]       # sorted paths
    canonical: str
    losers: tuple[str, ...]

    @property
    def is_duplicate(self) -> bool:
        return len(self.members) > 1


def select_canonical(fragments: list[Fragment], title: str = "") -> tuple[Fragment, list[Fragment]]:
    """Apply longest-wins / smallest-path policy. Returns (canonical, losers)."""
    best_len = max(f.length for f in fragments)
    tied = sorted((f for f in fragments if f.length == best_len), key=lambda f: f.path)
    winner = tied[0]
    clash = [f.path for f in tied[1:] if differentiator(f.path) == differentiator(winner.path)]
    if clash:
        raise AmbiguousGroup(title or winner.title or winner.path, [winner.path] + clash)
    losers = sorted((f for f in fragments if f.path != winner.path), key=lambda f: f.path)
    return winner, losers


@dataclass(frozen=True)
class Reconciliation:
    groups: tuple[DuplicateGroup, ...]
    canonical_for: dict[str, str]

    def canonical(self, path: Optional[str]) -> Optional[str]:
        if path is None:
            return None
        return self.canonical_for.get(path, path)

    def duplicate_groups(self) -> list[DuplicateGroup]:
        return [g for g in self.groups if g.is_duplicate]

    def audit_records(self, store: FragmentStore) -> list[dict]:
        """One record per losing variant."""
        records = []
        for g in self.duplicate_groups():
            for loser in g.losers:
                records.append({
                    "title": g.title,
                    "directory": g.directory,
                    "canonical": g.canonical,
                    "canonical_length": store[g.canonical].length,
                    "loser": loser,
                    "loser_length": store[loser].length,
                })
        return records


def reconcile_variants(store: FragmentStore) -> Reconciliation:
    """Group every stored fragment and choose each group's canonical member."""
    by_key: dict[tuple[str, str], list[Fragment]] = {}
    for path in store.paths():
        frag = store[path]
        by_key.setdefault(group_key(frag), []).append(frag)

    groups: list[DuplicateGroup] = []
    canonical_for: dict[str, str] = {}
    for (directory, title), members in sorted(by_key.items()):
        winner, losers = select_canonical(members, title)
        groups.append(DuplicateGroup(
            directory=directory,
            title=title,
            members=tuple(sorted(f.path for f in members)),
            canonical=winner.path,
            losers=tuple(f.path for f in losers),
        ))
        for f in members:
            canonical_for[f.path] = winner.path
    return Reconciliation(groups=tuple(groups), canonical_for=canonical_for)
