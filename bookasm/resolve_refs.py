"""Reference Resolver: manifest targets and in-text links against the store.

Checks, in order:
  1. Every manifest entry's target exists in the fragment store
  2. No path is reached twice while walking the manifest
  3. Every link in every reachable fragment points at a stored fragment,
     a same-document anchor, or an allowlisted external URL

"Reachable" means the manifest's fragments plus anything they link to,
transitively. Fragments that link to each other are visited once each.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from fnmatch import fnmatchcase
from typing import Iterable

from bookasm.errors import CycleDetected, DanglingReference, UnresolvedTarget
from bookasm.load_fragments import FragmentStore, is_external, split_anchor
from bookasm.parse_summary import Manifest, ManifestNode


@dataclass(frozen=True)
class Resolution:
    """Output of the resolver stage."""
    order: tuple[ManifestNode, ...]      # pre-order visiting order
    reachable: tuple[str, ...]           # fragment paths visited by link following
    external: tuple[str, ...]            # allowlisted external targets seen

    def manifest_paths(self) -> list[str]:
        return [n.path for n in self.order if n.path is not None]


def is_allowlisted(url: str, allowlist: Iterable[str]) -> bool:
    return any(fnmatchcase(url, pattern) for pattern in allowlist)


def visiting_order(manifest: Manifest, store: FragmentStore) -> list[ManifestNode]:
    """Depth-first pre-order walk, checking targets and repeated paths."""
    order: list[ManifestNode] = []
    seen: dict[str, list[str]] = {}   # path -> ancestor chain at first visit

    def _visit(node: ManifestNode, chain: list[str]):
        if node.path is not None:
            if node.path not in store:
                raise UnresolvedTarget(node.path, node.title)
            if node.path in chain:
                raise CycleDetected(node.path, chain)
            if node.path in seen:
                raise CycleDetected(node.path, seen[node.path])
            seen[node.path] = list(chain)
        order.append(node)
        sub_chain = chain + [node.path] if node.path is not None else chain
        for child in node.children:
            _visit(child, sub_chain)

    for root in manifest.roots:
        _visit(root, [])
    return order


def check_reference(source: str, target: str, store: FragmentStore, allowlist: Iterable[str]) -> None:
    """Raise DanglingReference unless ``target`` is resolvable."""
    if target.startswith("#"):
        return
    if is_external(target):
        if not is_allowlisted(target, allowlist):
            raise DanglingReference(source, target, "external URL not in allowlist")
        return
    path, _ = split_anchor(target)
    if path not in store:
        raise DanglingReference(source, target, "no such fragment")


def follow_links(
    start: Iterable[str],
    store: FragmentStore,
    allowlist: Iterable[str] = (),
) -> tuple[list[str], list[str]]:
    """Breadth-first link-following pass from the start paths.

    Returns (visited fragment paths in visit order, external targets seen).
    """
    allowlist = list(allowlist)
    visited: dict[str, None] = {}
    external: dict[str, None] = {}
    queue = deque(p for p in start)
    while queue:
        path = queue.popleft()
        if path in visited:
            continue
        visited[path] = None
        for target in store[path].references:
            check_reference(path, target, store, allowlist)
            if target.startswith("#"):
                continue
            if is_external(target):
                external.setdefault(target, None)
                continue
            linked, _ = split_anchor(target)
            if linked not in visited:
                queue.append(linked)
    return list(visited), list(external)


def resolve_references(
    manifest: Manifest,
    store: FragmentStore,
    allowlist: Iterable[str] = (),
) -> Resolution:
    order = visiting_order(manifest, store)
    start = [n.path for n in order if n.path is not None]
    reachable, external = follow_links(start, store, allowlist)
    return Resolution(order=tuple(order), reachable=tuple(reachable), external=tuple(external))
