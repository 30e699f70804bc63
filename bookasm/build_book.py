#!/usr/bin/env python3
"""
Book build pipeline: manifest + fragments -> single assembled Markdown book.

Stages run strictly in order, each consuming the previous stage's output:

    Init -> ManifestLoaded -> Resolved -> Reconciled -> Assembled -> Emitted

Any failure stops the build at its stage; nothing is written.

Outputs (in --output-dir):
    book.md                 the assembled book
    book_index.json         heading number / title / byte offset per entry
    assembly_summary.json   counts, fingerprint, audit of variants and orphans
    assembly_report.md      human-readable audit

Usage:
    python -m bookasm.build_book \\
        --config book.yaml \\
        --src-dir src \\
        --manifest src/SUMMARY.md \\
        --output-dir build \\
        --allow "https://idris2.readthedocs.io/*" \\
        --dry-run
"""

from __future__ import annotations

import argparse
import hashlib
import json
import sys
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Callable, Iterable, Optional

from bookasm.assemble_book import AssembledBook, assemble_book
from bookasm.config import BookConfig, load_book_config
from bookasm.errors import BookBuildError, ConfigError, MalformedManifest, PipelineStateError
from bookasm.load_fragments import FragmentStore, build_fragment_store, load_fragment_sources
from bookasm.parse_summary import Manifest, parse_manifest
from bookasm.reconcile_variants import Reconciliation, reconcile_variants
from bookasm.resolve_refs import Resolution, resolve_references


TOOL_VERSION = "0.1"
SUMMARY_SCHEMA_VERSION = "assembly_summary_v0.1"


# ---------------------------------------------------------------------------
# Pipeline state machine
# ---------------------------------------------------------------------------

class BuildStage(Enum):
    INIT = "init"
    MANIFEST_LOADED = "manifest_loaded"
    RESOLVED = "resolved"
    RECONCILED = "reconciled"
    ASSEMBLED = "assembled"
    EMITTED = "emitted"


@dataclass(frozen=True)
class BookOutput:
    """Everything the output writer needs."""
    document: str
    index: list[dict]
    summary: dict
    report_md: str


class BookBuild:
    """One build attempt. Each method performs exactly one stage transition."""

    def __init__(self, config: Optional[BookConfig] = None):
        self.config = config or BookConfig()
        self.stage = BuildStage.INIT
        self.failed_stage: Optional[BuildStage] = None
        self.manifest: Optional[Manifest] = None
        self.store: Optional[FragmentStore] = None
        self.resolution: Optional[Resolution] = None
        self.reconciliation: Optional[Reconciliation] = None
        self.assembled: Optional[AssembledBook] = None

    def _advance(self, expected: BuildStage, target: BuildStage, fn: Callable):
        if self.failed_stage is not None:
            raise PipelineStateError(
                f"build already failed at '{self.failed_stage.value}'; start a new build")
        if self.stage is not expected:
            raise PipelineStateError(
                f"cannot move to '{target.value}' from '{self.stage.value}' "
                f"(expected '{expected.value}')")
        try:
            result = fn()
        except Exception:
            self.failed_stage = target
            raise
        self.stage = target
        return result

    def load(self, manifest_text: str, sources: Iterable[tuple[str, str]],
             manifest_name: str = "SUMMARY.md") -> Manifest:
        def _load():
            self.manifest = parse_manifest(manifest_text, manifest_name)
            self.store = build_fragment_store(sources, self.config.compiled_boilerplate())
            return self.manifest
        return self._advance(BuildStage.INIT, BuildStage.MANIFEST_LOADED, _load)

    def resolve(self) -> Resolution:
        def _resolve():
            self.resolution = resolve_references(
                self.manifest, self.store, self.config.external_allowlist)
            return self.resolution
        return self._advance(BuildStage.MANIFEST_LOADED, BuildStage.RESOLVED, _resolve)

    def reconcile(self) -> Reconciliation:
        def _reconcile():
            self.reconciliation = reconcile_variants(self.store)
            return self.reconciliation
        return self._advance(BuildStage.RESOLVED, BuildStage.RECONCILED, _reconcile)

    def assemble(self) -> AssembledBook:
        def _assemble():
            self.assembled = assemble_book(
                self.manifest, self.store, self.reconciliation, self.config.external_allowlist)
            return self.assembled
        return self._advance(BuildStage.RECONCILED, BuildStage.ASSEMBLED, _assemble)

    def emit(self) -> BookOutput:
        def _emit():
            summary = generate_summary(self)
            return BookOutput(
                document=self.assembled.document,
                index=[e.to_dict() for e in self.assembled.index],
                summary=summary,
                report_md=generate_report_md(summary),
            )
        return self._advance(BuildStage.ASSEMBLED, BuildStage.EMITTED, _emit)


def build_book(
    manifest_text: str,
    sources: Iterable[tuple[str, str]],
    config: Optional[BookConfig] = None,
    manifest_name: str = "SUMMARY.md",
) -> BookOutput:
    """Run every stage in order and return the emitted output."""
    build = BookBuild(config)
    build.load(manifest_text, sources, manifest_name)
    build.resolve()
    build.reconcile()
    build.assemble()
    return build.emit()


# ---------------------------------------------------------------------------
# Audit / report generation
# ---------------------------------------------------------------------------

def find_orphans(build: BookBuild) -> list[str]:
    """Stored fragments that are not in the book, not a losing variant and never linked."""
    in_book = set(build.assembled.book.fragment_paths())
    losers = {p for g in build.reconciliation.groups for p in g.losers}
    reachable = set(build.resolution.reachable)
    return [p for p in build.store.paths()
            if p not in in_book and p not in losers and p not in reachable]


def generate_summary(build: BookBuild) -> dict:
    """assembly_summary.json content."""
    book = build.assembled.book
    document = build.assembled.document
    return {
        "schema_version": SUMMARY_SCHEMA_VERSION,
        "book_title": book.title or build.config.title,
        "assembled_utc": datetime.now(timezone.utc).isoformat(),
        "assembly_tool_version": TOOL_VERSION,
        "document_sha256": hashlib.sha256(document.encode("utf-8")).hexdigest(),
        "document_bytes": len(document.encode("utf-8")),
        "total_fragments": len(build.store),
        "total_entries": len(book.entries),
        "numbered_entries": sum(1 for e in book.entries if e.number),
        "duplicate_groups": len(build.reconciliation.duplicate_groups()),
        "losing_variants": build.reconciliation.audit_records(build.store),
        "dropped_nodes": list(book.dropped),
        "draft_chapters": [e.title for e in book.entries if e.node.is_draft],
        "orphan_fragments": find_orphans(build),
        "external_references": list(build.resolution.external),
    }


def generate_report_md(summary: dict) -> str:
    """Human-readable assembly report."""
    lines = []
    lines.append(f"# Assembly Report: {summary['book_title'] or '(untitled)'}")
    lines.append("")
    lines.append(f"- **Assembled:** {summary['assembled_utc']}")
    lines.append(f"- **Fragments:** {summary['total_fragments']}")
    lines.append(f"- **Entries:** {summary['total_entries']} "
                 f"({summary['numbered_entries']} numbered)")
    lines.append(f"- **Duplicate groups:** {summary['duplicate_groups']}")
    lines.append(f"- **Document:** {summary['document_bytes']} bytes, "
                 f"sha256 `{summary['document_sha256'][:16]}`")
    lines.append("")

    variants = summary["losing_variants"]
    if variants:
        lines.append("## Variants for Author Review")
        lines.append("")
        lines.append("Each group below had several drafts of one section. The longest draft")
        lines.append("was used; the others were left out of the book, not deleted.")
        lines.append("")
        for v in variants:
            lines.append(
                f"- **{v['title']}** ({v['directory'] or '.'}): used `{v['canonical']}` "
                f"({v['canonical_length']} chars), left out `{v['loser']}` "
                f"({v['loser_length']} chars)"
            )
        lines.append("")

    if summary["dropped_nodes"]:
        lines.append("## Merged Manifest Entries")
        lines.append("")
        for d in summary["dropped_nodes"]:
            lines.append(f"- `{d['path']}` ({d['title']}) already included as `{d['canonical']}`")
        lines.append("")

    if summary["draft_chapters"]:
        lines.append("## Draft Chapters")
        lines.append("")
        for t in summary["draft_chapters"]:
            lines.append(f"- {t}")
        lines.append("")

    if summary["orphan_fragments"]:
        lines.append("## Orphan Fragments")
        lines.append("")
        for p in summary["orphan_fragments"]:
            lines.append(f"- `{p}`")
        lines.append("")

    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Output writer
# ---------------------------------------------------------------------------

def _write_json(path: Path, data) -> None:
    with open(path, "w", encoding="utf-8") as f:
        json.dump(data, f, ensure_ascii=False, indent=2)
        f.write("\n")


def write_outputs(output: BookOutput, output_dir: str) -> list[str]:
    """Write the four build artifacts. Returns the written paths."""
    outdir = Path(output_dir)
    outdir.mkdir(parents=True, exist_ok=True)

    book_path = outdir / "book.md"
    with open(book_path, "w", encoding="utf-8", newline="\n") as f:
        f.write(output.document)
    index_path = outdir / "book_index.json"
    _write_json(index_path, output.index)
    summary_path = outdir / "assembly_summary.json"
    _write_json(summary_path, output.summary)
    report_path = outdir / "assembly_report.md"
    with open(report_path, "w", encoding="utf-8") as f:
        f.write(output.report_md)
    return [str(book_path), str(index_path), str(summary_path), str(report_path)]


# ---------------------------------------------------------------------------
# Main pipeline
# ---------------------------------------------------------------------------

def _manifest_relpath(manifest_path: Path, src_dir: str) -> Optional[str]:
    try:
        return manifest_path.resolve().relative_to(Path(src_dir).resolve()).as_posix()
    except ValueError:
        return None


def apply_overrides(cfg: BookConfig, args) -> BookConfig:
    """CLI flags win over book.yaml values."""
    if args.src_dir:
        cfg.src_dir = args.src_dir
    if args.manifest:
        cfg.manifest = str(Path(args.manifest).resolve())
    if args.output_dir:
        cfg.output_dir = args.output_dir
    if args.allow:
        cfg.external_allowlist = list(cfg.external_allowlist) + list(args.allow)
    return cfg


def run_build(args) -> int:
    """Execute the build. Returns exit code (0=success, 1=build error, 2=config error)."""
    try:
        cfg = apply_overrides(load_book_config(args.config), args)
    except ConfigError as e:
        print(f"ERROR [config]: {e}", file=sys.stderr)
        return 2

    manifest_path = cfg.manifest_path
    build = BookBuild(cfg)
    try:
        print(f"Loading manifest: {manifest_path}")
        try:
            manifest_text = manifest_path.read_text(encoding="utf-8")
        except OSError as e:
            raise MalformedManifest(f"Failed to read manifest {manifest_path}: {e}",
                                    path=str(manifest_path)) from e

        exclude = list(cfg.exclude)
        rel = _manifest_relpath(manifest_path, cfg.src_dir)
        if rel:
            exclude.append(rel)
        print(f"Loading fragments from: {cfg.src_dir}")
        sources = load_fragment_sources(cfg.src_dir, exclude)
        print(f"  Found {len(sources)} fragment(s)")

        manifest = build.load(manifest_text, sources, manifest_path.name)
        print(f"  Manifest: {len(manifest)} entries"
              + (f" ({manifest.title})" if manifest.title else ""))

        print("\nResolving references...")
        resolution = build.resolve()
        print(f"  Visiting order: {len(resolution.order)} entries, "
              f"{len(resolution.reachable)} fragments reachable, "
              f"{len(resolution.external)} external link(s)")

        print("\nReconciling variants...")
        reconciliation = build.reconcile()
        for rec in reconciliation.audit_records(build.store):
            print(f"  WARNING: variant '{rec['loser']}' left out in favour of "
                  f"'{rec['canonical']}' ({rec['title']})", file=sys.stderr)

        print("\nAssembling book...")
        assembled = build.assemble()
        for d in assembled.book.dropped:
            print(f"  WARNING: manifest entry '{d['title']}' ({d['path']}) merged into "
                  f"earlier '{d['canonical']}'", file=sys.stderr)
        print(f"  {len(assembled.book.entries)} entries, "
              f"{len(assembled.document.encode('utf-8'))} bytes")

        output = build.emit()
    except BookBuildError as e:
        failed = build.failed_stage.value if build.failed_stage else e.stage
        print(f"\nERROR [{failed}]: {e}", file=sys.stderr)
        return 1

    for title in output.summary["draft_chapters"]:
        print(f"  WARNING: draft chapter '{title}' has no content", file=sys.stderr)
    for p in output.summary["orphan_fragments"]:
        print(f"  WARNING: fragment '{p}' is not used by the book", file=sys.stderr)

    if args.dry_run:
        print(f"\n  [dry-run] Would write book.md, book_index.json, "
              f"assembly_summary.json, assembly_report.md to {cfg.output_dir}")
    else:
        written = write_outputs(output, cfg.output_dir)
        print()
        for p in written:
            print(f"  Wrote: {p}")

    print("\nDone.")
    return 0


def main(argv: Optional[list[str]] = None):
    parser = argparse.ArgumentParser(
        description="Assemble a Markdown book from its manifest and chapter fragments"
    )
    parser.add_argument(
        "--config", default=None,
        help="Path to book.yaml (default: built-in defaults)"
    )
    parser.add_argument(
        "--src-dir", default=None,
        help="Directory holding the chapter fragments (*.md)"
    )
    parser.add_argument(
        "--manifest", default=None,
        help="Manifest file: SUMMARY.md or a YAML manifest (default: <src-dir>/SUMMARY.md)"
    )
    parser.add_argument(
        "--output-dir", default=None,
        help="Directory for book.md, book_index.json and the audit files"
    )
    parser.add_argument(
        "--allow", action="append", default=[],
        help="Allowlisted external URL glob (repeatable)"
    )
    parser.add_argument(
        "--dry-run", action="store_true",
        help="Run every stage but write nothing"
    )

    args = parser.parse_args(argv)
    sys.exit(run_build(args))


if __name__ == "__main__":
    main()
