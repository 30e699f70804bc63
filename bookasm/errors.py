"""Error kinds raised by the book assembly pipeline.

Every error is terminal for the current build attempt. Each one carries the
offending path and/or title so the author can fix the source.
"""

from __future__ import annotations

from typing import Optional


class BookBuildError(Exception):
    """Base class for all pipeline failures."""

    stage = "build"

    def __init__(self, message: str, path: Optional[str] = None, title: Optional[str] = None):
        super().__init__(message)
        self.path = path
        self.title = title


class ConfigError(BookBuildError):
    stage = "config"


class MalformedManifest(BookBuildError):
    """Manifest nesting or syntax is inconsistent."""

    stage = "manifest"

    def __init__(self, message: str, line_no: Optional[int] = None, path: Optional[str] = None):
        if line_no is not None:
            message = f"line {line_no}: {message}"
        super().__init__(message, path=path)
        self.line_no = line_no


class DuplicatePath(BookBuildError):
    stage = "fragments"

    def __init__(self, path: str):
        super().__init__(f"two fragments claim the same path '{path}'", path=path)


class UnresolvedTarget(BookBuildError):
    stage = "resolve"

    def __init__(self, path: str, title: Optional[str] = None):
        msg = f"manifest entry '{title}' targets missing fragment '{path}'" if title else \
            f"manifest targets missing fragment '{path}'"
        super().__init__(msg, path=path, title=title)


class DanglingReference(BookBuildError):
    """A fragment links to something that is neither local nor allowlisted."""

    stage = "resolve"

    def __init__(self, source: str, target: str, reason: str = "not found"):
        super().__init__(f"fragment '{source}' references '{target}' ({reason})", path=source)
        self.target = target


class CycleDetected(BookBuildError):
    stage = "resolve"

    def __init__(self, path: str, chain: list[str]):
        shown = " > ".join(chain + [path])
        super().__init__(f"path '{path}' is reached twice in the manifest: {shown}", path=path)
        self.chain = list(chain)


class AmbiguousGroup(BookBuildError):
    """Variant selection tied in a way the path tie-break cannot settle."""

    stage = "reconcile"

    def __init__(self, title: str, paths: list[str]):
        super().__init__(
            f"cannot choose between variants of '{title}': {', '.join(paths)} "
            f"(same length, same path key) - needs author review",
            title=title,
        )
        self.paths = list(paths)


class PipelineStateError(RuntimeError):
    """A pipeline stage was called out of order or after a failure."""
