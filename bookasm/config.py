"""Book configuration (book.yaml).

Example:

    title: A Tutorial Book
    src_dir: src
    manifest: SUMMARY.md
    output_dir: build
    external_allowlist:
      - "https://idris2.readthedocs.io/*"
      - "https://github.com/*"
    boilerplate_patterns:
      - "^%default total$"
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import jsonschema
import yaml

from bookasm.errors import ConfigError


SCHEMAS_DIR = Path(__file__).resolve().parent / "schemas"
CONFIG_SCHEMA = "book_config_schema_v0.1.json"


@dataclass
class BookConfig:
    title: str = ""
    src_dir: str = "src"
    manifest: str = "SUMMARY.md"
    output_dir: str = "build"
    external_allowlist: list[str] = field(default_factory=list)
    boilerplate_patterns: list[str] = field(default_factory=list)
    exclude: list[str] = field(default_factory=lambda: ["SUMMARY.md"])

    @property
    def manifest_path(self) -> Path:
        """Manifest location; relative names are taken inside src_dir."""
        p = Path(self.manifest)
        if p.is_absolute():
            return p
        return Path(self.src_dir) / p

    def compiled_boilerplate(self) -> list[re.Pattern]:
        return [re.compile(p) for p in self.boilerplate_patterns]


def load_schema(filename: str) -> dict:
    """Load one of the bundled JSON schemas."""
    with open(SCHEMAS_DIR / filename, encoding="utf-8") as f:
        return json.load(f)


def config_from_dict(data: Optional[dict]) -> BookConfig:
    """Validate a parsed config mapping and build a BookConfig."""
    if data is None:
        return BookConfig()
    if not isinstance(data, dict):
        raise ConfigError(f"config must be a mapping, got {type(data).__name__}")
    try:
        jsonschema.validate(data, load_schema(CONFIG_SCHEMA))
    except jsonschema.ValidationError as e:
        where = "/".join(str(p) for p in e.absolute_path) or "<root>"
        raise ConfigError(f"config schema FAIL at {where}: {e.message}") from e

    cfg = BookConfig(**data)
    # Fail here rather than halfway through reconciliation
    for pat in cfg.boilerplate_patterns:
        try:
            re.compile(pat)
        except re.error as e:
            raise ConfigError(f"invalid boilerplate pattern {pat!r}: {e}") from e
    return cfg


def load_book_config(path: Optional[str]) -> BookConfig:
    """Load book.yaml. A missing path (None) gives the defaults."""
    if path is None:
        return BookConfig()
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise ConfigError(f"Failed to read config from {path}: {e}", path=path) from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse config {path}: {e}", path=path) from e
    return config_from_dict(data)
