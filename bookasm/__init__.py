"""bookasm: assemble a Markdown book from its manifest and chapter fragments."""

__version__ = "0.1.0"
