"""linksmith - adaptive wikilink suggestions for markdown vaults."""

__version__ = "0.3.0"
