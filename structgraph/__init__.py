"""Structural map extraction: symbols, references, call/import graphs and
infrastructure dependency graphs with blast-radius analysis."""

__version__ = "0.1.0"
