"""Tally collection sync between a phone and its paired watch."""

__version__ = "0.1.0"
