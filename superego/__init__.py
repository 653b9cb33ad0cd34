"""Superego - evaluation coordination for coding-assistant sessions."""

__version__ = "0.9.0"
