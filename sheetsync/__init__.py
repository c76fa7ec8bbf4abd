"""Bidirectional spreadsheet <-> database sync over webhooks."""

__version__ = "1.0.0"
