"""Bulk tagging of Bitrix24 CRM deals in fixed-size groups."""

__version__ = "0.1.0"
