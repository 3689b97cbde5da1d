"""Installer HTTP endpoint."""

from b24_deal_batcher.server.app import create_app, record_from_install

__all__ = ["create_app", "record_from_install"]
