"""Credential persistence."""

from b24_deal_batcher.store.credential_store import CredentialStore

__all__ = ["CredentialStore"]
