"""Data models for credentials, CRM entities and batch jobs."""

from b24_deal_batcher.models.credentials import CredentialRecord
from b24_deal_batcher.models.fields import (
    Category,
    CustomField,
    EnumChoice,
    EnumerationField,
    Stage,
    StringField,
    normalize_user_field,
)
from b24_deal_batcher.models.job import BatchJobParams, ItemFailure, JobSummary, ProgressEvent

__all__ = [
    "BatchJobParams",
    "Category",
    "CredentialRecord",
    "CustomField",
    "EnumChoice",
    "EnumerationField",
    "ItemFailure",
    "JobSummary",
    "ProgressEvent",
    "Stage",
    "StringField",
    "normalize_user_field",
]
