"""Batch job parameters, progress events and the final job summary."""

from pathlib import Path
from typing import Any, Literal, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

DEFAULT_CHUNK_SIZE = 150
GROUP_PLACEHOLDER = "{n}"

FieldType = Literal["enumeration", "string"]


class BatchJobParams(BaseModel):
    """Immutable configuration for one job run."""

    model_config = ConfigDict(frozen=True)

    filter: dict[str, Any] = Field(default_factory=dict, description="crm.deal.list filter")
    select: list[str] = Field(default_factory=lambda: ["*", "UF_*"])
    order: dict[str, str] = Field(default_factory=lambda: {"DATE_CREATE": "ASC"})

    field_name: str
    field_type: FieldType
    enumeration_choice_ids: list[str] = Field(
        default_factory=list,
        description="Cycled across groups; a single id tags every group the same",
    )
    string_template: Optional[str] = Field(
        default=None,
        description="Value template; {n} is replaced by the 1-based group number",
    )

    chunk_size: int = DEFAULT_CHUNK_SIZE
    max_deals: Optional[int] = Field(default=None, description="None = unbounded")
    dry_run: bool = False

    @field_validator("enumeration_choice_ids", mode="before")
    @classmethod
    def _coerce_choice_ids(cls, value: Any) -> Any:
        if isinstance(value, (str, int)):
            value = [value]
        if isinstance(value, list):
            return [str(v) for v in value]
        return value

    @field_validator("chunk_size")
    @classmethod
    def _positive_chunk(cls, value: int) -> int:
        if value < 1:
            raise ValueError("chunk_size must be >= 1")
        return value

    @field_validator("max_deals")
    @classmethod
    def _positive_max(cls, value: Optional[int]) -> Optional[int]:
        if value is not None and value < 1:
            raise ValueError("max_deals must be >= 1 (omit for all deals)")
        return value

    @model_validator(mode="after")
    def _check_template_type(self) -> "BatchJobParams":
        if self.field_type == "enumeration" and self.string_template:
            raise ValueError("string_template only applies to string fields")
        if self.field_type == "string" and self.enumeration_choice_ids:
            raise ValueError("enumeration_choice_ids only apply to enumeration fields")
        return self

    @classmethod
    def for_stage(cls, category_id: int | str, stage_id: str, **kwargs: Any) -> "BatchJobParams":
        """Params for the usual job: all deals of one category + stage."""
        job_filter = {"CATEGORY_ID": int(category_id), "STAGE_ID": stage_id}
        return cls(filter=job_filter, **kwargs)

    @classmethod
    def from_yaml(cls, path: str | Path) -> "BatchJobParams":
        """Load job from YAML. Supports nested (target/tagging) or flat structure."""
        data = yaml.safe_load(Path(path).read_text()) or {}
        target = data.get("target", {})
        tagging = data.get("tagging", {})

        def _get(key: str, nested: dict, default=None):
            return nested.get(key, data.get(key, default))

        flat: dict[str, Any] = {}
        job_filter = dict(_get("filter", target) or {})
        category_id = _get("category_id", target)
        stage_id = _get("stage_id", target)
        if category_id is not None:
            job_filter["CATEGORY_ID"] = int(category_id)
        if stage_id is not None:
            job_filter["STAGE_ID"] = str(stage_id)
        flat["filter"] = job_filter
        for key in ("select", "order"):
            value = _get(key, target)
            if value is not None:
                flat[key] = value

        flat["field_name"] = _get("field_name", tagging)
        flat["field_type"] = _get("field_type", tagging)
        flat["enumeration_choice_ids"] = _get("enumeration_choice_ids", tagging) or []
        flat["string_template"] = _get("string_template", tagging)
        flat["chunk_size"] = _get("chunk_size", tagging, DEFAULT_CHUNK_SIZE)
        flat["max_deals"] = _get("max_deals", target)
        flat["dry_run"] = bool(data.get("dry_run", False))
        return cls.model_validate(flat)


class ProgressEvent(BaseModel):
    """Emitted after each group; purely observational."""

    group_index: int = Field(..., description="1-based")
    total_groups: int
    processed: int = Field(..., description="Cumulative items handled")
    failed: int = 0


class ItemFailure(BaseModel):
    """A batch sub-call that did not report success."""

    deal_id: str
    group_index: int
    value: str
    error: Optional[str] = None


class JobSummary(BaseModel):
    """Final tally of a tagging run."""

    total: int = 0
    groups: int = 0
    processed: int = Field(default=0, description="Items whose update succeeded (or rehearsed)")
    failed: int = 0
    skipped: int = Field(default=0, description="Items in groups skipped for lack of a value")
    dry_run: bool = False
    cancelled: bool = False
    failures: list[ItemFailure] = Field(default_factory=list)
