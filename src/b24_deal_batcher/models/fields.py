"""Pipeline categories, stages and normalized deal custom fields."""

from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

SUPPORTED_FIELD_TYPES = ("enumeration", "string")


class Category(BaseModel):
    """Deal pipeline (crm.dealcategory.list item). Extra remote keys are kept."""

    model_config = ConfigDict(extra="allow")

    id: str
    name: str = ""

    @classmethod
    def from_remote(cls, raw: dict[str, Any]) -> "Category":
        return cls(id=str(raw.get("ID", "")), name=str(raw.get("NAME") or ""))


class Stage(BaseModel):
    """Pipeline stage (crm.dealcategory.stage.list item)."""

    model_config = ConfigDict(extra="allow")

    status_id: str
    name: str = ""

    @classmethod
    def from_remote(cls, raw: dict[str, Any]) -> "Stage":
        status_id = raw.get("STATUS_ID") or raw.get("ID") or ""
        return cls(status_id=str(status_id), name=str(raw.get("NAME") or ""))


class EnumChoice(BaseModel):
    """One provider-defined choice of an enumeration field."""

    id: str
    value: str = ""


class EnumerationField(BaseModel):
    kind: Literal["enumeration"] = "enumeration"
    name: str
    label: str = ""
    choices: list[EnumChoice] = Field(default_factory=list)

    def choice_values(self) -> dict[str, str]:
        """Mapping choice id -> display value."""
        return {c.id: c.value for c in self.choices}


class StringField(BaseModel):
    kind: Literal["string"] = "string"
    name: str
    label: str = ""


CustomField = Annotated[Union[EnumerationField, StringField], Field(discriminator="kind")]


def _label_for(raw: dict[str, Any]) -> str:
    """Best human label: edit-form label (str or per-language dict), then NAME."""
    for key in ("EDIT_FORM_LABEL", "LIST_COLUMN_LABEL", "NAME"):
        label = raw.get(key)
        if isinstance(label, dict):
            label = next((v for v in label.values() if v), None)
        if label:
            return str(label)
    return ""


def normalize_user_field(raw: dict[str, Any]) -> Optional[CustomField]:
    """
    Convert one crm.deal.userfield.list item into a tagged field variant.
    Returns None for unsupported types and multi-valued fields.
    """
    name = raw.get("FIELD_NAME")
    field_type = raw.get("USER_TYPE_ID") or raw.get("TYPE")
    if not name or field_type not in SUPPORTED_FIELD_TYPES:
        return None
    if str(raw.get("MULTIPLE") or "N").upper() == "Y":
        return None

    label = _label_for(raw)
    if field_type == "string":
        return StringField(name=name, label=label)

    choices = [
        EnumChoice(id=str(item.get("ID")), value=str(item.get("VALUE") or item.get("NAME") or ""))
        for item in raw.get("LIST") or []
        if item.get("ID") is not None
    ]
    return EnumerationField(name=name, label=label, choices=choices)
