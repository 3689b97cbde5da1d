"""Closed set of chat wizard states, one per step.

Each state carries exactly the selections made so far, so a step can never
see a half-filled session.
"""

from dataclasses import dataclass
from typing import Optional, Union

from b24_deal_batcher.models.fields import Category, CustomField, EnumerationField, Stage, StringField
from b24_deal_batcher.models.job import BatchJobParams


@dataclass(frozen=True)
class Target:
    category: Category
    stage: Stage


@dataclass(frozen=True)
class Tagging:
    field: CustomField
    choice_ids: tuple[str, ...] = ()
    template: Optional[str] = None

    def describe(self) -> str:
        if isinstance(self.field, StringField):
            return f"template: {self.template}"
        if len(self.choice_ids) == 1:
            return f"enum single: {self.choice_ids[0]}"
        return f"enum cycle ({len(self.choice_ids)} values)"


@dataclass(frozen=True)
class Idle:
    pass


@dataclass(frozen=True)
class AwaitingTokensDomain:
    pass


@dataclass(frozen=True)
class AwaitingTokensAccess:
    domain: str


@dataclass(frozen=True)
class AwaitingTokensRefresh:
    domain: str
    access_token: str


@dataclass(frozen=True)
class AwaitingCategory:
    categories: tuple[Category, ...]


@dataclass(frozen=True)
class AwaitingStage:
    category: Category
    stages: tuple[Stage, ...]


@dataclass(frozen=True)
class AwaitingField:
    target: Target
    fields: tuple[CustomField, ...]


@dataclass(frozen=True)
class AwaitingEnumMode:
    target: Target
    field: EnumerationField


@dataclass(frozen=True)
class AwaitingEnumChoice:
    target: Target
    field: EnumerationField


@dataclass(frozen=True)
class AwaitingStringTemplate:
    target: Target
    field: StringField


@dataclass(frozen=True)
class AwaitingMaxDeals:
    target: Target
    tagging: Tagging


@dataclass(frozen=True)
class AwaitingDryRun:
    target: Target
    tagging: Tagging
    max_deals: Optional[int]


@dataclass(frozen=True)
class ConfirmRun:
    target: Target
    tagging: Tagging
    params: BatchJobParams


WizardState = Union[
    Idle,
    AwaitingTokensDomain,
    AwaitingTokensAccess,
    AwaitingTokensRefresh,
    AwaitingCategory,
    AwaitingStage,
    AwaitingField,
    AwaitingEnumMode,
    AwaitingEnumChoice,
    AwaitingStringTemplate,
    AwaitingMaxDeals,
    AwaitingDryRun,
    ConfirmRun,
]
