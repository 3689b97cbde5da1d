"""Conversational wizard that collects job parameters one message at a time.

Transport-agnostic: a chat adapter calls handle(session_id, text, reply) for
every incoming message and forwards whatever is passed to `reply`.
"""

import logging
import time
from typing import Callable, Optional

from b24_deal_batcher.deals.service import DealService
from b24_deal_batcher.errors import BatcherError, ValidationError
from b24_deal_batcher.models.credentials import CredentialRecord
from b24_deal_batcher.models.fields import EnumerationField, StringField
from b24_deal_batcher.models.job import BatchJobParams, ProgressEvent
from b24_deal_batcher.pipeline import run_job
from b24_deal_batcher.store.credential_store import CredentialStore

from .parsing import parse_enum_mode, parse_index, parse_max_deals, parse_yes_no
from .states import (
    AwaitingCategory,
    AwaitingDryRun,
    AwaitingEnumChoice,
    AwaitingEnumMode,
    AwaitingField,
    AwaitingMaxDeals,
    AwaitingStage,
    AwaitingStringTemplate,
    AwaitingTokensAccess,
    AwaitingTokensDomain,
    AwaitingTokensRefresh,
    ConfirmRun,
    Idle,
    Tagging,
    Target,
    WizardState,
)

logger = logging.getLogger(__name__)

Reply = Callable[[str], None]

# Chat messages are split before this many characters
MESSAGE_LIMIT = 1800
PROGRESS_THROTTLE_SECONDS = 1.5

HELP_TEXT = (
    "Bulk deal tagging in groups of 150.\n"
    "/run - start a tagging job\n"
    "/set_tokens - enter portal credentials manually\n"
    "/status - show credentials and current selection\n"
    "/cancel - abandon the current step"
)


def send_lines(reply: Reply, lines: list[str], limit: int = MESSAGE_LIMIT) -> None:
    """Send lines packed into as few messages as fit under `limit`."""
    buf = ""
    for line in lines:
        if buf and len(buf) + len(line) + 1 > limit:
            reply(buf.rstrip("\n"))
            buf = ""
        buf += line + "\n"
    if buf:
        reply(buf.rstrip("\n"))


class ChatWizard:
    """Finite-state machine keyed by session id."""

    def __init__(
        self,
        service_factory: Callable[[], DealService],
        store: CredentialStore,
        *,
        clock: Callable[[], float] = time.monotonic,
        progress_interval: float = PROGRESS_THROTTLE_SECONDS,
    ):
        self._service_factory = service_factory
        self._store = store
        self._clock = clock
        self._progress_interval = progress_interval
        self._sessions: dict[str, WizardState] = {}
        self._commands: dict[str, Callable[[str, Reply], WizardState]] = {
            "/start": self._cmd_start,
            "/help": self._cmd_start,
            "/status": self._cmd_status,
            "/set_tokens": self._cmd_set_tokens,
            "/run": self._cmd_run,
            "/cancel": self._cmd_cancel,
        }
        self._steps: dict[type, Callable] = {
            Idle: self._on_idle,
            AwaitingTokensDomain: self._on_tokens_domain,
            AwaitingTokensAccess: self._on_tokens_access,
            AwaitingTokensRefresh: self._on_tokens_refresh,
            AwaitingCategory: self._on_category,
            AwaitingStage: self._on_stage,
            AwaitingField: self._on_field,
            AwaitingEnumMode: self._on_enum_mode,
            AwaitingEnumChoice: self._on_enum_choice,
            AwaitingStringTemplate: self._on_string_template,
            AwaitingMaxDeals: self._on_max_deals,
            AwaitingDryRun: self._on_dry_run,
            ConfirmRun: self._on_confirm,
        }

    def state(self, session_id: str) -> WizardState:
        return self._sessions.get(session_id, Idle())

    def handle(self, session_id: str, text: str, reply: Reply) -> None:
        """Process one incoming message for a session."""
        text = (text or "").strip()
        current = self.state(session_id)
        command = text.split()[0].lower() if text.startswith("/") else None
        try:
            if command in self._commands:
                new_state = self._commands[command](session_id, reply)
            else:
                new_state = self._steps[type(current)](current, text, reply)
        except ValidationError as e:
            reply(str(e))
            new_state = current
        except BatcherError as e:
            logger.warning("Wizard step failed for session %s: %s", session_id, e)
            reply(f"Error: {e}")
            new_state = Idle()
        self._sessions[session_id] = new_state

    # --- commands ---

    def _cmd_start(self, session_id: str, reply: Reply) -> WizardState:
        reply(HELP_TEXT)
        return Idle()

    def _cmd_cancel(self, session_id: str, reply: Reply) -> WizardState:
        reply("Cancelled.")
        return Idle()

    def _cmd_status(self, session_id: str, reply: Reply) -> WizardState:
        current = self.state(session_id)
        target = getattr(current, "target", None)
        tagging = getattr(current, "tagging", None)
        lines = [
            f"Tokens present: {'yes' if self._store.is_configured() else 'no'}",
            f"Category: {target.category.name if target else '-'}",
            f"Stage: {target.stage.name if target else '-'}",
            f"Field: {tagging.field.name if tagging else '-'}",
            f"Field type: {tagging.field.kind if tagging else '-'}",
        ]
        reply("\n".join(lines))
        return current

    def _cmd_set_tokens(self, session_id: str, reply: Reply) -> WizardState:
        reply("Enter portal domain (e.g. yourportal.bitrix24.ru):")
        return AwaitingTokensDomain()

    def _cmd_run(self, session_id: str, reply: Reply) -> WizardState:
        if not self._store.is_configured():
            reply("Bitrix24 is not configured. Use /set_tokens or install the app on the portal.")
            return Idle()
        categories = tuple(self._service_factory().get_categories())
        if not categories:
            reply("No deal pipelines found.")
            return Idle()
        send_lines(reply, ["Choose a pipeline:"] + [f"{i}: {c.name}" for i, c in enumerate(categories)])
        return AwaitingCategory(categories=categories)

    # --- steps ---

    def _on_idle(self, state: Idle, text: str, reply: Reply) -> WizardState:
        if text:
            reply("Send /run to start or /help for commands.")
        return state

    def _on_tokens_domain(self, state: AwaitingTokensDomain, text: str, reply: Reply) -> WizardState:
        if not text:
            raise ValidationError("Domain cannot be empty.")
        reply("Enter access_token:")
        return AwaitingTokensAccess(domain=text)

    def _on_tokens_access(self, state: AwaitingTokensAccess, text: str, reply: Reply) -> WizardState:
        if not text:
            raise ValidationError("access_token cannot be empty.")
        reply("Send refresh_token if you have one, or '-' to skip:")
        return AwaitingTokensRefresh(domain=state.domain, access_token=text)

    def _on_tokens_refresh(self, state: AwaitingTokensRefresh, text: str, reply: Reply) -> WizardState:
        refresh = None if text in ("", "-") else text
        self._store.save(
            CredentialRecord(
                domain=state.domain,
                access_token=state.access_token,
                refresh_token=refresh,
                received_at=int(time.time() * 1000),
            )
        )
        reply(f"Tokens saved to {self._store.path}.")
        return Idle()

    def _on_category(self, state: AwaitingCategory, text: str, reply: Reply) -> WizardState:
        category = state.categories[parse_index(text, len(state.categories))]
        reply(f"Pipeline selected: {category.name}")
        stages = tuple(self._service_factory().get_stages(category.id))
        if not stages:
            reply("No stages found for this pipeline.")
            return Idle()
        send_lines(reply, ["Choose a stage:"] + [f"{i}: {s.name}" for i, s in enumerate(stages)])
        return AwaitingStage(category=category, stages=stages)

    def _on_stage(self, state: AwaitingStage, text: str, reply: Reply) -> WizardState:
        stage = state.stages[parse_index(text, len(state.stages))]
        reply(f"Stage selected: {stage.name}")
        fields = tuple(self._service_factory().get_deal_user_fields())
        if not fields:
            reply("No suitable custom fields (single-valued string or enumeration).")
            return Idle()
        lines = [
            f"{i}: {f.name}{' - ' + f.label if f.label else ''} ({f.kind})" for i, f in enumerate(fields)
        ]
        send_lines(reply, lines)
        reply(f"Send the field index (0..{len(fields) - 1}):")
        return AwaitingField(target=Target(category=state.category, stage=stage), fields=fields)

    def _on_field(self, state: AwaitingField, text: str, reply: Reply) -> WizardState:
        field = state.fields[parse_index(text, len(state.fields))]
        if isinstance(field, StringField):
            reply("Enter a value template; {n} is replaced by the group number (e.g. 'Group {n}'):")
            return AwaitingStringTemplate(target=state.target, field=field)
        if not field.choices:
            reply("This enumeration field has no choices. Pick another field.")
            return state
        reply(
            "Enumeration field selected. Mode:\n"
            "1 - cycle (each group gets the next value)\n"
            "2 - one value for all groups\n"
            "Send 1 or 2."
        )
        return AwaitingEnumMode(target=state.target, field=field)

    def _on_enum_mode(self, state: AwaitingEnumMode, text: str, reply: Reply) -> WizardState:
        if parse_enum_mode(text) == "cycle":
            tagging = Tagging(field=state.field, choice_ids=tuple(c.id for c in state.field.choices))
            reply("Mode: cycle. Max deals to process (empty or 'all' = all):")
            return AwaitingMaxDeals(target=state.target, tagging=tagging)
        lines = [f"{i}: ID={c.id} -> {c.value}" for i, c in enumerate(state.field.choices)]
        send_lines(reply, ["Choices:"] + lines)
        reply(f"Send the choice index (0..{len(state.field.choices) - 1}):")
        return AwaitingEnumChoice(target=state.target, field=state.field)

    def _on_enum_choice(self, state: AwaitingEnumChoice, text: str, reply: Reply) -> WizardState:
        choice = state.field.choices[parse_index(text, len(state.field.choices))]
        reply("Max deals to process (empty or 'all' = all):")
        return AwaitingMaxDeals(target=state.target, tagging=Tagging(field=state.field, choice_ids=(choice.id,)))

    def _on_string_template(self, state: AwaitingStringTemplate, text: str, reply: Reply) -> WizardState:
        reply("Max deals to process (empty or 'all' = all):")
        return AwaitingMaxDeals(target=state.target, tagging=Tagging(field=state.field, template=text or "{n}"))

    def _on_max_deals(self, state: AwaitingMaxDeals, text: str, reply: Reply) -> WizardState:
        max_deals = parse_max_deals(text)
        reply("Dry run? yes (default) / no:")
        return AwaitingDryRun(target=state.target, tagging=state.tagging, max_deals=max_deals)

    def _on_dry_run(self, state: AwaitingDryRun, text: str, reply: Reply) -> WizardState:
        dry_run = parse_yes_no(text, default=True)
        tagging = state.tagging
        params = BatchJobParams.for_stage(
            state.target.category.id,
            state.target.stage.status_id,
            field_name=tagging.field.name,
            field_type=tagging.field.kind,
            enumeration_choice_ids=list(tagging.choice_ids),
            string_template=tagging.template,
            max_deals=state.max_deals,
            dry_run=dry_run,
        )
        summary = [
            "Summary:",
            f"Pipeline: {state.target.category.name}",
            f"Stage: {state.target.stage.name}",
            f"Field: {tagging.field.name}",
            f"Type: {tagging.field.kind}",
            tagging.describe(),
            f"Max deals: {state.max_deals or 'all'}",
            f"Dry run: {'yes' if dry_run else 'no'}",
        ]
        reply("\n".join(summary))
        reply("Start? yes / no")
        return ConfirmRun(target=state.target, tagging=tagging, params=params)

    def _on_confirm(self, state: ConfirmRun, text: str, reply: Reply) -> WizardState:
        if not parse_yes_no(text):
            reply("Cancelled.")
            return Idle()
        if not self._store.is_configured():
            reply("Bitrix24 is not configured. Use /set_tokens first.")
            return Idle()

        reply("Loading deals (this may take a while)...")
        last_sent: list[Optional[float]] = [None]

        def _progress(event: ProgressEvent) -> None:
            now = self._clock()
            is_last = event.group_index == event.total_groups
            if not is_last and last_sent[0] is not None and now - last_sent[0] < self._progress_interval:
                return
            last_sent[0] = now
            reply(f"Group {event.group_index}/{event.total_groups}, processed {event.processed}")

        result = run_job(
            self._service_factory(),
            state.params,
            progress_cb=_progress,
            on_fetched=lambda n: reply(f"Deals found: {n}"),
        )
        reply(
            f"Done (dry run: {'yes' if result.dry_run else 'no'}). "
            f"Updated: {result.processed}, failed: {result.failed}, skipped: {result.skipped}."
        )
        return Idle()
