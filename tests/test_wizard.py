"""Tests for the chat wizard state machine and its input parsing."""

import json
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from b24_deal_batcher.config import Settings
from b24_deal_batcher.deals.service import DealService
from b24_deal_batcher.errors import RemoteError, ValidationError
from b24_deal_batcher.models.fields import Category, EnumChoice, EnumerationField, Stage, StringField
from b24_deal_batcher.models.job import JobSummary, ProgressEvent
from b24_deal_batcher.store.credential_store import CredentialStore
from b24_deal_batcher.wizard import ChatWizard, Idle, send_lines
from b24_deal_batcher.wizard.parsing import parse_enum_mode, parse_index, parse_max_deals, parse_yes_no
from b24_deal_batcher.wizard.states import (
    AwaitingCategory,
    AwaitingDryRun,
    AwaitingEnumMode,
    AwaitingField,
    AwaitingMaxDeals,
    AwaitingStage,
    AwaitingStringTemplate,
    ConfirmRun,
)

SESSION = "chat-1"

ENUM_FIELD = EnumerationField(
    name="UF_CRM_BATCH",
    label="Batch",
    choices=[EnumChoice(id="11", value="A"), EnumChoice(id="22", value="B")],
)
STRING_FIELD = StringField(name="UF_CRM_TAG", label="Tag")


class Transcript:
    """Collects replies sent by the wizard."""

    def __init__(self):
        self.messages: list[str] = []

    def __call__(self, text: str) -> None:
        self.messages.append(text)

    @property
    def last(self) -> str:
        return self.messages[-1]


@pytest.fixture
def service() -> MagicMock:
    mock = MagicMock(spec=DealService)
    mock.get_categories.return_value = [Category(id="0", name="General"), Category(id="2", name="B2B")]
    mock.get_stages.return_value = [Stage(status_id="C2:NEW", name="New"), Stage(status_id="C2:WON", name="Won")]
    mock.get_deal_user_fields.return_value = [STRING_FIELD, ENUM_FIELD]
    return mock


@pytest.fixture
def wizard(service: MagicMock, store: CredentialStore) -> ChatWizard:
    return ChatWizard(lambda: service, store)


def _say(wizard: ChatWizard, *texts: str) -> Transcript:
    transcript = Transcript()
    for text in texts:
        wizard.handle(SESSION, text, transcript)
    return transcript


def _fake_run_job(summary: JobSummary, total_groups: int = 3, found: int = 326):
    """run_job stand-in that drives the callbacks like the real pipeline."""

    def _run(service, params, *, progress_cb=None, on_fetched=None, should_cancel=None):
        if on_fetched:
            on_fetched(found)
        for g in range(1, total_groups + 1):
            if progress_cb:
                progress_cb(ProgressEvent(group_index=g, total_groups=total_groups, processed=min(g * 150, found)))
        return summary

    return _run


class TestParsing:
    def test_parse_index(self) -> None:
        assert parse_index(" 1 ", 3) == 1
        with pytest.raises(ValidationError):
            parse_index("3", 3)
        with pytest.raises(ValidationError):
            parse_index("-1", 3)
        with pytest.raises(ValidationError):
            parse_index("abc", 3)

    def test_parse_max_deals(self) -> None:
        assert parse_max_deals("") is None
        assert parse_max_deals("all") is None
        assert parse_max_deals("0") is None
        assert parse_max_deals("500") == 500
        with pytest.raises(ValidationError):
            parse_max_deals("-5")
        with pytest.raises(ValidationError):
            parse_max_deals("many")

    def test_parse_yes_no(self) -> None:
        assert parse_yes_no("Yes") is True
        assert parse_yes_no("да") is True
        assert parse_yes_no("n") is False
        assert parse_yes_no("", default=True) is True
        with pytest.raises(ValidationError):
            parse_yes_no("")
        with pytest.raises(ValidationError):
            parse_yes_no("maybe")

    def test_parse_enum_mode(self) -> None:
        assert parse_enum_mode("1") == "cycle"
        assert parse_enum_mode("2") == "single"
        with pytest.raises(ValidationError):
            parse_enum_mode("3")


def test_send_lines_packs_under_limit() -> None:
    transcript = Transcript()
    send_lines(transcript, ["a" * 8, "b" * 8, "c" * 8], limit=20)
    assert transcript.messages == ["a" * 8 + "\n" + "b" * 8, "c" * 8]


class TestRunFlow:
    """Tests for the /run conversation."""

    def test_steps_through_states(self, wizard: ChatWizard, service: MagicMock) -> None:
        _say(wizard, "/run")
        assert isinstance(wizard.state(SESSION), AwaitingCategory)
        _say(wizard, "1")
        assert isinstance(wizard.state(SESSION), AwaitingStage)
        service.get_stages.assert_called_once_with("2")
        _say(wizard, "0")
        assert isinstance(wizard.state(SESSION), AwaitingField)
        _say(wizard, "1")
        assert isinstance(wizard.state(SESSION), AwaitingEnumMode)
        _say(wizard, "1")
        state = wizard.state(SESSION)
        assert isinstance(state, AwaitingMaxDeals)
        assert state.tagging.choice_ids == ("11", "22")
        _say(wizard, "all")
        assert isinstance(wizard.state(SESSION), AwaitingDryRun)
        transcript = _say(wizard, "")
        state = wizard.state(SESSION)
        assert isinstance(state, ConfirmRun)
        assert state.params.filter == {"CATEGORY_ID": 2, "STAGE_ID": "C2:NEW"}
        assert state.params.enumeration_choice_ids == ["11", "22"]
        assert state.params.dry_run is True
        assert state.params.max_deals is None
        assert "Dry run: yes" in transcript.messages[0]

    def test_enum_cycle_run_reports_progress_and_totals(self, wizard: ChatWizard) -> None:
        summary = JobSummary(total=326, groups=3, processed=326, dry_run=False)
        with patch("b24_deal_batcher.wizard.chat.run_job", side_effect=_fake_run_job(summary)) as run:
            transcript = _say(wizard, "/run", "1", "0", "1", "1", "", "no", "yes")

        params = run.call_args.args[1]
        assert params.dry_run is False
        assert params.field_name == "UF_CRM_BATCH"
        assert "Deals found: 326" in transcript.messages
        assert "Group 1/3, processed 150" in transcript.messages
        assert "Group 3/3, processed 326" in transcript.messages
        assert transcript.last == "Done (dry run: no). Updated: 326, failed: 0, skipped: 0."
        assert isinstance(wizard.state(SESSION), Idle)

    def test_single_enum_value(self, wizard: ChatWizard) -> None:
        _say(wizard, "/run", "1", "0", "1", "2", "1", "100", "yes")
        state = wizard.state(SESSION)
        assert isinstance(state, ConfirmRun)
        assert state.params.enumeration_choice_ids == ["22"]
        assert state.params.max_deals == 100

    def test_string_template_flow(self, wizard: ChatWizard) -> None:
        _say(wizard, "/run", "1", "0", "0")
        assert isinstance(wizard.state(SESSION), AwaitingStringTemplate)
        _say(wizard, "Batch {n}", "", "y")
        state = wizard.state(SESSION)
        assert isinstance(state, ConfirmRun)
        assert state.params.field_type == "string"
        assert state.params.string_template == "Batch {n}"
        assert state.params.enumeration_choice_ids == []

    def test_invalid_index_keeps_state(self, wizard: ChatWizard) -> None:
        _say(wizard, "/run")
        transcript = _say(wizard, "7")
        assert "0..1" in transcript.last
        assert isinstance(wizard.state(SESSION), AwaitingCategory)

    def test_declining_confirmation(self, wizard: ChatWizard) -> None:
        with patch("b24_deal_batcher.wizard.chat.run_job") as run:
            transcript = _say(wizard, "/run", "1", "0", "1", "1", "", "", "no")
        run.assert_not_called()
        assert transcript.last == "Cancelled."
        assert isinstance(wizard.state(SESSION), Idle)

    def test_cancel_returns_to_idle(self, wizard: ChatWizard) -> None:
        _say(wizard, "/run", "1")
        transcript = _say(wizard, "/cancel")
        assert transcript.last == "Cancelled."
        assert isinstance(wizard.state(SESSION), Idle)

    def test_remote_error_resets_session(self, wizard: ChatWizard, service: MagicMock) -> None:
        service.get_stages.side_effect = RemoteError("crm.dealcategory.stage.list: ACCESS_DENIED: no access")
        transcript = _say(wizard, "/run", "1")
        assert transcript.last.startswith("Error: ")
        assert isinstance(wizard.state(SESSION), Idle)

    def test_enum_field_without_choices_is_rejected(self, wizard: ChatWizard, service: MagicMock) -> None:
        service.get_deal_user_fields.return_value = [EnumerationField(name="UF_EMPTY")]
        transcript = _say(wizard, "/run", "1", "0", "0")
        assert "no choices" in transcript.last
        assert isinstance(wizard.state(SESSION), AwaitingField)

    def test_run_without_tokens(self, service: MagicMock, settings: Settings) -> None:
        wizard = ChatWizard(lambda: service, CredentialStore(settings))
        transcript = _say(wizard, "/run")
        assert "not configured" in transcript.last
        service.get_categories.assert_not_called()

    def test_sessions_are_independent(self, wizard: ChatWizard) -> None:
        _say(wizard, "/run")
        assert isinstance(wizard.state("other"), Idle)


class TestProgressThrottle:
    def test_intermediate_updates_throttled_last_always_sent(self, service: MagicMock, store: CredentialStore) -> None:
        ticks = iter([0.0, 0.5, 1.0, 2.0, 2.1])
        wizard = ChatWizard(lambda: service, store, clock=lambda: next(ticks))
        summary = JobSummary(total=700, groups=5, processed=700)
        with patch(
            "b24_deal_batcher.wizard.chat.run_job",
            side_effect=_fake_run_job(summary, total_groups=5, found=700),
        ):
            transcript = _say(wizard, "/run", "1", "0", "1", "1", "", "no", "yes")
        progress = [m for m in transcript.messages if m.startswith("Group ")]
        assert progress == [
            "Group 1/5, processed 150",
            "Group 4/5, processed 600",
            "Group 5/5, processed 700",
        ]


class TestTokensAndStatus:
    def test_set_tokens_saves_record(self, service: MagicMock, settings: Settings, tokens_path: Path) -> None:
        store = CredentialStore(settings)
        wizard = ChatWizard(lambda: service, store)
        transcript = _say(wizard, "/set_tokens", "my.bitrix24.ru", "acc-123", "-")
        assert transcript.last.startswith("Tokens saved")
        saved = json.loads(tokens_path.read_text())
        assert saved["domain"] == "my.bitrix24.ru"
        assert saved["access_token"] == "acc-123"
        assert saved["refresh_token"] is None
        assert store.is_configured() is True

    def test_set_tokens_with_refresh(self, service: MagicMock, settings: Settings, tokens_path: Path) -> None:
        wizard = ChatWizard(lambda: service, CredentialStore(settings))
        _say(wizard, "/set_tokens", "my.bitrix24.ru", "acc-123", "ref-456")
        assert json.loads(tokens_path.read_text())["refresh_token"] == "ref-456"

    def test_empty_domain_rejected(self, service: MagicMock, settings: Settings) -> None:
        wizard = ChatWizard(lambda: service, CredentialStore(settings))
        transcript = _say(wizard, "/set_tokens", "")
        assert "empty" in transcript.last

    def test_status_reports_selection(self, wizard: ChatWizard) -> None:
        _say(wizard, "/run", "1", "0", "1", "1")
        transcript = _say(wizard, "/status")
        status = transcript.last
        assert "Tokens present: yes" in status
        assert "Category: B2B" in status
        assert "Stage: New" in status
        assert "Field: UF_CRM_BATCH" in status
        assert isinstance(wizard.state(SESSION), AwaitingMaxDeals)

    def test_start_shows_help(self, wizard: ChatWizard) -> None:
        transcript = _say(wizard, "/start")
        assert "/run" in transcript.last
