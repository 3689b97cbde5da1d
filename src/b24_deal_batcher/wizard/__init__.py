"""Chat wizard that collects job parameters step by step."""

from b24_deal_batcher.wizard.chat import ChatWizard, send_lines
from b24_deal_batcher.wizard.states import Idle, WizardState

__all__ = ["ChatWizard", "Idle", "WizardState", "send_lines"]
