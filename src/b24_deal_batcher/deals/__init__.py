"""Deal fetch and bulk-tagging operations."""

from b24_deal_batcher.deals.service import (
    ApplyResult,
    DealService,
    chunked,
    cyclic_choice,
    render_template,
)

__all__ = ["ApplyResult", "DealService", "chunked", "cyclic_choice", "render_template"]
