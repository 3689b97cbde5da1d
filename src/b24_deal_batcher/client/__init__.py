"""Bitrix24 REST client."""

from b24_deal_batcher.client.bitrix import (
    MAX_BATCH_COMMANDS,
    BatchItemResult,
    BitrixClient,
    RemoteResponse,
    encode_command,
)

__all__ = ["MAX_BATCH_COMMANDS", "BatchItemResult", "BitrixClient", "RemoteResponse", "encode_command"]
