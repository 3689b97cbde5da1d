"""Deal lookups, paginated fetch and group tagging."""

import logging
from typing import Any, Callable, Iterator, Optional, Sequence

from b24_deal_batcher.client.bitrix import MAX_BATCH_COMMANDS, BitrixClient, encode_command
from b24_deal_batcher.errors import RemoteError
from b24_deal_batcher.models.fields import (
    Category,
    CustomField,
    EnumChoice,
    EnumerationField,
    Stage,
    normalize_user_field,
)
from b24_deal_batcher.models.job import (
    GROUP_PLACEHOLDER,
    BatchJobParams,
    ItemFailure,
    JobSummary,
    ProgressEvent,
)

logger = logging.getLogger(__name__)

# crm.*.list returns at most this many rows per page
LIST_PAGE_SIZE = 50

ProgressCallback = Callable[[ProgressEvent], None]


def chunked(items: Sequence[Any], size: int) -> Iterator[Sequence[Any]]:
    """Contiguous slices of `size`, preserving order; the last may be shorter."""
    if size < 1:
        raise ValueError("chunk size must be >= 1")
    for start in range(0, len(items), size):
        yield items[start:start + size]


def render_template(template: Optional[str], group_number: int) -> str:
    """Substitute the group number into the template; no template means just the number."""
    if not template:
        return str(group_number)
    return template.replace(GROUP_PLACEHOLDER, str(group_number))


def cyclic_choice(choice_ids: Sequence[str], group_number: int) -> Optional[str]:
    """Group g gets choice (g-1) mod len. None when there are no choices."""
    if not choice_ids:
        return None
    return choice_ids[(group_number - 1) % len(choice_ids)]


def value_for_group(params: BatchJobParams, group_number: int) -> Optional[str]:
    if params.field_type == "string":
        return render_template(params.string_template, group_number)
    return cyclic_choice(params.enumeration_choice_ids, group_number)


class ApplyResult:
    """Per-id outcome of one apply_field_value call."""

    def __init__(self, succeeded: list[str], failures: list[tuple[str, Optional[str]]]):
        self.succeeded = succeeded
        self.failures = failures


class DealService:
    """CRM deal operations on top of BitrixClient."""

    def __init__(self, client: BitrixClient):
        self.client = client

    # --- lookups ---

    def get_categories(self) -> list[Category]:
        res = self.client.invoke("crm.dealcategory.list")
        return [Category.from_remote(c) for c in res.result or []]

    def get_stages(self, category_id: int | str) -> list[Stage]:
        res = self.client.invoke("crm.dealcategory.stage.list", {"id": int(category_id)})
        return [Stage.from_remote(s) for s in res.result or []]

    def get_deal_user_fields(self) -> list[CustomField]:
        """Supported (string / enumeration), single-valued deal custom fields."""
        res = self.client.invoke("crm.deal.userfield.list")
        fields: list[CustomField] = []
        for raw in res.result or []:
            field = normalize_user_field(raw)
            if field is None:
                continue
            if isinstance(field, EnumerationField) and not field.choices and raw.get("ID"):
                field = self._with_enum_choices(field, raw["ID"])
            fields.append(field)
        return fields

    def _with_enum_choices(self, field: EnumerationField, field_id: Any) -> EnumerationField:
        """The list call may omit LIST; fetch the full definition once."""
        res = self.client.invoke("crm.deal.userfield.get", {"id": field_id})
        full = res.result or {}
        choices = [
            EnumChoice(id=str(item.get("ID")), value=str(item.get("VALUE") or ""))
            for item in full.get("LIST") or []
            if item.get("ID") is not None
        ]
        return field.model_copy(update={"choices": choices})

    # --- paginated fetch ---

    def fetch_all_paginated(
        self,
        filter: Optional[dict[str, Any]] = None,
        select: Sequence[str] = ("*",),
        order: Optional[dict[str, str]] = None,
        max_items: Optional[int] = None,
        *,
        method: str = "crm.deal.list",
    ) -> list[dict[str, Any]]:
        """
        Fetch every matching entity page by page until the list is exhausted or
        `max_items` is reached. Remote errors abort the whole fetch.
        """
        if max_items is not None and max_items < 1:
            raise ValueError("max_items must be >= 1 (None for all)")
        order = order or {"ID": "ASC"}

        items: list[dict[str, Any]] = []
        cursor = 0
        while True:
            res = self.client.invoke(
                method,
                {"filter": filter or {}, "select": list(select), "order": order, "start": cursor},
            )
            page = res.result or []
            if not page:
                break
            items.extend(page)
            logger.debug("%s start=%d: %d rows (%d total)", method, cursor, len(page), len(items))

            if max_items is not None and len(items) >= max_items:
                break
            if res.next is None:
                if (res.total is not None and len(items) < res.total) or (
                    res.total is None and len(page) >= LIST_PAGE_SIZE
                ):
                    logger.warning(
                        "%s returned a page without `next` after %d of %s rows; treating list as exhausted",
                        method, len(items), res.total if res.total is not None else "unknown",
                    )
                break
            if res.next <= cursor:
                logger.warning("%s cursor did not advance (start=%d, next=%d); stopping", method, cursor, res.next)
                break
            cursor = res.next

        return items[:max_items] if max_items is not None else items

    # --- tagging ---

    def apply_field_value(
        self,
        field_name: str,
        value: str,
        ids: Sequence[Any],
        dry_run: bool = False,
    ) -> ApplyResult:
        """
        Set `field_name` = `value` on each deal id, in batches of up to 50.
        Failures are collected per id; nothing here aborts the remaining batches.
        """
        str_ids = [str(i) for i in ids]
        if dry_run:
            logger.info("[dry-run] would set %s=%r on %d deals", field_name, value, len(str_ids))
            return ApplyResult(succeeded=str_ids, failures=[])

        succeeded: list[str] = []
        failures: list[tuple[str, Optional[str]]] = []
        for sub_batch in chunked(str_ids, MAX_BATCH_COMMANDS):
            commands = {
                f"u{i}": encode_command("crm.deal.update", {"ID": deal_id, "FIELDS": {field_name: value}})
                for i, deal_id in enumerate(sub_batch)
            }
            try:
                results = self.client.invoke_batch(commands)
            except RemoteError as e:
                logger.warning("Batch update of %d deals failed: %s", len(sub_batch), e)
                failures.extend((deal_id, str(e)) for deal_id in sub_batch)
                continue

            for i, deal_id in enumerate(sub_batch):
                item = results[f"u{i}"]
                if item.ok:
                    succeeded.append(deal_id)
                else:
                    logger.warning("Deal %s: %s not updated (%s)", deal_id, field_name, item.error)
                    failures.append((deal_id, item.error))
        return ApplyResult(succeeded=succeeded, failures=failures)

    def tag_by_groups(
        self,
        items: Sequence[dict[str, Any]],
        params: BatchJobParams,
        progress_cb: Optional[ProgressCallback] = None,
        should_cancel: Optional[Callable[[], bool]] = None,
    ) -> JobSummary:
        """
        Split deals into chunks of params.chunk_size and write one value per chunk.
        Progress is reported after every chunk, in order, dry run included.
        """
        groups = list(chunked(list(items), params.chunk_size))
        summary = JobSummary(total=len(items), groups=len(groups), dry_run=params.dry_run)
        handled = 0

        for group_number, chunk in enumerate(groups, start=1):
            if should_cancel is not None and should_cancel():
                logger.info("Job cancelled before group %d/%d", group_number, len(groups))
                summary.cancelled = True
                break

            value = value_for_group(params, group_number)
            if value is None:
                logger.warning(
                    "Group %d/%d skipped: no enumeration choices configured for %s",
                    group_number, len(groups), params.field_name,
                )
                summary.skipped += len(chunk)
            else:
                logger.info("Group %d/%d: %d deals -> %s=%r",
                            group_number, len(groups), len(chunk), params.field_name, value)
                ids = [deal.get("ID") for deal in chunk]
                result = self.apply_field_value(params.field_name, value, ids, params.dry_run)
                summary.processed += len(result.succeeded)
                summary.failed += len(result.failures)
                summary.failures.extend(
                    ItemFailure(deal_id=deal_id, group_index=group_number, value=value, error=error)
                    for deal_id, error in result.failures
                )

            handled += len(chunk)
            if progress_cb is not None:
                progress_cb(
                    ProgressEvent(
                        group_index=group_number,
                        total_groups=len(groups),
                        processed=handled,
                        failed=summary.failed,
                    )
                )

        return summary
