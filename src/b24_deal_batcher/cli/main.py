"""Main CLI entry point."""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv


def main(argv: Optional[list[str]] = None) -> None:
    """Parse args and dispatch to subcommands."""
    parser = argparse.ArgumentParser(prog="b24-batcher", description="Bulk-tag Bitrix24 deals in groups")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    parser.add_argument(
        "--env-file",
        type=Path,
        default=None,
        help="Load environment from this file (default: .env if present)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    # run
    run_parser = subparsers.add_parser("run", help="Tag deals of one pipeline stage group by group")
    run_parser.add_argument("--job", type=Path, default=None, help="Job YAML (alternative to flags)")
    run_parser.add_argument("--category", type=str, default=None, help="Pipeline (category) id")
    run_parser.add_argument("--stage", type=str, default=None, help="Stage STATUS_ID, e.g. C2:NEW")
    run_parser.add_argument("--field", type=str, default=None, help="Custom field name, e.g. UF_CRM_1700000000")
    run_parser.add_argument(
        "--choices",
        type=str,
        default=None,
        help="Comma-separated enumeration choice ids to cycle through (default: all choices)",
    )
    run_parser.add_argument(
        "--template",
        type=str,
        default=None,
        help="String value template; {n} is the group number (default: '{n}')",
    )
    run_parser.add_argument("--chunk-size", type=int, default=None, help="Deals per group (default: 150)")
    run_parser.add_argument("--max", type=int, default=None, dest="max_deals", help="Max deals (default: all)")
    run_parser.add_argument("--dry-run", action="store_true", help="Do everything except the update calls")
    run_parser.add_argument("--yes", action="store_true", help="Skip the confirmation prompt")
    run_parser.add_argument("--output", type=Path, default=None, help="Write job summary JSON to file")

    # status
    subparsers.add_parser("status", help="Show credential state")

    # set-tokens
    tokens_parser = subparsers.add_parser("set-tokens", help="Write tokens.json manually")
    tokens_parser.add_argument("--domain", required=True, help="Portal domain, e.g. yourportal.bitrix24.ru")
    tokens_parser.add_argument("--access-token", required=True)
    tokens_parser.add_argument("--refresh-token", default=None)
    tokens_parser.add_argument("--expires-in", type=int, default=None, help="Token lifetime in seconds")

    # fields
    subparsers.add_parser("fields", help="List supported deal custom fields as JSON")

    # chat
    subparsers.add_parser("chat", help="Drive the chat wizard from the terminal")

    # serve
    serve_parser = subparsers.add_parser("serve", help="Run the installer HTTP endpoint")
    serve_parser.add_argument("--host", default="0.0.0.0")
    serve_parser.add_argument("--port", type=int, default=None, help="Default: $PORT or 3000")

    args = parser.parse_args(argv)

    if args.env_file is not None:
        load_dotenv(args.env_file)
    else:
        load_dotenv()

    from b24_deal_batcher.config import Settings
    from b24_deal_batcher.errors import BatcherError

    settings = Settings.from_env()
    logging.basicConfig(
        level=logging.DEBUG if (args.verbose or settings.debug) else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    commands = {
        "run": _run_job,
        "status": _run_status,
        "set-tokens": _run_set_tokens,
        "fields": _run_fields,
        "chat": _run_chat,
        "serve": _run_serve,
    }
    try:
        commands[args.command](args, settings)
    except BatcherError as e:
        print(f"Error: {e}", file=sys.stderr)
        raise SystemExit(1)


def _run_job(args: argparse.Namespace, settings) -> None:
    """Run command: collect parameters (flags, job file or prompts), then fetch and tag."""
    from b24_deal_batcher.cli.prompts import ask_until_valid
    from b24_deal_batcher.models.job import ProgressEvent
    from b24_deal_batcher.pipeline import build_service, run_job
    from b24_deal_batcher.wizard.parsing import parse_yes_no

    service = build_service(settings)
    params = _params_from_args(args, service)

    print(f"Filter: {params.filter}")
    print(f"Field: {params.field_name} ({params.field_type}), chunk size {params.chunk_size}, "
          f"max deals {params.max_deals or 'all'}, dry run {'yes' if params.dry_run else 'no'}")
    if not args.yes and not ask_until_valid("Start? [y/N] ", lambda t: parse_yes_no(t, default=False)):
        print("Cancelled.")
        return

    def _progress(event: ProgressEvent) -> None:
        print(f"Group {event.group_index}/{event.total_groups}: processed {event.processed}, failed {event.failed}")

    summary = run_job(
        service,
        params,
        progress_cb=_progress,
        on_fetched=lambda n: print(f"Deals found: {n}"),
    )
    print(
        f"Done{' (dry run)' if summary.dry_run else ''}: {summary.processed} updated, "
        f"{summary.failed} failed, {summary.skipped} skipped"
    )
    for failure in summary.failures:
        print(f"  deal {failure.deal_id} (group {failure.group_index}): {failure.error}", file=sys.stderr)

    if args.output:
        args.output.write_text(json.dumps(summary.model_dump(mode="json"), indent=2), encoding="utf-8")
        print(f"Wrote summary to {args.output}")


def _params_from_args(args: argparse.Namespace, service):
    """
    Build BatchJobParams. A job file wins; otherwise flags are used and any
    missing category/stage/field is picked interactively. Bad values and
    unreadable job files are reported as ValidationError.
    """
    import yaml
    from pydantic import ValidationError as PydanticValidationError

    from b24_deal_batcher.errors import ValidationError

    try:
        return _build_params(args, service)
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid job parameters: {e}") from e
    except (OSError, ValueError, yaml.YAMLError) as e:
        if not args.job:
            raise
        raise ValidationError(f"Cannot read job file {args.job}: {e}") from e


def _build_params(args: argparse.Namespace, service):
    from b24_deal_batcher.cli.prompts import ask_until_valid, choose_from, find_by_key, question
    from b24_deal_batcher.errors import ValidationError
    from b24_deal_batcher.models.fields import EnumerationField
    from b24_deal_batcher.models.job import DEFAULT_CHUNK_SIZE, BatchJobParams
    from b24_deal_batcher.wizard.parsing import parse_enum_mode, parse_max_deals, parse_yes_no

    if args.job:
        params = BatchJobParams.from_yaml(args.job)
        overrides = {}
        if args.dry_run:
            overrides["dry_run"] = True
        if args.max_deals is not None:
            overrides["max_deals"] = args.max_deals
        if args.chunk_size is not None:
            overrides["chunk_size"] = args.chunk_size
        return params.model_validate({**params.model_dump(), **overrides}) if overrides else params

    interactive = not (args.category and args.stage and args.field)

    categories = service.get_categories()
    category = find_by_key(categories, lambda c: c.id, args.category) or choose_from(
        categories, lambda c: f"{c.name} (id {c.id})", "Pipeline index: "
    )
    stages = service.get_stages(category.id)
    stage = find_by_key(stages, lambda s: s.status_id, args.stage) or choose_from(
        stages, lambda s: f"{s.name} ({s.status_id})", "Stage index: "
    )
    fields = service.get_deal_user_fields()
    field = find_by_key(fields, lambda f: f.name, args.field) or choose_from(
        fields, lambda f: f"{f.name}{' - ' + f.label if f.label else ''} ({f.kind})", "Field index: "
    )

    choice_ids: list[str] = []
    template = None
    if isinstance(field, EnumerationField):
        if not field.choices:
            raise ValidationError(f"Enumeration field {field.name} has no choices")
        known = [c.id for c in field.choices]
        if args.choices:
            choice_ids = [c.strip() for c in args.choices.split(",") if c.strip()]
            unknown = [c for c in choice_ids if c not in known]
            if unknown:
                raise ValidationError(f"Unknown choice ids for {field.name}: {', '.join(unknown)}")
        elif interactive:
            mode = ask_until_valid("1 - cycle through all values, 2 - one value for all groups: ", parse_enum_mode)
            if mode == "cycle":
                choice_ids = known
            else:
                choice = choose_from(field.choices, lambda c: f"ID={c.id} -> {c.value}", "Choice index: ")
                choice_ids = [choice.id]
        else:
            choice_ids = known
    else:
        template = args.template
        if template is None and interactive:
            template = question("Template ({n} = group number) [{n}]: ")
        template = template or "{n}"

    max_deals = args.max_deals
    dry_run = args.dry_run
    if interactive:
        if max_deals is None:
            max_deals = ask_until_valid("Max deals (empty = all): ", parse_max_deals)
        if not dry_run:
            dry_run = ask_until_valid("Dry run? [Y/n] ", lambda t: parse_yes_no(t, default=True))

    return BatchJobParams.for_stage(
        category.id,
        stage.status_id,
        field_name=field.name,
        field_type=field.kind,
        enumeration_choice_ids=choice_ids,
        string_template=template,
        chunk_size=args.chunk_size if args.chunk_size is not None else DEFAULT_CHUNK_SIZE,
        max_deals=max_deals,
        dry_run=dry_run,
    )


def _run_status(args: argparse.Namespace, settings) -> None:
    """Run status command."""
    from b24_deal_batcher.store import CredentialStore

    store = CredentialStore(settings)
    print(f"Tokens file: {store.path} ({'present' if store.path.exists() else 'missing'})")
    if not store.is_configured():
        print("Configured: no")
        return
    record = store.record
    print("Configured: yes")
    print(f"Domain: {record.domain}")
    print(f"Refresh token: {'yes' if record.refresh_token else 'no'}")
    print(f"Expiry tracked: {'yes' if record.has_expiry() else 'no'}")
    print(f"Refresh needed: {'yes' if store.needs_refresh() else 'no'}")


def _run_set_tokens(args: argparse.Namespace, settings) -> None:
    """Run set-tokens command."""
    import time

    from b24_deal_batcher.models.credentials import CredentialRecord
    from b24_deal_batcher.store import CredentialStore

    store = CredentialStore(settings)
    store.save(
        CredentialRecord(
            domain=args.domain,
            access_token=args.access_token,
            refresh_token=args.refresh_token,
            expires_in=args.expires_in,
            received_at=int(time.time() * 1000),
        )
    )
    print(f"Tokens saved to {store.path}")


def _run_fields(args: argparse.Namespace, settings) -> None:
    """Run fields command."""
    from b24_deal_batcher.pipeline import build_service

    fields = build_service(settings).get_deal_user_fields()
    print(json.dumps([f.model_dump(mode="json") for f in fields], indent=2, ensure_ascii=False))


def _run_chat(args: argparse.Namespace, settings) -> None:
    """Run chat command: one terminal session of the chat wizard."""
    from b24_deal_batcher.pipeline import build_service
    from b24_deal_batcher.store import CredentialStore
    from b24_deal_batcher.wizard import ChatWizard

    store = CredentialStore(settings)
    wizard = ChatWizard(lambda: build_service(settings, store), store)
    wizard.handle("console", "/start", print)
    while True:
        try:
            text = input("> ")
        except EOFError:
            break
        if text.strip() in ("/quit", "/exit"):
            break
        wizard.handle("console", text, print)


def _run_serve(args: argparse.Namespace, settings) -> None:
    """Run serve command."""
    import uvicorn

    from b24_deal_batcher.server import create_app
    from b24_deal_batcher.store import CredentialStore

    app = create_app(CredentialStore(settings), settings)
    port = args.port or settings.port
    logging.getLogger(__name__).info("Installer listening on %s:%d (POST /install, POST /set-tokens)", args.host, port)
    uvicorn.run(app, host=args.host, port=port)


if __name__ == "__main__":
    main()
