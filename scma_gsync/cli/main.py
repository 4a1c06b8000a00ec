"""
Command-line interface for scma_gsync.

Provides CLI commands for synchronizing the club event list to a Google
Calendar and the club roster to Google Contacts or calendar sharing.

Usage:
    # Show help
    scma-gsync --help

    # Grant OAuth access once
    scma-gsync auth --secret-file secret-oauth.json --token-file token.json

    # Sync upcoming events to the shared calendar
    scma-gsync events --input web --output gcal --calendar SCMA \\
        --auth-type service-account --secret-file secret-service.json

    # Sync the roster to a contact group
    scma-gsync users --input web --output gppl --group SCMA

    # Share the calendar with every member
    scma-gsync users --output gcal --calendar SCMA --notify-acl-insert true

    # Preview, or dump the source for inspection
    scma-gsync events --dry-run
    scma-gsync users --input file --input-file roster.yml --output file
"""

import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any, Optional

import click

from scma_gsync import __version__
from scma_gsync.api.base import RemoteCallError
from scma_gsync.api.calendar_api import AclAdapter, CalendarAPI, EventsAdapter
from scma_gsync.api.people_api import MembersAdapter, PeopleAPI
from scma_gsync.auth.google_auth import (
    AUTH_TYPE_OAUTH,
    AUTH_TYPES,
    AuthenticationError,
    ConsentRequiredError,
    OAuthTokenProvider,
    TokenProvider,
    create_token_provider,
)
from scma_gsync.cli.formatters import show_detailed_changes, show_report
from scma_gsync.config.loader import DEFAULT_CONFIG_FILE as CONFIG_FILE_NAME
from scma_gsync.config.loader import ConfigError, ConfigLoader, merge_options
from scma_gsync.source.structured import (
    dump_events,
    dump_members,
    events_from_records,
    load_events,
    load_members,
    members_from_records,
)
from scma_gsync.source.web import DEFAULT_BASE_URL, WebSource, WebSourceError
from scma_gsync.sync.aliases import AliasResolver
from scma_gsync.sync.engine import (
    SyncEngine,
    SyncResult,
    upcoming_events,
    validate_source,
)
from scma_gsync.sync.event import Event
from scma_gsync.sync.executor import DEFAULT_CONCURRENCY
from scma_gsync.sync.member import Member
from scma_gsync.sync.validation import ValidationError
from scma_gsync.utils import DEFAULT_CONFIG_DIR, resolve_config_dir, resolve_in_config_dir
from scma_gsync.utils.logging import cleanup_old_logs, get_logger, setup_logging

# Default configuration file
DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / CONFIG_FILE_NAME

# Default credential files, relative to the configuration directory
DEFAULT_SECRET_FILE = "secret.json"
DEFAULT_TOKEN_FILE = "token.json"

# Default calendar and contact group name
DEFAULT_TARGET = "SCMA"

INPUT_MODES = ("web", "file")
EVENT_OUTPUTS = ("gcal", "file")
USER_OUTPUTS = ("gppl", "gcal", "file")

# Options shared by the events and users commands
_SYNC_OPTIONS = [
    click.option(
        "--input",
        "input_mode",
        type=click.Choice(INPUT_MODES),
        default="web",
        show_default=True,
        help="Read the club web site or a structured source file.",
    ),
    click.option(
        "--input-file",
        type=click.Path(exists=True, dir_okay=False),
        help="Structured source file (with --input file).",
    ),
    click.option(
        "--output-file",
        type=click.Path(dir_okay=False, writable=True),
        help="Destination for --output file (default: stdout).",
    ),
    click.option(
        "--calendar",
        help=f"Target calendar name or id (default: {DEFAULT_TARGET}).",
    ),
    click.option(
        "--auth-type",
        type=click.Choice(AUTH_TYPES),
        help="Authentication lifecycle (default: oauth).",
    ),
    click.option(
        "--secret-file",
        type=click.Path(dir_okay=False),
        help="OAuth client secret or service account key file.",
    ),
    click.option(
        "--token-file",
        type=click.Path(dir_okay=False),
        help="OAuth token store (with --auth-type oauth).",
    ),
    click.option(
        "--dry-run", "-n", is_flag=True, help="Preview changes without applying them."
    ),
    click.option(
        "--concurrency",
        type=click.IntRange(min=1),
        help=f"Concurrent API requests (default: {DEFAULT_CONCURRENCY}).",
    ),
    click.option(
        "--username",
        "-u",
        envvar="SCMA_USERNAME",
        help="Club web site username (env: SCMA_USERNAME).",
    ),
    click.option(
        "--password",
        "-p",
        envvar="SCMA_PASSWORD",
        help="Club web site password (env: SCMA_PASSWORD).",
    ),
]


def sync_options(command: Callable[..., Any]) -> Callable[..., Any]:
    """Attach the options shared by the sync commands."""
    for option in reversed(_SYNC_OPTIONS):
        command = option(command)
    return command


def get_config_dir(config_dir: Optional[str]) -> Path:
    """Get the configuration directory path."""
    return resolve_config_dir(config_dir)


def get_config_file(config_file: Optional[str], config_dir: Path) -> Path:
    """Get the configuration file path."""
    if config_file:
        return Path(config_file)
    return config_dir / CONFIG_FILE_NAME


def fail(message: str) -> None:
    """Print an error on stderr and exit with status 1."""
    click.echo(click.style(f"Error: {message}", fg="red"), err=True)
    sys.exit(1)


@click.group()
@click.version_option(version=__version__, prog_name="scma-gsync")
@click.option(
    "--verbose", "-v", is_flag=True, help="Enable verbose output with detailed logging."
)
@click.option(
    "--config-dir",
    "-c",
    type=click.Path(exists=False, file_okay=False, dir_okay=True),
    envvar="SCMA_GSYNC_CONFIG_DIR",
    help="Configuration directory path (default: ~/.scma-gsync).",
)
@click.option(
    "--config-file",
    "-f",
    type=click.Path(exists=False, file_okay=True, dir_okay=False),
    envvar="SCMA_GSYNC_CONFIG_FILE",
    help="Configuration file path (default: ~/.scma-gsync/config.yaml).",
)
@click.pass_context
def cli(
    ctx: click.Context,
    verbose: bool,
    config_dir: Optional[str],
    config_file: Optional[str],
) -> None:
    """
    One-way sync of the club roster to Google.

    Creates and updates calendar events, contacts and calendar sharing
    from the club web site. Records which only exist on the Google side
    are never deleted.
    """
    ctx.ensure_object(dict)

    resolved_config_dir = get_config_dir(config_dir)
    resolved_config_file = get_config_file(config_file, resolved_config_dir)

    ctx.obj["config_dir"] = resolved_config_dir
    ctx.obj["config_file"] = resolved_config_file

    config: dict[str, Any] = {}
    try:
        loader = ConfigLoader(config_dir=resolved_config_dir)
        config = loader.load_from_file(resolved_config_file)
        if config:
            loader.validate(config)
    except ConfigError as e:
        click.echo(
            click.style(f"Warning: Configuration error: {e}", fg="yellow"), err=True
        )
        config = {}

    ctx.obj["config"] = config

    effective_verbose = verbose or config.get("verbose", False)
    ctx.obj["verbose"] = effective_verbose

    log_dir = (
        Path(config["log_dir"]).expanduser()
        if config.get("log_dir")
        else resolved_config_dir / "logs"
    )
    setup_logging(verbose=effective_verbose, log_dir=log_dir, enable_file_logging=True)

    log_retention = config.get("log_retention_count", 10)
    if log_retention > 0:
        cleanup_old_logs(log_dir=log_dir, keep_count=log_retention)


# =============================================================================
# Shared helpers
# =============================================================================


def _settings(ctx: click.Context, **options: Any) -> dict[str, Any]:
    """Merge command options over the configuration file."""
    return merge_options(ctx.obj.get("config", {}), **options)


def _config_path(ctx: click.Context, value: Optional[str]) -> Optional[Path]:
    if value is None:
        return None
    return resolve_in_config_dir(value, ctx.obj["config_dir"])


def _build_token_provider(ctx: click.Context, settings: dict[str, Any]) -> TokenProvider:
    auth_type = settings.get("auth_type") or AUTH_TYPE_OAUTH
    secret_file = _config_path(ctx, settings.get("secret_file") or DEFAULT_SECRET_FILE)
    token_file = _config_path(ctx, settings.get("token_file") or DEFAULT_TOKEN_FILE)
    return create_token_provider(auth_type, secret_file, token_file)


def _api_options(settings: dict[str, Any]) -> dict[str, Any]:
    return {
        key: settings[key]
        for key in ("max_retries", "initial_retry_delay", "max_retry_delay")
        if key in settings
    }


def _web_source(settings: dict[str, Any]) -> WebSource:
    username = settings.get("username")
    password = settings.get("password")
    if not username or not password:
        raise click.UsageError(
            "--input web requires --username and --password "
            "(or SCMA_USERNAME and SCMA_PASSWORD)"
        )
    return WebSource(
        username,
        password,
        base_url=settings.get("web_base_url") or DEFAULT_BASE_URL,
        event_details=bool(settings.get("web_event_details", False)),
    )


def _require_input_file(input_file: Optional[str]) -> str:
    if not input_file:
        raise click.UsageError("--input file requires --input-file")
    return input_file


def _read_events(settings: dict[str, Any], input_mode: str) -> list[Event]:
    if input_mode == "file":
        return load_events(_require_input_file(settings.get("input_file")))
    return events_from_records(_web_source(settings).read_events())


def _read_members(settings: dict[str, Any], input_mode: str) -> list[Member]:
    if input_mode == "file":
        return load_members(_require_input_file(settings.get("input_file")))
    return members_from_records(_web_source(settings).read_members())


def _validate(source: list[Any], kind: str) -> None:
    """Stop before any remote client is built if the source is ambiguous."""
    try:
        validate_source(source, kind)
    except ValidationError as e:
        get_logger(__name__).error(f"Invalid source data: {e}")
        fail(f"Invalid source data: {e}")


def _finish(result: SyncResult, verbose: bool, dry_run: bool) -> None:
    """Display the outcome of a sync run and exit with its status."""
    if result.has_changes() and (verbose or dry_run):
        show_detailed_changes(result.actions)

    show_report(result.report)

    if dry_run:
        click.echo(click.style("\nDry run complete. No changes were made.", fg="yellow"))
    elif result.report.succeeded:
        click.echo(click.style("\nSync completed successfully!", fg="green"))

    sys.exit(result.report.exit_code)


def _run_sync(ctx: click.Context, run: Callable[[], SyncResult], dry_run: bool) -> None:
    """Run a sync, turning fatal errors into exit status 1."""
    logger = get_logger(__name__)
    try:
        result = run()
    except ConsentRequiredError as e:
        logger.error(f"Authentication required: {e}")
        fail(str(e))
    except AuthenticationError as e:
        logger.error(f"Authentication failed: {e}")
        fail(f"Authentication failed: {e}")
    except ValidationError as e:
        logger.error(f"Invalid source data: {e}")
        fail(f"Invalid source data: {e}")
    except RemoteCallError as e:
        logger.error(f"Remote call failed: {e}")
        fail(str(e))
    except ValueError as e:
        fail(str(e))
    else:
        _finish(result, ctx.obj["verbose"], dry_run)


# =============================================================================
# Events Command
# =============================================================================


@cli.command("events")
@sync_options
@click.option(
    "--output",
    "output_mode",
    type=click.Choice(EVENT_OUTPUTS),
    default="gcal",
    show_default=True,
    help="Sync to Google Calendar or write a structured file.",
)
@click.option(
    "--all",
    "include_past",
    is_flag=True,
    help="Include events which have already ended.",
)
@click.option(
    "--summary-prefix",
    "event_summary_prefix",
    help='Text written before every calendar event title, e.g. "SCMA: ".',
)
@click.pass_context
def events_command(
    ctx: click.Context,
    input_mode: str,
    output_mode: str,
    include_past: bool,
    dry_run: bool,
    **options: Any,
) -> None:
    """
    Synchronize club events to a Google Calendar.

    Events are matched on title and start date. Events which have already
    ended are skipped unless --all is given.

    Examples:

        scma-gsync events --input web --output gcal --calendar SCMA

        scma-gsync events --input file --input-file events.yml --dry-run

        scma-gsync events --all --output file --output-file events.yml
    """
    logger = get_logger(__name__)
    settings = _settings(ctx, **options)

    try:
        events = _read_events(settings, input_mode)
    except (ValidationError, WebSourceError) as e:
        logger.error(f"Failed to read events: {e}")
        fail(f"Failed to read events: {e}")
        return

    if not include_past:
        events = upcoming_events(events)
    click.echo(f"Read {len(events)} events")
    _validate(events, "event")

    if output_mode == "file":
        with click.open_file(settings.get("output_file") or "-", "w") as stream:
            dump_events(events, stream)
        return

    def run() -> SyncResult:
        api = CalendarAPI(_build_token_provider(ctx, settings), **_api_options(settings))
        calendar_id = api.find_calendar(settings.get("calendar") or DEFAULT_TARGET)
        prefix = settings.get("event_summary_prefix") or ""
        engine = SyncEngine(
            EventsAdapter(api, calendar_id, summary_prefix=prefix),
            concurrency=settings.get("concurrency") or DEFAULT_CONCURRENCY,
            dry_run=dry_run,
        )
        return engine.sync(events)

    mode = "Analyzing" if dry_run else "Synchronizing"
    click.echo(f"{mode} events...")
    _run_sync(ctx, run, dry_run)


# =============================================================================
# Users Command
# =============================================================================


@cli.command("users")
@sync_options
@click.option(
    "--output",
    "output_mode",
    type=click.Choice(USER_OUTPUTS),
    default="gppl",
    show_default=True,
    help="Sync to Google Contacts, share the calendar, or write a structured file.",
)
@click.option(
    "--group",
    help=f"Target contact group (default: {DEFAULT_TARGET}).",
)
@click.option(
    "--email-aliases-file",
    type=click.Path(dir_okay=False),
    help="YAML mapping of roster emails to Google account emails.",
)
@click.option(
    "--notify-acl-insert",
    type=click.BOOL,
    help="Email members when the calendar is first shared with them.",
)
@click.pass_context
def users_command(
    ctx: click.Context,
    input_mode: str,
    output_mode: str,
    dry_run: bool,
    **options: Any,
) -> None:
    """
    Synchronize club members to Google Contacts or calendar sharing.

    Members are matched on email, after applying the email aliases.
    With --output gcal every member is granted read access to the
    calendar; existing access is never reduced.

    Examples:

        scma-gsync users --input web --output gppl --group SCMA

        scma-gsync users --output gcal --calendar SCMA \\
            --email-aliases-file email-aliases.yml --notify-acl-insert true
    """
    logger = get_logger(__name__)
    settings = _settings(ctx, **options)

    try:
        members = _read_members(settings, input_mode)
        aliases = AliasResolver.from_file(
            _config_path(ctx, settings.get("email_aliases_file"))
        )
    except (ValidationError, WebSourceError) as e:
        logger.error(f"Failed to read members: {e}")
        fail(f"Failed to read members: {e}")
        return

    members = aliases.resolve_members(members)
    click.echo(f"Read {len(members)} members")
    _validate(members, "member")

    if output_mode == "file":
        with click.open_file(settings.get("output_file") or "-", "w") as stream:
            dump_members(members, stream)
        return

    concurrency = settings.get("concurrency") or DEFAULT_CONCURRENCY

    def run_contacts() -> SyncResult:
        api = PeopleAPI(_build_token_provider(ctx, settings), **_api_options(settings))
        group = api.find_or_create_contact_group(settings.get("group") or DEFAULT_TARGET)
        engine = SyncEngine(
            MembersAdapter(api, group), concurrency=concurrency, dry_run=dry_run
        )
        return engine.sync(members)

    def run_sharing() -> SyncResult:
        api = CalendarAPI(_build_token_provider(ctx, settings), **_api_options(settings))
        calendar_id = api.find_calendar(settings.get("calendar") or DEFAULT_TARGET)
        adapter = AclAdapter(
            api,
            calendar_id,
            send_notifications=bool(settings.get("notify_acl_insert", False)),
        )
        engine = SyncEngine(adapter, concurrency=concurrency, dry_run=dry_run)
        return engine.sync_acl(members)

    mode = "Analyzing" if dry_run else "Synchronizing"
    if output_mode == "gcal":
        click.echo(f"{mode} calendar sharing...")
        _run_sync(ctx, run_sharing, dry_run)
    else:
        click.echo(f"{mode} contacts...")
        _run_sync(ctx, run_contacts, dry_run)


# =============================================================================
# Auth Command
# =============================================================================


@cli.command("auth")
@click.option(
    "--secret-file",
    type=click.Path(dir_okay=False),
    help=f"OAuth client secret file (default: {DEFAULT_SECRET_FILE}).",
)
@click.option(
    "--token-file",
    type=click.Path(dir_okay=False),
    help=f"Token store to write (default: {DEFAULT_TOKEN_FILE}).",
)
@click.pass_context
def auth_command(
    ctx: click.Context, secret_file: Optional[str], token_file: Optional[str]
) -> None:
    """
    Grant OAuth access for unattended runs.

    Opens a browser window to complete the OAuth consent and stores the
    tokens for later runs. Not needed with --auth-type service-account.

    Example:

        scma-gsync auth --secret-file secret-oauth.json --token-file token.json
    """
    logger = get_logger(__name__)
    settings = _settings(ctx, secret_file=secret_file, token_file=token_file)
    secret_path = _config_path(ctx, settings.get("secret_file") or DEFAULT_SECRET_FILE)
    token_path = _config_path(ctx, settings.get("token_file") or DEFAULT_TOKEN_FILE)

    click.echo("Authenticating...")
    try:
        provider = OAuthTokenProvider(secret_path, token_path, interactive=True)
        provider.consent()
    except AuthenticationError as e:
        logger.error(f"Authentication failed: {e}")
        fail(f"Authentication failed: {e}")
        return

    click.echo(click.style(f"Saved OAuth tokens to {token_path}", fg="green"))
    logger.info(f"Authentication completed, token store {token_path}")
