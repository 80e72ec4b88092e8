"""crosswire CLI: Typer app with all subcommands."""

from __future__ import annotations

import json
from typing import List, Optional

import typer

app = typer.Typer(
    name="crosswire",
    help="Cross-platform contact resolution and incremental message sync.",
    no_args_is_help=True,
)


def _open_engine():
    """Load config, set up logging and return (engine, conn)."""
    from crosswire.config import load_config
    from crosswire.database import get_db, init_db
    from crosswire.engine import SyncEngine
    from crosswire.observability import setup_logging

    config = load_config()
    setup_logging(config.logging.level, json=config.logging.json)
    conn = get_db(config)
    init_db(conn)
    return SyncEngine.from_config(config, conn), conn


def _close(engine, conn) -> None:
    # Queued thread summaries finish before the process exits
    engine.close(wait=True)
    conn.close()


def _print_report(report) -> None:
    typer.echo(f"Status: {report.status.value}" + (f" ({report.reason})" if report.reason else ""))
    for name, r in report.platforms.items():
        if r.ok:
            typer.echo(
                f"  {name:8s} ok       contacts={r.processed} created={r.created} merged={r.merged} "
                f"flagged={r.flagged} filtered={r.filtered} messages={r.messages}"
            )
        else:
            hint = f" (retry after {r.retry_after:g}s)" if r.retry_after else ""
            typer.echo(f"  {name:8s} FAILED   [{r.error_kind}] {'; '.join(r.errors)}{hint}")


# --- Database commands ---

db_app = typer.Typer(help="Database management commands.")
app.add_typer(db_app, name="db")


@db_app.callback(invoke_without_command=True)
def db_callback(
    ctx: typer.Context,
    reset: bool = typer.Option(False, "--reset", help="Wipe and recreate the database."),
    stats: bool = typer.Option(False, "--stats", help="Show row counts for all tables."),
    migrate: bool = typer.Option(False, "--migrate", help="Run pending schema migrations."),
):
    """Database management."""
    from crosswire.config import load_config
    from crosswire.database import db_stats, get_db, init_db, migrate_db, reset_db

    config = load_config()

    if reset:
        conn = reset_db(config)
        typer.echo("Database reset and initialized.")
        conn.close()
        return

    if stats:
        conn = get_db(config)
        init_db(conn)
        typer.echo("Table row counts:")
        for table, count in db_stats(conn).items():
            status = f"{count}" if count >= 0 else "missing"
            typer.echo(f"  {table:24s} {status}")
        conn.close()
        return

    if migrate:
        conn = get_db(config)
        actions = migrate_db(conn)
        for action in actions:
            typer.echo(f"  {action}")
        typer.echo(f"Schema migrations applied ({len(actions)} changes).")
        conn.close()
        return

    typer.echo(ctx.get_help())


# --- Sync commands ---

@app.command()
def sync(
    user_id: str = typer.Argument(..., help="User to sync."),
    platform: Optional[List[str]] = typer.Option(
        None, "--platform", "-p", help="Platform to sync (repeatable). Omit to let the scheduler decide."
    ),
    force: bool = typer.Option(False, "--force", help="Sync now even if the cache is fresh."),
):
    """Sync a user's platforms."""
    engine, conn = _open_engine()
    try:
        report = engine.sync_user(user_id, platform or None, force)
        _print_report(report)
    finally:
        _close(engine, conn)
    if report.status.value == "failed":
        raise typer.Exit(1)


@app.command()
def status(
    user_id: str = typer.Argument(...),
    as_json: bool = typer.Option(False, "--json", help="Print raw JSON."),
):
    """Show sync state and cached statistics without fetching."""
    engine, conn = _open_engine()
    try:
        info = engine.status(user_id)
    finally:
        _close(engine, conn)

    if as_json:
        typer.echo(json.dumps(info, indent=2))
        return

    rec = info["recommendation"]
    typer.echo(f"User {user_id}: sync {'recommended' if rec['should_sync'] else 'not needed'} ({rec['reason']})")
    for p in info["platforms"]:
        flags = []
        if p["is_currently_syncing"]:
            flags.append("SYNCING")
        if p["reset_eligible"]:
            flags.append("STUCK")
        if not p["credential_valid"]:
            flags.append("no credential")
        typer.echo(
            f"  {p['platform']:8s} cursor={p['cursor'] or '-'} last_success={p['last_success_at'] or 'never'} "
            f"messages={p['total_messages_processed']} {' '.join(flags)}"
        )
        if p["last_error"]:
            typer.echo(f"           last error [{p['last_error_kind']}]: {p['last_error']}")
    stats = info["stats"]
    typer.echo(
        f"  contacts={stats['contacts']} messages={stats['messages']} "
        f"unlinked={stats['unlinked_messages']} pending={info['pending_approvals']}"
    )


@app.command()
def webhook(
    user_id: str = typer.Argument(...),
    platform: str = typer.Argument(...),
    cursor: Optional[str] = typer.Option(None, "--cursor", help="Position announced by the push."),
):
    """Process a webhook-style push for one platform."""
    engine, conn = _open_engine()
    try:
        report = engine.handle_webhook(user_id, platform, cursor)
        _print_report(report)
    finally:
        _close(engine, conn)


@app.command("reset-sync")
def reset_sync(
    user_id: Optional[str] = typer.Argument(None),
    platform: Optional[str] = typer.Argument(None),
    stuck: bool = typer.Option(False, "--stuck", help="List runs eligible for reset instead."),
):
    """Administrative reset of a (user, platform) sync state."""
    engine, conn = _open_engine()
    try:
        if stuck:
            states = engine.reset_eligible(user_id)
            if not states:
                typer.echo("No stuck sync runs.")
            for s in states:
                typer.echo(f"  {s.user_id} {s.platform} syncing since {s.sync_started_at}")
            return
        if not user_id or not platform:
            typer.echo("Usage: crosswire reset-sync USER_ID PLATFORM", err=True)
            raise typer.Exit(2)
        engine.reset_sync_state(user_id, platform)
        typer.echo(f"Sync state reset for {user_id}/{platform}. Next sync will be initial.")
    finally:
        _close(engine, conn)


# --- Contact commands ---

contacts_app = typer.Typer(help="Unified contacts.")
app.add_typer(contacts_app, name="contacts")


def _record_options(platform, remote_id, name, email, handle, phone):
    """Parse CLI fields into (platform, NormalizedContact) or exit 2."""
    from pydantic import ValidationError

    from crosswire.adapters.records import parse_contact_record

    if platform == "gmail":
        payload = {"platform": "gmail", "email": email or remote_id or "", "name": name or ""}
    else:
        payload = {
            "platform": platform,
            "id": remote_id or "",
            "name": handle or "",
            "real_name": name,
            "email": email,
            "phone": phone,
        }
    try:
        record = parse_contact_record(payload)
    except ValidationError as e:
        typer.echo(f"Invalid {platform} contact: {e.error_count()} error(s)", err=True)
        for err in e.errors():
            typer.echo(f"  {'.'.join(str(p) for p in err['loc'])}: {err['msg']}", err=True)
        raise typer.Exit(2)
    return record.platform, record.normalize()


@contacts_app.command("list")
def contacts_list(user_id: str = typer.Argument(...)):
    """List unified contacts with their linked platforms."""
    engine, conn = _open_engine()
    try:
        contacts = engine.list_contacts(user_id)
    finally:
        _close(engine, conn)

    if not contacts:
        typer.echo("No contacts.")
        return
    for c in contacts:
        typer.echo(f"{c.id}  {c.full_name} <{c.email or '-'}>  [{', '.join(c.identities) or '-'}]")


@contacts_app.command("show")
def contacts_show(user_id: str = typer.Argument(...), contact_id: str = typer.Argument(...)):
    """Show one contact and each platform identity."""
    from crosswire.errors import CrosswireError

    engine, conn = _open_engine()
    try:
        contact = engine.get_contact(user_id, contact_id)
    except CrosswireError as e:
        typer.echo(f"Error [{e.kind}]: {e}", err=True)
        raise typer.Exit(1)
    finally:
        _close(engine, conn)

    typer.echo(f"{contact.full_name} <{contact.email or '-'}>  phone={contact.phone or '-'}")
    for platform, ident in contact.identities.items():
        typer.echo(f"  {platform:8s} {ident.platform_contact_id}  {ident.name or ''} {ident.handle or ''}".rstrip())


@contacts_app.command("match")
def contacts_match(
    user_id: str = typer.Argument(...),
    platform: str = typer.Argument(..., help="gmail or slack"),
    remote_id: Optional[str] = typer.Option(None, "--id", help="Platform user id (slack)."),
    name: Optional[str] = typer.Option(None, "--name"),
    email: Optional[str] = typer.Option(None, "--email"),
    handle: Optional[str] = typer.Option(None, "--handle"),
    phone: Optional[str] = typer.Option(None, "--phone"),
):
    """Show candidate matches for a contact without changing anything."""
    _, contact = _record_options(platform, remote_id, name, email, handle, phone)
    engine, conn = _open_engine()
    try:
        candidates = engine.find_matches(user_id, contact)
    finally:
        _close(engine, conn)

    if not candidates:
        typer.echo("No matches.")
        return
    for c in candidates:
        typer.echo(f"{c.contact_id}  {c.score:g}  {c.reason}")


@contacts_app.command("import")
def contacts_import(
    user_id: str = typer.Argument(...),
    platform: str = typer.Argument(..., help="gmail or slack"),
    remote_id: Optional[str] = typer.Option(None, "--id", help="Platform user id (slack)."),
    name: Optional[str] = typer.Option(None, "--name"),
    email: Optional[str] = typer.Option(None, "--email"),
    handle: Optional[str] = typer.Option(None, "--handle"),
    phone: Optional[str] = typer.Option(None, "--phone"),
):
    """Unify one contact by hand: link, merge, create or flag for review."""
    from crosswire.errors import CrosswireError

    platform, contact = _record_options(platform, remote_id, name, email, handle, phone)
    engine, conn = _open_engine()
    try:
        result = engine.process_contact(user_id, platform, contact)
    except CrosswireError as e:
        typer.echo(f"Error [{e.kind}]: {e}", err=True)
        raise typer.Exit(1)
    finally:
        _close(engine, conn)

    typer.echo(
        f"{result.action.value}: contact={result.contact_id or '-'} pending={result.pending_id or '-'}"
    )


# --- Approval commands ---

pending_app = typer.Typer(help="Pending contact approvals.")
app.add_typer(pending_app, name="pending")


@pending_app.command("list")
def pending_list(user_id: str = typer.Argument(...)):
    """List open pending approvals."""
    engine, conn = _open_engine()
    try:
        items = engine.list_pending(user_id)
    finally:
        _close(engine, conn)

    if not items:
        typer.echo("No pending approvals.")
        return
    for p in items:
        candidate = f" ~ {p.candidate_contact_id} ({p.candidate_score:g})" if p.candidate_contact_id else ""
        typer.echo(f"{p.id}  [{p.platform}] {p.sender_name} <{p.sender_email or p.sender_handle or '-'}>{candidate}")
        if p.message_count:
            typer.echo(f"    {p.message_count} message(s), last {p.last_message_date}: {p.preview_content}")


@pending_app.command("decide")
def pending_decide(
    user_id: str = typer.Argument(...),
    pending_id: str = typer.Argument(...),
    decision: str = typer.Option(..., "--decision", "-d", help="approve_new | approve_merge | reject"),
    target: Optional[str] = typer.Option(None, "--target", "-t", help="Target contact for approve_merge."),
):
    """Apply a decision to a pending approval."""
    from crosswire.errors import CrosswireError
    from crosswire.models import Decision, DecisionKind

    try:
        kind = DecisionKind(decision)
    except ValueError:
        typer.echo(f"Unknown decision: {decision}", err=True)
        raise typer.Exit(2)
    if kind == DecisionKind.APPROVE_MERGE and not target:
        typer.echo("approve_merge requires --target", err=True)
        raise typer.Exit(2)

    engine, conn = _open_engine()
    try:
        result = engine.decide_pending(user_id, pending_id, Decision(kind, target))
    except CrosswireError as e:
        typer.echo(f"Error [{e.kind}]: {e}", err=True)
        raise typer.Exit(1)
    finally:
        _close(engine, conn)

    suffix = " (already applied)" if result.replayed else ""
    typer.echo(
        f"{result.status.value}: contact={result.contact_id or '-'} "
        f"messages_imported={result.messages_imported or 0}{suffix}"
    )


# --- Blacklist commands ---

blacklist_app = typer.Typer(help="Suppressed senders.")
app.add_typer(blacklist_app, name="blacklist")


@blacklist_app.command("list")
def blacklist_list(user_id: str = typer.Argument(...)):
    engine, conn = _open_engine()
    try:
        entries = engine.list_blacklist(user_id)
    finally:
        _close(engine, conn)
    if not entries:
        typer.echo("Blacklist is empty.")
    for e in entries:
        typer.echo(f"{e.id}  [{e.platform}] {e.sender_name or '-'} <{e.sender_email or e.sender_handle or '-'}>  {e.reason or ''}")


@blacklist_app.command("remove")
def blacklist_remove(user_id: str = typer.Argument(...), entry_id: str = typer.Argument(...)):
    engine, conn = _open_engine()
    try:
        removed = engine.remove_blacklist(user_id, entry_id)
    finally:
        _close(engine, conn)
    if not removed:
        typer.echo(f"No blacklist entry {entry_id}.", err=True)
        raise typer.Exit(1)
    typer.echo(f"Removed {entry_id}.")


# --- Threads ---

@app.command()
def threads(
    user_id: str = typer.Argument(...),
    limit: int = typer.Option(20, "--limit", "-n"),
):
    """Show the threaded message view, most recent first."""
    engine, conn = _open_engine()
    try:
        items = list(engine.thread_view(user_id))[:limit]
    finally:
        _close(engine, conn)
    if not items:
        typer.echo("No messages.")
    for t in items:
        count = f" [{t.thread_count}]" if t.thread_count > 1 else ""
        urgency = f" !{t.urgency}" if t.urgency and t.urgency != "low" else ""
        typer.echo(f"{t.timestamp[:16]}  {t.display_name}{count}{urgency}")
        typer.echo(f"    {t.content[:100].replace(chr(10), ' ')}")


# --- Credentials ---

credentials_app = typer.Typer(help="Stored platform credentials.")
app.add_typer(credentials_app, name="credentials")


@credentials_app.command("set")
def credentials_set(
    user_id: str = typer.Argument(...),
    platform: str = typer.Argument(...),
    token: str = typer.Option(..., "--token", help="Access token."),
    refresh_token: Optional[str] = typer.Option(None, "--refresh-token"),
    expires_at: Optional[str] = typer.Option(None, "--expires-at", help="ISO-8601 expiry."),
    disabled: bool = typer.Option(False, "--disabled", help="Store with the integration disabled."),
    meta: Optional[List[str]] = typer.Option(None, "--meta", help="key=value metadata (repeatable)."),
):
    """Store a credential obtained elsewhere (OAuth flows are not run here)."""
    from crosswire.config import load_config
    from crosswire.credentials import save_credential
    from crosswire.database import get_db, init_db
    from crosswire.models import Credential

    metadata = {}
    for item in meta or []:
        key, _, value = item.partition("=")
        metadata[key.strip()] = value.strip()

    conn = get_db(load_config())
    init_db(conn)
    save_credential(conn, Credential(
        user_id=user_id,
        platform=platform,
        access_token=token,
        refresh_token=refresh_token,
        expires_at=expires_at,
        integration_enabled=not disabled,
        metadata=metadata,
    ))
    conn.close()
    typer.echo(f"Saved {platform} credential for {user_id}.")


@credentials_app.command("list")
def credentials_list(user_id: str = typer.Argument(...)):
    from crosswire.config import load_config
    from crosswire.credentials import is_valid, list_credentials
    from crosswire.database import get_db, init_db

    conn = get_db(load_config())
    init_db(conn)
    creds = list_credentials(conn, user_id)
    conn.close()
    if not creds:
        typer.echo("No credentials stored.")
    for c in creds:
        state = "valid" if is_valid(c) else ("disabled" if not c.integration_enabled else "expired/missing")
        typer.echo(f"  {c.platform:8s} {state:16s} expires={c.expires_at or '-'}")


# --- Web server ---

@app.command()
def web(
    host: str = typer.Option("127.0.0.1", "--host", "-h", help="Bind host."),
    port: int = typer.Option(8000, "--port", "-p", help="Bind port."),
    reload: bool = typer.Option(False, "--reload", help="Enable auto-reload for development."),
):
    """Start the HTTP API."""
    import uvicorn

    typer.echo(f"Starting crosswire API at http://{host}:{port}/api")
    uvicorn.run(
        "crosswire.web.app:create_app",
        host=host,
        port=port,
        reload=reload,
        factory=True,
    )


if __name__ == "__main__":
    app()
