"""Memory CLI commands."""

from __future__ import annotations

from contextlib import contextmanager

import typer
from rich.table import Table

from .core import app, console, make_memory_service

memory_app = typer.Typer(help="Manage long-term memory")
app.add_typer(memory_app, name="memory")

MEMORY_TIERS = {"TIER1", "TIER2", "TIER3"}
DEFAULT_USER = "cli"


def _normalize_tier(raw: str | None) -> str | None:
    if raw is None:
        return None
    value = raw.strip().upper()
    if value not in MEMORY_TIERS:
        console.print(f"[red]Invalid --tier. Use: {'|'.join(sorted(MEMORY_TIERS))}[/red]")
        raise typer.Exit(1)
    return value


@contextmanager
def _memory_service_context():
    from memkeep.config.loader import load_config

    service = make_memory_service(load_config())
    try:
        yield service
    finally:
        service.close()


def _short(content: str, limit: int = 120) -> str:
    text = " ".join(content.split())
    if len(text) > limit:
        text = text[: limit - 3] + "..."
    return text


def _records_table(title: str, records) -> Table:
    table = Table(title=title)
    table.add_column("ID")
    table.add_column("Tier")
    table.add_column("Priority", justify="right")
    table.add_column("Updated")
    table.add_column("Content")
    for record in records:
        table.add_row(
            record.id[:12],
            record.tier.value,
            f"{record.priority:.2f}",
            record.updated_at[:19],
            _short(record.content),
        )
    return table


@memory_app.command("remember")
def memory_remember(
    text: str = typer.Argument(..., help="What to remember"),
    user: str = typer.Option(DEFAULT_USER, "--user", "-u", help="User id"),
    thread_id: str | None = typer.Option(None, "--thread", help="Thread id"),
) -> None:
    """Explicitly save a memory."""
    from memkeep.memory.errors import CaptureFailedError, MemoryValidationError

    with _memory_service_context() as service:
        try:
            outcome = service.remember(user, text, thread_id=thread_id)
        except MemoryValidationError as e:
            console.print(f"[red]Not saved ({e.reason}):[/red] {e}")
            raise typer.Exit(1)
        except CaptureFailedError as e:
            console.print(f"[red]Save failed:[/red] {e}")
            raise typer.Exit(1)

    record = outcome.record
    action = "Saved" if outcome.state.value == "inserted" else "Updated"
    console.print(f"[green]✓[/green] {action} memory {record.id} ({record.tier.value})")


@memory_app.command("capture")
def memory_capture(
    text: str = typer.Argument(..., help="Conversation turn text"),
    user: str = typer.Option(DEFAULT_USER, "--user", "-u", help="User id"),
    thread_id: str | None = typer.Option(None, "--thread", help="Thread id"),
    context: str = typer.Option("", "--context", help="Preceding conversation text"),
    role: str = typer.Option("user", "--role", help="user|assistant"),
) -> None:
    """Run passive capture on one turn and wait for the result."""
    if role not in {"user", "assistant"}:
        console.print("[red]Invalid --role. Use: assistant|user[/red]")
        raise typer.Exit(1)

    with _memory_service_context() as service:
        accepted = service.capture_turn(
            user,
            text,
            conversation_context=context,
            thread_id=thread_id,
            role=role,
        )
        if accepted:
            service.flush()
        stats = service.stats(user)

    if not accepted:
        console.print("[yellow]Capture not queued (disabled or queue full).[/yellow]")
        raise typer.Exit(1)
    console.print(f"[green]✓[/green] Turn processed. Active memories for {user}: {stats.get('total_active')}")


@memory_app.command("recall")
def memory_recall(
    query: str | None = typer.Argument(None, help="Optional query text"),
    user: str = typer.Option(DEFAULT_USER, "--user", "-u", help="User id"),
    limit: int | None = typer.Option(None, "--limit", "-n", min=1, max=20),
    deadline_ms: int | None = typer.Option(None, "--deadline-ms", min=1, max=500),
    render: bool = typer.Option(False, "--render", help="Print the prompt block instead of a table"),
) -> None:
    """Recall memories for a user within a deadline."""
    from memkeep.memory.render import render_recall

    with _memory_service_context() as service:
        result = service.recall(user, query=query, max_items=limit, deadline_ms=deadline_ms)
        max_chars = service.config.recall.max_prompt_chars

    if render:
        block = render_recall(result.memories, max_chars=max_chars)
        console.print(block or "No memories.", markup=False)
        return

    if not result.memories:
        console.print("No memories.")
    else:
        console.print(_records_table("Recalled Memories", result.memories))
    suffix = " [yellow](timed out, partial)[/yellow]" if result.timed_out else ""
    console.print(f"[dim]{result.elapsed_ms:.1f} ms[/dim]{suffix}")


@memory_app.command("list")
def memory_list(
    user: str = typer.Option(DEFAULT_USER, "--user", "-u", help="User id"),
    tier: str | None = typer.Option(None, "--tier", help="TIER1|TIER2|TIER3"),
    limit: int = typer.Option(50, "--limit", "-n", min=1, max=500),
    offset: int = typer.Option(0, "--offset", min=0),
) -> None:
    """List live memories for a user."""
    tier_value = _normalize_tier(tier)
    with _memory_service_context() as service:
        records = service.list(user, tier=tier_value, limit=limit, offset=offset)

    if not records:
        console.print("No memories.")
        return
    console.print(_records_table(f"Memories for {user}", records))


@memory_app.command("show")
def memory_show(
    record_id: str = typer.Argument(..., help="Memory id"),
    user: str = typer.Option(DEFAULT_USER, "--user", "-u", help="User id"),
    reveal: bool = typer.Option(False, "--reveal", help="Fill redacted values back in"),
    audit: bool = typer.Option(False, "--audit", help="Show the audit trail"),
) -> None:
    """Show one memory record."""
    from memkeep.memory.errors import MemkeepError

    with _memory_service_context() as service:
        try:
            record = service.get(user, record_id)
            content = service.restore_content(user, record_id) if reveal else record.content
            audits = service.audits(user, record_id) if audit else []
        except MemkeepError as e:
            console.print(f"[red]{e}[/red]")
            raise typer.Exit(1)

    console.print(f"[bold]{record.id}[/bold]")
    console.print(f"tier: {record.tier.value}")
    console.print(f"priority: {record.priority:.3f}")
    console.print(f"confidence: {record.confidence:.3f}")
    console.print(f"repeats: {record.repeats}")
    console.print(f"threads: {', '.join(sorted(record.thread_set)) or '-'}")
    console.print(f"topic: {record.topic or '-'}")
    console.print(f"source: {record.source}")
    console.print(f"created_at: {record.created_at}")
    console.print(f"updated_at: {record.updated_at}")
    console.print(f"content: {content}", markup=False)

    if audits:
        table = Table(title="Audit Trail")
        table.add_column("When")
        table.add_column("Action")
        table.add_column("Detail")
        for row in audits:
            table.add_row(row.created_at[:19], row.action, _short(str(row.detail), 80))
        console.print(table)


@memory_app.command("update")
def memory_update(
    record_id: str = typer.Argument(..., help="Memory id"),
    user: str = typer.Option(DEFAULT_USER, "--user", "-u", help="User id"),
    text: str | None = typer.Option(None, "--text", "-t", help="New content"),
    tier: str | None = typer.Option(None, "--tier", help="TIER1|TIER2|TIER3"),
    priority: float | None = typer.Option(None, "--priority", min=0.0, max=1.0),
    confidence: float | None = typer.Option(None, "--confidence", min=0.0, max=1.0),
) -> None:
    """Edit a memory record."""
    from memkeep.memory.errors import MemkeepError

    tier_value = _normalize_tier(tier)
    with _memory_service_context() as service:
        try:
            record = service.update(
                user,
                record_id,
                content=text,
                tier=tier_value,
                priority=priority,
                confidence=confidence,
            )
        except MemkeepError as e:
            console.print(f"[red]{e}[/red]")
            raise typer.Exit(1)

    console.print(f"[green]✓[/green] Updated memory {record.id} ({record.tier.value})")


@memory_app.command("delete")
def memory_delete(
    record_id: str = typer.Argument(..., help="Memory id"),
    user: str = typer.Option(DEFAULT_USER, "--user", "-u", help="User id"),
) -> None:
    """Soft-delete a memory record."""
    from memkeep.memory.errors import MemkeepError

    with _memory_service_context() as service:
        try:
            service.delete(user, record_id)
        except MemkeepError as e:
            console.print(f"[red]{e}[/red]")
            raise typer.Exit(1)

    console.print(f"[green]✓[/green] Deleted memory {record_id}")


@memory_app.command("search")
def memory_search(
    query: str = typer.Option(..., "--query", "-q", help="Search query"),
    user: str = typer.Option(DEFAULT_USER, "--user", "-u", help="User id"),
    limit: int = typer.Option(8, "--limit", "-n", min=1, max=100),
) -> None:
    """Full-text search over a user's memories."""
    with _memory_service_context() as service:
        hits = service.search(user, query, limit=limit)

    if not hits:
        console.print("No memory hits.")
        return

    table = Table(title="Memory Search Results")
    table.add_column("Rank", justify="right")
    table.add_column("Tier")
    table.add_column("Updated")
    table.add_column("Content")
    for record, rank in hits:
        table.add_row(f"{rank:.2f}", record.tier.value, record.updated_at[:19], _short(record.content))
    console.print(table)


@memory_app.command("retention")
def memory_retention() -> None:
    """Run expiry, decay, promotion and purge once."""
    with _memory_service_context() as service:
        report = service.run_retention()

    console.print("[bold]Retention Report[/bold]")
    console.print(f"expired: {report.expired}")
    console.print(f"decayed: {report.decayed}")
    console.print(f"promoted: {report.promoted}")
    console.print(f"demoted: {report.demoted}")
    console.print(f"purged: {report.purged}")


@memory_app.command("stats")
def memory_stats(
    user: str | None = typer.Option(None, "--user", "-u", help="Limit counts to one user"),
) -> None:
    """Show long-term memory status and counters."""
    with _memory_service_context() as service:
        stats = service.stats(user)

    console.print("[bold]Memory Status[/bold]")
    console.print(f"enabled: {stats.get('enabled')}")
    console.print(f"wal_enabled: {stats.get('wal_enabled')}")
    console.print(f"db_path: {stats.get('db_path')}")
    console.print(f"total_active: {stats.get('total_active')}")
    console.print(f"total_deleted: {stats.get('total_deleted')}")

    tier_table = Table(title="By Tier")
    tier_table.add_column("Tier")
    tier_table.add_column("Count", justify="right")
    for tier, count in sorted((stats.get("by_tier") or {}).items()):
        tier_table.add_row(str(tier), str(count))
    console.print(tier_table)


@memory_app.command("reindex")
def memory_reindex() -> None:
    """Rebuild memory full-text index."""
    with _memory_service_context() as service:
        service.reindex()

    console.print("[green]✓[/green] Memory FTS index rebuilt.")
