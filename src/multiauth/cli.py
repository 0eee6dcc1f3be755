"""CLI entry point for the Multi-Auth Identity Engine."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import TypeVar

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from multiauth.config import Settings
from multiauth.errors import MultiAuthError
from multiauth.models.identity import Account
from multiauth.models.merge import MergeResolution, MergeSide
from multiauth.service import MultiAuthService

app = typer.Typer(
    name="multiauth",
    help="Multi-Auth Identity Engine — one account, many ways to sign in.",
    no_args_is_help=True,
)
console = Console()

T = TypeVar("T")


@app.callback()
def main(
    ctx: typer.Context,
    config: Path | None = typer.Option(None, help="YAML settings file"),
    db: Path | None = typer.Option(None, help="Path to SQLite database"),
    log_level: str = typer.Option("WARNING", help="Logging level"),
) -> None:
    logging.basicConfig(
        level=log_level.upper(),
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )
    settings = Settings.load(config)
    if db is not None:
        settings.database_path = db
    ctx.obj = settings


def _run(ctx: typer.Context, action: Callable[[MultiAuthService], Awaitable[T]]) -> T:
    """Open the engine, run one operation, close it. Business errors exit 1."""
    from multiauth.delivery.log import LogDeliverer

    settings: Settings = ctx.obj
    settings.database_path.parent.mkdir(parents=True, exist_ok=True)

    async def _main() -> T:
        service = await MultiAuthService.open(settings, deliverer=LogDeliverer())
        try:
            return await action(service)
        finally:
            await service.close()

    try:
        return asyncio.run(_main())
    except MultiAuthError as e:
        console.print(f"[red]{e.kind}: {e.message}[/red]")
        raise typer.Exit(1) from e


def _print_account(account: Account) -> None:
    console.print(f"[bold]Account[/bold] {account.id}")
    name = " ".join(p for p in (account.first_name, account.last_name) if p)
    if name:
        console.print(f"  name: {name}")
    for binding in account.identities:
        mark = "[green]verified[/green]" if binding.verified else "[yellow]unverified[/yellow]"
        primary = " (primary)" if binding.method == account.primary_auth_method else ""
        console.print(f"  {binding.method}: {binding.identifier} {mark}{primary}")
    if account.mfa_enabled:
        console.print("  [cyan]MFA enabled[/cyan]")


@app.command()
def init(ctx: typer.Context) -> None:
    """Create the database and seed the system roles."""

    async def _init(service: MultiAuthService) -> None:
        return None

    _run(ctx, _init)
    console.print(f"[green]Initialized Multi-Auth Identity Engine at {ctx.obj.database_path}[/green]")


@app.command()
def register(
    ctx: typer.Context,
    method: str = typer.Argument(help="Auth method, e.g. EMAIL or PHONE_TELEGRAM"),
    identifier: str = typer.Argument(help="Email, phone number, or provider id"),
    password: str | None = typer.Option(None, help="Password (email only)"),
    first_name: str | None = typer.Option(None, help="First name"),
    last_name: str | None = typer.Option(None, help="Last name"),
) -> None:
    """Register an identity, or return the account that already owns it."""
    profile = {"first_name": first_name, "last_name": last_name}
    result = _run(
        ctx,
        lambda service: service.register(
            method.upper(), identifier, password, {k: v for k, v in profile.items() if v}
        ),
    )

    if result.requires_merge:
        console.print(f"[yellow]Merge required. Request: {result.merge_request_id}[/yellow]")
        for field, conflict in sorted(result.conflicts.items()):
            console.print(f"  {field}: {conflict.primary!r} vs {conflict.secondary!r}")
        raise typer.Exit(2)

    console.print("[green]Created[/green]" if result.created else "[dim]Already registered[/dim]")
    _print_account(result.account)
    if result.requires_verification:
        status = "sent" if result.code_delivered else "not delivered"
        console.print(f"Verification code {result.verification_code_id} {status}")


@app.command()
def login(
    ctx: typer.Context,
    method: str = typer.Argument(help="Auth method"),
    identifier: str = typer.Argument(help="Email, phone number, or provider id"),
    password: str | None = typer.Option(None, help="Password"),
    code: str | None = typer.Option(None, help="Login verification code"),
    second_factor: str | None = typer.Option(None, help="Backup code"),
    factor: list[str] = typer.Option([], help="MFA code as METHOD=CODE (repeatable)"),
) -> None:
    """Sign in with any bound method."""
    presented = _parse_factors(factor) if factor else second_factor
    result = _run(
        ctx,
        lambda service: service.login(method.upper(), identifier, password, code, presented),
    )
    if result.requires_mfa:
        sent = ", ".join(result.mfa_methods) or "none"
        console.print(f"[yellow]Second factor required. Codes sent via: {sent}[/yellow]")
        console.print("[dim]Pass --factor METHOD=CODE or --second-factor BACKUP[/dim]")
        raise typer.Exit(2)
    console.print("[green]Signed in[/green]")
    _print_account(result.account)


def _parse_factors(values: list[str]) -> dict[str, str]:
    factors: dict[str, str] = {}
    for value in values:
        name, sep, code = value.partition("=")
        if not sep or not code:
            raise typer.BadParameter(f"expected METHOD=CODE, got {value!r}", param_hint="--factor")
        factors[name.strip().upper()] = code.strip()
    return factors


@app.command("send-code")
def send_code(
    ctx: typer.Context,
    method: str = typer.Argument(help="Auth method"),
    identifier: str = typer.Argument(help="Email or phone number"),
    purpose: str = typer.Option("login", help="registration, login, binding, unbinding or two_factor"),
    show_code: bool = typer.Option(False, help="Print the code (development only)"),
) -> None:
    """Issue a verification code and hand it to the delivery channel."""
    code, delivered = _run(
        ctx,
        lambda service: service.issue_verification_code(identifier, method.upper(), purpose),
    )
    status = "[green]delivered[/green]" if delivered else "[yellow]not delivered[/yellow]"
    console.print(f"Code {code.id} {status}, expires {code.expires_at:%H:%M:%S} UTC")
    if show_code:
        console.print(f"  code: {code.code}")


@app.command("verify-code")
def verify_code(
    ctx: typer.Context,
    method: str = typer.Argument(help="Auth method"),
    identifier: str = typer.Argument(help="Email or phone number"),
    code: str = typer.Argument(help="The code to check"),
    purpose: str = typer.Option("login", help="registration, login, binding, unbinding or two_factor"),
) -> None:
    """Consume a verification code."""
    ok = _run(ctx, lambda service: service.verify_code(code, identifier, method.upper(), purpose))
    if not ok:
        console.print("[red]Invalid or expired code[/red]")
        raise typer.Exit(1)
    console.print("[green]Code accepted[/green]")


@app.command()
def bind(
    ctx: typer.Context,
    account_id: str = typer.Argument(help="Account id"),
    method: str = typer.Argument(help="Auth method to add"),
    identifier: str = typer.Argument(help="Identifier for the method"),
    code: str | None = typer.Option(None, help="Binding verification code"),
) -> None:
    """Attach another sign-in method to an account."""
    account = _run(ctx, lambda service: service.bind(account_id, method.upper(), identifier, code))
    _print_account(account)


@app.command()
def unbind(
    ctx: typer.Context,
    account_id: str = typer.Argument(help="Account id"),
    method: str = typer.Argument(help="Auth method to remove"),
    code: str | None = typer.Option(None, help="Unbinding verification code"),
) -> None:
    """Detach a sign-in method. The last method can never be removed."""
    account = _run(ctx, lambda service: service.unbind(account_id, method.upper(), code))
    _print_account(account)


@app.command("merge-resolve")
def merge_resolve(
    ctx: typer.Context,
    request_id: str = typer.Argument(help="Merge request id"),
    take: list[str] = typer.Option([], help="Field to take from the incoming identity"),
    bind_method: bool = typer.Option(True, help="Bind the contended method on success"),
) -> None:
    """Resolve a pending merge. Fields not passed via --take keep the current value."""
    resolution = MergeResolution(
        choices={field: MergeSide.SECONDARY for field in take}, bind_method=bind_method
    )
    account = _run(ctx, lambda service: service.resolve_merge(request_id, resolution))
    console.print(f"[green]Merge {request_id} resolved[/green]")
    _print_account(account)


@app.command("merge-reject")
def merge_reject(
    ctx: typer.Context,
    request_id: str = typer.Argument(help="Merge request id"),
) -> None:
    """Reject a pending merge request."""
    request = _run(ctx, lambda service: service.reject_merge(request_id))
    console.print(f"[yellow]Merge {request.id} {request.status}[/yellow]")


@app.command("mfa-setup")
def mfa_setup(
    ctx: typer.Context,
    account_id: str = typer.Argument(help="Account id"),
    method: list[str] = typer.Option(..., help="Second-factor method (repeatable)"),
    required: int = typer.Option(1, help="How many methods a login must pass"),
) -> None:
    """Enable MFA and print fresh backup codes."""
    settings = _run(
        ctx,
        lambda service: service.setup_mfa(account_id, [m.upper() for m in method], required),
    )
    table = Table(title="Backup codes (shown once)")
    table.add_column("#", justify="right")
    table.add_column("Code")
    for i, code in enumerate(settings.backup_codes, 1):
        table.add_row(str(i), code)
    console.print(table)


@app.command("mfa-disable")
def mfa_disable(
    ctx: typer.Context,
    account_id: str = typer.Argument(help="Account id"),
) -> None:
    """Turn MFA off and discard backup codes."""
    _run(ctx, lambda service: service.disable_mfa(account_id))
    console.print(f"[green]MFA disabled for {account_id}[/green]")


@app.command()
def methods(
    ctx: typer.Context,
    account_id: str = typer.Argument(help="Account id"),
) -> None:
    """List the sign-in methods bound to an account."""
    account = _run(ctx, lambda service: service.get_account(account_id))
    table = Table(title=f"Methods for {account.id}")
    table.add_column("Method")
    table.add_column("Identifier")
    table.add_column("Verified")
    table.add_column("Bound at")
    for binding in account.identities:
        table.add_row(
            binding.method,
            binding.identifier,
            "yes" if binding.verified else "no",
            f"{binding.bound_at:%Y-%m-%d %H:%M}",
        )
    console.print(table)


@app.command("github-url")
def github_url(ctx: typer.Context) -> None:
    """Print the GitHub authorization URL and its state token."""
    from multiauth.providers.github import GitHubNormalizer

    settings: Settings = ctx.obj
    try:
        url, state = GitHubNormalizer(settings.provider("github")).authorization_url()
    except MultiAuthError as e:
        console.print(f"[red]{e.kind}: {e.message}[/red]")
        raise typer.Exit(1) from e
    console.print(url, soft_wrap=True)
    console.print(f"[dim]state: {state}[/dim]")


@app.command()
def cleanup(ctx: typer.Context) -> None:
    """Mark overdue pending merge requests as expired."""
    count = _run(ctx, lambda service: service.expire_stale_merges())
    console.print(f"Expired {count} merge request(s)")
