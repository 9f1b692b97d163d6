"""CLI entry point for the user ledger."""

from typing import Optional

import click

from .config import LedgerConfig, get_config
from .errors import LedgerError
from .logging_config import setup_logging
from .money import format_amount
from .shell import LedgerShell
from .storage import StorageInterface, create_storage
from .transfers import TransferEngine
from .users import UserManager


class LedgerApp:
    """Wires one storage handle into the user manager and transfer engine"""

    def __init__(self, config: LedgerConfig):
        self.config = config
        self._storage: Optional[StorageInterface] = None

    def connect(self) -> StorageInterface:
        """Open the storage backend once; a failure here ends the command"""
        if self._storage is None:
            try:
                self._storage = create_storage(self.config)
            except (LedgerError, ValueError) as e:
                raise click.ClickException(f"db init: {e}") from e
        return self._storage

    @property
    def storage(self) -> StorageInterface:
        return self.connect()

    @property
    def users(self) -> UserManager:
        return UserManager(self.storage)

    @property
    def transfers(self) -> TransferEngine:
        return TransferEngine(self.storage, self.config)

    def close(self) -> None:
        if self._storage is not None:
            self._storage.close()
            self._storage = None


pass_app = click.make_pass_decorator(LedgerApp)


@click.group(invoke_without_command=True)
@click.option("--database-url", default=None, help="Database URL (overrides LEDGER_DATABASE_URL)")
@click.option("--log-level", default=None, help="Log level (overrides LEDGER_LOG_LEVEL)")
@click.pass_context
def main(ctx: click.Context, database_url: Optional[str], log_level: Optional[str]) -> None:
    """User ledger: user balances and atomic transfers."""
    config = get_config()
    overrides: dict = {}
    if database_url:
        overrides["database_url"] = database_url
    if log_level:
        overrides["log_level"] = log_level
    if overrides:
        config = config.model_copy(update=overrides)

    setup_logging(config.log_level, config.log_format, config.log_file)

    app = LedgerApp(config)
    ctx.obj = app
    ctx.call_on_close(app.close)

    if ctx.invoked_subcommand is None:
        ctx.invoke(shell)


@main.command()
@pass_app
def shell(app: LedgerApp) -> None:
    """Start the interactive shell (default)."""
    app.connect()
    click.echo("Connected to DB. Starting CLI.")
    LedgerShell(app.users, app.transfers).run()


@main.command("init-db")
@pass_app
def init_db(app: LedgerApp) -> None:
    """Create the users table if it is missing."""
    try:
        app.storage.ensure_schema()
    except LedgerError as e:
        raise click.ClickException(str(e)) from e
    click.echo("schema ready")


@main.command("list")
@pass_app
def list_users(app: LedgerApp) -> None:
    """List all users."""
    try:
        users = app.users.list_users()
    except LedgerError as e:
        raise click.ClickException(str(e)) from e
    for user in users:
        click.echo(user.to_string())


@main.command()
@click.argument("name")
@click.argument("email")
@click.argument("balance")
@pass_app
def add(app: LedgerApp, name: str, email: str, balance: str) -> None:
    """Add a new user."""
    try:
        user = app.users.create_user(name, email, balance)
    except LedgerError as e:
        raise click.ClickException(str(e)) from e
    click.echo(f"user added: {user.to_string()}")


@main.command()
@click.argument("user_id", type=int)
@pass_app
def get(app: LedgerApp, user_id: int) -> None:
    """Show a user by id."""
    try:
        user = app.users.get_user(user_id)
    except LedgerError as e:
        raise click.ClickException(str(e)) from e
    click.echo(user.to_string())


@main.command()
@click.argument("from_user_id", type=int)
@click.argument("to_user_id", type=int)
@click.argument("amount")
@click.option("--lock-timeout", type=float, default=None,
              help="Seconds to wait for row locks (overrides LEDGER_LOCK_TIMEOUT_SECONDS)")
@pass_app
def transfer(app: LedgerApp, from_user_id: int, to_user_id: int, amount: str,
             lock_timeout: Optional[float]) -> None:
    """Transfer money between two users."""
    engine = app.transfers
    try:
        if lock_timeout is None:
            result = engine.transfer(from_user_id, to_user_id, amount)
        else:
            result = engine.transfer(from_user_id, to_user_id, amount, lock_timeout=lock_timeout)
    except LedgerError as e:
        raise click.ClickException(f"transfer failed: {e}") from e
    click.echo(
        f"transfer ok: {result.from_user_id} -> {result.to_user_id} "
        f"{format_amount(result.amount)} "
        f"(balances {format_amount(result.from_balance)} / {format_amount(result.to_balance)})"
    )

