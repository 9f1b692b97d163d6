"""
Interactive Shell

Read-eval-print loop over the user manager and the transfer engine. Bad
input prints a usage line and the loop carries on; only `exit`, `quit` or
end of input stop it.
"""

from typing import Callable, Dict, List, Optional, TextIO

import click

from .errors import LedgerError
from .transfers import TransferEngine
from .users import UserManager


HELP_TEXT = """Commands:
  help                             Show this help
  list                             List all users
  add <name> <email> <balance>     Add new user
  get <id>                         Show user by id
  transfer <from> <to> <amount>    Transfer money
  exit, quit                       Exit CLI"""


class LedgerShell:
    """Line-oriented command loop"""

    PROMPT = "> "

    def __init__(self, users: UserManager, transfers: TransferEngine,
                 stdin: Optional[TextIO] = None):
        self.users = users
        self.transfers = transfers
        self.stdin = stdin or click.get_text_stream("stdin")
        self._commands: Dict[str, Callable[[List[str]], None]] = {
            "help": self._help,
            "list": self._list,
            "add": self._add,
            "get": self._get,
            "transfer": self._transfer,
        }

    def run(self) -> None:
        """Prompt for commands until exit, quit or end of input"""
        click.echo("User ledger CLI - type 'help' for commands")
        while True:
            click.echo(self.PROMPT, nl=False)
            line = self.stdin.readline()
            if not line:
                click.echo()
                break
            if not self.handle(line):
                break
        click.echo("bye")

    def handle(self, line: str) -> bool:
        """Execute one command line. Returns False when the loop should stop."""
        parts = line.split()
        if not parts:
            return True

        command, args = parts[0].lower(), parts[1:]
        if command in ("exit", "quit"):
            return False

        handler = self._commands.get(command)
        if handler is None:
            click.echo("unknown command - type 'help'")
        else:
            handler(args)
        return True

    def _help(self, args: List[str]) -> None:
        click.echo(HELP_TEXT)

    def _list(self, args: List[str]) -> None:
        try:
            users = self.users.list_users()
        except LedgerError as e:
            click.echo(f"error: {e}")
            return
        if not users:
            click.echo("no users")
        for user in users:
            click.echo(user.to_string())

    def _add(self, args: List[str]) -> None:
        if len(args) < 3:
            click.echo("usage: add <name> <email> <balance>")
            return
        try:
            user = self.users.create_user(args[0], args[1], args[2])
        except LedgerError as e:
            click.echo(f"insert error: {e}")
            return
        click.echo(f"user added: {user.to_string()}")

    def _get(self, args: List[str]) -> None:
        if len(args) < 1:
            click.echo("usage: get <id>")
            return
        user_id = _parse_id(args[0])
        if user_id is None:
            click.echo("invalid id")
            return
        try:
            user = self.users.get_user(user_id)
        except LedgerError as e:
            click.echo(f"error: {e}")
            return
        click.echo(user.to_string())

    def _transfer(self, args: List[str]) -> None:
        if len(args) < 3:
            click.echo("usage: transfer <fromID> <toID> <amount>")
            return
        from_user_id, to_user_id = _parse_id(args[0]), _parse_id(args[1])
        if from_user_id is None or to_user_id is None:
            click.echo("invalid arguments")
            return
        try:
            self.transfers.transfer(from_user_id, to_user_id, args[2])
        except LedgerError as e:
            click.echo(f"transfer failed: {e}")
            return
        click.echo("transfer ok")


def _parse_id(text: str) -> Optional[int]:
    try:
        return int(text)
    except ValueError:
        return None
