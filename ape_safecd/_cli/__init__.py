import click

from ape_safecd._cli.delegates import delegates
from ape_safecd._cli.nonces import nonces
from ape_safecd._cli.pending import pending
from ape_safecd._cli.reminders import reminders
from ape_safecd._cli.sync import sync


@click.group(short_help="Continuous delivery for Safes described in git")
def cli():
    """
    Command-line helper for repositories describing Safes, their owners, delegates,
    transactions and proposals. Keeps them in sync with the transaction service.
    """


cli.add_command(sync)
cli.add_command(nonces)
cli.add_command(pending)
cli.add_command(reminders)
cli.add_command(delegates)
