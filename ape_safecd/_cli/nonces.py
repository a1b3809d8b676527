import click
import rich

from ape_safecd._cli.click_ext import SafeCdCliContext, root_option, safecd_cli_ctx


@click.command()
@safecd_cli_ctx()
@root_option
def nonces(cli_ctx: SafeCdCliContext, root):
    """
    Show the nonce every pending proposal will be proposed with
    """
    from ape_safecd.nonce import NonceResolver

    store = cli_ctx.load_store(root)
    schedule = NonceResolver(store).schedule()
    if not schedule:
        cli_ctx.logger.info("No pending proposals.")
        return

    for safe_address, scheduled in schedule.items():
        safe = store.get_safe_by_address(safe_address)
        rich.print(f"[bold]{safe.name if safe else safe_address}[/bold] ({safe_address})")
        for item in scheduled:
            click.echo(f"  {item.nonce}: {item.path} ({item.proposal.title})")
