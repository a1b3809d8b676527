import click

from ape_safecd._cli.click_ext import SafeCdCliContext, root_option, safecd_cli_ctx


@click.group()
def delegates():
    """
    View and register delegates
    """


@delegates.command(name="list")
@safecd_cli_ctx()
@root_option
@click.argument("safe")
def _list(cli_ctx: SafeCdCliContext, root, safe):
    """
    Show the delegates of SAFE (name or address) as last synced
    """
    from ape_safecd.types import PopulatedSafe

    store = cli_ctx.load_store(root)
    if not isinstance(target := store.resolve_safe(safe), PopulatedSafe):
        cli_ctx.abort(f"Unknown or unsynced safe '{safe}'.")

    elif not target.delegates:
        cli_ctx.logger.info(f"No delegates for {target.address} ({target.name})")
        return

    for delegate in target.delegates:
        click.echo(f"  {delegate.delegate} ({delegate.label}) for {delegate.delegator}")


@delegates.command()
@safecd_cli_ctx()
@root_option
@click.option(
    "--chain-id",
    type=int,
    default=1,
    show_default=True,
    envvar="CHAIN_ID",
    help="Chain of the transaction service (ignored with `transaction_service_url`)",
)
@click.argument("safe")
@click.argument("delegate")
@click.argument("label")
@click.argument("delegator")
def add(cli_ctx: SafeCdCliContext, root, chain_id, safe, delegate, label, delegator):
    """
    Register DELEGATE (labelled LABEL) for the owner DELEGATOR (account alias or address)
    of SAFE, so it can propose transactions
    """
    from ape_safecd.client import TransactionServiceClient
    from ape_safecd.utils import checksum

    store = cli_ctx.load_store(root)
    if (target := store.resolve_safe(safe)) is None:
        cli_ctx.abort(f"Unknown safe '{safe}'.")

    signer = cli_ctx.load_account(delegator)
    client = TransactionServiceClient(
        override_url=cli_ctx.safecd_config.transaction_service_url, chain_id=chain_id
    )
    client.add_delegate(target.address, checksum(delegate), label, signer)
    cli_ctx.logger.success(
        f"Added delegate {checksum(delegate)} ({label}) for {signer.address} "
        f"in {target.address} ({target.name})"
    )
