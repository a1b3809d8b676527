import click

from ape_safecd._cli.click_ext import SafeCdCliContext, root_option, safecd_cli_ctx


@click.command()
@safecd_cli_ctx()
@root_option
@click.argument("owner")
def pending(cli_ctx: SafeCdCliContext, root, owner):
    """
    Show submitted proposals still waiting for OWNER's signature (name or address)
    """
    from ape_safecd.store import ADDRESS_PATTERN

    store = cli_ctx.load_store(root)
    if ADDRESS_PATTERN.match(owner):
        address = owner

    elif account := store.get_eoa_by_name(owner) or store.get_safe_by_name(owner):
        address = account.address

    else:
        cli_ctx.abort(f"Unknown owner '{owner}'.")

    if not (proposals := store.get_pending_proposals_by_owner(address)):
        cli_ctx.logger.info(f"No proposals awaiting a signature from '{owner}'.")
        return

    click.echo(f"{len(proposals)} proposal(s) awaiting a signature from '{owner}':")
    for proposal in proposals:
        safe = store.resolve_safe(proposal.safe)
        click.echo(
            f"  {proposal.safe_tx_hash} {proposal.title} "
            f"(safe: {safe.name if safe else proposal.safe})"
        )
