import os
import time
from pathlib import Path
from typing import TYPE_CHECKING

import click
from ape.cli import ConnectedProviderCommand

from ape_safecd._cli.click_ext import SafeCdCliContext, root_option, safecd_cli_ctx

if TYPE_CHECKING:
    from ape_safecd.store import EntityStore, SaveResult


def _write_ci_outputs(cli_ctx: SafeCdCliContext, store: "EntityStore", result: "SaveResult"):
    from ape_safecd.report import load_manifests, render_manifests

    commit_msg = Path("COMMIT_MSG")
    github_output = os.environ.get("GITHUB_OUTPUT")
    if result.has_changes:
        commit_msg.write_text(result.commit_message, encoding="utf-8")
        if github_output:
            with open(github_output, "a") as output:
                output.write("hasChanges=true\n")

    elif commit_msg.exists():
        commit_msg.unlink()

    if os.environ.get("CI") != "true":
        return

    cli_ctx.logger.info(f"Looking for proposal manifests in '{store.script_folder}'")
    if comment := render_manifests(load_manifests(store)):
        Path("PR_COMMENT").write_text(comment, encoding="utf-8")
        if github_output:
            with open(github_output, "a") as output:
                output.write("hasPrComment=true\n")


@click.command(cls=ConnectedProviderCommand)
@safecd_cli_ctx()
@root_option
@click.option("--dry-run", is_flag=True, envvar="DRY_RUN", help="Do not write to disk")
@click.option("--upload", is_flag=True, envvar="UPLOAD", help="Propose to the transaction service")
@click.option("--fork-url", help="RPC used by the simulator (defaults to the provider's URI)")
def sync(cli_ctx: SafeCdCliContext, root, dry_run, upload, fork_url):
    """
    Sync the repository with the Safes it describes, then simulate, verify
    and (optionally) propose every pending proposal
    """
    from ape_safecd.chain import ChainReader
    from ape_safecd.client import EIP3770_BLOCKCHAIN_NAMES_BY_CHAIN_ID, TransactionServiceClient
    from ape_safecd.notifications import NotificationSyncer, SlackChannel
    from ape_safecd.proposals import ProposalSyncer
    from ape_safecd.report import AddressBook, count_errors, render_overview
    from ape_safecd.safes import SafeSyncer
    from ape_safecd.simulator import ForgeSimulator
    from ape_safecd.types import PopulatedSafe
    from ape_safecd.verify import TransactionHashVerifier

    config = cli_ctx.safecd_config
    should_upload = upload and not dry_run
    store = cli_ctx.load_store(root)
    chain = ChainReader()
    client = TransactionServiceClient(
        override_url=config.transaction_service_url, chain_id=chain.chain_id
    )
    cli_ctx.logger.info(f"chain={chain.chain_id} dry_run={dry_run} upload={should_upload}")

    cli_ctx.logger.info("stage 1: syncing safes, transactions, owners and delegates")
    safes = SafeSyncer(store, client, chain)
    safes.sync()

    cli_ctx.logger.info(
        "stage 2: syncing & uploading proposals" if should_upload else "stage 2: syncing proposals"
    )
    delegates = {
        delegate.delegate
        for entry in store.safes
        if isinstance(entry.entity, PopulatedSafe)
        for delegate in entry.entity.delegates
    }
    proposals = ProposalSyncer(
        store,
        client,
        chain,
        ForgeSimulator(
            fork_url or chain.rpc_url, chain.chain_id, store.root, binary=config.simulator
        ),
        TransactionHashVerifier(chain),
        signers=cli_ctx.load_signers(delegates) if should_upload else None,
        upload=should_upload,
    )
    manifests = proposals.sync()

    if proposals.proposed:
        cli_ctx.logger.info(
            f"stage 3: sleeping {config.resync_delay} seconds then syncing safes again"
        )
        time.sleep(config.resync_delay)
        safes.sync()

    if should_upload and config.slack_bot_token:
        NotificationSyncer(
            store,
            SlackChannel(config.slack_bot_token),
            AddressBook.from_store(store),
            chain_prefix=EIP3770_BLOCKCHAIN_NAMES_BY_CHAIN_ID.get(chain.chain_id, "eth"),
        ).sync()

    store.stage_file(
        "README.md", render_overview(store, AddressBook.from_store(store), config.title)
    )

    if diff := store.diff():
        click.echo("".join(diff))

    if dry_run:
        cli_ctx.logger.info("Dry run, nothing written to disk.")

    else:
        result = store.save()
        cli_ctx.logger.success(
            f"Saved (create={result.creations} edit={result.edits} delete={result.deletions})"
        )
        _write_ci_outputs(cli_ctx, store, result)

    if errors := count_errors(manifests):
        cli_ctx.abort(f"There's an error in {errors} of the proposal manifests.")
