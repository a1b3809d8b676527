import click

from ape_safecd._cli.click_ext import SafeCdCliContext, root_option, safecd_cli_ctx


@click.command()
@safecd_cli_ctx()
@root_option
@click.option(
    "--users",
    required=True,
    envvar="USERS",
    help="Owners to remind, as 'EOA_NAME:SLACK_ID;EOA_NAME:SLACK_ID'",
)
@click.option("--dry-run", is_flag=True, envvar="DRY_RUN", help="Do not send anything")
@click.option(
    "--chain-prefix",
    default="eth",
    show_default=True,
    help="EIP-3770 short name used in Safe app links",
)
def reminders(cli_ctx: SafeCdCliContext, root, users, dry_run, chain_prefix):
    """
    Remind owners on Slack of the proposals waiting for their signature
    """
    from ape_safecd.notifications import ReminderSender, SlackChannel, parse_users
    from ape_safecd.report import AddressBook

    try:
        parsed = parse_users(users)
    except ValueError as err:
        raise click.BadParameter(str(err), param_hint="--users") from err

    store = cli_ctx.load_store(root)
    sender = ReminderSender(store, AddressBook.from_store(store), chain_prefix=chain_prefix)
    pending = sender.collect(parsed)
    for reminder in pending:
        click.echo(
            f"{reminder.name} ({reminder.slack_id}): "
            f"{len(reminder.proposals)} proposal(s) awaiting a signature"
        )

    if dry_run or not pending:
        cli_ctx.logger.info("Nothing sent.")
        return

    elif not (token := cli_ctx.safecd_config.slack_bot_token):
        cli_ctx.abort("Set APE_SAFECD_SLACK_BOT_TOKEN to send reminders.")

    sent = sender.send(SlackChannel(token), pending)
    cli_ctx.logger.success(f"Sent {sent} of {len(pending)} reminder(s).")
