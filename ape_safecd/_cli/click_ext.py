from pathlib import Path
from typing import TYPE_CHECKING, cast

import click
from ape.cli import ApeCliContextObject, ape_cli_context

if TYPE_CHECKING:
    # perf: Keep the CLI module loading fast as possible.
    from ape.api import AccountAPI
    from ape.types import AddressType

    from ape_safecd.config import SafeCdConfig
    from ape_safecd.store import EntityStore


class SafeCdCliContext(ApeCliContextObject):
    @property
    def safecd_config(self) -> "SafeCdConfig":
        from ape_safecd.config import SafeCdConfig

        return cast(SafeCdConfig, self.config_manager.get_config("safecd"))

    def load_store(self, root: Path) -> "EntityStore":
        from ape_safecd.store import EntityStore

        store = EntityStore(root, script_folder=self.safecd_config.script_folder)
        store.load()
        return store

    def load_signers(self, delegates: set["AddressType"]) -> dict["AddressType", "AccountAPI"]:
        # NOTE: Only local accounts can sign, delegates are matched by address
        signers = {}
        for account in self.account_manager:
            if account.address in delegates:
                self.logger.info(f"Loaded signer for {account.address}")
                signers[account.address] = account

        return signers

    def load_account(self, reference: str) -> "AccountAPI":
        if reference in self.account_manager.aliases:
            return self.account_manager.load(reference)

        try:
            return self.account_manager[reference]

        except KeyError:
            self.abort(f"No account with alias or address '{reference}'.")


def safecd_cli_ctx():
    return ape_cli_context(obj_type=SafeCdCliContext)


root_option = click.option(
    "--root",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default=Path("."),
    show_default=True,
    help="Root of the repository holding safes, eoas, transactions and proposals",
)
