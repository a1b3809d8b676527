from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from ape.logging import logger
from ape.types import AddressType

from .exceptions import SafeNotFoundError
from .types import EOA, Delegate, PopulatedSafe, Safe, Transaction
from .utils import checksum

if TYPE_CHECKING:
    from .client import BaseTransactionServiceClient
    from .store import EntityStore


class CodeReader(Protocol):
    def is_contract(self, address: AddressType) -> bool: ...


def transaction_path(transaction: Transaction) -> Path:
    pending = ".pending" if transaction.transaction_hash is None else ""
    return (
        Path("transactions")
        / checksum(transaction.safe)
        / f"{transaction.nonce:05}.{transaction.safe_tx_hash}{pending}.yaml"
    )


class SafeSyncer:
    """
    Refreshes every monitored Safe from the transaction service: owners, delegates,
    threshold, nonce, version and its multisig transactions. Owners and delegates
    not yet known are imported as EOAs or Safes.
    """

    def __init__(
        self, store: "EntityStore", client: "BaseTransactionServiceClient", chain: CodeReader
    ):
        self.store = store
        self.client = client
        self.chain = chain

    def sync(self):
        logger.info("Syncing safes")
        # NOTE: Safes discovered along the way get synced as they are imported
        for index in range(len(self.store.safes)):
            if not self.store.safes[index].deleted:
                self.sync_safe(index)

        logger.success(f"Synced {len(self.store.safes)} safes")

    def sync_safe(self, index: int) -> PopulatedSafe:
        safe = self.store.safes[index].entity
        details = self.client.get_safe_info(safe.address)
        delegates = list(self.client.get_all_delegates(safe.address))

        populated = PopulatedSafe(
            address=safe.address,
            name=safe.name,
            description=safe.description,
            notifications=safe.notifications,
            owners=details.owners,
            delegates=[
                Delegate(delegate=d.delegate, delegator=d.delegator, label=d.label)
                for d in delegates
            ],
            threshold=details.threshold,
            nonce=details.nonce,
            version=details.version,
        )
        self.store.write_safe(index, populated)
        logger.info(f"Synced safe '{populated.name}' ({populated.address})")

        self.import_addresses([*populated.owners, *(d.delegate for d in populated.delegates)])
        self.sync_transactions(populated)
        return populated

    def import_addresses(self, addresses: list[AddressType]):
        for address in addresses:
            if self.store.get_safe_by_address(address) or self.store.get_eoa_by_address(address):
                continue

            elif not self.chain.is_contract(address):
                logger.info(f"Importing EOA {address}")
                self.store.create_eoa(
                    Path("eoas") / f"{address}.yaml",
                    EOA(
                        address=address,
                        name=f"eoa-{address}",
                        description="Automatically imported by safecd",
                    ),
                )
                continue

            try:
                self.client.get_safe_info(address)

            except SafeNotFoundError:
                logger.debug(f"Contract {address} is not a Safe, skipping")
                continue

            logger.info(f"Importing Safe {address}")
            self.store.create_safe(
                Path("safes") / f"{address}.yaml", Safe(address=address, name=address)
            )
            index = self.store.get_safe_index(address)
            assert index is not None  # NOTE: Just created
            self.sync_safe(index)

    def sync_transactions(self, safe: PopulatedSafe):
        remote = self.client.get_multisig_transactions(safe.address)
        executed_nonces = {tx.nonce for tx in remote if tx.executed}
        kept: set[str] = set()

        for transaction in remote:
            if not transaction.executed and transaction.nonce in executed_nonces:
                continue  # NOTE: Replaced by the executed transaction at the same nonce

            kept.add(transaction.safe_tx_hash)
            path = transaction_path(transaction)
            index = self.store.get_transaction_index(transaction.safe_tx_hash)
            if index is None:
                self.store.create_transaction(path, transaction)

            elif self.store.transactions[index].path != path:
                # NOTE: e.g. pending -> executed, the file name changes
                self.store.unbind_transaction(index)
                self.store.create_transaction(path, transaction)
                self.store.write_transaction(index, None)

            else:
                self.store.write_transaction(index, transaction)

        for index in self.store.get_transaction_indices(safe):
            if self.store.transactions[index].entity.safe_tx_hash not in kept:
                self.store.write_transaction(index, None)

        logger.info(f"Synced {len(kept)} transactions for safe {safe.address}")
