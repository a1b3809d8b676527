from collections.abc import Iterator
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Optional

from ape.types import AddressType

from ape_safecd.client.base import DELEGATES_PAGE_SIZE, BaseTransactionServiceClient
from ape_safecd.client.types import DelegateInfo, DelegatePage, SafeDetails, SafeEstimation
from ape_safecd.exceptions import SafeClientException, SafeNotFoundError
from ape_safecd.types import SafeTransactionData
from ape_safecd.utils import checksum

if TYPE_CHECKING:
    from ape.api import AccountAPI


class MockTransactionServiceClient(BaseTransactionServiceClient):
    """
    In-memory transaction service, keyed by Safe address.
    """

    def __init__(self, delegates_page_size: int = DELEGATES_PAGE_SIZE):
        super().__init__("mock://transaction-service")
        self.safes: dict[AddressType, SafeDetails] = {}
        self.delegates: dict[AddressType, list[DelegateInfo]] = {}
        self.transactions: dict[AddressType, list[dict]] = {}
        self.proposed: list[dict] = []
        self.estimation = SafeEstimation(safeTxGas="0")
        self.estimation_error: Optional[Exception] = None
        self.delegates_page_size = delegates_page_size

    def add_safe(
        self,
        address: str,
        owners: list[str],
        threshold: int = 1,
        nonce: int = 0,
        version: str = "1.3.0",
    ) -> SafeDetails:
        details = SafeDetails(
            address=address, owners=owners, threshold=threshold, nonce=nonce, version=version
        )
        self.safes[details.address] = details
        return details

    def register_delegate(self, safe: str, delegate: str, delegator: str, label: str = ""):
        info = DelegateInfo(safe=safe, delegate=delegate, delegator=delegator, label=label)
        self.delegates.setdefault(checksum(safe), []).append(info)

    def add_transaction(self, safe: str, **txn):
        self.transactions.setdefault(checksum(safe), []).append({"safe": checksum(safe), **txn})

    def add_delegate(
        self, safe: AddressType, delegate: AddressType, label: str, delegator: "AccountAPI"
    ):
        if delegator.address not in self.get_safe_info(safe).owners:
            raise SafeClientException(f"'{delegator.address}' not a valid owner.")

        self.register_delegate(safe, delegate, delegator.address, label=label)

    def get_safe_info(self, address: AddressType) -> SafeDetails:
        if (details := self.safes.get(checksum(address))) is None:
            raise SafeNotFoundError(address)

        return details

    def get_safe_delegates(self, address: AddressType, page: int = 0) -> DelegatePage:
        delegates = self.delegates.get(checksum(address), [])
        start = page * self.delegates_page_size
        end = start + self.delegates_page_size
        return DelegatePage(
            count=len(delegates),
            next=f"page={page + 1}" if end < len(delegates) else None,
            results=delegates[start:end],
        )

    def _all_transactions(self, address: AddressType) -> Iterator[dict]:
        yield from sorted(
            self.transactions.get(checksum(address), []),
            key=lambda txn: txn["nonce"],
            reverse=True,
        )

    def estimate_safe_transaction(
        self, address: AddressType, tx: SafeTransactionData
    ) -> SafeEstimation:
        if self.estimation_error is not None:
            raise self.estimation_error

        return self.estimation

    def propose_transaction(
        self,
        address: AddressType,
        tx: SafeTransactionData,
        safe_tx_hash: str,
        sender: AddressType,
        signature: str,
    ):
        now = datetime.now(timezone.utc).isoformat()
        payload = {
            **tx.model_dump(by_alias=True, mode="json"),
            "contractTransactionHash": safe_tx_hash,
            "sender": sender,
            "signature": signature,
        }
        self.proposed.append(payload)
        details = self.get_safe_info(address)
        self.add_transaction(
            address,
            **tx.model_dump(by_alias=True, mode="json"),
            safeTxHash=safe_tx_hash,
            submissionDate=now,
            modified=now,
            isExecuted=False,
            confirmationsRequired=details.threshold,
            confirmations=[],
        )
