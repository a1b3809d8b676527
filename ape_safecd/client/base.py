import time
from abc import ABC, abstractmethod
from collections.abc import Iterator
from functools import cached_property
from typing import TYPE_CHECKING, Optional

import requests
from ape.types import AddressType, HexBytes
from eth_utils import keccak
from requests.adapters import HTTPAdapter

from ape_safecd.client.types import DelegateInfo, DelegatePage, SafeDetails, SafeEstimation
from ape_safecd.exceptions import ClientResponseError
from ape_safecd.types import SafeTransactionData, Transaction

if TYPE_CHECKING:
    from ape.api import AccountAPI
    from requests import Response

DEFAULT_HEADERS = {
    "Accept": "application/json",
    "Content-Type": "application/json",
}
DELEGATES_PAGE_SIZE = 100


class BaseTransactionServiceClient(ABC):
    def __init__(self, base_url: str):
        self.base_url = base_url

    """Abstract methods"""

    @abstractmethod
    def get_safe_info(self, address: AddressType) -> SafeDetails: ...

    @abstractmethod
    def get_safe_delegates(self, address: AddressType, page: int = 0) -> DelegatePage: ...

    @abstractmethod
    def _all_transactions(self, address: AddressType) -> Iterator[dict]: ...

    @abstractmethod
    def estimate_safe_transaction(
        self, address: AddressType, tx: SafeTransactionData
    ) -> SafeEstimation: ...

    @abstractmethod
    def propose_transaction(
        self,
        address: AddressType,
        tx: SafeTransactionData,
        safe_tx_hash: str,
        sender: AddressType,
        signature: str,
    ): ...

    @abstractmethod
    def add_delegate(
        self, safe: AddressType, delegate: AddressType, label: str, delegator: "AccountAPI"
    ): ...

    """Shared methods"""

    def get_all_delegates(self, address: AddressType) -> Iterator[DelegateInfo]:
        page = 0
        while True:
            delegates = self.get_safe_delegates(address, page=page)
            yield from delegates.results
            if not delegates.next or not delegates.results:
                break

            page += 1

    def get_multisig_transactions(self, address: AddressType) -> list[Transaction]:
        """
        Every multisig transaction of the Safe, executed or not, highest nonce first.
        """
        return [
            Transaction.model_validate({"safe": address, **txn})
            for txn in self._all_transactions(address)
        ]

    def create_delegate_message(self, delegate: AddressType) -> HexBytes:
        # NOTE: the service only accepts signatures made within the current hour
        totp = int(time.time()) // 3600
        return HexBytes(keccak(text=f"{delegate}{totp}"))

    """Request methods"""

    @cached_property
    def session(self) -> requests.Session:
        # NOTE: every request goes to the same service, one at a time
        adapter = HTTPAdapter(pool_connections=1, pool_maxsize=4, max_retries=3)
        session = requests.Session()
        for scheme in ("http://", "https://"):
            session.mount(scheme, adapter)

        return session

    def _get(self, url: str, params: Optional[dict] = None, **kwargs) -> "Response":
        return self._request("GET", url, params=params, **kwargs)

    def _post(self, url: str, json: Optional[dict] = None, **kwargs) -> "Response":
        return self._request("POST", url, json=json, **kwargs)

    def _request(self, method: str, url: str, json: Optional[dict] = None, **kwargs) -> "Response":
        version = kwargs.pop("api_version", "v1")
        allow_failure = kwargs.pop("allow_failure", False)

        # NOTE: `next` links of paged responses are absolute
        full_url = (
            url if url.startswith(("http://", "https://")) else f"{self.base_url}/{version}{url}"
        )
        response = self.session.request(
            method,
            full_url,
            json=json,
            timeout=kwargs.pop("timeout", None) or 10,
            headers={**DEFAULT_HEADERS, **kwargs.pop("headers", {})},
            **kwargs,
        )
        if not (response.ok or allow_failure):
            raise ClientResponseError(full_url, response)

        return response
