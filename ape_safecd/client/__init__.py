import json
import os
from collections.abc import Iterator
from typing import TYPE_CHECKING, Optional

from ape.types import AddressType
from ape.utils import USER_AGENT, get_package_version
from eth_utils import to_hex

from ape_safecd.client.base import DELEGATES_PAGE_SIZE, BaseTransactionServiceClient
from ape_safecd.client.mock import MockTransactionServiceClient
from ape_safecd.client.types import DelegateInfo, DelegatePage, SafeDetails, SafeEstimation
from ape_safecd.exceptions import AuthorizationError, ClientResponseError, SafeNotFoundError
from ape_safecd.types import SafeTransactionData

if TYPE_CHECKING:
    from ape.api import AccountAPI
    from requests import Response

APE_SAFECD_VERSION = get_package_version(__name__)
APE_SAFECD_USER_AGENT = f"Ape-SafeCD/{APE_SAFECD_VERSION} {USER_AGENT}"
# NOTE: Origin must be a string, but can be json that contains url & name fields
ORIGIN = json.dumps(dict(url="https://apeworx.io", name="Ape SafeCD", ua=APE_SAFECD_USER_AGENT))
assert len(ORIGIN) <= 200  # NOTE: Must be less than 200 chars

# URL for the multichain client gateway
SAFE_CLIENT_GATEWAY_URL = "https://api.safe.global/tx-service"
GATEWAY_API_KEY = os.environ.get("APE_SAFE_GATEWAY_API_KEY")
EIP3770_BLOCKCHAIN_NAMES_BY_CHAIN_ID = {
    1: "eth",
    11155111: "sep",
    10: "oeth",
    42161: "arb1",
    56: "bnb",
    146: "sonic",
    5000: "mantle",
    43114: "avax",
    1313161554: "aurora",
    8453: "base",
    84532: "basesep",
    42220: "celo",
    100: "gno",
    59144: "linea",
    137: "pol",
    534352: "scr",
    130: "unichain",
    480: "wc",
    324: "zksync",
    57073: "ink",
    800094: "berachain",
}


def gateway_url(chain_id: Optional[int]) -> str:
    if chain_id is None:
        raise ValueError("Must provide one of chain_id or override_url.")

    if (short_name := EIP3770_BLOCKCHAIN_NAMES_BY_CHAIN_ID.get(chain_id)) is None:
        raise ValueError(f"Chain ID {chain_id} has no Safe transaction service.")

    if not GATEWAY_API_KEY:
        raise ValueError("Set APE_SAFE_GATEWAY_API_KEY to use the Safe gateway.")

    return f"{SAFE_CLIENT_GATEWAY_URL}/{short_name}/api"


class TransactionServiceClient(BaseTransactionServiceClient):
    """
    Client for the Safe transaction service, covering every Safe of one chain.
    """

    def __init__(
        self,
        override_url: Optional[str] = None,
        chain_id: Optional[int] = None,
    ) -> None:
        self.chain_id = chain_id
        super().__init__(override_url.rstrip("/") if override_url else gateway_url(chain_id))

    def _request(self, method: str, url: str, json: Optional[dict] = None, **kwargs) -> "Response":
        headers = kwargs.pop("headers", {})
        if GATEWAY_API_KEY:
            headers["Authorization"] = f"Bearer {GATEWAY_API_KEY}"

        return super()._request(method, url, json=json, headers=headers, **kwargs)

    def get_safe_info(self, address: AddressType) -> SafeDetails:
        try:
            response = self._get(f"/safes/{address}")
        except ClientResponseError as err:
            if err.response.status_code == 404:
                raise SafeNotFoundError(address) from err

            raise

        return SafeDetails.model_validate(response.json())

    def get_safe_delegates(self, address: AddressType, page: int = 0) -> DelegatePage:
        response = self._get(
            "/delegates",
            params={
                "safe": address,
                "limit": DELEGATES_PAGE_SIZE,
                "offset": page * DELEGATES_PAGE_SIZE,
            },
            api_version="v2",
        )
        return DelegatePage.model_validate(response.json())

    def _all_transactions(self, address: AddressType) -> Iterator[dict]:
        url = f"/safes/{address}/multisig-transactions"
        while url:
            response = self._get(url)
            data = response.json()
            yield from data.get("results", [])
            url = data.get("next")

    def estimate_safe_transaction(
        self, address: AddressType, tx: SafeTransactionData
    ) -> SafeEstimation:
        url = f"/safes/{address}/multisig-transactions/estimations"
        request: dict = {
            "to": tx.to,
            "value": tx.value,
            "data": tx.data,
            "operation": tx.operation,
        }
        return SafeEstimation.model_validate(self._post(url, json=request).json())

    def propose_transaction(
        self,
        address: AddressType,
        tx: SafeTransactionData,
        safe_tx_hash: str,
        sender: AddressType,
        signature: str,
    ):
        post_dict: dict = {
            **tx.model_dump(by_alias=True, mode="json"),
            "contractTransactionHash": safe_tx_hash,
            "sender": sender,
            "signature": signature,
            "origin": ORIGIN,
        }
        url = f"/safes/{address}/multisig-transactions"
        return self._post(url, json=post_dict, api_version="v2")

    def add_delegate(
        self, safe: AddressType, delegate: AddressType, label: str, delegator: "AccountAPI"
    ):
        msg_hash = self.create_delegate_message(delegate)

        # NOTE: the service recovers the delegator from a signature of the bare hash
        if not (signature := delegator.sign_raw_msghash(msg_hash)):
            raise AuthorizationError(f"{delegator.address} did not sign the delegate approval.")

        payload = {
            "safe": safe,
            "delegate": delegate,
            "delegator": delegator.address,
            "label": label,
            "signature": to_hex(signature.encode_rsv()),
        }
        self._post("/delegates", json=payload, api_version="v2")


__all__ = [
    "BaseTransactionServiceClient",
    "DelegateInfo",
    "DelegatePage",
    "MockTransactionServiceClient",
    "SafeDetails",
    "SafeEstimation",
    "TransactionServiceClient",
]
