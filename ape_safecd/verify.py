from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

from ape.logging import logger
from ape.types import AddressType, HexBytes
from eip712.common import SafeTxV2, create_safe_tx_def
from eth_abi import encode
from eth_utils import keccak, to_hex

from .exceptions import HashMismatchError
from .types import SafeTransactionData
from .utils import get_safe_tx_hash

if TYPE_CHECKING:
    from .types import SafeTx

SAFE_TX_TYPEHASH = keccak(
    text=(
        "SafeTx(address to,uint256 value,bytes data,uint8 operation,uint256 safeTxGas,"
        "uint256 baseGas,uint256 gasPrice,address gasToken,address refundReceiver,uint256 nonce)"
    )
)


class TransactionHashSource(Protocol):
    chain_id: int

    def get_transaction_hash(self, safe_address: AddressType, tx: SafeTransactionData) -> str: ...


def build_safe_tx(
    tx: SafeTransactionData, safe_address: AddressType, version: str, chain_id: int
) -> "SafeTx":
    safe_tx_def = create_safe_tx_def(
        version=version, contract_address=safe_address, chain_id=chain_id
    )
    # NOTE: Safes older than v1.0.0 name the field `dataGas`
    gas_field = "baseGas" if issubclass(safe_tx_def, SafeTxV2) else "dataGas"
    return safe_tx_def(  # type: ignore[call-arg]
        to=tx.to,
        value=tx.value,
        data=HexBytes(tx.data),
        operation=tx.operation,
        safeTxGas=tx.safe_tx_gas,
        gasPrice=tx.gas_price,
        gasToken=tx.gas_token,
        refundReceiver=tx.refund_receiver,
        nonce=tx.nonce,
        **{gas_field: tx.base_gas},
    )


def get_safe_msg_hash(tx: SafeTransactionData) -> str:
    """
    Hash of the ABI-encoded ``SafeTx`` struct (its EIP-712 struct hash).
    """
    encoded = encode(
        [
            "bytes32",
            "address",
            "uint256",
            "bytes32",
            "uint8",
            "uint256",
            "uint256",
            "uint256",
            "address",
            "address",
            "uint256",
        ],
        [
            SAFE_TX_TYPEHASH,
            tx.to,
            tx.value,
            keccak(HexBytes(tx.data)),
            tx.operation,
            tx.safe_tx_gas,
            tx.base_gas,
            tx.gas_price,
            tx.gas_token,
            tx.refund_receiver,
            tx.nonce,
        ],
    )
    return to_hex(keccak(encoded)).lower()


@dataclass
class VerifiedTransaction:
    safe_tx: "SafeTx"
    safe_tx_hash: str
    message_hash: str


class TransactionHashVerifier:
    """
    Cross-checks the locally computed SafeTx hash against the deployed Safe
    before anything gets signed.
    """

    def __init__(self, chain: TransactionHashSource):
        self.chain = chain

    def verify(
        self, safe_address: AddressType, version: str, tx: SafeTransactionData
    ) -> VerifiedTransaction:
        """
        Raises:
            :class:`~ape_safecd.exceptions.HashMismatchError`: The Safe contract
              computes a different hash for the same parameters.
        """
        safe_tx = build_safe_tx(tx, safe_address, version, self.chain.chain_id)
        safe_tx_hash = get_safe_tx_hash(safe_tx)
        message_hash = get_safe_msg_hash(tx)
        onchain_hash = self.chain.get_transaction_hash(safe_address, tx).lower()
        if safe_tx_hash != onchain_hash:
            raise HashMismatchError(safe_tx_hash, onchain_hash)

        logger.debug(f"Verified SafeTx hash {safe_tx_hash} (message hash {message_hash})")
        return VerifiedTransaction(
            safe_tx=safe_tx, safe_tx_hash=safe_tx_hash, message_hash=message_hash
        )
