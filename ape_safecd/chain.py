from ape.contracts import ContractCall
from ape.types import AddressType, HexBytes
from ape.utils import ManagerAccessMixin
from eth_utils import to_hex
from ethpm_types.abi import ABIType, MethodABI

from .types import SafeTransactionData

GET_TRANSACTION_HASH_ABI = MethodABI(
    name="getTransactionHash",
    type="function",
    stateMutability="view",
    inputs=[
        ABIType(name="to", type="address"),
        ABIType(name="value", type="uint256"),
        ABIType(name="data", type="bytes"),
        ABIType(name="operation", type="uint8"),
        ABIType(name="safeTxGas", type="uint256"),
        ABIType(name="baseGas", type="uint256"),
        ABIType(name="gasPrice", type="uint256"),
        ABIType(name="gasToken", type="address"),
        ABIType(name="refundReceiver", type="address"),
        ABIType(name="_nonce", type="uint256"),
    ],
    outputs=[ABIType(type="bytes32")],
)


class ChainReader(ManagerAccessMixin):
    """
    Read-only access to the connected network.
    """

    @property
    def chain_id(self) -> int:
        return self.provider.chain_id

    @property
    def rpc_url(self) -> str:
        return getattr(self.provider, "http_uri", None) or ""

    def is_contract(self, address: AddressType) -> bool:
        return len(self.provider.get_code(address)) > 0

    def get_transaction_hash(self, safe_address: AddressType, tx: SafeTransactionData) -> str:
        # NOTE: Direct call, the Safe contract type is not needed to compute the hash
        result = ContractCall(GET_TRANSACTION_HASH_ABI, address=safe_address)(
            tx.to,
            tx.value,
            HexBytes(tx.data),
            tx.operation,
            tx.safe_tx_gas,
            tx.base_gas,
            tx.gas_price,
            tx.gas_token,
            tx.refund_receiver,
            tx.nonce,
        )
        return to_hex(HexBytes(result)).lower()
