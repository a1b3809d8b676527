from ape.types import AddressType, HexBytes
from eth_abi import encode
from eth_abi.packed import encode_packed
from eth_utils import function_signature_to_4byte_selector, to_hex

from .types import OperationType, SafeTransactionData
from .utils import checksum

# NOTE: MultiSendCallOnly v1.3.0, same address on every supported chain
MULTISEND_CALL_ONLY_ADDRESS = checksum("0x40A2aCCbd92BCA938b02010E17A5b8929b49130D")
MULTISEND_SELECTOR = function_signature_to_4byte_selector("multiSend(bytes)")


class MultiSend:
    """
    Batch a sequence of calls into a single Safe transaction delegate-calling
    the ``MultiSendCallOnly`` contract.

    Usage example::

        batch = MultiSend().add(token, 0, transfer_data).add(vault, 0, deposit_data)
        safe_tx = batch.as_safe_tx_data(nonce=3)
    """

    def __init__(self, address: AddressType = MULTISEND_CALL_ONLY_ADDRESS) -> None:
        self.calls: list[dict] = []
        self.address = address

    def add(self, target: str, value: int, call_data: str) -> "MultiSend":
        if value < 0:
            raise ValueError("`value=` must be positive.")

        self.calls.append(
            {"target": checksum(target), "value": value, "callData": HexBytes(call_data)}
        )
        return self

    @property
    def encoded_calls(self) -> list[bytes]:
        return [
            encode_packed(
                ["uint8", "address", "uint256", "uint256", "bytes"],
                [
                    # NOTE: Only allow doing CALL because of `MultiSendCallOnly`
                    int(OperationType.CALL),
                    call["target"],
                    call["value"],
                    len(call["callData"]),
                    call["callData"],
                ],
            )
            for call in self.calls
        ]

    @property
    def calldata(self) -> str:
        return to_hex(MULTISEND_SELECTOR + encode(["bytes"], [b"".join(self.encoded_calls)]))

    def as_safe_tx_data(self, nonce: int) -> SafeTransactionData:
        return SafeTransactionData(
            to=self.address,
            value=0,
            data=self.calldata,
            operation=OperationType.DELEGATECALL,
            nonce=nonce,
        )
