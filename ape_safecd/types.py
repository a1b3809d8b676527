from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from ape.types import AddressType
from ape.utils import ZERO_ADDRESS
from eip712.common import SafeTxV1, SafeTxV2
from pydantic import (
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Discriminator,
    Field,
    Tag,
    TypeAdapter,
    field_validator,
)

from .utils import checksum

SafeTx = Union[SafeTxV1, SafeTxV2]

Address = Annotated[AddressType, BeforeValidator(checksum)]


class OperationType(int, Enum):
    CALL = 0
    DELEGATECALL = 1


class EntityModel(BaseModel):
    """Base for every git-backed file. Keys are persisted in camelCase."""

    model_config = ConfigDict(populate_by_name=True)


class SlackNotification(EntityModel):
    channel: str
    message: Optional[str] = None
    """Message ID (``ts``) returned by Slack, used to update the message in place."""

    hash: Optional[str] = None
    """Hash of the last state notified, to skip unchanged updates."""


class Notifications(EntityModel):
    slack: list[SlackNotification] = []


class Delegate(EntityModel):
    delegate: Address
    delegator: Address
    label: str = ""


class Safe(EntityModel):
    type: Literal["safe"] = "safe"
    address: Address
    name: str
    description: Optional[str] = None
    notifications: Optional[Notifications] = None


class PopulatedSafe(Safe):
    owners: list[Address]
    delegates: list[Delegate] = []
    threshold: int
    nonce: int = 0
    version: str

    def has_delegate(self, address: str) -> bool:
        return any(d.delegate.lower() == address.lower() for d in self.delegates)


# NOTE: Populated first, a bare Safe file is only the `address`/`name` stub written by hand
AnySafe = Annotated[Union[PopulatedSafe, Safe], Field(union_mode="left_to_right")]


class EOA(EntityModel):
    type: Literal["eoa"] = "eoa"
    address: Address
    name: str
    description: Optional[str] = None


class Confirmation(EntityModel):
    owner: Address
    submission_date: Optional[str] = Field(default=None, alias="submissionDate")
    transaction_hash: Optional[str] = Field(default=None, alias="transactionHash")
    signature: Optional[str] = None
    signature_type: Optional[str] = Field(default=None, alias="signatureType")


class Transaction(EntityModel):
    """A Safe multisig transaction as reported by the transaction service."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    safe: Address
    to: Address
    value: str = "0"
    data: Optional[str] = None
    operation: int = OperationType.CALL
    gas_token: Optional[str] = Field(default=None, alias="gasToken")
    safe_tx_gas: int = Field(default=0, alias="safeTxGas")
    base_gas: int = Field(default=0, alias="baseGas")
    gas_price: str = Field(default="0", alias="gasPrice")
    refund_receiver: Optional[str] = Field(default=None, alias="refundReceiver")
    nonce: int
    execution_date: Optional[str] = Field(default=None, alias="executionDate")
    submission_date: Optional[str] = Field(default=None, alias="submissionDate")
    modified: Optional[str] = None
    block_number: Optional[int] = Field(default=None, alias="blockNumber")
    transaction_hash: Optional[str] = Field(default=None, alias="transactionHash")
    safe_tx_hash: str = Field(alias="safeTxHash")
    executor: Optional[str] = None
    is_executed: bool = Field(default=False, alias="isExecuted")
    is_successful: Optional[bool] = Field(default=None, alias="isSuccessful")
    data_decoded: Optional[dict] = Field(default=None, alias="dataDecoded")
    confirmations_required: Optional[int] = Field(default=None, alias="confirmationsRequired")
    confirmations: list[Confirmation] = []

    @field_validator("value", "gas_price", mode="before")
    def convert_int_to_str(cls, value):
        return str(value) if isinstance(value, int) else value

    @field_validator("safe_tx_hash")
    def lower_hash(cls, value: str) -> str:
        return value.lower()

    @property
    def executed(self) -> bool:
        return self.is_executed or self.execution_date is not None

    @property
    def is_rejection(self) -> bool:
        return self.to == self.safe and int(self.value) == 0 and self.data in (None, "", "0x")

    def has_confirmation_from(self, owner: str) -> bool:
        return any(c.owner.lower() == owner.lower() for c in self.confirmations)


class ChildOf(EntityModel):
    safe: Address
    hash: str

    @field_validator("hash")
    def lower_hash(cls, value: str) -> str:
        return value.lower()


class BaseProposal(EntityModel):
    title: str
    description: Optional[str] = None
    safe: str
    """Name or address of the Safe executing the proposal."""

    delegate: Address
    nonce: Optional[Union[int, str]] = None
    """Literal nonce, or a formula over `a`, `auto`, `n`, `nonce`, `pn` and `pendingNonce`."""

    safe_tx_hash: Optional[str] = Field(default=None, alias="safeTxHash")
    create_child_proposals: bool = Field(default=False, alias="createChildProposals")
    notifications: Optional[Notifications] = None

    @field_validator("safe_tx_hash")
    def lower_hash(cls, value: Optional[str]) -> Optional[str]:
        return value.lower() if value else value


class FunctionCallProposal(BaseProposal):
    proposal: str
    """Path of the simulation script, relative to the proposal file."""

    function: str
    arguments: list[str] = []


class ChildOfProposal(BaseProposal):
    child_of: ChildOf = Field(alias="childOf")


def _proposal_kind(value: Any) -> str:
    if isinstance(value, dict):
        return "child" if "childOf" in value or "child_of" in value else "call"

    return "child" if isinstance(value, ChildOfProposal) else "call"


Proposal = Annotated[
    Union[
        Annotated[FunctionCallProposal, Tag("call")],
        Annotated[ChildOfProposal, Tag("child")],
    ],
    Discriminator(_proposal_kind),
]

SafeAdapter: TypeAdapter[Union[PopulatedSafe, Safe]] = TypeAdapter(AnySafe)
ProposalAdapter: TypeAdapter[Union[FunctionCallProposal, ChildOfProposal]] = TypeAdapter(Proposal)


class PlannedTransaction(BaseModel):
    """A call planned by the simulator (an entry of the broadcast ``transactions`` list)."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    hash: Optional[str] = None
    transaction_type: str = Field(alias="transactionType")
    contract_name: Optional[str] = Field(default=None, alias="contractName")
    contract_address: Optional[str] = Field(default=None, alias="contractAddress")
    function: Optional[str] = None
    arguments: Optional[list[Any]] = None
    transaction: dict[str, Any]

    @property
    def to(self) -> AddressType:
        return checksum(self.transaction["to"])

    @property
    def value(self) -> int:
        value = self.transaction.get("value") or 0
        return int(value, 16) if isinstance(value, str) else int(value)

    @property
    def data(self) -> str:
        return self.transaction.get("input") or self.transaction.get("data") or "0x"


class SafeTransactionData(EntityModel):
    """The Safe transaction built for a proposal, before signatures."""

    to: Address
    value: int = 0
    data: str = "0x"
    operation: int = OperationType.CALL
    safe_tx_gas: int = Field(default=0, alias="safeTxGas")
    base_gas: int = Field(default=0, alias="baseGas")
    gas_price: int = Field(default=0, alias="gasPrice")
    gas_token: Address = Field(default=ZERO_ADDRESS, alias="gasToken")
    refund_receiver: Address = Field(default=ZERO_ADDRESS, alias="refundReceiver")
    nonce: int


class Manifest(BaseModel):
    """Outcome of processing one proposal, written next to it for CI reporting."""

    raw_proposal: dict[str, Any]
    raw_script: Optional[str] = None
    raw_command: Optional[str] = None
    safe: Optional[dict[str, Any]] = None
    simulation_output: Optional[str] = None
    simulation_error_output: Optional[str] = None
    simulation_success: bool = False
    simulation_transactions: list[dict[str, Any]] = []
    safe_estimation: Optional[dict[str, Any]] = None
    safe_transaction: Optional[dict[str, Any]] = None
    safe_tx_hash: Optional[str] = None
    message_hash: Optional[str] = None
    error: Optional[str] = None
