from typing import Annotated, Optional, Union

from ape.types import AddressType
from pydantic import AliasChoices, BaseModel, BeforeValidator, ConfigDict, Field, field_validator

from ape_safecd.utils import checksum


def clean_api_address(data: Union[AddressType, dict]) -> AddressType:
    # NOTE: Safe API returns `{'value':'<addr>', ...}` object
    if isinstance(data, dict):
        return checksum(data["value"])

    return checksum(data)


Address = Annotated[AddressType, BeforeValidator(clean_api_address)]


class SafeDetails(BaseModel):
    address: Address
    nonce: int
    threshold: int
    owners: list[Address]
    master_copy: Optional[Address] = Field(
        default=None,
        alias="masterCopy",
        validation_alias=AliasChoices("masterCopy", "implementation"),
    )
    modules: list[Address] = []
    fallback_handler: Optional[Address] = Field(default=None, alias="fallbackHandler")
    guard: Optional[AddressType] = None
    version: str

    @field_validator("nonce", "threshold", mode="before")
    def convert_str_to_int(cls, value):
        return int(value) if isinstance(value, str) else value

    @field_validator("modules", mode="before")
    def convert_none_to_empty_list(cls, value):
        if not value:
            return []
        return value


class DelegateInfo(BaseModel):
    safe: Optional[Address] = None
    delegate: Address
    delegator: Address
    label: str = ""


class DelegatePage(BaseModel):
    count: int = 0
    next: Optional[str] = None
    results: list[DelegateInfo] = []


class SafeEstimation(BaseModel):
    model_config = ConfigDict(extra="allow")

    safe_tx_gas: str = Field(alias="safeTxGas")

    @field_validator("safe_tx_gas", mode="before")
    def convert_int_to_str(cls, value):
        return str(value) if isinstance(value, int) else value
