from typing import TYPE_CHECKING, Any

import yaml  # type: ignore[import-untyped]
from ape.types import AddressType, HexBytes
from cchecksum import to_checksum_address
from eip712.messages import calculate_hash
from eth_utils import to_hex

if TYPE_CHECKING:
    from pydantic import BaseModel

    from .types import SafeTx


def checksum(address: str) -> AddressType:
    return AddressType(to_checksum_address(address))


class _Dumper(yaml.SafeDumper):
    pass


def _str_representer(dumper: yaml.SafeDumper, data: str):
    # NOTE: Keep multi-line values (descriptions, simulation traces) readable in git diffs
    if "\n" in data:
        return dumper.represent_scalar("tag:yaml.org,2002:str", data, style="|")

    return dumper.represent_scalar("tag:yaml.org,2002:str", data)


_Dumper.add_representer(str, _str_representer)


def to_yaml(data: Any) -> str:
    return yaml.dump(
        data,
        Dumper=_Dumper,
        sort_keys=False,
        default_flow_style=False,
        allow_unicode=True,
        width=float("inf"),
    )


def model_to_yaml(model: "BaseModel") -> str:
    return to_yaml(model.model_dump(by_alias=True, mode="json", exclude_none=True))


def from_yaml(content: str) -> Any:
    return yaml.safe_load(content)


def get_safe_tx_hash(safe_tx: "SafeTx") -> str:
    message_hash = calculate_hash(safe_tx.signable_message)
    return to_hex(HexBytes(message_hash)).lower()
