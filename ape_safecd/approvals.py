from collections.abc import Callable
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from ape.logging import logger
from ape.types import AddressType, HexBytes
from eth_abi import encode
from eth_utils import function_signature_to_4byte_selector, to_hex

from .exceptions import OwnershipCycleError, UnknownSafeError
from .types import ChildOf, ChildOfProposal, PopulatedSafe

if TYPE_CHECKING:
    from .nonce import NonceResolver
    from .safes import CodeReader
    from .store import EntityStore

APPROVE_HASH_SELECTOR = function_signature_to_4byte_selector("approveHash(bytes32)")

# (child proposal index, nonce to use or `None` when already submitted, recursion path)
ChildCallback = Callable[[int, Optional[int], tuple[AddressType, ...]], None]


def approve_hash_calldata(safe_tx_hash: str) -> str:
    return to_hex(APPROVE_HASH_SELECTOR + encode(["bytes32"], [HexBytes(safe_tx_hash)]))


def child_proposal_path(parent_path: Path, parent_hash: str, position: int) -> Path:
    return parent_path.parent / f"{parent_hash}.{position}.child.proposal.yaml"


class ApprovalGenerator:
    """
    Synthesizes ``approveHash`` proposals on the Safes owning the Safe of a
    submitted proposal, walking up the ownership graph depth-first.
    """

    def __init__(self, store: "EntityStore", resolver: "NonceResolver", chain: "CodeReader"):
        self.store = store
        self.resolver = resolver
        self.chain = chain

    def generate(
        self,
        parent_index: int,
        sync_child: ChildCallback,
        visiting: tuple[AddressType, ...] = (),
    ) -> list[int]:
        """
        Create or refresh the child proposals of a submitted proposal, handing each
        one to ``sync_child`` before moving on to the next owner.

        Args:
            parent_index (int): Slot of the parent proposal in the store.
            sync_child (ChildCallback): Processes one child (and its own children).
            visiting (tuple[AddressType, ...]): Safes along the current recursion path.

        Raises:
            :class:`~ape_safecd.exceptions.OwnershipCycleError`: An owner Safe is already
              part of the recursion path.

        Returns:
            list[int]: The slots of the child proposals.
        """
        entry = self.store.proposals[parent_index]
        parent = entry.entity
        if not parent.create_child_proposals or not parent.safe_tx_hash:
            return []

        if not isinstance(parent_safe := self.store.resolve_safe(parent.safe), PopulatedSafe):
            raise UnknownSafeError(parent.safe, context=str(entry.path))

        path = (*visiting, parent_safe.address)
        children: list[int] = []
        for position, owner in enumerate(parent_safe.owners):
            if not self.chain.is_contract(owner):
                continue

            owner_safe = self.store.get_safe_by_address(owner)
            if not isinstance(owner_safe, PopulatedSafe):
                logger.debug(f"Owner {owner} of '{parent_safe.name}' is not a monitored safe")
                continue

            elif not owner_safe.has_delegate(parent.delegate):
                logger.warning(
                    f"Delegate {parent.delegate} is not registered on '{owner_safe.name}', "
                    f"skipping approval of {parent.safe_tx_hash}"
                )
                continue

            elif owner_safe.address in path:
                raise OwnershipCycleError([*path, owner_safe.address])

            child_path = child_proposal_path(entry.path, parent.safe_tx_hash, position)
            child_index = self.store.proposal_exists(child_path)
            existing = None if child_index is None else self.store.proposals[child_index]
            if (
                child_index is not None
                and existing is not None
                and not existing.deleted
                and existing.entity.safe_tx_hash
            ):
                # NOTE: Already submitted, keep it as-is but still walk its own owners
                children.append(child_index)
                sync_child(child_index, None, path)
                continue

            nonce = self.resolver.allocate(owner_safe.address)
            child = ChildOfProposal(
                title=f"Approve '{parent.title}' on {parent_safe.name}",
                description=(
                    f"Approves transaction `{parent.safe_tx_hash}` of safe "
                    f"[{parent_safe.name}]({parent_safe.address}), proposed by "
                    f"[{entry.path.name}]({entry.path.name})."
                ),
                safe=owner_safe.address,
                delegate=parent.delegate,
                nonce=nonce,
                child_of=ChildOf(safe=parent_safe.address, hash=parent.safe_tx_hash),
                create_child_proposals=parent.create_child_proposals,
            )
            if child_index is None:
                logger.info(f"Creating child proposal {child_path}")
                self.store.create_proposal(child_path, child)
                child_index = self.store.proposal_exists(child_path)
                assert child_index is not None  # NOTE: Just created

            else:
                logger.info(f"Updating child proposal {child_path}")
                self.store.write_proposal(child_index, child)

            children.append(child_index)
            sync_child(child_index, nonce, path)

        return children
