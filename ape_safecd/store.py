import difflib
import re
from collections.abc import Iterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import Generic, Optional, TypeVar, Union

import yaml  # type: ignore[import-untyped]
from ape.logging import logger
from ape.types import AddressType
from pydantic import BaseModel, ValidationError

from .exceptions import (
    DuplicateEntityError,
    EntityIndexError,
    InvalidEntityFileError,
    UnknownSafeError,
)
from .types import (
    EOA,
    ChildOfProposal,
    FunctionCallProposal,
    PopulatedSafe,
    ProposalAdapter,
    Safe,
    SafeAdapter,
    Transaction,
)
from .utils import checksum, from_yaml, model_to_yaml

AnySafe = Union[PopulatedSafe, Safe]
AnyProposal = Union[FunctionCallProposal, ChildOfProposal]
EntityT = TypeVar("EntityT", bound=BaseModel)

PROPOSAL_SUFFIX = ".proposal.yaml"
CHILD_PROPOSAL_PATTERN = re.compile(r"^(0x[0-9a-fA-F]+)\.(\d+)\.child\.proposal\.yaml$")
ADDRESS_PATTERN = re.compile(r"^0x[0-9a-fA-F]{40}$")


@dataclass
class Entry(Generic[EntityT]):
    path: Path
    """Path relative to the store root."""

    entity: EntityT
    deleted: bool = False


@dataclass
class SaveResult:
    creations: int = 0
    edits: int = 0
    deletions: int = 0
    lines: list[str] = field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        return self.creations + self.edits + self.deletions > 0

    @property
    def message(self) -> str:
        return "".join(f"{line}\n" for line in self.lines)

    @property
    def commit_message(self) -> str:
        return (
            f"create={self.creations} edit={self.edits} delete={self.deletions}\n\n"
            f"{self.message}\n\n[skip ci]\n"
        )


class StagedWrites:
    """
    Buffer of pending file changes (path -> content, or ``None`` for removal).
    Nothing touches the disk until :meth:`apply` is called.
    """

    def __init__(self, root: Path):
        self.root = root
        self._changes: dict[Path, Optional[str]] = {}

    def __len__(self) -> int:
        return len(self._changes)

    def write(self, path: Path, content: str):
        self._changes[path] = content

    def remove(self, path: Path):
        # NOTE: A write staged for the same path (e.g. re-created entity) takes precedence
        self._changes.setdefault(path, None)

    def _read(self, path: Path) -> Optional[str]:
        file = self.root / path
        return file.read_text(encoding="utf-8") if file.is_file() else None

    def changes(self) -> Iterator[tuple[Path, Optional[str], Optional[str]]]:
        """
        Yield ``(path, current, staged)`` for every staged change that differs from disk.
        """
        for path in sorted(self._changes):
            staged = self._changes[path]
            current = self._read(path)
            if staged == current or (staged is None and current is None):
                continue

            yield path, current, staged

    def diff(self) -> list[str]:
        lines: list[str] = []
        for path, current, staged in self.changes():
            lines.extend(
                difflib.unified_diff(
                    (current or "").splitlines(keepends=True),
                    (staged or "").splitlines(keepends=True),
                    fromfile=f"a/{path}" if current is not None else "/dev/null",
                    tofile=f"b/{path}" if staged is not None else "/dev/null",
                )
            )

        return lines

    def apply(self) -> SaveResult:
        result = SaveResult()
        for path, current, staged in list(self.changes()):
            file = self.root / path
            if staged is None:
                logger.info(f"- removing {path}")
                file.unlink()
                result.deletions += 1
                result.lines.append(f"- delete {path}")

            elif current is None:
                logger.info(f"- creating {path}")
                file.parent.mkdir(parents=True, exist_ok=True)
                file.write_text(staged, encoding="utf-8")
                result.creations += 1
                result.lines.append(f"- create {path}")

            else:
                logger.info(f"- editing {path}")
                file.write_text(staged, encoding="utf-8")
                result.edits += 1
                result.lines.append(f"- edit   {path}")

        return result


class EntityStore:
    """
    In-memory, multiply-indexed collection of every git-backed entity
    (Safes, EOAs, Transactions and Proposals).

    All mutations stay in memory; :meth:`save` is the only method writing to disk.

    Usage example::

        store = EntityStore(Path("."))
        store.load()
        safe = store.get_safe_by_name("treasury")
        ...
        print("".join(store.diff()))
        result = store.save()
    """

    def __init__(self, root: Union[Path, str] = ".", script_folder: str = "script"):
        self.root = Path(root).resolve()
        self.script_folder = script_folder

        self.safes: list[Entry[AnySafe]] = []
        self._safe_by_address: dict[AddressType, int] = {}
        self._safe_by_name: dict[str, int] = {}

        self.eoas: list[Entry[EOA]] = []
        self._eoa_by_address: dict[AddressType, int] = {}
        self._eoa_by_name: dict[str, int] = {}

        self.transactions: list[Entry[Transaction]] = []
        self._transactions_by_safe: dict[AddressType, list[int]] = {}
        self._transaction_by_hash: dict[str, int] = {}

        self.proposals: list[Entry[AnyProposal]] = []
        self._proposal_by_hash: dict[str, int] = {}
        self._proposals_by_safe: dict[AddressType, list[int]] = {}
        self._proposal_by_path: dict[Path, int] = {}
        self._proposal_by_child_slot: dict[tuple[str, int], int] = {}

        self._artifacts: dict[Path, str] = {}

    def _relative(self, path: Union[Path, str]) -> Path:
        path = Path(path)
        if path.is_absolute():
            return path.resolve().relative_to(self.root)

        return path

    """Loading"""

    def load(self):
        """
        Populate the store from every persisted entity file under the root.

        Raises:
            :class:`~ape_safecd.exceptions.DuplicateEntityError`: Two files define
              the same address, name or hash.
            :class:`~ape_safecd.exceptions.InvalidEntityFileError`: A file does not parse.
        """
        for file in self._scan(self.root / "safes", "*.yaml"):
            self.create_safe(file, self._parse(file, SafeAdapter.validate_python))

        for file in self._scan(self.root / "eoas", "*.yaml"):
            self.create_eoa(file, self._parse(file, EOA.model_validate))

        for file in self._scan(self.root / "transactions", "**/*.yaml"):
            self.create_transaction(file, self._parse(file, Transaction.model_validate))

        for file in self._scan(self.root / self.script_folder, f"**/*{PROPOSAL_SUFFIX}"):
            self.create_proposal(file, self._parse(file, ProposalAdapter.validate_python))

        logger.debug(
            f"Loaded {len(self.safes)} safes, {len(self.eoas)} EOAs, "
            f"{len(self.transactions)} transactions and {len(self.proposals)} proposals"
        )

    @staticmethod
    def _scan(folder: Path, pattern: str) -> list[Path]:
        if not folder.is_dir():
            return []

        return sorted(p for p in folder.glob(pattern) if p.is_file())

    @staticmethod
    def _parse(file: Path, validate):
        try:
            return validate(from_yaml(file.read_text(encoding="utf-8")))

        except (yaml.YAMLError, ValidationError) as err:
            raise InvalidEntityFileError(file, str(err)) from err

    """Lookups"""

    def resolve_safe(self, reference: str) -> Optional[AnySafe]:
        """
        Find a Safe by name, falling back to its address.
        """
        if (safe := self.get_safe_by_name(reference)) is not None:
            return safe

        elif ADDRESS_PATTERN.match(reference):
            return self.get_safe_by_address(reference)

        return None

    def get_safe_by_address(self, address: str) -> Optional[AnySafe]:
        index = self._safe_by_address.get(checksum(address))
        return None if index is None else self.safes[index].entity

    def get_safe_index(self, address: str) -> Optional[int]:
        return self._safe_by_address.get(checksum(address))

    def get_safe_by_name(self, name: str) -> Optional[AnySafe]:
        index = self._safe_by_name.get(name)
        return None if index is None else self.safes[index].entity

    def get_eoa_by_address(self, address: str) -> Optional[EOA]:
        index = self._eoa_by_address.get(checksum(address))
        return None if index is None else self.eoas[index].entity

    def get_eoa_by_name(self, name: str) -> Optional[EOA]:
        index = self._eoa_by_name.get(name)
        return None if index is None else self.eoas[index].entity

    def get_transaction_by_hash(self, safe_tx_hash: str) -> Optional[Transaction]:
        index = self._transaction_by_hash.get(safe_tx_hash.lower())
        return None if index is None else self.transactions[index].entity

    def get_transaction_index(self, safe_tx_hash: str) -> Optional[int]:
        return self._transaction_by_hash.get(safe_tx_hash.lower())

    def get_transactions(self, safe: Union[Safe, str]) -> list[Transaction]:
        address = checksum(safe if isinstance(safe, str) else safe.address)
        return [
            self.transactions[index].entity
            for index in self._transactions_by_safe.get(address, [])
            if not self.transactions[index].deleted
        ]

    def get_transaction_indices(self, safe: Union[Safe, str]) -> list[int]:
        address = checksum(safe if isinstance(safe, str) else safe.address)
        return list(self._transactions_by_safe.get(address, []))

    def get_proposal_by_hash(self, safe_tx_hash: str) -> Optional[AnyProposal]:
        index = self._proposal_by_hash.get(safe_tx_hash.lower())
        return None if index is None else self.proposals[index].entity

    def get_proposal_path_by_hash(self, safe_tx_hash: str) -> Optional[Path]:
        index = self._proposal_by_hash.get(safe_tx_hash.lower())
        return None if index is None else self.proposals[index].path

    def get_proposals(self, safe: Union[Safe, str]) -> list[int]:
        address = checksum(safe if isinstance(safe, str) else safe.address)
        return list(self._proposals_by_safe.get(address, []))

    def proposal_exists(self, path: Union[Path, str]) -> Optional[int]:
        return self._proposal_by_path.get(self._relative(path))

    def get_highest_proposal_nonce(self, safe: Union[Safe, str]) -> Optional[int]:
        """
        Highest nonce among all known transactions of ``safe``, ``None`` if it has none.
        """
        nonces = [tx.nonce for tx in self.get_transactions(safe)]
        return max(nonces) if nonces else None

    def get_highest_executed_proposal_nonce(self, safe: Union[Safe, str]) -> Optional[int]:
        """
        Highest nonce among executed transactions of ``safe``, ``None`` if none executed.
        """
        nonces = [tx.nonce for tx in self.get_transactions(safe) if tx.executed]
        return max(nonces) if nonces else None

    def get_pending_proposals_by_owner(self, owner: str) -> list[AnyProposal]:
        """
        Submitted proposals still waiting for a confirmation from ``owner``,
        oldest submission first.
        """
        pending: list[tuple[str, AnyProposal]] = []
        for entry in self.proposals:
            proposal = entry.entity
            if entry.deleted or not proposal.safe_tx_hash:
                continue

            transaction = self.get_transaction_by_hash(proposal.safe_tx_hash)
            safe = self.resolve_safe(proposal.safe)
            if (
                transaction is None
                or not isinstance(safe, PopulatedSafe)
                or owner.lower() not in (o.lower() for o in safe.owners)
            ):
                continue

            if (
                len(transaction.confirmations) < safe.threshold
                and not transaction.executed
                and not transaction.has_confirmation_from(owner)
            ):
                pending.append((transaction.submission_date or "", proposal))

        return [proposal for _, proposal in sorted(pending, key=lambda item: item[0])]

    """Creation"""

    def create_safe(self, path: Union[Path, str], safe: AnySafe):
        self._check_unique(self._safe_by_address, safe.address, "Safe", "address")
        self._check_unique(self._safe_by_name, safe.name, "Safe", "name")
        self.safes.append(Entry(path=self._relative(path), entity=safe))
        self._bind_safe(len(self.safes) - 1, safe)

    def create_eoa(self, path: Union[Path, str], eoa: EOA):
        self._check_unique(self._eoa_by_address, eoa.address, "EOA", "address")
        self._check_unique(self._eoa_by_name, eoa.name, "EOA", "name")
        self.eoas.append(Entry(path=self._relative(path), entity=eoa))
        index = len(self.eoas) - 1
        self._eoa_by_address[eoa.address] = index
        self._eoa_by_name[eoa.name] = index

    def create_transaction(self, path: Union[Path, str], transaction: Transaction):
        self._check_unique(
            self._transaction_by_hash, transaction.safe_tx_hash, "Transaction", "hash"
        )
        if self.get_safe_by_address(transaction.safe) is None:
            raise UnknownSafeError(transaction.safe, context=str(path))

        self.transactions.append(Entry(path=self._relative(path), entity=transaction))
        self._bind_transaction(len(self.transactions) - 1, transaction)

    def create_proposal(self, path: Union[Path, str], proposal: AnyProposal):
        relative_path = self._relative(path)
        self._check_unique(self._proposal_by_path, relative_path, "Proposal", "path")
        if proposal.safe_tx_hash:
            self._check_unique(self._proposal_by_hash, proposal.safe_tx_hash, "Proposal", "hash")

        if (slot := self._child_slot(relative_path, proposal)) is not None:
            self._check_unique(self._proposal_by_child_slot, slot, "Proposal", "child slot")

        safe_address = self._proposal_safe_address(proposal, relative_path)
        self.proposals.append(Entry(path=relative_path, entity=proposal))
        self._bind_proposal(len(self.proposals) - 1, proposal, safe_address)

    def stage_file(self, path: Union[Path, str], content: str):
        """
        Stage a non-entity artifact (e.g. a proposal manifest) for the terminal commit.
        """
        self._artifacts[self._relative(path)] = content

    """Updates"""

    def write_safe(self, index: int, safe: Optional[AnySafe]):
        entry = self._entry(self.safes, index, "Safe")
        if safe is not None:
            self._check_unique(self._safe_by_address, safe.address, "Safe", "address", index)
            self._check_unique(self._safe_by_name, safe.name, "Safe", "name", index)

        self._unbind_safe(index, entry.entity)
        if safe is None:
            entry.deleted = True
            return

        entry.entity = safe
        entry.deleted = False
        self._bind_safe(index, safe)

    def write_transaction(self, index: int, transaction: Optional[Transaction]):
        entry = self._entry(self.transactions, index, "Transaction")
        if transaction is not None:
            self._check_unique(
                self._transaction_by_hash,
                transaction.safe_tx_hash,
                "Transaction",
                "hash",
                index,
            )

        self.unbind_transaction(index)
        if transaction is None:
            entry.deleted = True
            return

        entry.entity = transaction
        entry.deleted = False
        self._bind_transaction(index, transaction)

    def write_proposal(self, index: int, proposal: Optional[AnyProposal]):
        entry = self._entry(self.proposals, index, "Proposal")
        safe_address = None
        if proposal is not None:
            if proposal.safe_tx_hash:
                self._check_unique(
                    self._proposal_by_hash, proposal.safe_tx_hash, "Proposal", "hash", index
                )

            if (slot := self._child_slot(entry.path, proposal)) is not None:
                self._check_unique(
                    self._proposal_by_child_slot, slot, "Proposal", "child slot", index
                )

            safe_address = self._proposal_safe_address(proposal, entry.path)

        self._unbind_proposal(index, entry.entity)
        if proposal is None:
            entry.deleted = True
            return

        entry.entity = proposal
        entry.deleted = False
        assert safe_address is not None  # NOTE: mypy happy
        self._bind_proposal(index, proposal, safe_address)

    def unbind_transaction(self, index: int):
        """
        Remove a transaction from the lookup indices without deleting its file,
        used before re-creating it at a new path.
        """
        transaction = self._entry(self.transactions, index, "Transaction").entity
        address = checksum(transaction.safe)
        if index in (indices := self._transactions_by_safe.get(address, [])):
            indices.remove(index)

        if self._transaction_by_hash.get(transaction.safe_tx_hash) == index:
            del self._transaction_by_hash[transaction.safe_tx_hash]

    """Commit"""

    def staged(self) -> StagedWrites:
        staged = StagedWrites(self.root)
        entries: list[Entry] = [*self.safes, *self.eoas, *self.transactions, *self.proposals]
        for entry in entries:
            if entry.deleted:
                staged.remove(entry.path)

        for entry in entries:
            if not entry.deleted:
                staged.write(entry.path, model_to_yaml(entry.entity))

        for path, content in self._artifacts.items():
            staged.write(path, content)

        return staged

    def diff(self) -> list[str]:
        """
        Unified diff of every in-memory change against the files on disk. Does not mutate.
        """
        return self.staged().diff()

    def save(self) -> SaveResult:
        """
        Write every changed entity, remove deleted ones, leave identical files untouched.
        """
        return self.staged().apply()

    """Index maintenance"""

    @staticmethod
    def _entry(entries: list, index: int, kind: str) -> Entry:
        if index < 0 or index >= len(entries):
            raise EntityIndexError(kind, index)

        return entries[index]

    @staticmethod
    def _check_unique(
        index: dict, key, kind: str, field_name: str, current: Optional[int] = None
    ):
        if (existing := index.get(key)) is not None and existing != current:
            raise DuplicateEntityError(kind, field_name, str(key))

    def _bind_safe(self, index: int, safe: AnySafe):
        self._safe_by_address[safe.address] = index
        self._safe_by_name[safe.name] = index

    def _unbind_safe(self, index: int, safe: AnySafe):
        if self._safe_by_address.get(safe.address) == index:
            del self._safe_by_address[safe.address]

        if self._safe_by_name.get(safe.name) == index:
            del self._safe_by_name[safe.name]

    def _bind_transaction(self, index: int, transaction: Transaction):
        self._transactions_by_safe.setdefault(checksum(transaction.safe), []).append(index)
        self._transaction_by_hash[transaction.safe_tx_hash] = index

    def _proposal_safe_address(self, proposal: AnyProposal, path: Path) -> AddressType:
        if (safe := self.resolve_safe(proposal.safe)) is None:
            raise UnknownSafeError(proposal.safe, context=str(path))

        return safe.address

    @staticmethod
    def _child_slot(path: Path, proposal: AnyProposal) -> Optional[tuple[str, int]]:
        if not isinstance(proposal, ChildOfProposal):
            return None

        elif not (match := CHILD_PROPOSAL_PATTERN.match(path.name)):
            return None

        return match.group(1).lower(), int(match.group(2))

    def _bind_proposal(self, index: int, proposal: AnyProposal, safe_address: AddressType):
        path = self.proposals[index].path
        self._proposal_by_path[path] = index
        self._proposals_by_safe.setdefault(safe_address, []).append(index)
        if proposal.safe_tx_hash:
            self._proposal_by_hash[proposal.safe_tx_hash] = index

        if (slot := self._child_slot(path, proposal)) is not None:
            self._proposal_by_child_slot[slot] = index

    def _unbind_proposal(self, index: int, proposal: AnyProposal):
        path = self.proposals[index].path
        if self._proposal_by_path.get(path) == index:
            del self._proposal_by_path[path]

        for indices in self._proposals_by_safe.values():
            if index in indices:
                indices.remove(index)

        if proposal.safe_tx_hash and self._proposal_by_hash.get(proposal.safe_tx_hash) == index:
            del self._proposal_by_hash[proposal.safe_tx_hash]

        slot = self._child_slot(path, proposal)
        if slot is not None and self._proposal_by_child_slot.get(slot) == index:
            del self._proposal_by_child_slot[slot]
