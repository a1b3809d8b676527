from collections.abc import Mapping
from pathlib import Path
from typing import TYPE_CHECKING, Any, Optional, Protocol, Union

import requests
from ape.logging import logger
from ape.types import AddressType, MessageSignature
from eth_utils import to_hex

from .approvals import ApprovalGenerator, approve_hash_calldata
from .exceptions import (
    AuthorizationError,
    DelegateNotRegisteredError,
    IntegrityError,
    SafeClientException,
    SignerNotLoadedError,
    SimulationError,
    UnknownSafeError,
    UnsupportedTransactionTypeError,
)
from .multisend import MultiSend
from .nonce import NonceResolver
from .types import (
    ChildOfProposal,
    FunctionCallProposal,
    Manifest,
    PlannedTransaction,
    PopulatedSafe,
    SafeTransactionData,
)
from .utils import checksum, to_yaml
from .verify import TransactionHashVerifier, VerifiedTransaction

if TYPE_CHECKING:
    from .client import BaseTransactionServiceClient
    from .safes import CodeReader
    from .simulator import Simulator
    from .store import EntityStore
    from .types import SafeTx

AnyProposal = Union[FunctionCallProposal, ChildOfProposal]

PROPOSAL_SUFFIX = ".proposal.yaml"
MANIFEST_SUFFIX = ".proposal.manifest.yaml"


class Signer(Protocol):
    address: AddressType

    def sign_message(self, msg: Any, **signer_options) -> Optional[MessageSignature]: ...


def manifest_path(proposal_path: Path) -> Path:
    prefix = proposal_path.name[: -len(PROPOSAL_SUFFIX)]
    return proposal_path.parent / f"{prefix}{MANIFEST_SUFFIX}"


def build_safe_transaction(
    planned: list[PlannedTransaction], nonce: int
) -> SafeTransactionData:
    if len(planned) == 1:
        return SafeTransactionData(
            to=planned[0].to, value=planned[0].value, data=planned[0].data, nonce=nonce
        )

    batch = MultiSend()
    for call in planned:
        batch.add(call.to, call.value, call.data)

    return batch.as_safe_tx_data(nonce)


class ProposalSyncer:
    """
    Processes every unsubmitted proposal: simulate, build the Safe transaction,
    estimate it, verify its hash and (when uploading) sign and propose it. Child
    approval proposals are generated and processed depth-first as parents get
    submitted.

    Usage example::

        syncer = ProposalSyncer(store, client, chain, simulator, signers, upload=True)
        syncer.sync()
        print(f"{syncer.proposed} proposed, {len(syncer.manifests)} manifests")
    """

    def __init__(
        self,
        store: "EntityStore",
        client: "BaseTransactionServiceClient",
        chain: "CodeReader",
        simulator: "Simulator",
        verifier: TransactionHashVerifier,
        signers: Optional[Mapping[AddressType, Signer]] = None,
        upload: bool = False,
    ):
        self.store = store
        self.client = client
        self.simulator = simulator
        self.verifier = verifier
        self.signers = dict(signers or {})
        self.upload = upload
        self.resolver = NonceResolver(store)
        self.approvals = ApprovalGenerator(store, self.resolver, chain)
        self.manifests: dict[Path, Manifest] = {}
        self.proposed = 0
        self._seen: set[int] = set()

    def sync(self) -> dict[Path, Manifest]:
        logger.info("Syncing proposals")
        for safe_address, scheduled in self.resolver.schedule().items():
            logger.info(f"Processing {len(scheduled)} proposal(s) of {safe_address}")
            for item in scheduled:
                self.sync_proposal(item.index, item.nonce)

        # NOTE: Proposals submitted in earlier runs may still be missing their approvals
        for index in range(len(self.store.proposals)):
            entry = self.store.proposals[index]
            if (
                index not in self._seen
                and not entry.deleted
                and not isinstance(entry.entity, ChildOfProposal)
                and entry.entity.safe_tx_hash
                and entry.entity.create_child_proposals
            ):
                self.sync_proposal(index, None)

        logger.success(f"Synced proposals ({self.proposed} proposed)")
        return self.manifests

    def sync_proposal(
        self, index: int, nonce: Optional[int], visiting: tuple[AddressType, ...] = ()
    ):
        self._seen.add(index)
        entry = self.store.proposals[index]
        if not entry.entity.safe_tx_hash:
            if nonce is None:
                raise IntegrityError(f"No nonce resolved for proposal '{entry.path}'.")

            self.process(index, nonce)

        # NOTE: `process` may have submitted it
        if self.store.proposals[index].entity.safe_tx_hash:
            self.approvals.generate(index, self.sync_proposal, visiting)

    def process(self, index: int, nonce: int):
        entry = self.store.proposals[index]
        proposal = entry.entity
        if not isinstance(safe := self.store.resolve_safe(proposal.safe), PopulatedSafe):
            raise UnknownSafeError(proposal.safe, context=str(entry.path))

        logger.info(f"Processing proposal {entry.path} (nonce {nonce})")
        manifest = Manifest(
            raw_proposal=proposal.model_dump(by_alias=True, mode="json", exclude_none=True),
            safe=safe.model_dump(by_alias=True, mode="json", exclude_none=True),
        )
        if isinstance(proposal, ChildOfProposal):
            tx: Optional[SafeTransactionData] = SafeTransactionData(
                to=proposal.child_of.safe,
                value=0,
                data=approve_hash_calldata(proposal.child_of.hash),
                nonce=nonce,
            )

        else:
            tx = self.simulate(entry.path, proposal, safe, nonce, manifest)

        if tx is not None:
            self.submit(index, safe, tx, manifest)

        self.manifests[entry.path] = manifest
        self.store.stage_file(
            manifest_path(entry.path), to_yaml(manifest.model_dump(mode="json", exclude_none=True))
        )

    def simulate(
        self,
        path: Path,
        proposal: FunctionCallProposal,
        safe: PopulatedSafe,
        nonce: int,
        manifest: Manifest,
    ) -> Optional[SafeTransactionData]:
        script = self.store.root / path.parent / proposal.proposal
        if script.is_file():
            manifest.raw_script = script.read_text()

        try:
            result = self.simulator.simulate(
                script, safe.address, proposal.function, proposal.arguments
            )

        except SimulationError as err:
            logger.error(f"Simulation failed for proposal {path}: {err}")
            manifest.raw_command = err.command
            manifest.simulation_output = err.stdout
            manifest.simulation_error_output = err.stderr
            manifest.error = "Proposal simulation error"
            return None

        manifest.raw_command = result.command
        manifest.simulation_output = result.output
        manifest.simulation_error_output = result.error_output or None
        manifest.simulation_success = True
        manifest.simulation_transactions = [
            planned.model_dump(by_alias=True, mode="json", exclude_none=True)
            for planned in result.transactions
        ]
        for planned in result.transactions:
            if planned.transaction_type != "CALL":
                raise UnsupportedTransactionTypeError(planned.transaction_type, str(path))

        if not result.transactions:
            logger.warning(f"No transactions planned by proposal {path}")
            manifest.error = "No transactions found"
            return None

        return build_safe_transaction(result.transactions, nonce)

    def submit(
        self,
        index: int,
        safe: PopulatedSafe,
        tx: SafeTransactionData,
        manifest: Manifest,
    ):
        entry = self.store.proposals[index]
        manifest.safe_transaction = tx.model_dump(by_alias=True, mode="json")
        try:
            estimation = self.client.estimate_safe_transaction(safe.address, tx)

        except (SafeClientException, requests.RequestException) as err:
            logger.error(f"Safe estimation failed for proposal {entry.path}: {err}")
            manifest.error = "Safe estimation error"
            return

        manifest.safe_estimation = estimation.model_dump(by_alias=True, mode="json")
        verified = self.verifier.verify(safe.address, safe.version, tx)
        manifest.safe_tx_hash = verified.safe_tx_hash
        manifest.message_hash = verified.message_hash

        if not self.upload:
            return

        signature = self.sign(entry.entity, safe, verified.safe_tx)
        try:
            self.client.propose_transaction(
                safe.address,
                tx,
                verified.safe_tx_hash,
                checksum(entry.entity.delegate),
                signature,
            )

        except (SafeClientException, requests.RequestException) as err:
            logger.error(f"Proposal creation failed for {entry.path}: {err}")
            manifest.error = "Safe proposal error"
            return

        self.record_submission(index, verified)

    def sign(self, proposal: AnyProposal, safe: PopulatedSafe, safe_tx: "SafeTx") -> str:
        """
        Raises:
            :class:`~ape_safecd.exceptions.DelegateNotRegisteredError`
            :class:`~ape_safecd.exceptions.SignerNotLoadedError`
        """
        if not safe.has_delegate(proposal.delegate):
            raise DelegateNotRegisteredError(proposal.delegate, safe.name)

        elif (signer := self.signers.get(checksum(proposal.delegate))) is None:
            raise SignerNotLoadedError(proposal.delegate)

        elif not (signature := signer.sign_message(safe_tx)):
            raise AuthorizationError(f"Delegate {proposal.delegate} did not sign the proposal.")

        return to_hex(signature.encode_rsv())

    def record_submission(self, index: int, verified: VerifiedTransaction):
        entry = self.store.proposals[index]
        logger.success(f"Proposed {entry.path} with hash {verified.safe_tx_hash}")
        self.store.write_proposal(
            index, entry.entity.model_copy(update={"safe_tx_hash": verified.safe_tx_hash})
        )
        self.proposed += 1
