from typing import TYPE_CHECKING, Optional

from ape.exceptions import ApeException

if TYPE_CHECKING:
    from pathlib import Path

    from requests import Response


class ApeSafeCdException(ApeException):
    pass


class IntegrityError(ApeSafeCdException):
    """
    The repository state is inconsistent. Always fatal.
    """


class DuplicateEntityError(IntegrityError):
    def __init__(self, kind: str, key: str, value: str):
        self.kind = kind
        self.key = key
        self.value = value
        super().__init__(f"{kind} with {key} '{value}' is defined twice.")


class UnknownSafeError(IntegrityError):
    def __init__(self, reference: str, context: Optional[str] = None):
        self.reference = reference
        message = f"Safe '{reference}' not found"
        super().__init__(f"{message} (referenced by {context})." if context else f"{message}.")


class EntityIndexError(IntegrityError, IndexError):
    def __init__(self, kind: str, index: int):
        super().__init__(f"{kind} index {index} out of bounds.")


class InvalidEntityFileError(IntegrityError):
    def __init__(self, path: "Path", reason: str):
        self.path = path
        super().__init__(f"Invalid entity file at '{path}':\n{reason}")


class NonceExpressionError(ApeSafeCdException):
    def __init__(self, proposal: str, expression: str, reason: str):
        self.proposal = proposal
        self.expression = expression
        super().__init__(f"Invalid nonce '{expression}' in proposal '{proposal}': {reason}")


class DuplicateNonceError(ApeSafeCdException):
    def __init__(self, safe: str, nonce: int, proposals: list[str]):
        self.safe = safe
        self.nonce = nonce
        super().__init__(
            f"Nonce {nonce} of Safe '{safe}' claimed by more than one proposal: "
            + ", ".join(proposals)
        )


class HashMismatchError(ApeSafeCdException):
    def __init__(self, local_hash: str, onchain_hash: str):
        self.local_hash = local_hash
        self.onchain_hash = onchain_hash
        super().__init__(
            f"SafeTx hash mismatch: computed '{local_hash}' but Safe contract returned "
            f"'{onchain_hash}'. Refusing to sign."
        )


class OwnershipCycleError(ApeSafeCdException):
    def __init__(self, path: list[str]):
        self.path = path
        super().__init__("Safe ownership cycle detected: " + " -> ".join(path))


class AuthorizationError(ApeSafeCdException):
    pass


class DelegateNotRegisteredError(AuthorizationError):
    def __init__(self, delegate: str, safe: str):
        super().__init__(f"Delegate {delegate} not found in safe '{safe}'.")


class SignerNotLoadedError(AuthorizationError):
    def __init__(self, delegate: str):
        super().__init__(
            f"Signer for delegate {delegate} not loaded, import it into your Ape accounts."
        )


class UnsupportedTransactionTypeError(ApeSafeCdException):
    def __init__(self, transaction_type: str, proposal: str):
        super().__init__(f"Unsupported transactionType {transaction_type} in proposal {proposal}")


class SimulationError(ApeSafeCdException):
    def __init__(self, command: str, stdout: str = "", stderr: str = ""):
        self.command = command
        self.stdout = stdout
        self.stderr = stderr
        super().__init__(f"Simulation failed for command: {command}")


class BroadcastManifestNotFoundError(SimulationError):
    def __init__(self, command: str, path: "Path", stdout: str = "", stderr: str = ""):
        super().__init__(command, stdout=stdout, stderr=stderr)
        self.path = path
        self.args = (f"Simulation broadcast manifest '{path}' not found.",)


class SafeClientException(ApeSafeCdException):
    pass


class ClientResponseError(SafeClientException):
    def __init__(self, endpoint_url: str, response: "Response", message: Optional[str] = None):
        self.endpoint_url = endpoint_url
        self.response = response
        message = message or f"Exception when calling '{endpoint_url}':\n{response.text}"
        super().__init__(message)


class NotificationError(ApeSafeCdException):
    pass


class SafeNotFoundError(SafeClientException):
    def __init__(self, address: str):
        self.address = address
        super().__init__(f"Address {address} is not a Safe known to the transaction service.")
