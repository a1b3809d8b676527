import ast
import operator
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Union

from ape.logging import logger
from ape.types import AddressType

from .exceptions import DuplicateNonceError, NonceExpressionError, UnknownSafeError
from .types import ChildOfProposal, FunctionCallProposal

if TYPE_CHECKING:
    from .store import EntityStore

AnyProposal = Union[FunctionCallProposal, ChildOfProposal]

# NOTE: Short and long names resolve to the same counter
BINDINGS = {
    "a": "auto",
    "auto": "auto",
    "n": "nonce",
    "nonce": "nonce",
    "pn": "pending_nonce",
    "pendingNonce": "pending_nonce",
}
AUTO_NAMES = {"a", "auto"}


def _exact_div(left: int, right: int) -> int:
    if left % right != 0:
        raise ValueError(f"{left} / {right} is not an integer")

    return left // right


BINARY_OPERATORS: dict[type, Callable[[int, int], int]] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.FloorDiv: operator.floordiv,
    ast.Div: _exact_div,
    ast.Mod: operator.mod,
}
UNARY_OPERATORS: dict[type, Callable[[int], int]] = {
    ast.UAdd: operator.pos,
    ast.USub: operator.neg,
}


def _evaluate(node: ast.AST, bindings: dict[str, int]) -> int:
    if isinstance(node, ast.Expression):
        return _evaluate(node.body, bindings)

    elif isinstance(node, ast.Constant):
        if isinstance(node.value, bool) or not isinstance(node.value, int):
            raise ValueError(f"unsupported constant {node.value!r}")

        return node.value

    elif isinstance(node, ast.Name):
        if node.id not in BINDINGS:
            raise ValueError(f"unknown name '{node.id}'")

        return bindings[BINDINGS[node.id]]

    elif isinstance(node, ast.BinOp) and type(node.op) in BINARY_OPERATORS:
        left = _evaluate(node.left, bindings)
        right = _evaluate(node.right, bindings)
        try:
            return BINARY_OPERATORS[type(node.op)](left, right)

        except ZeroDivisionError as err:
            raise ValueError("division by zero") from err

    elif isinstance(node, ast.UnaryOp) and type(node.op) in UNARY_OPERATORS:
        return UNARY_OPERATORS[type(node.op)](_evaluate(node.operand, bindings))

    raise ValueError(f"unsupported syntax '{type(node).__name__}'")


def _parse(expression: str) -> ast.Expression:
    try:
        return ast.parse(expression.strip(), mode="eval")

    except SyntaxError as err:
        raise ValueError(f"syntax error ({err.msg})") from err


def evaluate_nonce(expression: Union[int, str], bindings: dict[str, int]) -> int:
    """
    Resolve a nonce field to an integer.

    A literal integer is returned as-is. Anything else is evaluated as an integer
    arithmetic expression (``+ - * / // %``, unary ``+ -`` and parentheses) over the
    bindings ``a``/``auto``, ``n``/``nonce`` and ``pn``/``pendingNonce``.

    Args:
        expression (Union[int, str]): The nonce field of a proposal.
        bindings (dict[str, int]): The ``auto``, ``nonce`` and ``pending_nonce`` counters.

    Raises:
        ValueError: The expression is invalid or does not resolve to a non-negative integer.

    Returns:
        int
    """
    if isinstance(expression, int) and not isinstance(expression, bool):
        value = expression

    else:
        try:
            value = int(str(expression).strip())

        except ValueError:
            value = _evaluate(_parse(str(expression)), bindings)

    if value < 0:
        raise ValueError(f"resolved to negative nonce {value}")

    return value


def references_auto(expression: Union[int, str]) -> bool:
    if not isinstance(expression, str):
        return False

    try:
        tree = _parse(expression)

    except ValueError:
        return False

    return any(isinstance(node, ast.Name) and node.id in AUTO_NAMES for node in ast.walk(tree))


@dataclass
class NonceCounters:
    nonce: int
    """Next nonce after the highest executed transaction."""

    pending_nonce: int
    """Next nonce after the highest known transaction, executed or not."""

    auto: int
    """Cursor handed out to proposals without an explicit nonce."""

    taken: set[int] = field(default_factory=set)
    """Nonces claimed by explicit nonce fields or earlier allocations of this run."""

    @property
    def bindings(self) -> dict[str, int]:
        return {"auto": self.auto, "nonce": self.nonce, "pending_nonce": self.pending_nonce}

    def next_auto(self) -> int:
        while self.auto in self.taken:
            self.auto += 1

        value = self.auto
        self.taken.add(value)
        self.auto += 1
        return value


@dataclass
class ScheduledProposal:
    index: int
    path: Path
    proposal: AnyProposal
    nonce: int


class NonceResolver:
    """
    Assigns a nonce to every unsubmitted top-level proposal, grouped per target Safe.

    Counters are initialised on first reference to a Safe and shared with
    :meth:`allocate`, so child proposals created during the same run never collide
    with their parents.
    """

    def __init__(self, store: "EntityStore"):
        self.store = store
        self._counters: dict[AddressType, NonceCounters] = {}

    def counters(self, safe_address: AddressType) -> NonceCounters:
        if safe_address not in self._counters:
            executed = self.store.get_highest_executed_proposal_nonce(safe_address)
            highest = self.store.get_highest_proposal_nonce(safe_address)
            nonce = 0 if executed is None else executed + 1
            counters = NonceCounters(
                nonce=nonce,
                pending_nonce=0 if highest is None else highest + 1,
                auto=nonce,
            )
            logger.debug(f"Nonce counters for {safe_address}: {counters}")
            self._counters[safe_address] = counters

        return self._counters[safe_address]

    def allocate(self, safe_address: AddressType) -> int:
        """
        Hand out the next automatic nonce of ``safe_address``.
        """
        return self.counters(safe_address).next_auto()

    def resolve_explicit(self, path: Path, expression: Union[int, str], counters: NonceCounters):
        try:
            value = evaluate_nonce(expression, counters.bindings)

        except ValueError as err:
            raise NonceExpressionError(str(path), str(expression), str(err)) from err

        if references_auto(expression) and value == counters.auto:
            counters.auto += 1

        return value

    def schedule(self) -> dict[AddressType, list[ScheduledProposal]]:
        """
        Resolve the nonces of every unsubmitted top-level proposal.

        Returns:
            dict[AddressType, list[ScheduledProposal]]: Per Safe (sorted by address),
            the proposals sorted by ascending nonce.
        """
        pending: dict[AddressType, list[tuple[int, Path, AnyProposal]]] = {}
        for index, entry in enumerate(self.store.proposals):
            proposal = entry.entity
            if entry.deleted or proposal.safe_tx_hash or isinstance(proposal, ChildOfProposal):
                continue

            if (safe := self.store.resolve_safe(proposal.safe)) is None:
                raise UnknownSafeError(proposal.safe, context=str(entry.path))

            pending.setdefault(safe.address, []).append((index, entry.path, proposal))

        schedule: dict[AddressType, list[ScheduledProposal]] = {}
        for safe_address in sorted(pending):
            counters = self.counters(safe_address)
            resolved: list[ScheduledProposal] = []
            claimed: dict[int, list[str]] = {}

            for index, path, proposal in pending[safe_address]:
                if proposal.nonce is None:
                    continue

                nonce = self.resolve_explicit(path, proposal.nonce, counters)
                claimed.setdefault(nonce, []).append(str(path))
                resolved.append(ScheduledProposal(index, path, proposal, nonce))

            if duplicates := {n: paths for n, paths in claimed.items() if len(paths) > 1}:
                nonce, paths = min(duplicates.items())
                raise DuplicateNonceError(safe_address, nonce, paths)

            counters.taken.update(claimed)
            for index, path, proposal in pending[safe_address]:
                if proposal.nonce is None:
                    resolved.append(
                        ScheduledProposal(index, path, proposal, counters.next_auto())
                    )

            schedule[safe_address] = sorted(resolved, key=lambda item: item.nonce)
            logger.info(
                f"Scheduled {len(resolved)} proposal(s) for {safe_address}: "
                + ", ".join(f"{item.path}@{item.nonce}" for item in schedule[safe_address])
            )

        return schedule
