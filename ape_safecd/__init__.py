from importlib import import_module
from typing import Any

from ape import plugins


@plugins.register(plugins.Config)
def config_class():
    from .config import SafeCdConfig

    return SafeCdConfig


def __getattr__(name: str) -> Any:
    if name == "EntityStore":
        from .store import EntityStore

        return EntityStore

    elif name in ("NonceResolver", "evaluate_nonce"):
        return getattr(import_module("ape_safecd.nonce"), name)

    elif name in ("ProposalSyncer", "SafeSyncer"):
        module = "ape_safecd.proposals" if name == "ProposalSyncer" else "ape_safecd.safes"
        return getattr(import_module(module), name)

    elif name == "TransactionHashVerifier":
        return getattr(import_module("ape_safecd.verify"), name)

    else:
        raise AttributeError(name)


__all__ = [
    "EntityStore",
    "NonceResolver",
    "ProposalSyncer",
    "SafeSyncer",
    "TransactionHashVerifier",
    "evaluate_nonce",
]
