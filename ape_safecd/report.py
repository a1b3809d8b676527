from collections.abc import Mapping
from pathlib import Path
from typing import TYPE_CHECKING, Any, Optional

from ape.types import AddressType

from .types import Manifest, PopulatedSafe
from .utils import checksum, from_yaml, to_yaml

if TYPE_CHECKING:
    from .store import EntityStore


class AddressBook:
    """
    Display names of every known address, built once per run from the store.
    """

    def __init__(self, names: Mapping[AddressType, str], safes: set[AddressType]):
        self.names = dict(names)
        self.safes = set(safes)

    @classmethod
    def from_store(cls, store: "EntityStore") -> "AddressBook":
        names: dict[AddressType, str] = {}
        safes: set[AddressType] = set()
        for eoa_entry in store.eoas:
            if not eoa_entry.deleted:
                names[eoa_entry.entity.address] = eoa_entry.entity.name

        for safe_entry in store.safes:
            if not safe_entry.deleted:
                names[safe_entry.entity.address] = safe_entry.entity.name
                safes.add(safe_entry.entity.address)

        return cls(names, safes)

    def is_safe(self, address: str) -> bool:
        return checksum(address) in self.safes

    def name(self, address: str) -> str:
        address = checksum(address)
        if (name := self.names.get(address)) is None:
            return address

        return f"{name} (safe)" if address in self.safes else name


def _code_block(language: str, content: Any) -> str:
    text = content if isinstance(content, str) else to_yaml(content)
    return f"```{language}\n{text.rstrip()}\n```\n"


def render_manifest(path: Path, manifest: Manifest) -> str:
    """
    Markdown summary of one processed proposal, for CI comments.
    """
    proposal = dict(manifest.raw_proposal)
    title = proposal.pop("title", str(path))
    description = proposal.pop("description", None) or ""
    is_child = "childOf" in proposal

    sections = [
        "\n---\n",
        f"# {title} {'❌' if manifest.error else '✅'}\n",
        f"### `{path}`\n",
        f"{description}\n",
    ]
    if manifest.error:
        sections += ["### Error\n", _code_block("", manifest.error)]

    else:
        sections += ["### Safe Tx Hash\n", _code_block("solidity", manifest.safe_tx_hash or "")]
        sections.append(
            "<details>\n<summary><bold>Expand for full proposal details</bold></summary>\n"
        )

    sections += ["### Proposal\n", _code_block("yaml", proposal)]
    if manifest.safe_transaction is not None:
        sections += ["### Safe Transaction\n", _code_block("yaml", manifest.safe_transaction)]

    sections += ["### Safe\n", _code_block("yaml", manifest.safe or {})]
    if not is_child:
        sections += [
            "### Proposal Script\n",
            _code_block("solidity", manifest.raw_script or ""),
            "### Proposal Script Simulation Output\n",
            _code_block("", manifest.simulation_output or ""),
            "### Proposal Script Command\n",
            _code_block("shell", manifest.raw_command or ""),
            "### Proposal Script Simulation Transactions\n",
            _code_block("yaml", manifest.simulation_transactions),
        ]

    if manifest.safe_estimation is not None:
        sections += ["### Safe Estimation\n", _code_block("yaml", manifest.safe_estimation)]

    if not manifest.error:
        sections.append("</details>\n")

    return "\n".join(sections)


def render_manifests(manifests: Mapping[Path, Manifest]) -> Optional[str]:
    if not manifests:
        return None

    content = "## Proposal Simulation Manifests\n\n"
    for path in sorted(manifests):
        content += render_manifest(path, manifests[path])

    return content


def count_errors(manifests: Mapping[Path, Manifest]) -> int:
    return sum(1 for manifest in manifests.values() if manifest.error)


def load_manifests(store: "EntityStore") -> dict[Path, Manifest]:
    """
    Every manifest file under the proposals folder, keyed by path relative to the root.
    """
    folder = store.root / store.script_folder
    if not folder.is_dir():
        return {}

    return {
        file.relative_to(store.root): Manifest.model_validate(from_yaml(file.read_text()))
        for file in sorted(folder.glob("**/*.proposal.manifest.yaml"))
    }


def render_safes_table(store: "EntityStore", book: AddressBook) -> str:
    lines = [
        "| Safe | Address | Threshold | Owners | Delegates |",
        "| ---- | ------- | --------- | ------ | --------- |",
    ]
    for entry in sorted(store.safes, key=lambda e: e.entity.name):
        safe = entry.entity
        if entry.deleted or not isinstance(safe, PopulatedSafe):
            continue

        owners = ", ".join(f"`{book.name(owner)}`" for owner in safe.owners)
        delegates = ", ".join(f"`{book.name(d.delegate)}`" for d in safe.delegates)
        lines.append(
            f"| {safe.name} | `{safe.address}` | {safe.threshold}/{len(safe.owners)} "
            f"| {owners} | {delegates or '-'} |"
        )

    return "\n".join(lines) + "\n"


def render_overview(store: "EntityStore", book: AddressBook, title: str) -> str:
    """
    Root ``README.md`` of the repository: one section per Safe with its owners and delegates.
    """
    content = f"# {title}\n\n{render_safes_table(store, book)}"
    for entry in sorted(store.safes, key=lambda e: e.entity.name):
        safe = entry.entity
        if entry.deleted or not safe.description:
            continue

        content += f"\n### {safe.name}\n\n{safe.description}\n"

    return content
