import json
import re
import shlex
import shutil
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from ape.logging import logger
from ape.types import AddressType

from .exceptions import BroadcastManifestNotFoundError, SimulationError
from .types import PlannedTransaction

ANSI_ESCAPE = re.compile(r"\x1b\[[0-9;]*[A-Za-z]")


def no_color(text: str) -> str:
    return ANSI_ESCAPE.sub("", text or "")


def clean_output(stdout: str) -> str:
    """
    Keep only the execution traces of a ``forge script`` run.
    """
    start = stdout.find("Traces:")
    end = stdout.find("SIMULATION COMPLETE")
    if start == -1:
        return stdout

    return stdout[start:end] if end > start else stdout[start:]


@dataclass
class SimulationResult:
    command: str
    output: str
    error_output: str = ""
    transactions: list[PlannedTransaction] = field(default_factory=list)


class Simulator(Protocol):
    def simulate(
        self, script: Path, sender: AddressType, function: str, arguments: list[str]
    ) -> SimulationResult: ...


class ForgeSimulator:
    """
    Runs a proposal script against a fork with ``forge script`` and reads back
    the calls it planned from the dry-run broadcast file.
    """

    def __init__(self, fork_url: str, chain_id: int, root: Path, binary: str = "forge"):
        self.fork_url = fork_url
        self.chain_id = chain_id
        self.root = root
        self.binary = binary

    def build_command(
        self, script: Path, sender: AddressType, function: str, arguments: list[str]
    ) -> list[str]:
        return [
            shutil.which(self.binary) or self.binary,
            "script",
            f"{script}:Proposal",
            "--sender",
            sender,
            "--fork-url",
            self.fork_url,
            "--sig",
            function.replace("'", ""),
            "-vvvvv",
            *arguments,
        ]

    def broadcast_path(self, script: Path, function: str) -> Path:
        function_name = function.split("(", 1)[0]
        return (
            self.root
            / "broadcast"
            / script.name
            / str(self.chain_id)
            / "dry-run"
            / f"{function_name}-latest.json"
        )

    def simulate(
        self, script: Path, sender: AddressType, function: str, arguments: list[str]
    ) -> SimulationResult:
        """
        Raises:
            :class:`~ape_safecd.exceptions.SimulationError`: ``forge`` failed.
            :class:`~ape_safecd.exceptions.BroadcastManifestNotFoundError`: No
              broadcast file was produced.
        """
        args = self.build_command(script, sender, function, arguments)
        command = shlex.join(args)
        logger.info(f"Simulating: {command}")
        try:
            completed = subprocess.run(
                args, cwd=self.root, capture_output=True, text=True, check=False
            )

        except OSError as err:
            raise SimulationError(command, stderr=str(err)) from err

        stdout = no_color(completed.stdout)
        stderr = no_color(completed.stderr)
        if completed.returncode != 0:
            raise SimulationError(command, stdout=stdout, stderr=stderr)

        manifest_path = self.broadcast_path(script, function)
        if not manifest_path.is_file():
            raise BroadcastManifestNotFoundError(
                command, manifest_path, stdout=clean_output(stdout), stderr=stderr
            )

        broadcast = json.loads(manifest_path.read_text())
        return SimulationResult(
            command=command,
            output=clean_output(stdout),
            error_output=stderr,
            transactions=[
                PlannedTransaction.model_validate(tx) for tx in broadcast.get("transactions", [])
            ],
        )
