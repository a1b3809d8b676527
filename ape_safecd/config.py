from typing import Optional

from ape.api import PluginConfig
from pydantic_settings import SettingsConfigDict


class SafeCdConfig(PluginConfig):
    title: str = "safecd"
    """Heading of the generated repository overview (`README.md`)."""

    simulator: str = "forge"
    """Binary used to simulate proposal scripts."""

    script_folder: str = "script"
    """Folder (relative to the repository root) scanned for ``*.proposal.yaml`` files."""

    resync_delay: int = 10
    """Seconds to wait for the transaction service before re-syncing newly proposed txns."""

    transaction_service_url: Optional[str] = None
    """Override the transaction service base URL (defaults to the Safe gateway for the chain)."""

    slack_bot_token: Optional[str] = None
    """Token used to post proposal notifications on Slack."""

    model_config = SettingsConfigDict(env_prefix="APE_SAFECD_")
