from dataclasses import dataclass
from functools import cached_property
from typing import TYPE_CHECKING, Optional, Union

import requests
from ape.logging import logger
from eth_utils import keccak, to_hex

from .exceptions import NotificationError
from .types import (
    ChildOfProposal,
    FunctionCallProposal,
    PopulatedSafe,
    Transaction,
)
from .utils import to_yaml

if TYPE_CHECKING:
    from .report import AddressBook
    from .store import EntityStore

AnyProposal = Union[FunctionCallProposal, ChildOfProposal]

SLACK_API_URL = "https://slack.com/api"
SAFE_APP_TX_URL = "https://app.safe.global/transactions/tx"


class SlackChannel:
    """
    Posts (or updates in place) messages through the Slack Web API.
    """

    def __init__(self, token: str, base_url: str = SLACK_API_URL):
        self.token = token
        self.base_url = base_url

    @cached_property
    def session(self) -> requests.Session:
        session = requests.Session()
        session.headers.update(
            {
                "Authorization": f"Bearer {self.token}",
                "Content-Type": "application/json; charset=utf-8",
            }
        )
        return session

    def notify(self, body: dict, channel: str, message_id: Optional[str] = None) -> str:
        """
        Returns:
            str: The message ID (``ts``) to store for future updates.
        """
        if message_id is None:
            method, payload = "chat.postMessage", {"channel": channel, **body}

        else:
            method, payload = "chat.update", {"channel": channel, "ts": message_id, **body}

        response = self.session.post(f"{self.base_url}/{method}", json=payload, timeout=10)
        data = response.json() if response.content else {}
        if not response.ok or not data.get("ok"):
            raise NotificationError(f"Slack '{method}' failed: {data.get('error', response.text)}")

        return data.get("ts") or message_id or ""


def get_rejection(store: "EntityStore", transaction: Transaction) -> Optional[Transaction]:
    for other in store.get_transactions(transaction.safe):
        if (
            other.nonce == transaction.nonce
            and other.safe_tx_hash != transaction.safe_tx_hash
            and other.is_rejection
        ):
            return other

    return None


def notification_hash(
    proposal: AnyProposal,
    transaction: Transaction,
    rejection: Optional[Transaction],
    threshold: int,
) -> str:
    hashable = proposal.model_dump(
        by_alias=True, mode="json", exclude_none=True, exclude={"notifications"}
    )
    content = (
        to_yaml(hashable)
        + to_yaml(transaction.model_dump(by_alias=True, mode="json", exclude_none=True))
        + to_yaml(
            rejection.model_dump(by_alias=True, mode="json", exclude_none=True)
            if rejection
            else {}
        )
        + f"THRESHOLD={threshold}"
    )
    return to_hex(keccak(text=content)).lower()


def get_status(
    transaction: Transaction, rejection: Optional[Transaction], safe: PopulatedSafe
) -> tuple[str, str]:
    if rejection is not None and rejection.executed:
        return "Proposal was rejected onchain", "#e03b24"

    elif transaction.executed:
        return "Proposal was executed onchain", "#0275d8"

    elif len(transaction.confirmations) >= safe.threshold:
        return "Proposal is ready to be executed", "#64a338"

    return "Proposal is not ready to be executed", "#ffcc00"


def _icons(count: int, threshold: int, icon: str) -> str:
    return icon * count + "⬜" * max(threshold - count, 0)


def _section(text: str) -> dict:
    return {"type": "section", "text": {"type": "mrkdwn", "text": text}}


def _fields(*texts: str) -> dict:
    return {"type": "section", "fields": [{"type": "mrkdwn", "text": t} for t in texts]}


def safe_tx_link(chain_prefix: str, transaction: Transaction) -> str:
    return (
        f"{SAFE_APP_TX_URL}?safe={chain_prefix}:{transaction.safe}"
        f"&id=multisig_{transaction.safe}_{transaction.safe_tx_hash}"
    )


def format_message(
    proposal: AnyProposal,
    transaction: Transaction,
    rejection: Optional[Transaction],
    safe: PopulatedSafe,
    book: "AddressBook",
    chain_prefix: str,
) -> dict:
    status, color = get_status(transaction, rejection, safe)
    signed = [book.name(c.owner) for c in transaction.confirmations]
    rejected = [book.name(c.owner) for c in rejection.confirmations] if rejection else []
    missing = [
        book.name(owner)
        for owner in safe.owners
        if not transaction.has_confirmation_from(owner)
        and not (rejection and rejection.has_confirmation_from(owner))
    ]
    finished = transaction.executed or (rejection is not None and rejection.executed)

    blocks: list[dict] = [_section(f"<!here> *{proposal.title}*\n\n{proposal.description or ''}")]
    blocks.append({"type": "divider"})
    if not finished:
        blocks.append(
            _fields(
                f"<{safe_tx_link(chain_prefix, transaction)}|✅ *Click to approve* ✅>",
                f"<{safe_tx_link(chain_prefix, rejection or transaction)}"
                "|❌ *Click to reject* ❌>",
            )
        )
        blocks.append({"type": "divider"})

    blocks.append(
        _section(
            "*Missing Signers*:\n"
            + (f"`{'`, `'.join(missing)}`" if missing else "All signers have signed")
        )
    )
    blocks.append(
        _fields(
            "*Confirmations:*\n" + _icons(len(signed), safe.threshold, "✅"),
            "*Signers*:\n" + (f"`{'`, `'.join(signed)}`" if signed else "No confirmations"),
        )
    )
    if rejection is not None:
        blocks.append(
            _fields(
                "*Rejections:*\n" + _icons(len(rejected), safe.threshold, "❌"),
                "*Signers*:\n" + (f"`{'`, `'.join(rejected)}`" if rejected else "No rejections"),
            )
        )

    blocks += [
        {"type": "divider"},
        _fields(
            f"*From*:\n`{book.name(transaction.safe)}`",
            f"*To*:\n`{book.name(transaction.to)}`",
        ),
        _fields(
            f"*Value:*\n{int(transaction.value) / 1e18} ETH", f"*Nonce:*\n{transaction.nonce}"
        ),
        _section(f"*Data*:\n```\n{transaction.data or '0x'}\n```"),
    ]
    return {
        "text": f"{status}: {proposal.title}",
        "blocks": [{"type": "context", "elements": [{"type": "plain_text", "text": status}]}],
        "attachments": [{"color": color, "blocks": blocks}],
        "unfurl_links": False,
        "unfurl_media": False,
    }


class NotificationSyncer:
    """
    Keeps the Slack message of every submitted proposal up to date with its
    transaction, and stops tracking it once executed or rejected.
    """

    def __init__(
        self,
        store: "EntityStore",
        channel: SlackChannel,
        book: "AddressBook",
        chain_prefix: str = "eth",
    ):
        self.store = store
        self.channel = channel
        self.book = book
        self.chain_prefix = chain_prefix

    def sync(self):
        logger.info("Syncing notifications")
        for index in range(len(self.store.proposals)):
            entry = self.store.proposals[index]
            proposal = entry.entity
            if (
                entry.deleted
                or not proposal.safe_tx_hash
                or not proposal.notifications
                or not proposal.notifications.slack
            ):
                continue

            transaction = self.store.get_transaction_by_hash(proposal.safe_tx_hash)
            safe = self.store.resolve_safe(proposal.safe)
            if transaction is None or not isinstance(safe, PopulatedSafe):
                continue

            self.notify(index, proposal, transaction, safe)

    def notify(
        self, index: int, proposal: AnyProposal, transaction: Transaction, safe: PopulatedSafe
    ):
        assert proposal.notifications is not None  # NOTE: mypy happy
        rejection = get_rejection(self.store, transaction)
        digest = notification_hash(proposal, transaction, rejection, safe.threshold)
        finished = transaction.executed or (rejection is not None and rejection.executed)

        updated = []
        for message in proposal.notifications.slack:
            if message.hash and message.hash.lower() == digest:
                updated.append(message)
                continue

            body = format_message(
                proposal, transaction, rejection, safe, self.book, self.chain_prefix
            )
            try:
                message_id = self.channel.notify(body, message.channel, message.message)

            except (NotificationError, requests.RequestException) as err:
                logger.error(f"Slack notification to '{message.channel}' failed: {err}")
                updated.append(message)
                continue

            logger.info(f"Notified '{message.channel}' about {proposal.safe_tx_hash}")
            if not finished:
                updated.append(message.model_copy(update={"message": message_id, "hash": digest}))

        notifications = proposal.notifications.model_copy(update={"slack": updated})
        self.store.write_proposal(
            index, proposal.model_copy(update={"notifications": notifications})
        )


def parse_users(users: str) -> list[tuple[str, str]]:
    """
    Parse ``EOA_NAME:SLACK_ID;EOA_NAME:SLACK_ID``. Fields after the Slack ID
    (e.g. a timezone) are ignored.
    """
    parsed = []
    for item in filter(None, (part.strip() for part in users.split(";"))):
        name, _, rest = item.partition(":")
        slack_id = rest.split(":", 1)[0]
        if not name or not slack_id:
            raise ValueError(f"Invalid user '{item}', expected 'EOA_NAME:SLACK_ID'.")

        parsed.append((name, slack_id))

    return parsed


@dataclass
class Reminder:
    name: str
    slack_id: str
    proposals: list[AnyProposal]
    body: dict


def format_reminder(
    slack_id: str,
    proposals: list[AnyProposal],
    store: "EntityStore",
    book: "AddressBook",
    chain_prefix: str,
) -> dict:
    blocks = [
        _section(f"Hey <@{slack_id}>, {len(proposals)} proposal(s) are waiting for your signature:")
    ]
    for proposal in proposals:
        assert proposal.safe_tx_hash is not None  # NOTE: only submitted proposals are pending
        transaction = store.get_transaction_by_hash(proposal.safe_tx_hash)
        safe = store.resolve_safe(proposal.safe)
        title = (
            f"<{safe_tx_link(chain_prefix, transaction)}|{proposal.title}>"
            if transaction
            else proposal.title
        )
        blocks.append(
            _fields(
                f"*{title}*",
                f"*Safe*:\n`{book.name(safe.address) if safe else proposal.safe}`"
                + (f" (nonce {transaction.nonce})" if transaction else ""),
            )
        )

    return {
        "text": f"{len(proposals)} proposal(s) awaiting your signature",
        "blocks": blocks,
        "unfurl_links": False,
        "unfurl_media": False,
    }


class ReminderSender:
    """
    Sends each owner a direct Slack message listing the submitted proposals
    still waiting for their signature.
    """

    def __init__(self, store: "EntityStore", book: "AddressBook", chain_prefix: str = "eth"):
        self.store = store
        self.book = book
        self.chain_prefix = chain_prefix

    def collect(self, users: list[tuple[str, str]]) -> list[Reminder]:
        reminders = []
        for name, slack_id in users:
            if (eoa := self.store.get_eoa_by_name(name)) is None:
                logger.warning(f"No EOA named '{name}', skipping its reminder.")
                continue

            if proposals := self.store.get_pending_proposals_by_owner(eoa.address):
                body = format_reminder(
                    slack_id, proposals, self.store, self.book, self.chain_prefix
                )
                reminders.append(Reminder(name, slack_id, proposals, body))

        return reminders

    def send(self, channel: SlackChannel, reminders: list[Reminder]) -> int:
        sent = 0
        for reminder in reminders:
            try:
                channel.notify(reminder.body, reminder.slack_id)

            except (NotificationError, requests.RequestException) as err:
                logger.error(f"Reminder to '{reminder.name}' failed: {err}")
                continue

            logger.info(f"Reminded '{reminder.name}' of {len(reminder.proposals)} proposal(s)")
            sent += 1

        return sent
