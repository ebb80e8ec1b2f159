"""Resolve a human-supplied recipient identifier into a destination."""

import logging
import re
from dataclasses import asdict, dataclass
from typing import Optional

from gaslesspay.errors import RecipientResolutionError, ValidationError
from gaslesspay.ledger.database import Database
from gaslesspay.ledger.repository import LedgerRepository

logger = logging.getLogger(__name__)

ADDRESS_PATTERN = re.compile(r"^0x[a-fA-F0-9]{40}$")


def is_address(value: str) -> bool:
    return bool(ADDRESS_PATTERN.match(value))


@dataclass(frozen=True)
class ResolvedRecipient:
    """Where a transfer should go, and whether that is a platform user."""

    address: str
    internal: bool
    user_id: Optional[int] = None
    username: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


class RecipientResolver:
    """Turns a username, email or address into a ResolvedRecipient."""

    def __init__(self, db: Database):
        self.db = db

    async def resolve(self, identifier: str) -> ResolvedRecipient:
        """Resolve an identifier.

        A well-formed address always resolves; it is internal only when a
        local account claims it. Usernames and emails must match an account
        that has a smart account provisioned.

        Raises:
            RecipientResolutionError: No account matches the username/email
            ValidationError: Matched account has no smart account
        """
        identifier = (identifier or "").strip()
        if not identifier:
            raise ValidationError("Recipient identifier is required")

        async with self.db.session() as session:
            repo = LedgerRepository(session)

            if is_address(identifier):
                user = await repo.find_user_by_address(identifier)
                return ResolvedRecipient(
                    address=identifier,
                    internal=user is not None,
                    user_id=user.id if user else None,
                    username=user.username if user else None,
                )

            user = await repo.find_user_by_login(identifier)
            if user is None:
                raise RecipientResolutionError(identifier)

            if not user.smart_account_address:
                raise ValidationError(
                    f"Recipient {user.username} is not wallet-enabled (no smart account set up)"
                )

            logger.debug(f"Resolved {identifier} to user {user.id}")
            return ResolvedRecipient(
                address=user.smart_account_address,
                internal=True,
                user_id=user.id,
                username=user.username,
            )
