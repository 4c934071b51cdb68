"""One-way mapping from internal user IDs to opaque participant IDs"""

import secrets
from datetime import datetime
from typing import Optional

import structlog
from pydantic import BaseModel, ConfigDict

from rwe_governance.clock import Clock, utcnow
from rwe_governance.database.store import KeyedStore, InMemoryKeyedStore
from rwe_governance.exceptions import ValidationError

logger = structlog.get_logger(__name__)

PARTICIPANT_ID_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"


class ParticipantMapping(BaseModel):
    """Stored mapping row; never leaves the mapper"""

    model_config = ConfigDict(frozen=True)

    user_id: str
    participant_id: str
    created_at: datetime


def generate_participant_id() -> str:
    """
    Random opaque participant ID of the form P-XXXX-XXXX-XXXX-XXXX

    Drawn from the ``secrets`` CSPRNG; no input is hashed, so the ID carries
    no information about the user it stands for.
    """
    groups = [
        "".join(secrets.choice(PARTICIPANT_ID_ALPHABET) for _ in range(4))
        for _ in range(4)
    ]
    return "P-" + "-".join(groups)


class ParticipantIdentityMapper:
    """
    Resolves a user to a stable participant ID.

    The mapper owns its store and exposes no way to go from a participant ID
    back to a user. Research-facing components receive participant IDs only.
    """

    def __init__(self, store: Optional[KeyedStore] = None, clock: Clock = utcnow):
        """
        Initialize the mapper

        Args:
            store: Private keyed store for mappings (in-memory if omitted)
            clock: Callable returning the current time
        """
        self._store = store if store is not None else InMemoryKeyedStore("participant_mappings")
        self._clock = clock

    def get_or_create(self, user_id: str) -> str:
        """
        Participant ID of a user, created on first use

        Args:
            user_id: Internal user ID

        Returns:
            Opaque participant ID
        """
        if not user_id:
            raise ValidationError("user_id is required")

        with self._store.locked(user_id):
            existing = self._store.get(user_id)
            if existing is not None:
                return existing.participant_id

            mapping = ParticipantMapping(
                user_id=user_id,
                participant_id=generate_participant_id(),
                created_at=self._clock(),
            )
            self._store.put(user_id, mapping, expected_version=0)

        logger.info("participant_mapping_created", participant_id=mapping.participant_id)
        return mapping.participant_id

    def lookup(self, user_id: str) -> Optional[str]:
        """Participant ID of a user, without creating one"""
        existing = self._store.get(user_id)
        return existing.participant_id if existing else None

    def __repr__(self) -> str:
        return "ParticipantIdentityMapper()"
