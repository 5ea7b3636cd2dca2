"""
Referral chain management module.

Resolves the ancestor chain of a purchaser by following referrer handles
up to REFERRAL_DEPTH generations. Read-only: the only output is the
ResolvedChain, which the ledger writer stores as the event's snapshot.
"""

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.enums import ParticipantStatus
from app.models.participant import Participant
from app.repositories.participant_repository import ParticipantRepository
from app.services.referral.config import (
    REFERRAL_DEPTH,
    STOP_CYCLE,
    STOP_INVALID_HANDLE,
    STOP_MISSING_HANDLE,
    STOP_PURCHASER,
    STOP_UNKNOWN_PURCHASER,
    STOP_UNRESOLVABLE,
)
from app.services.referral.types import ChainLink, ResolvedChain
from app.validators.referral_handle import validate_referrer_handle


class ReferralChainManager:
    """Manages referral chain resolution."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize chain manager."""
        self.session = session
        self.participant_repo = ParticipantRepository(session)
        self._by_handle: dict[str, Participant | None] = {}

    async def _lookup_referrer(
        self, participant: Participant
    ) -> tuple[Participant | None, str | None]:
        """
        Resolve a participant's referrer handle.

        Returns:
            Tuple of (referrer, stop_reason); exactly one is None
        """
        if participant.referrer_handle is None or not participant.referrer_handle.strip():
            return None, STOP_MISSING_HANDLE

        is_valid, handle, error = validate_referrer_handle(participant.referrer_handle)
        if not is_valid:
            return None, f"{STOP_INVALID_HANDLE}:{error}"

        if handle not in self._by_handle:
            self._by_handle[handle] = await self.participant_repo.get_by_handle(handle)
        referrer = self._by_handle[handle]
        if referrer is None:
            return None, STOP_UNRESOLVABLE
        return referrer, None

    async def resolve_chain(
        self, purchaser_id: str, depth: int = REFERRAL_DEPTH
    ) -> ResolvedChain:
        """
        Resolve the referral chain above a purchaser.

        The walk stops at the first missing, invalid or unresolvable
        handle, at the purchaser, or at a participant already recorded.
        A candidate whose own referrer points back into the recorded
        chain (or at itself) closes a loop and is not recorded either.
        Loops are therefore cut one step early. P -> A -> B -> A records
        only A, and P -> A -> B -> C -> A records A and B but not C.
        An ancestor that names itself as referrer is never recorded.
        Inactive and banned ancestors are recorded as suppressed.

        Args:
            purchaser_id: Purchasing participant ID
            depth: Maximum generations to walk

        Returns:
            ResolvedChain with at most ``depth`` links
        """
        purchaser = await self.participant_repo.get_by_id(purchaser_id)
        if purchaser is None:
            return ResolvedChain(purchaser_id, (), STOP_UNKNOWN_PURCHASER)

        links: list[ChainLink] = []
        recorded: set[str] = set()
        current = purchaser
        stop_reason: str | None = None

        for generation in range(1, depth + 1):
            candidate, stop_reason = await self._lookup_referrer(current)
            if candidate is None:
                break

            if candidate.id == purchaser_id:
                stop_reason = STOP_PURCHASER
                break

            if candidate.id in recorded:
                stop_reason = STOP_CYCLE
                break

            # A referrer that loops back into the walk is part of the cycle
            next_referrer, _ = await self._lookup_referrer(candidate)
            if next_referrer is not None and (
                next_referrer.id in recorded or next_referrer.id == candidate.id
            ):
                stop_reason = STOP_CYCLE
                logger.debug(
                    "Referral loop closes at candidate, walk stopped",
                    extra={
                        "purchaser_id": purchaser_id,
                        "generation": generation,
                        "candidate_id": candidate.id,
                        "loops_to": next_referrer.id,
                    },
                )
                break

            suppressed = candidate.status != ParticipantStatus.ACTIVE
            if suppressed:
                logger.warning(
                    "Suppressed ancestor in referral chain",
                    extra={
                        "purchaser_id": purchaser_id,
                        "generation": generation,
                        "beneficiary_id": candidate.id,
                        "status": candidate.status,
                    },
                )

            links.append(ChainLink(generation, candidate.id, suppressed))
            recorded.add(candidate.id)
            current = candidate

        if stop_reason is not None:
            logger.debug(
                f"Referral chain walk stopped: {stop_reason}",
                extra={
                    "purchaser_id": purchaser_id,
                    "generation": len(links) + 1,
                    "stop_reason": stop_reason,
                },
            )

        logger.debug(
            "Referral chain resolved",
            extra={
                "purchaser_id": purchaser_id,
                "depth": depth,
                "chain_length": len(links),
            },
        )

        return ResolvedChain(purchaser_id, tuple(links), stop_reason)
