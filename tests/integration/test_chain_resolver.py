"""Integration tests for referral chain resolution."""

import pytest

from app.services.referral.chain_manager import ReferralChainManager
from app.services.referral.config import (
    STOP_CYCLE,
    STOP_INVALID_HANDLE,
    STOP_MISSING_HANDLE,
    STOP_PURCHASER,
    STOP_UNKNOWN_PURCHASER,
    STOP_UNRESOLVABLE,
)
from app.models import Participant


async def resolve(session_maker, purchaser_id: str, depth: int = 3):
    async with session_maker() as session:
        return await ReferralChainManager(session).resolve_chain(purchaser_id, depth)


class TestChainResolution:
    """Chain walks over seeded participants."""

    @pytest.mark.asyncio
    async def test_depth_limited_to_three(self, session_maker, add_participants):
        """Ancestors above generation 3 are ignored."""
        await add_participants(("P", "A"), ("A", "B"), ("B", "C"), ("C", "D"), ("D", None))

        chain = await resolve(session_maker, "P")

        assert chain.beneficiary_ids == ["A", "B", "C"]
        assert [link.generation for link in chain.links] == [1, 2, 3]
        assert chain.stop_reason is None

    @pytest.mark.asyncio
    async def test_short_chain_stops_at_missing_handle(self, session_maker, add_participants):
        """A root participant ends the walk."""
        await add_participants(("P", "A"), ("A", None))

        chain = await resolve(session_maker, "P")

        assert chain.beneficiary_ids == ["A"]
        assert chain.stop_reason == STOP_MISSING_HANDLE

    @pytest.mark.asyncio
    async def test_cycle_stops_before_loop(self, session_maker, add_participants):
        """A and B referring each other yield only A."""
        await add_participants(("P", "A"), ("A", "B"), ("B", "A"))

        chain = await resolve(session_maker, "P")

        assert chain.beneficiary_ids == ["A"]
        assert chain.stop_reason == STOP_CYCLE

    @pytest.mark.asyncio
    async def test_self_referral_excluded(self, session_maker, add_participants):
        """A purchaser never appears in their own chain."""
        await add_participants(("P", "P"))

        chain = await resolve(session_maker, "P")

        assert chain.links == ()
        assert chain.stop_reason == STOP_PURCHASER

    @pytest.mark.asyncio
    async def test_loop_back_to_purchaser(self, session_maker, add_participants):
        """P -> A -> P stops at the purchaser."""
        await add_participants(("P", "A"), ("A", "P"))

        chain = await resolve(session_maker, "P")

        assert chain.beneficiary_ids == ["A"]
        assert "P" not in chain.beneficiary_ids

    @pytest.mark.asyncio
    async def test_longer_loop_drops_closing_ancestor(self, session_maker, add_participants):
        """P -> A -> B -> C -> A records A and B; C closes the loop and is left out."""
        await add_participants(("P", "A"), ("A", "B"), ("B", "C"), ("C", "A"))

        chain = await resolve(session_maker, "P")

        assert chain.beneficiary_ids == ["A", "B"]
        assert chain.stop_reason == STOP_CYCLE

    @pytest.mark.asyncio
    async def test_self_referring_ancestor_left_out(self, session_maker, add_participants):
        """An ancestor naming itself as referrer ends the walk without a slot."""
        await add_participants(("P", "A"), ("A", "B"), ("B", "B"))

        chain = await resolve(session_maker, "P")

        assert chain.beneficiary_ids == ["A"]
        assert chain.stop_reason == STOP_CYCLE

    @pytest.mark.asyncio
    async def test_inactive_ancestor_suppressed(self, session_maker, add_participants):
        """Banned ancestors keep their slot but are suppressed."""
        await add_participants(("P", "A"), ("A", "B"), ("B", None, "banned"))

        chain = await resolve(session_maker, "P")

        assert chain.beneficiary_ids == ["A", "B"]
        assert [link.suppressed for link in chain.links] == [False, True]

    @pytest.mark.asyncio
    async def test_unresolvable_handle(self, session_maker, add_participants):
        """A well-formed handle matching nobody stops the walk."""
        await add_participants(("P", "GHOST"))

        chain = await resolve(session_maker, "P")

        assert chain.links == ()
        assert chain.stop_reason == STOP_UNRESOLVABLE

    @pytest.mark.asyncio
    async def test_malformed_handle(self, session_maker):
        """A pasted link is classified, not followed."""
        async with session_maker() as session:
            async with session.begin():
                session.add(Participant(id="P", handle="h_p", referrer_handle="https://x.io/ref/a"))

        chain = await resolve(session_maker, "P")

        assert chain.links == ()
        assert chain.stop_reason == f"{STOP_INVALID_HANDLE}:url_or_script"

    @pytest.mark.asyncio
    async def test_unknown_purchaser(self, session_maker):
        """Unknown purchasers resolve to an empty chain."""
        chain = await resolve(session_maker, "nobody")
        assert chain.stop_reason == STOP_UNKNOWN_PURCHASER
