"""Tests for the vote ledger against a real SQLite database."""

import asyncio
from unittest.mock import AsyncMock, Mock, patch

import pytest
from sqlalchemy import func, select

from forum.app.db.crud import delete_vote as real_delete_vote
from forum.app.db.models import Agent, Comment, Post, Vote
from forum.app.exceptions import (
    ConflictError,
    InconsistencyError,
    InvalidOperationError,
    NotFoundError,
)
from forum.app.services.vote_ledger import (
    TargetType,
    VoteAction,
    VoteDirection,
    VoteLedger,
    plan_vote,
)

UP = VoteDirection.UP
DOWN = VoteDirection.DOWN


@pytest.mark.parametrize(
    ("current", "requested", "result", "action", "delta"),
    [
        (None, UP, UP, VoteAction.UPVOTED, 1),
        (None, DOWN, DOWN, VoteAction.DOWNVOTED, -1),
        (UP, UP, None, VoteAction.REMOVED, -1),
        (DOWN, DOWN, None, VoteAction.REMOVED, 1),
        (DOWN, UP, UP, VoteAction.CHANGED, 2),
        (UP, DOWN, DOWN, VoteAction.CHANGED, -2),
    ],
)
def test_plan_vote_transitions(current, requested, result, action, delta):
    transition = plan_vote(current, requested)
    assert transition.result is result
    assert transition.action is action
    assert transition.score_delta == delta
    assert transition.karma_delta == delta


def test_tally_deltas_on_flip():
    transition = plan_vote(UP, DOWN)
    assert transition.upvotes_delta == -1
    assert transition.downvotes_delta == 1


def test_parse_rejects_unknown_values():
    with pytest.raises(InvalidOperationError):
        TargetType.parse("user")
    with pytest.raises(InvalidOperationError):
        VoteDirection.parse("sideways")


def test_from_signed():
    assert VoteDirection.from_signed(1) is UP
    assert VoteDirection.from_signed(-1) is DOWN
    with pytest.raises(ValueError):
        VoteDirection.from_signed(0)


def test_max_attempts_must_be_positive():
    with pytest.raises(ValueError):
        VoteLedger(Mock(), max_attempts=0)


async def _post_score(session_maker, post_id):
    async with session_maker() as session:
        return (await session.get(Post, post_id)).score


async def _karma(session_maker, agent_id):
    async with session_maker() as session:
        return (await session.get(Agent, agent_id)).karma


async def _comment(session_maker, comment_id):
    async with session_maker() as session:
        return await session.get(Comment, comment_id)


async def _vote_count(session_maker):
    async with session_maker() as session:
        return await session.scalar(select(func.count()).select_from(Vote))


class TestVoteLedger:

    @pytest.fixture
    def ledger(self, session_maker):
        return VoteLedger(session_maker, max_attempts=3)

    @pytest.mark.asyncio
    async def test_upvote_then_toggle_off(self, ledger, session_maker, seeded):
        first = await ledger.upvote_post(seeded["post"], seeded["bob"])
        assert first.action is VoteAction.UPVOTED
        assert first.message == "Upvoted!"
        assert first.author_name == "alice"
        assert first.score == 1
        assert await _karma(session_maker, seeded["alice"]) == 1

        second = await ledger.upvote_post(seeded["post"], seeded["bob"])
        assert second.action is VoteAction.REMOVED
        assert second.message == "Vote removed!"
        assert await _post_score(session_maker, seeded["post"]) == 0
        assert await _karma(session_maker, seeded["alice"]) == 0
        assert await _vote_count(session_maker) == 0

    @pytest.mark.asyncio
    async def test_flip_moves_by_two(self, ledger, session_maker, seeded):
        await ledger.downvote_post(seeded["post"], seeded["bob"])
        assert await _post_score(session_maker, seeded["post"]) == -1

        outcome = await ledger.upvote_post(seeded["post"], seeded["bob"])
        assert outcome.action is VoteAction.CHANGED
        assert outcome.message == "Vote changed!"
        assert outcome.karma_delta == 2
        assert await _post_score(session_maker, seeded["post"]) == 1
        assert await _karma(session_maker, seeded["alice"]) == 1
        assert await _vote_count(session_maker) == 1

    @pytest.mark.asyncio
    async def test_comment_tallies_follow_votes(self, ledger, session_maker, seeded):
        await ledger.upvote_comment(seeded["comment"], seeded["bob"])
        comment = await _comment(session_maker, seeded["comment"])
        assert (comment.score, comment.upvotes, comment.downvotes) == (1, 1, 0)

        await ledger.downvote_comment(seeded["comment"], seeded["bob"])
        comment = await _comment(session_maker, seeded["comment"])
        assert (comment.score, comment.upvotes, comment.downvotes) == (-1, 0, 1)

        await ledger.downvote_comment(seeded["comment"], seeded["bob"])
        comment = await _comment(session_maker, seeded["comment"])
        assert (comment.score, comment.upvotes, comment.downvotes) == (0, 0, 0)
        assert await _karma(session_maker, seeded["alice"]) == 0

    @pytest.mark.asyncio
    async def test_post_and_comment_votes_are_separate(self, ledger, session_maker, seeded):
        await ledger.upvote_post(seeded["post"], seeded["bob"])
        await ledger.upvote_comment(seeded["comment"], seeded["bob"])
        assert await _vote_count(session_maker) == 2
        assert await _karma(session_maker, seeded["alice"]) == 2

    @pytest.mark.asyncio
    async def test_self_vote_rejected(self, ledger, session_maker, seeded):
        with pytest.raises(InvalidOperationError, match="own content"):
            await ledger.upvote_post(seeded["post"], seeded["alice"])
        assert await _vote_count(session_maker) == 0
        assert await _post_score(session_maker, seeded["post"]) == 0

    @pytest.mark.asyncio
    async def test_missing_target(self, ledger, seeded):
        with pytest.raises(NotFoundError, match="Post not found"):
            await ledger.upvote_post("nope", seeded["bob"])
        with pytest.raises(NotFoundError, match="Comment not found"):
            await ledger.upvote_comment("nope", seeded["bob"])

    @pytest.mark.asyncio
    async def test_invalid_target_type(self, ledger, seeded):
        with pytest.raises(InvalidOperationError, match="Invalid target type"):
            await ledger.vote(seeded["post"], "user", seeded["bob"], "up")

    @pytest.mark.asyncio
    async def test_get_vote_and_get_votes(self, ledger, seeded):
        assert await ledger.get_vote(seeded["bob"], seeded["post"], TargetType.POST) is None

        await ledger.upvote_post(seeded["post"], seeded["bob"])
        await ledger.downvote_comment(seeded["comment"], seeded["bob"])

        assert await ledger.get_vote(seeded["bob"], seeded["post"], "post") is UP
        votes = await ledger.get_votes(
            seeded["bob"],
            [
                (seeded["post"], TargetType.POST),
                (seeded["comment"], TargetType.COMMENT),
                ("missing", TargetType.COMMENT),
            ],
        )
        assert votes == {seeded["post"]: UP, seeded["comment"]: DOWN}
        assert await ledger.get_votes(seeded["bob"], []) == {}

    @pytest.mark.asyncio
    async def test_lost_race_is_retried(self, ledger, session_maker, seeded):
        await ledger.upvote_post(seeded["post"], seeded["bob"])

        calls = []

        async def flaky_delete(session, vote_id, expected):
            calls.append(vote_id)
            if len(calls) == 1:
                return False
            return await real_delete_vote(session, vote_id, expected)

        with patch("forum.app.services.vote_ledger.delete_vote", side_effect=flaky_delete) as mock:
            outcome = await ledger.upvote_post(seeded["post"], seeded["bob"])

        assert mock.await_count == 2
        assert outcome.action is VoteAction.REMOVED
        assert await _post_score(session_maker, seeded["post"]) == 0
        assert await _karma(session_maker, seeded["alice"]) == 0

    @pytest.mark.asyncio
    async def test_conflict_after_max_attempts(self, ledger, session_maker, seeded):
        await ledger.upvote_post(seeded["post"], seeded["bob"])

        with patch(
            "forum.app.services.vote_ledger.delete_vote",
            new=AsyncMock(return_value=False),
        ) as mock:
            with pytest.raises(ConflictError):
                await ledger.upvote_post(seeded["post"], seeded["bob"])

        assert mock.await_count == 3
        assert await _post_score(session_maker, seeded["post"]) == 1
        assert await _vote_count(session_maker) == 1

    @pytest.mark.asyncio
    async def test_counter_failure_rolls_back_vote(self, ledger, session_maker, seeded):
        with patch(
            "forum.app.services.vote_ledger.apply_karma_delta",
            new=AsyncMock(return_value=None),
        ):
            with pytest.raises(InconsistencyError):
                await ledger.upvote_post(seeded["post"], seeded["bob"])

        assert await _vote_count(session_maker) == 0
        assert await _post_score(session_maker, seeded["post"]) == 0
        assert await _karma(session_maker, seeded["alice"]) == 0

    @pytest.mark.asyncio
    async def test_concurrent_votes_on_same_target_stay_consistent(
        self, ledger, session_maker, seeded
    ):
        results = await asyncio.gather(
            *(ledger.upvote_post(seeded["post"], seeded["bob"]) for _ in range(6)),
            return_exceptions=True,
        )

        failures = [r for r in results if isinstance(r, Exception)]
        assert all(isinstance(f, ConflictError) for f in failures), failures

        applied = [r.action for r in results if not isinstance(r, Exception)]
        assert set(applied) <= {VoteAction.UPVOTED, VoteAction.REMOVED}

        # Applied one at a time, the toggles alternate from "no vote"
        votes = await _vote_count(session_maker)
        assert votes == applied.count(VoteAction.UPVOTED) - applied.count(VoteAction.REMOVED)
        assert votes in (0, 1)
        assert await _post_score(session_maker, seeded["post"]) == votes
        assert await _karma(session_maker, seeded["alice"]) == votes
