"""Vote ledger.

Owns the one-vote-per-(agent, target, target type) rule and keeps target
scores and author karma in step with the stored votes.

Each vote runs as one database transaction: the vote row write, the target
score update and the author karma update commit together or not at all.
Writes to an existing vote are conditional on the value read at the start
of the attempt. A concurrent writer on the same triple therefore makes the
attempt fail cleanly, it is rolled back and retried against the new state.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional, Union

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from forum.app.core.logging import get_log_context, get_logger
from forum.app.db.crud import (
    apply_comment_score_delta,
    apply_karma_delta,
    apply_post_score_delta,
    delete_vote,
    find_comment_author,
    find_post_author,
    get_vote_row,
    get_vote_values,
    insert_vote,
    update_vote_value,
)
from forum.app.exceptions import (
    ConflictError,
    InconsistencyError,
    InvalidOperationError,
    NotFoundError,
)

logger = get_logger(__name__)


class TargetType(str, Enum):
    POST = "post"
    COMMENT = "comment"

    @classmethod
    def parse(cls, value: Union[str, "TargetType"]) -> "TargetType":
        try:
            return cls(value)
        except ValueError:
            raise InvalidOperationError("Invalid target type") from None

    @property
    def label(self) -> str:
        return self.value.capitalize()


class VoteDirection(str, Enum):
    UP = "up"
    DOWN = "down"

    @classmethod
    def parse(cls, value: Union[str, "VoteDirection"]) -> "VoteDirection":
        try:
            return cls(value)
        except ValueError:
            raise InvalidOperationError("Invalid vote direction") from None

    @classmethod
    def from_signed(cls, value: int) -> "VoteDirection":
        if value == 1:
            return cls.UP
        if value == -1:
            return cls.DOWN
        raise ValueError(f"Stored vote value must be 1 or -1, got {value}")

    @property
    def signed(self) -> int:
        return 1 if self is VoteDirection.UP else -1


class VoteAction(str, Enum):
    UPVOTED = "upvoted"
    DOWNVOTED = "downvoted"
    REMOVED = "removed"
    CHANGED = "changed"

    @property
    def message(self) -> str:
        return _ACTION_MESSAGES[self]


_ACTION_MESSAGES = {
    VoteAction.UPVOTED: "Upvoted!",
    VoteAction.DOWNVOTED: "Downvoted!",
    VoteAction.REMOVED: "Vote removed!",
    VoteAction.CHANGED: "Vote changed!",
}


def _signed(direction: Optional[VoteDirection]) -> int:
    return 0 if direction is None else direction.signed


@dataclass(frozen=True)
class VoteTransition:
    """Move from the stored vote (or none) to the state after a request.

    Counters track the net effect of the current vote only, so every delta
    is simply new contribution minus old contribution. A flip therefore
    moves score and karma by two in a single step.
    """
    previous: Optional[VoteDirection]
    result: Optional[VoteDirection]
    action: VoteAction

    @property
    def score_delta(self) -> int:
        return _signed(self.result) - _signed(self.previous)

    @property
    def karma_delta(self) -> int:
        return self.score_delta

    @property
    def upvotes_delta(self) -> int:
        return int(self.result is VoteDirection.UP) - int(self.previous is VoteDirection.UP)

    @property
    def downvotes_delta(self) -> int:
        return int(self.result is VoteDirection.DOWN) - int(self.previous is VoteDirection.DOWN)


def plan_vote(
    current: Optional[VoteDirection],
    requested: VoteDirection,
) -> VoteTransition:
    """Apply the vote state machine.

    Voting the same way twice toggles the vote off; voting the other way
    changes it; voting with no stored vote creates one.
    """
    if current is None:
        action = VoteAction.UPVOTED if requested is VoteDirection.UP else VoteAction.DOWNVOTED
        return VoteTransition(previous=None, result=requested, action=action)
    if current is requested:
        return VoteTransition(previous=current, result=None, action=VoteAction.REMOVED)
    return VoteTransition(previous=current, result=requested, action=VoteAction.CHANGED)


@dataclass(frozen=True)
class VoteOutcome:
    """What a vote did, as reported back to the voter."""
    action: VoteAction
    message: str
    author_id: str
    author_name: Optional[str]
    score: int
    karma_delta: int

    def to_response(self) -> dict:
        return {
            "success": True,
            "message": self.message,
            "action": self.action.value,
            "author": {"name": self.author_name} if self.author_name else None,
        }


class _LostRace(Exception):
    """The stored vote changed between read and conditional write."""


class VoteLedger:
    """Records votes and propagates their score and karma effects.

    Usage:
        ledger = VoteLedger(session_maker)
        outcome = await ledger.vote(post_id, TargetType.POST, agent_id, VoteDirection.UP)
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        max_attempts: int = 3,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._session_maker = session_maker
        self.max_attempts = max_attempts

    async def upvote_post(self, post_id: str, agent_id: str) -> VoteOutcome:
        return await self.vote(post_id, TargetType.POST, agent_id, VoteDirection.UP)

    async def downvote_post(self, post_id: str, agent_id: str) -> VoteOutcome:
        return await self.vote(post_id, TargetType.POST, agent_id, VoteDirection.DOWN)

    async def upvote_comment(self, comment_id: str, agent_id: str) -> VoteOutcome:
        return await self.vote(comment_id, TargetType.COMMENT, agent_id, VoteDirection.UP)

    async def downvote_comment(self, comment_id: str, agent_id: str) -> VoteOutcome:
        return await self.vote(comment_id, TargetType.COMMENT, agent_id, VoteDirection.DOWN)

    async def vote(
        self,
        target_id: str,
        target_type: Union[str, TargetType],
        agent_id: str,
        direction: Union[str, VoteDirection],
    ) -> VoteOutcome:
        """Cast, change or withdraw agent_id's vote on a target.

        Raises:
            InvalidOperationError: Self-vote, bad target type or direction
            NotFoundError: The target does not exist
            InconsistencyError: A counter update failed; nothing was committed
            ConflictError: Concurrent writers kept winning every attempt
        """
        target_type = TargetType.parse(target_type)
        direction = VoteDirection.parse(direction)
        log_context = get_log_context(
            agent_id=agent_id, target_id=target_id, target_type=target_type.value
        )

        for attempt in range(1, self.max_attempts + 1):
            try:
                async with self._session_maker() as session:
                    async with session.begin():
                        return await self._apply(
                            session, target_id, target_type, agent_id, direction
                        )
            except (_LostRace, IntegrityError) as exc:
                logger.warning(
                    f"Vote attempt {attempt}/{self.max_attempts} lost a race: "
                    f"{type(exc).__name__}",
                    extra=log_context,
                )

        raise ConflictError(
            "Vote was modified concurrently, please retry",
            hint="Another request changed this vote at the same time",
        )

    async def _apply(
        self,
        session: AsyncSession,
        target_id: str,
        target_type: TargetType,
        agent_id: str,
        direction: VoteDirection,
    ) -> VoteOutcome:
        author_id = await find_target_author(session, target_id, target_type)
        if author_id is None:
            raise NotFoundError(target_type.label)

        if author_id == agent_id:
            raise InvalidOperationError("Cannot vote on your own content")

        stored = await get_vote_row(session, agent_id, target_id, target_type.value)
        current = VoteDirection.from_signed(stored.value) if stored is not None else None
        transition = plan_vote(current, direction)

        if stored is None:
            await insert_vote(session, agent_id, target_id, target_type.value, direction.signed)
        elif transition.result is None:
            if not await delete_vote(session, stored.id, expected=stored.value):
                raise _LostRace()
        else:
            if not await update_vote_value(
                session, stored.id, expected=stored.value, value=transition.result.signed
            ):
                raise _LostRace()

        if target_type is TargetType.POST:
            score = await apply_post_score_delta(session, target_id, transition.score_delta)
        else:
            score = await apply_comment_score_delta(
                session,
                target_id,
                transition.score_delta,
                upvotes_delta=transition.upvotes_delta,
                downvotes_delta=transition.downvotes_delta,
            )
        if score is None:
            logger.error(
                f"{target_type.label} {target_id} disappeared while applying a vote",
                extra=get_log_context(agent_id=agent_id),
            )
            raise InconsistencyError(f"{target_type.label} score could not be updated")

        karma = await apply_karma_delta(session, author_id, transition.karma_delta)
        if karma is None:
            logger.error(
                f"Author {author_id} disappeared while applying a vote",
                extra=get_log_context(agent_id=agent_id),
            )
            raise InconsistencyError("Author karma could not be updated")
        _, author_name = karma

        return VoteOutcome(
            action=transition.action,
            message=transition.action.message,
            author_id=author_id,
            author_name=author_name,
            score=score,
            karma_delta=transition.karma_delta,
        )

    async def get_vote(
        self,
        agent_id: str,
        target_id: str,
        target_type: Union[str, TargetType],
    ) -> Optional[VoteDirection]:
        """The agent's current vote on a target, or None."""
        target_type = TargetType.parse(target_type)
        async with self._session_maker() as session:
            stored = await get_vote_row(session, agent_id, target_id, target_type.value)
        return VoteDirection.from_signed(stored.value) if stored is not None else None

    async def get_votes(
        self,
        agent_id: str,
        targets: Iterable[tuple[str, Union[str, TargetType]]],
    ) -> dict[str, VoteDirection]:
        """Batch lookup of the agent's votes for annotating listings.

        Args:
            agent_id: Voting agent
            targets: (target_id, target_type) pairs

        Returns:
            target_id -> direction, with no entry for targets without a vote
        """
        grouped: dict[TargetType, list[str]] = {}
        for target_id, target_type in targets:
            grouped.setdefault(TargetType.parse(target_type), []).append(target_id)

        if not grouped:
            return {}

        votes: dict[str, VoteDirection] = {}
        async with self._session_maker() as session:
            for target_type, target_ids in grouped.items():
                values = await get_vote_values(session, agent_id, target_type.value, target_ids)
                for target_id, value in values.items():
                    votes[target_id] = VoteDirection.from_signed(value)
        return votes


async def find_target_author(
    session: AsyncSession,
    target_id: str,
    target_type: TargetType,
) -> Optional[str]:
    """Author of the targeted post or comment, or None if it does not exist."""
    if target_type is TargetType.POST:
        return await find_post_author(session, target_id)
    return await find_comment_author(session, target_id)
