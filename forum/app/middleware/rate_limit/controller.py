"""Admission decisions on top of the sliding window log."""

import hashlib
import math
from typing import Mapping, Optional

from forum.app.core.config import Settings, settings
from forum.app.core.logging import get_logger
from forum.app.middleware.rate_limit.models import (
    ActionClass,
    AdmissionDecision,
    RateLimit,
)
from forum.app.middleware.rate_limit.store import WindowCounterStore

logger = get_logger(__name__)

ANONYMOUS_IDENTITY = "anonymous"


def limits_from_settings(config: Settings = settings) -> dict[ActionClass, RateLimit]:
    """Build the per-class limits from configuration."""
    return {
        ActionClass.REQUESTS: RateLimit(
            config.rate_limit_requests_max, config.rate_limit_requests_window_seconds
        ),
        ActionClass.POSTS: RateLimit(
            config.rate_limit_posts_max, config.rate_limit_posts_window_seconds
        ),
        ActionClass.COMMENTS: RateLimit(
            config.rate_limit_comments_max, config.rate_limit_comments_window_seconds
        ),
    }


def caller_identity(agent_id: Optional[str], client_ip: Optional[str]) -> str:
    """Resolve the identity a caller is counted under.

    An authenticated agent wins, then the network origin, then a shared
    anonymous bucket. Only a token that resolved to an agent reaches here as
    agent_id, so unknown tokens are counted against their address.
    """
    if agent_id:
        return f"agent:{agent_id}"
    if client_ip:
        return "ip:" + hashlib.sha256(client_ip.encode()).hexdigest()[:32]
    return ANONYMOUS_IDENTITY


def rate_limit_key(action_class: ActionClass, identity: str) -> str:
    return f"rl:{action_class.value}:{identity}"


class AdmissionController:
    """Decides admit/reject per (caller, action class).

    Sliding window log: a caller is admitted while fewer than max_requests
    of its events fall inside the trailing window. Only admitted checks are
    recorded.
    """

    def __init__(
        self,
        store: WindowCounterStore,
        limits: Optional[Mapping[ActionClass, RateLimit]] = None,
    ):
        self.store = store
        self.limits: dict[ActionClass, RateLimit] = dict(
            limits if limits is not None else limits_from_settings()
        )

    @property
    def longest_window(self) -> int:
        return max(limit.window_seconds for limit in self.limits.values())

    def limit_for(self, action_class: ActionClass) -> RateLimit:
        try:
            return self.limits[action_class]
        except KeyError:
            raise ValueError(f"Unknown rate limit type: {action_class}") from None

    def check(self, key: str, limit: RateLimit) -> AdmissionDecision:
        """Check key against limit, recording the event if it is admitted."""
        window = self.store.record_and_count(
            key, limit.window_seconds, limit.max_requests
        )
        now = window.now

        allowed = window.count < limit.max_requests
        remaining = max(0, limit.max_requests - window.count - (1 if allowed else 0))

        if window.oldest is not None:
            reset_at = window.oldest + limit.window_seconds
        else:
            reset_at = now + limit.window_seconds

        retry_after = 0 if allowed else math.ceil(reset_at - now)

        return AdmissionDecision(
            allowed=allowed,
            limit=limit.max_requests,
            remaining=remaining,
            reset_at=reset_at,
            retry_after=retry_after,
        )

    def check_action(self, identity: str, action_class: ActionClass) -> AdmissionDecision:
        """Check identity against the configured quota of action_class."""
        key = rate_limit_key(action_class, identity)
        decision = self.check(key, self.limit_for(action_class))
        if not decision.allowed:
            logger.info(
                f"Rate limit exceeded for {action_class.value}",
                extra={"rate_limit_key": key, "retry_after": decision.retry_after},
            )
        return decision
