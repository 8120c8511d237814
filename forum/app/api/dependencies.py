"""Dependencies resolving the long-lived services built at startup."""

from typing import Annotated

from fastapi import Depends, Request

from forum.app.services.vote_ledger import VoteLedger


def get_vote_ledger(request: Request) -> VoteLedger:
    return request.app.state.vote_ledger


LedgerDep = Annotated[VoteLedger, Depends(get_vote_ledger)]
