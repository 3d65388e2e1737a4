"""Audit trail and asset lock API endpoints.

Read-only views over what the bots decided and did, plus lock maintenance.
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import get_session
from ..repositories import Repositories, build_repositories
from ..services import AssetLockManager

router = APIRouter()


def get_lock_manager(request: Request) -> AssetLockManager:
    """Lock manager built by the application lifespan."""
    return request.app.state.lock_manager


async def _repos_for_bot(session: AsyncSession, bot_id: int) -> Repositories:
    repos = build_repositories(session)
    if await repos.bots.get(bot_id) is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Bot with id {bot_id} not found"
        )
    return repos


@router.get("/bots/{bot_id}/decisions")
async def get_decisions(
    bot_id: int,
    limit: int = Query(100, ge=1, le=1000),
    session: AsyncSession = Depends(get_session),
):
    """Swap decisions of a bot, most recent first. One per evaluation tick."""
    repos = await _repos_for_bot(session, bot_id)
    decisions = await repos.audit.list_decisions(bot_id, limit=limit)
    return [decision.to_dict() for decision in decisions]


@router.get("/bots/{bot_id}/trades")
async def get_trades(
    bot_id: int,
    limit: int = Query(100, ge=1, le=1000),
    session: AsyncSession = Depends(get_session),
):
    """Trades of a bot with their steps, most recent first."""
    repos = await _repos_for_bot(session, bot_id)
    trades = await repos.trades.list_for_bot(bot_id, limit=limit)
    return [trade.to_dict() for trade in trades]


@router.get("/bots/{bot_id}/missed-trades")
async def get_missed_trades(
    bot_id: int,
    limit: int = Query(100, ge=1, le=1000),
    session: AsyncSession = Depends(get_session),
):
    """Favorable rotations that did not happen, with reason codes."""
    repos = await _repos_for_bot(session, bot_id)
    missed = await repos.audit.list_missed_trades(bot_id, limit=limit)
    return [entry.to_dict() for entry in missed]


@router.get("/bots/{bot_id}/deviations")
async def get_deviations(
    bot_id: int,
    target_coin: Optional[str] = None,
    limit: int = Query(100, ge=1, le=1000),
    session: AsyncSession = Depends(get_session),
):
    """Per-candidate deviations recorded at each tick, most recent first."""
    repos = await _repos_for_bot(session, bot_id)
    deviations = await repos.audit.list_deviations(
        bot_id, target_coin=target_coin.strip().upper() if target_coin else None, limit=limit
    )
    return [deviation.to_dict() for deviation in deviations]


@router.get("/bots/{bot_id}/snapshots")
async def get_snapshots(
    bot_id: int,
    reset_epoch: Optional[int] = None,
    include_retired: bool = False,
    session: AsyncSession = Depends(get_session),
):
    """Coin snapshots of a bot and the units it holds per coin.

    Args:
        bot_id: Bot ID
        reset_epoch: Limit to one epoch, defaults to all epochs
        include_retired: Include snapshots retired by resets
    """
    repos = await _repos_for_bot(session, bot_id)
    snapshots = await repos.snapshots.list_snapshots(
        bot_id, reset_epoch=reset_epoch, include_retired=include_retired
    )
    trackers = await repos.snapshots.list_trackers(bot_id)
    return {
        "snapshots": [snapshot.to_dict() for snapshot in snapshots],
        "units": {tracker.coin: tracker.units for tracker in trackers},
    }


@router.get("/locks")
async def get_active_locks(
    account_id: Optional[str] = None,
    lock_manager: AssetLockManager = Depends(get_lock_manager),
):
    """Unexpired asset locks, optionally for one exchange account."""
    locks = await lock_manager.list_active(account_id=account_id)
    return [lock.to_dict() for lock in locks]


@router.post("/locks/cleanup")
async def cleanup_locks(lock_manager: AssetLockManager = Depends(get_lock_manager)):
    """Release every expired lock now."""
    released = await lock_manager.cleanup_expired()
    return {"released": released}


@router.get("/trades/reconciliation")
async def get_trades_needing_reconciliation(session: AsyncSession = Depends(get_session)):
    """Trades whose legs stopped part way or whose outcome is unknown."""
    trades = await build_repositories(session).trades.list_needing_reconciliation()
    return [trade.to_dict() for trade in trades]


@router.get("/trades/attempts/{attempt_id}")
async def get_trade_by_attempt(attempt_id: str, session: AsyncSession = Depends(get_session)):
    """Look up a trade by the attempt id its client order ids derive from."""
    trade = await build_repositories(session).trades.get_by_attempt(attempt_id)
    if trade is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No trade recorded for attempt {attempt_id}"
        )
    return trade.to_dict()
