"""Bot management router."""

from datetime import datetime
from typing import List, Optional
from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, Field, field_validator
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import get_session, Bot, BotStatus, ResetType
from ..services import (
    BotNotFoundError,
    BotScheduler,
    InvalidResetError,
    PriceUnavailableError,
    SettlementError,
)

router = APIRouter()


# Pydantic schemas
class BotCreate(BaseModel):
    """Schema for creating a bot."""
    name: str = Field(..., min_length=1, max_length=255)
    account_id: str = Field(default="default", min_length=1, max_length=100)
    coins: List[str] = Field(..., min_length=2)
    initial_coin: str = Field(..., min_length=1, max_length=20)
    initial_units: float = Field(..., gt=0)
    reference_coin: str = Field(default="USDT", min_length=1, max_length=20)
    preferred_stablecoin: str = Field(default="USDT", min_length=1, max_length=20)
    threshold_percentage: float = Field(default=10.0, gt=0)
    global_threshold_percentage: float = Field(default=10.0, ge=0, le=100)
    use_take_profit: bool = False
    take_profit_percentage: Optional[float] = Field(default=None, gt=0)
    unit_gain_tolerance_percent: float = Field(default=0.0, ge=0, le=100)
    commission_rate: float = Field(default=0.002, ge=0, lt=1)
    manual_budget_amount: Optional[float] = Field(default=None, gt=0)
    check_interval_seconds: int = Field(default=300, ge=1)
    is_dry_run: bool = True

    @field_validator("name")
    @classmethod
    def name_not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("name must not be blank")
        return value


class BotUpdate(BaseModel):
    """Schema for updating a bot's configuration."""
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    coins: Optional[List[str]] = Field(default=None, min_length=2)
    threshold_percentage: Optional[float] = Field(default=None, gt=0)
    global_threshold_percentage: Optional[float] = Field(default=None, ge=0, le=100)
    use_take_profit: Optional[bool] = None
    take_profit_percentage: Optional[float] = Field(default=None, gt=0)
    unit_gain_tolerance_percent: Optional[float] = Field(default=None, ge=0, le=100)
    commission_rate: Optional[float] = Field(default=None, ge=0, lt=1)
    manual_budget_amount: Optional[float] = Field(default=None, gt=0)
    check_interval_seconds: Optional[int] = Field(default=None, ge=1)
    enabled: Optional[bool] = None


class BotResponse(BaseModel):
    """Schema for bot response."""
    id: int
    name: str
    account_id: str
    coins: List[str]
    initial_coin: str
    initial_units: float
    current_coin: Optional[str]
    reference_coin: str
    preferred_stablecoin: str
    threshold_percentage: float
    global_threshold_percentage: float
    use_take_profit: bool
    take_profit_percentage: Optional[float]
    unit_gain_tolerance_percent: float
    commission_rate: float
    manual_budget_amount: Optional[float]
    global_peak_value: float
    total_commissions_paid: float
    reset_count: int
    check_interval_seconds: int
    is_dry_run: bool
    enabled: bool
    status: str
    last_check_time: Optional[datetime]
    created_at: datetime
    updated_at: datetime
    started_at: Optional[datetime]

    class Config:
        from_attributes = True


class TickResponse(BaseModel):
    """Schema for a manual tick result."""
    bot_id: int
    outcome: str
    swap_performed: bool
    trade_id: Optional[int]
    reason: str
    error: Optional[str]


class ResetRequest(BaseModel):
    """Schema for a reset request."""
    reset_type: ResetType = ResetType.SOFT
    sell_to_stablecoin: bool = False


class ResetResponse(BaseModel):
    """Schema for a recorded reset."""
    id: int
    bot_id: int
    reset_type: str
    previous_coin: Optional[str]
    previous_global_peak: float
    previous_reset_count: int
    sold_to_stablecoin: bool
    liquidation_trade_id: Optional[int]
    created_at: datetime

    class Config:
        from_attributes = True


def get_scheduler(request: Request) -> BotScheduler:
    """Scheduler built by the application lifespan."""
    return request.app.state.scheduler


def _normalize_coins(coins: List[str]) -> List[str]:
    normalized = []
    for coin in coins:
        symbol = coin.strip().upper()
        if symbol and symbol not in normalized:
            normalized.append(symbol)
    return normalized


async def _get_bot_or_404(session: AsyncSession, bot_id: int) -> Bot:
    result = await session.execute(select(Bot).where(Bot.id == bot_id))
    bot = result.scalar_one_or_none()

    if not bot:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Bot with id {bot_id} not found"
        )
    return bot


@router.get("", response_model=List[BotResponse])
async def list_bots(
    session: AsyncSession = Depends(get_session),
    status_filter: Optional[BotStatus] = None,
    skip: int = 0,
    limit: int = 100,
):
    """List all bots with optional filtering."""
    query = select(Bot).order_by(Bot.id)
    if status_filter:
        query = query.where(Bot.status == status_filter)
    query = query.offset(skip).limit(limit)

    result = await session.execute(query)
    return result.scalars().all()


@router.get("/running", response_model=List[int])
async def list_running_bots(scheduler: BotScheduler = Depends(get_scheduler)):
    """Ids of bots whose tick loop is active in this process."""
    return scheduler.registry.running_bot_ids()


@router.post("", response_model=BotResponse, status_code=status.HTTP_201_CREATED)
async def create_bot(
    bot_data: BotCreate,
    session: AsyncSession = Depends(get_session),
):
    """Create a new bot."""
    coins = _normalize_coins(bot_data.coins)
    initial_coin = bot_data.initial_coin.strip().upper()

    if len(coins) < 2:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="A bot needs at least two distinct coins"
        )
    if initial_coin not in coins:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Initial coin {initial_coin} is not one of the bot's coins"
        )
    if bot_data.use_take_profit and bot_data.take_profit_percentage is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="take_profit_percentage is required when use_take_profit is enabled"
        )

    bot = Bot(
        name=bot_data.name,
        account_id=bot_data.account_id,
        coins=coins,
        initial_coin=initial_coin,
        initial_units=bot_data.initial_units,
        reference_coin=bot_data.reference_coin.strip().upper(),
        preferred_stablecoin=bot_data.preferred_stablecoin.strip().upper(),
        threshold_percentage=bot_data.threshold_percentage,
        global_threshold_percentage=bot_data.global_threshold_percentage,
        use_take_profit=bot_data.use_take_profit,
        take_profit_percentage=bot_data.take_profit_percentage,
        unit_gain_tolerance_percent=bot_data.unit_gain_tolerance_percent,
        commission_rate=bot_data.commission_rate,
        manual_budget_amount=bot_data.manual_budget_amount,
        check_interval_seconds=bot_data.check_interval_seconds,
        is_dry_run=bot_data.is_dry_run,
        status=BotStatus.CREATED,
    )

    session.add(bot)
    await session.commit()
    await session.refresh(bot)
    return bot


@router.get("/{bot_id}", response_model=BotResponse)
async def get_bot(
    bot_id: int,
    session: AsyncSession = Depends(get_session),
):
    """Get a specific bot by ID."""
    return await _get_bot_or_404(session, bot_id)


@router.put("/{bot_id}", response_model=BotResponse)
async def update_bot(
    bot_id: int,
    bot_data: BotUpdate,
    session: AsyncSession = Depends(get_session),
):
    """Update a bot configuration. Bot must not be running."""
    bot = await _get_bot_or_404(session, bot_id)

    if bot.status == BotStatus.RUNNING:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Cannot update a running bot. Stop it first."
        )

    update_data = bot_data.model_dump(exclude_unset=True)
    if "coins" in update_data:
        coins = _normalize_coins(update_data["coins"])
        held = bot.current_coin or bot.initial_coin
        if held not in coins:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Coins must include the held coin {held}"
            )
        update_data["coins"] = coins

    for field, value in update_data.items():
        setattr(bot, field, value)

    await session.commit()
    await session.refresh(bot)
    return bot


@router.delete("/{bot_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_bot(
    bot_id: int,
    session: AsyncSession = Depends(get_session),
):
    """Delete a bot and its history. Bot must not be running."""
    bot = await _get_bot_or_404(session, bot_id)

    if bot.status == BotStatus.RUNNING:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Cannot delete a running bot. Stop it first."
        )

    await session.delete(bot)
    await session.commit()


@router.post("/{bot_id}/start", response_model=BotResponse)
async def start_bot(
    bot_id: int,
    session: AsyncSession = Depends(get_session),
    scheduler: BotScheduler = Depends(get_scheduler),
):
    """Start a bot's tick loop."""
    try:
        started = await scheduler.start_bot(bot_id)
    except BotNotFoundError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Bot with id {bot_id} not found"
        )

    if not started:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Bot is already running or disabled"
        )

    return await _get_bot_or_404(session, bot_id)


@router.post("/{bot_id}/stop", response_model=BotResponse)
async def stop_bot(
    bot_id: int,
    session: AsyncSession = Depends(get_session),
    scheduler: BotScheduler = Depends(get_scheduler),
):
    """Stop a bot. An in-flight tick is allowed to finish."""
    if not await scheduler.stop_bot(bot_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Bot with id {bot_id} not found"
        )

    return await _get_bot_or_404(session, bot_id)


@router.post("/{bot_id}/tick", response_model=TickResponse)
async def tick_bot(
    bot_id: int,
    scheduler: BotScheduler = Depends(get_scheduler),
):
    """Run one evaluation tick now, serialized with the bot's loop."""
    try:
        result = await scheduler.run_tick(bot_id)
    except BotNotFoundError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Bot with id {bot_id} not found"
        )

    return TickResponse(
        bot_id=result.bot_id,
        outcome=result.outcome,
        swap_performed=result.swap_performed,
        trade_id=result.trade_id,
        reason=result.reason,
        error=result.error,
    )


@router.post("/{bot_id}/reset", response_model=ResetResponse)
async def reset_bot(
    bot_id: int,
    reset_data: Optional[ResetRequest] = None,
    scheduler: BotScheduler = Depends(get_scheduler),
):
    """Start a new snapshot epoch. A hard reset also returns the bot to its initial coin.

    With sell_to_stablecoin the held coin is first sold to the bot's
    preferred stablecoin, and a failed sale leaves the bot unreset.
    """
    reset_data = reset_data or ResetRequest()
    try:
        event = await scheduler.reset_bot(
            bot_id, reset_data.reset_type, sell_to_stablecoin=reset_data.sell_to_stablecoin
        )
    except BotNotFoundError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Bot with id {bot_id} not found"
        )
    except InvalidResetError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e)
        )
    except PriceUnavailableError as e:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Cannot price the sale to stablecoin: {e}"
        )
    except SettlementError as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Sale to stablecoin failed, bot not reset: {e}"
        )
    return event
