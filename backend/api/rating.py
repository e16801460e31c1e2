"""Rating API: own stats, rank and the leaderboard."""

from fastapi import APIRouter, Depends

from backend.api.deps import get_current_user, get_service, to_http_exception
from backend.exceptions import SettlementError
from backend.models.user import User
from backend.schemas.position import LeaderboardEntry, OwnerStatsRead

router = APIRouter(prefix="/api/rating", tags=["rating"])


@router.get("/me", response_model=OwnerStatsRead)
async def my_stats(user: User = Depends(get_current_user), service=Depends(get_service)):
    try:
        return await service.get_owner_stats(user.id)
    except SettlementError as e:
        raise to_http_exception(e)


@router.get("/me/rank")
async def my_rank(user: User = Depends(get_current_user), service=Depends(get_service)):
    try:
        rank = await service.get_rank(user.id)
    except SettlementError as e:
        raise to_http_exception(e)
    return {"user_id": user.id, "rank": rank}


@router.get("/leaderboard", response_model=list[LeaderboardEntry])
async def leaderboard(
    limit: int = 50,
    user: User = Depends(get_current_user),
    service=Depends(get_service),
):
    try:
        users = await service.leaderboard(user.id, limit=min(max(limit, 1), 500))
    except SettlementError as e:
        raise to_http_exception(e)

    # Board is sorted by score desc, so the first index of a score is the
    # number of users strictly above it
    entries = []
    first_index: dict[int, int] = {}
    for i, u in enumerate(users):
        first_index.setdefault(u.rating_score, i)
        entries.append(LeaderboardEntry(
            rank=first_index[u.rating_score] + 1,
            user_id=u.id,
            username=u.username,
            rating_score=u.rating_score,
            total_pnl=u.total_pnl,
            win_rate=u.win_rate,
            trades_count=u.trades_count,
        ))
    return entries
