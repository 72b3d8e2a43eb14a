from fastapi import APIRouter, Depends

from api.deps import get_engine
from auth.utils import get_current_user
from db.models import User
from services.adherence_engine import AdherenceEngine

router = APIRouter(tags=["healthscore"])


@router.get("/healthscore")
def get_health_score(
    user: User = Depends(get_current_user),
    engine: AdherenceEngine = Depends(get_engine),
):
    """Recompute today's score (7-day medication window) and return it with the week's history."""
    return engine.health_scores.get_health_score(user.id)
