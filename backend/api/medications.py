from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from api.deps import get_engine
from auth.utils import get_current_user
from db.models import User
from services.adherence_engine import AdherenceEngine

router = APIRouter(tags=["medications"])


class TakenUpdate(BaseModel):
    taken: bool


@router.put("/medications/{medication_id}/taken")
def update_medication_taken(
    medication_id: int,
    payload: TakenUpdate,
    user: User = Depends(get_current_user),
    engine: AdherenceEngine = Depends(get_engine),
):
    return engine.ledger.update_taken(user.id, medication_id, payload.taken)


@router.get("/medications/reminders")
def due_medication_reminders(
    user: User = Depends(get_current_user),
    engine: AdherenceEngine = Depends(get_engine),
):
    """Medications due within the reminder lookahead window."""
    return engine.reminders.due_for_user(user.id)


@router.get("/medication-actions")
def list_medication_actions(
    on_date: Optional[date] = Query(None, alias="date"),
    user: User = Depends(get_current_user),
    engine: AdherenceEngine = Depends(get_engine),
):
    return engine.ledger.list_actions(user.id, on_date=on_date)


@router.post("/medication-actions/{action_id}/revert")
def revert_medication_action(
    action_id: int,
    user: User = Depends(get_current_user),
    engine: AdherenceEngine = Depends(get_engine),
):
    result = engine.ledger.revert(user.id, action_id)
    return {"status": "ok", "message": "Action reverted", **result}


@router.delete("/medication-actions/{action_id}")
def delete_medication_action(
    action_id: int,
    user: User = Depends(get_current_user),
    engine: AdherenceEngine = Depends(get_engine),
):
    engine.ledger.delete_action(user.id, action_id)
    return {"status": "ok", "message": "Action deleted"}
