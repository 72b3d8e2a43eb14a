from __future__ import annotations

import logging
from datetime import date
from typing import Any

from sqlalchemy.orm import sessionmaker

from db.database import session_scope
from db.models import MedicationAction
from services.adherence_store import AdherenceStore
from services.errors import AlreadyReverted, NotFound

logger = logging.getLogger(__name__)


def _action_to_dict(row: MedicationAction, medication_name: str | None = None) -> dict[str, Any]:
    payload = {
        "id": row.id,
        "medication_id": row.medication_id,
        "previous_taken": bool(row.previous_taken),
        "new_taken": bool(row.new_taken),
        "action_time": row.action_time.isoformat() if row.action_time else None,
        "reverted": bool(row.reverted),
    }
    if medication_name is not None:
        payload["name"] = medication_name
    return payload


class MedicationLedger:
    """Append-only log of taken/not-taken transitions, each revertible once."""

    def __init__(self, session_factory: sessionmaker) -> None:
        self.session_factory = session_factory

    def record_transition(
        self,
        user_id: int,
        medication_id: int,
        previous_taken: bool,
        new_taken: bool,
        *,
        store: AdherenceStore | None = None,
    ) -> dict[str, Any]:
        if bool(previous_taken) == bool(new_taken):
            raise ValueError("A ledger entry needs a change in taken state")
        if store is not None:
            row = store.insert_medication_action(user_id, medication_id, previous_taken, new_taken)
            return _action_to_dict(row)
        with session_scope(self.session_factory) as db:
            row = AdherenceStore(db).insert_medication_action(user_id, medication_id, previous_taken, new_taken)
            payload = _action_to_dict(row)
        logger.info(
            "Medication action logged for medication %s (taken %s -> %s) user %s",
            medication_id,
            previous_taken,
            new_taken,
            user_id,
        )
        return payload

    def update_taken(self, user_id: int, medication_id: int, taken: bool) -> dict[str, Any]:
        """Write a new taken value and ledger the change, in one transaction."""
        with session_scope(self.session_factory) as db:
            store = AdherenceStore(db)
            medication = store.get_medication(user_id, medication_id)
            if medication is None:
                raise NotFound("Medication not found")
            previous = bool(medication.taken)
            action = None
            if previous != bool(taken):
                store.set_taken(medication.id, bool(taken))
                action = self.record_transition(user_id, medication.id, previous, bool(taken), store=store)
            result = {
                "medication_id": medication.id,
                "previous_taken": previous,
                "taken": bool(taken),
                "action": action,
            }
        if action is not None:
            logger.info(
                "Medication action logged for medication %s (taken %s -> %s) user %s",
                medication_id,
                previous,
                taken,
                user_id,
            )
        return result

    def revert(self, user_id: int, action_id: int) -> dict[str, Any]:
        with session_scope(self.session_factory) as db:
            store = AdherenceStore(db)
            action = store.get_medication_action(action_id, user_id)
            if action is None:
                raise NotFound("Action not found")
            if action.reverted:
                raise AlreadyReverted("Action already reverted")
            # conditional update so a concurrent revert of the same action loses cleanly
            if not store.mark_action_reverted(action.id):
                raise AlreadyReverted("Action already reverted")
            store.set_taken(action.medication_id, bool(action.previous_taken))
            payload = {
                "action_id": action.id,
                "medication_id": action.medication_id,
                "taken": bool(action.previous_taken),
                "reverted": True,
            }
        logger.info("Medication action %s reverted by user %s", action_id, user_id)
        return payload

    def list_actions(self, user_id: int, on_date: date | None = None) -> list[dict[str, Any]]:
        with session_scope(self.session_factory) as db:
            return [
                _action_to_dict(action, name)
                for action, name in AdherenceStore(db).list_medication_actions(user_id, on_date)
            ]

    def delete_action(self, user_id: int, action_id: int) -> None:
        with session_scope(self.session_factory) as db:
            if not AdherenceStore(db).delete_medication_action(action_id, user_id):
                raise NotFound("Action not found")
        logger.info("Medication action %s deleted by user %s", action_id, user_id)
