"""
Sales CRM - Rotation des leads (AssignmentRotator)

Round-robin par anciennete de derniere attribution:
l'employe dont `last_lead_assigned` est le plus ancien (ou jamais attribue)
recoit le lead suivant. Egalite -> ordre des `id`.

ATOMIQUE: la selection est un compare-and-set sur `last_lead_assigned`.
Le curseur n'est avance que s'il vaut encore la valeur lue; sinon un autre
appel concurrent a deja pris cet employe et on relit.
"""

import logging
from datetime import datetime
from typing import Optional, List

from pymongo import ReturnDocument

from config import now_iso, strip_id
from models import User
from services.errors import (
    NoEligibleAssigneeError,
    ConflictError,
    check_deadline,
    storage_errors,
)

logger = logging.getLogger("assignment_rotator")

ELIGIBLE_QUERY = {"role": "employee", "is_active": {"$ne": False}}

MAX_ASSIGN_ATTEMPTS = 10


def rotation_key(user: dict):
    # Jamais attribue passe en premier
    cursor = user.get("last_lead_assigned")
    return (cursor is not None, cursor or "", user.get("id", ""))


class AssignmentRotator:

    def __init__(self, db):
        self.db = db

    async def _load_candidates(self) -> List[dict]:
        employees = await self.db.users.find(
            ELIGIBLE_QUERY,
            {"_id": 0, "password": 0}
        ).to_list(1000)
        return sorted(employees, key=rotation_key)

    @storage_errors("assignment.assign_next")
    async def assign_next(self, deadline: Optional[datetime] = None) -> User:
        """
        Selectionne le prochain employe et avance son curseur.

        Raises:
            NoEligibleAssigneeError si aucun employe actif
            ConflictError si la course est perdue MAX_ASSIGN_ATTEMPTS fois
        """
        check_deadline(deadline, "assign_next")

        for attempt in range(MAX_ASSIGN_ATTEMPTS):
            candidates = await self._load_candidates()
            if not candidates:
                raise NoEligibleAssigneeError("Aucun employé disponible pour l'attribution")

            for candidate in candidates:
                observed = candidate.get("last_lead_assigned")
                claimed = strip_id(await self.db.users.find_one_and_update(
                    {
                        "id": candidate["id"],
                        "role": "employee",
                        "last_lead_assigned": observed,
                    },
                    {"$set": {"last_lead_assigned": now_iso()}},
                    return_document=ReturnDocument.AFTER,
                ), "password")
                if claimed:
                    logger.info(
                        f"[ROTATION] Lead -> {claimed.get('name') or claimed['id']} "
                        f"(previous={observed}, attempt={attempt + 1})"
                    )
                    return User(**claimed)

                # Curseur deja avance par un appel concurrent: candidat suivant
                logger.debug(f"[ROTATION] CAS perdu sur {candidate['id']}")

        raise ConflictError("assign_next: trop de conflits concurrents")

    @storage_errors("assignment.peek")
    async def peek_order(self) -> List[User]:
        """Ordre de rotation actuel, sans effet de bord"""
        return [User(**u) for u in await self._load_candidates()]
