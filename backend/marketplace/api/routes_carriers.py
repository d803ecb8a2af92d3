from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from marketplace.api.deps import Caller, require_roles
from marketplace.db import get_db
from marketplace.models.user import UserRole
from marketplace.schemas.relay_schema import RelayCarrierOut, RelayProposalOut
from marketplace.services.relay_service import RelayService

router = APIRouter(prefix="/api/carriers", tags=["carriers"])


@router.get("/available-for-relay", summary="Carriers a package can be handed over to")
def available_for_relay(
    caller: Caller = Depends(require_roles([UserRole.CARRIER])),
    db: Session = Depends(get_db),
):
    entries = RelayService(db).available_carriers(caller.id, caller.role)
    return [RelayCarrierOut.from_entry(e).dump() for e in entries]


@router.get("/relay-proposals", summary="Relay segments waiting for the caller to pick up")
def relay_proposals(
    caller: Caller = Depends(require_roles([UserRole.CARRIER])),
    db: Session = Depends(get_db),
):
    entries = RelayService(db).relay_proposals(caller.id, caller.role)
    return [RelayProposalOut.from_entry(e).dump() for e in entries]
