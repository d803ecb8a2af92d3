from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from marketplace.api.deps import Caller, get_current_user
from marketplace.db import get_db
from marketplace.schemas.match_schema import MatchOut, PackageOut, StatusIn
from marketplace.schemas.relay_schema import CreateRelayIn, RelayRecord
from marketplace.schemas.tracking_schema import (
    CheckpointIn,
    TimelineEntry,
    TrackingEventOut,
    TrackingOut,
)
from marketplace.services.match_service import MatchService
from marketplace.services.relay_service import RelayService
from marketplace.services.tracking_service import TrackingService

router = APIRouter(prefix="/api/packages", tags=["packages"])


@router.post("/{package_id}/create-relay", status_code=201, summary="Hand the package over to another carrier")
def create_relay(
    package_id: int,
    payload: CreateRelayIn,
    caller: Caller = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    transfer = RelayService(db).create_relay(
        package_id,
        caller.id,
        payload.dropoff_location,
        payload.next_carrier_id,
        transfer_code=payload.transfer_code,
        estimated_arrival=payload.estimated_arrival,
        notes=payload.notes,
    )
    return RelayRecord.from_event(transfer, caller.id).dump()


@router.get("/{package_id}/relay-history")
def relay_history(package_id: int, caller: Caller = Depends(get_current_user), db: Session = Depends(get_db)):
    return [RelayRecord.from_event(ev, caller.id).dump() for ev in RelayService(db).relay_history(package_id, caller.id)]


@router.post("/{package_id}/checkpoints", status_code=201)
def add_checkpoint(
    package_id: int,
    payload: CheckpointIn,
    caller: Caller = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    event = TrackingService(db).add_checkpoint(
        package_id, caller.id, payload.location, notes=payload.notes, lat=payload.lat, lng=payload.lng
    )
    return TrackingEventOut.model_validate(event).dump()


@router.get("/{package_id}/checkpoints")
def list_checkpoints(package_id: int, caller: Caller = Depends(get_current_user), db: Session = Depends(get_db)):
    events = TrackingService(db).list_checkpoints(package_id, caller.id)
    return [TrackingEventOut.model_validate(ev).dump() for ev in events]


@router.get("/{package_id}/tracking")
def get_tracking(package_id: int, caller: Caller = Depends(get_current_user), db: Session = Depends(get_db)):
    view = TrackingService(db).get_tracking(package_id, caller.id)
    return TrackingOut(
        package=PackageOut.model_validate(view.package),
        timeline=[TimelineEntry.model_validate(e) for e in view.timeline],
        active_match=MatchOut.model_validate(view.active_match) if view.active_match else None,
        checkpoints_count=view.checkpoints_count,
        estimated_delivery=view.estimated_delivery,
    ).dump()


@router.post("/{package_id}/status", summary="Update delivery status in package terms")
def update_package_status(
    package_id: int,
    payload: StatusIn,
    caller: Caller = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    match = MatchService(db).update_package_status(package_id, caller.id, caller.role, payload.status)
    return {"success": True, "match": MatchOut.model_validate(match).dump()}
