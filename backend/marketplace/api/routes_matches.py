from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from marketplace.api.deps import Caller, get_current_user
from marketplace.db import get_db
from marketplace.schemas.match_schema import AcceptRelayIn, CreateMatchIn, MatchOut, StatusIn
from marketplace.services.match_service import MatchService
from marketplace.services.relay_service import RelayService

router = APIRouter(prefix="/api/matches", tags=["matches"])


@router.post("", status_code=201, summary="Propose to carry a package")
def create_match(
    payload: CreateMatchIn,
    caller: Caller = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    match = MatchService(db).create(caller.id, caller.role, payload.package_id, payload.ride_id, payload.price)
    return {"success": True, "match": MatchOut.model_validate(match).dump()}


@router.get("", summary="Matches on my packages or my rides")
def list_matches(
    status: Optional[str] = None,
    caller: Caller = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return [MatchOut.model_validate(m).dump() for m in MatchService(db).list_for_user(caller.id, status)]


@router.get("/{match_id}")
def get_match(match_id: int, caller: Caller = Depends(get_current_user), db: Session = Depends(get_db)):
    return MatchOut.model_validate(MatchService(db).get_for_user(match_id, caller.id)).dump()


@router.post("/{match_id}/accept")
def accept_match(match_id: int, caller: Caller = Depends(get_current_user), db: Session = Depends(get_db)):
    match = MatchService(db).accept(match_id, caller.id, caller.role)
    return {"success": True, "match": MatchOut.model_validate(match).dump()}


@router.post("/{match_id}/status", summary="Update delivery status")
def update_status(
    match_id: int,
    payload: StatusIn,
    caller: Caller = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    match = MatchService(db).update_status(match_id, caller.id, caller.role, payload.status)
    return {"success": True, "match": MatchOut.model_validate(match).dump()}


@router.post("/{match_id}/accept-relay")
def accept_relay(
    match_id: int,
    payload: Optional[AcceptRelayIn] = None,
    caller: Caller = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    code = payload.transfer_code if payload else None
    match = RelayService(db).accept_relay(match_id, caller.id, transfer_code=code)
    return {"match": MatchOut.model_validate(match).dump()}
