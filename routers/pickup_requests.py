from typing import Optional

from fastapi import APIRouter, HTTPException

from dependencies import LifecycleDep
from schemas import (
    Message,
    Pagination,
    PickupRequestCreate,
    PickupRequestDetailEnvelope,
    PickupRequestEnvelope,
    PickupRequestList,
    PickupRequestStatusUpdate,
    page_window,
)
from .auth import CurrentUserDep

router = APIRouter(tags=["pickup-requests"])

# Status words the web client sends, mapped to stored request statuses.
STATUS_ALIASES = {
    "confirmed": "approved",
    "declined": "rejected",
}


@router.post("", response_model=PickupRequestEnvelope)
def create_pickup_request(
    request_data: PickupRequestCreate,
    current: CurrentUserDep,
    lifecycle: LifecycleDep,
):
    if request_data.donation_id is None:
        raise HTTPException(status_code=400, detail="Donation ID is required")

    pickup_request = lifecycle.create_pickup_request(
        current.id,
        request_data.donation_id,
        message=request_data.message,
        pickup_time=request_data.pickup_time,
    )
    return PickupRequestEnvelope(
        message="Pickup request created successfully",
        pickup_request=pickup_request,
    )


@router.get("", response_model=PickupRequestList)
def list_pickup_requests(
    current: CurrentUserDep,
    lifecycle: LifecycleDep,
    type: str = "sent",
    status: Optional[str] = None,
    limit: int = 10,
    offset: int = 0,
):
    """
    type=sent lists requests the caller made; type=received lists requests
    made against the caller's donations.
    """
    limit, offset = page_window(limit, offset)
    requests, has_more = lifecycle.list_pickup_requests_for_user(
        current.id, direction=type, status=status, limit=limit, offset=offset
    )
    return PickupRequestList(
        requests=requests,
        pagination=Pagination(limit=limit, offset=offset, has_more=has_more),
    )


@router.get("/{request_id}", response_model=PickupRequestDetailEnvelope)
def get_pickup_request(
    request_id: int,
    current: CurrentUserDep,
    lifecycle: LifecycleDep,
):
    return PickupRequestDetailEnvelope(
        pickup_request=lifecycle.get_pickup_request(current.id, request_id)
    )


@router.put("/{request_id}", response_model=PickupRequestEnvelope)
def update_pickup_request_status(
    request_id: int,
    update: PickupRequestStatusUpdate,
    current: CurrentUserDep,
    lifecycle: LifecycleDep,
):
    status = update.status or ""
    pickup_request = lifecycle.update_pickup_request_status(
        current.id, request_id, STATUS_ALIASES.get(status, status)
    )
    return PickupRequestEnvelope(
        message="Pickup request updated successfully",
        pickup_request=pickup_request,
    )


@router.delete("/{request_id}", response_model=Message)
def cancel_pickup_request(
    request_id: int,
    current: CurrentUserDep,
    lifecycle: LifecycleDep,
):
    lifecycle.cancel_pickup_request(current.id, request_id)
    return Message(message="Pickup request cancelled successfully")
