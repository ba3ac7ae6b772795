from typing import Optional

from fastapi import APIRouter, HTTPException, Query, Request

from dependencies import LifecycleDep
from schemas import DonationCreate, DonationCreated, DonationList, Pagination, page_window
from storage import read_upload
from .auth import CurrentUserDep, OptionalUserDep, form_text

router = APIRouter(tags=["donations"])


@router.post("", response_model=DonationCreated)
async def create_donation(
    request: Request,
    current: CurrentUserDep,
    lifecycle: LifecycleDep,
):
    """
    Create a donation from multipart form data.
    The optional foodImage is uploaded best effort.
    """
    form = await request.form()

    fields = DonationCreate(
        title=form_text(form, "foodName"),
        food_type=form_text(form, "foodType"),
        quantity=form_text(form, "quantity"),
        expiry_date=form_text(form, "expiryDate"),
        pickup_location=form_text(form, "pickupLocation"),
        description=form_text(form, "description"),
        contact_name=form_text(form, "contactName"),
        contact_phone=form_text(form, "contactPhone"),
        contact_email=form_text(form, "contactEmail"),
        additional_notes=form_text(form, "additionalNotes"),
    )
    image = await read_upload(form.get("foodImage"))

    donation = lifecycle.create_donation(current.id, fields, image)
    return DonationCreated(message="Donation created successfully", donation=donation)


@router.get("", response_model=DonationList)
def list_donations(
    lifecycle: LifecycleDep,
    current: OptionalUserDep,
    food_type: Optional[str] = Query(default=None, alias="foodType"),
    location: Optional[str] = None,
    donor: Optional[str] = None,
    limit: int = 20,
    offset: int = 0,
):
    """
    List available, unexpired donations, optionally filtered by food type and location.
    With donor=me, list the caller's own donations instead (auth required).
    """
    limit, offset = page_window(limit, offset)

    if donor == "me":
        if current is None:
            raise HTTPException(status_code=401, detail="Authentication required")
        donations, has_more = lifecycle.list_donations_for_donor(
            current.id, limit=limit, offset=offset
        )
    else:
        donations, has_more = lifecycle.list_donations(
            food_type=food_type, location=location, limit=limit, offset=offset
        )

    return DonationList(
        donations=donations,
        pagination=Pagination(limit=limit, offset=offset, has_more=has_more),
    )
