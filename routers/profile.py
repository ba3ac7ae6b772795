import logging

from fastapi import APIRouter, HTTPException, Request
from pydantic import ValidationError as SchemaError
from sqlalchemy import func
from sqlmodel import Session, select

from db import SessionDep
from dependencies import ImageStoreDep
from errors import DependencyFailure
from models import Donation, DonationStatus, PickupRequest, Recipe, utcnow
from schemas import ProfileRead, ProfileStats, ProfileUpdate, ProfileUpdated, UserRead
from storage import AVATAR, read_upload
from .auth import CurrentUserDep, form_text

logger = logging.getLogger(__name__)

router = APIRouter(tags=["profile"])


def _count(session: Session, query) -> int:
    return session.exec(query).one()


@router.get("", response_model=ProfileRead)
def read_profile(session: SessionDep, current: CurrentUserDep):
    """
    Get the caller's profile and activity counts.
    """
    stats = ProfileStats(
        total_donations=_count(
            session,
            select(func.count(Donation.id)).where(Donation.donor_id == current.id),
        ),
        active_donations=_count(
            session,
            select(func.count(Donation.id)).where(
                Donation.donor_id == current.id,
                Donation.status == DonationStatus.AVAILABLE.value,
            ),
        ),
        total_recipes=_count(
            session,
            select(func.count(Recipe.id)).where(Recipe.user_id == current.id),
        ),
        total_requests_sent=_count(
            session,
            select(func.count(PickupRequest.id)).where(
                PickupRequest.requester_id == current.id
            ),
        ),
    )
    return ProfileRead(user=UserRead.model_validate(current), stats=stats)


@router.put("", response_model=ProfileUpdated)
async def update_profile(
    request: Request,
    session: SessionDep,
    current: CurrentUserDep,
    images: ImageStoreDep,
):
    """
    Update the caller's profile from JSON or multipart form data.
    A failed profileImage upload keeps the old avatar.
    """
    content_type = request.headers.get("content-type", "")
    image = None

    if content_type.startswith("multipart/form-data"):
        form = await request.form()
        update = ProfileUpdate(
            name=form_text(form, "name"),
            phone=form_text(form, "phone"),
            address=form_text(form, "address"),
            city=form_text(form, "city"),
            state=form_text(form, "state"),
            zip_code=form_text(form, "zipCode"),
        )
        image = await read_upload(form.get("profileImage"))
    else:
        try:
            update = ProfileUpdate.model_validate(await request.json())
        except (ValueError, SchemaError):
            raise HTTPException(status_code=400, detail="Invalid profile data")

    if not update.name or not update.name.strip():
        raise HTTPException(status_code=400, detail="Name is required")

    current.name = update.name.strip()
    current.phone = update.phone or None
    current.address = update.address or None
    current.city = update.city or None
    current.state = update.state or None
    current.zip_code = update.zip_code or None
    current.updated_at = utcnow()

    if image is not None:
        try:
            current.avatar_url = images.upload_image(image, AVATAR)
        except DependencyFailure as exc:
            logger.warning("Avatar upload failed for user %s: %s", current.id, exc)

    session.add(current)
    session.commit()
    session.refresh(current)

    return ProfileUpdated(
        message="Profile updated successfully", user=UserRead.model_validate(current)
    )
