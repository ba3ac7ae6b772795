"""Donation and pickup-request lifecycle.

A donation moves ``available -> reserved -> picked_up``; the only way back is
``reserved -> available`` when the approving request is rejected. A pickup
request moves ``pending -> approved|rejected`` and ``approved ->
completed|rejected``; ``rejected`` and ``completed`` are final. Every donation
status change after creation is a side effect of a request transition.
"""
import logging
from datetime import datetime, timezone
from typing import Callable, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from errors import (
    Conflict,
    DependencyFailure,
    Forbidden,
    InvalidOperation,
    InvalidState,
    NotFound,
    ValidationError,
)
from models import (
    Donation,
    DonationStatus,
    FoodType,
    PickupRequest,
    RequestStatus,
    User,
    utcnow,
)
from repository import Repository, Store
from schemas import (
    DonationCreate,
    DonationRead,
    PickupRequestDetail,
    PickupRequestRead,
    UserPublic,
)
from storage import FOOD, ImageUpload

logger = logging.getLogger(__name__)

DONATION_TRANSITIONS = {
    DonationStatus.AVAILABLE: {DonationStatus.RESERVED, DonationStatus.PICKED_UP},
    DonationStatus.RESERVED: {DonationStatus.PICKED_UP, DonationStatus.AVAILABLE},
    DonationStatus.PICKED_UP: set(),
}

REQUEST_TRANSITIONS = {
    RequestStatus.PENDING: {RequestStatus.APPROVED, RequestStatus.REJECTED},
    RequestStatus.APPROVED: {RequestStatus.COMPLETED, RequestStatus.REJECTED},
    RequestStatus.REJECTED: set(),
    RequestStatus.COMPLETED: set(),
}

# Donation status that each donor decision on a request leads to.
DONATION_EFFECTS = {
    RequestStatus.APPROVED: DonationStatus.RESERVED,
    RequestStatus.REJECTED: DonationStatus.AVAILABLE,
    RequestStatus.COMPLETED: DonationStatus.PICKED_UP,
}

REQUIRED_DONATION_FIELDS = (
    "title",
    "food_type",
    "quantity",
    "expiry_date",
    "pickup_location",
)

DIRECTIONS = ("sent", "received")


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO date or datetime into aware UTC; naive input is taken as UTC."""
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        raise ValidationError("Invalid expiry date")
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def donation_out(donation: Donation, donor: Optional[User] = None) -> DonationRead:
    out = DonationRead.model_validate(donation)
    if donor is not None:
        out.donor = UserPublic.model_validate(donor)
    return out


class LifecycleEngine:
    def __init__(
        self,
        store: Store,
        images=None,
        allow_multiple_approvals: bool = True,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.images = images
        self.allow_multiple_approvals = allow_multiple_approvals
        self.clock = clock

    # ----- donations -----

    def create_donation(
        self,
        caller_id: int,
        fields: DonationCreate,
        image: Optional[ImageUpload] = None,
    ) -> DonationRead:
        missing = [
            name
            for name in REQUIRED_DONATION_FIELDS
            if not (getattr(fields, name) or "").strip()
        ]
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")

        try:
            food_type = FoodType(fields.food_type.strip())
        except ValueError:
            raise ValidationError(f"Invalid food type: {fields.food_type}")

        expiry_date = parse_timestamp(fields.expiry_date)
        if expiry_date <= self.clock():
            raise ValidationError("Expiry date must be in the future")

        image_url = self._upload_image(image)

        with self.store.repository() as repo:
            donor = repo.get_user(caller_id)
            if donor is None:
                raise NotFound("User not found")
            donation = repo.add_donation(
                Donation(
                    donor_id=caller_id,
                    title=fields.title.strip(),
                    description=fields.description or "",
                    food_type=food_type.value,
                    quantity=fields.quantity.strip(),
                    expiry_date=expiry_date,
                    pickup_location=fields.pickup_location.strip(),
                    image_url=image_url,
                    status=DonationStatus.AVAILABLE.value,
                    donor_contact={
                        "name": fields.contact_name,
                        "phone": fields.contact_phone,
                        "email": fields.contact_email,
                    },
                    additional_notes=fields.additional_notes or "",
                )
            )
            logger.info("Donation %s created by user %s", donation.id, caller_id)
            return donation_out(donation, donor)

    def _upload_image(self, image: Optional[ImageUpload]) -> Optional[str]:
        if image is None:
            return None
        if self.images is None:
            logger.warning("No image store configured; dropping %s", image.filename)
            return None
        try:
            return self.images.upload_image(image, FOOD)
        except DependencyFailure as exc:
            logger.warning("Food image upload failed, saving without image: %s", exc)
            return None

    def list_donations(
        self,
        food_type: Optional[str] = None,
        location: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> Tuple[List[DonationRead], bool]:
        """Available, unexpired donations, newest first, plus whether more follow."""
        if food_type == "All":
            food_type = None
        with self.store.repository() as repo:
            rows = repo.list_available_donations(
                food_type=food_type,
                location=location,
                limit=limit + 1,
                offset=offset,
            )
            items = [donation_out(donation, donor) for donation, donor in rows[:limit]]
            return items, len(rows) > limit

    def list_donations_for_donor(
        self, caller_id: int, limit: int = 20, offset: int = 0
    ) -> Tuple[List[DonationRead], bool]:
        with self.store.repository() as repo:
            donor = repo.get_user(caller_id)
            rows = repo.list_donations_by_donor(caller_id, limit=limit + 1, offset=offset)
            items = [donation_out(donation, donor) for donation in rows[:limit]]
            return items, len(rows) > limit

    # ----- pickup requests -----

    def create_pickup_request(
        self,
        caller_id: int,
        donation_id: int,
        message: Optional[str] = None,
        pickup_time: Optional[str] = None,
    ) -> PickupRequestRead:
        with self.store.repository() as repo:
            donation = repo.get_donation(donation_id)
            if donation is None:
                raise NotFound("Donation not found")
            if donation.status != DonationStatus.AVAILABLE:
                raise InvalidState("Donation is not available")
            if donation.donor_id == caller_id:
                raise InvalidOperation("Cannot request your own donation")
            if repo.find_pending_request(donation_id, caller_id) is not None:
                raise Conflict("You already have a pending request for this donation")

            try:
                pickup_request = repo.add_request(
                    PickupRequest(
                        donation_id=donation_id,
                        requester_id=caller_id,
                        message=message or None,
                        pickup_time=pickup_time or None,
                        status=RequestStatus.PENDING.value,
                    )
                )
            except IntegrityError:
                raise Conflict("You already have a pending request for this donation")

            logger.info(
                "Pickup request %s created on donation %s by user %s",
                pickup_request.id,
                donation_id,
                caller_id,
            )
            return PickupRequestRead.model_validate(pickup_request)

    def get_pickup_request(self, caller_id: int, request_id: int) -> PickupRequestDetail:
        with self.store.repository() as repo:
            pickup_request = repo.get_request(request_id)
            if pickup_request is None:
                raise NotFound("Pickup request not found")
            donation = repo.get_donation(pickup_request.donation_id)
            if caller_id not in (pickup_request.requester_id, donation.donor_id):
                raise Forbidden("Access denied")
            detail = PickupRequestDetail.model_validate(pickup_request)
            detail.donation = donation_out(donation, repo.get_user(donation.donor_id))
            requester = repo.get_user(pickup_request.requester_id)
            if requester is not None:
                detail.requester = UserPublic.model_validate(requester)
            return detail

    def update_pickup_request_status(
        self, caller_id: int, request_id: int, target: str
    ) -> PickupRequestRead:
        try:
            outcome = RequestStatus(target)
        except ValueError:
            outcome = None
        if outcome not in DONATION_EFFECTS:
            raise ValidationError(
                "Invalid status. Must be approved, rejected, or completed"
            )

        with self.store.repository() as repo:
            pickup_request = repo.get_request(request_id)
            if pickup_request is None:
                raise NotFound("Pickup request not found")
            donation = repo.get_donation(pickup_request.donation_id)
            if donation is None or donation.donor_id != caller_id:
                raise Forbidden("You can only update requests for your own donations")

            current = RequestStatus(pickup_request.status)
            if outcome not in REQUEST_TRANSITIONS[current]:
                raise InvalidState(
                    f"Cannot change a {current.value} request to {outcome.value}"
                )
            if (
                outcome == RequestStatus.APPROVED
                and not self.allow_multiple_approvals
                and donation.status != DonationStatus.AVAILABLE
            ):
                raise InvalidState(f"Donation is already {donation.status}")

            if not repo.set_request_status(request_id, outcome.value, expected=current.value):
                raise InvalidState("Pickup request was changed by another action")
            logger.info(
                "Pickup request %s %s -> %s by user %s",
                request_id,
                current.value,
                outcome.value,
                caller_id,
            )

            self._apply_donation_effect(repo, donation, request_id, outcome)

            repo.reload(pickup_request)
            return PickupRequestRead.model_validate(pickup_request)

    def _apply_donation_effect(
        self,
        repo: Repository,
        donation: Donation,
        request_id: int,
        outcome: RequestStatus,
    ) -> None:
        """Move the donation to follow a request decision.

        The request write is already committed; a failure here is logged and
        left for ``reconcile_donation_status`` rather than failing the call.
        """
        target = DONATION_EFFECTS[outcome]
        current = DonationStatus(donation.status)
        if current == target:
            return
        if target not in DONATION_TRANSITIONS[current]:
            logger.warning(
                "Donation %s stays %s; %s on request %s does not move it to %s",
                donation.id,
                current.value,
                outcome.value,
                request_id,
                target.value,
            )
            return
        if outcome == RequestStatus.REJECTED and self._still_approved(
            repo, donation.id, request_id
        ):
            logger.info(
                "Donation %s stays reserved by another approved request", donation.id
            )
            return

        try:
            applied = repo.set_donation_status(
                donation.id, target.value, expected=current.value
            )
        except SQLAlchemyError:
            repo.rollback()
            logger.exception(
                "Failed to update donation %s status to %s; needs reconciliation",
                donation.id,
                target.value,
            )
            return

        if applied:
            logger.info("Donation %s status updated to %s", donation.id, target.value)
        else:
            logger.error(
                "Donation %s changed concurrently, %s not applied; needs reconciliation",
                donation.id,
                target.value,
            )

    @staticmethod
    def _still_approved(repo: Repository, donation_id: int, request_id: int) -> bool:
        return any(
            other_id != request_id and status == RequestStatus.APPROVED
            for other_id, status in repo.request_statuses_for_donation(donation_id)
        )

    def cancel_pickup_request(self, caller_id: int, request_id: int) -> None:
        with self.store.repository() as repo:
            pickup_request = repo.get_request(request_id)
            if pickup_request is None:
                raise NotFound("Pickup request not found")
            if pickup_request.requester_id != caller_id:
                raise Forbidden("You can only cancel your own requests")
            if pickup_request.status != RequestStatus.PENDING:
                raise InvalidState("Only pending requests can be cancelled")
            if not repo.delete_request(request_id, expected=RequestStatus.PENDING.value):
                raise InvalidState("Only pending requests can be cancelled")
            logger.info("Pickup request %s cancelled by user %s", request_id, caller_id)

    def list_pickup_requests_for_user(
        self,
        user_id: int,
        direction: str = "sent",
        status: Optional[str] = None,
        limit: int = 10,
        offset: int = 0,
    ) -> Tuple[List[PickupRequestDetail], bool]:
        if direction not in DIRECTIONS:
            raise ValidationError("Type must be sent or received")
        if status:
            try:
                status = RequestStatus(status).value
            except ValueError:
                raise ValidationError(f"Unknown request status: {status}")

        with self.store.repository() as repo:
            if direction == "sent":
                rows = repo.list_sent_requests(
                    user_id, status=status, limit=limit + 1, offset=offset
                )
            else:
                rows = repo.list_received_requests(
                    user_id, status=status, limit=limit + 1, offset=offset
                )

            items = []
            for pickup_request, donation, other in rows[:limit]:
                detail = PickupRequestDetail.model_validate(pickup_request)
                if direction == "sent":
                    detail.donation = donation_out(donation, other)
                else:
                    detail.donation = donation_out(donation)
                    detail.requester = UserPublic.model_validate(other)
                items.append(detail)
            return items, len(rows) > limit

    # ----- repair -----

    def reconcile_donation_status(self, donation_id: int) -> str:
        """Re-derive a donation's status from its requests and store it if it drifted."""
        with self.store.repository() as repo:
            donation = repo.get_donation(donation_id)
            if donation is None:
                raise NotFound("Donation not found")
            statuses = {status for _, status in repo.request_statuses_for_donation(donation_id)}
            if RequestStatus.COMPLETED.value in statuses:
                derived = DonationStatus.PICKED_UP
            elif RequestStatus.APPROVED.value in statuses:
                derived = DonationStatus.RESERVED
            else:
                derived = DonationStatus.AVAILABLE

            previous = donation.status
            if previous != derived:
                repo.set_donation_status(donation_id, derived.value, expected=previous)
                logger.warning(
                    "Reconciled donation %s from %s to %s",
                    donation_id,
                    previous,
                    derived.value,
                )
            return derived.value
