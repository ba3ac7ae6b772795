"""Store access for donations and pickup requests.

``Store`` is shared by the whole process and hands out a ``Repository`` bound
to a fresh session for each unit of work. Status writes that depend on the
current status are issued as ``UPDATE ... WHERE status = :expected`` so a
concurrent change makes the write affect no rows instead of clobbering it.
"""
from collections.abc import Iterator
from contextlib import contextmanager
from typing import List, Optional, Sequence, Tuple

from sqlalchemy import delete, func, update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from models import Donation, DonationStatus, PickupRequest, RequestStatus, User, utcnow


class Repository:
    def __init__(self, session: Session):
        self.session = session

    def _page(self, query, limit: Optional[int], offset: int) -> list:
        if offset:
            query = query.offset(offset)
        if limit is not None:
            query = query.limit(limit)
        return list(self.session.exec(query).all())

    def reload(self, instance) -> None:
        self.session.refresh(instance)

    def rollback(self) -> None:
        self.session.rollback()

    # ----- users -----

    def get_user(self, user_id: int) -> Optional[User]:
        return self.session.get(User, user_id)

    # ----- donations -----

    def get_donation(self, donation_id: int) -> Optional[Donation]:
        return self.session.get(Donation, donation_id)

    def add_donation(self, donation: Donation) -> Donation:
        self.session.add(donation)
        self.session.commit()
        self.session.refresh(donation)
        return donation

    def set_donation_status(
        self, donation_id: int, status: str, expected: Optional[str] = None
    ) -> bool:
        """Write a donation status; with ``expected``, only if it still holds."""
        stmt = (
            update(Donation)
            .where(Donation.id == donation_id)
            .values(status=status, updated_at=utcnow())
        )
        if expected is not None:
            stmt = stmt.where(Donation.status == expected)
        result = self.session.execute(stmt)
        self.session.commit()
        return result.rowcount == 1

    def list_available_donations(
        self,
        food_type: Optional[str] = None,
        location: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> List[Tuple[Donation, User]]:
        query = (
            select(Donation, User)
            .join(User, User.id == Donation.donor_id)
            .where(
                Donation.status == DonationStatus.AVAILABLE.value,
                Donation.expiry_date > utcnow(),
            )
        )
        if food_type:
            query = query.where(Donation.food_type == food_type)
        if location:
            query = query.where(
                func.lower(Donation.pickup_location).contains(
                    location.lower(), autoescape=True
                )
            )
        return self._page(
            query.order_by(Donation.created_at.desc(), Donation.id.desc()),
            limit,
            offset,
        )

    def list_donations_by_donor(
        self, donor_id: int, limit: Optional[int] = None, offset: int = 0
    ) -> List[Donation]:
        query = (
            select(Donation)
            .where(Donation.donor_id == donor_id)
            .order_by(Donation.created_at.desc(), Donation.id.desc())
        )
        return self._page(query, limit, offset)

    # ----- pickup requests -----

    def get_request(self, request_id: int) -> Optional[PickupRequest]:
        return self.session.get(PickupRequest, request_id)

    def find_pending_request(
        self, donation_id: int, requester_id: int
    ) -> Optional[PickupRequest]:
        return self.session.exec(
            select(PickupRequest).where(
                PickupRequest.donation_id == donation_id,
                PickupRequest.requester_id == requester_id,
                PickupRequest.status == RequestStatus.PENDING.value,
            )
        ).first()

    def add_request(self, pickup_request: PickupRequest) -> PickupRequest:
        """Insert a request; a second pending row for the pair raises IntegrityError."""
        self.session.add(pickup_request)
        try:
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            raise
        self.session.refresh(pickup_request)
        return pickup_request

    def set_request_status(self, request_id: int, status: str, expected: str) -> bool:
        result = self.session.execute(
            update(PickupRequest)
            .where(PickupRequest.id == request_id, PickupRequest.status == expected)
            .values(status=status, updated_at=utcnow())
        )
        self.session.commit()
        return result.rowcount == 1

    def delete_request(self, request_id: int, expected: str) -> bool:
        result = self.session.execute(
            delete(PickupRequest).where(
                PickupRequest.id == request_id, PickupRequest.status == expected
            )
        )
        self.session.commit()
        return result.rowcount == 1

    def request_statuses_for_donation(self, donation_id: int) -> List[Tuple[int, str]]:
        rows = self.session.exec(
            select(PickupRequest.id, PickupRequest.status).where(
                PickupRequest.donation_id == donation_id
            )
        ).all()
        return [(row[0], row[1]) for row in rows]

    def list_sent_requests(
        self,
        requester_id: int,
        status: Optional[str] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> Sequence[Tuple[PickupRequest, Donation, User]]:
        """Requests the user made, with each donation and its donor."""
        query = (
            select(PickupRequest, Donation, User)
            .join(Donation, Donation.id == PickupRequest.donation_id)
            .join(User, User.id == Donation.donor_id)
            .where(PickupRequest.requester_id == requester_id)
        )
        if status:
            query = query.where(PickupRequest.status == status)
        return self._page(
            query.order_by(PickupRequest.created_at.desc(), PickupRequest.id.desc()),
            limit,
            offset,
        )

    def list_received_requests(
        self,
        donor_id: int,
        status: Optional[str] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> Sequence[Tuple[PickupRequest, Donation, User]]:
        """Requests made against the user's donations, with each requester."""
        query = (
            select(PickupRequest, Donation, User)
            .join(Donation, Donation.id == PickupRequest.donation_id)
            .join(User, User.id == PickupRequest.requester_id)
            .where(Donation.donor_id == donor_id)
        )
        if status:
            query = query.where(PickupRequest.status == status)
        return self._page(
            query.order_by(PickupRequest.created_at.desc(), PickupRequest.id.desc()),
            limit,
            offset,
        )


class Store:
    """Process-wide entry point to the backing database."""

    def __init__(self, engine):
        self.engine = engine

    @contextmanager
    def repository(self) -> Iterator[Repository]:
        with Session(self.engine, expire_on_commit=False) as session:
            yield Repository(session)
