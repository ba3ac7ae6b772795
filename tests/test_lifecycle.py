import logging
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlmodel import Session, select

import db
from conftest import donation_fields, fetch
from errors import (
    Conflict,
    Forbidden,
    InvalidOperation,
    InvalidState,
    NotFound,
    ValidationError,
)
from lifecycle import LifecycleEngine, parse_timestamp
from models import Donation, PickupRequest, utcnow
from repository import Repository, Store
from storage import ImageUpload


@pytest.fixture
def donor(make_user):
    return make_user("Donor")


@pytest.fixture
def r1(make_user):
    return make_user("Requester One")


@pytest.fixture
def r2(make_user):
    return make_user("Requester Two")


@pytest.fixture
def donation(lifecycle, donor):
    return lifecycle.create_donation(donor.id, donation_fields())


def count(model) -> int:
    with Session(db.engine) as session:
        return len(session.exec(select(model)).all())


# ----- CreateDonation -----

def test_create_donation_is_available_with_contact_snapshot(lifecycle, donor):
    created = lifecycle.create_donation(donor.id, donation_fields())

    assert created.status == "available"
    assert created.donor_id == donor.id
    assert created.donor.id == donor.id
    assert created.donor_contact.name == "Asha"
    assert created.donor_contact.phone == "+91 98450 00000"
    assert created.image_url is None
    assert count(Donation) == 1


@pytest.mark.parametrize("missing", ["title", "food_type", "quantity", "expiry_date", "pickup_location"])
def test_create_donation_requires_fields(lifecycle, donor, missing):
    with pytest.raises(ValidationError) as exc_info:
        lifecycle.create_donation(donor.id, donation_fields(**{missing: None}))

    assert missing in exc_info.value.message
    assert count(Donation) == 0


def test_create_donation_with_past_expiry_is_rejected(lifecycle, donor):
    yesterday = (utcnow() - timedelta(days=1)).isoformat()

    with pytest.raises(ValidationError, match="Expiry date must be in the future"):
        lifecycle.create_donation(donor.id, donation_fields(expiry_date=yesterday))

    assert count(Donation) == 0


def test_create_donation_rejects_unparseable_expiry(lifecycle, donor):
    with pytest.raises(ValidationError, match="Invalid expiry date"):
        lifecycle.create_donation(donor.id, donation_fields(expiry_date="next tuesday"))


def test_create_donation_accepts_offset_timestamps(lifecycle, donor):
    local = (utcnow() + timedelta(days=2)).astimezone(timezone(timedelta(hours=5, minutes=30)))

    created = lifecycle.create_donation(donor.id, donation_fields(expiry_date=local.isoformat()))

    assert created.expiry_date.utcoffset() == timedelta(0)
    assert created.expiry_date == local


def test_naive_expiry_is_read_as_utc():
    parsed = parse_timestamp("2030-05-01T10:00:00")

    assert parsed == datetime(2030, 5, 1, 10, 0, tzinfo=timezone.utc)


def test_stored_expiry_compares_with_clock(lifecycle, donor):
    created = lifecycle.create_donation(donor.id, donation_fields())

    stored = fetch(Donation, created.id)

    assert stored.expiry_date > lifecycle.clock()
    assert stored.expiry_date - lifecycle.clock() < timedelta(days=1, minutes=1)
    assert stored.created_at <= lifecycle.clock()


def test_create_donation_rejects_unknown_food_type(lifecycle, donor):
    with pytest.raises(ValidationError, match="Invalid food type"):
        lifecycle.create_donation(donor.id, donation_fields(food_type="sandwiches"))


def test_create_donation_uploads_image(lifecycle, donor, images):
    image = ImageUpload(filename="biryani.jpg", data=b"\xff\xd8jpeg", content_type="image/jpeg")

    created = lifecycle.create_donation(donor.id, donation_fields(), image)

    assert created.image_url == "https://images.example.com/food/biryani.jpg"
    assert images.uploads == [("food", "biryani.jpg")]


def test_failed_image_upload_still_creates_donation(lifecycle, donor, images, caplog):
    images.fail = True
    image = ImageUpload(filename="biryani.jpg", data=b"\xff\xd8jpeg")

    with caplog.at_level(logging.WARNING):
        created = lifecycle.create_donation(donor.id, donation_fields(), image)

    assert created.image_url is None
    assert count(Donation) == 1
    assert "upload failed" in caplog.text


# ----- CreatePickupRequest -----

def test_request_on_missing_donation_is_not_found(lifecycle, r1):
    with pytest.raises(NotFound):
        lifecycle.create_pickup_request(r1.id, 999)

    assert count(PickupRequest) == 0


def test_pending_request_leaves_donation_available(lifecycle, donation, r1):
    created = lifecycle.create_pickup_request(r1.id, donation.id, message="Can collect at 6pm")

    assert created.status == "pending"
    assert created.message == "Can collect at 6pm"
    assert fetch(Donation, donation.id).status == "available"


def test_cannot_request_own_donation(lifecycle, donation, donor):
    with pytest.raises(InvalidOperation, match="own donation"):
        lifecycle.create_pickup_request(donor.id, donation.id)


def test_request_on_reserved_donation_is_invalid_state(lifecycle, donation, donor, r1, r2):
    first = lifecycle.create_pickup_request(r1.id, donation.id)
    lifecycle.update_pickup_request_status(donor.id, first.id, "approved")

    with pytest.raises(InvalidState, match="not available"):
        lifecycle.create_pickup_request(r2.id, donation.id)


def test_duplicate_pending_request_conflicts(lifecycle, donation, r1):
    lifecycle.create_pickup_request(r1.id, donation.id)

    with pytest.raises(Conflict):
        lifecycle.create_pickup_request(r1.id, donation.id)

    assert count(PickupRequest) == 1


def test_store_rejects_second_pending_row_for_same_pair(donation, r1):
    with Session(db.engine) as session:
        repo = Repository(session)
        repo.add_request(PickupRequest(donation_id=donation.id, requester_id=r1.id))
        with pytest.raises(IntegrityError):
            repo.add_request(PickupRequest(donation_id=donation.id, requester_id=r1.id))

    assert count(PickupRequest) == 1


def test_can_request_again_after_cancelling(lifecycle, donation, r1):
    first = lifecycle.create_pickup_request(r1.id, donation.id)
    lifecycle.cancel_pickup_request(r1.id, first.id)

    second = lifecycle.create_pickup_request(r1.id, donation.id)

    assert second.status == "pending"


# ----- UpdatePickupRequestStatus -----

def test_scenario_a_second_approval_is_allowed_by_default(lifecycle, donation, donor, r1, r2):
    p1 = lifecycle.create_pickup_request(r1.id, donation.id)
    p2 = lifecycle.create_pickup_request(r2.id, donation.id)
    assert fetch(Donation, donation.id).status == "available"

    approved = lifecycle.update_pickup_request_status(donor.id, p1.id, "approved")
    assert approved.status == "approved"
    assert fetch(Donation, donation.id).status == "reserved"

    second = lifecycle.update_pickup_request_status(donor.id, p2.id, "approved")
    assert second.status == "approved"
    assert fetch(Donation, donation.id).status == "reserved"


def test_second_approval_can_be_blocked(images, donation, donor, r1, r2):
    strict = LifecycleEngine(Store(db.engine), images=images, allow_multiple_approvals=False)
    p1 = strict.create_pickup_request(r1.id, donation.id)
    p2 = strict.create_pickup_request(r2.id, donation.id)
    strict.update_pickup_request_status(donor.id, p1.id, "approved")

    with pytest.raises(InvalidState, match="already reserved"):
        strict.update_pickup_request_status(donor.id, p2.id, "approved")

    assert fetch(PickupRequest, p2.id).status == "pending"


def test_scenario_b_rejecting_approved_request_frees_donation(lifecycle, donation, donor, r1):
    p1 = lifecycle.create_pickup_request(r1.id, donation.id)
    lifecycle.update_pickup_request_status(donor.id, p1.id, "approved")

    rejected = lifecycle.update_pickup_request_status(donor.id, p1.id, "rejected")

    assert rejected.status == "rejected"
    assert fetch(Donation, donation.id).status == "available"


def test_rejecting_pending_request_keeps_donation_available(lifecycle, donation, donor, r1):
    p1 = lifecycle.create_pickup_request(r1.id, donation.id)

    lifecycle.update_pickup_request_status(donor.id, p1.id, "rejected")

    assert fetch(Donation, donation.id).status == "available"


def test_rejection_keeps_reservation_held_by_other_approval(lifecycle, donation, donor, r1, r2):
    p1 = lifecycle.create_pickup_request(r1.id, donation.id)
    p2 = lifecycle.create_pickup_request(r2.id, donation.id)
    lifecycle.update_pickup_request_status(donor.id, p1.id, "approved")
    lifecycle.update_pickup_request_status(donor.id, p2.id, "approved")

    lifecycle.update_pickup_request_status(donor.id, p2.id, "rejected")

    assert fetch(Donation, donation.id).status == "reserved"


def test_completing_approved_request_marks_picked_up(lifecycle, donation, donor, r1):
    p1 = lifecycle.create_pickup_request(r1.id, donation.id)
    lifecycle.update_pickup_request_status(donor.id, p1.id, "approved")

    completed = lifecycle.update_pickup_request_status(donor.id, p1.id, "completed")

    assert completed.status == "completed"
    assert fetch(Donation, donation.id).status == "picked_up"


def test_picked_up_donation_never_goes_back(lifecycle, donation, donor, r1, r2):
    p1 = lifecycle.create_pickup_request(r1.id, donation.id)
    p2 = lifecycle.create_pickup_request(r2.id, donation.id)
    lifecycle.update_pickup_request_status(donor.id, p1.id, "approved")
    lifecycle.update_pickup_request_status(donor.id, p1.id, "completed")

    lifecycle.update_pickup_request_status(donor.id, p2.id, "rejected")

    assert fetch(Donation, donation.id).status == "picked_up"


def test_pending_request_cannot_be_completed(lifecycle, donation, donor, r1):
    p1 = lifecycle.create_pickup_request(r1.id, donation.id)

    with pytest.raises(InvalidState):
        lifecycle.update_pickup_request_status(donor.id, p1.id, "completed")

    assert fetch(PickupRequest, p1.id).status == "pending"
    assert fetch(Donation, donation.id).status == "available"


@pytest.mark.parametrize(
    "path, target",
    [
        (["rejected"], "approved"),
        (["rejected"], "completed"),
        (["rejected"], "rejected"),
        (["approved", "completed"], "rejected"),
        (["approved", "completed"], "approved"),
        (["approved"], "approved"),
    ],
)
def test_disallowed_transitions_are_invalid_state(lifecycle, donation, donor, r1, path, target):
    p1 = lifecycle.create_pickup_request(r1.id, donation.id)
    for status in path:
        lifecycle.update_pickup_request_status(donor.id, p1.id, status)
    before = fetch(Donation, donation.id).status

    with pytest.raises(InvalidState):
        lifecycle.update_pickup_request_status(donor.id, p1.id, target)

    assert fetch(PickupRequest, p1.id).status == path[-1]
    assert fetch(Donation, donation.id).status == before


@pytest.mark.parametrize("target", ["pending", "confirmed", "cancelled", ""])
def test_unknown_target_status_is_validation_error(lifecycle, donation, donor, r1, target):
    p1 = lifecycle.create_pickup_request(r1.id, donation.id)

    with pytest.raises(ValidationError):
        lifecycle.update_pickup_request_status(donor.id, p1.id, target)


def test_only_donor_can_update_request(lifecycle, donation, r1, r2):
    p1 = lifecycle.create_pickup_request(r1.id, donation.id)

    with pytest.raises(Forbidden):
        lifecycle.update_pickup_request_status(r1.id, p1.id, "approved")
    with pytest.raises(Forbidden):
        lifecycle.update_pickup_request_status(r2.id, p1.id, "approved")


def test_update_missing_request_is_not_found(lifecycle, donor):
    with pytest.raises(NotFound):
        lifecycle.update_pickup_request_status(donor.id, 12345, "approved")


def test_failed_donation_write_is_logged_and_reconcilable(
    lifecycle, donation, donor, r1, monkeypatch, caplog
):
    p1 = lifecycle.create_pickup_request(r1.id, donation.id)

    def broken(self, donation_id, status, expected=None):
        raise OperationalError("UPDATE donation", {}, Exception("database is locked"))

    monkeypatch.setattr(Repository, "set_donation_status", broken)
    with caplog.at_level(logging.ERROR):
        approved = lifecycle.update_pickup_request_status(donor.id, p1.id, "approved")
    monkeypatch.undo()

    assert approved.status == "approved"
    assert fetch(Donation, donation.id).status == "available"
    assert "needs reconciliation" in caplog.text

    assert lifecycle.reconcile_donation_status(donation.id) == "reserved"
    assert fetch(Donation, donation.id).status == "reserved"


def test_reconcile_leaves_consistent_donation_alone(lifecycle, donation, r1):
    lifecycle.create_pickup_request(r1.id, donation.id)

    assert lifecycle.reconcile_donation_status(donation.id) == "available"
    assert fetch(Donation, donation.id).status == "available"


# ----- CancelPickupRequest -----

def test_cancel_removes_pending_request_only(lifecycle, donation, r1):
    p1 = lifecycle.create_pickup_request(r1.id, donation.id)

    lifecycle.cancel_pickup_request(r1.id, p1.id)

    assert fetch(PickupRequest, p1.id) is None
    assert fetch(Donation, donation.id).status == "available"


def test_cancel_by_someone_else_is_forbidden(lifecycle, donation, donor, r1, r2):
    p1 = lifecycle.create_pickup_request(r1.id, donation.id)

    with pytest.raises(Forbidden):
        lifecycle.cancel_pickup_request(r2.id, p1.id)
    with pytest.raises(Forbidden):
        lifecycle.cancel_pickup_request(donor.id, p1.id)


def test_cancel_non_pending_is_invalid_state_and_unchanged(lifecycle, donation, donor, r1):
    p1 = lifecycle.create_pickup_request(r1.id, donation.id)
    lifecycle.update_pickup_request_status(donor.id, p1.id, "approved")

    with pytest.raises(InvalidState, match="Only pending requests can be cancelled"):
        lifecycle.cancel_pickup_request(r1.id, p1.id)

    assert fetch(PickupRequest, p1.id).status == "approved"
    assert fetch(Donation, donation.id).status == "reserved"


def test_cancel_missing_request_is_not_found(lifecycle, r1):
    with pytest.raises(NotFound):
        lifecycle.cancel_pickup_request(r1.id, 42)


# ----- listings -----

def test_list_donations_filters_and_orders(lifecycle, donor, make_user):
    other = make_user("Other Donor")
    older = lifecycle.create_donation(donor.id, donation_fields(title="Rice", pickup_location="Indiranagar"))
    newer = lifecycle.create_donation(
        other.id, donation_fields(title="Milk", food_type="dairy", pickup_location="Koramangala")
    )

    items, has_more = lifecycle.list_donations()
    assert [d.id for d in items] == [newer.id, older.id]
    assert items[0].donor.id == other.id
    assert has_more is False

    dairy, _ = lifecycle.list_donations(food_type="dairy")
    assert [d.title for d in dairy] == ["Milk"]

    everything, _ = lifecycle.list_donations(food_type="All")
    assert len(everything) == 2

    near, _ = lifecycle.list_donations(location="indira")
    assert [d.title for d in near] == ["Rice"]

    page, has_more = lifecycle.list_donations(limit=1)
    assert [d.id for d in page] == [newer.id]
    assert has_more is True

    rest, has_more = lifecycle.list_donations(limit=1, offset=1)
    assert [d.id for d in rest] == [older.id]
    assert has_more is False


def test_list_donations_hides_expired_and_taken(images, lifecycle, donor, r1):
    past = LifecycleEngine(Store(db.engine), images=images, clock=lambda: utcnow() - timedelta(days=3))
    past.create_donation(
        donor.id,
        donation_fields(title="Old bread", expiry_date=(utcnow() - timedelta(days=1)).isoformat()),
    )
    reserved = lifecycle.create_donation(donor.id, donation_fields(title="Dal"))
    p1 = lifecycle.create_pickup_request(r1.id, reserved.id)
    lifecycle.update_pickup_request_status(donor.id, p1.id, "approved")

    items, _ = lifecycle.list_donations()

    assert items == []
    mine, _ = lifecycle.list_donations_for_donor(donor.id)
    assert sorted(d.title for d in mine) == ["Dal", "Old bread"]


def test_list_requests_sent_and_received(lifecycle, donation, donor, r1, r2):
    p1 = lifecycle.create_pickup_request(r1.id, donation.id)
    p2 = lifecycle.create_pickup_request(r2.id, donation.id)
    lifecycle.update_pickup_request_status(donor.id, p2.id, "rejected")

    sent, _ = lifecycle.list_pickup_requests_for_user(r1.id, "sent")
    assert [r.id for r in sent] == [p1.id]
    assert sent[0].donation.donor.id == donor.id
    assert sent[0].requester is None

    received, _ = lifecycle.list_pickup_requests_for_user(donor.id, "received")
    assert [r.id for r in received] == [p2.id, p1.id]
    assert received[0].requester.id == r2.id
    assert received[0].donation.id == donation.id

    rejected, _ = lifecycle.list_pickup_requests_for_user(donor.id, "received", status="rejected")
    assert [r.id for r in rejected] == [p2.id]

    assert lifecycle.list_pickup_requests_for_user(donor.id, "sent") == ([], False)


def test_list_requests_rejects_unknown_direction(lifecycle, r1):
    with pytest.raises(ValidationError):
        lifecycle.list_pickup_requests_for_user(r1.id, "both")


def test_get_request_visible_to_parties_only(lifecycle, donation, donor, r1, r2):
    p1 = lifecycle.create_pickup_request(r1.id, donation.id)

    assert lifecycle.get_pickup_request(donor.id, p1.id).requester.id == r1.id
    assert lifecycle.get_pickup_request(r1.id, p1.id).donation.id == donation.id
    with pytest.raises(Forbidden):
        lifecycle.get_pickup_request(r2.id, p1.id)


def test_donation_statuses_stay_within_known_values(lifecycle, donation, donor, r1, r2):
    p1 = lifecycle.create_pickup_request(r1.id, donation.id)
    p2 = lifecycle.create_pickup_request(r2.id, donation.id)
    lifecycle.update_pickup_request_status(donor.id, p1.id, "approved")
    lifecycle.update_pickup_request_status(donor.id, p1.id, "rejected")
    lifecycle.update_pickup_request_status(donor.id, p2.id, "approved")
    lifecycle.update_pickup_request_status(donor.id, p2.id, "completed")

    with Session(db.engine) as session:
        statuses = {d.status for d in session.exec(select(Donation)).all()}
    assert statuses <= {"available", "reserved", "picked_up"}
