from datetime import timedelta

import pytest

from handlers.bookings import complete_booking, confirm_car_return
from handlers.results import ErrorKind
from handlers.reviews import create_feedback
from models.booking import BookingStatus
from models.common import utcnow
from models.review import Feedback, FeedbackType
from models.user import UserRole


@pytest.fixture()
def finished(make):
    return make.booking(status=BookingStatus.COMPLETED, is_paid=True, start_time=utcnow() - timedelta(days=3))


def test_renter_and_owner_review_once_each(db, finished):
    by_driver = create_feedback(db, finished.renter, finished.id, 5, "Clean car")
    by_owner = create_feedback(db, finished.car.owner, finished.id, 4)

    assert by_driver.ok and by_owner.ok
    assert by_driver.value.type == FeedbackType.DRIVER
    assert by_owner.value.type == FeedbackType.OWNER
    assert db.query(Feedback).count() == 2


def test_owner_renting_another_car_reviews_as_driver(db, make):
    renter = make.user(UserRole.OWNER)
    booking = make.booking(renter=renter, status=BookingStatus.COMPLETED, start_time=utcnow() - timedelta(days=3))

    result = create_feedback(db, renter, booking.id, 3)

    assert result.value.type == FeedbackType.DRIVER


def test_second_feedback_is_refused(db, finished):
    assert create_feedback(db, finished.renter, finished.id, 5).ok
    assert create_feedback(db, finished.renter, finished.id, 1).error == ErrorKind.DOMAIN


def test_stranger_cannot_review(db, make, finished):
    assert create_feedback(db, make.user(), finished.id, 5).error == ErrorKind.DOMAIN
    assert create_feedback(db, make.user(UserRole.OWNER), finished.id, 5).error == ErrorKind.DOMAIN


def test_unfinished_booking_cannot_be_reviewed(db, make):
    booking = make.booking(status=BookingStatus.ONGOING, is_paid=True)
    assert create_feedback(db, booking.renter, booking.id, 5).error == ErrorKind.DOMAIN


def test_feedback_window_closes(db, make):
    booking = make.booking(status=BookingStatus.COMPLETED, start_time=utcnow() - timedelta(days=10))
    result = create_feedback(db, booking.renter, booking.id, 5)
    assert result.error == ErrorKind.DOMAIN
    assert "7 days" in result.message


@pytest.mark.parametrize("rating, comment", [
    (0, None),
    (6, None),
    (5, "x" * 501),
])
def test_feedback_input_is_validated(db, finished, rating, comment):
    assert create_feedback(db, finished.renter, finished.id, rating, comment).error == ErrorKind.VALIDATION


def test_longest_comment_is_accepted(db, finished):
    assert create_feedback(db, finished.renter, finished.id, 5, "x" * 500).ok


def test_early_return_waits_for_booked_end(db, make):
    booking = make.booking(status=BookingStatus.ONGOING, is_paid=True, start_time=utcnow() - timedelta(days=1), days=3)
    assert confirm_car_return(db, booking.car.owner, booking.id).ok
    assert complete_booking(db, booking.renter, booking.id).ok

    result = create_feedback(db, booking.renter, booking.id, 5)

    assert result.error == ErrorKind.DOMAIN
    assert "7 days" in result.message
    assert db.query(Feedback).count() == 0
