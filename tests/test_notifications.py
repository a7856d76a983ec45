from jinja2 import TemplateNotFound

from database import run_after_commit
from handlers.bookings import approve_booking
from models.booking import BookingStatus
from services import notifications


class BrokenTemplates:
    def get_template(self, name):
        raise TemplateNotFound(name)


def _drain():
    messages = []
    while not notifications.outbox.empty():
        messages.append(notifications.outbox.get_nowait())
    return messages


def test_notification_released_after_commit(db, make):
    driver = make.user()

    notifications.notify(db, driver, "Booking expired", "booking_expired", booking=make.booking(renter=driver))
    assert _drain() == []
    run_after_commit(db)

    [message] = _drain()
    assert message.chat_id == driver.telegram_id
    assert message.subject == "Booking expired"


def test_missing_template_is_logged_not_raised(db, make):
    driver = make.user()

    notifications.notify(db, driver, "Hello", "no_such_template")
    run_after_commit(db)

    assert _drain() == []


def test_broken_template_does_not_fail_operation(db, make, monkeypatch):
    monkeypatch.setattr(notifications, "env", BrokenTemplates())
    booking = make.booking()

    result = approve_booking(db, booking.car.owner, booking.id, True)

    assert result.ok
    assert booking.status == BookingStatus.APPROVED
    assert _drain() == []
