from datetime import datetime, timedelta, timezone

from conftest import FakeNotifier
from marketplace.models import Order, OrderStatus
from marketplace.orders import send_commit_reminders

NOW = datetime(2026, 10, 17, 12, 0, tzinfo=timezone.utc)


def _aged(make_order, hours, **fields):
    return make_order(created_at=NOW - timedelta(hours=hours), **fields)


def test_reminds_sellers_once(db, settings, notifier, make_order):
    due = _aged(make_order, 30)

    result = send_commit_reminders(db, notifier, settings, now=NOW)

    assert result == {"sent": [{"order_id": due.id, "hours_left": 18, "urgent": False}],
                      "failed": []}
    to, template, data = notifier.sent[0]
    assert (to, template) == ("seller-1@example.com", "seller-commit-reminder")
    assert data["hours_left"] == 18
    assert db.get(Order, due.id, populate_existing=True).reminder_sent_at is not None

    again = send_commit_reminders(db, notifier, settings, now=NOW)
    assert again == {"sent": [], "failed": []}
    assert len(notifier.sent) == 1


def test_reminder_is_urgent_near_expiry(db, settings, notifier, make_order):
    due = _aged(make_order, 40)

    result = send_commit_reminders(db, notifier, settings, now=NOW)

    assert result["sent"] == [{"order_id": due.id, "hours_left": 8, "urgent": True}]
    assert notifier.sent[0][2]["urgent"] is True


def test_only_pending_orders_inside_the_window(db, settings, notifier, make_order):
    _aged(make_order, 2)                                    # too fresh
    _aged(make_order, 50)                                   # already past the commit window
    _aged(make_order, 30, status=OrderStatus.COMMITTED)
    _aged(make_order, 30, reminder_sent_at=NOW - timedelta(hours=1))

    result = send_commit_reminders(db, notifier, settings, now=NOW)

    assert result == {"sent": [], "failed": []}
    assert notifier.sent == []


def test_failed_notification_leaves_order_due(db, settings, make_order):
    due = _aged(make_order, 30)

    result = send_commit_reminders(db, FakeNotifier(fail=True), settings, now=NOW)

    assert result == {"sent": [], "failed": [due.id]}
    assert db.get(Order, due.id, populate_existing=True).reminder_sent_at is None

    retry = send_commit_reminders(db, FakeNotifier(), settings, now=NOW)
    assert [r["order_id"] for r in retry["sent"]] == [due.id]


def test_reminder_endpoint(client, make_order, notifier):
    order = make_order(created_at=datetime.now(timezone.utc) - timedelta(hours=30))

    response = client.post("/orders/send-commit-reminders")

    assert response.status_code == 200
    body = response.json()
    assert [r["order_id"] for r in body["sent"]] == [order.id]
    assert body["failed"] == []
    assert notifier.sent[0][1] == "seller-commit-reminder"
