import json

from settlement.extensions import db
from settlement.services import event_service, inventory_service
from settlement.services.subscriptions import EventSubscriptionManager


def test_stock_commands(app, db_session):
    runner = app.test_cli_runner()

    created = runner.invoke(args=["stock", "create", "--listing-id", "lst_cli", "--seller-id", "4", "--quantity", "3"])
    assert created.exit_code == 0, created.output
    assert "on_hand=3" in created.output

    unit_id = int(created.output.split()[3])

    restocked = runner.invoke(args=["stock", "restock", str(unit_id), "2"])
    assert restocked.exit_code == 0, restocked.output
    assert json.loads(restocked.output)["on_hand"] == 5

    missing = runner.invoke(args=["stock", "show", "9999"])
    assert missing.exit_code != 0
    assert "not found" in missing.output


def test_sweeper_run_once(app, db_session):
    result = app.test_cli_runner().invoke(args=["sweeper", "run-once"])

    assert result.exit_code == 0, result.output
    assert "expired=0" in result.output
    assert "skipped=0" in result.output


def test_webhook_replay_of_unknown_event(app, db_session):
    result = app.test_cli_runner().invoke(args=["webhooks", "replay", "evt_nope"])

    assert result.exit_code != 0
    assert "evt_nope" in result.output


def test_events_tail(app, db_session):
    inventory_service.create_stock_unit(listing_id="lst_tail", seller_id=4, quantity_on_hand=1)

    result = app.test_cli_runner().invoke(args=["events", "tail"])

    assert result.exit_code == 0, result.output
    assert result.output == ""


def test_events_tail_prints_one_page(app, db_session):
    first = event_service.append_event(event_type="order.created", entity_type="order", entity_id=11)
    event_service.append_event(event_type="order.status_changed", entity_type="order", entity_id=11,
                               payload={"to": "paid"})
    db.session.commit()

    result = app.test_cli_runner().invoke(args=["events", "tail", "--after-id", str(first.id - 1)])

    assert result.exit_code == 0, result.output
    lines = result.output.splitlines()
    assert len(lines) == 2
    assert lines[0].startswith(str(first.id))
    assert "order:11" in lines[1]
    assert '{"to": "paid"}' in lines[1]


def test_events_tail_follow_reads_through_a_subscription(app, db_session, monkeypatch):
    first = event_service.append_event(event_type="order.created", entity_type="order", entity_id=12)
    event_service.append_event(event_type="order.status_changed", entity_type="order", entity_id=12)
    db.session.commit()

    subscribed = []
    real_subscribe = EventSubscriptionManager.subscribe

    def recording_subscribe(self, callback, **kwargs):
        subscribed.append(kwargs)
        return real_subscribe(self, callback, **kwargs)

    monkeypatch.setattr(EventSubscriptionManager, "subscribe", recording_subscribe)
    monkeypatch.setattr(EventSubscriptionManager, "run", lambda self: self.poll_once())

    result = app.test_cli_runner().invoke(args=[
        "events", "tail", "--follow", "--after-id", str(first.id - 1), "--type", "order.status_changed",
    ])

    assert result.exit_code == 0, result.output
    assert subscribed == [{"after_id": first.id - 1, "event_types": ("order.status_changed",)}]
    printed = [line for line in result.output.splitlines() if "order:12" in line]
    assert len(printed) == 1
    assert "order.status_changed" in printed[0]
