from sqlalchemy import select

from civicpay.services.payments.models import WebhookEvent
from civicpay.services.payments.webhook_store import WebhookEventStore, derive_event_key


def test_event_key_uses_first_entity_with_an_id():
    payment_event = {"event": "payment.captured", "created_at": 17, "payload": {"payment": {"entity": {"id": "pay_1"}}}}
    refund_event = {"event": "refund.processed", "created_at": 18, "payload": {"refund": {"entity": {"id": "rfnd_1"}}}}
    order_event = {"event": "order.paid", "created_at": 19, "payload": {"order": {"entity": {"id": "order_1"}}}}

    assert derive_event_key(payment_event) == "payment.captured-pay_1-17"
    assert derive_event_key(refund_event) == "refund.processed-rfnd_1-18"
    assert derive_event_key(order_event) == "order.paid-order_1-19"
    assert derive_event_key({"event": "ping"}) == "ping-None-None"


def test_distinct_events_on_one_payment_get_distinct_keys():
    first = {"event": "payment.authorized", "created_at": 1, "payload": {"payment": {"entity": {"id": "pay_1"}}}}
    second = {**first, "event": "payment.captured"}

    assert derive_event_key(first) != derive_event_key(second)


def _attrs(**overrides):
    attrs = {
        "event_type": "payment.captured",
        "payload": {"payment": {"entity": {"id": "pay_1"}}},
        "raw_body": '{"original": true}',
        "verified": False,
        "headers": {"x-razorpay-signature": "aa"},
    }
    attrs.update(overrides)
    return attrs


def test_upsert_only_touches_mutable_fields(session_factory):
    store = WebhookEventStore(session_factory)
    with session_factory() as db:
        store.upsert_event(db, "k1", _attrs())
        db.commit()

    with session_factory() as db:
        event = store.upsert_event(
            db,
            "k1",
            _attrs(verified=True, raw_body='{"replaced": true}', payload={"other": 1}, event_type="payment.failed"),
        )
        db.commit()

    with session_factory() as db:
        rows = db.execute(select(WebhookEvent)).scalars().all()
    assert len(rows) == 1
    assert rows[0].event_id == event.event_id
    assert rows[0].verified is True
    assert rows[0].raw_body == '{"original": true}'
    assert rows[0].payload == {"payment": {"entity": {"id": "pay_1"}}}
    assert rows[0].event_type == "payment.captured"


def test_only_processed_events_are_duplicates(session_factory):
    store = WebhookEventStore(session_factory)
    with session_factory() as db:
        store.upsert_event(db, "k1", _attrs(verified=True))
        db.commit()
        assert not store.is_duplicate(db, "k1")
        assert not store.is_duplicate(db, "unknown")

        store.mark_processed(db, store.get(db, "k1"))
        db.commit()
        assert store.is_duplicate(db, "k1")


def test_record_error_reopens_event(session_factory):
    store = WebhookEventStore(session_factory)
    with session_factory() as db:
        event = store.upsert_event(db, "k1", _attrs(verified=True))
        store.mark_processed(db, event)
        db.commit()

    store.record_error("k1", "x" * 5000)

    with session_factory() as db:
        event = store.get(db, "k1")
        assert not event.processed
        assert len(event.error_message) == 2000
        assert [e.event_key for e in store.list_unprocessed(db, 10)] == ["k1"]


def test_unverified_events_are_not_listed_for_replay(session_factory):
    store = WebhookEventStore(session_factory)
    with session_factory() as db:
        store.upsert_event(db, "forged", _attrs(verified=False))
        db.commit()
        assert store.list_unprocessed(db, 10) == []


def test_event_key_tolerates_non_object_levels():
    assert derive_event_key({"event": "payment.captured", "created_at": 1, "payload": ["x"]}) == (
        "payment.captured-None-1"
    )
    assert derive_event_key({"event": "payment.captured", "created_at": 1, "payload": {"payment": "oops"}}) == (
        "payment.captured-None-1"
    )
    mixed = {"payment": {"entity": 5}, "refund": {"entity": {"id": "rfnd_1"}}}
    assert derive_event_key({"event": "refund.processed", "created_at": 2, "payload": mixed}) == (
        "refund.processed-rfnd_1-2"
    )


def test_verified_flag_is_never_downgraded(session_factory):
    store = WebhookEventStore(session_factory)
    with session_factory() as db:
        store.upsert_event(db, "k1", _attrs(verified=True))
        db.commit()

    with session_factory() as db:
        store.upsert_event(db, "k1", _attrs(verified=False))
        db.commit()

    with session_factory() as db:
        assert store.get(db, "k1").verified is True
        assert [e.event_key for e in store.list_unprocessed(db, 10)] == ["k1"]
