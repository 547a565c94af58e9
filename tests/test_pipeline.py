import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest
from conftest import NOW, decision_json

from app.schemas.message import InboundEvent, InlineImage
from app.services.decision_service import FALLBACK_REPLY, INCOMPLETE_BOOKING_REPLY
from app.services.pipeline import MUTATION_FAILED_REPLY, UNSUPPORTED_REPLY, PipelineStatus
from app.services.result import ErrorCode


@pytest.fixture(autouse=True)
def quiet_alerts():
    with patch("app.services.pipeline.alert_error", new_callable=AsyncMock) as mock_alert, patch(
        "app.services.reply_service.alert_critical", new_callable=AsyncMock
    ):
        yield mock_alert


def _event(text="book a table for 4 tonight at 8pm", msg_id="wamid.1", **kwargs):
    return InboundEvent(phone="60111", display_name="Aisyah", text=text, external_message_id=msg_id, **kwargs)


def _run(pipeline, event):
    return asyncio.run(pipeline.process_event(event))


def _booking_fields(table_id, start_time="20:00", end_time="22:00", num_guests=4):
    return dict(
        start_date="10/03/2026",
        start_time=start_time,
        end_date="10/03/2026",
        end_time=end_time,
        num_guests=num_guests,
        table_id=table_id,
    )


def _staff_replies(store):
    return [m["message"] for m in store.messages if m["sender"] == "staff"]


class TestHappyPath:
    def test_confirmed_booking_is_created_and_replied(self, store, whatsapp, notifier, build_pipeline):
        table = store.add_table("T1", 4)
        pipeline = build_pipeline(
            decision_json("confirm_booking", "Booked for 4 at 8pm!", **_booking_fields(table.table_id))
        )

        outcome = _run(pipeline, _event())

        assert outcome.status == PipelineStatus.REPLIED
        assert outcome.decision_kind == "create"
        assert outcome.mutation.action == "created"
        confirmed = store.confirmed()
        assert len(confirmed) == 1
        assert confirmed[0].pax == 4
        assert confirmed[0].table_id == table.table_id
        assert confirmed[0].customer_id == outcome.customer_id
        assert [m["sender"] for m in store.messages] == ["customer", "staff"]
        assert _staff_replies(store) == ["Booked for 4 at 8pm!"]
        whatsapp.send_text.assert_awaited_once_with("60111", "Booked for 4 at 8pm!")
        notification = notifier.notify.await_args.args[0]
        assert notification["title"] == "Booking created: Aisyah"

    def test_info_request_replies_without_mutation(self, store, whatsapp, build_pipeline):
        pipeline = build_pipeline(decision_json("request_booking_info", "For how many guests?"))

        outcome = _run(pipeline, _event("I'd like a table"))

        assert outcome.status == PipelineStatus.REPLIED
        assert outcome.mutation is None
        assert store.bookings == {}
        whatsapp.send_text.assert_awaited_once_with("60111", "For how many guests?")

    def test_inbound_message_is_logged_with_channel_id(self, store, build_pipeline):
        pipeline = build_pipeline(decision_json("request_booking_info", "When?"))

        _run(pipeline, _event())

        inbound = store.messages[0]
        assert inbound["sender"] == "customer"
        assert inbound["whatsapp_msg_id"] == "wamid.1"
        assert inbound["timestamp"] == NOW

    def test_inbound_message_keeps_channel_send_time(self, store, build_pipeline):
        pipeline = build_pipeline(
            decision_json("request_booking_info", "When?"), decision_json("request_booking_info", "When?")
        )

        _run(pipeline, _event("first", msg_id="wamid.1", sent_at=NOW - timedelta(seconds=30)))
        _run(pipeline, _event("second", msg_id="wamid.2", sent_at=NOW + timedelta(minutes=5)))

        inbound = [m["timestamp"] for m in store.messages if m["sender"] == "customer"]
        assert inbound == [NOW - timedelta(seconds=30), NOW]


class TestGateAndLimiter:
    def test_redelivered_message_id_is_dropped(self, store, whatsapp, build_pipeline):
        pipeline = build_pipeline(decision_json("request_booking_info", "When?"))

        first = _run(pipeline, _event())
        second = _run(pipeline, _event())

        assert first.status == PipelineStatus.REPLIED
        assert second.status == PipelineStatus.DUPLICATE
        assert whatsapp.send_text.await_count == 1
        assert len(pipeline.provider.calls) == 1

    def test_same_text_within_window_is_dropped(self, whatsapp, build_pipeline):
        pipeline = build_pipeline(decision_json("request_booking_info", "When?"))

        _run(pipeline, _event(msg_id="wamid.1"))
        outcome = _run(pipeline, _event(msg_id="wamid.2"))

        assert outcome.status == PipelineStatus.DUPLICATE
        assert whatsapp.send_text.await_count == 1

    def test_over_limit_gets_no_reply(self, store, whatsapp, build_pipeline):
        pipeline = build_pipeline(
            decision_json("request_booking_info", "a"),
            decision_json("request_booking_info", "b"),
            limit=2,
        )

        statuses = [_run(pipeline, _event(f"message {i}", msg_id=f"wamid.{i}")).status for i in range(3)]

        assert statuses == [PipelineStatus.REPLIED, PipelineStatus.REPLIED, PipelineStatus.RATE_LIMITED]
        assert whatsapp.send_text.await_count == 2
        assert len(pipeline.provider.calls) == 2
        assert "message 2" not in [m["message"] for m in store.messages]


class TestGating:
    def test_incomplete_confirm_booking_creates_nothing(self, store, whatsapp, build_pipeline):
        table = store.add_table("T1", 4)
        fields = _booking_fields(table.table_id, num_guests=None)
        pipeline = build_pipeline(decision_json("confirm_booking", "Your table is confirmed!", **fields))

        outcome = _run(pipeline, _event())

        assert outcome.status == PipelineStatus.REPLIED
        assert outcome.decision_kind == "reply"
        assert store.bookings == {}
        whatsapp.send_text.assert_awaited_once_with("60111", INCOMPLETE_BOOKING_REPLY)


class TestMutationFailures:
    def test_conflict_falls_back_without_booking(self, store, whatsapp, build_pipeline):
        table = store.add_table("T1", 4)
        store.add_booking("other-customer", table.table_id, NOW + timedelta(hours=1), NOW + timedelta(hours=3))
        pipeline = build_pipeline(decision_json("confirm_booking", "Booked!", **_booking_fields(table.table_id)))

        outcome = _run(pipeline, _event())

        assert outcome.status == PipelineStatus.FALLBACK
        assert outcome.error_code == ErrorCode.MUTATION_FAILED
        assert len(store.bookings) == 1
        whatsapp.send_text.assert_awaited_once_with("60111", MUTATION_FAILED_REPLY)

    def test_cancel_twice_is_idempotent(self, store, whatsapp, build_pipeline):
        table = store.add_table("T1", 4)
        customer = store.get_or_create_customer("60111", "Aisyah").value
        booking = store.add_booking(
            customer.customer_id, table.table_id, NOW + timedelta(days=1), NOW + timedelta(days=1, hours=2)
        )
        cancel = decision_json("confirm_cancel_booking", "Cancelled.", booking_id=booking.booking_id)
        pipeline = build_pipeline(cancel, cancel)

        first = _run(pipeline, _event("cancel my booking", msg_id="wamid.1"))
        second = _run(pipeline, _event("yes cancel it please", msg_id="wamid.2"))

        assert first.mutation.action == "cancelled"
        assert second.status == PipelineStatus.REPLIED
        assert second.mutation.action == "already_cancelled"
        assert store.bookings[booking.booking_id].status == "cancelled"
        assert whatsapp.send_text.await_count == 2

    def test_concurrent_bookings_for_same_slot_never_overlap(self, store, build_pipeline):
        table = store.add_table("T1", 4)
        confirm = decision_json("confirm_booking", "Booked!", **_booking_fields(table.table_id))
        pipeline = build_pipeline(confirm, confirm)

        async def _both():
            return await asyncio.gather(
                pipeline.process_event(InboundEvent(phone="60111", text="book 8pm", external_message_id="a")),
                pipeline.process_event(InboundEvent(phone="60222", text="book 8pm", external_message_id="b")),
            )

        outcomes = asyncio.run(_both())

        assert len(store.confirmed()) == 1
        assert sorted(o.status.value for o in outcomes) == ["fallback", "replied"]


class TestFallbacks:
    def test_interpretation_failure_sends_fallback(self, store, whatsapp, build_pipeline, quiet_alerts):
        pipeline = build_pipeline("not json at all")

        outcome = _run(pipeline, _event())

        assert outcome.status == PipelineStatus.FALLBACK
        assert outcome.error_code == ErrorCode.INTERPRETATION_FAILED
        assert store.bookings == {}
        whatsapp.send_text.assert_awaited_once_with("60111", FALLBACK_REPLY)
        quiet_alerts.assert_awaited_once()

    def test_unsupported_message_skips_model(self, whatsapp, build_pipeline):
        pipeline = build_pipeline()

        outcome = _run(pipeline, _event(text="", message_type="unsupported"))

        assert outcome.status == PipelineStatus.REPLIED
        assert pipeline.provider.calls == []
        whatsapp.send_text.assert_awaited_once_with("60111", UNSUPPORTED_REPLY)

    def test_image_is_forwarded_to_model(self, whatsapp, build_pipeline):
        whatsapp.fetch_media.return_value = InlineImage(mime_type="image/jpeg", data=b"jpeg")
        pipeline = build_pipeline(decision_json("request_booking_info", "Lovely photo"))

        _run(pipeline, _event(text="", message_type="image", media_id="media-1"))

        whatsapp.fetch_media.assert_awaited_once_with("media-1", None)
        content = pipeline.provider.calls[0]["messages"][1]["content"]
        assert content[1]["image_url"]["url"].startswith("data:image/jpeg;base64,")

    def test_missing_image_continues_with_text(self, whatsapp, build_pipeline):
        pipeline = build_pipeline(decision_json("request_booking_info", "Could you describe it?"))

        outcome = _run(pipeline, _event(text="see menu photo", message_type="image", media_id="media-1"))

        assert outcome.status == PipelineStatus.REPLIED
        assert isinstance(pipeline.provider.calls[0]["messages"][1]["content"], str)

    def test_send_failure_is_dispatch_failed(self, store, whatsapp, build_pipeline):
        whatsapp.send_text.return_value = False
        pipeline = build_pipeline(decision_json("request_booking_info", "When?"))

        outcome = _run(pipeline, _event())

        assert outcome.status == PipelineStatus.DISPATCH_FAILED
        assert outcome.error_code == ErrorCode.DISPATCH_FAILED

    def test_customer_store_failure_is_failed(self, store, whatsapp, build_pipeline):
        store.failing.add("get_or_create_customer")
        pipeline = build_pipeline()

        outcome = _run(pipeline, _event())

        assert outcome.status == PipelineStatus.FAILED
        whatsapp.send_text.assert_not_awaited()

    def test_unexpected_crash_is_contained(self, whatsapp, build_pipeline, quiet_alerts):
        pipeline = build_pipeline()
        pipeline.rate_limiter.allow = AsyncMock(side_effect=RuntimeError("boom"))

        outcome = _run(pipeline, _event())

        assert outcome.status == PipelineStatus.FAILED
        assert outcome.error_code == "unexpected"
        quiet_alerts.assert_awaited_once()
        whatsapp.send_text.assert_not_awaited()
