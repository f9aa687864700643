"""
Tests for the Event System

Tests the dispatcher used to notify the notification collaborator of
lifecycle transitions.
"""

import pytest
from datetime import datetime
from unittest.mock import Mock

from microfinance_core.events import DomainEvent, EventPayload, EventDispatcher, EventRecorder


def repayment_event(**data):
    return EventPayload(
        event_type=DomainEvent.REPAYMENT_POSTED,
        entity_type="loan",
        entity_id="loan-123",
        data=data or {"amount": "1000.00", "outstanding_balance": "135000.00"}
    )


class TestEventPayload:
    """Test EventPayload creation and serialization"""

    def test_event_payload_creation(self):
        """Test creating event payloads"""
        event = repayment_event()

        assert event.event_type == DomainEvent.REPAYMENT_POSTED
        assert event.entity_type == "loan"
        assert event.entity_id == "loan-123"
        assert event.data["outstanding_balance"] == "135000.00"
        assert isinstance(event.timestamp, datetime)
        assert len(event.event_id) > 0

    def test_event_payload_serialization(self):
        """Test event payload to/from dict"""
        original = EventPayload(
            event_type=DomainEvent.DEPOSIT_POSTED,
            entity_type="savings_account",
            entity_id="sav-456",
            data={"balance": "500.00"}
        )

        event_dict = original.to_dict()
        assert event_dict['event_type'] == "savings.deposit_posted"
        assert event_dict['entity_id'] == "sav-456"

        restored = EventPayload.from_dict(event_dict)
        assert restored.event_type == original.event_type
        assert restored.data == original.data
        assert restored.timestamp == original.timestamp
        assert restored.event_id == original.event_id


class TestEventDispatcher:
    """Test the event dispatcher"""

    def test_subscribe_and_publish_single_event(self):
        """Test subscribing to a single event type and publishing"""
        dispatcher = EventDispatcher()
        handler = Mock()
        dispatcher.subscribe(DomainEvent.REPAYMENT_POSTED, handler)

        event = repayment_event()
        dispatcher.publish(event)

        handler.assert_called_once_with(event)

    def test_other_event_types_not_delivered(self):
        dispatcher = EventDispatcher()
        handler = Mock()
        dispatcher.subscribe(DomainEvent.LOAN_APPROVED, handler)

        dispatcher.publish(repayment_event())

        handler.assert_not_called()

    def test_global_handler_receives_all_events(self):
        """Test that global handlers receive all events"""
        dispatcher = EventDispatcher()
        specific = Mock()
        everything = Mock()
        dispatcher.subscribe(DomainEvent.REPAYMENT_POSTED, specific)
        dispatcher.subscribe_all(everything)

        dispatcher.publish(repayment_event())
        dispatcher.publish(EventPayload(DomainEvent.SAVINGS_CLOSED, "savings_account", "sav-1", {}))

        assert specific.call_count == 1
        assert everything.call_count == 2

    def test_unsubscribe_works(self):
        """Test unsubscribing handlers"""
        dispatcher = EventDispatcher()
        handler = Mock()
        dispatcher.subscribe(DomainEvent.REPAYMENT_POSTED, handler)
        dispatcher.unsubscribe(DomainEvent.REPAYMENT_POSTED, handler)

        dispatcher.publish(repayment_event())
        handler.assert_not_called()

        # Unsubscribing twice is harmless
        dispatcher.unsubscribe(DomainEvent.REPAYMENT_POSTED, handler)

    def test_handler_exceptions_dont_break_publisher(self):
        """A failing notification handler does not stop the others"""
        dispatcher = EventDispatcher()
        failing = Mock(side_effect=RuntimeError("SMS gateway down"))
        working = Mock()
        dispatcher.subscribe(DomainEvent.REPAYMENT_POSTED, failing)
        dispatcher.subscribe(DomainEvent.REPAYMENT_POSTED, working)

        dispatcher.publish(repayment_event())

        failing.assert_called_once()
        working.assert_called_once()

    def test_handler_counts(self):
        """Test handler counting"""
        dispatcher = EventDispatcher()
        dispatcher.subscribe(DomainEvent.LOAN_APPLIED, Mock())
        dispatcher.subscribe(DomainEvent.LOAN_APPLIED, Mock())
        dispatcher.subscribe(DomainEvent.LOAN_APPROVED, Mock())
        dispatcher.subscribe_all(Mock())

        assert dispatcher.get_handler_count(DomainEvent.LOAN_APPLIED) == 2
        assert dispatcher.get_handler_count(DomainEvent.LOAN_REJECTED) == 0
        assert dispatcher.get_handler_count() == 4

    def test_clear_all_handlers(self):
        dispatcher = EventDispatcher()
        dispatcher.subscribe(DomainEvent.LOAN_APPLIED, Mock())
        dispatcher.subscribe_all(Mock())

        dispatcher.clear()
        assert dispatcher.get_handler_count() == 0


class TestEventRecorder:

    def test_records_in_order(self):
        dispatcher = EventDispatcher()
        recorder = EventRecorder()
        dispatcher.subscribe_all(recorder)

        dispatcher.publish(EventPayload(DomainEvent.LOAN_APPLIED, "loan", "l-1", {}))
        dispatcher.publish(EventPayload(DomainEvent.LOAN_APPROVED, "loan", "l-1", {}))
        dispatcher.publish(EventPayload(DomainEvent.LOAN_APPLIED, "loan", "l-2", {}))

        assert recorder.types == [
            DomainEvent.LOAN_APPLIED, DomainEvent.LOAN_APPROVED, DomainEvent.LOAN_APPLIED
        ]
        assert [e.entity_id for e in recorder.of_type(DomainEvent.LOAN_APPLIED)] == ["l-1", "l-2"]
