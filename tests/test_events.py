"""
Tests for the domain event dispatcher
"""

from treasury_core.events import DomainEvent, EventDispatcher, EventPayload


class TestEventDispatcher:

    def setup_method(self):
        self.dispatcher = EventDispatcher()
        self.received = []

    def test_subscribers_receive_matching_events(self):
        self.dispatcher.subscribe(DomainEvent.TRANSFER_SUCCEEDED, self.received.append)

        self.dispatcher.emit(DomainEvent.TRANSFER_SUCCEEDED, "wallet_entry", "e1", {"amount": 100})
        self.dispatcher.emit(DomainEvent.TRANSFER_FAILED, "wallet_entry", "e2")

        assert len(self.received) == 1
        assert self.received[0].entity_id == "e1"
        assert self.received[0].data == {"amount": 100}

    def test_global_subscribers_receive_everything(self):
        self.dispatcher.subscribe_all(self.received.append)

        self.dispatcher.emit(DomainEvent.BUDGET_FUNDED, "budget", "b1")
        self.dispatcher.emit(DomainEvent.BUDGET_CLOSED, "budget", "b1")

        assert [e.event_type for e in self.received] == [DomainEvent.BUDGET_FUNDED, DomainEvent.BUDGET_CLOSED]

    def test_failing_handler_does_not_stop_others(self):
        def broken(event):
            raise RuntimeError("subscriber down")

        self.dispatcher.subscribe(DomainEvent.TRANSFER_FAILED, broken)
        self.dispatcher.subscribe(DomainEvent.TRANSFER_FAILED, self.received.append)

        self.dispatcher.emit(DomainEvent.TRANSFER_FAILED, "wallet_entry", "e1")

        assert len(self.received) == 1

    def test_unsubscribe(self):
        self.dispatcher.subscribe(DomainEvent.TRANSFER_FAILED, self.received.append)
        self.dispatcher.unsubscribe(DomainEvent.TRANSFER_FAILED, self.received.append)
        # Unknown handlers only log a warning
        self.dispatcher.unsubscribe(DomainEvent.TRANSFER_FAILED, self.received.append)

        self.dispatcher.emit(DomainEvent.TRANSFER_FAILED, "wallet_entry", "e1")

        assert self.received == []
        assert self.dispatcher.get_handler_count() == 0

    def test_payload_round_trips_through_dict(self):
        event = EventPayload(DomainEvent.APPROVAL_REQUESTED, "approval_request", "r1", {"amount": 5})
        restored = EventPayload.from_dict(event.to_dict())

        assert restored == event
