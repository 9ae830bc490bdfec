"""Tests for the subscription registry."""
from subscription_supervisor.models import SubscriptionKey
from subscription_supervisor.registry import SubscriptionRegistry


class TestSubscriptionRegistry:
    def test_last_writer_wins(self, make_descriptor):
        registry = SubscriptionRegistry()
        first = make_descriptor(initial_checkpoint=1)
        second = make_descriptor(initial_checkpoint=2)
        third = make_descriptor(initial_checkpoint=3)

        for descriptor in (first, second, third):
            registry.put(descriptor.key, descriptor)

        assert len(registry) == 1
        assert registry.get(first.key) is third

    def test_all_is_in_insertion_order(self, make_descriptor):
        registry = SubscriptionRegistry()
        transfer = make_descriptor()
        approval = make_descriptor(event_name="Approval")
        registry.put(transfer.key, transfer)
        registry.put(approval.key, approval)

        assert [key.event_name for key, _ in registry.all()] == ["Transfer", "Approval"]

    def test_all_is_a_stable_snapshot(self, make_descriptor):
        registry = SubscriptionRegistry()
        transfer = make_descriptor()
        registry.put(transfer.key, transfer)

        entries = registry.all()
        approval = make_descriptor(event_name="Approval")
        registry.put(approval.key, approval)

        assert [key for key, _ in entries] == [transfer.key]
        assert len(list(registry.all())) == 2

    def test_remove(self, make_descriptor):
        registry = SubscriptionRegistry()
        descriptor = make_descriptor()
        registry.put(descriptor.key, descriptor)

        assert registry.remove(descriptor.key) is True
        assert registry.remove(descriptor.key) is False
        assert descriptor.key not in registry

    def test_key_ignores_address_case(self, make_descriptor):
        lower = make_descriptor(address="0xabcdef0000000000000000000000000000000001")
        mixed = make_descriptor(address="0xABCDEF0000000000000000000000000000000001")

        assert lower.key == mixed.key
        assert lower.key == SubscriptionKey("0xabcdef0000000000000000000000000000000001", "Transfer")
