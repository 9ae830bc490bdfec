"""Tests for the seen-event cache."""
from fakes import make_record
from subscription_supervisor.dedup import SeenEvents


class TestSeenEvents:
    def test_second_sighting_is_duplicate(self):
        seen = SeenEvents()

        assert seen.seen(make_record(100, 0)) is False
        assert seen.seen(make_record(100, 0)) is True
        assert seen.seen(make_record(100, 1)) is False

    def test_oldest_entries_are_evicted(self):
        seen = SeenEvents(maxlen=2)
        for checkpoint in (1, 2, 3):
            seen.seen(make_record(checkpoint))

        assert len(seen) == 2
        assert make_record(1).identity not in seen
        assert seen.seen(make_record(3)) is True
        assert seen.seen(make_record(1)) is False
