"""Tests for stsmon.poller."""

import dataclasses
import threading

import pytest

from conftest import FakeTransport, OK, SHORT, TIMEOUT
from stsmon.config import MAX_OFFLINE_INTERVAL
from stsmon.poller import (
    DeviceUpdate,
    Poller,
    STATUS_BACK_ONLINE,
    STATUS_OK,
    STATUS_SET_OFFLINE,
    STATUS_SKIP,
    STATUS_STILL_OFFLINE,
    STATUS_TIMEOUT,
    next_interval,
)
from stsmon.reading import NO_DATA


def _take_offline(poller, address=1, threshold=3):
    """Run *threshold* failing cycles; returns the last update for *address*."""
    last = None
    for _ in range(threshold):
        for u in poller.poll_all():
            if u.address == address:
                last = u
    return last


class TestNextInterval:
    """Tests for next_interval()."""

    def test_from_zero_or_negative(self):
        """A non-positive interval starts the backoff at 2."""
        assert next_interval(0) == 2
        assert next_interval(-4) == 2

    def test_doubles(self):
        """Intervals double."""
        assert next_interval(1) == 2
        assert next_interval(5) == 10
        assert next_interval(20) == 40

    def test_capped(self):
        """Intervals never exceed the cap."""
        assert next_interval(40) == MAX_OFFLINE_INTERVAL
        assert next_interval(60) == MAX_OFFLINE_INTERVAL
        assert next_interval(1000) == MAX_OFFLINE_INTERVAL


class TestPollAll:
    """Tests for Poller.poll_all on healthy devices."""

    def test_success(self):
        """An answering device yields an OK update with its reading."""
        poller = Poller(FakeTransport({1: [OK]}), [1], name="COM3")
        [u] = poller.poll_all()

        assert u.bus == "COM3"
        assert u.address == 1
        assert u.status == STATUS_OK
        assert u.online is True
        assert u.timed_out is False
        assert u.short_read is False
        assert u.cycle == 1
        assert u.reading.output_voltage_v == 230
        assert u.read_time_ms >= 0

    def test_registration_order(self):
        """Devices are polled and reported in the order they were added."""
        bus = FakeTransport({7: [OK], 2: [OK], 5: [OK]})
        poller = Poller(bus, [7, 2, 5])
        updates = poller.poll_all()
        assert [u.address for u in updates] == [7, 2, 5]
        assert [c[1] for c in bus.calls] == [7, 2, 5]

    def test_cycle_counter(self):
        """Every poll_all adds exactly one to the cycle counter."""
        poller = Poller(FakeTransport({1: [OK]}), [1])
        for n in range(1, 6):
            [u] = poller.poll_all()
            assert u.cycle == n
            assert poller.cycle == n

    def test_cycle_counter_without_devices(self):
        """The counter advances even with nothing to poll."""
        poller = Poller(FakeTransport(), [])
        assert poller.poll_all() == []
        assert poller.poll_all() == []
        assert poller.cycle == 2

    def test_shared_cycle_numbers(self):
        """A failing and a healthy device carry the same cycle numbers."""
        poller = Poller(FakeTransport({1: [OK], 2: [TIMEOUT]}), [1, 2])
        seen = {1: [], 2: []}
        for _ in range(12):
            for u in poller.poll_all():
                seen[u.address].append(u.cycle)
        assert seen[1] == seen[2] == list(range(1, 13))

    def test_update_is_frozen(self):
        """Updates cannot be modified by observers."""
        [u] = Poller(FakeTransport({1: [OK]}), [1]).poll_all()
        with pytest.raises(dataclasses.FrozenInstanceError):
            u.status = "X"

    def test_rejects_bad_settings(self):
        """Zero interval or threshold is refused."""
        with pytest.raises(ValueError):
            Poller(FakeTransport(), [], offline_interval=0)
        with pytest.raises(ValueError):
            Poller(FakeTransport(), [], offline_threshold=0)


class TestOffline:
    """Tests for the online/offline state machine."""

    def test_offline_on_threshold(self):
        """A device goes offline on exactly the threshold-th failure."""
        poller = Poller(FakeTransport({1: [TIMEOUT]}), [1],
                        offline_interval=5, offline_threshold=3)

        statuses = [poller.poll_all()[0].status for _ in range(3)]

        assert statuses == [STATUS_TIMEOUT, STATUS_TIMEOUT, STATUS_SET_OFFLINE]
        state = poller.state(1)
        assert state.online is False
        assert state.offline_interval == 10
        assert state.offline_cycles == 0
        assert state.consecutive_timeouts == 3

    @pytest.mark.parametrize("threshold", [1, 2, 4, 7])
    def test_threshold_respected(self, threshold):
        """Offline happens after threshold failures, not before."""
        poller = Poller(FakeTransport({1: [TIMEOUT]}), [1],
                        offline_threshold=threshold)
        for _ in range(threshold - 1):
            u = poller.poll_all()[0]
            assert u.online is True
            assert u.status == STATUS_TIMEOUT
        u = poller.poll_all()[0]
        assert u.online is False
        assert u.status == STATUS_SET_OFFLINE

    def test_timeouts_below_threshold_keep_interval(self):
        """Failures while online leave the offline interval untouched."""
        poller = Poller(FakeTransport({1: [TIMEOUT]}), [1],
                        offline_interval=5, offline_threshold=3)
        poller.poll_all()
        poller.poll_all()
        assert poller.state(1).offline_interval == 5

    def test_success_resets_consecutive_count(self):
        """A good read in between restarts the failure count."""
        bus = FakeTransport({1: [TIMEOUT, TIMEOUT, OK, TIMEOUT, TIMEOUT, OK]})
        poller = Poller(bus, [1], offline_threshold=3)
        statuses = [poller.poll_all()[0].status for _ in range(6)]
        assert STATUS_SET_OFFLINE not in statuses
        assert poller.state(1).consecutive_timeouts == 0

    def test_skip_cycles(self):
        """After going offline, 9 cycles skip and the 10th polls."""
        bus = FakeTransport({1: [TIMEOUT]})
        poller = Poller(bus, [1], offline_interval=5, offline_threshold=3)
        _take_offline(poller)
        assert bus.polled(1) == 3

        skipped = [poller.poll_all()[0] for _ in range(9)]

        assert bus.polled(1) == 3
        for u in skipped:
            assert u.status == STATUS_SKIP
            assert u.read_time_ms == 0
            assert u.reading is None
            assert u.values == NO_DATA
            assert u.timed_out is False
            assert u.online is False

        u = poller.poll_all()[0]
        assert bus.polled(1) == 4
        assert u.status == STATUS_STILL_OFFLINE
        assert u.timed_out is True

    def test_backoff_doubles_until_cap(self):
        """Each failed retry while offline doubles the interval, up to 60."""
        poller = Poller(FakeTransport({1: [TIMEOUT]}), [1],
                        offline_interval=5, offline_threshold=3)
        _take_offline(poller)
        intervals = [poller.state(1).offline_interval]
        for _ in range(400):
            poller.poll_all()
            iv = poller.state(1).offline_interval
            assert iv <= MAX_OFFLINE_INTERVAL
            if iv != intervals[-1]:
                intervals.append(iv)
        assert intervals == [10, 20, 40, 60]

    def test_back_online(self):
        """An offline device that answers comes straight back."""
        bus = FakeTransport({1: [TIMEOUT] * 3 + [TIMEOUT] + [OK]})
        poller = Poller(bus, [1], offline_interval=5, offline_threshold=3)
        _take_offline(poller)
        # Skip 9, fail once (interval 20), skip 19, then succeed.
        updates = [poller.poll_all()[0] for _ in range(9 + 1 + 19 + 1)]
        assert updates[9].status == STATUS_STILL_OFFLINE
        assert poller.state(1).online is True

        u = updates[-1]
        assert u.status == STATUS_BACK_ONLINE
        assert u.online is True
        assert u.reading is not None
        assert u.timed_out is False
        state = poller.state(1)
        assert state.offline_interval == 5
        assert state.consecutive_timeouts == 0
        assert state.offline_cycles == 0

    def test_full_rate_after_recovery(self):
        """After recovery the device is polled every cycle again."""
        bus = FakeTransport({1: [TIMEOUT] * 4 + [OK]})
        poller = Poller(bus, [1], offline_interval=2, offline_threshold=3)
        for _ in range(20):
            poller.poll_all()
        assert poller.state(1).online is True
        before = bus.polled(1)
        [u] = poller.poll_all()
        assert u.status == STATUS_OK
        assert bus.polled(1) == before + 1

    def test_failing_device_does_not_block_others(self):
        """A dead device does not stop its neighbours being polled."""
        bus = FakeTransport({1: [TIMEOUT], 2: [OK]})
        poller = Poller(bus, [1, 2])
        for _ in range(30):
            poller.poll_all()
        assert bus.polled(2) == 30
        assert bus.polled(1) < 30


class TestShortRead:
    """Short reads fail like timeouts but are reported separately."""

    def test_short_read_flags(self):
        """A short read sets short_read, not timed_out."""
        poller = Poller(FakeTransport({1: [SHORT]}), [1])
        u = poller.poll_all()[0]
        assert u.status == STATUS_TIMEOUT
        assert u.timed_out is False
        assert u.short_read is True
        assert u.reading is None

    def test_timeout_flags(self):
        """A transport timeout sets timed_out, not short_read."""
        poller = Poller(FakeTransport({1: [TIMEOUT]}), [1])
        u = poller.poll_all()[0]
        assert u.timed_out is True
        assert u.short_read is False

    def test_short_reads_count_toward_offline(self):
        """Short reads drive the offline transition like timeouts."""
        poller = Poller(FakeTransport({1: [SHORT]}), [1], offline_threshold=3)
        statuses = [poller.poll_all()[0].status for _ in range(3)]
        assert statuses[-1] == STATUS_SET_OFFLINE


class TestDevices:
    """Tests for add_device/remove_device."""

    def test_add_duplicate_is_noop(self):
        """Adding an address twice keeps a single entry."""
        poller = Poller(FakeTransport(), [1, 2])
        assert poller.add_device(2) is False
        assert poller.addresses == [1, 2]

    def test_add_appends(self):
        """New devices are polled after existing ones."""
        poller = Poller(FakeTransport({1: [OK], 9: [OK]}), [1])
        assert poller.add_device(9) is True
        assert [u.address for u in poller.poll_all()] == [1, 9]

    def test_remove_absent(self):
        """Removing an unknown address returns False and changes nothing."""
        poller = Poller(FakeTransport(), [1, 2, 3])
        assert poller.remove_device(4) is False
        assert poller.addresses == [1, 2, 3]

    def test_remove_present(self):
        """Removing a device drops exactly that entry."""
        poller = Poller(FakeTransport({1: [OK], 3: [OK]}), [1, 2, 3])
        assert poller.remove_device(2) is True
        assert poller.addresses == [1, 3]
        assert [u.address for u in poller.poll_all()] == [1, 3]
        assert poller.state(2) is None

    def test_readd_starts_fresh(self):
        """A removed and re-added device starts online with clean counters."""
        poller = Poller(FakeTransport({1: [TIMEOUT]}), [1], offline_interval=5)
        _take_offline(poller)
        poller.remove_device(1)
        poller.add_device(1)
        state = poller.state(1)
        assert state.online is True
        assert state.consecutive_timeouts == 0
        assert state.offline_interval == 5

    def test_remove_during_cycle(self):
        """A device removed mid-cycle finishes its poll, then is dropped."""
        poller = None

        class RemovingBus(FakeTransport):
            def read_block(self, function, address, start, count):
                if address == 1:
                    poller.remove_device(1)
                    poller.remove_device(2)
                return super().read_block(function, address, start, count)

        bus = RemovingBus({1: [OK], 2: [OK], 3: [OK]})
        poller = Poller(bus, [1, 2, 3])

        first = poller.poll_all()
        assert [u.address for u in first] == [1, 3]
        assert [u.address for u in poller.poll_all()] == [3]

    def test_add_during_cycle(self):
        """A device added mid-cycle is picked up by the next cycle."""
        poller = None

        class AddingBus(FakeTransport):
            def read_block(self, function, address, start, count):
                poller.add_device(8)
                return super().read_block(function, address, start, count)

        poller = Poller(AddingBus({1: [OK], 8: [OK]}), [1])
        assert [u.address for u in poller.poll_all()] == [1]
        assert [u.address for u in poller.poll_all()] == [1, 8]

    def test_concurrent_add_remove(self):
        """Add/remove from another thread never tears a running cycle."""
        poller = Poller(FakeTransport({a: [OK] for a in range(1, 41)}),
                        range(1, 21))
        errors = []
        done = threading.Event()

        def churn():
            try:
                for i in range(2000):
                    addr = 21 + i % 20
                    poller.add_device(addr)
                    poller.remove_device(addr)
            except Exception as exc:
                errors.append(exc)
            finally:
                done.set()

        t = threading.Thread(target=churn)
        t.start()
        while not done.is_set():
            updates = poller.poll_all()
            addrs = [u.address for u in updates]
            assert addrs[:20] == list(range(1, 21))
            assert len(set(addrs)) == len(addrs)
        t.join()
        assert errors == []


class TestSubscribe:
    """Tests for update observers."""

    def test_observer_gets_every_update_in_order(self):
        """Observers see one update per device per cycle, in order."""
        poller = Poller(FakeTransport({1: [OK], 2: [TIMEOUT]}), [1, 2])
        seen = []
        poller.subscribe(seen.append)
        returned = poller.poll_all() + poller.poll_all()
        assert seen == returned
        assert [(u.cycle, u.address) for u in seen] == [
            (1, 1), (1, 2), (2, 1), (2, 2),
        ]

    def test_failing_observer_does_not_stop_cycle(self, caplog):
        """An exception in an observer is logged and polling continues."""
        poller = Poller(FakeTransport({1: [OK], 2: [OK]}), [1, 2])
        seen = []

        def broken(update):
            raise RuntimeError("boom")

        poller.subscribe(broken)
        poller.subscribe(seen.append)
        updates = poller.poll_all()

        assert len(updates) == 2
        assert len(seen) == 2
        assert "observer failed" in caplog.text

    def test_values_boundary(self):
        """values returns the reading or the -1 sentinel."""
        ok = Poller(FakeTransport({1: [OK]}), [1]).poll_all()[0]
        bad = Poller(FakeTransport(), [1]).poll_all()[0]
        assert ok.values is ok.reading
        assert bad.values == NO_DATA
        assert isinstance(ok, DeviceUpdate)


class TestStateConsistency:
    """Tests for state() reads racing a running cycle."""

    def test_transition_is_atomic(self, monkeypatch):
        """A reader during the offline transition sees it fully applied."""
        from stsmon.device import Device

        poller = Poller(FakeTransport({1: [TIMEOUT]}), [1],
                        offline_interval=5, offline_threshold=3)
        seen = []
        readers = []
        original = Device._mark_offline

        def mark_offline(dev):
            reader = threading.Thread(target=lambda: seen.append(poller.state(1)))
            reader.start()
            readers.append(reader)
            original(dev)

        monkeypatch.setattr(Device, "_mark_offline", mark_offline)
        _take_offline(poller)
        for reader in readers:
            reader.join(5)

        [state] = seen
        assert state.online is False
        assert state.offline_interval == 10
        assert state.consecutive_timeouts == 3

    def test_observer_can_read_state(self):
        """Observers may call state() and see the update's transition."""
        poller = Poller(FakeTransport({1: [TIMEOUT]}), [1],
                        offline_interval=5, offline_threshold=1)
        seen = []
        poller.subscribe(lambda u: seen.append(poller.state(u.address)))
        poller.poll_all()
        assert seen[0].online is False
        assert seen[0].offline_interval == 10
