"""Prefetcher tests."""
import asyncio

from replay.buffer import StreamBuffer, SubjectBuffers
from replay.config import ReplayConfig
from replay.models import StreamKind
from replay.prefetch import Prefetcher, StreamGroup

from helpers import FakeSource, car, loc


def _setup(source, anchor=0):
    group = StreamGroup("location", StreamKind.LOCATION, SubjectBuffers(anchor))
    return group, Prefetcher(source, 9158, [group], ReplayConfig())


class TestThresholds:

    def test_threshold_grows_with_speed(self):
        config = ReplayConfig()
        assert config.threshold(50) > config.threshold(1)
        assert config.threshold(1) == 20_000
        assert config.threshold(50) == 250_000

    def test_chunk_grows_with_speed(self):
        config = ReplayConfig()
        assert config.chunk(1) == 30_000
        assert config.chunk(10) == 100_000

    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("REPLAY_RETENTION_MS", "1234")
        monkeypatch.setenv("REPLAY_MIN_TICK_MS", "16.5")
        config = ReplayConfig.from_env()
        assert config.retention_ms == 1234
        assert config.min_tick_ms == 16.5


class TestPrefetcher:

    def test_low_lookahead_fetches_next_chunk(self):
        source = FakeSource({StreamKind.LOCATION: [loc(100, 1, 0), loc(40_000, 1, 1)]})
        group, prefetcher = _setup(source)

        async def scenario():
            issued = prefetcher.maybe_prefetch(0, 1)
            assert len(issued) == 1
            await prefetcher.drain()

        asyncio.run(scenario())
        assert source.calls == [(StreamKind.LOCATION, 0, 30_000, None)]
        assert group.buffer.buffered_until == 30_000
        assert [s.timestamp for s in group.buffer.stream(1)] == [100]

    def test_enough_lookahead_does_nothing(self):
        source = FakeSource()
        group, prefetcher = _setup(source)
        group.buffer.merge([], 50_000, group.buffer.generation)

        async def scenario():
            assert prefetcher.maybe_prefetch(10_000, 1) == []

        asyncio.run(scenario())
        assert source.calls == []

    def test_one_fetch_in_flight(self):
        source = FakeSource()
        group, prefetcher = _setup(source)

        async def scenario():
            source.gate = asyncio.Event()
            prefetcher.maybe_prefetch(0, 1)
            await asyncio.sleep(0)
            assert group.in_flight
            assert prefetcher.maybe_prefetch(10, 1) == []
            source.gate.set()
            await prefetcher.drain()
            assert not group.in_flight

        asyncio.run(scenario())
        assert len(source.calls) == 1

    def test_stale_result_discarded_after_invalidation(self):
        source = FakeSource({StreamKind.LOCATION: [loc(100, 1, 0), loc(90_000, 1, 5)]})
        group, prefetcher = _setup(source)

        async def scenario():
            source.gate = asyncio.Event()
            prefetcher.request(group, 0, 30_000)
            await asyncio.sleep(0)
            group.invalidate(80_000)
            # The group is free again straight away.
            assert prefetcher.request(group, 80_000, 30_000) is not None
            source.gate.set()
            await prefetcher.drain()

        asyncio.run(scenario())
        assert [s.timestamp for s in group.buffer.stream(1)] == [90_000]
        assert group.buffer.buffered_until == 110_000

    def test_failing_source_degrades_to_empty(self):
        source = FakeSource(fail=True)
        group, prefetcher = _setup(source)

        async def scenario():
            prefetcher.maybe_prefetch(0, 1)
            await prefetcher.drain()

        asyncio.run(scenario())
        assert group.pending is None
        assert group.buffer.buffered_until == 30_000
        assert group.buffer.subjects() == []

    def test_scoped_group_idle_without_subject(self):
        source = FakeSource({StreamKind.CAR_DATA: [car(100, 44, 200)]})
        group = StreamGroup("car_data", StreamKind.CAR_DATA, StreamBuffer(0))
        group.scoped = True
        prefetcher = Prefetcher(source, 9158, [group], ReplayConfig())

        async def scenario():
            assert prefetcher.maybe_prefetch(0, 1) == []
            group.subject = 44
            prefetcher.maybe_prefetch(0, 1)
            await prefetcher.drain()

        asyncio.run(scenario())
        assert source.calls == [(StreamKind.CAR_DATA, 0, 30_000, 44)]
        assert len(group.buffer) == 1

    def test_merge_callback(self):
        source = FakeSource()
        merged = []
        group = StreamGroup("location", StreamKind.LOCATION, SubjectBuffers(0))
        prefetcher = Prefetcher(source, 9158, [group], ReplayConfig(), on_merge=merged.append)

        async def scenario():
            prefetcher.request(group, 0, 1000)
            await prefetcher.drain()

        asyncio.run(scenario())
        assert merged == [group]

    def test_request_without_loop_is_skipped(self):
        group, prefetcher = _setup(FakeSource())
        assert prefetcher.request(group, 0, 1000) is None
        assert not group.in_flight
