"""Tests for request identifier generation"""
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone

import pytest
from pymongo.errors import DuplicateKeyError

from request_navigator.domain.errors import ConcurrencyError
from request_navigator.engine.request_id_generator import RequestIdGenerator
from request_navigator.repositories.counter_repo import CounterRepository

JUNE_7 = datetime(2025, 6, 7, 10, 0, tzinfo=timezone.utc)


class FlakyCounters:
    """Counter collection whose first `failures` upserts collide"""

    def __init__(self, inner, failures):
        self.inner = inner
        self.failures = failures
        self.calls = 0

    def find_one_and_update(self, *args, **kwargs):
        self.calls += 1
        if self.failures:
            self.failures -= 1
            raise DuplicateKeyError("E11000 duplicate key error")
        return self.inner.find_one_and_update(*args, **kwargs)


def test_first_ids_of_the_day(counter_repo):
    generator = RequestIdGenerator(counter_repo=counter_repo, prefix="CRA", timezone_name="UTC")

    assert generator.next_request_id(JUNE_7) == "CRA25060701"
    assert generator.next_request_id(JUNE_7) == "CRA25060702"


def test_sequence_restarts_each_day(counter_repo):
    generator = RequestIdGenerator(counter_repo=counter_repo, prefix="CRA", timezone_name="UTC")
    generator.next_request_id(JUNE_7)

    assert generator.next_request_id(datetime(2025, 6, 8, 9, 0, tzinfo=timezone.utc)) == "CRA25060801"


def test_sequence_grows_past_two_digits(counter_repo):
    generator = RequestIdGenerator(counter_repo=counter_repo, prefix="CRA", timezone_name="UTC")

    ids = [generator.next_request_id(JUNE_7) for _ in range(100)]

    assert len(set(ids)) == 100
    assert ids[8] == "CRA25060709"
    assert ids[-1] == "CRA250607100"


def test_date_comes_from_business_timezone(counter_repo):
    generator = RequestIdGenerator(counter_repo=counter_repo, prefix="CRA", timezone_name="Europe/Paris")

    # 23:30 UTC is already the next day in Paris
    late_evening = datetime(2025, 6, 7, 23, 30, tzinfo=timezone.utc)

    assert generator.next_request_id(late_evening) == "CRA25060801"


def test_counter_collision_is_retried(counter_repo):
    counter_repo._counters = FlakyCounters(counter_repo._counters, failures=2)
    generator = RequestIdGenerator(counter_repo=counter_repo, prefix="CRA", timezone_name="UTC")

    assert generator.next_request_id(JUNE_7) == "CRA25060701"
    assert counter_repo._counters.calls == 3


def test_persistent_collisions_raise_concurrency_error(counter_repo):
    counter_repo._counters = FlakyCounters(counter_repo._counters, failures=3)
    generator = RequestIdGenerator(counter_repo=counter_repo, prefix="CRA", timezone_name="UTC")

    with pytest.raises(ConcurrencyError):
        generator.next_request_id(JUNE_7)


class SerializedCounters:
    """
    Counter collection that applies one find-and-modify at a time, like the
    server's per-document atomicity (mongomock does not lock across threads).
    """

    def __init__(self, inner):
        self.inner = inner
        self.lock = threading.Lock()

    def find_one_and_update(self, *args, **kwargs):
        with self.lock:
            return self.inner.find_one_and_update(*args, **kwargs)


def test_concurrent_creation_yields_distinct_ids(db):
    counters = SerializedCounters(CounterRepository(db)._counters)
    workers, per_worker = 8, 10
    start = threading.Barrier(workers)

    def create_ids():
        repo = CounterRepository(db)
        repo._counters = counters
        generator = RequestIdGenerator(counter_repo=repo, prefix="CRA", timezone_name="UTC")
        start.wait()
        return [generator.next_request_id(JUNE_7) for _ in range(per_worker)]

    with ThreadPoolExecutor(max_workers=workers) as pool:
        batches = list(pool.map(lambda _: create_ids(), range(workers)))

    ids = [request_id for batch in batches for request_id in batch]
    assert len(set(ids)) == workers * per_worker
    assert sorted(int(request_id[9:]) for request_id in ids) == list(range(1, workers * per_worker + 1))
    for batch in batches:
        assert batch == sorted(batch, key=lambda request_id: int(request_id[9:]))
