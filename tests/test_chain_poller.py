import random
import threading

import pytest

from fpdaemon.service.chain_poller import (
    BlockInfo,
    ChainPoller,
    ChainPollerConfig,
    with_retry,
)


class FakeConsumer:
    def __init__(self, latest, activated=1, fail_latest=False):
        self.latest = latest
        self.activated = activated
        self.fail_latest = fail_latest
        self.closed = False
        self.range_queries = []
        self._lock = threading.Lock()

    def query_latest_block_height(self):
        if self.fail_latest:
            raise ConnectionError("node unreachable")
        return self.latest

    def query_block(self, height):
        return BlockInfo(height=height)

    def query_blocks(self, start, end, limit):
        with self._lock:
            self.range_queries.append((start, end, limit))
        return [BlockInfo(height=start)]

    def query_activated_height(self):
        return self.activated

    def close(self):
        self.closed = True


def _config():
    return ChainPollerConfig(poll_interval=0.01)


def _fast(poller):
    poller.retry_delay = 0.0
    return poller


def test_with_retry_returns_after_failures():
    calls = []
    seen = []

    def func():
        calls.append(1)
        if len(calls) < 3:
            raise ValueError("boom")
        return 42

    result = with_retry(func, attempts=5, delay=0, on_retry=lambda n, e: seen.append(n))
    assert result == 42
    assert seen == [0, 1]


def test_with_retry_raises_last_error():
    counter = iter(range(10))

    def func():
        raise ValueError(f"err {next(counter)}")

    with pytest.raises(ValueError, match="err 2"):
        with_retry(func, attempts=3, delay=0)


def test_with_retry_rejects_zero_attempts():
    with pytest.raises(ValueError):
        with_retry(lambda: 1, attempts=0, delay=0)


def test_config_rejects_bad_buffer():
    with pytest.raises(ValueError):
        ChainPollerConfig(buffer_size=0)


@pytest.mark.parametrize("seed", range(5))
def test_poller_delivers_blocks_in_sequence(seed):
    r = random.Random(seed)
    current = r.randrange(100) + 1
    start = current + 1
    end = start + r.randrange(10) + 1
    consumer = FakeConsumer(latest=end)
    poller = _fast(ChainPoller(_config(), consumer))
    poller.start(start)
    try:
        heights = []
        for _ in range(start, end + 1):
            block = poller.get_block(timeout=10)
            assert block is not None
            heights.append(block.height)
        assert heights == list(range(start, end + 1))
        assert all(limit == poller.config.poll_size for _, _, limit in consumer.range_queries)
    finally:
        poller.stop()
    assert consumer.closed


def test_start_twice_raises():
    poller = _fast(ChainPoller(_config(), FakeConsumer(latest=5)))
    poller.start(1)
    try:
        assert poller.is_running()
        with pytest.raises(RuntimeError, match="already started"):
            poller.start(1)
    finally:
        poller.stop()
    assert not poller.is_running()


def test_stop_when_not_started_raises():
    poller = ChainPoller(_config(), FakeConsumer(latest=5))
    with pytest.raises(RuntimeError, match="already stopped"):
        poller.stop()


def test_activation_height_raises_start():
    consumer = FakeConsumer(latest=12, activated=10)
    poller = _fast(ChainPoller(_config(), consumer))
    poller.start(3)
    try:
        block = poller.get_block(timeout=10)
        assert block.height == 10
    finally:
        poller.stop()


def test_no_new_blocks_keeps_next_height():
    consumer = FakeConsumer(latest=4)
    poller = _fast(ChainPoller(_config(), consumer))
    poller.start(10)
    try:
        assert poller.get_block(timeout=0.1) is None
        assert poller.get_nowait() is None
        assert poller.next_height() == 10
    finally:
        poller.stop()


def test_next_height_advances_past_polled_blocks():
    consumer = FakeConsumer(latest=7)
    poller = _fast(ChainPoller(_config(), consumer))
    poller.start(5)
    try:
        heights = [poller.get_block(timeout=10).height for _ in range(3)]
        assert heights == [5, 6, 7]
        assert poller.get_block(timeout=0.1) is None
        assert poller.next_height() == 8
    finally:
        poller.stop()


def test_poller_gives_up_after_max_failed_cycles():
    consumer = FakeConsumer(latest=5, fail_latest=True)
    poller = _fast(ChainPoller(ChainPollerConfig(poll_interval=0.001), consumer))
    poller.retry_attempts = 1
    poller.start(1)
    try:
        for _ in range(500):
            if poller.failure is not None:
                break
            threading.Event().wait(0.01)
        assert isinstance(poller.failure, RuntimeError)
        assert "max failed cycles" in str(poller.failure)
    finally:
        poller.stop()