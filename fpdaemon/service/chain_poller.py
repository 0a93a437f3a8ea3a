"""Polls the consumer chain for new blocks and buffers them in height order."""

from __future__ import annotations

import logging
import queue
import threading
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Protocol, TypeVar

logger = logging.getLogger(__name__)

RETRY_ATTEMPTS = 5
RETRY_DELAY = 0.4
MAX_FAILED_CYCLES = 20

_PUT_WAIT = 0.05

T = TypeVar("T")


@dataclass(frozen=True)
class BlockInfo:
    height: int
    hash: bytes = b""
    finalized: bool = False


@dataclass
class ChainPollerConfig:
    buffer_size: int = 1000
    poll_interval: float = 1.0
    poll_size: int = 1000
    auto_chain_scanning_mode: bool = True
    static_chain_scanning_start_height: int = 1

    def __post_init__(self) -> None:
        if self.buffer_size < 1:
            raise ValueError("buffer size must be positive")
        if self.poll_interval < 0:
            raise ValueError("poll interval cannot be negative")
        if self.poll_size < 1:
            raise ValueError("poll size must be positive")


class ConsumerChain(Protocol):
    def query_latest_block_height(self) -> int: ...

    def query_block(self, height: int) -> BlockInfo: ...

    def query_blocks(self, start: int, end: int, limit: int) -> Sequence[BlockInfo]: ...

    def query_activated_height(self) -> int: ...

    def close(self) -> None: ...


def with_retry(
    func: Callable[[], T],
    attempts: int = RETRY_ATTEMPTS,
    delay: float = RETRY_DELAY,
    on_retry: Callable[[int, Exception], None] | None = None,
) -> T:
    """Call func until it succeeds, at most attempts times; re-raise the last error."""
    if attempts < 1:
        raise ValueError("attempts must be at least 1")
    for n in range(attempts):
        try:
            return func()
        except Exception as err:
            if on_retry is not None:
                on_retry(n, err)
            if n == attempts - 1:
                raise
            time.sleep(delay)
    raise AssertionError("unreachable")


class ChainPoller:
    """Background thread that fetches consecutive blocks from a consumer chain."""

    def __init__(self, config: ChainPollerConfig, consumer: ConsumerChain) -> None:
        self.config = config
        self.consumer = consumer
        self.retry_attempts = RETRY_ATTEMPTS
        self.retry_delay = RETRY_DELAY
        self.max_failed_cycles = MAX_FAILED_CYCLES
        self.failure: Exception | None = None
        self._blocks: queue.Queue[BlockInfo] = queue.Queue(maxsize=config.buffer_size)
        self._lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._started = False
        self._quit = threading.Event()
        self._thread: threading.Thread | None = None
        self._next_height = 0

    def start(self, start_height: int) -> None:
        with self._state_lock:
            if self._started:
                raise RuntimeError("the poller is already started")
            self._started = True
        logger.info("starting the chain poller")
        self._set_next_height(start_height)
        self._quit = threading.Event()
        self._thread = threading.Thread(target=self._poll_chain, name="chain-poller", daemon=True)
        self._thread.start()
        logger.info("the chain poller is successfully started")

    def stop(self) -> None:
        with self._state_lock:
            if not self._started:
                raise RuntimeError("the chain poller has already stopped")
            self._started = False
        logger.info("stopping the chain poller")
        self.consumer.close()
        self._quit.set()
        if self._thread is not None:
            self._thread.join()
        logger.info("the chain poller is successfully stopped")

    def is_running(self) -> bool:
        with self._state_lock:
            return self._started

    def next_height(self) -> int:
        with self._lock:
            return self._next_height

    def _set_next_height(self, height: int) -> None:
        with self._lock:
            self._next_height = height

    def get_block(self, timeout: float | None = None) -> BlockInfo | None:
        """Wait for the next polled block; None if none arrives within timeout."""
        try:
            return self._blocks.get(timeout=timeout)
        except queue.Empty:
            return None

    def get_nowait(self) -> BlockInfo | None:
        """The next polled block if one is buffered, otherwise None."""
        try:
            return self._blocks.get_nowait()
        except queue.Empty:
            return None

    def _retry(self, func: Callable[[], T], what: str) -> T:
        def on_retry(n: int, err: Exception) -> None:
            logger.debug(
                "failed to query the consumer chain for %s (attempt %d/%d): %s",
                what, n + 1, self.retry_attempts, err,
            )

        return with_retry(func, self.retry_attempts, self.retry_delay, on_retry)

    def _blocks_with_retry(self, start: int, end: int, limit: int) -> list[BlockInfo]:
        def query() -> list[BlockInfo]:
            blocks = list(self.consumer.query_blocks(start, end, limit))
            if not blocks:
                logger.debug("no blocks found for range %d-%d", start, end)
            return blocks

        return self._retry(query, "block range")

    def _latest_block_height_with_retry(self) -> int:
        return self._retry(self.consumer.query_latest_block_height, "the latest block")

    def _wait_for_activation(self) -> None:
        while True:
            try:
                activated = self.consumer.query_activated_height()
            except Exception as err:
                logger.debug("failed to query the consumer chain for the activated height: %s", err)
            else:
                with self._lock:
                    if self._next_height < activated:
                        self._next_height = activated
                return
            if self._quit.wait(self.config.poll_interval):
                return

    def _poll_chain(self) -> None:
        self._wait_for_activation()
        failed_cycles = 0
        while not self._quit.is_set():
            try:
                latest = self._latest_block_height_with_retry()
            except Exception as err:
                failed_cycles += 1
                logger.debug(
                    "failed to query the consumer chain for the latest block (failures: %d): %s",
                    failed_cycles, err,
                )
            else:
                to_retrieve = self.next_height()
                try:
                    self._try_poll_chain(latest, to_retrieve)
                except Exception as err:
                    failed_cycles += 1
                    logger.debug(
                        "failed to query the consumer chain for blocks %d-%d (failures: %d): %s",
                        to_retrieve, latest, failed_cycles, err,
                    )
                else:
                    if failed_cycles > 0:
                        logger.debug(
                            "query for blocks %d-%d succeeded after %d failures",
                            to_retrieve, latest, failed_cycles,
                        )
                    failed_cycles = 0

            if failed_cycles > self.max_failed_cycles:
                self.failure = RuntimeError("the poller has reached the max failed cycles")
                logger.critical("the poller has reached the max failed cycles, exiting")
                return
            if self._quit.wait(self.config.poll_interval):
                return

    def _try_poll_chain(self, latest: int, to_retrieve: int) -> None:
        if to_retrieve > latest:
            logger.debug(
                "skipping block query as there is no new block (next %d, latest %d)",
                to_retrieve, latest,
            )
            return
        if to_retrieve == latest:
            blocks = [self.consumer.query_block(latest)]
        else:
            blocks = self._blocks_with_retry(to_retrieve, latest, self.config.poll_size)

        if not blocks:
            return

        last = blocks[-1]
        self._set_next_height(last.height + 1)
        logger.info(
            "the poller retrieved the blocks from the consumer chain (%d-%d)",
            to_retrieve, last.height,
        )
        for block in blocks:
            # a full buffer blocks polling until the reader catches up or we stop
            while True:
                if self._quit.is_set():
                    return
                try:
                    self._blocks.put(block, timeout=_PUT_WAIT)
                    break
                except queue.Full:
                    continue