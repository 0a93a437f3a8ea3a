"""A running finality provider: polls blocks, commits randomness and votes."""

from __future__ import annotations

import logging
import queue
import threading
from collections.abc import Callable, Sequence
from typing import Protocol, TypeVar

from fpdaemon.service.chain_poller import (
    RETRY_ATTEMPTS,
    RETRY_DELAY,
    BlockInfo,
    ChainPoller,
    with_retry,
)
from fpdaemon.service.errors import (
    CriticalError,
    FinalityProviderJailed,
    FinalityProviderShutDown,
    FinalityProviderSlashed,
)
from fpdaemon.service.randomness import (
    FpConfig,
    PubRandCommit,
    RandomnessCommitter,
    TxResponse,
)
from fpdaemon.service.signing import EOTSManager
from fpdaemon.service.state import FpState, PubRandState
from fpdaemon.service.voting import FinalityVoter
from fpdaemon.store.fpstore import FinalityProviderStore
from fpdaemon.store.pub_rand import PubRandProofStore
from fpdaemon.store.storedfp import FinalityProviderStatus

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ConsumerController(Protocol):
    """Everything a finality provider instance asks of the consumer chain."""

    def query_latest_block_height(self) -> int: ...

    def query_block(self, height: int) -> BlockInfo: ...

    def query_blocks(self, start: int, end: int, limit: int) -> Sequence[BlockInfo]: ...

    def query_activated_height(self) -> int: ...

    def query_latest_finalized_block(self) -> BlockInfo | None: ...

    def query_finality_activation_block_height(self) -> int: ...

    def query_finality_provider_highest_voted_height(self, btc_pk: bytes) -> int: ...

    def query_finality_provider_has_power(self, btc_pk: bytes, height: int) -> bool: ...

    def query_finality_provider_slashed_or_jailed(self, btc_pk: bytes) -> tuple[bool, bool]: ...

    def query_last_public_rand_commit(self, btc_pk: bytes) -> PubRandCommit | None: ...

    def commit_pub_rand_list(
        self, btc_pk: bytes, start_height: int, num_pub_rand: int, commitment: bytes, sig: bytes
    ) -> TxResponse: ...

    def submit_batch_finality_sigs(
        self,
        btc_pk: bytes,
        blocks: Sequence[BlockInfo],
        pub_rand_list: Sequence[bytes],
        proof_list: Sequence[bytes],
        sig_list: Sequence[int],
    ) -> TxResponse: ...

    def close(self) -> None: ...


class FinalityProviderInstance:
    """One registered finality provider with its polling and voting threads."""

    def __init__(
        self,
        btc_pk: bytes,
        config: FpConfig,
        fp_store: FinalityProviderStore,
        pub_rand_store: PubRandProofStore,
        consumer: ConsumerController,
        eots_manager: EOTSManager,
        critical_errors: queue.Queue[CriticalError] | None = None,
    ) -> None:
        stored = fp_store.get_finality_provider(bytes(btc_pk))
        if stored.status == FinalityProviderStatus.SLASHED:
            raise FinalityProviderSlashed("the finality provider instance is already slashed")

        self.config = config
        self.consumer = consumer
        self.eots_manager = eots_manager
        self.critical_errors = critical_errors
        self.fp_state = FpState(stored, fp_store)
        self.pub_rand_state = PubRandState(pub_rand_store)
        self.randomness = RandomnessCommitter(
            config, self.fp_state, self.pub_rand_state, consumer, eots_manager
        )
        self.voter = FinalityVoter(
            config, self.fp_state, self.pub_rand_state, consumer, eots_manager, self.randomness
        )
        self.retry_attempts = RETRY_ATTEMPTS
        self.retry_delay = RETRY_DELAY
        self.poller: ChainPoller | None = None

        self._state_lock = threading.Lock()
        self._started = False
        self._quit = threading.Event()
        self._threads: list[threading.Thread] = []

    # lifecycle

    def start(self) -> None:
        with self._state_lock:
            if self._started:
                raise RuntimeError(
                    f"the finality-provider instance {self.btc_pk_hex()} is already started"
                )
            self._started = True

        try:
            if self.is_jailed():
                logger.warning("the finality provider %s is jailed", self.btc_pk_hex())
            try:
                start_height = self.determine_start_height()
            except Exception as err:
                raise RuntimeError(f"failed to get the start height: {err}") from err

            logger.info(
                "starting the finality provider instance %s at height %d",
                self.btc_pk_hex(), start_height,
            )
            poller = ChainPoller(self.config.poller_config, self.consumer)
            poller.start(start_height)
        except BaseException:
            with self._state_lock:
                self._started = False
            raise

        self.poller = poller
        self._quit = threading.Event()
        self._threads = [
            threading.Thread(
                target=self._finality_sig_submission_loop, name="finality-votes", daemon=True
            ),
            threading.Thread(
                target=self._randomness_commitment_loop, name="randomness-commits", daemon=True
            ),
        ]
        for thread in self._threads:
            thread.start()

    def stop(self) -> None:
        with self._state_lock:
            if not self._started:
                raise RuntimeError(
                    f"the finality-provider {self.btc_pk_hex()} has already stopped"
                )
            self._started = False

        if self.poller is not None:
            self.poller.stop()
        logger.info("stopping finality-provider instance %s", self.btc_pk_hex())
        self._quit.set()
        for thread in self._threads:
            thread.join()
        self._threads = []
        logger.info("the finality-provider instance %s is stopped", self.btc_pk_hex())

    def __enter__(self) -> FinalityProviderInstance:
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        if self.is_running():
            self.stop()

    def is_running(self) -> bool:
        with self._state_lock:
            return self._started

    # state

    def is_jailed(self) -> bool:
        """Whether the provider is jailed, reading the status from the store."""
        try:
            stored = self.fp_state.store.get_finality_provider(self.fp_state.btc_pk())
        except Exception as err:
            raise RuntimeError(
                f"failed to retrieve the finality provider {self.btc_pk_hex()} from db: {err}"
            ) from err
        if stored.status != self.fp_state.status():
            self.fp_state.set_status(stored.status)
        return self.fp_state.status() == FinalityProviderStatus.JAILED

    def btc_pk_hex(self) -> str:
        return self.fp_state.btc_pk_hex()

    def status(self) -> FinalityProviderStatus:
        return self.fp_state.status()

    def last_voted_height(self) -> int:
        return self.fp_state.last_voted_height()

    def update_state_after_finality_sig_submission(self, height: int) -> None:
        self.fp_state.set_last_voted_height(height)

    # chain queries

    def _retry(self, func: Callable[[], T], what: str) -> T:
        def on_retry(n: int, err: Exception) -> None:
            logger.debug(
                "failed to query %s (attempt %d/%d): %s", what, n + 1, self.retry_attempts, err
            )

        return with_retry(func, self.retry_attempts, self.retry_delay, on_retry)

    def _highest_voted_height_with_retry(self) -> int:
        return self._retry(
            lambda: self.consumer.query_finality_provider_highest_voted_height(
                self.fp_state.btc_pk()
            ),
            "the highest voted height",
        )

    def _latest_finalized_height_with_retry(self) -> int:
        def query() -> int:
            block = self.consumer.query_latest_finalized_block()
            return 0 if block is None else block.height

        return self._retry(query, "the latest finalized height")

    def _finality_activation_height_with_retry(self) -> int:
        return self._retry(
            self.consumer.query_finality_activation_block_height,
            "the finality activation height",
        )

    def determine_start_height(self) -> int:
        """The height to start polling from.

        In static mode this is the configured height. Otherwise it is one above
        the highest of the local last voted height, the chain's highest voted
        height and the last finalized height, but never below the finality
        activation height.
        """
        poller_config = self.config.poller_config
        if not poller_config.auto_chain_scanning_mode:
            logger.info(
                "using static chain scanning mode for %s from height %d",
                self.btc_pk_hex(), poller_config.static_chain_scanning_start_height,
            )
            return poller_config.static_chain_scanning_start_height

        try:
            highest_voted = self._highest_voted_height_with_retry()
        except Exception as err:
            raise RuntimeError(f"failed to get the highest voted height: {err}") from err
        try:
            last_finalized = self._latest_finalized_height_with_retry()
        except Exception as err:
            raise RuntimeError(f"failed to get the last finalized height: {err}") from err

        start_height = max(self.last_voted_height(), highest_voted, last_finalized) + 1

        try:
            activation = self._finality_activation_height_with_retry()
        except Exception as err:
            raise RuntimeError(f"failed to get finality activation height: {err}") from err

        start_height = max(start_height, activation)
        logger.info(
            "determined poller starting height %d for %s (activation %d, last voted %d, "
            "last finalized %d, highest voted %d)",
            start_height, self.btc_pk_hex(), activation, self.last_voted_height(),
            last_finalized, highest_voted,
        )
        return start_height

    def slashed_or_jailed_with_retry(self) -> tuple[bool, bool]:
        slashed, jailed = self._retry(
            lambda: self.consumer.query_finality_provider_slashed_or_jailed(
                self.fp_state.btc_pk()
            ),
            "the finality-provider",
        )
        return bool(slashed), bool(jailed)

    # actions

    def commit_pub_rand(self, start_height: int) -> TxResponse:
        return self.randomness.commit_pub_rand(start_height)

    def submit_batch_finality_signatures(self, blocks: Sequence[BlockInfo]) -> TxResponse:
        return self.voter.submit_batch_finality_signatures(blocks)

    # background loops

    def _report_critical_error(self, err: BaseException) -> None:
        critical = CriticalError(err, self.btc_pk_hex())
        logger.error("%s", critical)
        if self.critical_errors is not None:
            self.critical_errors.put(critical)

    def _batch_blocks(self) -> list[BlockInfo]:
        blocks: list[BlockInfo] = []
        if self.poller is None:
            return blocks
        while len(blocks) < self.config.batch_submission_size:
            if self._quit.is_set():
                return []
            block = self.poller.get_nowait()
            if block is None:
                break
            blocks.append(block)
        return blocks

    def _finality_sig_submission_loop(self) -> None:
        while not self._quit.wait(self.config.signature_submission_interval):
            blocks = self._batch_blocks()
            if not blocks:
                continue
            if self.is_jailed():
                logger.warning("the finality-provider %s is jailed", self.btc_pk_hex())
                continue

            try:
                selected = self.voter.process_blocks_to_vote(blocks)
            except Exception as err:
                self._report_critical_error(err)
                continue
            if not selected:
                continue

            try:
                res = self.voter.retry_submit_sigs_until_finalized(selected, self._quit)
            except FinalityProviderJailed:
                self.fp_state.set_status(FinalityProviderStatus.JAILED)
                logger.debug("the finality-provider %s has been jailed", self.btc_pk_hex())
                continue
            except FinalityProviderShutDown:
                continue
            except Exception as err:
                self._report_critical_error(err)
                continue
            if res is None:
                continue
            logger.info(
                "submitted finality signatures of %s for heights %d-%d (tx %s)",
                self.btc_pk_hex(), blocks[0].height, blocks[-1].height, res.tx_hash,
            )
        logger.info("the finality signature submission loop is closing")

    def _randomness_commitment_loop(self) -> None:
        while not self._quit.wait(self.config.randomness_commit_interval):
            try:
                should, start_height = self.randomness.should_commit_randomness()
            except Exception as err:
                self._report_critical_error(err)
                continue
            if not should:
                continue
            try:
                res = self.randomness.commit_pub_rand(start_height)
            except Exception as err:
                self._report_critical_error(err)
                continue
            if res is not None:
                logger.info(
                    "committed public randomness of %s to the consumer chain (tx %s)",
                    self.btc_pk_hex(), res.tx_hash,
                )
        logger.info("the randomness commitment loop is closing")