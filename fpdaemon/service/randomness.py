"""Committing public randomness for a finality provider to the consumer chain."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Protocol

from fpdaemon.service.chain_poller import (
    RETRY_ATTEMPTS,
    RETRY_DELAY,
    ChainPollerConfig,
    with_retry,
)
from fpdaemon.service.signing import (
    EOTSManager,
    hash_for_pub_rand_commit,
    pub_rand_commitment_and_proofs,
)
from fpdaemon.service.state import FpState, PubRandState

logger = logging.getLogger(__name__)


@dataclass
class FpConfig:
    """Settings of a finality provider instance."""

    num_pub_rand: int = 1000
    timestamping_delay_blocks: int = 6000
    batch_submission_size: int = 1000
    signature_submission_interval: float = 1.0
    randomness_commit_interval: float = 30.0
    submission_retry_interval: float = 1.0
    max_submission_retries: int = 20
    poller_config: ChainPollerConfig = field(default_factory=ChainPollerConfig)

    def __post_init__(self) -> None:
        if self.num_pub_rand < 1:
            raise ValueError("the number of public randomness must be positive")
        if self.timestamping_delay_blocks < 0:
            raise ValueError("the timestamping delay cannot be negative")
        if self.batch_submission_size < 1:
            raise ValueError("the batch submission size must be positive")
        if self.max_submission_retries < 0:
            raise ValueError("the maximum number of submission retries cannot be negative")


@dataclass
class TxResponse:
    tx_hash: str
    events: list[Any] = field(default_factory=list)


@dataclass(frozen=True)
class PubRandCommit:
    """A commitment to public randomness for a range of heights."""

    start_height: int
    num_pub_rand: int
    commitment: bytes = b""

    def end_height(self) -> int:
        return self.start_height + self.num_pub_rand - 1

    def validate(self) -> None:
        if self.num_pub_rand < 1:
            raise ValueError(f"NumPubRand must be >= 1, got {self.num_pub_rand}")


@dataclass
class CommitPubRandTiming:
    """Durations, in seconds, of the steps of one randomness commit."""

    get_pub_rand_list_time: float = 0.0
    add_pub_rand_proof_list_time: float = 0.0
    commit_pub_rand_list_time: float = 0.0


class RandomnessConsumer(Protocol):
    def query_latest_block_height(self) -> int: ...

    def query_last_public_rand_commit(self, btc_pk: bytes) -> PubRandCommit | None: ...

    def query_finality_activation_block_height(self) -> int: ...

    def commit_pub_rand_list(
        self,
        btc_pk: bytes,
        start_height: int,
        num_pub_rand: int,
        commitment: bytes,
        sig: bytes,
    ) -> TxResponse: ...


class RandomnessCommitter:
    """Generates, stores, signs and submits public randomness commitments."""

    def __init__(
        self,
        config: FpConfig,
        fp_state: FpState,
        pub_rand_state: PubRandState,
        consumer: RandomnessConsumer,
        eots_manager: EOTSManager,
    ) -> None:
        self.config = config
        self.fp_state = fp_state
        self.pub_rand_state = pub_rand_state
        self.consumer = consumer
        self.eots_manager = eots_manager
        self.retry_attempts = RETRY_ATTEMPTS
        self.retry_delay = RETRY_DELAY

    def get_pub_rand_list(self, start_height: int, num_pub_rand: int) -> list[bytes]:
        return self.eots_manager.create_randomness_pair_list(
            self.fp_state.btc_pk(), self.fp_state.chain_id(), start_height, num_pub_rand
        )

    def sign_pub_rand_commit(
        self, start_height: int, num_pub_rand: int, commitment: bytes
    ) -> bytes:
        msg_hash = hash_for_pub_rand_commit(start_height, num_pub_rand, commitment)
        return self.eots_manager.sign_schnorr_sig(self.fp_state.btc_pk(), msg_hash)

    def _last_committed_pub_rand_with_retry(self) -> PubRandCommit | None:
        def query() -> PubRandCommit | None:
            commit = self.consumer.query_last_public_rand_commit(self.fp_state.btc_pk())
            if commit is not None:
                commit.validate()
            return commit

        def on_retry(n: int, err: Exception) -> None:
            logger.debug(
                "failed to query the last committed public randomness (attempt %d/%d): %s",
                n + 1, self.retry_attempts, err,
            )

        return with_retry(query, self.retry_attempts, self.retry_delay, on_retry)

    def last_committed_height(self) -> int:
        """End height of the last commit on chain, or 0 if there is none."""
        commit = self._last_committed_pub_rand_with_retry()
        return 0 if commit is None else commit.end_height()

    def should_commit_randomness(self) -> tuple[bool, int]:
        """Whether to commit more randomness, and the start height if so.

        Randomness only becomes usable after the estimated timestamping delay,
        so the start height accounts for it.
        """
        last_committed = self.last_committed_height()
        tip_height = self.consumer.query_latest_block_height()
        tip_with_delay = tip_height + self.config.timestamping_delay_blocks

        if last_committed < tip_with_delay:
            start_height = tip_with_delay
        elif last_committed < tip_with_delay + self.config.num_pub_rand:
            start_height = last_committed + 1
        else:
            logger.debug(
                "the finality-provider %s has sufficient public randomness "
                "(tip %d, last committed %d), skip committing more",
                self.fp_state.btc_pk_hex(), tip_height, last_committed,
            )
            return False, 0

        logger.debug(
            "the finality-provider %s should commit randomness (tip %d, last committed %d)",
            self.fp_state.btc_pk_hex(), tip_height, last_committed,
        )
        activation_height = self.consumer.query_finality_activation_block_height()
        return True, max(start_height, activation_height)

    def commit_pub_rand(self, start_height: int) -> TxResponse:
        """Commit a list of randomness starting at start_height.

        Proofs are saved before submission; randomness already stored for a
        height is kept, as the same randomness must never be used twice.
        """
        pub_rand_list = self.get_pub_rand_list(start_height, self.config.num_pub_rand)
        num_pub_rand = len(pub_rand_list)
        commitment, proofs = pub_rand_commitment_and_proofs(pub_rand_list)
        self.pub_rand_state.add_pub_rand_proof_list(
            self.fp_state.btc_pk(),
            self.fp_state.chain_id(),
            start_height,
            self.config.num_pub_rand,
            proofs,
        )
        sig = self.sign_pub_rand_commit(start_height, num_pub_rand, commitment)
        res = self.consumer.commit_pub_rand_list(
            self.fp_state.btc_pk(), start_height, num_pub_rand, commitment, sig
        )
        logger.info(
            "committed public randomness for %s at heights %d-%d",
            self.fp_state.btc_pk_hex(), start_height, start_height + num_pub_rand - 1,
        )
        return res

    def test_commit_pub_rand(self, target_block_height: int) -> None:
        """Manually commit randomness from the last committed height up to a target."""
        last_committed = self.last_committed_height()
        if last_committed >= target_block_height:
            raise ValueError(
                "finality provider has already committed pubrand to target block height "
                f"(pk: {self.fp_state.btc_pk_hex()}, target: {target_block_height}, "
                f"last committed: {last_committed})"
            )
        start_height = 0 if last_committed == 0 else last_committed + 1
        self.test_commit_pub_rand_with_start_height(start_height, target_block_height)

    def test_commit_pub_rand_with_start_height(
        self, start_height: int, target_block_height: int
    ) -> None:
        """Commit batches of randomness from start_height until target is covered."""
        if start_height > target_block_height:
            raise ValueError("start height should not be greater than target block height")
        last_committed = self.last_committed_height()
        if last_committed >= start_height:
            raise ValueError(
                "finality provider has already committed pubrand at the start height "
                f"(pk: {self.fp_state.btc_pk_hex()}, startHeight: {start_height}, "
                f"lastCommittedHeight: {last_committed})"
            )
        logger.info("start committing pubrand from block height %d", start_height)
        while start_height <= target_block_height:
            self.commit_pub_rand(start_height)
            last_committed = start_height + self.config.num_pub_rand - 1
            start_height = last_committed + 1
            logger.info("committed pubrand to block height %d", last_committed)

    def commit_pub_rand_timed(
        self, tip_height: int
    ) -> tuple[TxResponse | None, CommitPubRandTiming | None]:
        """Commit randomness if needed and report how long each step took."""
        last_committed = self.last_committed_height()
        if last_committed == 0:
            start_height = tip_height + 1
        elif last_committed < self.config.timestamping_delay_blocks + tip_height:
            start_height = last_committed + 1
        else:
            logger.debug(
                "the finality-provider %s has sufficient public randomness "
                "(tip %d, last committed %d), skip committing more",
                self.fp_state.btc_pk_hex(), tip_height, last_committed,
            )
            return None, None

        timing = CommitPubRandTiming()
        activation_height = self.consumer.query_finality_activation_block_height()
        start_height = max(start_height, activation_height)

        began = time.perf_counter()
        pub_rand_list = self.get_pub_rand_list(start_height, self.config.num_pub_rand)
        timing.get_pub_rand_list_time = time.perf_counter() - began

        num_pub_rand = len(pub_rand_list)
        commitment, proofs = pub_rand_commitment_and_proofs(pub_rand_list)

        began = time.perf_counter()
        self.pub_rand_state.add_pub_rand_proof_list(
            self.fp_state.btc_pk(),
            self.fp_state.chain_id(),
            start_height,
            self.config.num_pub_rand,
            proofs,
        )
        timing.add_pub_rand_proof_list_time = time.perf_counter() - began

        began = time.perf_counter()
        sig = self.sign_pub_rand_commit(start_height, num_pub_rand, commitment)
        res = self.consumer.commit_pub_rand_list(
            self.fp_state.btc_pk(), start_height, num_pub_rand, commitment, sig
        )
        timing.commit_pub_rand_list_time = time.perf_counter() - began
        return res, timing