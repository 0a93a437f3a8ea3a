"""Signing and submitting finality votes for blocks of the consumer chain."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Sequence
from typing import Protocol

from fpdaemon.service.chain_poller import RETRY_ATTEMPTS, RETRY_DELAY, BlockInfo, with_retry
from fpdaemon.service.errors import (
    ExpectedError,
    FinalityProviderError,
    FinalityProviderJailed,
    FinalityProviderShutDown,
    FinalityProviderSlashed,
    UnrecoverableError,
)
from fpdaemon.service.randomness import FpConfig, RandomnessCommitter, TxResponse
from fpdaemon.service.signing import EOTSManager, msg_for_vote
from fpdaemon.service.state import FpState, PubRandState
from fpdaemon.store.storedfp import FinalityProviderStatus

logger = logging.getLogger(__name__)

_MAX_BATCH = 2**32 - 1


class VotingConsumer(Protocol):
    def query_finality_provider_has_power(self, btc_pk: bytes, height: int) -> bool: ...

    def query_block(self, height: int) -> BlockInfo: ...

    def submit_batch_finality_sigs(
        self,
        btc_pk: bytes,
        blocks: Sequence[BlockInfo],
        pub_rand_list: Sequence[bytes],
        proof_list: Sequence[bytes],
        sig_list: Sequence[int],
    ) -> TxResponse: ...


class FinalityVoter:
    """Picks the blocks a finality provider votes on and submits its signatures."""

    def __init__(
        self,
        config: FpConfig,
        fp_state: FpState,
        pub_rand_state: PubRandState,
        consumer: VotingConsumer,
        eots_manager: EOTSManager,
        randomness: RandomnessCommitter,
    ) -> None:
        self.config = config
        self.fp_state = fp_state
        self.pub_rand_state = pub_rand_state
        self.consumer = consumer
        self.eots_manager = eots_manager
        self.randomness = randomness
        self.retry_attempts = RETRY_ATTEMPTS
        self.retry_delay = RETRY_DELAY

    def sign_finality_sig(self, block: BlockInfo) -> int:
        """The EOTS signature scalar over the vote message for block."""
        msg = msg_for_vote(block.height, block.hash)
        return self.eots_manager.sign_eots(
            self.fp_state.btc_pk(), self.fp_state.chain_id(), msg, block.height
        )

    def voting_power_with_retry(self, height: int) -> bool:
        def query() -> bool:
            return bool(
                self.consumer.query_finality_provider_has_power(self.fp_state.btc_pk(), height)
            )

        def on_retry(n: int, err: Exception) -> None:
            logger.debug(
                "failed to query the voting power (attempt %d/%d): %s",
                n + 1, self.retry_attempts, err,
            )

        return with_retry(query, self.retry_attempts, self.retry_delay, on_retry)

    def process_blocks_to_vote(self, blocks: Sequence[BlockInfo]) -> list[BlockInfo]:
        """Keep the blocks worth voting on and update the status from voting power."""
        selected: list[BlockInfo] = []
        has_power = False
        for block in blocks:
            last_voted = self.fp_state.last_voted_height()
            if block.height <= last_voted:
                logger.debug(
                    "block %d is not above the last voted height %d",
                    block.height, last_voted,
                )
                continue
            try:
                has_power = self.voting_power_with_retry(block.height)
            except Exception as err:
                raise RuntimeError(
                    f"failed to get voting power for height {block.height}: {err}"
                ) from err
            if not has_power:
                logger.debug(
                    "the finality-provider %s has no voting power at height %d",
                    self.fp_state.btc_pk_hex(), block.height,
                )
                continue
            selected.append(block)

        status = self.fp_state.status()
        if has_power and status != FinalityProviderStatus.ACTIVE:
            self.fp_state.set_status(FinalityProviderStatus.ACTIVE)
        if not has_power and status == FinalityProviderStatus.ACTIVE:
            self.fp_state.set_status(FinalityProviderStatus.INACTIVE)
        return selected

    def submit_finality_signature(self, block: BlockInfo) -> TxResponse:
        return self.submit_batch_finality_signatures([block])

    def submit_batch_finality_signatures(self, blocks: Sequence[BlockInfo]) -> TxResponse:
        """Sign and submit votes for blocks given in ascending height order."""
        blocks = list(blocks)
        if not blocks:
            raise ValueError("should not submit batch finality signature with zero block")
        if len(blocks) > _MAX_BATCH:
            raise ValueError("should not submit batch finality signature with too many blocks")

        count = len(blocks)
        start = blocks[0].height
        pub_rand_list = self.randomness.get_pub_rand_list(start, count)
        proofs = self.pub_rand_state.get_pub_rand_proof_list(
            self.fp_state.btc_pk(), self.fp_state.chain_id(), start, count
        )
        sigs = [self.sign_finality_sig(block) for block in blocks]

        try:
            res = self.consumer.submit_batch_finality_sigs(
                self.fp_state.btc_pk(), blocks, pub_rand_list, proofs, sigs
            )
        except Exception as err:
            message = str(err)
            if "jailed" in message:
                raise FinalityProviderJailed() from err
            if "slashed" in message:
                raise FinalityProviderSlashed() from err
            raise

        self.fp_state.set_last_voted_height(blocks[-1].height)
        return res

    def retry_submit_sigs_until_finalized(
        self,
        target_blocks: Sequence[BlockInfo],
        stop_event: threading.Event | None = None,
    ) -> TxResponse | None:
        """Submit votes until accepted or the target block is finalized.

        Returns None when no vote is needed any more.
        """
        target_blocks = list(target_blocks)
        if not target_blocks:
            raise ValueError("cannot send signatures for empty blocks")
        target_height = target_blocks[-1].height
        failed_cycles = 0

        while True:
            try:
                return self.submit_batch_finality_signatures(target_blocks)
            except UnrecoverableError:
                raise
            except ExpectedError:
                return None
            except Exception as err:
                logger.debug(
                    "failed to submit finality signature for %d-%d (failures: %d): %s",
                    target_blocks[0].height, target_height, failed_cycles, err,
                )
                failed_cycles += 1
                if failed_cycles > self.config.max_submission_retries:
                    message = f"reached max failed cycles with err: {err}"
                    if isinstance(err, FinalityProviderError):
                        raise type(err)(message) from err
                    raise RuntimeError(message) from err

            try:
                finalized = self.check_block_finalization(target_height)
            except Exception as err:
                raise RuntimeError(
                    f"failed to query block finalization at height {target_height}: {err}"
                ) from err
            if finalized:
                logger.debug(
                    "the block %d is already finalized, skip submission", target_height
                )
                return None

            interval = self.config.submission_retry_interval
            if stop_event is not None:
                if stop_event.wait(interval):
                    raise FinalityProviderShutDown()
            else:
                time.sleep(interval)

    def check_block_finalization(self, height: int) -> bool:
        return bool(self.consumer.query_block(height).finalized)