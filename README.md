# fpdaemon

The working core of a finality provider. It keeps the provider's record and
its public randomness proofs in a local key-value store, follows a consumer
chain block by block, commits public randomness ahead of the chain tip and
submits finality votes for new blocks.

The package uses only the standard library.

## Layout

### `fpdaemon.store`

- `backend.KVBackend(path)` — a key-value store kept in a SQLite file (or in
  memory with `":memory:"`), organised in named buckets. Keys are returned in
  byte order by `items(bucket, prefix)`; `transaction()` is a context manager
  that applies a group of writes together or not at all, and may be nested.
- `storedfp` — the data model: `FinalityProviderStatus` (`REGISTERED`,
  `ACTIVE`, `INACTIVE`, `SLASHED`, `JAILED`), `Description`,
  `CommissionRates`, `CommissionInfo`, `FinalityProviderInfo` and
  `StoredFinalityProvider`. Commission values are decimals with at most 18
  fractional digits; BTC public keys are 32-byte x-only secp256k1 keys and are
  checked to lie on the curve.
- `fpstore.FinalityProviderStore` — creates finality providers (a second
  creation with the same key raises `DuplicateFinalityProvider`), looks them up
  (`FinalityProviderNotFound` when absent), lists them, and updates status,
  description, commission and last voted height. The last voted height only
  ever grows. `update_fp_status_from_voting_power` leaves a slashed provider
  slashed, makes one with power active, and turns an active one without power
  inactive.
- `pub_rand.PubRandProofStore` — stores one inclusion proof per height under
  the key `chain_id || pk || height` (height big-endian, eight bytes; see
  `get_key`, `get_prefix_key`, `build_keys`). Proofs already stored for a
  height are kept. It reads single proofs or ranges (every height in a range
  must be present) and removes every proof up to a target height.
- `errors` — `StoreError` and its subclasses.

### `fpdaemon.service`

- `signing` — the formats that are signed (`msg_for_vote`,
  `hash_for_pub_rand_commit`), the Merkle commitment over a list of public
  randomness (`pub_rand_commitment_and_proofs`, `verify_proof`), and
  `EOTSManager`, which holds EOTS private keys in memory and produces public
  randomness, BIP-340 Schnorr signatures and EOTS signatures. Its randomness is
  derived from the key, chain id and height, so signing two different messages
  at one height exposes the key.
- `state` — `FpState`, a thread-safe view of the stored provider that writes
  changes through to the store, and `PubRandState` over the proof store.
- `errors` — `FinalityProviderShutDown`, `FinalityProviderJailed`,
  `FinalityProviderSlashed`, `UnrecoverableError`, `ExpectedError` and
  `CriticalError`.
- `chain_poller` — `ChainPoller` runs in a background thread, waits for
  staking activation, then fetches blocks from the consumer chain in order and
  hands them out through `get_block(timeout)` or `get_nowait()`. Queries are
  retried with `with_retry`; after too many failed cycles in a row the thread
  ends and sets `failure`.
- `randomness.RandomnessCommitter` — decides when more public randomness is
  needed (`should_commit_randomness`), commits it (`commit_pub_rand`), offers
  manual commits up to a target height (`test_commit_pub_rand`,
  `test_commit_pub_rand_with_start_height`), and `commit_pub_rand_timed`,
  which reports the time spent in each step. `FpConfig` holds the instance
  settings.
- `voting.FinalityVoter` — picks the blocks the provider has voting power
  for, signs and submits them in batches, and retries until the votes are
  accepted or the target block is already finalized.
- `instance.FinalityProviderInstance` — ties the above together: it works out
  the start height, starts the poller, and runs the voting and randomness
  loops until stopped. It refuses a provider that is already slashed. Critical
  failures are put as `CriticalError` objects on the queue it was given.

## Example

```python
from fpdaemon.store.backend import KVBackend
from fpdaemon.store.pub_rand import PubRandProofStore, get_key

backend = KVBackend("fp.db")
proofs = PubRandProofStore(backend)

key = get_key(b"test-chain", bytes(32), 7)
assert key.endswith((7).to_bytes(8, "big"))

proofs.add_pub_rand_proof_list(b"test-chain", bytes(32), 1, 2, [b"p1", b"p2"])
assert proofs.get_pub_rand_proof_list(b"test-chain", bytes(32), 1, 2) == [b"p1", b"p2"]

backend.close()
```

A running provider is built from a `FinalityProviderStore` holding the
provider's record, a `PubRandProofStore`, a consumer-chain client and an
`EOTSManager` holding the provider's key:

```python
import queue

from fpdaemon.service.instance import FinalityProviderInstance
from fpdaemon.service.randomness import FpConfig

critical_errors = queue.Queue()
instance = FinalityProviderInstance(
    btc_pk, FpConfig(), fp_store, pub_rand_store, consumer, eots_manager, critical_errors
)
with instance:
    ...  # polling, voting and randomness commits run in the background
```

## What the package does not do

- It has no client for any chain. The consumer-chain client is an object you
  supply; `instance.ConsumerController` lists the methods it must have.
- It does not register, edit or unjail finality providers on a chain; it only
  records them locally.
- It has no RPC server, no metrics endpoint and no command-line program.
- `EOTSManager` keeps keys in memory only; it does not create, import or
  persist keys in a keyring.

## Tests

The test suite uses pytest and is installed with the `test` extra.