"""Messages to sign, randomness commitments and a local EOTS key manager."""

from __future__ import annotations

import hashlib
import hmac
import struct
import threading
from collections.abc import Iterable

_P = 2**256 - 2**32 - 977
_N = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141
_G = (
    0x79BE667EF9DCBBAC55A06295CE870B07029BFCDB2DCE28D959F2815B16F81798,
    0x483ADA7726A3C4655DA4FBFC0E1108A8FD17B448A68554199C47D08FFB10D4B8,
)

_Point = tuple[int, int]

_PROOF_HEADER = struct.Struct(">QQI")
_HASH_LEN = 32


def _sha256(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


def _be64(value: int) -> bytes:
    return value.to_bytes(8, "big")


def hash_for_pub_rand_commit(start_height: int, num_pub_rand: int, commitment: bytes) -> bytes:
    """The hash signed when committing a list of public randomness."""
    return _sha256(_be64(start_height) + _be64(num_pub_rand) + bytes(commitment))


def msg_for_vote(block_height: int, block_hash: bytes) -> bytes:
    """The message a finality vote signs: big-endian height followed by the block hash."""
    return _be64(block_height) + bytes(block_hash)


# Merkle tree with 0x00 / 0x01 domain-separated leaf and inner hashes.

def _leaf_hash(leaf: bytes) -> bytes:
    return _sha256(b"\x00" + leaf)


def _inner_hash(left: bytes, right: bytes) -> bytes:
    return _sha256(b"\x01" + left + right)


def _split_point(n: int) -> int:
    """Largest power of two strictly below n."""
    return 1 << ((n - 1).bit_length() - 1)


def _build_tree(leaf_hashes: list[bytes]) -> tuple[bytes, list[list[bytes]]]:
    if len(leaf_hashes) == 1:
        return leaf_hashes[0], [[]]
    k = _split_point(len(leaf_hashes))
    left_root, left_aunts = _build_tree(leaf_hashes[:k])
    right_root, right_aunts = _build_tree(leaf_hashes[k:])
    aunts = [a + [right_root] for a in left_aunts] + [a + [left_root] for a in right_aunts]
    return _inner_hash(left_root, right_root), aunts


def _encode_proof(total: int, index: int, leaf_hash: bytes, aunts: list[bytes]) -> bytes:
    return _PROOF_HEADER.pack(total, index, len(aunts)) + leaf_hash + b"".join(aunts)


def _decode_proof(data: bytes) -> tuple[int, int, bytes, list[bytes]]:
    data = bytes(data)
    if len(data) < _PROOF_HEADER.size + _HASH_LEN:
        raise ValueError("proof is too short")
    total, index, count = _PROOF_HEADER.unpack_from(data)
    body = data[_PROOF_HEADER.size:]
    if len(body) != _HASH_LEN * (count + 1):
        raise ValueError("proof has a wrong length")
    leaf_hash = body[:_HASH_LEN]
    aunts = [body[i:i + _HASH_LEN] for i in range(_HASH_LEN, len(body), _HASH_LEN)]
    return total, index, leaf_hash, aunts


def _root_from_aunts(index: int, total: int, leaf_hash: bytes, aunts: list[bytes]) -> bytes | None:
    if total <= 0 or not 0 <= index < total:
        return None
    if total == 1:
        return leaf_hash if not aunts else None
    if not aunts:
        return None
    num_left = _split_point(total)
    if index < num_left:
        left = _root_from_aunts(index, num_left, leaf_hash, aunts[:-1])
        return None if left is None else _inner_hash(left, aunts[-1])
    right = _root_from_aunts(index - num_left, total - num_left, leaf_hash, aunts[:-1])
    return None if right is None else _inner_hash(aunts[-1], right)


def pub_rand_commitment_and_proofs(pub_rand_list: Iterable[bytes]) -> tuple[bytes, list[bytes]]:
    """Return the Merkle root over the public randomness and an encoded proof per item."""
    leaves = [bytes(pr) for pr in pub_rand_list]
    if not leaves:
        return _sha256(b""), []
    root, aunts = _build_tree([_leaf_hash(leaf) for leaf in leaves])
    total = len(leaves)
    proofs = [
        _encode_proof(total, index, _leaf_hash(leaf), trail)
        for index, (leaf, trail) in enumerate(zip(leaves, aunts))
    ]
    return root, proofs


def verify_proof(root: bytes, leaf: bytes, proof: bytes) -> bool:
    """Check that leaf is included under root according to an encoded proof."""
    try:
        total, index, leaf_hash, aunts = _decode_proof(proof)
    except (ValueError, struct.error):
        return False
    if leaf_hash != _leaf_hash(bytes(leaf)):
        return False
    computed = _root_from_aunts(index, total, leaf_hash, aunts)
    return computed is not None and hmac.compare_digest(computed, bytes(root))


# secp256k1 and BIP-340 Schnorr signatures.

def _point_add(a: _Point | None, b: _Point | None) -> _Point | None:
    if a is None:
        return b
    if b is None:
        return a
    if a[0] == b[0] and a[1] != b[1]:
        return None
    if a == b:
        lam = 3 * a[0] * a[0] * pow(2 * a[1], -1, _P) % _P
    else:
        lam = (b[1] - a[1]) * pow(b[0] - a[0], -1, _P) % _P
    x = (lam * lam - a[0] - b[0]) % _P
    return x, (lam * (a[0] - x) - a[1]) % _P


def _point_mul(k: int, point: _Point = _G) -> _Point:
    result: _Point | None = None
    addend: _Point | None = point
    while k:
        if k & 1:
            result = _point_add(result, addend)
        addend = _point_add(addend, addend)
        k >>= 1
    if result is None:
        raise ValueError("scalar multiplication gave the point at infinity")
    return result


def _tagged_hash(tag: str, data: bytes) -> bytes:
    tag_hash = _sha256(tag.encode())
    return _sha256(tag_hash + tag_hash + data)


def _scalar(data: bytes) -> int:
    return int.from_bytes(data, "big") % _N


class EOTSManager:
    """Holds EOTS keys locally and signs with them.

    Private randomness is derived deterministically from the key, the chain id
    and the height, so signing two messages at one height reveals the key.
    """

    def __init__(self, private_keys: Iterable[bytes | int]) -> None:
        self._keys: dict[bytes, int] = {}
        for raw in private_keys:
            d = int.from_bytes(raw, "big") if isinstance(raw, (bytes, bytearray)) else int(raw)
            if not 0 < d < _N:
                raise ValueError("private key out of range")
            point = _point_mul(d)
            if point[1] % 2:
                d = _N - d
            self._keys[point[0].to_bytes(32, "big")] = d
        self.public_keys: tuple[bytes, ...] = tuple(self._keys)
        self._closed = False
        self._lock = threading.Lock()

    def __enter__(self) -> EOTSManager:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _key(self, pk: bytes) -> int:
        with self._lock:
            if self._closed:
                raise RuntimeError("the EOTS manager is closed")
        try:
            return self._keys[bytes(pk)]
        except KeyError:
            raise KeyError(f"no EOTS key for public key {bytes(pk).hex()}") from None

    @staticmethod
    def _private_rand(d: int, chain_id: bytes, height: int) -> tuple[int, bytes]:
        counter = 0
        while True:
            seed = b"eots-randomness" + bytes(chain_id) + _be64(height) + bytes([counter])
            k = _scalar(hmac.new(d.to_bytes(32, "big"), seed, hashlib.sha256).digest())
            if k:
                break
            counter += 1
        r = _point_mul(k)
        if r[1] % 2:
            k = _N - k
        return k, r[0].to_bytes(32, "big")

    def create_randomness_pair_list(
        self, pk: bytes, chain_id: bytes | str, start_height: int, num: int
    ) -> list[bytes]:
        """Public randomness (x-coordinates) for num consecutive heights."""
        d = self._key(pk)
        chain = chain_id.encode() if isinstance(chain_id, str) else bytes(chain_id)
        return [
            self._private_rand(d, chain, height)[1]
            for height in range(start_height, start_height + num)
        ]

    def sign_schnorr_sig(self, pk: bytes, msg: bytes) -> bytes:
        """A 64-byte BIP-340 signature over a 32-byte message."""
        msg = bytes(msg)
        if len(msg) != 32:
            raise ValueError("the message to sign must be 32 bytes")
        d = self._key(pk)
        pk_x = bytes(pk)
        aux = _tagged_hash("BIP0340/aux", bytes(32))
        t = bytes(a ^ b for a, b in zip(d.to_bytes(32, "big"), aux))
        k = _scalar(_tagged_hash("BIP0340/nonce", t + pk_x + msg))
        if k == 0:
            raise ValueError("failed to derive a signing nonce")
        r = _point_mul(k)
        if r[1] % 2:
            k = _N - k
        r_x = r[0].to_bytes(32, "big")
        e = _scalar(_tagged_hash("BIP0340/challenge", r_x + pk_x + msg))
        return r_x + ((k + e * d) % _N).to_bytes(32, "big")

    def sign_eots(self, pk: bytes, chain_id: bytes | str, msg: bytes, height: int) -> int:
        """An EOTS signature scalar over msg with the randomness of the given height."""
        d = self._key(pk)
        chain = chain_id.encode() if isinstance(chain_id, str) else bytes(chain_id)
        k, r_x = self._private_rand(d, chain, height)
        e = _scalar(_tagged_hash("BIP0340/challenge", r_x + bytes(pk) + _sha256(bytes(msg))))
        return (k + e * d) % _N

    def close(self) -> None:
        with self._lock:
            self._closed = True