"""
Ed25519 keys, ledger addresses and signature blobs.

A signature blob is the 64-byte ed25519 signature followed by the 32-byte public
key, so a verifier can recover the signing address without a key registry.
Addresses are blake2b-256(0x00 || pubkey), hex encoded with a 0x prefix.
"""
import base64
import binascii
import hashlib
from typing import Optional

from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.signature import Signature

from autopay.exceptions import ValidationError

ED25519_FLAG = 0x00
SIGNATURE_LEN = 64
PUBKEY_LEN = 32


def address_from_pubkey(pubkey_bytes: bytes) -> str:
    digest = hashlib.blake2b(bytes([ED25519_FLAG]) + pubkey_bytes, digest_size=32).hexdigest()
    return "0x" + digest


class KeypairSigner:
    """Signs transaction bytes with one ed25519 key."""

    def __init__(self, keypair: Keypair):
        self._keypair = keypair
        self._pubkey_bytes = bytes(keypair.pubkey())
        self.address = address_from_pubkey(self._pubkey_bytes)

    @classmethod
    def generate(cls) -> "KeypairSigner":
        return cls(Keypair())

    @classmethod
    def from_seed(cls, seed: bytes) -> "KeypairSigner":
        if len(seed) != 32:
            raise ValidationError(f"ed25519 seed must be 32 bytes, got {len(seed)}")
        return cls(Keypair.from_seed(seed))

    @classmethod
    def from_secret_b64(cls, secret: str) -> "KeypairSigner":
        """
        Load a key from a base64 secret.

        Accepts a 32-byte seed, a 33-byte flagged seed (0x00 || seed) or a
        64-byte seed||pubkey secret.
        """
        try:
            raw = base64.b64decode(secret.strip(), validate=True)
        except (binascii.Error, ValueError) as e:
            raise ValidationError("Private key is not valid base64") from e

        if len(raw) == 33 and raw[0] == ED25519_FLAG:
            raw = raw[1:]
        if len(raw) == 32:
            return cls(Keypair.from_seed(raw))
        if len(raw) == 64:
            return cls(Keypair.from_bytes(raw))
        raise ValidationError(f"Unsupported private key length: {len(raw)} bytes")

    def sign(self, message: bytes) -> bytes:
        signature = self._keypair.sign_message(message)
        return bytes(signature) + self._pubkey_bytes

    def __repr__(self) -> str:
        return f"KeypairSigner(address={self.address})"


def recover_signer(message: bytes, blob: bytes) -> Optional[str]:
    """Return the address that produced blob over message, or None if invalid."""
    if len(blob) != SIGNATURE_LEN + PUBKEY_LEN:
        return None
    sig_bytes, pubkey_bytes = blob[:SIGNATURE_LEN], blob[SIGNATURE_LEN:]
    try:
        signature = Signature.from_bytes(sig_bytes)
        pubkey = Pubkey.from_bytes(pubkey_bytes)
    except ValueError:
        return None
    if not signature.verify(pubkey, message):
        return None
    return address_from_pubkey(pubkey_bytes)
