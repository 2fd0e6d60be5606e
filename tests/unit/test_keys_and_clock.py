"""
Signing keys, signature recovery and ledger clocks.
"""
import base64

import pytest

from autopay.exceptions import ValidationError
from autopay.ledger.clock import Clock, ManualClock, SystemClock
from autopay.ledger.keys import KeypairSigner, recover_signer

SEED = bytes(range(32))


class TestKeys:
    def test_address_shape_and_determinism(self):
        signer = KeypairSigner.from_seed(SEED)
        assert signer.address.startswith("0x")
        assert len(signer.address) == 66
        assert KeypairSigner.from_seed(SEED).address == signer.address
        assert KeypairSigner.from_seed(b"\x01" * 32).address != signer.address

    @pytest.mark.parametrize("secret", [
        SEED,
        b"\x00" + SEED,
    ])
    def test_secret_formats(self, secret):
        expected = KeypairSigner.from_seed(SEED).address
        assert KeypairSigner.from_secret_b64(base64.b64encode(secret).decode()).address == expected

    def test_full_keypair_secret(self):
        signer = KeypairSigner.from_seed(SEED)
        full = SEED + signer.sign(b"")[64:]
        assert KeypairSigner.from_secret_b64(base64.b64encode(full).decode()).address == signer.address

    @pytest.mark.parametrize("secret", ["not base64!!", base64.b64encode(b"short").decode()])
    def test_bad_secret(self, secret):
        with pytest.raises(ValidationError):
            KeypairSigner.from_secret_b64(secret)

    def test_seed_length_checked(self):
        with pytest.raises(ValidationError):
            KeypairSigner.from_seed(b"\x01" * 31)

    def test_recover_signer(self):
        signer = KeypairSigner.from_seed(SEED)
        blob = signer.sign(b"tx bytes")

        assert recover_signer(b"tx bytes", blob) == signer.address
        assert recover_signer(b"other bytes", blob) is None
        assert recover_signer(b"tx bytes", blob[:-1]) is None

    def test_tampered_signature_rejected(self):
        signer = KeypairSigner.from_seed(SEED)
        blob = bytearray(signer.sign(b"tx bytes"))
        blob[0] ^= 0xFF
        assert recover_signer(b"tx bytes", bytes(blob)) is None


class TestClocks:
    def test_manual_clock_advances(self):
        clock = ManualClock(start_ms=1_000)
        clock.advance(ms=500)
        clock.advance(seconds=1.5)
        assert clock.now_ms() == 3_000

    def test_manual_clock_never_goes_back(self):
        clock = ManualClock(start_ms=1_000)
        with pytest.raises(ValueError):
            clock.advance(ms=-1)
        with pytest.raises(ValueError):
            clock.set(999)
        clock.set(5_000)
        assert clock.now_ms() == 5_000

    def test_clocks_satisfy_protocol(self):
        assert isinstance(SystemClock(), Clock)
        assert isinstance(ManualClock(0), Clock)
        assert SystemClock().now_ms() > 1_600_000_000_000
