"""Tests for the streaming password envelope."""

import pytest

from encryption import MAGIC, CryptoEngine
from errors import AuthenticationFailed


def _chunks(data: bytes, size: int):
    return [data[i:i + size] for i in range(0, len(data), size)] or [b""]


class TestCryptoEngine:

    @pytest.fixture
    def engine(self):
        return CryptoEngine(iterations=1000, chunk_size=16)

    def _seal(self, engine, data: bytes, password: str = "correct horse") -> bytes:
        return b"".join(engine.seal(_chunks(data, 7), password))

    def test_round_trip_across_many_records(self, engine):
        """Plaintext spanning several records comes back unchanged."""
        data = bytes(range(256)) * 3
        sealed = self._seal(engine, data)

        assert sealed.startswith(MAGIC)
        assert b"".join(engine.open(_chunks(sealed, 5), "correct horse")) == data

    def test_round_trip_empty_plaintext(self, engine):
        sealed = self._seal(engine, b"")
        assert b"".join(engine.open([sealed], "correct horse")) == b""

    def test_plaintext_exact_chunk_multiple(self, engine):
        data = b"x" * 48
        sealed = self._seal(engine, data)
        assert b"".join(engine.open([sealed], "correct horse")) == data

    def test_sealed_size_matches_output(self, engine):
        for size in (0, 1, 16, 17, 100):
            sealed = self._seal(engine, b"a" * size)
            assert len(sealed) == engine.sealed_size(size)

    def test_wrong_password_fails(self, engine):
        sealed = self._seal(engine, b"top secret contents")
        with pytest.raises(AuthenticationFailed):
            b"".join(engine.open([sealed], "wrong password"))

    def test_missing_password_fails(self, engine):
        sealed = self._seal(engine, b"top secret contents")
        with pytest.raises(AuthenticationFailed):
            b"".join(engine.open([sealed], ""))

    def test_seal_requires_password(self, engine):
        with pytest.raises(ValueError):
            b"".join(engine.seal([b"data"], ""))

    def test_tampered_ciphertext_fails(self, engine):
        sealed = bytearray(self._seal(engine, b"some data worth protecting"))
        sealed[-1] ^= 0x01
        with pytest.raises(AuthenticationFailed):
            b"".join(engine.open([bytes(sealed)], "correct horse"))

    def test_truncated_stream_fails(self, engine):
        """Dropping the final record must not yield a silently shorter file."""
        data = b"y" * 40
        sealed = self._seal(engine, data)
        last_record = 5 + 16 + (40 - 32)
        with pytest.raises(AuthenticationFailed):
            b"".join(engine.open([sealed[:-last_record]], "correct horse"))

    def test_trailing_garbage_fails(self, engine):
        sealed = self._seal(engine, b"payload")
        with pytest.raises(AuthenticationFailed):
            b"".join(engine.open([sealed + b"extra"], "correct horse"))

    def test_not_an_envelope(self, engine):
        with pytest.raises(AuthenticationFailed):
            b"".join(engine.open([b"plain text that is long enough to hold a header"], "pw"))

    def test_each_seal_uses_fresh_salt_and_nonce(self, engine):
        a = self._seal(engine, b"same")
        b = self._seal(engine, b"same")
        assert a != b

    def test_open_streams_lazily(self, engine):
        """The first plaintext record is available before the rest is read."""
        data = b"z" * 64
        sealed = self._seal(engine, data)

        def feed():
            yield sealed[:31 + 5 + 32]
            raise AssertionError("read past the first record")

        stream = engine.open(feed(), "correct horse")
        assert next(stream) == b"z" * 16
