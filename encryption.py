"""
encryption.py — Password-based streaming envelope for files at rest (version 1).

Layout of a sealed blob:

    header : magic "DVE1" | kdf iterations (u32) | salt (16) | nonce prefix (7)
    record : final flag (u8) | ciphertext length (u32) | AES-256-GCM ciphertext + tag

Each record is at most CHUNK_SIZE plaintext bytes. The record nonce is
prefix | counter (u32) | final flag, and the header is bound in as associated
data, so reordering, truncation, dropped records or a wrong password all fail
the tag check. Version 2 (client-wrapped) files never pass through here.
"""
import os
import struct
from typing import Iterable, Iterator

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from errors import AuthenticationFailed

MAGIC = b"DVE1"
SALT_SIZE = 16
NONCE_PREFIX_SIZE = 7
TAG_SIZE = 16
CHUNK_SIZE = 64 * 1024
DEFAULT_ITERATIONS = 310_000
MAX_ITERATIONS = 10_000_000

_HEADER = struct.Struct(">4sI16s7s")
_RECORD = struct.Struct(">BI")


class _ChunkReader:
    """Reads exact byte counts out of an iterable of arbitrary-sized chunks."""

    def __init__(self, chunks: Iterable[bytes]):
        self._it = iter(chunks)
        self._buf = bytearray()

    def read(self, n: int) -> bytes:
        while len(self._buf) < n:
            try:
                chunk = next(self._it)
            except StopIteration:
                break
            self._buf.extend(chunk)
        out = bytes(self._buf[:n])
        del self._buf[:n]
        return out


class CryptoEngine:

    def __init__(self, iterations: int = DEFAULT_ITERATIONS, chunk_size: int = CHUNK_SIZE):
        self.iterations = iterations
        self.chunk_size = chunk_size

    @staticmethod
    def derive_key(password: str, salt: bytes, iterations: int) -> bytes:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            iterations=iterations,
        )
        return kdf.derive(password.encode("utf-8"))

    @staticmethod
    def _nonce(prefix: bytes, counter: int, final: bool) -> bytes:
        return prefix + struct.pack(">IB", counter, 1 if final else 0)

    def seal(self, plaintext: Iterable[bytes], password: str) -> Iterator[bytes]:
        """Encrypt a byte stream. Yields the header, then one record per chunk."""
        if not password:
            raise ValueError("A password is required to seal a file")
        salt = os.urandom(SALT_SIZE)
        prefix = os.urandom(NONCE_PREFIX_SIZE)
        header = _HEADER.pack(MAGIC, self.iterations, salt, prefix)
        aesgcm = AESGCM(self.derive_key(password, salt, self.iterations))
        yield header

        counter = 0
        buf = bytearray()
        for chunk in plaintext:
            buf.extend(chunk)
            # keep at least one chunk back so the last record can carry the final flag
            while len(buf) > self.chunk_size:
                block = bytes(buf[:self.chunk_size])
                del buf[:self.chunk_size]
                yield self._record(aesgcm, prefix, counter, block, header, final=False)
                counter += 1
        yield self._record(aesgcm, prefix, counter, bytes(buf), header, final=True)

    def _record(self, aesgcm: AESGCM, prefix: bytes, counter: int, block: bytes, header: bytes, final: bool) -> bytes:
        ciphertext = aesgcm.encrypt(self._nonce(prefix, counter, final), block, header)
        return _RECORD.pack(1 if final else 0, len(ciphertext)) + ciphertext

    def open(self, ciphertext: Iterable[bytes], password: str) -> Iterator[bytes]:
        """Decrypt a sealed stream. Raises AuthenticationFailed on any tag or framing error."""
        reader = _ChunkReader(ciphertext)
        header = reader.read(_HEADER.size)
        if len(header) != _HEADER.size:
            raise AuthenticationFailed("Encrypted stream is truncated")
        magic, iterations, salt, prefix = _HEADER.unpack(header)
        if magic != MAGIC or not 0 < iterations <= MAX_ITERATIONS:
            raise AuthenticationFailed("Not a DropVault encrypted stream")
        if not password:
            raise AuthenticationFailed("Password required")

        aesgcm = AESGCM(self.derive_key(password, salt, iterations))
        counter = 0
        while True:
            framing = reader.read(_RECORD.size)
            if len(framing) != _RECORD.size:
                raise AuthenticationFailed("Encrypted stream is truncated")
            flag, length = _RECORD.unpack(framing)
            if flag > 1 or length < TAG_SIZE or length > self.chunk_size + TAG_SIZE:
                raise AuthenticationFailed("Malformed encrypted record")
            body = reader.read(length)
            if len(body) != length:
                raise AuthenticationFailed("Encrypted stream is truncated")
            final = flag == 1
            try:
                block = aesgcm.decrypt(self._nonce(prefix, counter, final), body, header)
            except InvalidTag:
                raise AuthenticationFailed("Wrong password or corrupted data") from None
            if block:
                yield block
            if final:
                break
            counter += 1

        if reader.read(1):
            raise AuthenticationFailed("Trailing data after final record")

    def sealed_size(self, plaintext_size: int) -> int:
        records = max(1, -(-plaintext_size // self.chunk_size))
        return _HEADER.size + records * (_RECORD.size + TAG_SIZE) + plaintext_size

