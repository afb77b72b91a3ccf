"""Streaming at-rest encryption for transfer payloads.

Layout of an encrypted payload::

    prefix(7) | segment_0 | segment_1 | ... | segment_n

Each segment is AES-256-GCM over at most ``chunk_size`` plaintext bytes plus a
16 byte tag. The nonce of segment ``i`` is ``prefix | i (u32 BE) | last``, where
``last`` is 1 only for the final segment, so truncated, reordered or extended
payloads all fail authentication.
"""
import os
import struct
from typing import BinaryIO, Iterable, Iterator

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from app.services.errors import CorruptedPayload

KEY_SIZE = 32
IV_SIZE = 7
TAG_SIZE = 16
MAX_SEGMENTS = 2**32
# Fixed so that blobs written earlier stay readable
SEGMENT_SIZE = 64 * 1024


def iter_chunks(fileobj: BinaryIO, size: int = SEGMENT_SIZE) -> Iterator[bytes]:
    return iter(lambda: fileobj.read(size), b"")


class Envelope:
    def __init__(self, key: bytes | None = None, chunk_size: int = SEGMENT_SIZE):
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        self.key = key if key is not None else self.generate_key()
        if len(self.key) != KEY_SIZE:
            raise ValueError("encryption key must be 32 bytes")
        self.chunk_size = chunk_size
        self.aesgcm = AESGCM(self.key)

    @staticmethod
    def generate_key() -> bytes:
        return AESGCM.generate_key(bit_length=256)

    def get_key(self) -> bytes:
        return self.key

    def _nonce(self, prefix: bytes, index: int, last: bool) -> bytes:
        if index >= MAX_SEGMENTS:
            raise ValueError("payload too large for a single envelope")
        return prefix + struct.pack(">IB", index, 1 if last else 0)

    def encrypt(self, chunks: Iterable[bytes]) -> Iterator[bytes]:
        """Yield the IV prefix followed by sealed segments.

        Input chunks may be any size; they are re-cut into ``chunk_size``
        segments and at most one segment is buffered at a time.
        """
        prefix = os.urandom(IV_SIZE)
        yield prefix

        index = 0
        buf = bytearray()
        for chunk in chunks:
            buf += chunk
            # Strictly greater: the tail is held back so it can be sealed as last.
            while len(buf) > self.chunk_size:
                segment = bytes(buf[: self.chunk_size])
                del buf[: self.chunk_size]
                yield self.aesgcm.encrypt(self._nonce(prefix, index, False), segment, None)
                index += 1
        yield self.aesgcm.encrypt(self._nonce(prefix, index, True), bytes(buf), None)

    def decrypt(self, chunks: Iterable[bytes]) -> Iterator[bytes]:
        """Yield plaintext per authenticated segment.

        Raises CorruptedPayload on a short prefix, a failed tag or a missing
        final segment. Nothing unauthenticated is ever yielded.
        """
        sealed_size = self.chunk_size + TAG_SIZE
        buf = bytearray()
        prefix = None
        index = 0

        for chunk in chunks:
            buf += chunk
            if prefix is None:
                if len(buf) < IV_SIZE:
                    continue
                prefix = bytes(buf[:IV_SIZE])
                del buf[:IV_SIZE]
            while len(buf) > sealed_size:
                segment = bytes(buf[:sealed_size])
                del buf[:sealed_size]
                yield self._open(prefix, index, False, segment)
                index += 1

        if prefix is None:
            raise CorruptedPayload("ciphertext shorter than IV")
        if len(buf) < TAG_SIZE:
            raise CorruptedPayload("ciphertext truncated")
        yield self._open(prefix, index, True, bytes(buf))

    def _open(self, prefix: bytes, index: int, last: bool, segment: bytes) -> bytes:
        try:
            return self.aesgcm.decrypt(self._nonce(prefix, index, last), segment, None)
        except InvalidTag:
            raise CorruptedPayload(f"segment {index} failed authentication") from None
