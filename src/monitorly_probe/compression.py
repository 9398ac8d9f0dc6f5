"""gzip helpers for request bodies."""

import gzip
import zlib

# Bodies larger than this are compressed before sending
COMPRESSION_THRESHOLD = 1024


def should_compress(body: bytes) -> bool:
    return len(body) > COMPRESSION_THRESHOLD


def compress(data: bytes) -> bytes:
    """gzip-compress data. Raises OSError if the compressor fails."""
    try:
        return gzip.compress(data or b"")
    except zlib.error as e:
        raise OSError(f"gzip compression failed: {e}") from e


def decompress(data: bytes) -> bytes:
    return gzip.decompress(data)
