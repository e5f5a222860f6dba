"""
Stream helpers for copying files with optional gzip compression.

Every copy computes the SHA-1 of the uncompressed content as it streams, so
a checksum never requires a second pass over the data.
"""

import gzip
import hashlib
import zlib
from typing import BinaryIO, Callable, Optional, Tuple

from backrest.errors import TransferFailure


COMPRESS_EXTENSION = 'gz'
BUFFER_SIZE = 4 * 1024 * 1024


class CompressionError(TransferFailure):
    """Raised when compressing or decompressing a stream fails."""
    pass


def copy_stream(
    source: BinaryIO,
    destination: BinaryIO,
    compress: bool = False,
    decompress: bool = False,
    cancellation_check: Optional[Callable[[], None]] = None
) -> Tuple[int, str]:
    """
    Copy a stream, optionally decompressing the input and/or compressing the output.

    Args:
        source: Readable binary stream
        destination: Writable binary stream
        compress: Gzip the data written to destination
        decompress: Gunzip the data read from source
        cancellation_check: Called before each chunk; raises to abort

    Returns:
        Tuple of (uncompressed size in bytes, SHA-1 hex digest)

    Raises:
        CompressionError: If the gzip stream is invalid or cannot be written
    """
    hasher = hashlib.sha1()
    size = 0

    reader = gzip.GzipFile(fileobj=source, mode='rb') if decompress else source
    writer = gzip.GzipFile(fileobj=destination, mode='wb', compresslevel=6) if compress else destination

    try:
        while True:
            if cancellation_check:
                cancellation_check()

            chunk = reader.read(BUFFER_SIZE)
            if not chunk:
                break

            hasher.update(chunk)
            writer.write(chunk)
            size += len(chunk)

        # Closing the gzip wrapper flushes the trailer but leaves the
        # underlying file open
        if compress:
            writer.close()

    except (EOFError, zlib.error, gzip.BadGzipFile) as e:
        raise CompressionError(f"Invalid compressed stream: {e}")

    return size, hasher.hexdigest()


def stream_hash(source: BinaryIO, decompress: bool = False) -> str:
    """Return the SHA-1 hex digest of a stream's (uncompressed) content."""
    hasher = hashlib.sha1()
    reader = gzip.GzipFile(fileobj=source, mode='rb') if decompress else source

    try:
        for chunk in iter(lambda: reader.read(BUFFER_SIZE), b''):
            hasher.update(chunk)
    except (EOFError, zlib.error, gzip.BadGzipFile) as e:
        raise CompressionError(f"Invalid compressed stream: {e}")

    return hasher.hexdigest()


def is_compressed(filename: str) -> bool:
    return filename.endswith(f'.{COMPRESS_EXTENSION}')


def add_compress_extension(filename: str) -> str:
    return f'{filename}.{COMPRESS_EXTENSION}'
