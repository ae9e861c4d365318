"""
Compression for the persisted cache map.

Compressed values are stored as a "z:" prefixed base64 string. Anything
without the prefix is read as raw JSON, so maps written before compression
was enabled still load.
"""
import base64
import binascii
import threading
import zlib
from dataclasses import dataclass
from typing import Any, Dict

COMPRESS_PREFIX = "z:"

# Compressed output is kept only if it is at most 90% of the raw size
MIN_COMPRESSION_RATIO = 0.9


@dataclass
class CompressionResult:
    data: str
    compressed: bool
    original_size: int
    compressed_size: int

    @property
    def ratio(self) -> float:
        if self.original_size == 0:
            return 1.0
        return self.compressed_size / self.original_size


def compress_text(text: str, level: int = 6) -> CompressionResult:
    """Compress text for storage, keeping it raw if that saves under 10%."""
    original_size = len(text.encode("utf-8"))
    encoded = COMPRESS_PREFIX + base64.b64encode(
        zlib.compress(text.encode("utf-8"), level=level)
    ).decode("ascii")
    compressed_size = len(encoded)

    if original_size > 0 and compressed_size / original_size < MIN_COMPRESSION_RATIO:
        return CompressionResult(encoded, True, original_size, compressed_size)
    return CompressionResult(text, False, original_size, original_size)


def is_compressed(data: str) -> bool:
    return data.startswith(COMPRESS_PREFIX)


def decompress_text(data: str) -> str:
    """
    Return the raw text for a stored value, compressed or not.

    Raises:
        ValueError: if a prefixed value does not decode
    """
    if not is_compressed(data):
        return data
    try:
        compressed = base64.b64decode(data[len(COMPRESS_PREFIX):], validate=True)
        return zlib.decompress(compressed).decode("utf-8")
    except (binascii.Error, zlib.error, UnicodeDecodeError) as e:
        raise ValueError(f"Corrupt compressed cache data: {e}") from e


def format_bytes(size: int) -> str:
    if size == 0:
        return "0 Bytes"
    value = float(size)
    for unit in ("Bytes", "KB", "MB"):
        if value < 1024:
            return f"{round(value, 2):g} {unit}"
        value /= 1024
    return f"{round(value, 2):g} GB"


class CompressionMetrics:
    """Running totals over every save and load of the cache map."""

    def __init__(self):
        self._lock = threading.Lock()
        self.reset()

    def reset(self) -> None:
        with self._lock:
            self._compressions = 0
            self._compressed_writes = 0
            self._decompressions = 0
            self._decompression_successes = 0
            self._original_bytes = 0
            self._stored_bytes = 0

    def record_compression(self, result: CompressionResult) -> None:
        with self._lock:
            self._compressions += 1
            self._original_bytes += result.original_size
            self._stored_bytes += result.compressed_size
            if result.compressed:
                self._compressed_writes += 1

    def record_decompression(self, success: bool) -> None:
        with self._lock:
            self._decompressions += 1
            if success:
                self._decompression_successes += 1

    def to_dict(self) -> Dict[str, Any]:
        with self._lock:
            ratio = self._stored_bytes / self._original_bytes if self._original_bytes else 1.0
            return {
                "totalCompressions": self._compressions,
                "totalDecompressions": self._decompressions,
                "totalOriginalSize": self._original_bytes,
                "totalCompressedSize": self._stored_bytes,
                "averageCompressionRatio": round(ratio, 3),
                "compressionSuccessRate": (
                    self._compressed_writes / self._compressions if self._compressions else 0
                ),
                "decompressionSuccessRate": (
                    self._decompression_successes / self._decompressions if self._decompressions else 0
                ),
                "spaceSaved": format_bytes(max(0, self._original_bytes - self._stored_bytes)),
            }
