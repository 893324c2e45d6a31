#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
blockdelta: Streaming rsync-style Block Delta Synchronization
=============================================================

Produce a compact patch that turns a base file into a new version of it, and
apply that patch on a machine that only holds the base file. Only the blocks
the receiver does not already have travel in the patch.

Quick Start:
-----------
    >>> from blockdelta import DeltaEngine
    >>>
    >>> engine = DeltaEngine(block_size=4096)
    >>> signatures = engine.fingerprint(original_data)
    >>> delta = engine.diff(signatures, modified_data)
    >>> reconstructed = engine.patch(original_data, delta.operations, delta.digest)
    >>> assert reconstructed == modified_data

Algorithm:
---------
    1. Fingerprint: split the base file into fixed-size blocks and record a
       weak (rolling) and a strong (cryptographic) checksum per block.
    2. Lookup table: index the fingerprints by weak checksum.
    3. Sync: slide a block-sized window over the new data one byte at a time,
       updating the weak checksum in O(1). A weak hit is confirmed with the
       strong hash and emitted as a Copy; everything else becomes Literal data.
    4. Apply: replay Copy/Literal operations against the base file and verify
       the whole-output digest against the one computed while encoding.

Every stage is a lazy generator. The CLI runs them as threads connected by
bounded queues, so memory stays proportional to the block size no matter how
large the files are, and a single cancellation event stops the whole pipeline.

CLI Usage:
---------
    $ blockdelta --file base.iso fpgen
    $ blockdelta --file base.iso --in new.iso --out new.patch diff
    $ blockdelta --file base.iso --in new.patch --out rebuilt.iso patch
    $ cat new.iso | blockdelta -f base.iso --compress zstd diff > new.patch

References:
----------
    [1] Tridgell & Mackerras (1996): The rsync algorithm
        https://rsync.samba.org/tech_report/
"""

from __future__ import annotations

__version__ = "1.0.0"
__license__ = "GPL-3.0-or-later"

# Public API exports
__all__ = [
    # Main classes
    'DeltaEngine',
    'RollingChecksum',
    'LookupTable',
    'ChecksumType',
    'ChecksumRegistry',
    'CompressionType',

    # Data structures
    'BlockSignature',
    'TableEntry',
    'CopyOperation',
    'LiteralOperation',
    'ErrorOperation',
    'BlockOperation',
    'DeltaResult',
    'ApplyResult',
    'SyncStats',

    # Streaming stages
    'iter_signatures',
    'iter_operations',
    'apply_operations',

    # Pipeline
    'Channel',
    'Stage',

    # Artifacts
    'FingerprintWriter',
    'FingerprintReader',
    'PatchWriter',
    'PatchReader',

    # Sessions
    'fingerprint_path',
    'generate_fingerprint',
    'make_diff',
    'apply_patch',

    # Exceptions
    'DeltaSyncError',
    'ValidationError',
    'FileIOError',
    'DecodeError',
    'PatchError',
    'OperationCancelled',
    'DataIntegrityError',

    # Configuration
    'Config',
    'SessionConfig',
    'Colors',
    'ProgressBar',
    'validate_block_size',

    # CLI
    'create_parser',
    'main',
]

import os
import sys
import zlib
import time
import queue
import signal
import struct
import hashlib
import logging
import argparse
import threading
from io import BytesIO
from itertools import accumulate
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import (
    Any, BinaryIO, Callable, ClassVar, Dict, Generic, Iterable, Iterator,
    List, Optional, Protocol, Tuple, TypeVar, Union, cast
)

import xxhash
import lz4.frame  # type: ignore[import]
import zstandard  # type: ignore[import]

_lz4_frame: Any = cast(Any, lz4.frame)
_zstandard: Any = cast(Any, zstandard)

T = TypeVar('T')


class ChecksumAccumulator(Protocol):
    """Protocol for incremental digest objects (hashlib and xxhash both fit)."""
    def update(self, data: bytes) -> None: ...
    def digest(self) -> bytes: ...


# ============================================================================
# CONSTANTS
# ============================================================================

MIN_BLOCK_SIZE = 1024
DEFAULT_BLOCK_SIZE = 6 * 1024
MAX_BLOCK_SIZE = 1 << 24     # 16 MiB, keeps a single Copy read bounded

FINGERPRINT_SUFFIX = ".fingerprint"

FINGERPRINT_MAGIC = b"BDFP"
PATCH_MAGIC = b"BDPT"
FORMAT_VERSION = 1

# Record tags inside an artifact body
TAG_SIGNATURE = b"S"
TAG_COPY = b"C"
TAG_LITERAL = b"L"
TAG_END = b"E"

_HEADER = struct.Struct("<4sBBBI")      # magic, version, compression, checksum, block_size
_SIGNATURE = struct.Struct("<QIB")      # index, weak, strong length
_COPY = struct.Struct("<Q")             # base index
_LITERAL = struct.Struct("<I")          # data length
_COUNT = struct.Struct("<Q")            # total blocks
_DIGEST = struct.Struct("<B")           # digest length

_WEAK_MASK = 0xFFFF


# ============================================================================
# GLOBAL CONFIGURATION
# ============================================================================

class Config:
    """
    Process-wide defaults for the CLI and for new sessions.

    Nothing in the delta algorithm reads these values directly: they are
    copied into a SessionConfig, which is passed explicitly to every stage.
    That way two sessions with different block sizes can run side by side.

    Attributes:
        DEFAULT_BLOCK_SIZE (int): Block size when none is given
        MIN_BLOCK_SIZE (int): Smallest accepted block size
        CHANNEL_DEPTH (int): Items buffered between two pipeline stages
        READ_SIZE (int): Chunk size used when reading the target stream
        STAGE_JOIN_TIMEOUT (float): Seconds to wait for a stage thread on exit
        ENABLE_PROGRESS (bool): Default for the --progress flag
        PROGRESS_REFRESH (float): Minimum seconds between progress redraws
        USE_COLORS (bool): Enable colored terminal output (auto-detected)
        VERBOSE_LOGGING (bool): Start with DEBUG logging

    Example:
        >>> Config.CHANNEL_DEPTH = 64
        >>> Config.reset_defaults()
    """
    DEFAULT_BLOCK_SIZE: ClassVar[int] = DEFAULT_BLOCK_SIZE
    MIN_BLOCK_SIZE: ClassVar[int] = MIN_BLOCK_SIZE
    CHANNEL_DEPTH: ClassVar[int] = 16
    READ_SIZE: ClassVar[int] = 64 * 1024
    STAGE_JOIN_TIMEOUT: ClassVar[float] = 5.0

    ENABLE_PROGRESS: ClassVar[bool] = False
    PROGRESS_REFRESH: ClassVar[float] = 1.0
    USE_COLORS: ClassVar[bool] = True
    VERBOSE_LOGGING: ClassVar[bool] = False

    @classmethod
    def reset_defaults(cls) -> None:
        """Reset all configuration to default values."""
        defaults: Dict[str, object] = {
            "DEFAULT_BLOCK_SIZE": DEFAULT_BLOCK_SIZE,
            "MIN_BLOCK_SIZE": MIN_BLOCK_SIZE,
            "CHANNEL_DEPTH": 16,
            "READ_SIZE": 64 * 1024,
            "STAGE_JOIN_TIMEOUT": 5.0,
            "ENABLE_PROGRESS": False,
            "PROGRESS_REFRESH": 1.0,
            "USE_COLORS": True,
            "VERBOSE_LOGGING": False,
        }
        for name, value in defaults.items():
            setattr(cls, name, value)


# ============================================================================
# LOGGING CONFIGURATION
# ============================================================================

# stdout may carry a patch stream, so logs always go to stderr.
_default_log_level = logging.DEBUG if Config.VERBOSE_LOGGING else logging.WARNING
logging.basicConfig(
    level=_default_log_level,
    stream=sys.stderr,
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger('blockdelta')
logger.setLevel(_default_log_level)


def configure_logging(debug: bool) -> None:
    """Switch the blockdelta logger between DEBUG and the quiet default."""
    logger.setLevel(logging.DEBUG if debug else _default_log_level)


# ============================================================================
# CUSTOM EXCEPTIONS
# ============================================================================

class DeltaSyncError(Exception):
    """
    Base exception for all blockdelta errors.

    Attributes:
        message: Human-readable error description
        code: Process exit code used by the CLI
        stage: Pipeline stage that failed (e.g. "sync", "apply")
        offset: Block index or byte offset where the failure happened

    Example:
        >>> raise DeltaSyncError("read failed", stage="fingerprint", offset=12)
    """
    def __init__(
        self,
        message: str,
        code: int = 1,
        stage: Optional[str] = None,
        offset: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.stage = stage
        self.offset = offset

    def __str__(self) -> str:
        context = []
        if self.stage is not None:
            context.append(f"stage={self.stage}")
        if self.offset is not None:
            context.append(f"at={self.offset}")
        if context:
            return f"{self.message} ({', '.join(context)})"
        return self.message


class ValidationError(DeltaSyncError):
    """
    Raised when configuration or input validation fails.

    Examples are a block size below the floor, an unknown checksum name, or a
    fingerprint generated with a different block size than requested.
    """
    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message, code=2, **context)


class DecodeError(DeltaSyncError):
    """Raised for malformed, truncated or unexpected artifact records."""
    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message, code=3, **context)


class DataIntegrityError(DeltaSyncError):
    """
    Raised when the reconstructed output digest differs from the digest
    computed while encoding.

    The output may have been written in full, but it is not trustworthy: the
    patch is corrupt, the base file is not the one that was fingerprinted, or
    the encoder and applier disagree.
    """
    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message, code=4, **context)


class FileIOError(DeltaSyncError):
    """Wraps an OSError from open/read/write/seek with stage context."""
    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message, code=5, **context)


class PatchError(DeltaSyncError):
    """Raised when an operation stream does not fit the base file."""
    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message, code=6, **context)


class OperationCancelled(DeltaSyncError):
    """Raised (or carried in-band) once the cancellation signal is observed."""
    def __init__(self, message: str = "operation cancelled", **context: Any) -> None:
        super().__init__(message, code=130, **context)


# ============================================================================
# DATA STRUCTURES
# ============================================================================

@dataclass(frozen=True)
class BlockSignature:
    """
    Fingerprint of one base-file block.

    Attributes:
        index: Position of the block in the base file (contiguous from 0)
        weak: 32-bit rolling checksum of the block
        strong: Strong digest of the block
        error: Set on a terminal record that reports a failure instead of a block

    Example:
        >>> sig = BlockSignature(index=0, weak=0x0a1b2c3d, strong=b'\\x00' * 32)
        >>> sig.ok
        True
    """
    index: int
    weak: int
    strong: bytes
    error: Optional[BaseException] = None

    @classmethod
    def failed(cls, index: int, error: BaseException) -> 'BlockSignature':
        """Terminal record carrying an error marker."""
        return cls(index=index, weak=0, strong=b"", error=error)

    @property
    def ok(self) -> bool:
        return self.error is None

    def __repr__(self) -> str:
        if self.error is not None:
            return f"BlockSignature(index={self.index}, error={self.error!r})"
        return (
            f"BlockSignature(index={self.index}, weak=0x{self.weak:08x}, "
            f"strong={self.strong.hex()[:16]}...)"
        )


@dataclass(frozen=True)
class CopyOperation:
    """Copy base block `base_index` verbatim into the output."""
    base_index: int

    def __repr__(self) -> str:
        return f"Copy({self.base_index})"


@dataclass(frozen=True)
class LiteralOperation:
    """Bytes that were not found in the base file."""
    data: bytes

    def __repr__(self) -> str:
        preview = self.data[:16].hex() + ('...' if len(self.data) > 16 else '')
        return f"Literal(len={len(self.data)}, data={preview})"


@dataclass(frozen=True)
class ErrorOperation:
    """Terminal record of an operation stream that failed."""
    error: BaseException

    def __repr__(self) -> str:
        return f"Error({self.error!r})"


BlockOperation = Union[CopyOperation, LiteralOperation, ErrorOperation]


@dataclass
class SyncStats:
    """
    Counters collected while scanning the target.

    Attributes:
        hash_hits: Window positions whose weak checksum hit a table bucket
        false_alarms: Weak hits whose strong hash matched no candidate
        matches: Copy operations emitted
        matched_data: Bytes covered by Copy operations
        literal_data: Bytes carried as Literal data
        operations: Total operations emitted
    """
    hash_hits: int = 0
    false_alarms: int = 0
    matches: int = 0
    matched_data: int = 0
    literal_data: int = 0
    operations: int = 0

    @property
    def efficiency(self) -> float:
        """Fraction of the target reused from the base file."""
        total = self.literal_data + self.matched_data
        return self.matched_data / total if total > 0 else 0.0

    @property
    def false_positive_rate(self) -> float:
        """Fraction of weak hits that turned out to be false alarms."""
        if self.hash_hits == 0:
            return 0.0
        return self.false_alarms / self.hash_hits

    def __repr__(self) -> str:
        return (
            f"SyncStats(matches={self.matches}, false_alarms={self.false_alarms}, "
            f"hash_hits={self.hash_hits}, efficiency={self.efficiency:.1%})"
        )


@dataclass
class DeltaResult:
    """In-memory delta produced by DeltaEngine.diff()."""
    operations: List[BlockOperation]
    digest: bytes
    stats: SyncStats

    @property
    def num_copies(self) -> int:
        return sum(1 for op in self.operations if isinstance(op, CopyOperation))

    @property
    def num_literals(self) -> int:
        return sum(1 for op in self.operations if isinstance(op, LiteralOperation))

    @property
    def literal_bytes(self) -> int:
        return sum(len(op.data) for op in self.operations if isinstance(op, LiteralOperation))


@dataclass
class ApplyResult:
    """Outcome of replaying an operation stream."""
    operations: int
    bytes_written: int
    digest: Optional[bytes] = None


@dataclass
class FingerprintResult:
    """Outcome of writing a fingerprint artifact."""
    path: str
    blocks: int
    block_size: int


@dataclass
class DiffResult:
    """Outcome of writing a patch artifact."""
    digest: bytes
    total_blocks: int
    stats: SyncStats = field(default_factory=SyncStats)


# ============================================================================
# CHECKSUM TYPES
# ============================================================================

class ChecksumType(Enum):
    """
    Strong hash algorithms.

    SHA-256 is the default. The xxHash variants are much faster but are not
    collision resistant, so only use them when the inputs are trusted.

    Example:
        >>> engine = DeltaEngine(checksum_type=ChecksumType.BLAKE2B)
    """
    SHA256 = "sha256"
    SHA1 = "sha1"
    MD5 = "md5"
    BLAKE2B = "blake2b"
    XXH64 = "xxh64"
    XXH3 = "xxh3"
    XXH128 = "xxh128"


class ChecksumRegistry:
    """
    Factory for strong hash functions and incremental accumulators.

    Hides whether an algorithm comes from hashlib or xxhash. Each algorithm
    also has a one-byte code used in artifact headers.

    Example:
        >>> func = ChecksumRegistry.get_checksum_function(ChecksumType.SHA256)
        >>> len(func(b"Hello, World!"))
        32
    """

    _codes: ClassVar[Dict[ChecksumType, int]] = {
        ChecksumType.SHA256: 1,
        ChecksumType.SHA1: 2,
        ChecksumType.MD5: 3,
        ChecksumType.BLAKE2B: 4,
        ChecksumType.XXH64: 5,
        ChecksumType.XXH3: 6,
        ChecksumType.XXH128: 7,
    }

    _lengths: ClassVar[Dict[ChecksumType, int]] = {
        ChecksumType.SHA256: 32,
        ChecksumType.SHA1: 20,
        ChecksumType.MD5: 16,
        ChecksumType.BLAKE2B: 64,
        ChecksumType.XXH64: 8,
        ChecksumType.XXH3: 8,
        ChecksumType.XXH128: 16,
    }

    @classmethod
    def get_accumulator(cls, checksum_type: ChecksumType) -> ChecksumAccumulator:
        """Return a fresh incremental hasher with update()/digest()."""
        if checksum_type == ChecksumType.SHA256:
            return hashlib.sha256()
        if checksum_type == ChecksumType.SHA1:
            return hashlib.sha1()
        if checksum_type == ChecksumType.MD5:
            return hashlib.md5()
        if checksum_type == ChecksumType.BLAKE2B:
            return hashlib.blake2b()
        if checksum_type == ChecksumType.XXH64:
            return xxhash.xxh64()
        if checksum_type == ChecksumType.XXH3:
            return xxhash.xxh3_64()
        if checksum_type == ChecksumType.XXH128:
            return xxhash.xxh3_128()
        raise ValidationError(f"Unsupported checksum type: {checksum_type}")

    @classmethod
    def get_checksum_function(cls, checksum_type: ChecksumType) -> Callable[[bytes], bytes]:
        """Return a one-shot digest function for a byte string."""
        if checksum_type == ChecksumType.SHA256:
            return lambda data: hashlib.sha256(data).digest()
        if checksum_type == ChecksumType.SHA1:
            return lambda data: hashlib.sha1(data).digest()
        if checksum_type == ChecksumType.MD5:
            return lambda data: hashlib.md5(data).digest()
        if checksum_type == ChecksumType.BLAKE2B:
            return lambda data: hashlib.blake2b(data).digest()
        if checksum_type == ChecksumType.XXH64:
            return lambda data: xxhash.xxh64(data).digest()
        if checksum_type == ChecksumType.XXH3:
            return lambda data: xxhash.xxh3_64(data).digest()
        if checksum_type == ChecksumType.XXH128:
            return lambda data: xxhash.xxh3_128(data).digest()
        raise ValidationError(f"Unsupported checksum type: {checksum_type}")

    @classmethod
    def get_digest_length(cls, checksum_type: ChecksumType) -> int:
        return cls._lengths[checksum_type]

    @classmethod
    def to_code(cls, checksum_type: ChecksumType) -> int:
        return cls._codes[checksum_type]

    @classmethod
    def from_code(cls, code: int) -> ChecksumType:
        for checksum_type, value in cls._codes.items():
            if value == code:
                return checksum_type
        raise DecodeError(f"Unknown checksum code in artifact header: {code}")

    @classmethod
    def from_name(cls, name: str) -> ChecksumType:
        try:
            return ChecksumType(name.lower())
        except ValueError:
            choices = ", ".join(t.value for t in ChecksumType)
            raise ValidationError(f"Unknown checksum '{name}', expected one of: {choices}")


# ============================================================================
# COMPRESSION - Optional pass-through compression of artifact bodies
# ============================================================================

class CompressionType(Enum):
    """Compression applied to the body of an artifact (the header is never compressed)."""
    NONE = "none"
    ZLIB = "zlib"
    LZ4 = "lz4"
    ZSTD = "zstd"


_COMPRESSION_CODES: Dict[CompressionType, int] = {
    CompressionType.NONE: 0,
    CompressionType.ZLIB: 1,
    CompressionType.LZ4: 2,
    CompressionType.ZSTD: 3,
}


class _ZlibWriter:
    """Streaming zlib compressor with the file-like surface the codec needs."""

    def __init__(self, raw: BinaryIO, level: int) -> None:
        self._raw = raw
        self._compressor = zlib.compressobj(level)

    def write(self, data: bytes) -> int:
        self._raw.write(self._compressor.compress(data))
        return len(data)

    def close(self) -> None:
        self._raw.write(self._compressor.flush())


class _ZlibReader:
    def __init__(self, raw: BinaryIO, read_size: int = 64 * 1024) -> None:
        self._raw = raw
        self._read_size = read_size
        self._decompressor = zlib.decompressobj()
        self._buffer = bytearray()
        self._eof = False

    def read(self, size: int) -> bytes:
        while len(self._buffer) < size and not self._eof:
            chunk = self._raw.read(self._read_size)
            if not chunk:
                self._buffer.extend(self._decompressor.flush())
                self._eof = True
                break
            self._buffer.extend(self._decompressor.decompress(chunk))
        out = bytes(self._buffer[:size])
        del self._buffer[:size]
        return out

    def close(self) -> None:
        pass


class _PlainStream:
    """No-op wrapper so every body stream has close() without closing the file."""

    def __init__(self, raw: BinaryIO) -> None:
        self._raw = raw

    def read(self, size: int) -> bytes:
        return self._raw.read(size)

    def write(self, data: bytes) -> int:
        self._raw.write(data)
        return len(data)

    def close(self) -> None:
        pass


class CompressionRegistry:
    """
    Wraps a raw binary stream in the compressor selected for an artifact.

    The wrapped streams never close the underlying file: the session that
    opened it owns it.

    Reference:
        lz4.frame.LZ4FrameFile, zstandard stream_writer/stream_reader
    """

    _levels: ClassVar[Dict[CompressionType, int]] = {
        CompressionType.NONE: 0,
        CompressionType.ZLIB: 6,
        CompressionType.LZ4: 1,
        CompressionType.ZSTD: 3,
    }

    @classmethod
    def to_code(cls, comp_type: CompressionType) -> int:
        return _COMPRESSION_CODES[comp_type]

    @classmethod
    def from_code(cls, code: int) -> CompressionType:
        for comp_type, value in _COMPRESSION_CODES.items():
            if value == code:
                return comp_type
        raise DecodeError(f"Unknown compression code in artifact header: {code}")

    @classmethod
    def from_name(cls, name: str) -> CompressionType:
        try:
            return CompressionType(name.lower())
        except ValueError:
            choices = ", ".join(t.value for t in CompressionType)
            raise ValidationError(f"Unknown compression '{name}', expected one of: {choices}")

    @classmethod
    def open_writer(cls, raw: BinaryIO, comp_type: CompressionType) -> Any:
        level = cls._levels[comp_type]
        if comp_type == CompressionType.NONE:
            return _PlainStream(raw)
        if comp_type == CompressionType.ZLIB:
            return _ZlibWriter(raw, level)
        if comp_type == CompressionType.LZ4:
            return _lz4_frame.LZ4FrameFile(raw, mode='wb', compression_level=level)
        if comp_type == CompressionType.ZSTD:
            return _zstandard.ZstdCompressor(level=level).stream_writer(raw, closefd=False)
        raise ValidationError(f"Unsupported compression type: {comp_type}")

    @classmethod
    def open_reader(cls, raw: BinaryIO, comp_type: CompressionType) -> Any:
        if comp_type == CompressionType.NONE:
            return _PlainStream(raw)
        if comp_type == CompressionType.ZLIB:
            return _ZlibReader(raw)
        if comp_type == CompressionType.LZ4:
            return _lz4_frame.LZ4FrameFile(raw, mode='rb')
        if comp_type == CompressionType.ZSTD:
            return _zstandard.ZstdDecompressor().stream_reader(raw, closefd=False)
        raise ValidationError(f"Unsupported compression type: {comp_type}")


# Errors the decompressors raise on damaged input
_CODEC_ERRORS = (zlib.error, RuntimeError, EOFError, zstandard.ZstdError)


# ============================================================================
# SESSION CONFIGURATION
# ============================================================================

def validate_block_size(block_size: int) -> None:
    """
    Validate a block size before any I/O happens.

    Raises:
        ValidationError: If block_size is below the floor or absurdly large

    Example:
        >>> validate_block_size(6144)   # OK
        >>> validate_block_size(512)    # Raises ValidationError
    """
    if block_size < Config.MIN_BLOCK_SIZE:
        raise ValidationError(
            f"Invalid block size {block_size}, must be at least {Config.MIN_BLOCK_SIZE} bytes"
        )
    if block_size > MAX_BLOCK_SIZE:
        raise ValidationError(
            f"Invalid block size {block_size}, maximum is {MAX_BLOCK_SIZE} bytes"
        )


@dataclass(frozen=True)
class SessionConfig:
    """
    Values shared by every stage of one fingerprint/diff/patch session.

    Use SessionConfig.create() to get a validated instance; the block size
    must be identical for fingerprinting, encoding and applying.

    Attributes:
        block_size: Block size in bytes
        checksum_type: Strong hash algorithm
        compression: Artifact body compression
        channel_depth: Items buffered between two pipeline stages
        read_size: Chunk size used when reading the target
        literal_limit: Pending literal bytes that force a Literal flush
    """
    block_size: int = DEFAULT_BLOCK_SIZE
    checksum_type: ChecksumType = ChecksumType.SHA256
    compression: CompressionType = CompressionType.NONE
    channel_depth: int = 16
    read_size: int = 64 * 1024
    literal_limit: int = DEFAULT_BLOCK_SIZE

    @classmethod
    def create(
        cls,
        block_size: Optional[int] = None,
        checksum_type: ChecksumType = ChecksumType.SHA256,
        compression: CompressionType = CompressionType.NONE,
        channel_depth: Optional[int] = None,
        read_size: Optional[int] = None,
        literal_limit: Optional[int] = None,
    ) -> 'SessionConfig':
        block_size = Config.DEFAULT_BLOCK_SIZE if block_size is None else block_size
        validate_block_size(block_size)
        channel_depth = Config.CHANNEL_DEPTH if channel_depth is None else channel_depth
        if channel_depth < 1:
            raise ValidationError(f"channel_depth must be positive, got {channel_depth}")
        read_size = Config.READ_SIZE if read_size is None else read_size
        if read_size < 1:
            raise ValidationError(f"read_size must be positive, got {read_size}")
        literal_limit = block_size if literal_limit is None else literal_limit
        if literal_limit < 1:
            raise ValidationError(f"literal_limit must be positive, got {literal_limit}")
        return cls(
            block_size=block_size,
            checksum_type=checksum_type,
            compression=compression,
            channel_depth=channel_depth,
            read_size=read_size,
            literal_limit=literal_limit,
        )

    def with_artifact(self, block_size: int, checksum_type: ChecksumType) -> 'SessionConfig':
        """Adopt the block size and hash recorded in an existing artifact."""
        validate_block_size(block_size)
        literal_limit = block_size if self.literal_limit == self.block_size else self.literal_limit
        return replace(
            self,
            block_size=block_size,
            checksum_type=checksum_type,
            literal_limit=literal_limit,
        )


# ============================================================================
# UTILITY FUNCTIONS
# ============================================================================

def format_size(size: float) -> str:
    """
    Format byte size in human-readable format.

    Example:
        >>> format_size(1234567890)
        '1.15 GB'
    """
    for unit in ('B', 'KB', 'MB', 'GB', 'TB'):
        if abs(size) < 1024.0:
            return f"{size:.2f} {unit}" if unit != 'B' else f"{size} {unit}"
        size = size / 1024.0
    return f"{size:.2f} PB"


def format_time(seconds: float) -> str:
    """
    Format a duration.

    Example:
        >>> format_time(0.00123)
        '1.23ms'
    """
    if seconds < 0.001:
        return f"{seconds * 1000000:.0f}µs"
    elif seconds < 1.0:
        return f"{seconds * 1000:.2f}ms"
    elif seconds < 60:
        return f"{seconds:.2f}s"
    else:
        minutes = int(seconds // 60)
        secs = seconds % 60
        return f"{minutes}m {secs:.1f}s"


def _read_full(stream: Any, size: int) -> bytes:
    """Read up to `size` bytes, looping over short reads until EOF."""
    data = stream.read(size)
    if not data or len(data) == size:
        return data
    parts = [data]
    remaining = size - len(data)
    while remaining > 0:
        chunk = stream.read(remaining)
        if not chunk:
            break
        parts.append(chunk)
        remaining -= len(chunk)
    return b"".join(parts)


def _is_cancelled(cancel: Optional[threading.Event]) -> bool:
    return cancel is not None and cancel.is_set()


# ============================================================================
# TERMINAL COLORS & PROGRESS
# ============================================================================

class Colors:
    """
    ANSI color helpers for status lines.

    Status lines go to stderr (stdout may be a patch stream), so colors are
    enabled only when stderr is a TTY and Config.USE_COLORS is set.

    Example:
        >>> print(Colors.success("Fingerprint saved"), file=sys.stderr)
    """
    _RESET = '\033[0m'
    _BOLD = '\033[1m'
    _RED = '\033[91m'
    _GREEN = '\033[92m'
    _YELLOW = '\033[93m'
    _BLUE = '\033[94m'

    @classmethod
    def _is_enabled(cls) -> bool:
        if not Config.USE_COLORS:
            return False
        return hasattr(sys.stderr, 'isatty') and sys.stderr.isatty()

    @classmethod
    def success(cls, text: str) -> str:
        if cls._is_enabled():
            return f"{cls._GREEN}✓{cls._RESET} {text}"
        return f"[OK] {text}"

    @classmethod
    def error(cls, text: str) -> str:
        if cls._is_enabled():
            return f"{cls._RED}✗{cls._RESET} {text}"
        return f"[ERROR] {text}"

    @classmethod
    def warning(cls, text: str) -> str:
        if cls._is_enabled():
            return f"{cls._YELLOW}⚠{cls._RESET} {text}"
        return f"[WARN] {text}"

    @classmethod
    def info(cls, text: str) -> str:
        if cls._is_enabled():
            return f"{cls._BLUE}ℹ{cls._RESET} {text}"
        return f"[INFO] {text}"

    @classmethod
    def bold(cls, text: str) -> str:
        if cls._is_enabled():
            return f"{cls._BOLD}{text}{cls._RESET}"
        return text


class ProgressBar:
    """
    Block counter drawn on stderr, redrawn at most once per refresh interval.

    A disabled bar still counts, it just never prints. A total of 0 means
    "unknown" (e.g. a diff reading stdin) and only the count is shown.

    Example:
        >>> bar = ProgressBar(total=100, enabled=True)
        >>> bar.start()
        >>> bar.increment()
        >>> bar.finish()
    """

    WIDTH = 40

    def __init__(
        self,
        total: int = 0,
        enabled: bool = False,
        stream: Optional[Any] = None,
        refresh: Optional[float] = None,
    ) -> None:
        self.total = total
        self.current = 0
        self.enabled = enabled
        self.stream = stream if stream is not None else sys.stderr
        self.refresh = Config.PROGRESS_REFRESH if refresh is None else refresh
        self._last_draw = 0.0
        self._started = 0.0

    def start(self) -> None:
        self._started = time.monotonic()
        self._draw(force=True)

    def set_total(self, total: int) -> None:
        self.total = max(0, total)

    def set(self, value: int) -> None:
        self.current = value
        self._draw()

    def increment(self, amount: int = 1) -> None:
        self.current += amount
        self._draw()

    def finish(self) -> None:
        self._draw(force=True)
        if self.enabled:
            self.stream.write("\n")
            self.stream.flush()

    def render(self) -> str:
        elapsed = format_time(time.monotonic() - self._started) if self._started else "0µs"
        if self.total <= 0:
            return f"{self.current} blocks  {elapsed}"
        ratio = min(1.0, self.current / self.total)
        filled = int(self.WIDTH * ratio)
        bar = "=" * filled + (">" if filled < self.WIDTH else "") + " " * max(0, self.WIDTH - filled - 1)
        return f"{self.current} / {self.total} [{bar}] {ratio:6.2%}  {elapsed}"

    def _draw(self, force: bool = False) -> None:
        if not self.enabled:
            return
        now = time.monotonic()
        if not force and now - self._last_draw < self.refresh:
            return
        self._last_draw = now
        self.stream.write("\r" + self.render())
        self.stream.flush()


# ============================================================================
# ROLLING CHECKSUM
#
# Adler-32 style weak checksum over a window x_0 .. x_{L-1}:
#     s1 = Σ x_i                mod 2^16
#     s2 = Σ (L - i) * x_i      mod 2^16
#     weak = s1 | (s2 << 16)
#
# Sliding the window by one byte (x_0 leaves, x_L enters) costs O(1):
#     s1' = s1 - x_0 + x_L
#     s2' = s2 - L * x_0 + s1'
# ============================================================================

class RollingChecksum:
    """
    Stateful weak checksum of a sliding window.

    Attributes:
        s1: Low 16 bits (plain byte sum)
        s2: High 16 bits (position-weighted sum)
        length: Current window length

    Example:
        >>> rc = RollingChecksum(b"abcd")
        >>> rc.roll(ord("a"), ord("e"))
        >>> rc.value == RollingChecksum.checksum(b"bcde")
        True
    """

    __slots__ = ("s1", "s2", "length")

    def __init__(self, window: Union[bytes, bytearray] = b"") -> None:
        self.s1 = 0
        self.s2 = 0
        self.length = 0
        self.reset(window)

    def reset(self, window: Union[bytes, bytearray]) -> None:
        """Reseed the state from a full window (O(L), C-speed sums)."""
        self.length = len(window)
        self.s1 = sum(window) & _WEAK_MASK
        # prefix sums add x_i exactly (L - i) times
        self.s2 = sum(accumulate(window)) & _WEAK_MASK

    @property
    def value(self) -> int:
        return (self.s1 & _WEAK_MASK) | ((self.s2 & _WEAK_MASK) << 16)

    def roll(self, out_byte: int, in_byte: int) -> None:
        """Slide the window one byte: out_byte leaves, in_byte enters."""
        self.s1 = (self.s1 - out_byte + in_byte) & _WEAK_MASK
        self.s2 = (self.s2 - self.length * out_byte + self.s1) & _WEAK_MASK

    def shrink(self, out_byte: int) -> None:
        """Drop the leading byte without adding one (end of stream)."""
        self.s1 = (self.s1 - out_byte) & _WEAK_MASK
        self.s2 = (self.s2 - self.length * out_byte) & _WEAK_MASK
        self.length -= 1

    @staticmethod
    def checksum(data: Union[bytes, bytearray]) -> int:
        """One-shot weak checksum of a complete block."""
        s1 = sum(data) & _WEAK_MASK
        s2 = sum(accumulate(data)) & _WEAK_MASK
        return s1 | (s2 << 16)

    def __repr__(self) -> str:
        return f"RollingChecksum(value=0x{self.value:08x}, length={self.length})"


# ============================================================================
# FINGERPRINTER
# ============================================================================

def iter_signatures(
    base: BinaryIO,
    config: SessionConfig,
    cancel: Optional[threading.Event] = None,
) -> Iterator[BlockSignature]:
    """
    Yield one BlockSignature per BlockSize chunk of `base`, in order.

    The last chunk may be shorter than the block size. A read failure or an
    observed cancellation yields a single error-marked signature and ends the
    sequence; no further reads happen after cancellation.

    Args:
        base: Readable binary stream positioned at the start of the base file
        config: Session configuration (block size and strong hash)
        cancel: Optional cancellation event, checked between chunks

    Yields:
        BlockSignature records with contiguous indices from 0

    Example:
        >>> with open("base.bin", "rb") as f:
        ...     for sig in iter_signatures(f, SessionConfig.create(4096)):
        ...         print(sig.index, hex(sig.weak))
    """
    strong = ChecksumRegistry.get_checksum_function(config.checksum_type)
    block_size = config.block_size
    index = 0
    while True:
        if _is_cancelled(cancel):
            yield BlockSignature.failed(
                index, OperationCancelled("fingerprint cancelled", stage="fingerprint", offset=index)
            )
            return
        try:
            chunk = _read_full(base, block_size)
        except OSError as e:
            yield BlockSignature.failed(
                index,
                FileIOError(f"cannot read base file: {e}", stage="fingerprint", offset=index),
            )
            return
        if not chunk:
            return
        yield BlockSignature(index=index, weak=RollingChecksum.checksum(chunk), strong=strong(chunk))
        index += 1


# ============================================================================
# LOOKUP TABLE
# ============================================================================

@dataclass(frozen=True)
class TableEntry:
    """Candidate base block for a weak checksum."""
    index: int
    strong: bytes


class LookupTable:
    """
    Read-only index from weak checksum to candidate base blocks.

    Candidates sharing a weak checksum keep their insertion order, which is
    ascending base index, so confirm() resolves ties to the lowest index.

    Example:
        >>> table = LookupTable.build(iter_signatures(base, config))
        >>> candidates = table.lookup(weak)
        >>> index = table.confirm(candidates, strong_hash_of_window)
    """

    def __init__(self, buckets: Dict[int, List[TableEntry]], block_count: int) -> None:
        self._buckets = buckets
        self.block_count = block_count

    @classmethod
    def build(cls, signatures: Iterable[BlockSignature]) -> 'LookupTable':
        """
        Materialize the table from a complete signature sequence.

        Raises:
            DeltaSyncError: The error carried by an error-marked signature
            DecodeError: Indices are not contiguous from 0, or a foreign error
                was carried in-band
        """
        buckets: Dict[int, List[TableEntry]] = {}
        expected = 0
        for sig in signatures:
            if sig.error is not None:
                if isinstance(sig.error, DeltaSyncError):
                    raise sig.error
                raise DecodeError(
                    f"signature stream failed: {sig.error}", stage="lookup-table", offset=sig.index
                ) from sig.error
            if sig.index != expected:
                raise DecodeError(
                    f"signature index {sig.index} out of order, expected {expected}",
                    stage="lookup-table", offset=sig.index,
                )
            bucket = buckets.get(sig.weak)
            if bucket is None:
                bucket = buckets[sig.weak] = []
            bucket.append(TableEntry(index=sig.index, strong=sig.strong))
            expected += 1
        return cls(buckets, expected)

    def lookup(self, weak: int) -> List[TableEntry]:
        """Ordered candidates for a weak checksum (empty list when none)."""
        return self._buckets.get(weak, [])

    @staticmethod
    def confirm(candidates: List[TableEntry], strong: bytes) -> Optional[int]:
        """Index of the first candidate whose digest equals `strong` exactly."""
        for entry in candidates:
            if entry.strong == strong:
                return entry.index
        return None

    def __len__(self) -> int:
        return self.block_count

    def __contains__(self, weak: object) -> bool:
        return weak in self._buckets

    def __repr__(self) -> str:
        return f"LookupTable(blocks={self.block_count}, buckets={len(self._buckets)})"


# ============================================================================
# DELTA ENCODER (SYNC)
# ============================================================================

def iter_operations(
    target: BinaryIO,
    table: LookupTable,
    config: SessionConfig,
    digest: Optional[ChecksumAccumulator] = None,
    cancel: Optional[threading.Event] = None,
    stats: Optional[SyncStats] = None,
) -> Iterator[BlockOperation]:
    """
    Scan `target` with a rolling window and yield Copy/Literal operations.

    Every byte read from the target is fed to `digest` in order, whether it
    ends up in a Copy or in a Literal. Failures and cancellation end the
    sequence with one ErrorOperation.

    Args:
        target: Readable binary stream with the new data
        table: Lookup table built from the base file's signatures
        config: Session configuration (must match the fingerprint's)
        digest: Optional whole-target digest accumulator
        cancel: Optional cancellation event
        stats: Optional SyncStats to fill in

    Yields:
        Operations in strictly increasing target-offset order

    Example:
        >>> ops = list(iter_operations(open("new.bin", "rb"), table, config))
        >>> sum(isinstance(op, CopyOperation) for op in ops)
    """
    try:
        yield from _scan_target(target, table, config, digest, cancel, stats or SyncStats())
    except DeltaSyncError as e:
        yield ErrorOperation(e)


def _scan_target(
    target: BinaryIO,
    table: LookupTable,
    config: SessionConfig,
    digest: Optional[ChecksumAccumulator],
    cancel: Optional[threading.Event],
    stats: SyncStats,
) -> Iterator[BlockOperation]:
    block_size = config.block_size
    literal_limit = config.literal_limit
    read_size = config.read_size
    strong = ChecksumRegistry.get_checksum_function(config.checksum_type)

    # buf[lit:pos] is the pending literal, buf[pos:pos + k] the window.
    # buf_offset is the target offset of buf[0].
    buf = bytearray()
    buf_offset = 0
    eof = False

    def fill(needed: int) -> None:
        nonlocal eof
        while not eof and len(buf) < needed:
            try:
                chunk = target.read(read_size)
            except OSError as e:
                raise FileIOError(
                    f"cannot read target: {e}", stage="sync", offset=buf_offset + len(buf)
                ) from e
            if not chunk:
                eof = True
                break
            if digest is not None:
                digest.update(chunk)
            buf.extend(chunk)

    def emit(op: BlockOperation) -> BlockOperation:
        stats.operations += 1
        if isinstance(op, CopyOperation):
            stats.matches += 1
        elif isinstance(op, LiteralOperation):
            stats.literal_data += len(op.data)
        return op

    pos = 0
    lit = 0
    fill(block_size + 1)
    k = min(block_size, len(buf))
    rolling = RollingChecksum(buf[:k])

    while k > 0:
        if _is_cancelled(cancel):
            raise OperationCancelled("sync cancelled", stage="sync", offset=buf_offset + pos)

        candidates = table.lookup(rolling.value)
        if candidates:
            stats.hash_hits += 1
            index = table.confirm(candidates, strong(bytes(buf[pos:pos + k])))
            if index is None:
                stats.false_alarms += 1
            else:
                if pos > lit:
                    yield emit(LiteralOperation(bytes(buf[lit:pos])))
                yield emit(CopyOperation(index))
                stats.matched_data += k

                # jump past the matched block and reseed
                pos += k
                del buf[:pos]
                buf_offset += pos
                pos = lit = 0
                fill(block_size + 1)
                k = min(block_size, len(buf))
                rolling.reset(buf[:k])
                continue

        fill(pos + k + 1)
        if pos + k < len(buf):
            rolling.roll(buf[pos], buf[pos + k])
        else:
            rolling.shrink(buf[pos])
            k -= 1
        pos += 1

        if pos - lit >= literal_limit:
            yield emit(LiteralOperation(bytes(buf[lit:pos])))
            del buf[:pos]
            buf_offset += pos
            pos = lit = 0

    if pos > lit:
        yield emit(LiteralOperation(bytes(buf[lit:pos])))


# ============================================================================
# PATCH APPLIER (APPLY)
# ============================================================================

def apply_operations(
    output: BinaryIO,
    base: BinaryIO,
    operations: Iterable[BlockOperation],
    config: SessionConfig,
    digest: Optional[ChecksumAccumulator] = None,
    cancel: Optional[threading.Event] = None,
) -> ApplyResult:
    """
    Rebuild the target by replaying `operations` against `base`.

    Operations are consumed strictly in order. An ErrorOperation raises its
    error before anything else is written, and so does an observed
    cancellation. Partial output is the caller's to discard.

    Args:
        output: Writable binary stream for the reconstructed data
        base: Seekable base file opened for reading
        operations: Operation sequence from iter_operations() or a PatchReader
        config: Session configuration (block size must match the fingerprint)
        digest: Optional accumulator fed with every written byte
        cancel: Optional cancellation event, checked between operations

    Returns:
        ApplyResult with the operation count, bytes written and output digest

    Raises:
        PatchError: Copy beyond the end of the base file or unknown operation
        FileIOError: Base read or output write failure
        OperationCancelled: Cancellation observed
    """
    block_size = config.block_size
    count = 0
    written = 0

    for op in operations:
        if _is_cancelled(cancel):
            raise OperationCancelled("apply cancelled", stage="apply", offset=written)

        if isinstance(op, CopyOperation):
            try:
                base.seek(op.base_index * block_size)
                data = _read_full(base, block_size)
            except OSError as e:
                raise FileIOError(
                    f"cannot read block {op.base_index} of base file: {e}",
                    stage="apply", offset=op.base_index,
                ) from e
            if not data:
                raise PatchError(
                    f"copy of block {op.base_index} is beyond the end of the base file",
                    stage="apply", offset=op.base_index,
                )
        elif isinstance(op, LiteralOperation):
            data = op.data
        elif isinstance(op, ErrorOperation):
            raise op.error
        else:
            raise PatchError(f"unknown operation {op!r}", stage="apply", offset=written)

        try:
            output.write(data)
        except OSError as e:
            raise FileIOError(f"cannot write output: {e}", stage="apply", offset=written) from e
        if digest is not None:
            digest.update(data)
        written += len(data)
        count += 1

    return ApplyResult(
        operations=count,
        bytes_written=written,
        digest=digest.digest() if digest is not None else None,
    )


# ============================================================================
# PIPELINE - Bounded hand-off channels between stage threads
# ============================================================================

_END = object()
_POLL_INTERVAL = 0.1


class _StageFailure:
    __slots__ = ("error",)

    def __init__(self, error: BaseException) -> None:
        self.error = error


class Channel(Generic[T]):
    """
    Ordered, bounded hand-off between a producer thread and a consumer.

    put() blocks while the channel is full, iteration blocks while it is
    empty. When the consumer abandons the channel, pending and future puts
    return False so the producer can stop instead of blocking forever.

    Example:
        >>> ch = Channel(maxsize=4)
        >>> ch.put(1); ch.close()
        >>> list(ch)
        [1]
    """

    def __init__(self, maxsize: int = 16) -> None:
        self._queue: "queue.Queue[Any]" = queue.Queue(maxsize=maxsize)
        self._abandoned = threading.Event()

    @property
    def abandoned(self) -> bool:
        return self._abandoned.is_set()

    def put(self, item: Any) -> bool:
        while not self._abandoned.is_set():
            try:
                self._queue.put(item, timeout=_POLL_INTERVAL)
                return True
            except queue.Full:
                continue
        return False

    def close(self) -> None:
        """Producer is done; iteration ends after the queued items."""
        self.put(_END)

    def fail(self, error: BaseException) -> None:
        """Producer crashed; the consumer re-raises `error`."""
        self.put(_StageFailure(error))

    def abandon(self) -> None:
        """Consumer is gone; release a producer blocked on a full queue."""
        self._abandoned.set()
        while True:
            try:
                self._queue.get_nowait()
            except queue.Empty:
                break

    def __iter__(self) -> Iterator[T]:
        while True:
            item = self._queue.get()
            if item is _END:
                return
            if isinstance(item, _StageFailure):
                raise item.error
            yield cast(T, item)


class Stage(Generic[T]):
    """
    Runs a producer iterable on its own thread and exposes its items in order.

    Records that carry errors in-band (error-marked signatures, ErrorOperation)
    pass through untouched; any unexpected exception in the producer is
    forwarded and re-raised in the consumer.

    Example:
        >>> with Stage("fingerprint", iter_signatures(f, config, cancel)) as stage:
        ...     table = LookupTable.build(stage)
    """

    def __init__(self, name: str, producer: Iterable[T], depth: Optional[int] = None) -> None:
        self.name = name
        self._producer = producer
        self.channel: Channel[T] = Channel(Config.CHANNEL_DEPTH if depth is None else depth)
        self._thread = threading.Thread(target=self._run, name=f"blockdelta-{name}", daemon=True)

    def start(self) -> 'Stage[T]':
        self._thread.start()
        return self

    def _run(self) -> None:
        iterator = iter(self._producer)
        try:
            for item in iterator:
                if not self.channel.put(item):
                    logger.debug("stage %s: consumer went away, stopping", self.name)
                    return
        except Exception as e:
            logger.debug("stage %s failed: %s", self.name, e)
            self.channel.fail(e)
            return
        finally:
            close = getattr(iterator, "close", None)
            if close is not None:
                close()
        self.channel.close()

    def stop(self, timeout: Optional[float] = None) -> None:
        self.channel.abandon()
        self._thread.join(Config.STAGE_JOIN_TIMEOUT if timeout is None else timeout)

    @property
    def alive(self) -> bool:
        return self._thread.is_alive()

    def __iter__(self) -> Iterator[T]:
        return iter(self.channel)

    def __enter__(self) -> 'Stage[T]':
        return self.start()

    def __exit__(self, *args: Any) -> None:
        self.stop()


# ============================================================================
# ARTIFACT CODEC
#
#   header (uncompressed): magic[4] version:u8 compression:u8 checksum:u8 block_size:u32
#   fingerprint body:      ('S' index:u64 weak:u32 len:u8 strong)* 'E'
#   patch body:            total_blocks:u64 ('C' index:u64 | 'L' len:u32 data)* 'E' len:u8 digest
# ============================================================================

@dataclass(frozen=True)
class ArtifactHeader:
    magic: bytes
    version: int
    compression: CompressionType
    checksum_type: ChecksumType
    block_size: int

    def pack(self) -> bytes:
        return _HEADER.pack(
            self.magic,
            self.version,
            CompressionRegistry.to_code(self.compression),
            ChecksumRegistry.to_code(self.checksum_type),
            self.block_size,
        )

    @classmethod
    def read(cls, raw: BinaryIO, magic: bytes) -> 'ArtifactHeader':
        try:
            data = _read_full(raw, _HEADER.size)
        except OSError as e:
            raise FileIOError(f"cannot read artifact header: {e}", stage="decode") from e
        if len(data) < _HEADER.size:
            raise DecodeError("artifact header truncated", stage="decode", offset=0)
        got_magic, version, comp_code, csum_code, block_size = _HEADER.unpack(data)
        if got_magic != magic:
            raise DecodeError(
                f"bad artifact magic {got_magic!r}, expected {magic!r}", stage="decode", offset=0
            )
        if version != FORMAT_VERSION:
            raise DecodeError(f"unsupported artifact version {version}", stage="decode", offset=0)
        return cls(
            magic=got_magic,
            version=version,
            compression=CompressionRegistry.from_code(comp_code),
            checksum_type=ChecksumRegistry.from_code(csum_code),
            block_size=block_size,
        )


class _ArtifactWriter:
    """Shared header/body handling for both artifact writers."""

    MAGIC: ClassVar[bytes] = b""

    def __init__(self, raw: BinaryIO, config: SessionConfig) -> None:
        self.config = config
        self._raw = raw
        header = ArtifactHeader(
            magic=self.MAGIC,
            version=FORMAT_VERSION,
            compression=config.compression,
            checksum_type=config.checksum_type,
            block_size=config.block_size,
        )
        self._write_raw(header.pack())
        self._body = CompressionRegistry.open_writer(raw, config.compression)
        self._closed = False

    def _write_raw(self, data: bytes) -> None:
        try:
            self._raw.write(data)
        except OSError as e:
            raise FileIOError(f"cannot write artifact: {e}", stage="encode") from e

    def _write(self, data: bytes) -> None:
        try:
            self._body.write(data)
        except OSError as e:
            raise FileIOError(f"cannot write artifact: {e}", stage="encode") from e

    def _finish(self, trailer: bytes) -> None:
        if self._closed:
            return
        self._write(trailer)
        try:
            self._body.close()
            self._raw.flush()
        except OSError as e:
            raise FileIOError(f"cannot write artifact: {e}", stage="encode") from e
        self._closed = True


class _ArtifactReader:
    """Shared header/body handling for both artifact readers."""

    MAGIC: ClassVar[bytes] = b""

    def __init__(self, raw: BinaryIO) -> None:
        self.header = ArtifactHeader.read(raw, self.MAGIC)
        self._body = CompressionRegistry.open_reader(raw, self.header.compression)
        self._position = 0

    @property
    def block_size(self) -> int:
        return self.header.block_size

    @property
    def checksum_type(self) -> ChecksumType:
        return self.header.checksum_type

    def _read_exact(self, size: int, what: str) -> bytes:
        try:
            data = _read_full(self._body, size)
        except OSError as e:
            raise FileIOError(f"cannot read artifact: {e}", stage="decode", offset=self._position) from e
        except _CODEC_ERRORS as e:
            raise DecodeError(f"corrupt artifact body: {e}", stage="decode", offset=self._position) from e
        if len(data) != size:
            raise DecodeError(f"artifact truncated while reading {what}", stage="decode", offset=self._position)
        return data


class FingerprintWriter(_ArtifactWriter):
    """
    Writes a fingerprint artifact.

    Example:
        >>> with open("base.bin.fingerprint", "wb") as f:
        ...     with FingerprintWriter(f, config) as writer:
        ...         for sig in iter_signatures(base, config):
        ...             writer.write(sig)
    """

    MAGIC = FINGERPRINT_MAGIC

    def __init__(self, raw: BinaryIO, config: SessionConfig) -> None:
        super().__init__(raw, config)
        self.count = 0

    def write(self, sig: BlockSignature) -> None:
        if sig.error is not None:
            raise ValidationError("error-marked signatures are never persisted", stage="encode", offset=sig.index)
        if len(sig.strong) > 255:
            raise ValidationError(f"strong digest too long ({len(sig.strong)} bytes)", stage="encode")
        self._write(TAG_SIGNATURE + _SIGNATURE.pack(sig.index, sig.weak, len(sig.strong)) + sig.strong)
        self.count += 1

    def close(self) -> None:
        self._finish(TAG_END)

    def __enter__(self) -> 'FingerprintWriter':
        return self

    def __exit__(self, exc_type: Any, *args: Any) -> None:
        if exc_type is None:
            self.close()


class FingerprintReader(_ArtifactReader):
    """
    Reads a fingerprint artifact back into BlockSignature records.

    Iterating the reader raises DecodeError on damage; iter_signatures()
    reports it in-band instead, as the last (error-marked) record.
    """

    MAGIC = FINGERPRINT_MAGIC

    def __iter__(self) -> Iterator[BlockSignature]:
        while True:
            tag = self._read_exact(1, "record tag")
            if tag == TAG_END:
                return
            if tag != TAG_SIGNATURE:
                raise DecodeError(f"unexpected record tag {tag!r}", stage="decode", offset=self._position)
            index, weak, length = _SIGNATURE.unpack(self._read_exact(_SIGNATURE.size, "signature"))
            strong = self._read_exact(length, "strong digest")
            self._position += 1
            yield BlockSignature(index=index, weak=weak, strong=strong)

    def iter_signatures(self, cancel: Optional[threading.Event] = None) -> Iterator[BlockSignature]:
        index = 0
        records = iter(self)
        while True:
            if _is_cancelled(cancel):
                yield BlockSignature.failed(
                    index, OperationCancelled("fingerprint decode cancelled", stage="decode", offset=index)
                )
                return
            try:
                sig = next(records)
            except StopIteration:
                return
            except DeltaSyncError as e:
                yield BlockSignature.failed(index, e)
                return
            yield sig
            index = sig.index + 1


class PatchWriter(_ArtifactWriter):
    """
    Writes a patch artifact: expected block count, operations, digest trailer.

    Example:
        >>> writer = PatchWriter(out, config, total_blocks=3)
        >>> for op in iter_operations(target, table, config, digest):
        ...     writer.write(op)
        >>> writer.close(digest.digest())
    """

    MAGIC = PATCH_MAGIC

    def __init__(self, raw: BinaryIO, config: SessionConfig, total_blocks: int = 0) -> None:
        super().__init__(raw, config)
        self.total_blocks = total_blocks
        self.count = 0
        self._write(_COUNT.pack(total_blocks))

    def write(self, op: BlockOperation) -> None:
        if isinstance(op, CopyOperation):
            self._write(TAG_COPY + _COPY.pack(op.base_index))
        elif isinstance(op, LiteralOperation):
            self._write(TAG_LITERAL + _LITERAL.pack(len(op.data)))
            self._write(op.data)
        else:
            raise ValidationError(f"cannot persist {op!r}", stage="encode", offset=self.count)
        self.count += 1

    def close(self, digest: bytes) -> None:
        if len(digest) > 255:
            raise ValidationError(f"digest too long ({len(digest)} bytes)", stage="encode")
        self._finish(TAG_END + _DIGEST.pack(len(digest)) + digest)


class PatchReader(_ArtifactReader):
    """
    Reads a patch artifact.

    `total_blocks` is available right after construction; `digest` only
    once the operation stream has been read to its end marker.
    """

    MAGIC = PATCH_MAGIC

    def __init__(self, raw: BinaryIO) -> None:
        super().__init__(raw)
        (self.total_blocks,) = _COUNT.unpack(self._read_exact(_COUNT.size, "block count"))
        self.digest: Optional[bytes] = None

    def __iter__(self) -> Iterator[BlockOperation]:
        while True:
            tag = self._read_exact(1, "record tag")
            if tag == TAG_COPY:
                (index,) = _COPY.unpack(self._read_exact(_COPY.size, "copy index"))
                self._position += 1
                yield CopyOperation(index)
            elif tag == TAG_LITERAL:
                (length,) = _LITERAL.unpack(self._read_exact(_LITERAL.size, "literal length"))
                data = self._read_exact(length, "literal data")
                self._position += 1
                yield LiteralOperation(data)
            elif tag == TAG_END:
                (length,) = _DIGEST.unpack(self._read_exact(_DIGEST.size, "digest length"))
                self.digest = self._read_exact(length, "digest")
                return
            else:
                raise DecodeError(f"unexpected record tag {tag!r}", stage="decode", offset=self._position)

    def iter_operations(self, cancel: Optional[threading.Event] = None) -> Iterator[BlockOperation]:
        records = iter(self)
        while True:
            if _is_cancelled(cancel):
                yield ErrorOperation(
                    OperationCancelled("patch decode cancelled", stage="decode", offset=self._position)
                )
                return
            try:
                op = next(records)
            except StopIteration:
                return
            except DeltaSyncError as e:
                yield ErrorOperation(e)
                return
            yield op


# ============================================================================
# IN-MEMORY ENGINE
# ============================================================================

class DeltaEngine:
    """
    Bytes-in, bytes-out facade over the streaming stages.

    Handy for tests and for callers that already hold both versions in
    memory. The CLI sessions below use the same stages on files instead.

    Example:
        >>> engine = DeltaEngine(block_size=4096)
        >>> sigs = engine.fingerprint(old)
        >>> delta = engine.diff(sigs, new)
        >>> engine.patch(old, delta.operations, delta.digest) == new
        True
    """

    def __init__(
        self,
        block_size: int = DEFAULT_BLOCK_SIZE,
        checksum_type: ChecksumType = ChecksumType.SHA256,
    ) -> None:
        self.config = SessionConfig.create(block_size=block_size, checksum_type=checksum_type)
        self.last_stats: Optional[SyncStats] = None

    @property
    def block_size(self) -> int:
        return self.config.block_size

    def fingerprint(self, base_data: bytes) -> List[BlockSignature]:
        signatures = list(iter_signatures(BytesIO(base_data), self.config))
        for sig in signatures:
            if sig.error is not None:
                raise sig.error
        return signatures

    def build_table(self, signatures: Iterable[BlockSignature]) -> LookupTable:
        return LookupTable.build(signatures)

    def diff(self, signatures: Iterable[BlockSignature], new_data: bytes) -> DeltaResult:
        table = self.build_table(signatures)
        digest = ChecksumRegistry.get_accumulator(self.config.checksum_type)
        stats = SyncStats()
        operations: List[BlockOperation] = []
        for op in iter_operations(BytesIO(new_data), table, self.config, digest, stats=stats):
            if isinstance(op, ErrorOperation):
                raise op.error
            operations.append(op)
        self.last_stats = stats
        return DeltaResult(operations=operations, digest=digest.digest(), stats=stats)

    def patch(
        self,
        base_data: bytes,
        operations: Iterable[BlockOperation],
        expected_digest: Optional[bytes] = None,
    ) -> bytes:
        output = BytesIO()
        digest = ChecksumRegistry.get_accumulator(self.config.checksum_type)
        result = apply_operations(output, BytesIO(base_data), operations, self.config, digest)
        if expected_digest is not None and result.digest != expected_digest:
            raise DataIntegrityError(
                f"output digest {(result.digest or b'').hex()} does not match "
                f"expected {expected_digest.hex()}",
                stage="apply",
            )
        return output.getvalue()


# ============================================================================
# SESSIONS - fpgen / diff / patch orchestration with artifact cleanup
# ============================================================================

def fingerprint_path(base_path: str) -> str:
    """Where the fingerprint artifact of `base_path` lives."""
    return base_path + FINGERPRINT_SUFFIX


def _fingerprint_missing(path: str) -> bool:
    try:
        return os.path.getsize(path) < 1
    except OSError:
        return True


def _open(path: str, mode: str, what: str) -> BinaryIO:
    try:
        return cast(BinaryIO, open(path, mode))
    except OSError as e:
        raise FileIOError(f"cannot open {what} {path}: {e}", stage="open") from e


def _remove_partial(path: Optional[str]) -> None:
    if not path:
        return
    try:
        os.remove(path)
        logger.debug("removed partial artifact %s", path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning("could not remove partial artifact %s: %s", path, e)


def _blocks_in(size: int, block_size: int) -> int:
    return (size + block_size - 1) // block_size


def _counting(items: Iterable[T], progress: Optional[ProgressBar]) -> Iterator[T]:
    for item in items:
        yield item
        if progress is not None:
            progress.increment()


def generate_fingerprint(
    base_path: str,
    config: SessionConfig,
    cancel: Optional[threading.Event] = None,
    progress: Optional[ProgressBar] = None,
) -> FingerprintResult:
    """
    Compute the fingerprint of `base_path` and persist it next to it.

    The signature generator runs as its own stage; this thread encodes and
    writes. On any failure the partial fingerprint file is deleted before the
    error propagates.

    Returns:
        FingerprintResult with the artifact path and block count
    """
    fp_path = fingerprint_path(base_path)
    logger.debug("Create fingerprint for %s", base_path)

    with _open(base_path, "rb", "base file") as base:
        size = os.fstat(base.fileno()).st_size
        if progress is not None:
            progress.set_total(_blocks_in(size, config.block_size))
            progress.start()
        fp_file = _open(fp_path, "wb", "fingerprint file")
        try:
            with fp_file:
                writer = FingerprintWriter(fp_file, config)
                with Stage("fingerprint", iter_signatures(base, config, cancel), config.channel_depth) as stage:
                    for sig in stage:
                        if sig.error is not None:
                            raise sig.error
                        if _is_cancelled(cancel):
                            raise OperationCancelled("fingerprint cancelled", stage="fingerprint", offset=sig.index)
                        logger.debug("chunk %05d: %08x, %s", sig.index, sig.weak, sig.strong.hex())
                        writer.write(sig)
                        if progress is not None:
                            progress.increment()
                writer.close()
        except BaseException:
            _remove_partial(fp_path)
            raise

    if progress is not None:
        progress.finish()
    logger.debug("Done: %d blocks", writer.count)
    return FingerprintResult(path=fp_path, blocks=writer.count, block_size=config.block_size)


def load_lookup_table(
    base_path: str,
    config: SessionConfig,
    cancel: Optional[threading.Event] = None,
    progress: Optional[ProgressBar] = None,
) -> Tuple[LookupTable, SessionConfig]:
    """
    Decode the fingerprint of `base_path` in a stage thread and build the table.

    Returns:
        (LookupTable, SessionConfig adopted from the fingerprint header)

    Raises:
        ValidationError: The fingerprint was written with another block size
    """
    fp_path = fingerprint_path(base_path)
    with _open(fp_path, "rb", "fingerprint file") as fp_file:
        reader = FingerprintReader(fp_file)
        if reader.block_size != config.block_size:
            raise ValidationError(
                f"fingerprint {fp_path} was generated with block size {reader.block_size}, "
                f"not {config.block_size}; run fpgen again",
                stage="lookup-table",
            )
        session = config.with_artifact(reader.block_size, reader.checksum_type)
        if progress is not None:
            size = os.fstat(fp_file.fileno()).st_size
            progress.set_total(size // max(1, _SIGNATURE.size + 1 + ChecksumRegistry.get_digest_length(reader.checksum_type)))
            progress.start()
        logger.debug("Create lookup table")
        with Stage("fingerprint-decode", reader.iter_signatures(cancel), config.channel_depth) as stage:
            table = LookupTable.build(_counting(stage, progress))
    if progress is not None:
        progress.finish()
    logger.debug("Lookup table loaded: %r", table)
    return table, session


def make_diff(
    base_path: str,
    in_path: Optional[str],
    out_path: Optional[str],
    config: SessionConfig,
    cancel: Optional[threading.Event] = None,
    progress: Optional[ProgressBar] = None,
) -> DiffResult:
    """
    Encode the target (file or stdin) against the base file's fingerprint.

    A missing or empty fingerprint is regenerated first. The patch goes to
    `out_path` or stdout; a partially written output file is deleted on any
    failure, including cancellation.
    """
    if _fingerprint_missing(fingerprint_path(base_path)):
        logger.debug("fingerprint missing or empty, generating it")
        generate_fingerprint(base_path, config, cancel, progress)

    table, session = load_lookup_table(base_path, config, cancel, progress)

    if in_path:
        target = _open(in_path, "rb", "input file")
        total_blocks = _blocks_in(os.fstat(target.fileno()).st_size, session.block_size)
    else:
        target = cast(BinaryIO, sys.stdin.buffer)
        total_blocks = 0

    stats = SyncStats()
    digest = ChecksumRegistry.get_accumulator(session.checksum_type)
    try:
        output = _open(out_path, "wb", "output file") if out_path else cast(BinaryIO, sys.stdout.buffer)
    except BaseException:
        if in_path:
            target.close()
        raise
    try:
        try:
            if progress is not None:
                progress.set_total(total_blocks)
                progress.set(0)
                progress.start()
            logger.debug("Create block diff")
            writer = PatchWriter(output, session, total_blocks)
            producer = iter_operations(target, table, session, digest, cancel, stats)
            with Stage("sync", producer, session.channel_depth) as stage:
                for op in stage:
                    if isinstance(op, ErrorOperation):
                        raise op.error
                    if _is_cancelled(cancel):
                        raise OperationCancelled("diff cancelled", stage="diff", offset=writer.count)
                    if isinstance(op, CopyOperation):
                        logger.debug("chunk %20d: copy %d", writer.count, op.base_index)
                    elif isinstance(op, LiteralOperation):
                        logger.debug("chunk %20d: literal %d bytes", writer.count, len(op.data))
                    writer.write(op)
                    if progress is not None:
                        progress.increment()
            writer.close(digest.digest())
        finally:
            if out_path:
                output.close()
    except BaseException:
        _remove_partial(out_path)
        raise
    finally:
        if in_path:
            target.close()

    if progress is not None:
        progress.finish()
    logger.debug("done: %r, false positive rate %.2f%%", stats, stats.false_positive_rate * 100)
    return DiffResult(digest=digest.digest(), total_blocks=total_blocks, stats=stats)


def apply_patch(
    base_path: str,
    in_path: Optional[str],
    out_path: Optional[str],
    config: SessionConfig,
    cancel: Optional[threading.Event] = None,
    progress: Optional[ProgressBar] = None,
) -> ApplyResult:
    """
    Rebuild the target from a patch (file or stdin) and the base file.

    The base file and its fingerprint must exist. The block size recorded in
    the patch is authoritative and must match the fingerprint's. After the
    last operation the output digest is compared with the patch trailer.

    Raises:
        DataIntegrityError: Output digest does not match the patch trailer
    """
    if not os.path.isfile(base_path):
        raise FileIOError(f"Base file does not exist: {base_path}", stage="patch")
    fp_path = fingerprint_path(base_path)
    if _fingerprint_missing(fp_path):
        raise FileIOError(f"Fingerprint file does not exist: {fp_path}", stage="patch")
    with _open(fp_path, "rb", "fingerprint file") as fp_file:
        fp_header = ArtifactHeader.read(fp_file, FINGERPRINT_MAGIC)

    patch_in = _open(in_path, "rb", "input file") if in_path else cast(BinaryIO, sys.stdin.buffer)
    try:
        reader = PatchReader(patch_in)
        if reader.block_size != fp_header.block_size:
            raise ValidationError(
                f"patch was made with block size {reader.block_size} but fingerprint "
                f"{fp_path} uses {fp_header.block_size}",
                stage="patch",
            )
        if reader.block_size != config.block_size:
            logger.debug("using block size %d recorded in the patch", reader.block_size)
        session = config.with_artifact(reader.block_size, reader.checksum_type)
        digest = ChecksumRegistry.get_accumulator(session.checksum_type)

        output = _open(out_path, "wb", "output file") if out_path else cast(BinaryIO, sys.stdout.buffer)
        try:
            try:
                if progress is not None:
                    progress.set_total(reader.total_blocks)
                    progress.start()
                logger.debug("Rebuild file")
                with _open(base_path, "rb", "base file") as base:
                    with Stage("patch-decode", reader.iter_operations(cancel), session.channel_depth) as stage:
                        result = apply_operations(
                            output, base, _counting(stage, progress), session, digest, cancel
                        )
                output.flush()
            finally:
                if out_path:
                    output.close()
            if reader.digest is None:
                raise DecodeError("patch ended without a digest trailer", stage="patch")
            if result.digest != reader.digest:
                raise DataIntegrityError(
                    f"output digest {(result.digest or b'').hex()} does not match "
                    f"patch digest {reader.digest.hex()}",
                    stage="patch",
                )
        except BaseException:
            _remove_partial(out_path)
            raise
    finally:
        if in_path:
            patch_in.close()

    if progress is not None:
        progress.finish()
    logger.debug("done: %d operations, %d bytes", result.operations, result.bytes_written)
    return result


# ============================================================================
# CLI
# ============================================================================

ACTIONS = ("fpgen", "diff", "patch")


def create_parser() -> argparse.ArgumentParser:
    """Argument parser for the blockdelta command."""
    parser = argparse.ArgumentParser(
        prog='blockdelta',
        description='rsync-style block delta: fingerprint a base file, diff a new '
                    'version against it, and patch the base file back into the new version.',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "actions:\n"
            "  fpgen   compute FILE.fingerprint\n"
            "  diff    write a patch turning FILE into the input\n"
            "  patch   rebuild the input patch's target from FILE\n"
        ),
    )
    parser.add_argument('action', nargs='?', choices=ACTIONS, help='what to do')
    parser.add_argument('-f', '--file', default='', help='File path for base file, REQUIRED')
    parser.add_argument('-i', '--in', dest='infile', default='',
                        help='File path for input file (default: stdin)')
    parser.add_argument('-o', '--out', dest='outfile', default='',
                        help='File path for output file (default: stdout)')
    parser.add_argument('-b', '--blocksize', type=int, default=Config.DEFAULT_BLOCK_SIZE,
                        help=f'Block size, default {Config.DEFAULT_BLOCK_SIZE} bytes, '
                             f'minimum {Config.MIN_BLOCK_SIZE}')
    parser.add_argument('--checksum', default=ChecksumType.SHA256.value,
                        choices=[t.value for t in ChecksumType],
                        help='strong hash for fingerprints and digests (default: sha256)')
    parser.add_argument('--compress', default=CompressionType.NONE.value,
                        choices=[t.value for t in CompressionType],
                        help='compress artifact bodies (default: none)')
    parser.add_argument('--timeout', type=float, default=0.0,
                        help='cancel the session after this many seconds (0 = never)')
    parser.add_argument('--progress', action='store_true', default=Config.ENABLE_PROGRESS,
                        help='Show progress bar')
    parser.add_argument('--debug', action='store_true', default=Config.VERBOSE_LOGGING,
                        help='debug mode')
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
    return parser


def _sigint_handler(cancel: threading.Event) -> Callable[[int, Any], None]:
    """
    First Ctrl-C cancels the session cooperatively; a second one raises
    KeyboardInterrupt (a stage may be blocked reading an idle stdin).
    """
    def _handler(signum: int, frame: Any) -> None:
        logger.debug("SIGINT received, cancelling")
        cancel.set()
        signal.signal(signal.SIGINT, signal.default_int_handler)

    return _handler


def _install_sigint(cancel: threading.Event) -> Optional[Any]:
    if threading.current_thread() is not threading.main_thread():
        return None
    return signal.signal(signal.SIGINT, _sigint_handler(cancel))


def main(argv: Optional[List[str]] = None) -> int:
    """
    CLI entry point.

    Returns:
        Exit code: 0 success, 2 usage/validation, 3 decode error, 4 integrity
        failure, 5 I/O error, 6 patch/base mismatch, 130 cancelled, 1 other
    """
    parser = create_parser()
    args = parser.parse_args(argv)
    configure_logging(args.debug)

    if not args.file:
        print("Missing File parameter", file=sys.stderr)
        parser.print_usage(sys.stderr)
        return 2
    if args.blocksize < Config.MIN_BLOCK_SIZE:
        print(f"Invalid block size, must be at least {Config.MIN_BLOCK_SIZE}", file=sys.stderr)
        parser.print_usage(sys.stderr)
        return 2
    if not args.action:
        print("You must specify one of the following action: 'fpgen', 'diff' or 'patch'.",
              file=sys.stderr)
        parser.print_usage(sys.stderr)
        return 2

    try:
        config = SessionConfig.create(
            block_size=args.blocksize,
            checksum_type=ChecksumRegistry.from_name(args.checksum),
            compression=CompressionRegistry.from_name(args.compress),
        )
    except ValidationError as e:
        print(Colors.error(str(e)), file=sys.stderr)
        parser.print_usage(sys.stderr)
        return e.code

    cancel = threading.Event()
    previous_handler = _install_sigint(cancel)
    timer: Optional[threading.Timer] = None
    if args.timeout > 0:
        timer = threading.Timer(args.timeout, cancel.set)
        timer.daemon = True
        timer.start()
    progress = ProgressBar(enabled=args.progress)

    try:
        if args.action == "fpgen":
            fp = generate_fingerprint(args.file, config, cancel, progress)
            print(Colors.success(f"Fingerprint saved to: {Colors.bold(fp.path)} ({fp.blocks} blocks)"), file=sys.stderr)
        elif args.action == "diff":
            diff = make_diff(args.file, args.infile or None, args.outfile or None, config, cancel, progress)
            logger.debug("matched %s, literal %s", format_size(diff.stats.matched_data),
                         format_size(diff.stats.literal_data))
            print(Colors.info(f"Datahash: {Colors.bold(diff.digest.hex())}"), file=sys.stderr)
        else:
            result = apply_patch(args.file, args.infile or None, args.outfile or None, config, cancel, progress)
            print(Colors.info(f"Datahash: {(result.digest or b'').hex()}"), file=sys.stderr)
        return 0
    except OperationCancelled as e:
        print(Colors.warning(f"Operation cancelled: {e}"), file=sys.stderr)
        return e.code
    except DataIntegrityError as e:
        print(Colors.error(f"Integrity check failed: {e}"), file=sys.stderr)
        return e.code
    except DeltaSyncError as e:
        print(Colors.error(f"blockdelta: {args.action} error: {e}"), file=sys.stderr)
        return e.code
    except KeyboardInterrupt:
        print(Colors.warning("\nOperation cancelled by user"), file=sys.stderr)
        return 130
    except Exception as e:
        print(Colors.error(f"Unexpected error: {type(e).__name__}: {e}"), file=sys.stderr)
        if args.debug:
            import traceback
            traceback.print_exc()
        return 1
    finally:
        if timer is not None:
            timer.cancel()
        if previous_handler is not None:
            signal.signal(signal.SIGINT, previous_handler)


# Entry point when run as script
if __name__ == "__main__":
    sys.exit(main())
