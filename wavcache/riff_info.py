"""Read the INFO list metadata that scanners embed at the front of WAV files.

Only the first top-level chunk of the RIFF container is inspected. Recorders
that write descriptive tags place a ``LIST`` chunk there, ahead of ``fmt`` and
``data``; any other layout is reported as :class:`NotInfoListError` rather
than an empty mapping.
"""

from __future__ import annotations

import argparse
import os
import struct
import sys
from pathlib import Path
from typing import BinaryIO, Iterable

from .errors import (
    ContainerError,
    MalformedChunkError,
    MalformedContainerError,
    NotInfoListError,
    SourceNotFoundError,
    SourceReadError,
)

RIFF_SIGNATURE = b"RIFF"
LIST_TAG = b"LIST"
CHUNK_HEADER = struct.Struct("<4sI")
FORM_TYPE_SIZE = 4
LIST_TYPE_SIZE = 4


def _tag_name(tag: bytes) -> str:
    return tag.decode("latin-1")


def _decode_value(data: bytes) -> str:
    return data.decode("utf-8", errors="replace").rstrip("\x00")


def _read_exact(stream: BinaryIO, size: int) -> bytes:
    chunks: list[bytes] = []
    remaining = size
    while remaining > 0:
        try:
            block = stream.read(remaining)
        except OSError as exc:
            raise MalformedChunkError(f"read failed after {size - remaining} of {size} bytes: {exc}") from exc
        if not block:
            break
        chunks.append(block)
        remaining -= len(block)
    return b"".join(chunks)


def parse_list_payload(payload: bytes) -> dict[str, str]:
    """Decode the members of a LIST chunk payload into ``{tag: text}``."""

    if len(payload) < LIST_TYPE_SIZE:
        raise MalformedChunkError("LIST chunk is too short to carry a list type")

    info: dict[str, str] = {}
    offset = LIST_TYPE_SIZE
    end = len(payload)
    while offset < end:
        if end - offset < CHUNK_HEADER.size:
            raise MalformedChunkError(f"truncated sub-chunk header at offset {offset}")
        tag, length = CHUNK_HEADER.unpack_from(payload, offset)
        offset += CHUNK_HEADER.size
        if length > end - offset:
            raise MalformedChunkError(
                f"sub-chunk {_tag_name(tag)!r} claims {length} bytes but only "
                f"{end - offset} remain in the list"
            )
        data = payload[offset : offset + length]
        offset += length
        if length % 2:
            if offset >= end:
                raise MalformedChunkError(f"sub-chunk {_tag_name(tag)!r} is missing its padding byte")
            offset += 1
        # Repeated tags: last one wins.
        info[_tag_name(tag)] = _decode_value(data)
    return info


def read_info_list(stream: BinaryIO) -> dict[str, str]:
    """Parse a RIFF stream positioned at its header and return the INFO tags."""

    header = _read_exact(stream, CHUNK_HEADER.size + FORM_TYPE_SIZE)
    if len(header) < CHUNK_HEADER.size + FORM_TYPE_SIZE:
        raise MalformedContainerError("file is too short to hold a RIFF header")
    signature, riff_size = CHUNK_HEADER.unpack_from(header, 0)
    if signature != RIFF_SIGNATURE:
        raise MalformedContainerError(f"unrecognised container signature {signature!r}")
    if riff_size < FORM_TYPE_SIZE:
        raise MalformedContainerError(f"RIFF size {riff_size} is too small for a form type")

    remaining = riff_size - FORM_TYPE_SIZE
    if remaining < CHUNK_HEADER.size:
        raise MalformedChunkError("RIFF body does not contain a chunk header")
    descriptor = _read_exact(stream, CHUNK_HEADER.size)
    if len(descriptor) < CHUNK_HEADER.size:
        raise MalformedChunkError("truncated first chunk header")
    tag, length = CHUNK_HEADER.unpack(descriptor)
    if tag != LIST_TAG:
        raise NotInfoListError(f"first chunk is {_tag_name(tag)!r}, not LIST")
    if length > remaining - CHUNK_HEADER.size:
        raise MalformedChunkError(f"LIST chunk length {length} exceeds the RIFF body")

    payload = _read_exact(stream, length)
    if len(payload) < length:
        raise MalformedChunkError(f"LIST chunk truncated: expected {length} bytes, got {len(payload)}")
    return parse_list_payload(payload)


def extract_info(source: os.PathLike[str] | str) -> dict[str, str]:
    """Return the INFO list tags of the WAV file at ``source``."""

    source_path = Path(source)
    try:
        handle = source_path.open("rb")
    except (FileNotFoundError, IsADirectoryError) as exc:
        raise SourceNotFoundError(f"source recording not found: {source_path}") from exc
    except OSError as exc:
        raise SourceReadError(f"unable to open source recording {source_path}: {exc}") from exc
    with handle:
        return read_info_list(handle)


def main(argv: Iterable[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Print the RIFF INFO tags of a WAV recording.")
    parser.add_argument("source", help="Path to the WAV file")
    args = parser.parse_args(list(argv) if argv is not None else None)

    try:
        info = extract_info(args.source)
    except (SourceNotFoundError, SourceReadError, ContainerError) as exc:
        print(f"[riff_info] {exc}", file=sys.stderr, flush=True)
        return 1

    for tag in sorted(info):
        print("%10s %s" % (tag, info[tag]))
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
