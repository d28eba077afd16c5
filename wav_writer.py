#!/usr/bin/env python3
"""
WAV recording sink for fmrec.

Writes 16-bit PCM into a RIFF/WAVE file. The 44-byte header is written with
zero sizes first and patched in finalize() once the payload length is known,
so a capture cut short still leaves a playable file.
"""

import os
import struct

import numpy as np

# RIFF/WAVE header: chunk descriptor, fmt sub-chunk, data sub-chunk
WAV_HEADER_FORMAT = "<4sI4s4sIHHIIHH4sI"
WAV_HEADER_SIZE = struct.calcsize(WAV_HEADER_FORMAT)  # 44
WAV_FMT_CHUNK_SIZE = 16
WAVE_FORMAT_PCM = 1

# chunkSize counts everything after the first 8 bytes
RIFF_OVERHEAD = WAV_HEADER_SIZE - 8  # 36

# Largest payload whose chunkSize still fits in 32 bits
MAX_DATA_SIZE = 0xFFFFFFFF - RIFF_OVERHEAD


def build_wav_header(data_size, sample_rate=48000, channels=1, bits_per_sample=16):
    """Pack a PCM WAV header for a payload of data_size bytes."""
    if not 0 <= data_size <= MAX_DATA_SIZE:
        raise ValueError(f"WAV data size {data_size} does not fit a 32-bit RIFF header")
    block_align = channels * bits_per_sample // 8
    byte_rate = sample_rate * block_align
    return struct.pack(
        WAV_HEADER_FORMAT,
        b"RIFF",
        RIFF_OVERHEAD + data_size,
        b"WAVE",
        b"fmt ",
        WAV_FMT_CHUNK_SIZE,
        WAVE_FORMAT_PCM,
        channels,
        sample_rate,
        byte_rate,
        block_align,
        bits_per_sample,
        b"data",
        data_size,
    )


def read_wav_header(path):
    """Parse the 44-byte header of a file written by WavWriter."""
    with open(path, "rb") as f:
        raw = f.read(WAV_HEADER_SIZE)
    if len(raw) != WAV_HEADER_SIZE:
        raise ValueError(f"{path}: truncated WAV header ({len(raw)} bytes)")
    fields = struct.unpack(WAV_HEADER_FORMAT, raw)
    header = dict(zip(
        ("chunk_id", "chunk_size", "format", "fmt_chunk_id", "fmt_chunk_size",
         "audio_format", "num_channels", "sample_rate", "byte_rate",
         "block_align", "bits_per_sample", "data_chunk_id", "data_size"),
        fields,
    ))
    if header["chunk_id"] != b"RIFF" or header["format"] != b"WAVE":
        raise ValueError(f"{path}: not a RIFF/WAVE file")
    return header


class WavWriter:
    """Mono 16-bit PCM WAV file sink."""

    def __init__(self, path, sample_rate=48000, channels=1, bits_per_sample=16):
        self.path = os.fspath(path)
        self.sample_rate = int(sample_rate)
        self.channels = int(channels)
        self.bits_per_sample = int(bits_per_sample)
        self._file = None
        self._bytes_written = 0
        self._finalized = False

    @property
    def is_open(self):
        return self._file is not None

    @property
    def bytes_written(self):
        """Audio payload bytes appended so far."""
        return self._bytes_written

    def open(self):
        """Create the output file and reserve the header."""
        if self._file is not None:
            return self
        out_dir = os.path.dirname(os.path.abspath(self.path))
        if out_dir:
            os.makedirs(out_dir, exist_ok=True)
        self._file = open(self.path, "wb")
        self._bytes_written = 0
        self._finalized = False
        self.write_header_placeholder()
        return self

    def write_header_placeholder(self):
        """Write a header with zero sizes at the start of the file."""
        if self._file is None:
            raise RuntimeError("WAV file is not open")
        self._file.seek(0)
        self._file.write(build_wav_header(
            0, self.sample_rate, self.channels, self.bits_per_sample
        ))
        self._file.flush()

    def append_samples(self, block):
        """Append one block of int16 samples."""
        if self._file is None:
            raise RuntimeError("WAV file is not open")
        samples = np.asarray(block, dtype="<i2")
        payload = samples.tobytes()
        self._file.write(payload)
        self._file.flush()
        self._bytes_written += len(payload)

    def finalize(self, total_audio_bytes=None):
        """Patch the header sizes and close the file."""
        if self._file is None:
            return
        data_size = self._bytes_written if total_audio_bytes is None else int(total_audio_bytes)
        try:
            header = build_wav_header(
                data_size, self.sample_rate, self.channels, self.bits_per_sample
            )
            self._file.seek(0)
            self._file.write(header)
            self._finalized = True
        finally:
            self.close()

    def close(self):
        if self._file is None:
            return
        try:
            self._file.close()
        finally:
            self._file = None

    def __enter__(self):
        return self.open()

    def __exit__(self, exc_type, exc, tb):
        if not self._finalized:
            self.finalize()
        return False
