#!/usr/bin/env python3
"""
FM Capture Pipeline

Drives the demodulator chain (demodulator.py) buffer by buffer:

    cu8 bytes -> centered I/Q -> discriminator -> de-emphasis -> DC block
              -> decimator -> int16 PCM -> sink

All cross-buffer state (carried I/Q pair, de-emphasis output, DC-block
input/output, decimator phase) lives in the filter objects owned by
FMCapturePipeline. Scratch arrays are sized once from the configuration.
"""

import math
from dataclasses import dataclass

import numpy as np

from demodulator import (
    DEEMPHASIS_50US,
    INT16_MAX,
    DCBlockFilter,
    Decimator,
    DeemphasisFilter,
    PhaseDiscriminator,
    convert_samples,
    quantize,
)


class ConfigurationError(ValueError):
    """Rejected configuration or capture request (raised before any I/O)."""


class AcquisitionError(RuntimeError):
    """The I/Q source reported a failed read. Never retried."""


BYTES_PER_PCM_SAMPLE = 2

# RIFF sizes are 32-bit; the 36 header bytes after the size field count too
MAX_WAV_DATA_BYTES = 0xFFFFFFFF - 36


@dataclass
class PipelineConfig:
    """Fixed processing constants for one capture run."""

    acquisition_rate_hz: int = 960000
    output_rate_hz: int = 48000
    deemphasis_tau_s: float = DEEMPHASIS_50US
    dc_block_coefficient: float = 0.99
    quantizer_gain: float = INT16_MAX
    # 16 USB packets of 16384 bytes
    buffer_size: int = 16 * 16384

    @property
    def decimation_factor(self):
        return self.acquisition_rate_hz // self.output_rate_hz

    @property
    def pairs_per_buffer(self):
        return self.buffer_size // 2

    def target_bytes(self, duration_s):
        """Raw I/Q bytes covering duration_s seconds (2 bytes per complex sample)."""
        return int(self.acquisition_rate_hz) * int(duration_s) * 2

    def audio_bytes(self, duration_s):
        """PCM bytes a complete duration_s capture writes to the WAV data chunk."""
        return int(self.output_rate_hz) * int(duration_s) * BYTES_PER_PCM_SAMPLE

    def validate(self):
        """Raise ConfigurationError if the configuration cannot run."""
        if self.acquisition_rate_hz <= 0 or self.output_rate_hz <= 0:
            raise ConfigurationError(
                f"sample rates must be positive (acquisition={self.acquisition_rate_hz}, "
                f"output={self.output_rate_hz})"
            )
        if self.acquisition_rate_hz % self.output_rate_hz:
            raise ConfigurationError(
                f"acquisition rate {self.acquisition_rate_hz} Hz is not an integer "
                f"multiple of output rate {self.output_rate_hz} Hz"
            )
        if self.deemphasis_tau_s < 0:
            raise ConfigurationError(f"deemphasis_tau_s must be >= 0, got {self.deemphasis_tau_s}")
        if not 0.0 <= self.dc_block_coefficient < 1.0:
            raise ConfigurationError(
                f"dc_block_coefficient must be in [0, 1), got {self.dc_block_coefficient}"
            )
        if self.quantizer_gain <= 0:
            raise ConfigurationError(f"quantizer_gain must be positive, got {self.quantizer_gain}")
        if self.buffer_size <= 0 or self.buffer_size % 2:
            raise ConfigurationError(
                f"buffer_size must be a positive even byte count, got {self.buffer_size}"
            )
        if self.pairs_per_buffer < self.decimation_factor:
            raise ConfigurationError(
                f"buffer of {self.pairs_per_buffer} I/Q pairs is shorter than one "
                f"decimation stride ({self.decimation_factor})"
            )
        return self


def check_wav_capacity(config, duration_s):
    """Raise ConfigurationError if duration_s of audio would overflow the 32-bit WAV sizes."""
    audio_bytes = config.audio_bytes(duration_s)
    if audio_bytes > MAX_WAV_DATA_BYTES:
        limit_s = MAX_WAV_DATA_BYTES // (config.output_rate_hz * BYTES_PER_PCM_SAMPLE)
        raise ConfigurationError(
            f"duration {duration_s} s needs {audio_bytes} bytes of audio, more than a WAV "
            f"file can hold at {config.output_rate_hz} Hz (max {limit_s} s)"
        )


def validate_capture_request(center_freq_mhz, duration_s, config=None):
    """Check the two caller-supplied values before the device is touched."""
    if not center_freq_mhz > 0:
        raise ConfigurationError(f"center frequency must be positive, got {center_freq_mhz} MHz")
    if int(duration_s) != duration_s:
        raise ConfigurationError(f"duration must be whole seconds, got {duration_s}")
    if duration_s < 0:
        raise ConfigurationError(f"duration must not be negative, got {duration_s} s")
    check_wav_capacity(config or PipelineConfig(), duration_s)


class ScratchArena:
    """Per-buffer work arrays, allocated once and reused every iteration."""

    def __init__(self, pairs, decimation_factor):
        self.decimation_factor = int(decimation_factor)
        self.pairs = 0
        self.reserve(pairs)

    def reserve(self, pairs):
        """Grow the arrays if a buffer of `pairs` I/Q pairs would not fit."""
        pairs = int(pairs)
        if pairs <= self.pairs:
            return
        self.pairs = pairs
        self.i = np.empty(pairs, dtype=np.float64)
        self.q = np.empty(pairs, dtype=np.float64)
        self.freq = np.empty(pairs, dtype=np.float64)
        self.scaled = np.empty(math.ceil(pairs / self.decimation_factor), dtype=np.float64)
        self.audio = np.empty(self.scaled.size, dtype=np.int16)


class FMCapturePipeline:
    """
    Mono WBFM demodulation chain with explicit cross-buffer state.

    process_buffer() turns one raw cu8 buffer into int16 PCM; run() loops a
    source into a sink for a requested duration.
    """

    def __init__(self, config=None):
        self.config = (config or PipelineConfig()).validate()
        cfg = self.config

        self.arena = ScratchArena(cfg.pairs_per_buffer, cfg.decimation_factor)
        self.discriminator = PhaseDiscriminator(max_pairs=cfg.pairs_per_buffer)
        self.deemphasis = DeemphasisFilter(cfg.deemphasis_tau_s, cfg.acquisition_rate_hz)
        self.dc_block = DCBlockFilter(cfg.dc_block_coefficient)
        self.decimator = Decimator(cfg.decimation_factor)

        self.bytes_consumed = 0
        self.total_audio_bytes = 0
        self.buffers_processed = 0

    @property
    def decimation_factor(self):
        return self.config.decimation_factor

    def reset(self):
        """Clear filter state and counters (call when retuning)."""
        self.discriminator.reset()
        self.deemphasis.reset()
        self.dc_block.reset()
        self.decimator.reset()
        self.bytes_consumed = 0
        self.total_audio_bytes = 0
        self.buffers_processed = 0

    def process_buffer(self, raw):
        """
        Demodulate one raw buffer.

        Args:
            raw: interleaved cu8 bytes (even length)

        Returns:
            int16 numpy array. It is a view into the scratch arena and is
            overwritten by the next call; copy it to keep it.
        """
        arena = self.arena
        arena.reserve(len(raw) // 2)

        i, q = convert_samples(raw, arena.i, arena.q)
        freq = self.discriminator.step(i, q, out=arena.freq)
        freq, _ = self.deemphasis.step(freq)
        freq = self.dc_block.step(freq)
        decimated = self.decimator.step(freq)
        return quantize(decimated, self.config.quantizer_gain,
                        out=arena.audio, scratch=arena.scaled)

    def run(self, source, sink, duration_s, on_block=None):
        """
        Capture duration_s seconds from source into sink.

        source.read_sync(n) must return (data, status); a negative status
        raises AcquisitionError. Empty data with a non-negative status ends
        the stream early. The sink is finalized with the emitted audio byte
        count even when the loop fails, leaving a shorter but valid file.

        Returns:
            total audio bytes written
        """
        target = self.config.target_bytes(duration_s)
        try:
            check_wav_capacity(self.config, duration_s)
            while self.bytes_consumed < target:
                data, status = source.read_sync(self.config.buffer_size)
                if status < 0:
                    raise AcquisitionError(
                        f"An error occurred while reading I/Q samples (status {status})"
                    )
                if len(data) == 0:
                    print("I/Q source exhausted before requested duration")
                    break

                remaining = target - self.bytes_consumed
                if len(data) > remaining:
                    data = data[:remaining]

                block = self.process_buffer(data)
                sink.append_samples(block)
                self.total_audio_bytes += block.size * BYTES_PER_PCM_SAMPLE
                self.bytes_consumed += len(data)
                self.buffers_processed += 1

                if on_block is not None:
                    on_block(self)
        finally:
            sink.finalize(self.total_audio_bytes)

        return self.total_audio_bytes
