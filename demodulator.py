#!/usr/bin/env python3
"""
Wideband FM Mono Demodulator Building Blocks

Sample centering, phase discriminator, de-emphasis and DC-block filters,
decimation and 16-bit quantization used by FMCapturePipeline (pipeline.py).

Every stateful block keeps its own carry between buffers and exposes
step() / reset(), so feeding a stream in blocks gives the same result as
feeding it in one piece.
"""

import numpy as np
from scipy import signal


# Midpoint of the unsigned 8-bit RTL-SDR sample range
SAMPLE_MIDPOINT = 127.5

# 16-bit PCM rails
INT16_MIN = -32768.0
INT16_MAX = 32767.0

# De-emphasis time constants (seconds)
DEEMPHASIS_50US = 50e-6   # Europe, Asia, Africa
DEEMPHASIS_75US = 75e-6   # Americas, Korea

TWO_PI = 2.0 * np.pi


def deemphasis_alpha(tau_s, sample_rate_hz):
    """
    Convert a continuous-time RC time constant to the EMA coefficient.

    alpha = 1 - exp(-1 / (tau * fs)). A non-positive tau or sample rate
    returns 1.0, which turns the filter into a pass-through.
    """
    tau = float(tau_s)
    if tau <= 0.0:
        return 1.0
    fs = float(sample_rate_hz)
    if fs <= 0.0:
        return 1.0
    alpha = 1.0 - np.exp(-1.0 / (tau * fs))
    return float(max(0.0, min(1.0, alpha)))


# =============================================================================
# Sample conversion
# =============================================================================

def convert_value(value):
    """Center one unsigned 8-bit sample around zero."""
    return float(value) - SAMPLE_MIDPOINT


def convert_samples(raw, i_out=None, q_out=None):
    """
    Split an interleaved cu8 buffer (I0, Q0, I1, Q1, ...) into centered I and Q.

    Args:
        raw: bytes-like or uint8 array of even length
        i_out, q_out: optional preallocated float64 arrays of len(raw) // 2

    Returns:
        (i, q) float64 arrays
    """
    if isinstance(raw, (bytes, bytearray, memoryview)):
        data = np.frombuffer(raw, dtype=np.uint8)
    else:
        data = np.asarray(raw, dtype=np.uint8)
    if data.size % 2:
        raise ValueError(f"I/Q buffer must have even length, got {data.size} bytes")
    pairs = data.size // 2
    if i_out is None:
        i_out = np.empty(pairs, dtype=np.float64)
    if q_out is None:
        q_out = np.empty(pairs, dtype=np.float64)
    i_out = i_out[:pairs]
    q_out = q_out[:pairs]
    np.subtract(data[0::2], SAMPLE_MIDPOINT, out=i_out)
    np.subtract(data[1::2], SAMPLE_MIDPOINT, out=q_out)
    return i_out, q_out


# =============================================================================
# Phase discriminator
# =============================================================================

def _wrap_phase_step(dphi):
    """Fold phase steps that crossed the atan2 branch cut back into [-pi, pi] (in place)."""
    dphi[dphi > np.pi] -= TWO_PI
    dphi[dphi < -np.pi] += TWO_PI
    return dphi


def instant_freq(i1, q1, i2, q2):
    """
    Instantaneous frequency (radians/sample) between two consecutive I/Q pairs.

    The raw atan2 difference can jump by ~2*pi when the phase crosses the
    -pi/+pi branch cut, so a step above +pi loses 2*pi and a step below -pi
    gains 2*pi.
    """
    dphi = float(np.arctan2(q2, i2) - np.arctan2(q1, i1))
    if dphi > np.pi:
        dphi -= TWO_PI
    elif dphi < -np.pi:
        dphi += TWO_PI
    return dphi


def instantaneous_frequency(i_samples, q_samples):
    """
    Instantaneous frequency over a block of N I/Q pairs.

    Returns N-1 samples, one per adjacent pair, in input order.
    """
    phase = np.arctan2(np.asarray(q_samples, dtype=np.float64),
                       np.asarray(i_samples, dtype=np.float64))
    return _wrap_phase_step(np.diff(phase))


class PhaseDiscriminator:
    """
    Streaming quadrature discriminator.

    Carries the last I/Q pair of each block so the first sample of the next
    block has a predecessor: after the first block every block of N pairs
    yields N frequency samples instead of N-1.
    """

    def __init__(self, max_pairs=0):
        # Phase scratch: slot 0 holds the carried phase, the rest the block
        self._phase = np.empty(int(max_pairs) + 1, dtype=np.float64)
        self.last_pair = None
        self._last_phase = 0.0

    def reset(self):
        self.last_pair = None
        self._last_phase = 0.0

    def step(self, i_samples, q_samples, out=None):
        """
        Demodulate one block.

        Args:
            i_samples, q_samples: centered float arrays of equal length
            out: optional float64 array with room for len(i_samples) samples

        Returns:
            float64 array of instantaneous frequency (radians/sample)
        """
        n = len(i_samples)
        if len(q_samples) != n:
            raise ValueError("I and Q blocks must have equal length")
        if n == 0:
            return np.empty(0, dtype=np.float64)

        if self._phase.size < n + 1:
            self._phase = np.empty(n + 1, dtype=np.float64)
        phase = self._phase[:n + 1]
        np.arctan2(q_samples, i_samples, out=phase[1:])

        if self.last_pair is None:
            start = 1
        else:
            phase[0] = self._last_phase
            start = 0
        count = n - start

        if out is None:
            out = np.empty(count, dtype=np.float64)
        freq = out[:count]
        np.subtract(phase[start + 1:], phase[start:-1], out=freq)
        _wrap_phase_step(freq)

        self.last_pair = (float(i_samples[-1]), float(q_samples[-1]))
        self._last_phase = float(phase[-1])
        return freq


# =============================================================================
# Filters
# =============================================================================

class DeemphasisFilter:
    """
    Single-pole exponential low-pass undoing broadcast pre-emphasis.

    y[i] = alpha * x[i] + (1 - alpha) * y[i-1], with y[-1] the last output of
    the previous block (0.0 after reset).
    """

    def __init__(self, tau_s=DEEMPHASIS_50US, sample_rate_hz=960000):
        self.tau_s = float(tau_s)
        self.sample_rate_hz = float(sample_rate_hz)
        self.alpha = deemphasis_alpha(self.tau_s, self.sample_rate_hz)
        self.b = np.array([self.alpha])
        self.a = np.array([1.0, -(1.0 - self.alpha)])
        self._zi = np.zeros(1)
        self.last_output = 0.0

    def reset(self):
        self.last_output = 0.0

    def step(self, samples):
        """Filter one block; returns (filtered, last_output)."""
        x = np.asarray(samples, dtype=np.float64)
        if x.size == 0:
            return np.empty(0, dtype=np.float64), self.last_output
        self._zi[0] = (1.0 - self.alpha) * self.last_output
        y, _ = signal.lfilter(self.b, self.a, x, zi=self._zi)
        self.last_output = float(y[-1])
        return y, self.last_output


class DCBlockFilter:
    """
    Single-pole high-pass removing residual DC from the discriminator output.

    y[i] = x[i] - x[i-1] + R * y[i-1]. The first sample after reset passes
    through unchanged and seeds both the previous-input and previous-output
    terms; after that the pair is carried from block to block.

    R == 0 disables the filter; negative R is rejected.
    """

    def __init__(self, coefficient=0.99):
        self.coefficient = float(coefficient)
        if self.coefficient >= 1.0:
            raise ValueError(f"DC-block coefficient must be < 1, got {coefficient}")
        if self.coefficient < 0.0:
            raise ValueError(f"DC-block coefficient must be >= 0, got {coefficient}")
        self.enabled = self.coefficient != 0.0
        self.b = np.array([1.0, -1.0])
        self.a = np.array([1.0, -self.coefficient])
        self._zi = np.zeros(1)
        self.last_input = None
        self.last_output = None

    def reset(self):
        self.last_input = None
        self.last_output = None

    def step(self, samples):
        """Filter one block; returns the filtered block (the input itself when disabled)."""
        x = np.asarray(samples, dtype=np.float64)
        if x.size == 0:
            return np.empty(0, dtype=np.float64)
        if not self.enabled:
            y = x
        else:
            if self.last_input is None:
                self._zi[0] = 0.0
            else:
                self._zi[0] = self.coefficient * self.last_output - self.last_input
            y, _ = signal.lfilter(self.b, self.a, x, zi=self._zi)
        self.last_input = float(x[-1])
        self.last_output = float(y[-1])
        return y


# =============================================================================
# Rate reduction and quantization
# =============================================================================

def decimate(samples, factor):
    """
    Keep every factor-th sample starting at index 0.

    Point sampling only; the de-emphasis low-pass is the sole anti-alias
    filter. Output length is floor(len(samples) / factor).
    """
    factor = int(factor)
    if factor < 1:
        raise ValueError(f"decimation factor must be >= 1, got {factor}")
    x = np.asarray(samples)
    count = x.size // factor
    return x[:count * factor:factor]


class Decimator:
    """Phase-continuous point decimator (keeps the stride across blocks)."""

    def __init__(self, factor):
        self.factor = int(factor)
        if self.factor < 1:
            raise ValueError(f"decimation factor must be >= 1, got {factor}")
        self.phase = 0

    def reset(self):
        self.phase = 0

    def step(self, samples):
        x = np.asarray(samples)
        if x.size == 0:
            return x[:0]
        out = x[self.phase::self.factor]
        self.phase = (self.phase - x.size) % self.factor
        return out


def quantize(samples, gain=INT16_MAX, out=None, scratch=None):
    """
    Scale float samples to 16-bit PCM.

    Values are multiplied by gain, clamped to [-32768, 32767] and truncated
    toward zero. Out-of-range input saturates at the rail instead of wrapping.

    Args:
        samples: float samples
        gain: scale applied before clamping
        out: optional int16 array with room for len(samples) values
        scratch: optional float64 array used for the scaled intermediate
    """
    x = np.asarray(samples, dtype=np.float64)
    if scratch is None:
        scaled = x * float(gain)
    else:
        scaled = scratch[:x.size]
        np.multiply(x, float(gain), out=scaled)
    np.clip(scaled, INT16_MIN, INT16_MAX, out=scaled)
    if out is None:
        return scaled.astype(np.int16)
    block = out[:scaled.size]
    np.copyto(block, scaled, casting='unsafe')
    return block
