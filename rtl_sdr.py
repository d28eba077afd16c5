#!/usr/bin/env python3
"""
I/Q Sources for fmrec

RtlSdrSource reads unsigned 8-bit interleaved I/Q (cu8) from an RTL-SDR
dongle through pyrtlsdr. IQFileSource replays a cu8 capture file (for
example one recorded with `rtl_sdr -f 98.5e6 -s 960000 capture.cu8`) through
the same interface.

Both expose open / configure / reset_buffers / read_sync / close.
read_sync returns (data, status) and never raises on a failed read: a
negative status is the caller's signal to stop.

Requires: pip install pyrtlsdr (and librtlsdr) for hardware capture
"""

import errno
import os

try:
    from rtlsdr import RtlSdr
    from rtlsdr.librtlsdr import librtlsdr
except ImportError:
    RtlSdr = None
    librtlsdr = None

# Tuner gain modes (rtlsdr_set_tuner_gain_mode)
GAIN_MODE_AUTO = 0
GAIN_MODE_MANUAL = 1

# Status codes returned by read_sync
STATUS_OK = 0
STATUS_IO_ERROR = -errno.EIO


def _status_from_error(exc):
    """Map a read exception to a negative status code."""
    code = getattr(exc, "errno", None)
    if isinstance(code, int) and code < 0:
        return code
    if isinstance(code, int) and code > 0:
        return -code
    return STATUS_IO_ERROR


class RtlSdrSource:
    """
    RTL-SDR dongle as a blocking cu8 sample source.

    Usage:
        with RtlSdrSource(device_index=0) as sdr:
            sdr.configure(98.5e6, 960000)
            sdr.reset_buffers()
            data, status = sdr.read_sync(262144)
    """

    def __init__(self, device_index=0):
        self.device_index = int(device_index)
        self._sdr = None
        self.center_freq_hz = None
        self.sample_rate_hz = None
        self.gain_mode = GAIN_MODE_AUTO

    @property
    def is_open(self):
        return self._sdr is not None

    def open(self, device_index=None):
        """Open the dongle at device_index (default: the one given at construction)."""
        if self._sdr is not None:
            return self
        if device_index is not None:
            self.device_index = int(device_index)
        if RtlSdr is None:
            raise RuntimeError(
                "pyrtlsdr not available. Install 'pyrtlsdr' and librtlsdr to capture "
                "from an RTL-SDR device."
            )
        try:
            self._sdr = RtlSdr(device_index=self.device_index)
        except OSError as e:
            raise RuntimeError(f"Failed to open SDR device {self.device_index}: {e}") from e
        print(f"Connected to RTL-SDR device {self.device_index}")
        return self

    def configure(self, center_freq_hz, sample_rate_hz, gain_mode=GAIN_MODE_AUTO):
        """Tune, set the sample rate and select automatic or manual tuner gain."""
        if self._sdr is None:
            raise RuntimeError("SDR device is not open")
        self._sdr.center_freq = float(center_freq_hz)
        self._sdr.sample_rate = float(sample_rate_hz)
        self._sdr.set_manual_gain_enabled(gain_mode == GAIN_MODE_MANUAL)
        self.center_freq_hz = float(center_freq_hz)
        self.sample_rate_hz = float(sample_rate_hz)
        self.gain_mode = gain_mode
        print(f"Tuned to {self.center_freq_hz / 1e6:.3f} MHz at "
              f"{self.sample_rate_hz / 1e3:.0f} kS/s "
              f"({'manual' if gain_mode == GAIN_MODE_MANUAL else 'auto'} gain)")

    def reset_buffers(self):
        """Drop samples buffered in the dongle before streaming starts."""
        if self._sdr is None:
            raise RuntimeError("SDR device is not open")
        result = librtlsdr.rtlsdr_reset_buffer(self._sdr.dev_p)
        if result < 0:
            raise RuntimeError(f"Failed to reset SDR buffer (code {result})")

    def read_sync(self, num_bytes):
        """Blocking read of num_bytes cu8 bytes; returns (data, status)."""
        if self._sdr is None:
            return b"", STATUS_IO_ERROR
        try:
            buffer = self._sdr.read_bytes(int(num_bytes))
        except OSError as e:
            return b"", _status_from_error(e)
        return bytes(buffer), STATUS_OK

    def close(self):
        if self._sdr is None:
            return
        try:
            self._sdr.close()
        finally:
            self._sdr = None

    def __enter__(self):
        return self.open()

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False


class IQFileSource:
    """
    cu8 capture file with the same interface as RtlSdrSource.

    configure() only records the requested values; the file is assumed to
    have been captured at the pipeline's acquisition rate. End of file
    returns empty data with STATUS_OK.
    """

    def __init__(self, path):
        self.path = os.fspath(path)
        self._file = None
        self.center_freq_hz = None
        self.sample_rate_hz = None
        self.gain_mode = GAIN_MODE_AUTO

    @property
    def is_open(self):
        return self._file is not None

    @property
    def size_bytes(self):
        return os.path.getsize(self.path)

    def open(self, device_index=None):
        if self._file is None:
            try:
                self._file = open(self.path, "rb")
            except OSError as e:
                raise RuntimeError(f"Failed to open I/Q file {self.path}: {e}") from e
            print(f"Replaying {self.path} ({self.size_bytes} bytes)")
        return self

    def configure(self, center_freq_hz, sample_rate_hz, gain_mode=GAIN_MODE_AUTO):
        self.center_freq_hz = float(center_freq_hz)
        self.sample_rate_hz = float(sample_rate_hz)
        self.gain_mode = gain_mode

    def reset_buffers(self):
        if self._file is None:
            raise RuntimeError("I/Q file is not open")
        self._file.seek(0)

    def read_sync(self, num_bytes):
        if self._file is None:
            return b"", STATUS_IO_ERROR
        try:
            data = self._file.read(int(num_bytes))
        except OSError as e:
            return b"", _status_from_error(e)
        # Only whole pairs are returned; an odd trailing byte stays unread
        # so the next read starts on an I sample
        if len(data) % 2:
            self._file.seek(-1, os.SEEK_CUR)
            data = data[:-1]
        return data, STATUS_OK

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
        self.close()
        return False
