#!/usr/bin/env python3
"""
Command-line and configuration tests for fmrec.

Runs the full CLI against cu8 capture files (no hardware required).
"""

import io
import os
import sys

import numpy as np
import pytest
from rich.console import Console

sys.path.insert(0, os.path.join(os.path.dirname(os.path.abspath(__file__)), '..'))

import fmrec
from fmrec import build_capture_status_text, build_summary_table, load_config, main, record
from pipeline import FMCapturePipeline, PipelineConfig
from rtl_sdr import IQFileSource
from wav_writer import read_wav_header

SMALL_CONFIG = """\
[pipeline]
acquisition_rate_hz = 2000
output_rate_hz = 100
deemphasis_tau_s = 0.0
dc_block_coefficient = 0.0
quantizer_gain = 10000
buffer_size = 1000

[radio]
device_index = 2
output = from_config.wav
"""


def write_tone_capture(path, pairs):
    """cu8 capture of a tone advancing pi/2 per sample."""
    cycle = [(255, 255), (0, 255), (0, 0), (255, 0)]
    data = bytearray()
    for k in range(pairs):
        data.extend(cycle[k % 4])
    path.write_bytes(bytes(data))


# =============================================================================
# Configuration
# =============================================================================

def test_load_config_defaults_when_missing(tmp_path):
    config, radio = load_config(str(tmp_path / "missing.cfg"))
    assert config == PipelineConfig()
    assert radio == {'device_index': 0, 'output': 'audio.wav'}


def test_load_config_reads_sections(tmp_path):
    cfg_path = tmp_path / "fmrec.cfg"
    cfg_path.write_text(SMALL_CONFIG)

    config, radio = load_config(str(cfg_path))
    assert config.acquisition_rate_hz == 2000
    assert config.output_rate_hz == 100
    assert config.deemphasis_tau_s == 0.0
    assert config.dc_block_coefficient == 0.0
    assert config.quantizer_gain == 10000.0
    assert config.buffer_size == 1000
    assert radio == {'device_index': 2, 'output': 'from_config.wav'}


def test_load_config_partial_file_keeps_defaults(tmp_path):
    cfg_path = tmp_path / "fmrec.cfg"
    cfg_path.write_text("[pipeline]\ndeemphasis_tau_s = 0.000075\n")
    config, _ = load_config(str(cfg_path))
    assert config.deemphasis_tau_s == 75e-6
    assert config.acquisition_rate_hz == 960000


def test_load_config_ignores_unparseable_file(tmp_path, capsys):
    cfg_path = tmp_path / "fmrec.cfg"
    cfg_path.write_text("[pipeline]\nbuffer_size = lots\n")
    config, radio = load_config(str(cfg_path))
    assert config == PipelineConfig()
    assert radio['output'] == 'audio.wav'
    assert "Warning" in capsys.readouterr().out


# =============================================================================
# Status output
# =============================================================================

def test_capture_status_text():
    text = build_capture_status_text(2.5, 10, 4096, "/tmp/station.wav")
    assert "REC" in text.plain
    assert "2.5/10s" in text.plain
    assert "station.wav" in text.plain
    assert any("red" in str(span.style) for span in text.spans)


def test_summary_table_lists_output():
    pipeline = FMCapturePipeline(PipelineConfig())
    console = Console(file=io.StringIO(), width=120)
    console.print(build_summary_table(pipeline, "station.wav", 1.25))
    rendered = console.file.getvalue()
    assert "station.wav" in rendered
    assert "960000 / 48000 = 20" in rendered


# =============================================================================
# Recording
# =============================================================================

def test_record_from_capture_file(tmp_path):
    capture = tmp_path / "capture.cu8"
    write_tone_capture(capture, 2000)
    out = tmp_path / "out.wav"
    config = PipelineConfig(acquisition_rate_hz=2000, output_rate_hz=100, buffer_size=1000,
                            deemphasis_tau_s=0.0, dc_block_coefficient=0.0,
                            quantizer_gain=10000.0)
    console = Console(file=io.StringIO())

    pipeline = record(IQFileSource(capture), 98.5, 1, str(out), config, console)

    assert pipeline.bytes_consumed == 4000
    header = read_wav_header(out)
    assert header["sample_rate"] == 100
    assert header["data_size"] == 200
    with open(out, "rb") as f:
        f.seek(44)
        samples = np.frombuffer(f.read(), dtype="<i2")
    assert len(samples) == 100
    assert np.all(samples == int(np.pi / 2 * 10000))


def test_main_records_capture_file(tmp_path):
    cfg_path = tmp_path / "fmrec.cfg"
    cfg_path.write_text(SMALL_CONFIG)
    capture = tmp_path / "capture.cu8"
    write_tone_capture(capture, 2000)
    out = tmp_path / "station.wav"

    code = main(["98.5", "1", "--input", str(capture), "-o", str(out),
                 "--config", str(cfg_path)])

    assert code == 0
    assert read_wav_header(out)["data_size"] == 200


def test_main_zero_duration_writes_empty_wav(tmp_path):
    cfg_path = tmp_path / "fmrec.cfg"
    cfg_path.write_text(SMALL_CONFIG)
    capture = tmp_path / "capture.cu8"
    write_tone_capture(capture, 100)
    out = tmp_path / "empty.wav"

    code = main(["98.5", "0", "--input", str(capture), "-o", str(out),
                 "--config", str(cfg_path)])

    assert code == 0
    header = read_wav_header(out)
    assert header["data_size"] == 0
    assert header["chunk_size"] == 36


def test_main_short_capture_ends_early(tmp_path):
    cfg_path = tmp_path / "fmrec.cfg"
    cfg_path.write_text(SMALL_CONFIG)
    capture = tmp_path / "capture.cu8"
    write_tone_capture(capture, 500)
    out = tmp_path / "short.wav"

    code = main(["98.5", "5", "--input", str(capture), "-o", str(out),
                 "--config", str(cfg_path)])

    assert code == 0
    assert read_wav_header(out)["data_size"] == 50


def test_main_deemphasis_option_overrides_config(tmp_path, monkeypatch):
    seen = {}

    def _fake_record(source, frequency_mhz, duration_s, output_path, config, console=None):
        seen['tau'] = config.deemphasis_tau_s
        seen['source'] = source
        seen['output'] = output_path
        return FMCapturePipeline(config)

    monkeypatch.setattr(fmrec, "record", _fake_record)
    code = main(["98.5", "1", "--deemphasis", "75", "--config", str(tmp_path / "none.cfg")])

    assert code == 0
    assert seen['tau'] == pytest.approx(75e-6)
    assert seen['output'] == 'audio.wav'
    assert seen['source'].device_index == 0


@pytest.mark.parametrize("argv", [
    ["0", "10"],
    ["-98.5", "10"],
    ["98.5", "-1"],
])
def test_main_rejects_bad_capture_request(argv, tmp_path):
    assert main(argv + ["--config", str(tmp_path / "none.cfg")]) == 1


def test_main_rejects_bad_rate_config(tmp_path):
    cfg_path = tmp_path / "fmrec.cfg"
    cfg_path.write_text("[pipeline]\noutput_rate_hz = 44100\n")
    assert main(["98.5", "1", "--config", str(cfg_path)]) == 1


def test_main_reports_acquisition_failure(tmp_path, monkeypatch):
    class _FailingSource(IQFileSource):
        def read_sync(self, num_bytes):
            return b"", -5

    cfg_path = tmp_path / "fmrec.cfg"
    cfg_path.write_text(SMALL_CONFIG)
    capture = tmp_path / "capture.cu8"
    write_tone_capture(capture, 500)
    out = tmp_path / "failed.wav"

    monkeypatch.setattr(fmrec, "IQFileSource", _FailingSource)
    code = main(["98.5", "1", "--input", str(capture), "-o", str(out),
                 "--config", str(cfg_path)])

    assert code == 1
    header = read_wav_header(out)
    assert header["data_size"] == 0
    assert header["chunk_size"] == 36


def test_main_rejects_duration_too_long_for_wav(tmp_path, monkeypatch):
    def _unexpected_record(*args, **kwargs):
        raise AssertionError("record must not run")

    monkeypatch.setattr(fmrec, "record", _unexpected_record)
    assert main(["98.5", "50000", "--config", str(tmp_path / "none.cfg")]) == 1


def test_record_finalizes_wav_when_live_display_fails(tmp_path, monkeypatch):
    class _BrokenLive:
        def __init__(self, *args, **kwargs):
            raise RuntimeError("terminal unavailable")

    capture = tmp_path / "capture.cu8"
    write_tone_capture(capture, 100)
    out = tmp_path / "out.wav"
    config = PipelineConfig(acquisition_rate_hz=2000, output_rate_hz=100, buffer_size=1000)

    monkeypatch.setattr(fmrec, "Live", _BrokenLive)
    with pytest.raises(RuntimeError, match="terminal unavailable"):
        record(IQFileSource(capture), 98.5, 1, str(out), config, Console(file=io.StringIO()))

    header = read_wav_header(out)
    assert header["data_size"] == 0
    assert header["chunk_size"] == 36
    assert header["sample_rate"] == 100
