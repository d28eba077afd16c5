#!/usr/bin/env python3
"""
fmrec - Record a wideband FM broadcast station to a WAV file

Tunes an RTL-SDR dongle (or replays a cu8 capture), demodulates mono FM and
writes 48 kHz 16-bit PCM.

Usage:
    ./fmrec.py 98.5 10                      # 10 s from 98.5 MHz -> audio.wav
    ./fmrec.py 98.5 10 -o station.wav --deemphasis 75
    ./fmrec.py 98.5 10 --input capture.cu8  # offline, from an rtl_sdr capture

Configuration (optional, fmrec.cfg next to this script or --config PATH):

    [pipeline]
    acquisition_rate_hz = 960000
    output_rate_hz = 48000
    deemphasis_tau_s = 0.00005
    dc_block_coefficient = 0.99
    quantizer_gain = 32767
    buffer_size = 262144

    [radio]
    device_index = 0
    output = audio.wav
"""

import argparse
import configparser
import os
import sys
import time

from rich.console import Console
from rich.live import Live
from rich.table import Table
from rich.text import Text
from rich import box

from pipeline import (
    AcquisitionError,
    ConfigurationError,
    FMCapturePipeline,
    PipelineConfig,
    validate_capture_request,
)
from rtl_sdr import GAIN_MODE_AUTO, IQFileSource, RtlSdrSource
from wav_writer import WavWriter

DEFAULT_CONFIG_PATH = os.path.join(os.path.dirname(os.path.abspath(__file__)), 'fmrec.cfg')
DEFAULT_OUTPUT = 'audio.wav'
DEFAULT_DEVICE_INDEX = 0

# Option name -> converter for the [pipeline] section
_PIPELINE_OPTIONS = {
    'acquisition_rate_hz': int,
    'output_rate_hz': int,
    'deemphasis_tau_s': float,
    'dc_block_coefficient': float,
    'quantizer_gain': float,
    'buffer_size': int,
}


def load_config(path=DEFAULT_CONFIG_PATH):
    """
    Read pipeline constants and radio defaults from an INI file.

    Missing file or options fall back to PipelineConfig defaults. A file that
    cannot be parsed is reported and ignored.

    Returns:
        (PipelineConfig, dict with 'device_index' and 'output')
    """
    values = {}
    radio = {'device_index': DEFAULT_DEVICE_INDEX, 'output': DEFAULT_OUTPUT}
    if not path or not os.path.exists(path):
        return PipelineConfig(), radio

    config = configparser.ConfigParser()
    try:
        config.read(path)
        for name, convert in _PIPELINE_OPTIONS.items():
            if config.has_option('pipeline', name):
                values[name] = convert(config.get('pipeline', name))
        if config.has_option('radio', 'device_index'):
            radio['device_index'] = config.getint('radio', 'device_index')
        if config.has_option('radio', 'output'):
            radio['output'] = config.get('radio', 'output').strip()
    except (ValueError, configparser.Error) as e:
        print(f"Warning: ignoring config {path}: {e}")
        return PipelineConfig(), {'device_index': DEFAULT_DEVICE_INDEX, 'output': DEFAULT_OUTPUT}

    return PipelineConfig(**values), radio


def build_capture_status_text(seconds_done, duration_s, audio_bytes, output_path=None):
    """Build rich text for the capture progress line."""
    text = Text()
    text.append("REC", style="red bold")
    text.append(f" {seconds_done:5.1f}/{duration_s}s", style="red")
    text.append(f"  {audio_bytes / 1024:8.1f} KiB", style="cyan")
    if output_path:
        text.append("  ")
        text.append(os.path.basename(output_path), style="dim")
    return text


def build_summary_table(pipeline, output_path, elapsed_s):
    """Build the end-of-run summary table."""
    cfg = pipeline.config
    table = Table(box=box.SIMPLE, show_header=False)
    table.add_column("", style="bold")
    table.add_column("")
    table.add_row("Output", output_path)
    table.add_row("Audio", f"{pipeline.total_audio_bytes} bytes "
                           f"({pipeline.total_audio_bytes / 2 / cfg.output_rate_hz:.2f} s "
                           f"@ {cfg.output_rate_hz} Hz)")
    table.add_row("I/Q consumed", f"{pipeline.bytes_consumed} bytes in "
                                  f"{pipeline.buffers_processed} buffers")
    table.add_row("Decimation", f"{cfg.acquisition_rate_hz} / {cfg.output_rate_hz} = "
                                f"{pipeline.decimation_factor}")
    table.add_row("De-emphasis", f"{cfg.deemphasis_tau_s * 1e6:.0f} us")
    table.add_row("Elapsed", f"{elapsed_s:.2f} s")
    return table


def record(source, frequency_mhz, duration_s, output_path, config, console=None):
    """
    Capture duration_s seconds at frequency_mhz from source into output_path.

    The source is opened, configured and closed here; the WAV file is always
    finalized, even if acquisition fails.

    Returns:
        the FMCapturePipeline (for its counters)
    """
    pipeline = FMCapturePipeline(config)
    cfg = pipeline.config
    validate_capture_request(frequency_mhz, duration_s, cfg)
    console = console or Console()

    with source:
        source.configure(frequency_mhz * 1e6, cfg.acquisition_rate_hz, GAIN_MODE_AUTO)
        source.reset_buffers()

        status = build_capture_status_text(0.0, duration_s, 0, output_path)
        with WavWriter(output_path, sample_rate=cfg.output_rate_hz) as writer, \
                Live(status, console=console, refresh_per_second=4, transient=True) as live:
            def _on_block(p):
                seconds_done = p.bytes_consumed / (2 * cfg.acquisition_rate_hz)
                live.update(build_capture_status_text(
                    seconds_done, duration_s, p.total_audio_bytes, output_path
                ))

            pipeline.run(source, writer, duration_s, on_block=_on_block)

    return pipeline


def main(argv=None):
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="fmrec - record a wideband FM station to a mono WAV file"
    )
    parser.add_argument(
        "frequency",
        type=float,
        help="Center frequency in MHz (e.g. 98.5)"
    )
    parser.add_argument(
        "duration",
        type=int,
        help="Capture duration in seconds"
    )
    parser.add_argument(
        "-o", "--output",
        default=None,
        help=f"Output WAV path (default: config or {DEFAULT_OUTPUT})"
    )
    parser.add_argument(
        "--device-index",
        type=int,
        default=None,
        help="RTL-SDR device index (default: config or 0)"
    )
    parser.add_argument(
        "--input",
        default=None,
        help="Read I/Q from a cu8 capture file instead of an RTL-SDR"
    )
    parser.add_argument(
        "--deemphasis",
        type=int,
        choices=[50, 75],
        default=None,
        help="De-emphasis time constant in microseconds "
             "(50: Europe/Asia/Africa, 75: Americas/Korea)"
    )
    parser.add_argument(
        "--config",
        default=DEFAULT_CONFIG_PATH,
        help="Path to config file (default: fmrec.cfg next to this script)"
    )
    args = parser.parse_args(argv)

    console = Console()

    config, radio = load_config(args.config)
    if args.deemphasis is not None:
        config.deemphasis_tau_s = args.deemphasis * 1e-6
    output_path = args.output or radio['output']
    device_index = args.device_index if args.device_index is not None else radio['device_index']

    try:
        config.validate()
        validate_capture_request(args.frequency, args.duration, config)
    except ConfigurationError as e:
        console.print(f"[red bold]Error:[/] {e}")
        return 1

    if args.input:
        source = IQFileSource(args.input)
    else:
        source = RtlSdrSource(device_index=device_index)

    start = time.monotonic()
    try:
        pipeline = record(source, args.frequency, args.duration, output_path, config, console)
    except AcquisitionError as e:
        console.print(f"[red bold]Acquisition failed:[/] {e}")
        console.print(f"Partial recording kept in {output_path}")
        return 1
    except RuntimeError as e:
        console.print(f"[red bold]Error:[/] {e}")
        return 1
    except KeyboardInterrupt:
        console.print("\nInterrupted")
        console.print(f"Partial recording kept in {output_path}")
        return 1

    console.print(build_summary_table(pipeline, output_path, time.monotonic() - start))
    return 0


if __name__ == "__main__":
    sys.exit(main())
