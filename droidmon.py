#!/usr/bin/env python3
"""
droidmon - Android log, memory and thread monitor over adb.
Streams filtered logcat output, samples `dumpsys meminfo` into a time series
with a chart, and snapshots native library memory and process threads.
"""

import argparse
import csv
import json
import os
import re
import subprocess
import sys
import threading
import time
from collections import Counter
from dataclasses import asdict, dataclass, fields
from datetime import datetime
from enum import Enum
from typing import Callable, Iterable, Iterator, List, Optional, Sequence, Tuple

try:
    import yaml
except ImportError:
    yaml = None

try:
    import psutil
except ImportError:
    print("Error: psutil is required. Install it with: pip install psutil", file=sys.stderr)
    sys.exit(1)

try:
    import matplotlib
    matplotlib.use('Agg')
    from matplotlib.figure import Figure
except ImportError:
    print("Error: matplotlib is required. Install it with: pip install matplotlib", file=sys.stderr)
    sys.exit(1)


DEFAULT_PACKAGE_NAME = "com.example.app"
DEFAULT_KEYWORD_REGEX = "ERROR|WARNING"
DEFAULT_OUTPUT_FILE = "filtered_logs.txt"
DEFAULT_SAMPLE_INTERVAL = 1
DEFAULT_MEMORY_DURATION = 60
DEFAULT_PLOT_FILE = "memory_plot.png"
DEFAULT_COMMAND_TIMEOUT = 30.0

TABLE_SCAN_LIMIT = 1000
DEFAULT_PSS_SPAN = 1000.0
PSS_HEADROOM = 1.2


# -------------------- Errors --------------------
class DroidmonError(Exception):
    """Base class for failures that stop an operation."""


class GatewayError(DroidmonError):
    """External program could not be started or the device is unreachable."""


class TargetNotFound(DroidmonError):
    """No process for the target package is running on the device."""


class RenderError(DroidmonError):
    """Chart image could not be produced."""


class WriteError(DroidmonError):
    """Report file could not be written."""


class ConfigError(DroidmonError):
    """Configuration document or option value is invalid."""


class PatternError(DroidmonError):
    """Log filter expression does not compile."""


class ParseWarning:
    """A field, row or line failed to parse; collected into a list, never raised."""

    def __init__(self, message: str, line: Optional[str] = None):
        self.message = message
        self.line = line

    def __str__(self):
        if self.line is None:
            return self.message
        return f"{self.message}: {self.line.strip()}"

    def __repr__(self):
        return f"ParseWarning({self.message!r}, {self.line!r})"

    def __eq__(self, other):
        if not isinstance(other, ParseWarning):
            return NotImplemented
        return (self.message, self.line) == (other.message, other.line)

    def __hash__(self):
        return hash((self.message, self.line))


def _warn(diagnostics: Optional[List[ParseWarning]], message: str, line: Optional[str] = None):
    if diagnostics is not None:
        diagnostics.append(ParseWarning(message, line))


# -------------------- Records --------------------
@dataclass(frozen=True)
class MemorySample:
    """One `dumpsys meminfo` snapshot; all sizes in kilobytes."""

    timestamp: int  # seconds since sampling start
    total_pss: int = 0
    native_heap: int = 0
    dalvik_heap: int = 0
    code: int = 0
    stack: int = 0
    graphics: int = 0
    private_dirty: int = 0
    shared_dirty: int = 0


@dataclass(frozen=True)
class LibraryMemoryRecord:
    """Memory attributed to a single mapped native library."""

    name: str
    pss: int
    private_dirty: int
    shared_dirty: int


@dataclass(frozen=True)
class ThreadRecord:
    """One row of `ps -T` output for the target process."""

    tid: str
    name: str
    state: str
    priority: str
    user_time: str
    system_time: str


@dataclass(frozen=True)
class AnalyzerConfig:
    """Effective options for a run, after config file and CLI overrides."""

    package_name: str = DEFAULT_PACKAGE_NAME
    keyword_regex: str = DEFAULT_KEYWORD_REGEX
    output_file: Optional[str] = DEFAULT_OUTPUT_FILE
    sample_interval: int = DEFAULT_SAMPLE_INTERVAL


@dataclass(frozen=True)
class CommandResult:
    """Captured outcome of a one-shot command."""

    stdout: str
    stderr: str
    exit_code: Optional[int]
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out


# -------------------- External Command Gateway --------------------
def _terminate_process(proc: subprocess.Popen, timeout: float = 5.0):
    """Terminate a child and its descendants, then reap it."""
    if proc.poll() is None:
        try:
            children = psutil.Process(proc.pid).children(recursive=True)
        except psutil.NoSuchProcess:
            children = []
        proc.terminate()
        for child in children:
            try:
                child.terminate()
            except psutil.NoSuchProcess:
                continue
        try:
            proc.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            proc.kill()
            proc.wait()
        _, alive = psutil.wait_procs(children, timeout=timeout)
        for child in alive:
            try:
                child.kill()
            except psutil.NoSuchProcess:
                continue
    if proc.stdout is not None:
        proc.stdout.close()


class CommandGateway:
    """Runs external programs, either one-shot or as a line stream."""

    def __init__(self, timeout: Optional[float] = DEFAULT_COMMAND_TIMEOUT):
        self.timeout = timeout
        self.active_process: Optional[subprocess.Popen] = None

    def run(self, program: str, args: Sequence[str], timeout: Optional[float] = None) -> CommandResult:
        """Run a program to completion. Non-zero exit codes are returned, not raised."""
        cmd = [program] + list(args)
        if timeout is None:
            timeout = self.timeout
        try:
            result = subprocess.run(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                timeout=timeout,
                text=True,
                encoding='utf-8',
                errors='replace',
            )
        except subprocess.TimeoutExpired:
            return CommandResult(stdout='', stderr=f"timed out after {timeout}s: {' '.join(cmd)}",
                                 exit_code=None, timed_out=True)
        except OSError as e:
            raise GatewayError(f"Cannot start {program}: {e}") from e
        return CommandResult(stdout=result.stdout, stderr=result.stderr, exit_code=result.returncode)

    def stream(self, program: str, args: Sequence[str]) -> "LineStream":
        """Start a program and return its output lines; closing the stream stops the child."""
        if self.active_process is not None:
            raise GatewayError("A stream is already active on this gateway")
        cmd = [program] + list(args)
        try:
            proc = subprocess.Popen(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.DEVNULL,
                text=True,
                encoding='utf-8',
                errors='replace',
                bufsize=1,
            )
        except OSError as e:
            raise GatewayError(f"Cannot start {program}: {e}") from e
        self.active_process = proc
        return LineStream(self, proc)


class LineStream:
    """Output lines of a running child, terminators stripped. Ends at EOF or close()."""

    def __init__(self, gateway: CommandGateway, proc: subprocess.Popen):
        self._gateway = gateway
        self._proc = proc
        self.closed = False

    def __iter__(self):
        return self

    def __next__(self) -> str:
        if self.closed:
            raise StopIteration
        try:
            line = next(self._proc.stdout)
        except StopIteration:
            self.close()
            raise
        return line.rstrip('\r\n')

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def close(self):
        """Terminate and reap the child; safe to call more than once."""
        if self.closed:
            return
        self.closed = True
        if self._gateway.active_process is self._proc:
            self._gateway.active_process = None
        _terminate_process(self._proc)


class AdbDevice:
    """A device reached through the adb command-line bridge."""

    def __init__(self, gateway: CommandGateway, adb_path: str = "adb", serial: Optional[str] = None):
        self.gateway = gateway
        self.adb_path = adb_path
        self.serial = serial

    def _args(self, *args: str) -> List[str]:
        prefix = ["-s", self.serial] if self.serial else []
        return prefix + list(args)

    def check_available(self) -> str:
        """Verify adb can be started. Returns its version banner."""
        result = self.gateway.run(self.adb_path, ["version"])
        if not result.ok:
            raise GatewayError(f"adb is not usable ({self.adb_path}): {result.stderr.strip()}")
        return result.stdout.strip().splitlines()[0] if result.stdout.strip() else ''

    def list_devices(self) -> List[str]:
        """Serials of attached devices in the 'device' state."""
        result = self.gateway.run(self.adb_path, ["devices"])
        if not result.ok:
            raise GatewayError(f"adb devices failed: {result.stderr.strip()}")
        lines = result.stdout.strip().splitlines()
        return [line.split('\t')[0] for line in lines[1:] if '\tdevice' in line]

    def shell(self, *args: str) -> CommandResult:
        return self.gateway.run(self.adb_path, self._args("shell", *args))

    def pidof(self, package_name: str) -> Optional[str]:
        """First pid of the package's process, or None when it is not running."""
        result = self.shell("pidof", package_name)
        tokens = result.stdout.split()
        if not result.ok or not tokens:
            return None
        return tokens[0]

    def meminfo(self, package_name: str) -> CommandResult:
        return self.shell("dumpsys", "meminfo", package_name)

    def thread_listing(self, pid: str) -> CommandResult:
        return self.shell("ps", "-T", "-p", pid)

    def logcat(self) -> Iterator[str]:
        return self.gateway.stream(self.adb_path, self._args("logcat", "-v", "time"))


# -------------------- Report Field Extractor --------------------
_FIELD_RE = re.compile(r"([^\s:\d][^:]*?)\s*:\s*(\d+)")


def _find_field(report_text: str, key: str) -> Optional[int]:
    for line in report_text.splitlines():
        for match in _FIELD_RE.finditer(line):
            if match.group(1).strip() == key:
                return int(match.group(2))
    return None


def extract_field(report_text: str, key: str, diagnostics: Optional[List[ParseWarning]] = None) -> int:
    """Value of the first `key: <digits>` pair in the report, or 0 with a warning."""
    value = _find_field(report_text, key)
    if value is None:
        _warn(diagnostics, f"Could not find {key} in meminfo")
        return 0
    return value


class Channel(Enum):
    """Tracked meminfo channels: sample field name and accepted report labels."""

    TOTAL_PSS = ("total_pss", ("TOTAL PSS",))
    NATIVE_HEAP = ("native_heap", ("Native Heap",))
    DALVIK_HEAP = ("dalvik_heap", ("Dalvik Heap", "Java Heap"))
    CODE = ("code", ("Code",))
    STACK = ("stack", ("Stack",))
    GRAPHICS = ("graphics", ("Graphics",))
    PRIVATE_DIRTY = ("private_dirty", ("Private Dirty",))
    SHARED_DIRTY = ("shared_dirty", ("Shared Dirty",))

    def __init__(self, field_name: str, labels: Tuple[str, ...]):
        self.field_name = field_name
        self.labels = labels

    def extract(self, report_text: str, diagnostics: Optional[List[ParseWarning]] = None) -> int:
        """First value found under any of this channel's labels."""
        if len(self.labels) == 1:
            return extract_field(report_text, self.labels[0], diagnostics)
        for label in self.labels:
            value = _find_field(report_text, label)
            if value is not None:
                return value
        _warn(diagnostics, f"Could not find {' / '.join(self.labels)} in meminfo")
        return 0

    def project(self, sample: MemorySample) -> int:
        return getattr(sample, self.field_name)


def parse_memory_sample(report_text: str, timestamp: int,
                        diagnostics: Optional[List[ParseWarning]] = None) -> MemorySample:
    """Build a sample from one meminfo report; absent channels read as zero."""
    values = {channel.field_name: channel.extract(report_text, diagnostics) for channel in Channel}
    return MemorySample(timestamp=timestamp, **values)


# -------------------- Section-Scoped Table Parser --------------------
_LIBRARY_ROW_RE = re.compile(r"^\s*(\d+)\s+(\d+)\s+(\d+)\s+(.+\.so)")


def extract_library_table(report_text: str,
                          diagnostics: Optional[List[ParseWarning]] = None,
                          start_marker: str = "Native Heap",
                          end_marker: str = "Dalvik Heap",
                          max_lines: int = TABLE_SCAN_LIMIT) -> List[LibraryMemoryRecord]:
    """
    Parse the native library rows that follow the start marker.

    The section ends at the first blank line or end marker. At most max_lines
    section lines are scanned. Rows come back heaviest PSS first.
    """
    records: List[LibraryMemoryRecord] = []
    in_section = False
    scanned = 0

    for line in report_text.splitlines():
        if not in_section:
            if start_marker in line:
                in_section = True
            continue
        if not line.strip() or end_marker in line:
            break
        if scanned >= max_lines:
            _warn(diagnostics, f"Reached line limit ({max_lines}) in native library table, stopping")
            break
        scanned += 1

        match = _LIBRARY_ROW_RE.match(line)
        if match is None:
            _warn(diagnostics, "Failed to parse native library line", line)
            continue
        records.append(LibraryMemoryRecord(
            name=match.group(4).strip(),
            pss=int(match.group(1)),
            private_dirty=int(match.group(2)),
            shared_dirty=int(match.group(3)),
        ))

    if not records:
        _warn(diagnostics, "No native libraries found in memory report")
    # sorted() keeps equal keys in input order even with reverse=True
    return sorted(records, key=lambda r: r.pss, reverse=True)


def analyze_native_libraries(device: AdbDevice, package_name: str,
                             diagnostics: Optional[List[ParseWarning]] = None) -> List[LibraryMemoryRecord]:
    """One-shot native library breakdown for the target package."""
    if device.pidof(package_name) is None:
        raise TargetNotFound(f"Process {package_name} not found on device")
    result = device.meminfo(package_name)
    if not result.ok:
        _warn(diagnostics, f"dumpsys meminfo exited with status {result.exit_code}: {result.stderr.strip()}")
    return extract_library_table(result.stdout, diagnostics)


# -------------------- Sampling Loop --------------------
class SamplerState(Enum):
    IDLE = "idle"
    SAMPLING = "sampling"
    DONE = "done"


class MemorySampler:
    """Collects meminfo samples at a fixed interval for a bounded duration."""

    def __init__(self, device: AdbDevice, config: AnalyzerConfig,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Optional[Callable[[float], object]] = None):
        """
        Initialize the sampler.

        Args:
            device: Device to query with `dumpsys meminfo`.
            config: Supplies the package name and sampling interval.
            clock: Monotonic time source in seconds.
            sleep: Inter-sample wait; defaults to a wait that stop() interrupts.
        """
        self.device = device
        self.config = config
        self.state = SamplerState.IDLE
        self.interrupted = False
        self.warnings: List[ParseWarning] = []
        self._clock = clock
        self._stop_event = threading.Event()
        self._sleep = sleep if sleep is not None else self._stop_event.wait

    def stop(self):
        """Ask a running sampler to finish after the current tick."""
        self._stop_event.set()

    def capture(self, timestamp: int) -> MemorySample:
        """Take one sample; a failed meminfo call yields zero-valued fields."""
        result = self.device.meminfo(self.config.package_name)
        if result.timed_out:
            _warn(self.warnings, f"dumpsys meminfo timed out at {timestamp}s")
        elif not result.ok:
            _warn(self.warnings, f"dumpsys meminfo exited with status {result.exit_code} at {timestamp}s")
        return parse_memory_sample(result.stdout, timestamp, self.warnings)

    def _wait_until(self, deadline: float):
        while not self._stop_event.is_set():
            remaining = deadline - self._clock()
            if remaining <= 0:
                return
            self._sleep(remaining)

    def run(self, duration: float) -> List[MemorySample]:
        """Sample until duration seconds have elapsed. Returns samples in time order."""
        samples: List[MemorySample] = []
        interval = self.config.sample_interval
        self._stop_event.clear()
        self.state = SamplerState.SAMPLING
        start_time = self._clock()

        try:
            while not self._stop_event.is_set():
                loop_start = self._clock()
                elapsed = loop_start - start_time
                if elapsed >= duration:
                    break

                samples.append(self.capture(int(elapsed)))

                # Next tick is one interval after this one started, never past the end
                self._wait_until(min(loop_start + interval, start_time + duration))
        except KeyboardInterrupt:
            # Keep what was collected so far
            self.interrupted = True
        finally:
            self.state = SamplerState.DONE

        return samples


# -------------------- Series Renderer --------------------
CHANNEL_STYLES: Tuple[Tuple[Channel, str, str], ...] = (
    (Channel.TOTAL_PSS, "Total PSS", "red"),
    (Channel.NATIVE_HEAP, "Native Heap", "blue"),
    (Channel.DALVIK_HEAP, "Dalvik Heap", "green"),
    (Channel.CODE, "Code", "cyan"),
    (Channel.STACK, "Stack", "magenta"),
    (Channel.GRAPHICS, "Graphics", "yellow"),
    (Channel.PRIVATE_DIRTY, "Private Dirty", "black"),
    (Channel.SHARED_DIRTY, "Shared Dirty", "#800080"),
)


def chart_bounds(samples: Sequence[MemorySample]) -> Tuple[float, float]:
    """Upper X and Y limits for the chart, with headroom above the PSS peak."""
    max_time = float(samples[-1].timestamp) if samples else 0.0
    if max_time <= 0:
        max_time = 1.0
    max_pss = max((s.total_pss for s in samples), default=0)
    if max_pss <= 0:
        max_pss = DEFAULT_PSS_SPAN
    return max_time, max_pss * PSS_HEADROOM


def render_memory_chart(samples: Sequence[MemorySample], output_path: str,
                        channel_styles: Sequence[Tuple[Channel, str, str]] = CHANNEL_STYLES,
                        size: Tuple[int, int] = (1200, 800), dpi: int = 100) -> str:
    """Draw every channel as a line over time and save the image."""
    max_time, max_pss = chart_bounds(samples)
    fig = Figure(figsize=(size[0] / dpi, size[1] / dpi), dpi=dpi)
    ax = fig.add_subplot(111)

    times = [s.timestamp for s in samples]
    for channel, label, color in channel_styles:
        ax.plot(times, [channel.project(s) for s in samples], color=color, label=label, linewidth=1.5)

    ax.set_xlim(0, max_time)
    ax.set_ylim(0, max_pss)
    ax.set_title("Detailed Memory Usage Over Time", fontsize=16)
    ax.set_xlabel("Time (s)")
    ax.set_ylabel("Memory (KB)")
    ax.grid(True, linestyle='--', alpha=0.5)
    ax.legend(loc='upper right', framealpha=0.8, edgecolor='black')

    try:
        fig.savefig(output_path, dpi=dpi)
    except (OSError, ValueError) as e:
        raise RenderError(f"Could not save chart to {output_path}: {e}") from e
    return output_path


# -------------------- Report Writer --------------------
def write_report(records: Sequence, base_name: str, record_type: type,
                 directory: str = ".", now: Optional[datetime] = None) -> Tuple[str, str]:
    """
    Write records as `<base>_<timestamp>.json` and `.csv`.

    Timestamps have one-second resolution; an existing file with the same
    name is never overwritten and raises WriteError instead.
    """
    timestamp_str = (now or datetime.now()).strftime("%Y%m%d_%H%M%S")
    json_path = os.path.join(directory, f"{base_name}_{timestamp_str}.json")
    csv_path = os.path.join(directory, f"{base_name}_{timestamp_str}.csv")
    header = [f.name for f in fields(record_type)]

    for path in (json_path, csv_path):
        if os.path.exists(path):
            raise WriteError(f"Could not write report {base_name}: {path} already exists")

    written = []
    try:
        with open(json_path, 'x', encoding='utf-8') as f:
            written.append(json_path)
            json.dump([asdict(r) for r in records], f, indent=2)
            f.write('\n')
        with open(csv_path, 'x', newline='', encoding='utf-8') as f:
            written.append(csv_path)
            writer = csv.writer(f)
            writer.writerow(header)
            for record in records:
                writer.writerow([getattr(record, name) for name in header])
    except OSError as e:
        # Never leave half a report pair behind
        for path in written:
            try:
                os.remove(path)
            except OSError:
                continue
        raise WriteError(f"Could not write report {base_name}: {e}") from e
    return json_path, csv_path


def read_report_json(path: str, record_type: type) -> List:
    """Load a JSON report written by write_report back into records."""
    with open(path, 'r', encoding='utf-8') as f:
        return [record_type(**item) for item in json.load(f)]


# -------------------- Thread Snapshot Analyzer --------------------
THREAD_MIN_COLUMNS = 9


def parse_thread_listing(listing: str) -> List[ThreadRecord]:
    """Parse `ps -T` output; the name is every column from index 8 on."""
    threads = []
    for line in listing.splitlines()[1:]:
        cols = line.split()
        if len(cols) < THREAD_MIN_COLUMNS:
            continue
        threads.append(ThreadRecord(
            tid=cols[1],
            name=' '.join(cols[8:]),
            state=cols[4],
            priority=cols[5],
            user_time=cols[6],
            system_time=cols[7],
        ))
    return threads


def analyze_threads(device: AdbDevice, package_name: str) -> List[ThreadRecord]:
    """Snapshot the threads of the target package's process."""
    pid = device.pidof(package_name)
    if pid is None:
        raise TargetNotFound(f"Process {package_name} not found on device")
    return parse_thread_listing(device.thread_listing(pid).stdout)


# -------------------- Log Stream Filter --------------------
def compile_pattern(pattern: str) -> re.Pattern:
    try:
        return re.compile(pattern)
    except re.error as e:
        raise PatternError(f"Invalid keyword regex {pattern!r}: {e}") from e


def filter_log_lines(lines: Iterable[str], pattern, output_path: Optional[str] = None,
                     echo: Callable[[str], object] = print) -> int:
    """Echo lines matching pattern, appending them to output_path when set. Returns the match count."""
    regex = compile_pattern(pattern) if isinstance(pattern, str) else pattern
    matched = 0
    out = None
    try:
        if output_path:
            try:
                out = open(output_path, 'a', encoding='utf-8')
            except OSError as e:
                raise WriteError(f"Could not open log output {output_path}: {e}") from e
        for line in lines:
            if not regex.search(line):
                continue
            matched += 1
            echo(f"Match found: {line}")
            if out is not None:
                out.write(line + '\n')
                out.flush()
    finally:
        if out is not None:
            out.close()
    return matched


def stream_filtered_logs(device: AdbDevice, pattern: str, output_path: Optional[str] = None,
                         echo: Callable[[str], object] = print) -> int:
    """Filter the device's logcat stream until it ends or is interrupted."""
    regex = compile_pattern(pattern)
    lines = device.logcat()
    try:
        return filter_log_lines(lines, regex, output_path, echo)
    finally:
        close = getattr(lines, 'close', None)
        if close is not None:
            close()


# -------------------- Configuration --------------------
CONFIG_KEYS = ("package_name", "keyword_regex", "output_file", "sample_interval")


def _load_config_file(path: Optional[str]) -> Optional[dict]:
    """Load a YAML (or JSON) configuration file if provided."""
    if not path:
        return None
    if yaml is None:
        raise ConfigError("PyYAML is required to use --config. Install it with: pip install pyyaml")
    if not os.path.exists(path):
        raise ConfigError(f"Config file not found: {path}")
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Failed to read config file {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError("Config file must contain a mapping at the top level.")
    return data


def _get_config_option(config: Optional[dict], key: str):
    """Retrieve option value from config, supporting either plain values or {value, ...} mappings."""
    if not config:
        return None
    raw = config.get(key)
    if isinstance(raw, dict):
        return raw.get("value")
    return raw


def _validate_interval(value) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ConfigError(f"--interval / sample_interval must be a positive integer, got {value!r}")
    return value


def resolve_config(args: argparse.Namespace, config: Optional[dict]) -> AnalyzerConfig:
    """Merge built-in defaults, config file values and CLI overrides."""
    values = {}
    for key in CONFIG_KEYS:
        cli_val = getattr(args, key, None)
        if cli_val is not None:
            values[key] = cli_val
            continue
        cfg_val = _get_config_option(config, key)
        if cfg_val is not None:
            values[key] = cfg_val
        elif key == "output_file" and config and key in config:
            # An explicit null turns log teeing off
            values[key] = None

    for key in ("package_name", "keyword_regex", "output_file"):
        if values.get(key) is not None and not isinstance(values[key], str):
            raise ConfigError(f"{key} must be a string, got {values[key]!r}")
    if "sample_interval" in values:
        _validate_interval(values["sample_interval"])
    return AnalyzerConfig(**values)


# -------------------- CLI --------------------
def parse_arguments(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    """Parse and validate command-line arguments."""
    parser = argparse.ArgumentParser(
        description='droidmon - Android log, memory and thread monitor over adb',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Log streaming (default mode)
  %(prog)s --package com.example.app --regex "ERROR|FATAL"

  # Memory monitoring for 120 seconds
  %(prog)s --package com.example.app --memory 120 --interval 2

  # Snapshots
  %(prog)s --package com.example.app --threads
  %(prog)s --package com.example.app --so-memory
        """
    )

    parser.add_argument('-c', '--config', type=str,
                        help='Path to YAML/JSON config file providing default option values')
    parser.add_argument('-p', '--package', dest='package_name', type=str,
                        help=f'Target package name (default: {DEFAULT_PACKAGE_NAME})')
    parser.add_argument('-r', '--regex', dest='keyword_regex', type=str,
                        help=f'Keyword regex for log filtering (default: {DEFAULT_KEYWORD_REGEX})')
    parser.add_argument('-o', '--output-file', dest='output_file', type=str,
                        help=f'File that matching log lines are appended to (default: {DEFAULT_OUTPUT_FILE})')
    parser.add_argument('-i', '--interval', dest='sample_interval', type=int,
                        help=f'Memory sampling interval in seconds (default: {DEFAULT_SAMPLE_INTERVAL})')

    mode_group = parser.add_mutually_exclusive_group(required=False)
    mode_group.add_argument('-m', '--memory', type=int, nargs='?', const=DEFAULT_MEMORY_DURATION,
                            metavar='DURATION',
                            help=f'Monitor and plot memory usage for DURATION seconds (default: {DEFAULT_MEMORY_DURATION})')
    mode_group.add_argument('-t', '--threads', action='store_true',
                            help='Analyze process threads')
    mode_group.add_argument('-s', '--so-memory', action='store_true',
                            help='Analyze native (.so) library memory usage')

    parser.add_argument('--adb-path', type=str, default='adb',
                        help='adb executable to use (default: adb from PATH)')
    parser.add_argument('--serial', type=str,
                        help='Serial of the device to use when several are attached')
    parser.add_argument('--output-dir', type=str, default='.',
                        help='Directory for JSON/CSV reports (default: current directory)')
    parser.add_argument('--plot-file', type=str, default=DEFAULT_PLOT_FILE,
                        help=f'Memory chart image path (default: {DEFAULT_PLOT_FILE})')

    args = parser.parse_args(argv)

    if args.memory is not None and args.memory <= 0:
        parser.error("--memory duration must be a positive number of seconds")
    if args.sample_interval is not None and args.sample_interval <= 0:
        parser.error("--interval must be a positive integer")

    return args


def print_warnings(diagnostics: Sequence[ParseWarning]):
    """Print collected diagnostics once each, with a repeat count."""
    for warning, count in Counter(diagnostics).items():
        suffix = f" (x{count})" if count > 1 else ""
        print(f"Warning: {warning}{suffix}", file=sys.stderr)


def _connect(args: argparse.Namespace) -> AdbDevice:
    device = AdbDevice(CommandGateway(), adb_path=args.adb_path, serial=args.serial)
    device.check_available()
    devices = device.list_devices()
    if args.serial:
        if args.serial not in devices:
            raise GatewayError(f"Device {args.serial} is not attached")
    elif not devices:
        raise GatewayError("No Android device detected. Please connect and authorize your device.")
    return device


def run_memory_mode(device: AdbDevice, config: AnalyzerConfig, duration: int,
                    plot_file: str, output_dir: str) -> bool:
    """Sample, chart and export memory usage. Returns False if the chart failed."""
    if device.pidof(config.package_name) is None:
        raise TargetNotFound(f"Process {config.package_name} not found on device")

    sampler = MemorySampler(device, config)
    print(f"Monitoring {config.package_name} for {duration}s every {config.sample_interval}s "
          f"(started at {datetime.now().isoformat()})")
    print("Press Ctrl+C to stop.")
    samples = sampler.run(duration)
    if sampler.interrupted:
        print("Sampling interrupted; writing collected samples.")
    print_warnings(sampler.warnings)

    chart_ok = True
    try:
        render_memory_chart(samples, plot_file)
        print(f"Memory usage plot saved to {plot_file}")
    except RenderError as e:
        print(f"Error: {e}", file=sys.stderr)
        chart_ok = False

    json_path, csv_path = write_report(samples, "memory_samples", MemorySample, directory=output_dir)
    print(f"Memory samples written to {json_path}")
    print(f"Memory samples written to {csv_path}")
    print(f"Collected {len(samples)} memory samples.")
    return chart_ok


def run_thread_mode(device: AdbDevice, config: AnalyzerConfig, output_dir: str):
    threads = analyze_threads(device, config.package_name)
    json_path, csv_path = write_report(threads, "thread_info", ThreadRecord, directory=output_dir)
    print(f"Thread info written to {json_path}")
    print(f"Thread info written to {csv_path}")
    print("Thread Analysis:")
    for t in threads:
        print(f"TID: {t.tid:<6} Name: {t.name:<20} State: {t.state:<2} Priority: {t.priority:<3} "
              f"User Time: {t.user_time:<6} System Time: {t.system_time}")


def run_library_mode(device: AdbDevice, config: AnalyzerConfig, output_dir: str):
    diagnostics: List[ParseWarning] = []
    libraries = analyze_native_libraries(device, config.package_name, diagnostics)
    print_warnings(diagnostics)
    json_path, csv_path = write_report(libraries, "so_memory", LibraryMemoryRecord, directory=output_dir)
    print(f"SO memory info written to {json_path}")
    print(f"SO memory info written to {csv_path}")
    print("SO Library Memory Analysis:")
    for lib in libraries:
        print(f"Name: {lib.name:<30} PSS: {lib.pss:>8} KB  Private Dirty: {lib.private_dirty:>8} KB  "
              f"Shared Dirty: {lib.shared_dirty:>8} KB")


def run_log_mode(device: AdbDevice, config: AnalyzerConfig):
    if config.output_file:
        print(f"Logging matches to: {config.output_file}")
    print("Press Ctrl+C to stop.")
    count = stream_filtered_logs(device, config.keyword_regex, config.output_file)
    print(f"Log stream ended; {count} matching lines.")


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main entry point."""
    args = parse_arguments(argv)
    try:
        config = resolve_config(args, _load_config_file(args.config))
        # A bad expression fails before the device is touched
        if args.memory is None and not args.threads and not args.so_memory:
            compile_pattern(config.keyword_regex)

        device = _connect(args)

        if args.memory is not None:
            return 0 if run_memory_mode(device, config, args.memory, args.plot_file, args.output_dir) else 1
        if args.threads:
            run_thread_mode(device, config, args.output_dir)
        elif args.so_memory:
            run_library_mode(device, config, args.output_dir)
        else:
            run_log_mode(device, config)
    except DroidmonError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("\nOperation cancelled by user.")
    return 0


if __name__ == '__main__':
    sys.exit(main())
