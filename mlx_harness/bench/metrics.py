# Copyright © 2023-2025 Apple Inc.

import re
import subprocess
import sys
import threading
import time
from dataclasses import dataclass

import psutil

from .models import MetricSample, ThermalLevel

SAMPLE_INTERVAL_S = 1.0

_SPEED_LIMIT_RE = re.compile(r"CPU_Speed_Limit\s*=\s*(\d+)")


class ProbeError(Exception):
    pass


def _level_from_speed_limit(limit: int) -> ThermalLevel:
    if limit >= 100:
        return ThermalLevel.NOMINAL
    if limit >= 80:
        return ThermalLevel.FAIR
    if limit >= 50:
        return ThermalLevel.SERIOUS
    return ThermalLevel.CRITICAL


def _level_from_temperature_ratio(ratio: float) -> ThermalLevel:
    if ratio < 0.70:
        return ThermalLevel.NOMINAL
    if ratio < 0.85:
        return ThermalLevel.FAIR
    if ratio < 0.95:
        return ThermalLevel.SERIOUS
    return ThermalLevel.CRITICAL


def parse_pmset_therm(output: str) -> ThermalLevel:
    m = _SPEED_LIMIT_RE.search(output)
    if m is None:
        if "No thermal warning level has been recorded" in output:
            return ThermalLevel.NOMINAL
        raise ProbeError("pmset output has no CPU_Speed_Limit")
    return _level_from_speed_limit(int(m.group(1)))


class SystemProbe:
    """Reads the process's resident memory and the machine's thermal level."""

    def __init__(self, pid: int | None = None):
        self._process = psutil.Process(pid)

    def resident_memory_mb(self) -> int:
        try:
            return self._process.memory_info().rss // (1024 * 1024)
        except psutil.Error as e:
            raise ProbeError(f"memory read failed: {e}") from e

    def thermal_level(self) -> ThermalLevel:
        if sys.platform == "darwin":
            try:
                out = subprocess.check_output(["pmset", "-g", "therm"], text=True, timeout=5)
            except (OSError, subprocess.SubprocessError) as e:
                raise ProbeError(f"pmset failed: {e}") from e
            return parse_pmset_therm(out)

        sensors = getattr(psutil, "sensors_temperatures", None)
        if sensors is None:
            raise ProbeError("no thermal sensors on this platform")
        worst = None
        for entries in sensors().values():
            for entry in entries:
                limit = entry.critical or entry.high
                if not limit or entry.current is None:
                    continue
                ratio = entry.current / limit
                worst = ratio if worst is None else max(worst, ratio)
        if worst is None:
            raise ProbeError("no thermal sensor reports a limit")
        return _level_from_temperature_ratio(worst)


@dataclass(frozen=True)
class MetricsSnapshot:
    ttft_ms: float
    tokens_per_second: float
    total_tokens: int
    duration_ms: float
    peak_memory_mb: int
    thermal_states: tuple[ThermalLevel, ...]
    throttling_events: int


class MetricsSampler:
    """1 Hz system sampler plus token-rate bookkeeping for one run.

    The sampling thread and the decode loop only share the append-only sample
    list and a handful of counters, all guarded by one lock.
    """

    def __init__(self, probe=None, interval: float = SAMPLE_INTERVAL_S,
                 clock=time.perf_counter):
        self.probe = probe if probe is not None else SystemProbe()
        self.interval = interval
        self._clock = clock
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._reset_state()

    def _reset_state(self) -> None:
        self._samples: list[MetricSample] = []
        self._start_time: float | None = None
        self._end_time: float | None = None
        self._first_token_time: float | None = None
        self._tokens = 0
        self._live_tps = 0.0
        self._peak_memory_mb = 0
        self._throttling_events = 0
        self._last_thermal = ThermalLevel.NOMINAL
        self._last_memory_mb = 0

    # -- lifecycle -------------------------------------------------------

    def start(self) -> None:
        self.stop()
        with self._lock:
            self._reset_state()
            self._start_time = self._clock()
        self._stop_event = threading.Event()
        self._thread = threading.Thread(target=self._run, name="metrics-sampler", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        thread, self._thread = self._thread, None
        if thread is None:
            return
        self._stop_event.set()
        if thread is not threading.current_thread():
            thread.join()
        with self._lock:
            if self._start_time is not None and self._end_time is None:
                self._end_time = self._clock()

    @property
    def is_running(self) -> bool:
        return self._thread is not None

    def _run(self) -> None:
        stop = self._stop_event
        while not stop.wait(self.interval):
            self.sample_once()

    # -- sampling --------------------------------------------------------

    def _read_thermal(self) -> ThermalLevel:
        try:
            return self.probe.thermal_level()
        except ProbeError:
            return self._last_thermal

    def _read_memory(self) -> int:
        try:
            return self.probe.resident_memory_mb()
        except ProbeError:
            return self._last_memory_mb

    def sample_once(self) -> MetricSample:
        thermal = self._read_thermal()
        memory = self._read_memory()
        sample = MetricSample(self._clock(), thermal, memory)
        with self._lock:
            self._samples.append(sample)
            if thermal.worse_than(self._last_thermal):
                self._throttling_events += 1
            self._last_thermal = thermal
            self._last_memory_mb = memory
            self._peak_memory_mb = max(self._peak_memory_mb, memory)
        return sample

    # -- token tracking --------------------------------------------------

    def record_first_token(self) -> None:
        with self._lock:
            if self._first_token_time is None:
                self._first_token_time = self._clock()

    def record_token(self) -> None:
        now = self._clock()
        with self._lock:
            self._tokens += 1
            if self._first_token_time is not None:
                elapsed = now - self._first_token_time
                if elapsed > 0:
                    self._live_tps = self._tokens / elapsed

    # -- derived metrics -------------------------------------------------

    def _now(self) -> float:
        return self._end_time if self._end_time is not None else self._clock()

    @property
    def tokens_generated(self) -> int:
        return self._tokens

    @property
    def live_tokens_per_second(self) -> float:
        return self._live_tps

    @property
    def ttft_ms(self) -> float:
        if self._start_time is None or self._first_token_time is None:
            return 0.0
        return (self._first_token_time - self._start_time) * 1000

    @property
    def average_tokens_per_second(self) -> float:
        if self._first_token_time is None:
            return 0.0
        elapsed = self._now() - self._first_token_time
        return self._tokens / elapsed if elapsed > 0 else 0.0

    @property
    def duration_ms(self) -> float:
        if self._start_time is None:
            return 0.0
        return (self._now() - self._start_time) * 1000

    @property
    def peak_memory_mb(self) -> int:
        return self._peak_memory_mb

    @property
    def throttling_events(self) -> int:
        return self._throttling_events

    @property
    def samples(self) -> tuple[MetricSample, ...]:
        with self._lock:
            return tuple(self._samples)

    @property
    def thermal_history(self) -> tuple[ThermalLevel, ...]:
        return tuple(s.thermal for s in self.samples)

    def snapshot(self) -> MetricsSnapshot:
        with self._lock:
            now = self._now()
            first = self._first_token_time
            start = self._start_time
            tokens = self._tokens
            tps = 0.0
            if first is not None and now - first > 0:
                tps = tokens / (now - first)
            return MetricsSnapshot(
                ttft_ms=(first - start) * 1000 if first is not None and start is not None else 0.0,
                tokens_per_second=tps,
                total_tokens=tokens,
                duration_ms=(now - start) * 1000 if start is not None else 0.0,
                peak_memory_mb=self._peak_memory_mb,
                thermal_states=tuple(s.thermal for s in self._samples),
                throttling_events=self._throttling_events,
            )

    def discard(self) -> None:
        """Drop the sample log once the run's result has been assembled."""
        with self._lock:
            self._samples = []

    def summary(self) -> str:
        snap = self.snapshot()
        return (
            f"TTFT: {snap.ttft_ms:.0f} ms\n"
            f"Tokens/sec: {snap.tokens_per_second:.1f}\n"
            f"Total tokens: {snap.total_tokens}\n"
            f"Duration: {snap.duration_ms / 1000:.1f} s\n"
            f"Peak memory: {snap.peak_memory_mb} MB\n"
            f"Thermal events: {snap.throttling_events}"
        )
