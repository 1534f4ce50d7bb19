# Copyright © 2023-2025 Apple Inc.

import queue
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass

from .context import ContextManager
from .decoder import ByteStreamDecoder
from .engine import InferenceEngine, MlxEngine
from .metrics import SAMPLE_INTERVAL_S, MetricsSampler
from .models import (
    BenchmarkResult,
    HarnessError,
    ModelInfo,
    RunConfig,
    RunFailedError,
    SessionBusyError,
    SessionState,
    SessionStatus,
)
from .results import assemble_result

# At most one run may hold the engine at a time, across all sessions.
_ACTIVE_RUN = threading.Lock()


@dataclass(frozen=True)
class Progress:
    progress: float
    tokens: int


@dataclass(frozen=True)
class TextChunk:
    text: str
    index: int


@dataclass(frozen=True)
class Advisory:
    message: str


@dataclass(frozen=True)
class Completed:
    result: BenchmarkResult


@dataclass(frozen=True)
class Failed:
    reason: str
    total_tokens: int


SessionEvent = Progress | TextChunk | Advisory | Completed | Failed


class RunStream:
    """Events of one run, in generation order, ending with Completed or Failed."""

    def __init__(self, events: queue.Queue):
        self._events = events
        self._terminal: Completed | Failed | None = None

    def __iter__(self):
        while self._terminal is None:
            event = self._events.get()
            if isinstance(event, (Completed, Failed)):
                self._terminal = event
            yield event

    @property
    def finished(self) -> bool:
        return self._terminal is not None

    def wait(self) -> Completed | Failed:
        for _ in self:
            pass
        return self._terminal

    def result(self) -> BenchmarkResult:
        terminal = self.wait()
        if isinstance(terminal, Failed):
            raise RunFailedError(terminal.reason, terminal.total_tokens)
        return terminal.result


class GenerationSession:
    """State machine for one benchmark run at a time.

    Idle -> Loading -> Warmup -> Running(progress) -> Completed | Failed.
    start() is only accepted from Idle, Completed or Failed. The decode loop
    runs on its own worker thread; the metrics sampler on another. Run
    failures end in the Failed state and a Failed event, never an exception
    out of the worker.
    """

    def __init__(self, engine: InferenceEngine | None = None, probe=None,
                 sample_interval: float = SAMPLE_INTERVAL_S,
                 clock=time.perf_counter):
        self._engine = engine if engine is not None else MlxEngine()
        self._lock = threading.Lock()
        self._status = SessionStatus()
        self._cancel = threading.Event()
        self._worker: threading.Thread | None = None
        self._context: ContextManager | None = None
        self.sampler = MetricsSampler(probe, sample_interval, clock)
        self.last_result: BenchmarkResult | None = None

    @property
    def status(self) -> SessionStatus:
        with self._lock:
            return self._status

    @property
    def state(self) -> SessionState:
        return self.status.state

    @property
    def holds_model(self) -> bool:
        context = self._context
        return context is not None and context.is_loaded

    def start(self, config: RunConfig) -> RunStream:
        with self._lock:
            if not self._status.state.accepts_start:
                raise SessionBusyError(f"Session is {self._status.state.value}; run rejected")
            if not _ACTIVE_RUN.acquire(blocking=False):
                raise SessionBusyError("Another generation session is active; run rejected")
            self._status = SessionStatus(SessionState.LOADING)
            self._cancel = threading.Event()

        events: queue.Queue = queue.Queue()
        self._worker = threading.Thread(
            target=self._execute, args=(config, events),
            name="generation-session", daemon=True,
        )
        self._worker.start()
        return RunStream(events)

    def run(self, config: RunConfig) -> BenchmarkResult:
        return self.start(config).result()

    def cancel(self) -> bool:
        """Ask the active run to stop at the next decode step boundary."""
        with self._lock:
            if self._status.state.accepts_start:
                return False
            self._cancel.set()
            return True

    def reset(self) -> None:
        # Cleanup runs under the state lock so a concurrent start() cannot
        # slip in and have its sampler or handle torn down.
        with self._lock:
            if not self._status.state.accepts_start:
                raise SessionBusyError(f"Cannot reset while {self._status.state.value}")
            worker, self._worker = self._worker, None
            context, self._context = self._context, None
            if worker is not None and worker is not threading.current_thread():
                worker.join()
            self.sampler.stop()
            if context is not None:
                context.release()
            self._status = SessionStatus()
            self.last_result = None

    @contextmanager
    def exclusive(self):
        """Hold the engine for a one-off call outside a run.

        Raises SessionBusyError while any run is active; runs started
        meanwhile are rejected until the block exits.
        """
        with self._lock:
            if not self._status.state.accepts_start:
                raise SessionBusyError(f"Session is {self._status.state.value}; engine in use")
            if not _ACTIVE_RUN.acquire(blocking=False):
                raise SessionBusyError("Another generation session is active; engine in use")
        try:
            yield self._engine
        finally:
            _ACTIVE_RUN.release()

    def join(self, timeout: float | None = None) -> None:
        worker = self._worker
        if worker is not None:
            worker.join(timeout)

    # -- worker ----------------------------------------------------------

    def _set_running(self, progress: float) -> None:
        with self._lock:
            self._status = SessionStatus(SessionState.RUNNING, progress)

    def _execute(self, config: RunConfig, events: queue.Queue) -> None:
        context = ContextManager(
            self._engine, config.target_tokens,
            context_window=config.context_window,
            temperature=config.temperature, seed=config.seed,
        )
        self._context = context
        chunks: list[str] = []
        try:
            terminal = self._generate(config, context, chunks, events)
        except HarnessError as e:
            terminal = Failed(str(e), len(chunks))
        except Exception as e:
            terminal = Failed(f"Unexpected error: {type(e).__name__}: {e}", len(chunks))
        finally:
            self.sampler.stop()
            context.release()
            self._context = None

        with self._lock:
            if isinstance(terminal, Completed):
                self._status = SessionStatus(SessionState.COMPLETED, 1.0)
                self.last_result = terminal.result
            else:
                self._status = SessionStatus(SessionState.FAILED, self._status.progress,
                                             terminal.reason)
            _ACTIVE_RUN.release()

        if isinstance(terminal, Failed):
            print(f"  [session] FAILED after {terminal.total_tokens} tokens: {terminal.reason}")
        events.put(terminal)

    def _generate(self, config: RunConfig, context: ContextManager,
                  chunks: list[str], events: queue.Queue) -> Completed | Failed:
        target = config.target_tokens
        print(f"  [session] Loading {config.model_path} ({config.backend.display_name})")
        context.initialize(config.model_path, config.backend)

        with self._lock:
            self._status = SessionStatus(SessionState.WARMUP)
        self.sampler.start()
        prompt_tokens = context.submit_prompt(config.prompt_text)
        for warning in context.advisories:
            events.put(Advisory(warning.message))
        print(f"  [session] Prompt: {prompt_tokens} tokens, generating {target}")

        self._set_running(0.0)
        events.put(Progress(0.0, 0))

        decoder = ByteStreamDecoder()

        def emit(text: str | None) -> None:
            if not text:
                return
            if not chunks:
                self.sampler.record_first_token()
            self.sampler.record_token()
            chunks.append(text)
            events.put(TextChunk(text, len(chunks) - 1))
            progress = min(1.0, len(chunks) / target)
            self._set_running(progress)
            events.put(Progress(progress, len(chunks)))

        for _ in range(target):
            if self._cancel.is_set():
                return Failed("cancelled", len(chunks))
            token_id, is_eog = context.sample_next()
            if is_eog:
                print("  [session] End of generation (EOG token)")
                break
            context.decode_step(token_id)
            emit(decoder.push(context.token_bytes(token_id)))
        else:
            print(f"  [session] Generation complete ({target} tokens)")
        emit(decoder.flush())

        self.sampler.stop()
        quant, ctx_len = context.model_info()
        model_info = ModelInfo.from_path(config.model_path, quant, ctx_len)
        result = assemble_result(config, model_info, self.sampler.snapshot(), chunks)
        print(self.sampler.summary())
        self.sampler.discard()
        return Completed(result)
