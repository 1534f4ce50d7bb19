# Copyright © 2023-2025 Apple Inc.

from .models import (
    Backend,
    BenchmarkResult,
    ComparisonResult,
    ContextInitError,
    DecodeError,
    HarnessError,
    InvalidPathError,
    MetricSample,
    ModelInfo,
    ModelLoadError,
    RunConfig,
    RunFailedError,
    RunType,
    SessionBusyError,
    SessionState,
    SessionStatus,
    ThermalLevel,
)

from .decoder import ByteStreamDecoder

from .engine import (
    EngineConfig,
    EngineError,
    InferenceEngine,
    MlxEngine,
    resolve_backend,
)

from .context import (
    ContextManager,
    ContextOverflowWarning,
    TokenSampler,
)

from .metrics import (
    MetricsSampler,
    MetricsSnapshot,
    ProbeError,
    SystemProbe,
)

from .session import (
    Advisory,
    Completed,
    Failed,
    GenerationSession,
    Progress,
    RunStream,
    TextChunk,
)

from .compare import (
    ComparisonEngine,
    ComparisonReport,
    compare_outputs,
    compare_results,
    edit_distance,
    token_match_ratio,
)

from .results import (
    RunMetadata,
    assemble_result,
    build_run_record,
    load_run_record,
    render_markdown,
    save_run_record,
)

from .capability import (
    HardwareDescriptor,
    available_backends,
    describe_hardware,
    detect_capability,
    is_backend_available,
)

from .prompts import BenchmarkPrompt, default_prompt, get_prompt
from .catalog import read_model_info
