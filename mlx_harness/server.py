import json
import time

MAX_TOKENS_CAP = 4096
DEFAULT_SHUTDOWN_TIMEOUT = 5

from starlette.applications import Starlette
from starlette.concurrency import run_in_threadpool
from starlette.requests import Request
from starlette.responses import JSONResponse, StreamingResponse
from starlette.routing import Route

from .bench.capability import (
    capability_dict,
    capability_info,
    describe_hardware,
    detect_capability,
    is_backend_available,
)
from .bench.catalog import read_model_info
from .bench.compare import ComparisonEngine
from .bench.engine import MlxEngine
from .bench.models import (
    Backend,
    ContextInitError,
    DEFAULT_CONTEXT_WINDOW,
    DEFAULT_SEED,
    DEFAULT_TEMPERATURE,
    InvalidPathError,
    ModelLoadError,
    RunConfig,
    RunFailedError,
    RunType,
    SessionBusyError,
)
from .bench.prompts import PROMPTS, default_prompt, get_prompt
from .bench.results import result_to_dict
from .bench.session import (
    Advisory,
    Completed,
    Failed,
    GenerationSession,
    Progress,
    TextChunk,
)

import sys
if not sys.stdout.isatty():
    import functools
    print = functools.partial(print, flush=True)


def _error(message: str, status: int) -> JSONResponse:
    return JSONResponse({"error": {"message": message}}, status_code=status)


def run_config_from_body(body: dict, default_backend: Backend,
                         context_window: int = DEFAULT_CONTEXT_WINDOW) -> RunConfig:
    """Build a RunConfig from a request body. Raises ValueError on bad input."""
    if not isinstance(body, dict):
        raise ValueError("request body must be a JSON object")
    model = body.get("model")
    if not model:
        raise ValueError("'model' (path to model) is required")

    run_type = RunType(body.get("run_type", RunType.SANITY.value))
    prompt_id = body.get("prompt_id")
    prompt_text = body.get("prompt")
    if prompt_text:
        prompt_id = prompt_id or "custom"
    else:
        prompt = get_prompt(prompt_id) if prompt_id else default_prompt(run_type)
        if prompt is None:
            raise ValueError(f"unknown prompt_id: {prompt_id}")
        prompt_id, prompt_text = prompt.id, prompt.text

    return RunConfig(
        backend=Backend.parse(body.get("backend", default_backend)),
        model_path=str(model),
        prompt_text=prompt_text,
        seed=int(body.get("seed", DEFAULT_SEED)),
        target_tokens=int(body.get("target_tokens", run_type.target_tokens)),
        context_window=int(body.get("context_window", context_window)),
        prompt_id=prompt_id,
        run_type=run_type,
        temperature=float(body.get("temperature", DEFAULT_TEMPERATURE)),
    )


def _sse(event_name: str, payload: dict) -> str:
    return f"event: {event_name}\ndata: {json.dumps(payload)}\n\n"


def event_to_sse(event) -> str:
    if isinstance(event, Progress):
        return _sse("progress", {"progress": event.progress, "tokens": event.tokens})
    if isinstance(event, TextChunk):
        return _sse("text", {"text": event.text, "index": event.index})
    if isinstance(event, Advisory):
        return _sse("advisory", {"message": event.message})
    if isinstance(event, Completed):
        return _sse("completion", result_to_dict(event.result))
    if isinstance(event, Failed):
        return _sse("failure", {"reason": event.reason, "total_tokens": event.total_tokens})
    raise TypeError(f"unknown session event: {event!r}")


class Server:
    def __init__(self, engine=None, hardware=None,
                 context_window: int = DEFAULT_CONTEXT_WINDOW,
                 max_tokens: int = MAX_TOKENS_CAP,
                 probe=None):
        self._engine = engine if engine is not None else MlxEngine()
        self._hardware = hardware if hardware is not None else describe_hardware()
        self._context_window = context_window
        self._max_tokens = max_tokens
        self._session = GenerationSession(self._engine, probe=probe)
        self._comparison = ComparisonEngine(self._session)
        self._started_at = time.time()

    @property
    def session(self) -> GenerationSession:
        return self._session

    def _parse_config(self, body: dict):
        try:
            config = run_config_from_body(
                body, detect_capability(self._hardware), self._context_window
            )
        except (ValueError, TypeError) as e:
            return None, _error(str(e), 400)
        if config.target_tokens > self._max_tokens:
            return None, _error(
                f"target_tokens {config.target_tokens} exceeds limit of {self._max_tokens}", 400
            )
        if not is_backend_available(config.backend, self._hardware):
            return None, _error(f"{config.backend.display_name} backend not available", 400)
        return config, None

    async def _json_body(self, request: Request):
        try:
            return await request.json(), None
        except json.JSONDecodeError:
            return None, _error("request body is not valid JSON", 400)

    async def handle_status(self, request: Request) -> JSONResponse:
        status = self._session.status.to_dict()
        status["uptime_s"] = round(time.time() - self._started_at, 1)
        status["holds_model"] = self._session.holds_model
        return JSONResponse(status)

    async def handle_capability(self, request: Request) -> JSONResponse:
        return JSONResponse(capability_dict(self._hardware))

    async def handle_prompts(self, request: Request) -> JSONResponse:
        return JSONResponse({
            "object": "list",
            "data": [{"id": p.id, "category": p.category, "text": p.text} for p in PROMPTS],
        })

    def _read_model_info(self, path: str):
        with self._session.exclusive() as engine:
            return read_model_info(path, engine)

    async def handle_model_info(self, request: Request) -> JSONResponse:
        body, err = await self._json_body(request)
        if err is not None:
            return err
        path = body.get("path") if isinstance(body, dict) else None
        if not path:
            return _error("'path' is required", 400)
        try:
            info = await run_in_threadpool(self._read_model_info, path)
        except SessionBusyError as e:
            return _error(str(e), 409)
        except InvalidPathError as e:
            return _error(str(e), 404)
        except (ModelLoadError, ContextInitError) as e:
            return _error(str(e), 400)
        return JSONResponse({
            "filename": info.filename,
            "path": info.path,
            "size_bytes": info.size_bytes,
            "quantization": info.quantization,
            "context_length": info.context_length,
            "estimated_ram_mb": info.estimated_ram_mb,
        })

    async def handle_runs(self, request: Request):
        body, err = await self._json_body(request)
        if err is not None:
            return err
        config, err = self._parse_config(body)
        if err is not None:
            return err
        try:
            stream = self._session.start(config)
        except SessionBusyError as e:
            return _error(str(e), 409)

        print(f"[run] model={config.model_path} backend={config.backend.value} "
              f"prompt={config.prompt_id} target={config.target_tokens} seed={config.seed}")

        def _events():
            for event in stream:
                yield event_to_sse(event)

        return StreamingResponse(_events(), media_type="text/event-stream")

    async def handle_compare(self, request: Request) -> JSONResponse:
        body, err = await self._json_body(request)
        if err is not None:
            return err
        config, err = self._parse_config(body)
        if err is not None:
            return err
        try:
            candidate = Backend.parse(body.get("candidate", Backend.CPU.value))
        except ValueError as e:
            return _error(str(e), 400)
        if not is_backend_available(candidate, self._hardware):
            return _error(f"{candidate.display_name} backend not available", 400)

        try:
            report = await run_in_threadpool(self._comparison.run, config, candidate)
        except SessionBusyError as e:
            return _error(str(e), 409)
        except RunFailedError as e:
            return JSONResponse(
                {"error": {"message": e.reason, "total_tokens": e.total_tokens}},
                status_code=500,
            )
        return JSONResponse({
            "baseline": result_to_dict(report.baseline),
            "candidate": result_to_dict(report.candidate),
            "comparison": report.comparison.to_dict(),
        })

    async def handle_reset(self, request: Request) -> JSONResponse:
        try:
            await run_in_threadpool(self._session.reset)
        except SessionBusyError as e:
            return _error(str(e), 409)
        return JSONResponse(self._session.status.to_dict())

    def routes(self) -> list[Route]:
        return [
            Route("/v1/status", self.handle_status, methods=["GET"]),
            Route("/v1/capability", self.handle_capability, methods=["GET"]),
            Route("/v1/prompts", self.handle_prompts, methods=["GET"]),
            Route("/v1/models/info", self.handle_model_info, methods=["POST"]),
            Route("/v1/runs", self.handle_runs, methods=["POST"]),
            Route("/v1/compare", self.handle_compare, methods=["POST"]),
            Route("/v1/reset", self.handle_reset, methods=["POST"]),
        ]


def create_app(server: Server) -> Starlette:
    return Starlette(routes=server.routes())


def run_server(host: str = "127.0.0.1", port: int = 8080,
               context_window: int = DEFAULT_CONTEXT_WINDOW,
               max_tokens: int = MAX_TOKENS_CAP,
               shutdown_timeout: int = DEFAULT_SHUTDOWN_TIMEOUT):
    import uvicorn

    server = Server(context_window=context_window, max_tokens=max_tokens)

    print(f"mlx-harness serve")
    print(f"  Endpoint: http://{host}:{port}")
    print(f"  Limits:   {max_tokens} target tokens, {context_window} context")
    print(f"  Shutdown: {shutdown_timeout}s graceful timeout")
    for line in capability_info(server._hardware).splitlines():
        print(f"  {line}")
    print(f"  Recommended backend: {detect_capability(server._hardware).display_name}")
    print()

    uvicorn.run(
        create_app(server),
        host=host,
        port=port,
        log_level="warning",
        timeout_graceful_shutdown=shutdown_timeout,
    )
