"""Server endpoints, run records, capability detection and CLI plumbing."""

import json
from types import SimpleNamespace

import pytest

from mlx_harness.bench.capability import (
    HardwareDescriptor,
    available_backends,
    capability_dict,
    capability_info,
    detect_capability,
    is_backend_available,
)
from mlx_harness.bench.models import (
    Backend,
    BenchmarkResult,
    ComparisonResult,
    InvalidPathError,
    ModelInfo,
    RunType,
    ThermalLevel,
)

from conftest import EOG_ID, FakeEngine, FakeProbe, token_id

FOX = [token_id(b" The"), token_id(b" quick"), token_id(b" fox"), EOG_ID]

NO_GPU = HardwareDescriptor(has_gpu=False, device_name="x86_64")
M4 = HardwareDescriptor(has_gpu=True, architecture="applegpu_g16s", device_name="Apple M4 Pro")
M5 = HardwareDescriptor(has_gpu=True, architecture="applegpu_g17p", device_name="Apple M5")


def _result(**kw):
    base = dict(
        backend=Backend.LEGACY,
        model_info=ModelInfo("tiny-4bit", "/models/tiny-4bit", 2_000_000_000, "Q4_G64", 4096),
        run_type=RunType.SANITY,
        ttft_ms=120.0,
        tokens_per_second=42.5,
        total_tokens=128,
        duration_ms=3200.0,
        peak_memory_mb=2100,
        thermal_states=(ThermalLevel.NOMINAL, ThermalLevel.FAIR),
        throttling_events=1,
        prompt_id="short_1",
        seed=1234,
        target_tokens=128,
        text_chunks=(" The", " quick"),
    )
    base.update(kw)
    return BenchmarkResult(**base)


# ---------------------------------------------------------------------------
# Capability
# ---------------------------------------------------------------------------

class TestCapability:

    def test_no_gpu(self):
        assert detect_capability(NO_GPU) is Backend.CPU
        assert available_backends(NO_GPU) == [Backend.CPU]
        assert capability_info(NO_GPU) == "Metal not available"

    def test_legacy_gpu(self):
        assert M4.gpu_generation == 16
        assert not M4.tensor_api
        assert detect_capability(M4) is Backend.LEGACY
        assert not is_backend_available(Backend.TENSOR, M4)
        assert available_backends(M4) == [Backend.LEGACY, Backend.CPU]

    def test_tensor_gpu(self):
        assert M5.tensor_api
        assert detect_capability(M5) is Backend.TENSOR
        assert available_backends(M5) == [Backend.TENSOR, Backend.LEGACY, Backend.CPU]
        assert "Tensor API: available" in capability_info(M5)

    def test_unknown_architecture(self):
        hw = HardwareDescriptor(has_gpu=True, architecture=None)
        assert hw.gpu_generation is None
        assert detect_capability(hw) is Backend.LEGACY

    def test_dict(self):
        d = capability_dict(M5)
        assert d["recommended"] == "metal-tensor"
        assert d["available"] == ["metal-tensor", "metal-legacy", "cpu"]
        assert d["tensor_api"] is True


# ---------------------------------------------------------------------------
# Prompts / catalog
# ---------------------------------------------------------------------------

class TestPrompts:

    def test_catalog(self):
        from mlx_harness.bench.prompts import PROMPTS, get_prompt, prompts_in

        assert len(PROMPTS) == 8
        assert len({p.id for p in PROMPTS}) == 8
        assert [p.id for p in prompts_in("short")] == [f"short_{i}" for i in range(1, 6)]
        assert get_prompt("long_1").category == "long"
        assert get_prompt("missing") is None

    def test_default_prompt(self):
        from mlx_harness.bench.prompts import default_prompt

        assert default_prompt(RunType.SANITY).id == "short_1"
        assert default_prompt(RunType.FULL).id == "medium_1"


class TestCatalog:

    def test_read_model_info(self, model_dir):
        from mlx_harness.bench.catalog import read_model_info

        engine = FakeEngine(script=[])
        info = read_model_info(model_dir, engine)
        assert info.filename == "tiny-model-4bit"
        assert info.quantization == "Q4_G64"
        assert info.context_length == 2048
        assert engine.configs[0].device == "cpu"
        assert engine.live_handles == 0

    def test_missing_path(self, tmp_path):
        from mlx_harness.bench.catalog import read_model_info

        engine = FakeEngine()
        with pytest.raises(InvalidPathError):
            read_model_info(tmp_path / "missing", engine)
        assert engine.loaded == 0


# ---------------------------------------------------------------------------
# Run records
# ---------------------------------------------------------------------------

class TestRunRecords:

    def _meta(self):
        from mlx_harness.bench.results import RunMetadata

        return RunMetadata("arm64", "macOS 26.0", "0.28.0", Backend.LEGACY)

    def test_assemble(self):
        from mlx_harness.bench.metrics import MetricsSnapshot
        from mlx_harness.bench.models import RunConfig
        from mlx_harness.bench.results import assemble_result

        cfg = RunConfig(Backend.CPU, "/m", "hi", seed=7, target_tokens=3, prompt_id="short_2")
        snap = MetricsSnapshot(50.0, 10.0, 3, 350.0, 800, (ThermalLevel.NOMINAL,), 0)
        info = ModelInfo("m", "/m", 10)
        r = assemble_result(cfg, info, snap, [" a", " b", " c"])
        assert r.backend is Backend.CPU
        assert r.seed == 7
        assert r.prompt_id == "short_2"
        assert r.text_chunks == (" a", " b", " c")
        assert r.total_tokens == 3
        assert r.comparison is None

    def test_record_layout(self):
        from mlx_harness.bench.results import RECORD_VERSION, build_run_record

        record = build_run_record(_result(), self._meta())
        assert record["version"] == RECORD_VERSION
        assert record["meta"]["backend"] == "metal-legacy"
        assert record["model"] == {
            "path": "/models/tiny-4bit", "size_bytes": 2_000_000_000,
            "quant": "Q4_G64", "ctx_len": 4096,
        }
        assert record["run"] == {"prompt_id": "short_1", "seed": 1234, "tokens_target": 128}
        assert record["metrics"]["thermal_states"] == ["nominal", "fair"]
        assert record["metrics"]["throttled_events"] == 1
        assert record["parity"] is None

    def test_record_with_parity(self):
        from mlx_harness.bench.results import build_run_record

        comparison = ComparisonResult(Backend.TENSOR, 0.5, 2, "divergence detected")
        record = build_run_record(_result().with_comparison(comparison), self._meta())
        assert record["parity"]["baseline_backend"] == "metal-tensor"
        assert record["parity"]["edit_distance"] == 2

    def test_with_comparison_returns_new_record(self):
        original = _result()
        attached = original.with_comparison(ComparisonResult(Backend.CPU, 1.0, 0))
        assert original.comparison is None
        assert attached.comparison is not None
        assert attached.result_id == original.result_id

    def test_save_and_load(self, tmp_path):
        from mlx_harness.bench.results import build_run_record, load_run_record, save_run_record

        record = build_run_record(_result(), self._meta())
        path = save_run_record(tmp_path / "out" / "run.json", record)
        assert load_run_record(path) == record

    def test_load_rejects_other_version(self, tmp_path):
        from mlx_harness.bench.results import load_run_record

        path = tmp_path / "run.json"
        path.write_text(json.dumps({"version": 99}))
        with pytest.raises(ValueError, match="version"):
            load_run_record(path)

    def test_markdown(self):
        from mlx_harness.bench.results import render_markdown

        comparison = ComparisonResult(Backend.TENSOR, 0.75, 3, "divergence detected")
        md = render_markdown([_result(), _result(backend=Backend.CPU).with_comparison(comparison)])
        lines = md.strip().splitlines()
        assert len(lines) == 4
        assert "| Legacy Metal | tiny-4bit | sanity |" in lines[2]
        assert "75.0% vs Metal-4 Tensor (edit 3)" in lines[3]

    def test_collect_metadata(self):
        from mlx_harness.bench.results import APP_VERSION, RunMetadata

        meta = RunMetadata.collect("cpu")
        assert meta.backend is Backend.CPU
        assert meta.app_version == APP_VERSION
        assert meta.os_version

    def test_result_to_dict(self):
        from mlx_harness.bench.results import result_to_dict

        d = result_to_dict(_result())
        assert d["backend"] == "metal-legacy"
        assert d["text"] == " The quick"
        assert d["comparison"] is None
        json.dumps(d)


# ---------------------------------------------------------------------------
# Server endpoint tests
# ---------------------------------------------------------------------------

def _sse_events(text):
    events = []
    for block in text.strip().split("\n\n"):
        lines = dict(line.split(": ", 1) for line in block.splitlines())
        events.append((lines["event"], json.loads(lines["data"])))
    return events


class TestServerEndpoints:
    @pytest.fixture
    def engine(self):
        return FakeEngine(script=FOX)

    @pytest.fixture
    def server(self, engine):
        """A Server on a fake engine and a machine without a GPU."""
        from mlx_harness.server import Server

        return Server(engine=engine, hardware=NO_GPU, max_tokens=256, probe=FakeProbe())

    @pytest.fixture
    def client(self, server):
        from starlette.testclient import TestClient
        from mlx_harness.server import create_app

        return TestClient(create_app(server), raise_server_exceptions=False)

    def test_status_idle(self, client):
        resp = client.get("/v1/status")
        assert resp.status_code == 200
        data = resp.json()
        assert data["state"] == "idle"
        assert data["holds_model"] is False

    def test_capability(self, client):
        data = client.get("/v1/capability").json()
        assert data["has_gpu"] is False
        assert data["recommended"] == "cpu"
        assert data["available"] == ["cpu"]

    def test_prompts(self, client):
        data = client.get("/v1/prompts").json()
        assert data["object"] == "list"
        assert len(data["data"]) == 8

    def test_model_info(self, client, model_dir):
        resp = client.post("/v1/models/info", json={"path": str(model_dir)})
        assert resp.status_code == 200
        data = resp.json()
        assert data["quantization"] == "Q4_G64"
        assert data["context_length"] == 2048
        assert data["estimated_ram_mb"] == int(data["size_bytes"] * 1.3 / 1e6)

    def test_model_info_missing(self, client, tmp_path):
        resp = client.post("/v1/models/info", json={"path": str(tmp_path / "none")})
        assert resp.status_code == 404

    def test_model_info_requires_path(self, client):
        assert client.post("/v1/models/info", json={}).status_code == 400

    def test_model_info_busy_during_run(self, client, server, engine, model_dir):
        from mlx_harness.bench.models import RunConfig
        from mlx_harness.bench.session import TextChunk

        engine.script = [token_id(b" The")] * 10
        engine.gate_after = 1
        stream = server.session.start(RunConfig(Backend.CPU, str(model_dir), "hi"))
        try:
            next(e for e in stream if isinstance(e, TextChunk))
            resp = client.post("/v1/models/info", json={"path": str(model_dir)})
            assert resp.status_code == 409
            assert engine.loaded == 1
            assert engine.live_handles == 1
        finally:
            engine.gate.set()
        stream.wait()
        assert client.post("/v1/models/info", json={"path": str(model_dir)}).status_code == 200

    def test_run_rejected_while_model_info_holds_engine(self, client, server, model_dir):
        with server.session.exclusive():
            assert client.post("/v1/runs", json={"model": str(model_dir)}).status_code == 409
        assert client.post("/v1/runs", json={"model": str(model_dir)}).status_code == 200

    def test_run_streams_events(self, client, server, model_dir):
        resp = client.post("/v1/runs", json={"model": str(model_dir), "target_tokens": 8})
        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/event-stream")

        events = _sse_events(resp.text)
        names = [name for name, _ in events]
        assert names[0] == "progress"
        assert names[-1] == "completion"
        assert [d["text"] for n, d in events if n == "text"] == [" The", " quick", " fox"]
        final = events[-1][1]
        assert final["backend"] == "cpu"
        assert final["prompt_id"] == "short_1"
        assert final["total_tokens"] == 3
        server.session.join(5)
        assert client.get("/v1/status").json()["state"] == "completed"

    def test_run_failure_event(self, client, engine, model_dir):
        engine.fail_at = 1
        resp = client.post("/v1/runs", json={"model": str(model_dir)})
        name, data = _sse_events(resp.text)[-1]
        assert name == "failure"
        assert data["total_tokens"] == 1

    def test_run_rejects_missing_model(self, client):
        assert client.post("/v1/runs", json={}).status_code == 400

    def test_run_rejects_bad_json(self, client):
        resp = client.post("/v1/runs", content=b"{not json",
                           headers={"content-type": "application/json"})
        assert resp.status_code == 400

    def test_run_rejects_unavailable_backend(self, client, model_dir):
        resp = client.post("/v1/runs", json={"model": str(model_dir), "backend": "metal-tensor"})
        assert resp.status_code == 400
        assert "not available" in resp.json()["error"]["message"]

    def test_run_rejects_unknown_backend(self, client, model_dir):
        resp = client.post("/v1/runs", json={"model": str(model_dir), "backend": "vulkan"})
        assert resp.status_code == 400

    def test_run_rejects_unknown_prompt(self, client, model_dir):
        resp = client.post("/v1/runs", json={"model": str(model_dir), "prompt_id": "nope"})
        assert resp.status_code == 400

    def test_run_rejects_token_limit(self, client, model_dir):
        resp = client.post("/v1/runs", json={"model": str(model_dir), "target_tokens": 1000})
        assert resp.status_code == 400

    def test_run_busy(self, client, server, engine, model_dir):
        from mlx_harness.bench.models import RunConfig

        engine.script = [token_id(b" The")] * 10
        engine.gate_after = 1
        stream = server.session.start(RunConfig(Backend.CPU, str(model_dir), "hi"))
        try:
            resp = client.post("/v1/runs", json={"model": str(model_dir)})
            assert resp.status_code == 409
            assert client.post("/v1/reset").status_code == 409
        finally:
            engine.gate.set()
        stream.wait()

    def test_compare(self, client, model_dir):
        resp = client.post("/v1/compare", json={"model": str(model_dir), "candidate": "cpu"})
        assert resp.status_code == 200
        data = resp.json()
        assert data["baseline"]["text"] == data["candidate"]["text"] == " The quick fox"
        assert data["comparison"]["token_match_ratio"] == 1.0
        assert data["comparison"]["notes"] == "excellent parity"
        assert data["candidate"]["comparison"]["baseline_backend"] == "cpu"

    def test_compare_candidate_unavailable(self, client, model_dir):
        resp = client.post("/v1/compare", json={"model": str(model_dir), "candidate": "legacy"})
        assert resp.status_code == 400

    def test_compare_run_failure(self, client, engine, model_dir):
        engine.fail_load = True
        resp = client.post("/v1/compare", json={"model": str(model_dir)})
        assert resp.status_code == 500
        assert resp.json()["error"]["total_tokens"] == 0

    def test_reset(self, client, server, model_dir):
        client.post("/v1/runs", json={"model": str(model_dir)})
        server.session.join(5)
        resp = client.post("/v1/reset")
        assert resp.status_code == 200
        assert resp.json()["state"] == "idle"


class TestRunConfigFromBody:

    def test_defaults(self):
        from mlx_harness.server import run_config_from_body

        cfg = run_config_from_body({"model": "/m"}, Backend.LEGACY)
        assert cfg.backend is Backend.LEGACY
        assert cfg.run_type is RunType.SANITY
        assert cfg.target_tokens == 128
        assert cfg.prompt_id == "short_1"
        assert cfg.seed == 1234
        assert cfg.temperature == 0.8
        assert cfg.context_window == 4096

    def test_full_run(self):
        from mlx_harness.server import run_config_from_body

        cfg = run_config_from_body({"model": "/m", "run_type": "full"}, Backend.CPU)
        assert cfg.target_tokens == 512
        assert cfg.prompt_id == "medium_1"

    def test_custom_prompt(self):
        from mlx_harness.server import run_config_from_body

        cfg = run_config_from_body(
            {"model": "/m", "prompt": "Say hi", "backend": "tensor", "seed": "7"}, Backend.CPU
        )
        assert cfg.prompt_id == "custom"
        assert cfg.prompt_text == "Say hi"
        assert cfg.backend is Backend.TENSOR
        assert cfg.seed == 7

    @pytest.mark.parametrize("body", [
        {},
        {"model": "/m", "run_type": "marathon"},
        {"model": "/m", "prompt_id": "nope"},
        {"model": "/m", "target_tokens": 0},
        [1, 2],
    ])
    def test_rejects(self, body):
        from mlx_harness.server import run_config_from_body

        with pytest.raises(ValueError):
            run_config_from_body(body, Backend.CPU)

    def test_event_to_sse(self):
        from mlx_harness.bench.session import Failed, TextChunk
        from mlx_harness.server import event_to_sse

        assert event_to_sse(TextChunk("hi", 0)) == 'event: text\ndata: {"text": "hi", "index": 0}\n\n'
        assert event_to_sse(Failed("boom", 2)).startswith("event: failure\n")
        with pytest.raises(TypeError):
            event_to_sse(object())


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

class TestCli:

    def test_prompts(self, capsys):
        from mlx_harness.cli import main

        with pytest.raises(SystemExit) as exc:
            main(["prompts"])
        assert exc.value.code == 0
        out = capsys.readouterr().out
        assert "short_1" in out
        assert "long_1" in out

    def test_no_command(self):
        from mlx_harness.cli import main

        with pytest.raises(SystemExit) as exc:
            main([])
        assert exc.value.code == 1

    def test_config_from_args(self):
        from mlx_harness.cli import _config_from_args

        args = SimpleNamespace(
            model="/m", run_type="full", backend=None, tokens=64, prompt_id="short_3",
            prompt=None, seed=5, temperature=None, context_window=None,
        )
        cfg = _config_from_args(args, Backend.CPU)
        assert cfg.run_type is RunType.FULL
        assert cfg.target_tokens == 64
        assert cfg.prompt_id == "short_3"
        assert cfg.seed == 5
        assert cfg.backend is Backend.CPU

    def test_write_outputs(self, tmp_path, capsys):
        from mlx_harness.bench.results import load_run_record
        from mlx_harness.cli import _write_outputs

        _write_outputs(tmp_path, [_result()])
        records = sorted(tmp_path.glob("run_metal-legacy_*.json"))
        assert len(records) == 1
        assert load_run_record(records[0])["run"]["prompt_id"] == "short_1"
        assert len(list(tmp_path.glob("summary_*.md"))) == 1
