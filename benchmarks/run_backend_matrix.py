#!/usr/bin/env python3
"""Run one prompt on every backend a running mlx-harness server offers.

Backends run strictly one after another through `POST /v1/runs` (SSE). The
first backend in capability order is the parity baseline; each later
backend's emitted text is compared against it token chunk by token chunk.

Outputs:
- `logs/matrix/backend_matrix_<timestamp>.json`
- `logs/matrix/backend_matrix_<timestamp>.md`

Run examples:
- Start the server: `uv run mlx-harness serve`
- Default sanity run:
  `uv run python benchmarks/run_backend_matrix.py ~/models/Llama-3.2-1B-Instruct-4bit`
- Full run, three repeats per backend:
  `uv run python benchmarks/run_backend_matrix.py MODEL --run-type full --repeats 3`
"""

import argparse
import json
import statistics
import sys
import time
from datetime import datetime
from pathlib import Path
from typing import Any

import httpx

REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT))

from mlx_harness.bench.compare import compare_outputs  # noqa: E402
from mlx_harness.bench.models import Backend  # noqa: E402

RESULTS_DIR = REPO_ROOT / "logs" / "matrix"


def _now() -> str:
    return datetime.now().strftime("%Y-%m-%d %H:%M:%S")


def _fmt(v: float | None, digits: int = 1) -> str:
    if v is None:
        return "n/a"
    return f"{v:.{digits}f}"


def stream_run(*, client: httpx.Client, base_url: str, payload: dict[str, Any]) -> dict[str, Any]:
    """POST one run and collect its SSE events into a row."""
    t0 = time.perf_counter()
    first_text_t: float | None = None
    chunks: list[str] = []
    advisories: list[str] = []
    completion: dict[str, Any] | None = None
    failure: dict[str, Any] | None = None
    event_name = None

    with client.stream("POST", f"{base_url}/v1/runs", json=payload, timeout=None) as resp:
        if resp.status_code != 200:
            body = resp.read().decode("utf-8", errors="replace")
            raise RuntimeError(f"HTTP {resp.status_code} from /v1/runs: {body[:1200]}")

        for line in resp.iter_lines():
            if line.startswith("event:"):
                event_name = line[6:].strip()
                continue
            if not line.startswith("data:"):
                continue
            try:
                data = json.loads(line[5:].strip())
            except json.JSONDecodeError:
                continue
            if event_name == "text":
                if first_text_t is None:
                    first_text_t = time.perf_counter()
                chunks.append(data["text"])
            elif event_name == "advisory":
                advisories.append(data["message"])
                print(f"  [{_now()}] advisory: {data['message']}")
            elif event_name == "completion":
                completion = data
            elif event_name == "failure":
                failure = data

    t1 = time.perf_counter()
    row: dict[str, Any] = {
        "backend": payload["backend"],
        "client_ttft_ms": (first_text_t - t0) * 1000.0 if first_text_t is not None else None,
        "client_latency_ms": (t1 - t0) * 1000.0,
        "chunks": chunks,
        "advisories": advisories,
    }
    if failure is not None:
        row["error"] = failure["reason"]
        row["total_tokens"] = failure["total_tokens"]
    elif completion is not None:
        for key in ("ttft_ms", "tokens_per_second", "total_tokens", "duration_ms",
                    "peak_memory_mb", "throttling_events", "thermal_states"):
            row[key] = completion[key]
    else:
        row["error"] = "stream ended without a completion event"
    return row


def attach_parity(rows: list[dict[str, Any]], baseline: str) -> None:
    """Compare each successful row against the first successful baseline row of its repeat."""
    by_repeat: dict[int, dict[str, Any]] = {}
    for r in rows:
        if r["backend"] == baseline and not r.get("error"):
            by_repeat.setdefault(r["repeat"], r)
    for r in rows:
        base = by_repeat.get(r["repeat"])
        if base is None or r is base or r.get("error"):
            continue
        c = compare_outputs(base["chunks"], r["chunks"], Backend(baseline))
        r["parity"] = c.to_dict()


def summarize(rows: list[dict[str, Any]], backends: list[str]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for backend in backends:
        subset = [r for r in rows if r["backend"] == backend and not r.get("error")]
        tps = [r["tokens_per_second"] for r in subset]
        ttft = [r["ttft_ms"] for r in subset]
        match = [r["parity"]["token_match_ratio"] for r in subset if r.get("parity")]
        out[backend] = {
            "n_runs": len(subset),
            "n_failed": sum(1 for r in rows if r["backend"] == backend and r.get("error")),
            "tokens_per_second_mean": statistics.fmean(tps) if tps else None,
            "ttft_ms_mean": statistics.fmean(ttft) if ttft else None,
            "peak_memory_mb_max": max((r["peak_memory_mb"] for r in subset), default=None),
            "throttling_events_total": sum(r["throttling_events"] for r in subset),
            "match_ratio_mean": statistics.fmean(match) if match else None,
        }
    return out


def render_markdown(summary: dict[str, Any], baseline: str) -> str:
    lines = [
        f"Parity baseline: {Backend(baseline).display_name}",
        "",
        "| Backend | Runs | Failed | TTFT ms | tok/s | Peak MB | Throttles | Match % |",
        "|---|---:|---:|---:|---:|---:|---:|---:|",
    ]
    for backend, row in summary.items():
        match = row["match_ratio_mean"]
        lines.append(
            f"| {Backend(backend).display_name} | {row['n_runs']} | {row['n_failed']} "
            f"| {_fmt(row['ttft_ms_mean'], 0)} | {_fmt(row['tokens_per_second_mean'])} "
            f"| {row['peak_memory_mb_max'] if row['peak_memory_mb_max'] is not None else 'n/a'} "
            f"| {row['throttling_events_total']} "
            f"| {_fmt(match * 100 if match is not None else None)} |"
        )
    return "\n".join(lines) + "\n"


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run every available backend against an mlx-harness server")
    parser.add_argument("model", help="Model path as seen by the server")
    parser.add_argument("--url", default="http://127.0.0.1:8080")
    parser.add_argument("--run-type", choices=["sanity", "full"], default="sanity")
    parser.add_argument("--prompt-id", default=None)
    parser.add_argument("--seed", type=int, default=1234)
    parser.add_argument("--repeats", type=int, default=1)
    parser.add_argument("--cooldown", type=float, default=10.0,
                        help="Seconds to wait between runs so the device can cool down")
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    RESULTS_DIR.mkdir(parents=True, exist_ok=True)
    ts = datetime.now().strftime("%Y%m%d_%H%M%S")
    out_json = RESULTS_DIR / f"backend_matrix_{ts}.json"
    out_md = RESULTS_DIR / f"backend_matrix_{ts}.md"

    rows: list[dict[str, Any]] = []
    with httpx.Client(timeout=10.0) as client:
        capability = client.get(f"{args.url}/v1/capability").json()
        backends = capability["available"]
        baseline = backends[0]
        print(f"[{_now()}] backends: {', '.join(backends)} (baseline {baseline})")

        for repeat in range(args.repeats):
            for backend in backends:
                payload = {
                    "model": args.model,
                    "backend": backend,
                    "run_type": args.run_type,
                    "seed": args.seed,
                }
                if args.prompt_id:
                    payload["prompt_id"] = args.prompt_id
                print(f"[{_now()}] repeat {repeat + 1}/{args.repeats} {backend}")
                try:
                    row = stream_run(client=client, base_url=args.url, payload=payload)
                except (httpx.HTTPError, RuntimeError) as e:
                    row = {"backend": backend, "error": str(e), "chunks": []}
                row["repeat"] = repeat
                rows.append(row)
                if row.get("error"):
                    print(f"  FAILED: {row['error']}")
                else:
                    print(f"  {row['total_tokens']} tokens, {_fmt(row['tokens_per_second'])} tok/s, "
                          f"TTFT {_fmt(row['ttft_ms'], 0)} ms")
                time.sleep(args.cooldown)

    attach_parity(rows, baseline)
    summary = summarize(rows, backends)

    with open(out_json, "w") as f:
        json.dump({"capability": capability, "model": args.model, "run_type": args.run_type,
                   "seed": args.seed, "rows": rows, "summary": summary}, f, indent=2)
    out_md.write_text(render_markdown(summary, baseline))

    print(f"\nResults JSON: {out_json}")
    print(f"Summary MD:   {out_md}")
    print()
    print(render_markdown(summary, baseline))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
