import argparse
import sys
from datetime import datetime
from pathlib import Path


def _add_run_args(p):
    p.add_argument("model", help="Path to a local mlx model directory")
    p.add_argument("--backend", default=None,
                   help="metal-tensor, metal-legacy or cpu (recommended backend if omitted)")
    p.add_argument("--run-type", choices=["sanity", "full"], default="sanity",
                   help="sanity: 128 tokens, full: 512 tokens (default: sanity)")
    p.add_argument("--tokens", type=int, default=None,
                   help="Target token count (overrides --run-type)")
    p.add_argument("--prompt-id", default=None, help="Benchmark prompt id (see `prompts`)")
    p.add_argument("--prompt", default=None, help="Custom prompt text")
    p.add_argument("--seed", type=int, default=None)
    p.add_argument("--temperature", type=float, default=None)
    p.add_argument("--context-window", type=int, default=None)
    p.add_argument("--output", default=None,
                   help="Directory for the run record JSON and summary markdown")


def _config_from_args(args, default_backend):
    from .server import run_config_from_body

    body = {"model": args.model, "run_type": args.run_type}
    for key, value in (("backend", args.backend), ("target_tokens", args.tokens),
                       ("prompt_id", args.prompt_id), ("prompt", args.prompt),
                       ("seed", args.seed), ("temperature", args.temperature),
                       ("context_window", args.context_window)):
        if value is not None:
            body[key] = value
    return run_config_from_body(body, default_backend)


def _write_outputs(output_dir, results) -> None:
    from .bench.results import (
        RunMetadata,
        build_run_record,
        render_markdown,
        save_run_record,
    )

    out = Path(output_dir)
    stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    for r in results:
        record = build_run_record(r, RunMetadata.collect(r.backend))
        path = save_run_record(out / f"run_{r.backend.value}_{stamp}.json", record)
        print(f"Run record: {path}")
    md_path = out / f"summary_{stamp}.md"
    md_path.write_text(render_markdown(results), encoding="utf-8")
    print(f"Summary MD: {md_path}")


def _cmd_run(args) -> int:
    from .bench.capability import describe_hardware, detect_capability, is_backend_available
    from .bench.session import GenerationSession, TextChunk, Advisory, Completed, Failed

    hw = describe_hardware()
    try:
        config = _config_from_args(args, detect_capability(hw))
    except ValueError as e:
        print(f"Invalid run options: {e}", file=sys.stderr)
        return 2
    if not is_backend_available(config.backend, hw):
        print(f"{config.backend.display_name} backend not available", file=sys.stderr)
        return 2

    print(f"Model:    {config.model_path}")
    print(f"Backend:  {config.backend.display_name}")
    print(f"Run type: {config.run_type.display_name} ({config.target_tokens} tokens)")
    print(f"Prompt:   {config.prompt_id}: {config.prompt_text[:60]}...")
    print()

    session = GenerationSession()
    for event in session.start(config):
        if isinstance(event, TextChunk):
            print(event.text, end="", flush=True)
        elif isinstance(event, Advisory):
            print(f"\n[advisory] {event.message}")
        elif isinstance(event, Failed):
            print(f"\nRun failed after {event.total_tokens} tokens: {event.reason}",
                  file=sys.stderr)
            return 1
        elif isinstance(event, Completed):
            r = event.result
            print(f"\n\n--- Stats ---")
            print(f"TTFT:        {r.ttft_ms:.0f} ms")
            print(f"Tokens/sec:  {r.tokens_per_second:.1f}")
            print(f"Tokens:      {r.total_tokens}")
            print(f"Duration:    {r.duration_ms / 1000:.1f} s")
            print(f"Peak memory: {r.peak_memory_mb} MB")
            print(f"Thermal:     {' '.join(t.value for t in r.thermal_states) or 'n/a'}"
                  f" ({r.throttling_events} throttling events)")
            if args.output:
                _write_outputs(args.output, [r])
    return 0


def _cmd_compare(args) -> int:
    from .bench.capability import describe_hardware, detect_capability, is_backend_available
    from .bench.compare import ComparisonEngine
    from .bench.models import Backend, RunFailedError
    from .bench.session import GenerationSession

    hw = describe_hardware()
    try:
        config = _config_from_args(args, detect_capability(hw))
    except ValueError as e:
        print(f"Invalid run options: {e}", file=sys.stderr)
        return 2
    candidate = Backend.parse(args.candidate)
    for backend in (config.backend, candidate):
        if not is_backend_available(backend, hw):
            print(f"{backend.display_name} backend not available", file=sys.stderr)
            return 2

    engine = ComparisonEngine(GenerationSession())
    try:
        report = engine.run(config, candidate)
    except RunFailedError as e:
        print(f"Comparison run failed after {e.total_tokens} tokens: {e.reason}",
              file=sys.stderr)
        return 1

    c = report.comparison
    print()
    print(f"Baseline:   {report.baseline.backend.display_name} "
          f"{report.baseline.tokens_per_second:.1f} tok/s")
    print(f"Candidate:  {report.candidate.backend.display_name} "
          f"{report.candidate.tokens_per_second:.1f} tok/s")
    print(f"Match:      {c.match_percentage:.1f}%")
    print(f"Edit dist:  {c.edit_distance}")
    print(f"Notes:      {c.notes}")
    if args.output:
        _write_outputs(args.output, [report.baseline, report.candidate])
    return 0


def _cmd_info(args) -> int:
    from .bench.catalog import read_model_info
    from .bench.engine import MlxEngine
    from .bench.models import HarnessError

    try:
        info = read_model_info(args.model, MlxEngine())
    except HarnessError as e:
        print(f"Failed to read model: {e}", file=sys.stderr)
        return 1
    print(f"File:          {info.filename}")
    print(f"Size:          {info.size_gb:.2f} GB")
    print(f"Quantization:  {info.quantization or 'unknown'}")
    print(f"Context:       {info.context_length or 'unknown'}")
    print(f"Estimated RAM: {info.estimated_ram_mb} MB")
    return 0


def _cmd_prompts(args) -> int:
    from .bench.prompts import PROMPTS

    for p in PROMPTS:
        print(f"{p.id:<10} {p.category:<7} {p.text.splitlines()[0][:70]}")
    return 0


def main(argv=None):
    parser = argparse.ArgumentParser(prog="mlx-harness")
    sub = parser.add_subparsers(dest="command")

    run = sub.add_parser("run", help="Benchmark one backend")
    _add_run_args(run)

    compare = sub.add_parser("compare", help="A/B parity run: baseline backend vs candidate")
    _add_run_args(compare)
    compare.add_argument("--candidate", default="cpu",
                         help="Backend compared against the baseline (default: cpu)")

    info = sub.add_parser("info", help="Show quantization and context length of a model")
    info.add_argument("model")

    sub.add_parser("prompts", help="List benchmark prompts")

    serve = sub.add_parser("serve", help="Start the benchmark HTTP server")
    serve.add_argument("--port", type=int, default=8080)
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--max-tokens", type=int, default=4096,
                       help="Max target tokens per run (default: 4096)")
    serve.add_argument("--context-window", type=int, default=4096)

    args = parser.parse_args(argv)

    if args.command == "run":
        sys.exit(_cmd_run(args))
    elif args.command == "compare":
        sys.exit(_cmd_compare(args))
    elif args.command == "info":
        sys.exit(_cmd_info(args))
    elif args.command == "prompts":
        sys.exit(_cmd_prompts(args))
    elif args.command == "serve":
        from .server import run_server
        run_server(
            host=args.host,
            port=args.port,
            context_window=args.context_window,
            max_tokens=args.max_tokens,
        )
    else:
        parser.print_help()
        sys.exit(1)
