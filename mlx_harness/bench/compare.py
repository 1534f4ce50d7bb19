# Copyright © 2023-2025 Apple Inc.

from dataclasses import dataclass, replace
from typing import Sequence

from .models import (
    Backend,
    BenchmarkResult,
    ComparisonResult,
    PARITY_THRESHOLD,
    RunConfig,
)
from .session import GenerationSession

EXCELLENT_PARITY = "excellent parity"
DIVERGENCE_DETECTED = "divergence detected"


def token_match_ratio(a: Sequence[str], b: Sequence[str]) -> float:
    """Fraction of aligned positions holding the same token."""
    longest = max(len(a), len(b))
    if longest == 0:
        return 1.0
    matches = sum(1 for x, y in zip(a, b) if x == y)
    return matches / longest


def edit_distance(a: Sequence[str], b: Sequence[str]) -> int:
    """Levenshtein distance between two token sequences."""
    if len(a) < len(b):
        a, b = b, a
    prev = list(range(len(b) + 1))
    for i, x in enumerate(a, 1):
        cur = [i]
        for j, y in enumerate(b, 1):
            cur.append(min(
                prev[j] + 1,
                cur[j - 1] + 1,
                prev[j - 1] + (x != y),
            ))
        prev = cur
    return prev[-1]


def compare_outputs(baseline: Sequence[str], candidate: Sequence[str],
                    baseline_backend: Backend,
                    threshold: float = PARITY_THRESHOLD) -> ComparisonResult:
    ratio = token_match_ratio(baseline, candidate)
    return ComparisonResult(
        baseline_backend=Backend.parse(baseline_backend),
        token_match_ratio=ratio,
        edit_distance=edit_distance(baseline, candidate),
        notes=EXCELLENT_PARITY if ratio >= threshold else DIVERGENCE_DETECTED,
    )


def compare_results(baseline: BenchmarkResult, candidate: BenchmarkResult,
                    threshold: float = PARITY_THRESHOLD) -> BenchmarkResult:
    """Candidate result with its parity against the baseline attached."""
    comparison = compare_outputs(baseline.text_chunks, candidate.text_chunks,
                                 baseline.backend, threshold)
    return candidate.with_comparison(comparison)


@dataclass(frozen=True)
class ComparisonReport:
    baseline: BenchmarkResult
    candidate: BenchmarkResult

    @property
    def comparison(self) -> ComparisonResult:
        return self.candidate.comparison


class ComparisonEngine:
    """Runs the same prompt/seed on two backends, one after the other."""

    def __init__(self, session: GenerationSession, threshold: float = PARITY_THRESHOLD):
        self.session = session
        self.threshold = threshold

    def run(self, config: RunConfig, candidate_backend: Backend) -> ComparisonReport:
        candidate_backend = Backend.parse(candidate_backend)
        print(f"  [compare] baseline {config.backend.display_name} "
              f"vs {candidate_backend.display_name}")

        baseline = self.session.run(config)
        candidate = self.session.run(replace(config, backend=candidate_backend))

        candidate = compare_results(baseline, candidate, self.threshold)
        c = candidate.comparison
        print(f"  [compare] {c.match_percentage:.1f}% match, "
              f"edit distance {c.edit_distance} ({c.notes})")
        return ComparisonReport(baseline=baseline, candidate=candidate)
