# Copyright © 2023-2025 Apple Inc.

from dataclasses import dataclass

from .models import RunType


@dataclass(frozen=True)
class BenchmarkPrompt:
    id: str
    category: str
    text: str


PROMPTS = (
    BenchmarkPrompt("short_1", "short", "Explain quantum computing in simple terms."),
    BenchmarkPrompt("short_2", "short", "Write a haiku about artificial intelligence."),
    BenchmarkPrompt("short_3", "short", "What are the benefits of exercise?"),
    BenchmarkPrompt("short_4", "short", "Describe the water cycle."),
    BenchmarkPrompt("short_5", "short", "List five programming languages and their uses."),
    BenchmarkPrompt(
        "medium_1", "medium",
        "You are a helpful AI assistant. A user is building an app that performs "
        "inference with large language models on device. They want to use the GPU "
        "for acceleration. Explain the key considerations for optimizing GPU "
        "performance for LLM inference, including memory management, compute "
        "kernel design, and thermal throttling strategies.",
    ),
    BenchmarkPrompt(
        "medium_2", "medium",
        "Write a detailed comparison of three sorting algorithms: quicksort, "
        "mergesort, and heapsort. Include time complexity, space complexity, "
        "stability characteristics, and practical use cases. Then recommend which "
        "algorithm would be best for sorting a large array of user records by "
        "timestamp on a mobile device.",
    ),
    BenchmarkPrompt(
        "long_1", "long",
        "You are an expert software architect designing a distributed system. The "
        "system must handle real-time data processing for an IoT network with "
        "millions of sensors. Requirements include:\n\n"
        "1. Ingest sensor data at 100,000 events per second\n"
        "2. Process data with <100ms latency for critical alerts\n"
        "3. Store historical data for 2 years with efficient querying\n"
        "4. Scale horizontally as sensor count grows\n"
        "5. Maintain 99.99% uptime\n"
        "6. Support both real-time dashboards and batch analytics\n"
        "7. Ensure data security and compliance with privacy regulations\n\n"
        "Design the system architecture, including:\n"
        "- Data ingestion layer (message queues, stream processing)\n"
        "- Processing pipeline (real-time vs batch)\n"
        "- Storage strategy (hot, warm, cold data tiers)\n"
        "- API layer for clients and dashboards\n"
        "- Monitoring and alerting infrastructure\n"
        "- Disaster recovery and backup strategies\n\n"
        "Justify your technology choices and explain the trade-offs. Consider both "
        "cloud-native solutions and hybrid approaches.",
    ),
)

_BY_ID = {p.id: p for p in PROMPTS}


def prompts_in(category: str) -> list[BenchmarkPrompt]:
    return [p for p in PROMPTS if p.category == category]


def get_prompt(prompt_id: str) -> BenchmarkPrompt | None:
    return _BY_ID.get(prompt_id)


def default_prompt(run_type: RunType) -> BenchmarkPrompt:
    if RunType(run_type) is RunType.SANITY:
        return prompts_in("short")[0]
    return prompts_in("medium")[0]
