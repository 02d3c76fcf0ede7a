import asyncio

import pytest

from src.api.services.threshold_optimizer_service import (
    ThresholdConfig,
    ThresholdOptimizerService,
    analyze_score_distribution,
    detect_query_type,
)


@pytest.mark.parametrize(
    "query,expected",
    [
        ("What is the capital of France?", "factual"),
        ("How many moons does Mars have?", "factual"),
        ("Explain quantum entanglement", "conceptual"),
        ("What does entropy mean?", "conceptual"),
        ("How to bake sourdough bread", "procedural"),
        ("Tell me about ancient Rome", "exploratory"),
        ("sourdough", "unknown"),
    ],
)
def test_detect_query_type(query, expected):
    assert detect_query_type(query) == expected


def test_query_type_threshold_without_initial_scores():
    result = ThresholdOptimizerService().calculate_threshold("Explain gravity")

    assert result.threshold == pytest.approx(0.65)
    assert result.strategy == "query-type"
    assert result.query_type == "conceptual"


def test_distribution_then_fallback_lowers_threshold_for_scarce_results():
    result = ThresholdOptimizerService().calculate_threshold("What is X?", [0.9, 0.8], min_results=3)

    assert result.strategy == "fallback"
    assert result.threshold == pytest.approx(0.8)


def test_disabled_adaptive_uses_default():
    service = ThresholdOptimizerService(ThresholdConfig(adaptive_enabled=False))

    result = service.calculate_threshold("What is X?", [0.1])

    assert result.threshold == 0.7
    assert result.strategy == "default"


def test_threshold_is_clamped_to_configured_range():
    service = ThresholdOptimizerService(ThresholdConfig(min_threshold=0.5))

    result = service.calculate_threshold("Tell me about it", [0.2, 0.25, 0.3], min_results=5)

    assert result.threshold >= 0.5


def test_analyze_score_distribution():
    distribution = analyze_score_distribution([0.2, 0.4, 0.6, 0.8])

    assert distribution.mean == pytest.approx(0.5)
    assert distribution.min == 0.2
    assert distribution.max == 0.8
    assert distribution.percentiles["p75"] == 0.8


def test_optimize_threshold_steps_until_count_fits():
    scores = [0.9, 0.8, 0.72, 0.68, 0.66]
    seen = []

    async def _search(threshold):
        seen.append(threshold)
        return [s for s in scores if s >= threshold]

    result = asyncio.run(
        ThresholdOptimizerService().optimize_threshold("What is X?", _search, min_results=3, max_results=4)
    )

    assert result.threshold == pytest.approx(0.70)
    assert len(seen) == 2
    assert result.confidence == 0.9
