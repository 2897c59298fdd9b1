"""Tests for culinarylens.fusion."""
import unittest

from culinarylens.fusion import (
    FusionParams,
    coherence_term,
    composite_confidence,
    constraint_term,
    fusion_breakdown,
    perception_term,
)
from culinarylens.schema import Ingredient, Protocol, ProtocolStep


def protocol(steps=5, used=("tomato",)):
    return Protocol(
        id="p",
        title="t",
        instructions=tuple(ProtocolStep(order=i + 1, instruction="x") for i in range(steps)),
        ingredients_used=tuple(used),
        is_offline=False,
    )


def ingredient(name, confidence=0.6, status="unverified"):
    return Ingredient(id=name, name=name, confidence=confidence, verification_status=status)


class TestScenarios(unittest.TestCase):
    def test_single_perceived_reference(self):
        breakdown = fusion_breakdown([ingredient("tomato", 0.6)], protocol(5, ["tomato"]))
        self.assertAlmostEqual(breakdown.perception, 0.6)
        self.assertEqual(breakdown.coherence, 1.0)
        self.assertEqual(breakdown.constraint, 1.0)
        self.assertEqual(breakdown.score, 80)

    def test_hallucinated_reference_penalized(self):
        items = [ingredient("tomato", 0.6)]
        breakdown = fusion_breakdown(items, protocol(5, ["tomato", "unicorn-meat"]))
        self.assertEqual(breakdown.constraint, 0.5)
        self.assertEqual(breakdown.score, 70)
        self.assertLess(breakdown.score, composite_confidence(items, protocol(5, ["tomato"])))


class TestTerms(unittest.TestCase):
    def test_confirmed_floor(self):
        self.assertAlmostEqual(perception_term([ingredient("leek", 0.2, "confirmed")]), 0.85)
        self.assertAlmostEqual(perception_term([ingredient("leek", 0.95, "confirmed")]), 0.95)

    def test_memory_bias_case_insensitive_and_capped(self):
        items = [ingredient("Tomato", 0.6)]
        self.assertAlmostEqual(perception_term(items, {"tomato": 3}), 0.66)
        self.assertAlmostEqual(perception_term(items, {"TOMATO": 50}), 0.70)
        self.assertAlmostEqual(perception_term([ingredient("tomato", 0.95)], {"tomato": 50}), 1.0)

    def test_bad_memory_values_ignored(self):
        items = [ingredient("tomato", 0.6)]
        self.assertAlmostEqual(perception_term(items, {"tomato": "lots"}), 0.6)
        self.assertAlmostEqual(perception_term(items, {"tomato": -4}), 0.6)

    def test_perception_averages(self):
        self.assertAlmostEqual(perception_term([ingredient("a", 0.2), ingredient("b", 0.8)]), 0.5)

    def test_coherence_threshold(self):
        self.assertEqual(coherence_term(protocol(3)), 0.7)
        self.assertEqual(coherence_term(protocol(4)), 1.0)

    def test_constraint_case_insensitive(self):
        self.assertEqual(constraint_term([ingredient("Tomato")], protocol(used=[" tomato "])), 1.0)

    def test_constraint_floor(self):
        self.assertEqual(constraint_term([], protocol(used=["a", "b"])), 0.0)


class TestBoundaries(unittest.TestCase):
    def test_empty_ingredients_perception_is_one(self):
        self.assertEqual(perception_term([]), 1.0)

    def test_no_references_constraint_is_one(self):
        self.assertEqual(constraint_term([ingredient("tomato")], protocol(used=[])), 1.0)

    def test_fully_degenerate_inputs(self):
        breakdown = fusion_breakdown([], protocol(0, []))
        self.assertEqual(breakdown.score, 91)

    def test_nan_confidence_stays_in_range(self):
        score = composite_confidence([ingredient("tomato", float("nan"))], protocol())
        self.assertGreaterEqual(score, 0)
        self.assertLessEqual(score, 100)

    def test_deterministic(self):
        items = [ingredient("tomato", 0.61), ingredient("basil", 0.33, "confirmed")]
        proto = protocol(4, ["tomato", "basil", "salt"])
        scores = {composite_confidence(items, proto, {"basil": 2}) for _ in range(20)}
        self.assertEqual(len(scores), 1)

    def test_params_configurable(self):
        params = FusionParams(coherence_min_steps=1, confirmed_floor=0.9)
        self.assertEqual(coherence_term(protocol(2), params), 1.0)
        self.assertAlmostEqual(perception_term([ingredient("a", 0.1, "confirmed")], params=params), 0.9)


if __name__ == "__main__":
    unittest.main()
