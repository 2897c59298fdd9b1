"""Tests for culinarylens.offline."""
import unittest

from culinarylens.offline import LocalPerceiver, OfflineSynthesizer, merge_duplicates
from culinarylens.schema import Capture, Ingredient, Preferences


def item(name, category="vegetable", **kwargs):
    return Ingredient(id=name, name=name, category=category, **kwargs)


class TestOfflineSynthesizer(unittest.TestCase):
    def setUp(self):
        self.synth = OfflineSynthesizer()

    def test_marks_protocol_offline(self):
        protocol = self.synth.synthesize([item("carrot")], Preferences())
        self.assertTrue(protocol.is_offline)
        self.assertEqual(protocol.ingredients_used, ("carrot",))
        self.assertEqual([step.order for step in protocol.instructions], list(range(1, len(protocol.instructions) + 1)))

    def test_empty_inventory_still_yields_steps(self):
        protocol = self.synth.synthesize([], Preferences())
        self.assertGreaterEqual(len(protocol.instructions), 1)
        self.assertEqual(protocol.ingredients_used, ())

    def test_dietary_rule_filters_categories(self):
        inventory = [item("butter", "dairy"), item("steak", "meat"), item("kale")]
        vegan = self.synth.synthesize(inventory, Preferences(dietary="Vegan"))
        self.assertEqual(vegan.ingredients_used, ("kale",))
        vegetarian = self.synth.synthesize(inventory, Preferences(dietary="Vegetarian"))
        self.assertEqual(set(vegetarian.ingredients_used), {"butter", "kale"})

    def test_allergies_and_dismissed_excluded(self):
        inventory = [item("Peanut", "legume"), item("rice", "grain"), item("shallot", verification_status="dismissed")]
        protocol = self.synth.synthesize(inventory, Preferences(allergies=("peanut",)))
        self.assertEqual(protocol.ingredients_used, ("rice",))

    def test_degenerate_items_do_not_raise(self):
        inventory = [item("", ""), item("mystery", "", mass_grams=0.0), item("x", "UNKNOWN CATEGORY")]
        protocol = self.synth.synthesize(inventory, Preferences(dietary="Keto", cuisine=""))
        self.assertTrue(protocol.instructions)

    def test_cuisine_drink_pairing(self):
        protocol = self.synth.synthesize([item("tuna", "fish")], Preferences(cuisine="Japanese Purity"))
        self.assertEqual(protocol.drink_pairing.name, "Junmai Sake")


class TestLocalPerception(unittest.TestCase):
    def test_labels_become_ingredients(self):
        perceiver = LocalPerceiver(default_confidence=0.4, default_mass_grams=50)
        items = perceiver.detect(Capture(labels=("basil:Herb", "  red   onion ", "", ":spice")))
        self.assertEqual([i.name for i in items], ["basil", "red onion"])
        self.assertEqual(items[0].category, "herb")
        self.assertEqual(items[1].category, "produce")
        self.assertEqual(items[0].confidence, 0.4)
        self.assertEqual(items[0].mass_grams, 50)

    def test_merge_duplicates(self):
        merged = merge_duplicates([
            item("Tomato", mass_grams=100, confidence=0.4),
            item("tomato", mass_grams=50, confidence=0.9, verification_status="confirmed"),
            item("basil", "herb"),
        ])
        self.assertEqual(len(merged), 2)
        tomato = merged[0]
        self.assertEqual(tomato.name, "Tomato")
        self.assertEqual(tomato.mass_grams, 150)
        self.assertEqual(tomato.confidence, 0.9)
        self.assertEqual(tomato.verification_status, "confirmed")


if __name__ == "__main__":
    unittest.main()
