"""Tests for culinarylens.remote."""
import json
import unittest
from unittest.mock import AsyncMock, patch

from culinarylens.models.gemini import GeminiClient, GeminiImage, GeminiResult
from culinarylens.remote import GeminiIntelligence, parse_json_payload
from culinarylens.resilience import ErrorTag, RemoteCallError, classify_error
from culinarylens.schema import Capture, Hypothesis, Ingredient, Preferences, Protocol


class TestParseJsonPayload(unittest.TestCase):
    def test_plain(self):
        self.assertEqual(parse_json_payload('{"a": 1}'), {"a": 1})

    def test_fenced(self):
        self.assertEqual(parse_json_payload('```json\n{"title": "Soup"}\n```'), {"title": "Soup"})

    def test_embedded_in_prose(self):
        self.assertEqual(parse_json_payload('Here you go: {"a": [1, 2]} enjoy'), {"a": [1, 2]})
        self.assertEqual(parse_json_payload('items: [{"name": "leek"}]'), [{"name": "leek"}])

    def test_garbage(self):
        self.assertIsNone(parse_json_payload("no json here"))
        self.assertIsNone(parse_json_payload(""))


def _ok(text="", **kwargs):
    return GeminiResult(text=text, ok=True, status=200, **kwargs)


class TestGeminiIntelligence(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.remote = GeminiIntelligence(lambda: "test-key", {"grounding": True})

    def _patch(self, *results):
        mock = AsyncMock(side_effect=list(results))
        patcher = patch.object(GeminiClient, "generate_content", new=mock)
        patcher.start()
        self.addCleanup(patcher.stop)
        return mock

    async def test_synthesize_sets_provenance_and_grounding(self):
        payload = {
            "title": "Tomato Tartare",
            "isOffline": True,
            "ingredientsUsed": ["tomato"],
            "instructions": [{"order": 1, "instruction": "Dice", "timerSeconds": "30"}, "Season"],
            "drink_pairing": {"name": "Vermentino"},
        }
        mock = self._patch(_ok(f"```json\n{json.dumps(payload)}\n```", grounding_sources=["https://a.example"]))
        protocol = await self.remote.synthesize([Ingredient(id="1", name="tomato")], Preferences(dietary="Vegan"))

        self.assertFalse(protocol.is_offline)
        self.assertEqual(protocol.title, "Tomato Tartare")
        self.assertEqual(protocol.grounding_sources, ("https://a.example",))
        self.assertEqual(protocol.instructions[0].timer_seconds, 30)
        self.assertEqual(protocol.instructions[1].instruction, "Season")
        self.assertEqual(protocol.drink_pairing.name, "Vermentino")
        self.assertTrue(mock.call_args.kwargs["grounding"])
        self.assertIn("Vegan", mock.call_args.args[1][0]["text"])

    async def test_error_result_raises_classifiable_error(self):
        self._patch(GeminiResult(ok=False, error="HTTP 429: RESOURCE_EXHAUSTED", status=429))
        with self.assertRaises(RemoteCallError) as ctx:
            await self.remote.synthesize([], Preferences())
        self.assertEqual(ctx.exception.status, 429)
        self.assertEqual(classify_error(ctx.exception), ErrorTag.QUOTA_EXCEEDED)

    async def test_unparseable_protocol_is_permanent(self):
        self._patch(_ok("I cannot help with that"))
        with self.assertRaises(RemoteCallError) as ctx:
            await self.remote.synthesize([], Preferences())
        self.assertEqual(classify_error(ctx.exception), ErrorTag.PERMANENT)

    async def test_hypothesize(self):
        self._patch(_ok(json.dumps([
            {"name": "garlic", "justification": "aromatic base", "visualHint": "papery", "confidence": 0.4},
            {"name": "", "confidence": 0.9},
        ])))
        hypotheses = await self.remote.hypothesize([Ingredient(id="1", name="onion")])
        self.assertEqual(hypotheses, [Hypothesis("garlic", "aromatic base", "papery", 0.4)])

    async def test_rescan_without_image_skips_call(self):
        mock = self._patch()
        self.assertEqual(await self.remote.rescan(Capture(), [Hypothesis("garlic")]), [])
        mock.assert_not_called()

    async def test_refine_accepts_wrapped_list(self):
        self._patch(_ok(json.dumps({"items": [{"name": "Allium sativum", "category": "vegetable", "confidence": 2}]})))
        refined = await self.remote.refine([Ingredient(id="1", name="garlic")])
        self.assertEqual(refined[0].name, "Allium sativum")
        self.assertEqual(refined[0].confidence, 1.0)

    async def test_configured_temperature_reaches_text_calls(self):
        self.assertIsNone(self.remote.temperature)
        remote = GeminiIntelligence(lambda: "test-key", {"temperature": "0.3"})
        mock = self._patch(_ok(json.dumps({"title": "Soup"})), _ok("Lower the heat."))
        await remote.synthesize([Ingredient(id="1", name="leek")], Preferences())
        self.assertEqual(mock.call_args.kwargs["temperature"], 0.3)
        protocol = Protocol.from_payload({"title": "Soup", "instructions": ["Simmer"]}, is_offline=False)
        self.assertEqual(await remote.advise("Too hot?", protocol, 0), "Lower the heat.")
        self.assertEqual(mock.call_args.kwargs["temperature"], 0.3)

    async def test_generate_asset(self):
        mock = self._patch(_ok(images=[GeminiImage(b"png")]), _ok())
        image = await self.remote.generate_asset("drink", "Negroni")
        self.assertEqual(image.data, b"png")
        self.assertIn("Negroni", mock.call_args.args[1][0]["text"])
        self.assertIsNone(await self.remote.generate_asset("schematic", "Soup"))
        with self.assertRaises(ValueError):
            await self.remote.generate_asset("hologram", "Soup")

    async def test_describe_blueprint_requires_every_field(self):
        self._patch(_ok(json.dumps({"plating": "flat"})))
        with self.assertRaises(ValueError):
            await self.remote.describe_blueprint("Soup", "clear")

    async def test_analyze_dish(self):
        self._patch(_ok(json.dumps({
            "ingredients": ["rice", "salmon"],
            "cuisine": "Japanese",
            "cookingStyle": "raw",
            "freshness": "glossy",
            "visualDescription": "neat rows",
        })))
        analysis = await self.remote.analyze_dish(Capture(image=b"jpeg"))
        self.assertEqual(analysis.cooking_style, "raw")
        self.assertEqual(analysis.ingredients, ("rice", "salmon"))

    async def test_ping_uses_given_key(self):
        with patch("culinarylens.remote.GeminiClient") as client_cls:
            client_cls.text_part.side_effect = GeminiClient.text_part
            client_cls.return_value.generate_content = AsyncMock(return_value=_ok("OK"))
            self.assertTrue(await self.remote.ping("other-key"))
            self.assertEqual(client_cls.call_args.kwargs["api_key"], "other-key")


if __name__ == "__main__":
    unittest.main()
