"""Remote intelligence collaborators backed by the Gemini REST API."""
from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional, Protocol as Interface, Sequence
import json
import logging

from culinarylens.models.gemini import GeminiClient, GeminiImage, GeminiResult
from culinarylens.resilience import RemoteCallError
from culinarylens.schema import (
    ASSET_KINDS,
    Capture,
    DescriptiveBlueprint,
    Hypothesis,
    Ingredient,
    Preferences,
    Protocol,
    VisionAnalysis,
)

logger = logging.getLogger(__name__)


class RemoteIntelligence(Interface):
    """Everything the pipelines ask of the remote service.

    Implementations raise on failure; the callers wrapping them decide
    whether a failure is retried, latched or degraded.
    """

    async def synthesize(self, ingredients: Sequence[Ingredient], preferences: Preferences) -> Protocol: ...

    async def hypothesize(self, ingredients: Sequence[Ingredient]) -> List[Hypothesis]: ...

    async def rescan(self, capture: Capture, hypotheses: Sequence[Hypothesis]) -> List[Ingredient]: ...

    async def refine(self, ingredients: Sequence[Ingredient]) -> List[Ingredient]: ...

    async def generate_asset(self, kind: str, subject: str) -> Optional[GeminiImage]: ...

    async def describe_blueprint(self, subject: str, description: str) -> DescriptiveBlueprint: ...

    async def analyze_dish(self, capture: Capture) -> VisionAnalysis: ...

    async def verify_technique(self, capture: Capture, instruction: str) -> Dict[str, Any]: ...

    async def advise(self, question: str, protocol: Protocol, step_index: int) -> str: ...

    async def ping(self, api_key: Optional[str] = None) -> bool: ...


def parse_json_payload(text: str) -> Any:
    """Lenient JSON extraction: plain, fenced, or embedded in prose."""
    if not text:
        return None
    clean = text.strip()
    try:
        return json.loads(clean)
    except ValueError:
        pass
    if "```" in clean:
        start = clean.index("```")
        end = clean.rindex("```")
        inner = clean[start + 3:end] if end > start else clean[start + 3:]
        # drop the language tag
        if inner.lower().startswith("json"):
            inner = inner[4:]
        try:
            return json.loads(inner.strip())
        except ValueError:
            pass
    for open_char, close_char in (("{", "}"), ("[", "]")):
        start = clean.find(open_char)
        end = clean.rfind(close_char)
        if start == -1 or end <= start:
            continue
        try:
            return json.loads(clean[start:end + 1])
        except ValueError:
            continue
    return None


def _object_list(payload: Any) -> List[Dict[str, Any]]:
    if isinstance(payload, dict):
        # some responses wrap the list: {"items": [...]}
        for value in payload.values():
            if isinstance(value, list):
                payload = value
                break
    if not isinstance(payload, list):
        return []
    return [item for item in payload if isinstance(item, dict)]


_STRING = {"type": "STRING"}
_NUMBER = {"type": "NUMBER"}

HYPOTHESIS_SCHEMA = {
    "type": "ARRAY",
    "items": {
        "type": "OBJECT",
        "properties": {
            "name": _STRING,
            "justification": _STRING,
            "visualHint": _STRING,
            "confidence": _NUMBER,
        },
        "required": ["name", "justification", "visualHint", "confidence"],
    },
}

INGREDIENT_SCHEMA = {
    "type": "ARRAY",
    "items": {
        "type": "OBJECT",
        "properties": {
            "id": _STRING,
            "name": _STRING,
            "scientificName": _STRING,
            "category": _STRING,
            "mass_grams": _NUMBER,
            "vitality_score": _NUMBER,
            "expires_in_days": _NUMBER,
            "confidence": _NUMBER,
            "molecularProfile": {"type": "ARRAY", "items": _STRING},
        },
        "required": ["name", "category", "confidence"],
    },
}

BLUEPRINT_SCHEMA = {
    "type": "OBJECT",
    "properties": {name: _STRING for name in DescriptiveBlueprint.FIELDS},
    "required": list(DescriptiveBlueprint.FIELDS),
}

VISION_SCHEMA = {
    "type": "OBJECT",
    "properties": {
        "ingredients": {"type": "ARRAY", "items": _STRING},
        "cuisine": _STRING,
        "cookingStyle": _STRING,
        "freshness": _STRING,
        "visualDescription": _STRING,
    },
    "required": ["ingredients", "cuisine", "cookingStyle", "freshness", "visualDescription"],
}

TECHNIQUE_SCHEMA = {
    "type": "OBJECT",
    "properties": {"success": {"type": "BOOLEAN"}, "feedback": _STRING},
    "required": ["success", "feedback"],
}

SYNTHESIS_PROMPT = """Design a Michelin-star recipe protocol.

Inventory: {inventory}
Cuisine: {cuisine}
Dietary rule: {dietary}
Allergies (never use): {allergies}

Return ONLY a JSON object with keys: title, description, complexity (Low|Medium|High),
duration_minutes, ingredients_used (names from the inventory), missing_ingredients,
instructions (array of objects with order, instruction, technique, target_temp, timer_seconds),
plating_tips, drink_pairing (object with name, description), nutrition (calories, protein,
carbs, fat), substitution_risk (SAFE|CAUTION|RISK)."""

VISION_PROMPT = """You are an expert culinary vision analyst.
Analyze this food image and return ONLY a JSON object with: ingredients (every visible
ingredient), cuisine, cookingStyle (primary cooking method), freshness (assessment from
color, texture and appearance), visualDescription (colors, plating, arrangement)."""

ASSET_PROMPTS = {
    "plating": ("A Michelin-star plating of {subject}. High-fidelity food photography, overhead view, minimalist.", "16:9"),
    "drink": ("A professional studio photograph of a {subject}. Elegant lighting, plain background.", "1:1"),
    "ingredient": ("A fresh, high-quality {subject} isolated on a clean white background. Food photography.", "1:1"),
    "schematic": ("An architectural blueprint and deconstructed schematic of the dish {subject}. Technical drawing style.", "1:1"),
}

SOUS_CHEF_SYSTEM = (
    "You are an expert Michelin-star sous-chef. Provide concise, technical, and helpful "
    "advice for the current cooking step."
)


class GeminiIntelligence:
    """``RemoteIntelligence`` over ``GeminiClient``.

    The API key is resolved per call so a newly stored key takes effect
    without rebuilding the orchestrator.
    """

    def __init__(
        self,
        credentials: Callable[[], Optional[str]],
        config: Optional[Dict[str, Any]] = None,
    ) -> None:
        cfg = config or {}
        self.credentials = credentials
        self.base_url = cfg.get("api_base", "https://generativelanguage.googleapis.com/v1beta")
        self.timeout = float(cfg.get("timeout_seconds", 90))
        self.synthesis_model = cfg.get("synthesis_model", "gemini-3-pro-preview")
        self.reasoning_model = cfg.get("reasoning_model", "gemini-3-flash-preview")
        self.vision_model = cfg.get("vision_model", "gemini-1.5-pro")
        self.image_model = cfg.get("image_model", "gemini-2.5-flash-image")
        self.grounding = bool(cfg.get("grounding", True))
        temperature = cfg.get("temperature")
        self.temperature = float(temperature) if temperature is not None else None

    def _client(self, api_key: Optional[str] = None) -> GeminiClient:
        return GeminiClient(api_key=api_key or self.credentials(), base_url=self.base_url, timeout=self.timeout)

    async def _generate(self, model: str, parts: List[Dict[str, Any]], **kwargs: Any) -> GeminiResult:
        result = await self._client().generate_content(model, parts, **kwargs)
        if not result.ok:
            raise RemoteCallError(result.error or "unknown Gemini error", status=result.status)
        if result.usage:
            logger.debug("gemini %s usage: %s", model, result.usage)
        return result

    async def _json(self, model: str, parts: List[Dict[str, Any]], **kwargs: Any) -> Any:
        result = await self._generate(model, parts, **kwargs)
        payload = parse_json_payload(result.text)
        if payload is None:
            raise RemoteCallError(f"unparseable JSON from {model}: {result.text[:200]}")
        return payload

    async def synthesize(self, ingredients: Sequence[Ingredient], preferences: Preferences) -> Protocol:
        prompt = SYNTHESIS_PROMPT.format(
            inventory="; ".join(item.name for item in ingredients) or "(empty)",
            cuisine=preferences.cuisine,
            dietary=preferences.dietary,
            allergies=", ".join(preferences.allergies) or "none",
        )
        # search grounding cannot be combined with a JSON response mime type
        result = await self._generate(
            self.synthesis_model,
            [GeminiClient.text_part(prompt)],
            grounding=self.grounding,
            temperature=self.temperature,
        )
        payload = parse_json_payload(result.text)
        if not isinstance(payload, dict):
            raise RemoteCallError(f"unparseable protocol from {self.synthesis_model}")
        return Protocol.from_payload(payload, is_offline=False, grounding_sources=result.grounding_sources)

    async def hypothesize(self, ingredients: Sequence[Ingredient]) -> List[Hypothesis]:
        prompt = (
            f"Based on the following inventory: {', '.join(item.name for item in ingredients)}, "
            "predict what other common ingredients might be present but currently hidden or missing "
            "from the scan. Return as JSON array of objects with keys: name, justification, "
            "visualHint, confidence."
        )
        payload = await self._json(
            self.reasoning_model,
            [GeminiClient.text_part(prompt)],
            response_mime_type="application/json",
            response_schema=HYPOTHESIS_SCHEMA,
        )
        hypotheses = [Hypothesis.from_dict(item) for item in _object_list(payload)]
        return [h for h in hypotheses if h.name]

    async def rescan(self, capture: Capture, hypotheses: Sequence[Hypothesis]) -> List[Ingredient]:
        if not hypotheses or not capture.image:
            return []
        listing = "\n".join(f"- {h.name}: look for {h.visual_hint or 'any trace'}" for h in hypotheses)
        prompt = (
            "Re-examine this image for the following suspected ingredients:\n"
            f"{listing}\n"
            "Return a JSON array with only the ingredients you can actually see, as objects with "
            "keys: name, category, mass_grams, vitality_score, expires_in_days, confidence."
        )
        payload = await self._json(
            self.reasoning_model,
            [GeminiClient.image_part(capture.image, capture.mime_type), GeminiClient.text_part(prompt)],
            response_mime_type="application/json",
            response_schema=INGREDIENT_SCHEMA,
        )
        items = [Ingredient.from_dict(item) for item in _object_list(payload)]
        return [item for item in items if item.name]

    async def refine(self, ingredients: Sequence[Ingredient]) -> List[Ingredient]:
        manifest = json.dumps([item.to_dict() for item in ingredients])
        prompt = (
            f"Perform a final refinement on this perceived material manifest: {manifest}. "
            "Correct taxonomy errors and standardize naming. Return the refined list as JSON."
        )
        payload = await self._json(
            self.reasoning_model,
            [GeminiClient.text_part(prompt)],
            response_mime_type="application/json",
            response_schema=INGREDIENT_SCHEMA,
        )
        items = [Ingredient.from_dict(item) for item in _object_list(payload)]
        return [item for item in items if item.name]

    async def generate_asset(self, kind: str, subject: str) -> Optional[GeminiImage]:
        if kind not in ASSET_KINDS:
            raise ValueError(f"unknown asset kind: {kind}")
        template, aspect = ASSET_PROMPTS[kind]
        result = await self._generate(
            self.image_model,
            [GeminiClient.text_part(template.format(subject=subject))],
            response_modalities=["TEXT", "IMAGE"],
            image_config={"aspectRatio": aspect},
        )
        return result.images[0] if result.images else None

    async def describe_blueprint(self, subject: str, description: str) -> DescriptiveBlueprint:
        prompt = (
            f'Describe the visual presentation of "{subject}" in exquisite detail. {description}. '
            "Return a high-fidelity visual blueprint as JSON with keys: plating, colors, textures, "
            "garnish, lighting, composition. Each should be a vivid, specific description."
        )
        payload = await self._json(
            self.reasoning_model,
            [GeminiClient.text_part(prompt)],
            response_mime_type="application/json",
            response_schema=BLUEPRINT_SCHEMA,
        )
        if not isinstance(payload, dict):
            raise RemoteCallError("blueprint response was not an object")
        return DescriptiveBlueprint.from_dict(payload)

    async def analyze_dish(self, capture: Capture) -> VisionAnalysis:
        payload = await self._json(
            self.vision_model,
            [GeminiClient.image_part(capture.image, capture.mime_type), GeminiClient.text_part(VISION_PROMPT)],
            response_mime_type="application/json",
            response_schema=VISION_SCHEMA,
        )
        if not isinstance(payload, dict):
            raise RemoteCallError("vision response was not an object")
        return VisionAnalysis.from_dict(payload)

    async def verify_technique(self, capture: Capture, instruction: str) -> Dict[str, Any]:
        prompt = (
            f'Analyze the image and verify if the technique "{instruction}" is being performed '
            "correctly. Return JSON with 'success' (boolean) and 'feedback' (string)."
        )
        payload = await self._json(
            self.reasoning_model,
            [GeminiClient.image_part(capture.image, capture.mime_type), GeminiClient.text_part(prompt)],
            response_mime_type="application/json",
            response_schema=TECHNIQUE_SCHEMA,
        )
        if not isinstance(payload, dict) or "feedback" not in payload:
            raise RemoteCallError("technique response missing feedback")
        return {"success": bool(payload.get("success")), "feedback": str(payload["feedback"])}

    async def advise(self, question: str, protocol: Protocol, step_index: int) -> str:
        step = protocol.instructions[step_index].instruction if 0 <= step_index < len(protocol.instructions) else ""
        prompt = f'Recipe: "{protocol.title}". Current Step: "{step}". User Question: {question}'
        result = await self._generate(
            self.reasoning_model,
            [GeminiClient.text_part(prompt)],
            system=SOUS_CHEF_SYSTEM,
            temperature=self.temperature,
        )
        return result.text.strip() or "I'm unable to provide advice at this moment."

    async def ping(self, api_key: Optional[str] = None) -> bool:
        result = await self._client(api_key).generate_content(
            self.reasoning_model, [GeminiClient.text_part('Respond with "ok".')]
        )
        if not result.ok:
            raise RemoteCallError(result.error or "ping failed", status=result.status)
        return "ok" in result.text.lower()
