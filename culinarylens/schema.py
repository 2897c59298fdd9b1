"""Domain records shared by the perception and synthesis pipelines."""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional
import base64
import uuid

VERIFICATION_STATES = ("unverified", "confirmed", "dismissed")
ASSET_KINDS = ("plating", "drink", "ingredient", "schematic")
DIETARY_OPTIONS = ("None", "Vegan", "Vegetarian", "Keto", "Paleo")


def new_id() -> str:
    return uuid.uuid4().hex[:9]


def name_key(name: str) -> str:
    """Case-insensitive lookup key for ingredient names."""
    return " ".join(str(name or "").split()).lower()


def _clamp(value: Any, low: float, high: float, default: float) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if number != number:  # NaN
        return default
    return max(low, min(high, number))


def _pick(data: Dict[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return default


def _str_list(value: Any) -> List[str]:
    if not isinstance(value, (list, tuple)):
        return []
    return [str(item) for item in value if str(item).strip()]


@dataclass(frozen=True)
class Ingredient:
    id: str
    name: str
    category: str = "produce"
    mass_grams: float = 0.0
    vitality_score: float = 100.0
    confidence: float = 0.5
    verification_status: str = "unverified"
    scientific_name: str = ""
    expires_in_days: int = 0
    molecular_profile: tuple[str, ...] = ()

    @property
    def key(self) -> str:
        return name_key(self.name)

    def with_status(self, status: str) -> "Ingredient":
        if status not in VERIFICATION_STATES:
            raise ValueError(f"unknown verification status: {status}")
        return replace(self, verification_status=status)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "category": self.category,
            "mass_grams": self.mass_grams,
            "vitality_score": self.vitality_score,
            "confidence": self.confidence,
            "verification_status": self.verification_status,
            "scientific_name": self.scientific_name,
            "expires_in_days": self.expires_in_days,
            "molecular_profile": list(self.molecular_profile),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Ingredient":
        status = str(_pick(data, "verification_status", "verificationStatus", default="unverified"))
        if status not in VERIFICATION_STATES:
            status = "unverified"
        try:
            expires = int(_pick(data, "expires_in_days", "expiresInDays", default=0))
        except (TypeError, ValueError):
            expires = 0
        return cls(
            id=str(data.get("id") or new_id()),
            name=str(data.get("name") or "").strip(),
            category=str(data.get("category") or "produce"),
            mass_grams=_clamp(_pick(data, "mass_grams", "massGrams", default=0), 0.0, float("inf"), 0.0),
            vitality_score=_clamp(_pick(data, "vitality_score", "vitalityScore", default=100), 0.0, 100.0, 100.0),
            confidence=_clamp(data.get("confidence", 0.5), 0.0, 1.0, 0.5),
            verification_status=status,
            scientific_name=str(_pick(data, "scientific_name", "scientificName", default="")),
            expires_in_days=expires,
            molecular_profile=tuple(_str_list(_pick(data, "molecular_profile", "molecularProfile", default=[]))),
        )


@dataclass(frozen=True)
class Hypothesis:
    name: str
    justification: str = ""
    visual_hint: str = ""
    confidence: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "justification": self.justification,
            "visual_hint": self.visual_hint,
            "confidence": self.confidence,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Hypothesis":
        return cls(
            name=str(data.get("name") or "").strip(),
            justification=str(data.get("justification") or ""),
            visual_hint=str(_pick(data, "visual_hint", "visualHint", default="")),
            confidence=_clamp(data.get("confidence", 0.0), 0.0, 1.0, 0.0),
        )


@dataclass(frozen=True)
class ProtocolStep:
    order: int
    instruction: str
    technique: str = ""
    target_temp: Optional[str] = None
    timer_seconds: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "order": self.order,
            "instruction": self.instruction,
            "technique": self.technique,
            "target_temp": self.target_temp,
            "timer_seconds": self.timer_seconds,
        }

    @classmethod
    def from_any(cls, value: Any, order: int) -> "ProtocolStep":
        if isinstance(value, str):
            return cls(order=order, instruction=value)
        data = value if isinstance(value, dict) else {}
        timer = _pick(data, "timer_seconds", "timerSeconds")
        try:
            timer = int(timer) if timer is not None else None
        except (TypeError, ValueError):
            timer = None
        try:
            step_order = int(data.get("order", order))
        except (TypeError, ValueError):
            step_order = order
        return cls(
            order=step_order,
            instruction=str(data.get("instruction") or ""),
            technique=str(data.get("technique") or ""),
            target_temp=_pick(data, "target_temp", "targetTemp"),
            timer_seconds=timer,
        )


@dataclass(frozen=True)
class DrinkPairing:
    name: str
    description: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "description": self.description}


@dataclass(frozen=True)
class Protocol:
    """A synthesized recipe.

    ``is_offline`` records which path produced the protocol. Only the
    producing code path sets it; payload values are never trusted.
    """
    id: str
    title: str
    instructions: tuple[ProtocolStep, ...]
    ingredients_used: tuple[str, ...]
    is_offline: bool
    description: str = ""
    complexity: str = "Medium"
    duration_minutes: int = 0
    missing_ingredients: tuple[str, ...] = ()
    plating_tips: tuple[str, ...] = ()
    drink_pairing: Optional[DrinkPairing] = None
    nutrition: Dict[str, float] = field(default_factory=dict, hash=False, compare=False)
    grounding_sources: tuple[str, ...] = ()
    substitution_risk: str = "SAFE"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "complexity": self.complexity,
            "duration_minutes": self.duration_minutes,
            "instructions": [step.to_dict() for step in self.instructions],
            "ingredients_used": list(self.ingredients_used),
            "missing_ingredients": list(self.missing_ingredients),
            "plating_tips": list(self.plating_tips),
            "drink_pairing": self.drink_pairing.to_dict() if self.drink_pairing else None,
            "nutrition": dict(self.nutrition),
            "grounding_sources": list(self.grounding_sources),
            "substitution_risk": self.substitution_risk,
            "is_offline": self.is_offline,
        }

    @classmethod
    def from_payload(
        cls,
        data: Dict[str, Any],
        *,
        is_offline: bool,
        grounding_sources: Optional[List[str]] = None,
    ) -> "Protocol":
        steps = data.get("instructions") or []
        if not isinstance(steps, list):
            steps = []
        drink = data.get("drink_pairing") or data.get("drinkPairing")
        pairing = None
        if isinstance(drink, dict) and drink.get("name"):
            pairing = DrinkPairing(name=str(drink["name"]), description=str(drink.get("description") or ""))
        nutrition_raw = data.get("nutrition") if isinstance(data.get("nutrition"), dict) else {}
        nutrition: Dict[str, float] = {}
        for key in ("calories", "protein", "carbs", "fat"):
            try:
                nutrition[key] = float(nutrition_raw.get(key, 0) or 0)
            except (TypeError, ValueError):
                nutrition[key] = 0.0
        try:
            duration = int(_pick(data, "duration_minutes", "durationMinutes", default=0))
        except (TypeError, ValueError):
            duration = 0
        sources = grounding_sources if grounding_sources is not None else _str_list(
            _pick(data, "grounding_sources", "groundingSources", default=[])
        )
        return cls(
            id=new_id(),
            title=str(data.get("title") or "Untitled Protocol"),
            description=str(data.get("description") or ""),
            complexity=str(data.get("complexity") or "Medium"),
            duration_minutes=duration,
            instructions=tuple(ProtocolStep.from_any(step, i + 1) for i, step in enumerate(steps)),
            ingredients_used=tuple(_str_list(_pick(data, "ingredients_used", "ingredientsUsed", default=[]))),
            missing_ingredients=tuple(_str_list(_pick(data, "missing_ingredients", "missingIngredients", default=[]))),
            plating_tips=tuple(_str_list(_pick(data, "plating_tips", "platingTips", default=[]))),
            drink_pairing=pairing,
            nutrition=nutrition,
            grounding_sources=tuple(sources),
            substitution_risk=str(_pick(data, "substitution_risk", "substitutionRisk", default="SAFE")),
            is_offline=is_offline,
        )


@dataclass(frozen=True)
class DescriptiveBlueprint:
    plating: str
    colors: str
    textures: str
    garnish: str
    lighting: str
    composition: str

    FIELDS = ("plating", "colors", "textures", "garnish", "lighting", "composition")

    def to_dict(self) -> Dict[str, str]:
        return {name: getattr(self, name) for name in self.FIELDS}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DescriptiveBlueprint":
        missing = [name for name in cls.FIELDS if not str(data.get(name) or "").strip()]
        if missing:
            raise ValueError(f"blueprint missing fields: {', '.join(missing)}")
        return cls(**{name: str(data[name]) for name in cls.FIELDS})


@dataclass(frozen=True)
class VisualArtifact:
    """One requested visual. At most one of ``image``/``blueprint`` is authoritative."""
    kind: str
    image: Optional[bytes] = None
    mime_type: str = "image/png"
    blueprint: Optional[DescriptiveBlueprint] = None

    @property
    def authoritative(self) -> Any:
        if self.image:
            return self.image
        return self.blueprint

    @property
    def available(self) -> bool:
        return self.authoritative is not None

    def data_url(self) -> str:
        if not self.image:
            return ""
        return f"data:{self.mime_type};base64,{base64.b64encode(self.image).decode('ascii')}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "image": self.data_url() or None,
            "blueprint": self.blueprint.to_dict() if (self.blueprint and not self.image) else None,
        }


@dataclass(frozen=True)
class Preferences:
    dietary: str = "None"
    allergies: tuple[str, ...] = ()
    cuisine: str = "Global Modern"
    high_fidelity_visuals: bool = True
    confidence_memory: Dict[str, int] = field(default_factory=dict, hash=False, compare=False)

    def record_confirmation(self, name: str) -> "Preferences":
        memory = dict(self.confidence_memory)
        key = name_key(name)
        memory[key] = int(memory.get(key, 0)) + 1
        return replace(self, confidence_memory=memory)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "dietary": self.dietary,
            "allergies": list(self.allergies),
            "cuisine": self.cuisine,
            "high_fidelity_visuals": self.high_fidelity_visuals,
            "confidence_memory": dict(self.confidence_memory),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Preferences":
        dietary = str(data.get("dietary") or "None")
        if dietary not in DIETARY_OPTIONS:
            dietary = "None"
        memory_raw = _pick(data, "confidence_memory", "confidenceMemory", default={})
        if not isinstance(memory_raw, dict):
            memory_raw = {}
        memory: Dict[str, int] = {}
        for key, value in memory_raw.items():
            try:
                memory[name_key(key)] = int(value)
            except (TypeError, ValueError):
                continue
        return cls(
            dietary=dietary,
            allergies=tuple(_str_list(data.get("allergies"))),
            cuisine=str(_pick(data, "cuisine", "cuisinePreference", default="Global Modern")),
            high_fidelity_visuals=bool(_pick(data, "high_fidelity_visuals", "highFidelityVisuals", default=True)),
            confidence_memory=memory,
        )


@dataclass(frozen=True)
class Capture:
    """Raw scan input: image bytes plus labels from the on-device classifier."""
    image: bytes = b""
    mime_type: str = "image/jpeg"
    labels: tuple[str, ...] = ()


@dataclass(frozen=True)
class VisionAnalysis:
    ingredients: tuple[str, ...]
    cuisine: str
    cooking_style: str
    freshness: str
    visual_description: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ingredients": list(self.ingredients),
            "cuisine": self.cuisine,
            "cooking_style": self.cooking_style,
            "freshness": self.freshness,
            "visual_description": self.visual_description,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VisionAnalysis":
        ingredients = _str_list(data.get("ingredients"))
        cuisine = str(data.get("cuisine") or "")
        style = str(_pick(data, "cooking_style", "cookingStyle", default=""))
        if not ingredients or not cuisine or not style:
            raise ValueError("vision analysis missing ingredients, cuisine or cooking style")
        return cls(
            ingredients=tuple(ingredients),
            cuisine=cuisine,
            cooking_style=style,
            freshness=str(data.get("freshness") or ""),
            visual_description=str(_pick(data, "visual_description", "visualDescription", default="")),
        )
