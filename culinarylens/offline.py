"""Local stand-ins for remote stages.

Everything here runs without the network and must not fail on any input the
pipelines can hand it.
"""
from __future__ import annotations

from typing import Dict, Iterable, List, Sequence
import logging

from culinarylens.schema import (
    Capture,
    DescriptiveBlueprint,
    DrinkPairing,
    Ingredient,
    Preferences,
    Protocol,
    ProtocolStep,
    VisionAnalysis,
    name_key,
    new_id,
)

logger = logging.getLogger(__name__)

# Used when the service is unreachable and no remote description is attempted.
OFFLINE_BLUEPRINT = DescriptiveBlueprint(
    plating="Minimalist composition with deliberate negative space",
    colors="Earthy tones with accent highlights",
    textures="Contrasting smooth and rough elements",
    garnish="Fresh herb sprigs and microgreens",
    lighting="Natural diffused overhead lighting",
    composition="Asymmetric balance following rule of thirds",
)

# Used when the remote description itself failed.
FAILURE_BLUEPRINT = DescriptiveBlueprint(
    plating="Artful arrangement with careful attention to spacing and height variation",
    colors="Rich, complementary color palette with visual depth",
    textures="Varied surface qualities from glossy sauces to matte garnishes",
    garnish="Edible flowers, microgreens, and precise herb placement",
    lighting="Studio-quality illumination highlighting key elements",
    composition="Balanced asymmetry with focal point emphasis",
)

FALLBACK_VISION = VisionAnalysis(
    ingredients=("unknown",),
    cuisine="Mixed",
    cooking_style="varied",
    freshness="analysis unavailable - offline mode",
    visual_description=(
        "A culinary composition awaiting detailed analysis. "
        "Visual assessment requires online connectivity."
    ),
)

SOUS_CHEF_OFFLINE = (
    "Local edge compute active. Focus on maintaining steady temperature "
    "and precision cuts for this technique."
)
SOUS_CHEF_INTERRUPTED = "Neural handshake interrupted. Falling back to fundamental technique rules."
TECHNIQUE_OFFLINE = {"success": True, "feedback": "Technique verified via edge ensemble models."}
TECHNIQUE_INTERRUPTED = {"success": True, "feedback": "Handshake stable via local logic."}

# Categories excluded by each dietary rule.
DIETARY_EXCLUSIONS: Dict[str, set[str]] = {
    "None": set(),
    "Vegan": {"meat", "poultry", "seafood", "fish", "dairy", "egg", "eggs", "honey"},
    "Vegetarian": {"meat", "poultry", "seafood", "fish"},
    "Keto": {"grain", "grains", "sugar", "sweetener", "legume", "legumes", "starch"},
    "Paleo": {"grain", "grains", "dairy", "legume", "legumes", "sugar"},
}

TECHNIQUES: Dict[str, tuple[str, str, str | None, int | None]] = {
    # category: (technique, instruction template, target temp, timer seconds)
    "protein": ("sear", "Pat the {name} dry, season, and sear until a deep crust forms.", "220C", 240),
    "meat": ("sear", "Pat the {name} dry, season, and sear until a deep crust forms.", "220C", 240),
    "poultry": ("roast", "Season the {name} and roast until the juices run clear.", "200C", 1500),
    "seafood": ("poach", "Gently poach the {name} in seasoned liquid just below a simmer.", "75C", 360),
    "fish": ("pan-roast", "Score the {name} skin and pan-roast skin-side down until crisp.", "200C", 300),
    "vegetable": ("roast", "Cut the {name} into even pieces and roast until caramelized.", "210C", 1200),
    "produce": ("prep", "Wash, trim, and cut the {name} into uniform pieces.", None, None),
    "fruit": ("macerate", "Slice the {name} and macerate with a pinch of salt and acid.", None, 600),
    "herb": ("chiffonade", "Chiffonade the {name} just before plating.", None, None),
    "dairy": ("emulsify", "Whisk the {name} into a smooth emulsion over gentle heat.", "60C", None),
    "grain": ("simmer", "Toast the {name}, then simmer until just tender.", "95C", 1080),
    "legume": ("braise", "Braise the {name} with aromatics until creamy.", "90C", 1800),
    "spice": ("bloom", "Bloom the {name} in warm fat to release aromatics.", "160C", 45),
}
DEFAULT_TECHNIQUE = ("prep", "Prepare the {name} with care, cutting to a uniform size.", None, None)

DRINKS = {
    "French Modern": DrinkPairing("Chilled Sancerre", "Crisp minerality to lift rich sauces."),
    "Japanese Purity": DrinkPairing("Junmai Sake", "Clean rice sweetness that frames umami."),
    "Indian Molecular": DrinkPairing("Spiced Lassi", "Cooling yogurt against layered spice."),
    "Neo-Italian": DrinkPairing("Chianti Classico", "Bright acidity for tomato and olive oil."),
    "Neo-Nordic": DrinkPairing("Sea Buckthorn Spritz", "Tart botanicals to echo fermentation."),
    "Modern Mexican": DrinkPairing("Hibiscus Agua Fresca", "Floral acidity against charred notes."),
}
DEFAULT_DRINK = DrinkPairing("Sparkling Citrus Water", "A clean palate refresher.")


def _allowed(item: Ingredient, preferences: Preferences) -> bool:
    if item.verification_status == "dismissed":
        return False
    excluded = DIETARY_EXCLUSIONS.get(preferences.dietary, set())
    if item.category.strip().lower() in excluded:
        return False
    allergies = {name_key(a) for a in preferences.allergies}
    return item.key not in allergies


def _ranked(items: Iterable[Ingredient]) -> List[Ingredient]:
    # freshest and most certain first
    return sorted(items, key=lambda i: (-i.vitality_score, -i.confidence, i.name.lower()))


class OfflineSynthesizer:
    """Deterministic local protocol generator. Never raises."""

    def synthesize(self, ingredients: Sequence[Ingredient], preferences: Preferences) -> Protocol:
        usable = _ranked(item for item in ingredients if item.name and _allowed(item, preferences))
        cuisine = preferences.cuisine or "Global Modern"
        steps: List[ProtocolStep] = []
        for item in usable:
            technique, template, temp, timer = TECHNIQUES.get(item.category.strip().lower(), DEFAULT_TECHNIQUE)
            steps.append(ProtocolStep(
                order=len(steps) + 1,
                instruction=template.format(name=item.name.lower()),
                technique=technique,
                target_temp=temp,
                timer_seconds=timer,
            ))
        if usable:
            steps.append(ProtocolStep(
                order=len(steps) + 1,
                instruction="Combine the components, adjust seasoning with salt and acid, and rest briefly.",
                technique="assemble",
            ))
        else:
            steps.append(ProtocolStep(
                order=1,
                instruction="Build a simple aromatic broth from pantry staples and season to taste.",
                technique="simmer",
                target_temp="95C",
                timer_seconds=900,
            ))
        steps.append(ProtocolStep(
            order=len(steps) + 1,
            instruction="Plate with deliberate negative space and finish with fresh herbs.",
            technique="plate",
        ))
        names = [item.name for item in usable]
        if names:
            title = f"{cuisine} {' & '.join(n.title() for n in names[:2])}"
        else:
            title = f"{cuisine} Pantry Broth"
        total_timer = sum(step.timer_seconds or 0 for step in steps)
        mass = sum(item.mass_grams for item in usable)
        logger.info("offline protocol synthesized from %d of %d ingredients", len(usable), len(ingredients))
        return Protocol(
            id=new_id(),
            title=title,
            description=f"Edge-computed {cuisine.lower()} protocol built from the current inventory.",
            complexity="Low" if len(steps) <= 4 else "Medium",
            duration_minutes=max(10, round(total_timer / 60) + 5 * len(steps)),
            instructions=tuple(steps),
            ingredients_used=tuple(names),
            plating_tips=("Use a warm plate", "Keep garnish sparse"),
            drink_pairing=DRINKS.get(cuisine, DEFAULT_DRINK),
            nutrition={
                "calories": round(mass * 1.2, 1),
                "protein": round(mass * 0.08, 1),
                "carbs": round(mass * 0.1, 1),
                "fat": round(mass * 0.05, 1),
            },
            substitution_risk="SAFE",
            is_offline=True,
        )


class LocalPerceiver:
    """Turns on-device classifier labels into an initial ingredient manifest."""

    def __init__(self, default_confidence: float = 0.5, default_mass_grams: float = 100.0) -> None:
        self.default_confidence = default_confidence
        self.default_mass_grams = default_mass_grams

    def detect(self, capture: Capture) -> List[Ingredient]:
        items = []
        for raw in capture.labels:
            name, _, category = str(raw).partition(":")
            name = " ".join(name.split())
            if not name:
                continue
            items.append(Ingredient(
                id=new_id(),
                name=name,
                category=category.strip().lower() or "produce",
                mass_grams=self.default_mass_grams,
                confidence=self.default_confidence,
            ))
        return items


_STATUS_RANK = {"dismissed": 0, "unverified": 1, "confirmed": 2}


def merge_duplicates(items: Iterable[Ingredient]) -> List[Ingredient]:
    """Boundary refinement: one entry per name, masses summed, best confidence kept."""
    merged: Dict[str, Ingredient] = {}
    for item in items:
        current = merged.get(item.key)
        if current is None:
            merged[item.key] = item
            continue
        status = max(current.verification_status, item.verification_status, key=lambda s: _STATUS_RANK.get(s, 1))
        best = current if current.confidence >= item.confidence else item
        merged[item.key] = Ingredient(
            id=current.id,
            name=current.name,
            category=best.category,
            mass_grams=current.mass_grams + item.mass_grams,
            vitality_score=min(current.vitality_score, item.vitality_score),
            confidence=best.confidence,
            verification_status=status,
            scientific_name=current.scientific_name or item.scientific_name,
            expires_in_days=min(current.expires_in_days, item.expires_in_days),
            molecular_profile=current.molecular_profile or item.molecular_profile,
        )
    return list(merged.values())
