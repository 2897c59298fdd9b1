"""Staged perception and synthesis pipelines."""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Dict, List, Optional, Sequence
import logging

from culinarylens.audit import AuditLog
from culinarylens.config import Config
from culinarylens.fusion import FusionBreakdown, FusionParams, fusion_breakdown
from culinarylens.health import CredentialProvider, HealthMonitor, NetworkProbe
from culinarylens.offline import (
    FAILURE_BLUEPRINT,
    FALLBACK_VISION,
    OFFLINE_BLUEPRINT,
    SOUS_CHEF_INTERRUPTED,
    SOUS_CHEF_OFFLINE,
    TECHNIQUE_INTERRUPTED,
    TECHNIQUE_OFFLINE,
    LocalPerceiver,
    OfflineSynthesizer,
    merge_duplicates,
)
from culinarylens.remote import GeminiIntelligence, RemoteIntelligence
from culinarylens.resilience import AssetCaller, CriticalCaller, Sleep
from culinarylens.schema import (
    Capture,
    DescriptiveBlueprint,
    Hypothesis,
    Ingredient,
    Preferences,
    Protocol,
    VisionAnalysis,
    VisualArtifact,
    name_key,
)
from culinarylens.session import Session
from culinarylens.stages import (
    Degraded,
    Ok,
    PipelineError,
    ProgressEvent,
    ProgressListener,
    ProgressTracker,
    StageResult,
    StageSpec,
)
from culinarylens.store import RunStore

logger = logging.getLogger(__name__)

PERCEPTION_STAGES = (
    StageSpec("detect", "Detecting materials", 15),
    StageSpec("segment", "Refining boundaries", 30),
    StageSpec("audit", "Auditing hidden items", 50),
    StageSpec("rescan", "Targeted rescan", 65),
    StageSpec("fuse", "Ensemble refinement", 85),
    StageSpec("vision", "Dish analysis", 95),
)

SYNTHESIS_STAGES = (
    StageSpec("manifest", "Aligning manifest", 40),
    StageSpec("plating", "Rendering plating", 60),
    StageSpec("sommelier", "Sommelier pairing", 75),
    StageSpec("blueprint", "Drafting schematic", 90),
    StageSpec("procurement", "Procurement list", 95),
)

UNREACHABLE = "remote service unreachable"


@dataclass
class PerceptionReport:
    ingredients: List[Ingredient]
    hypotheses: List[Hypothesis]
    vision: Optional[VisionAnalysis]
    stages: List[Dict[str, Any]]
    events: List[ProgressEvent] = field(default_factory=list)
    run_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "ingredients": [item.to_dict() for item in self.ingredients],
            "hypotheses": [h.to_dict() for h in self.hypotheses],
            "vision": self.vision.to_dict() if self.vision else None,
            "stages": self.stages,
            "events": [event.to_dict() for event in self.events],
        }


@dataclass
class SynthesisReport:
    protocol: Protocol
    visuals: Dict[str, VisualArtifact]
    breakdown: FusionBreakdown
    shopping_list: List[str]
    stages: List[Dict[str, Any]]
    events: List[ProgressEvent] = field(default_factory=list)
    run_id: Optional[str] = None

    @property
    def confidence(self) -> int:
        return self.breakdown.score

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "protocol": self.protocol.to_dict(),
            "visuals": {kind: artifact.to_dict() for kind, artifact in self.visuals.items()},
            "confidence": self.confidence,
            "breakdown": self.breakdown.to_dict(),
            "shopping_list": self.shopping_list,
            "stages": self.stages,
            "events": [event.to_dict() for event in self.events],
        }


class Orchestrator:
    """Runs the staged pipelines for one session.

    Only the manifest stage goes through the critical caller. Every other
    remote call uses the asset caller, so none of them can change the
    session's reachability.
    """

    def __init__(
        self,
        session: Session,
        health: HealthMonitor,
        remote: RemoteIntelligence,
        critical: CriticalCaller,
        asset: AssetCaller,
        offline: Optional[OfflineSynthesizer] = None,
        perceiver: Optional[LocalPerceiver] = None,
        fusion_params: FusionParams = FusionParams(),
        store: Optional[RunStore] = None,
        audit: Optional[AuditLog] = None,
        credentials: Optional[CredentialProvider] = None,
        vision_analysis: bool = True,
        high_fidelity_visuals: bool = True,
    ) -> None:
        if critical.session is not session:
            raise ValueError("critical caller must own the orchestrator's session")
        self.session = session
        self.health = health
        self.remote = remote
        self.critical = critical
        self.asset = asset
        self.offline = offline or OfflineSynthesizer()
        self.perceiver = perceiver or LocalPerceiver()
        self.fusion_params = fusion_params
        self.store = store
        self.audit = audit
        self.credentials = credentials
        self.vision_analysis = vision_analysis
        self.high_fidelity_visuals = high_fidelity_visuals

    @classmethod
    def from_config(
        cls,
        config: Config,
        session: Optional[Session] = None,
        remote: Optional[RemoteIntelligence] = None,
        sleep: Optional[Sleep] = None,
    ) -> "Orchestrator":
        session = session or Session()
        gemini = config.gemini
        health_cfg = config.health
        credentials = CredentialProvider(
            env_var=gemini.get("api_key_env", "GEMINI_API_KEY"),
            config_key=gemini.get("api_key"),
            store_path=config.data_dir / "credentials.json",
        )
        network = NetworkProbe(
            url=health_cfg.get("probe_url", "https://generativelanguage.googleapis.com"),
            timeout=float(health_cfg.get("probe_timeout_seconds", 2.0)),
            ttl_seconds=float(health_cfg.get("probe_ttl_seconds", 15.0)),
            force_offline=config.force_offline,
        )
        perception = config.perception
        return cls(
            session=session,
            health=HealthMonitor(session=session, network=network, credentials=credentials),
            remote=remote or GeminiIntelligence(credentials, gemini),
            critical=CriticalCaller(session, config.critical_policy(), sleep=sleep),
            asset=AssetCaller(config.asset_policy(), sleep=sleep),
            perceiver=LocalPerceiver(
                default_confidence=float(perception.get("default_confidence", 0.5)),
                default_mass_grams=float(perception.get("default_mass_grams", 100)),
            ),
            fusion_params=config.fusion_params(),
            store=RunStore(config.data_dir),
            audit=AuditLog(config.data_dir / "audit.jsonl", session_id=session.id),
            credentials=credentials,
            vision_analysis=bool(perception.get("vision_analysis", True)),
            high_fidelity_visuals=bool(config.synthesis.get("high_fidelity_visuals", True)),
        )

    # -- session controls -------------------------------------------------

    def is_reachable(self) -> bool:
        """Cached read; never does I/O."""
        return self.health.is_reachable()

    async def _reachable(self) -> bool:
        await self.health.refresh()
        return self.health.is_reachable()

    async def check_health(self) -> Dict[str, Any]:
        await self.health.refresh()
        return self.health.snapshot()

    def reset_failover(self, reason: str = "manual reset") -> bool:
        changed = self.session.reset(reason, source="reset")
        if changed:
            self._audit("session.online", {"reason": reason})
        return changed

    async def validate_credentials(self, key: Optional[str] = None) -> bool:
        """Ping the service with ``key`` (or the current key).

        A successful ping stores an explicitly given key and clears the
        failover latch. The ping itself goes over the asset path.
        """
        candidate = key or (self.credentials() if self.credentials else None)
        if not candidate:
            return False
        # check the network again rather than trust a cached "down"
        invalidate = getattr(self.health.network, "invalidate", None)
        if invalidate is not None:
            invalidate()
        await self.health.refresh()
        try:
            network_up = bool(self.health.network())
        except Exception:
            network_up = False
        if not network_up:
            return False
        try:
            valid = await self.asset.call(lambda: self.remote.ping(candidate), name="credential_validation")
        except Exception as exc:
            logger.warning("credential validation failed: %s", exc)
            return False
        if not valid:
            return False
        if key and self.credentials is not None:
            try:
                self.credentials.store(key)
            except (OSError, ValueError) as exc:
                logger.warning("could not store validated key: %s", exc)
        if self.session.reset("credential validated", source="validate"):
            self._audit("session.online", {"reason": "credential validated"})
        return True

    # -- perception -------------------------------------------------------

    async def run_perception(
        self,
        capture: Capture,
        listener: Optional[ProgressListener] = None,
    ) -> PerceptionReport:
        run_id = self._create_run("perception", {"labels": list(capture.labels), "has_image": bool(capture.image)})
        tracker = ProgressTracker(PERCEPTION_STAGES, listener=self._listener(listener, run_id))

        detected = await self._stage(tracker, "detect", self._detect(capture))
        segmented = await self._stage(tracker, "segment", self._segment(detected))
        hypotheses = await self._stage(tracker, "audit", self._audit_hypotheses(segmented))
        recovered = await self._stage(tracker, "rescan", self._rescan(capture, hypotheses))
        known = {item.key for item in segmented}
        combined = segmented + [item for item in recovered if item.key not in known]
        ingredients = await self._stage(tracker, "fuse", self._fuse(combined))
        vision = await self._stage(tracker, "vision", self._vision(capture))
        tracker.done("Manifest ready")

        report = PerceptionReport(
            ingredients=ingredients,
            hypotheses=hypotheses,
            vision=vision,
            stages=tracker.summary(),
            events=list(tracker.events),
            run_id=run_id,
        )
        self._finalize_run(run_id, report.to_dict())
        return report

    async def _detect(self, capture: Capture) -> StageResult[List[Ingredient]]:
        items = self.perceiver.detect(capture)
        if not items:
            return Degraded([], "no labels in capture")
        return Ok(items)

    async def _segment(self, items: List[Ingredient]) -> StageResult[List[Ingredient]]:
        return Ok(merge_duplicates(items))

    async def _audit_hypotheses(self, items: List[Ingredient]) -> StageResult[List[Hypothesis]]:
        if not await self._reachable():
            return Degraded([], UNREACHABLE)
        try:
            hypotheses = await self.asset.call(lambda: self.remote.hypothesize(items), name="hypothesis_audit")
        except Exception as exc:
            return Degraded([], f"hypothesis audit failed: {exc}")
        return Ok(list(hypotheses))

    async def _rescan(self, capture: Capture, hypotheses: List[Hypothesis]) -> StageResult[List[Ingredient]]:
        if not hypotheses:
            return Ok([])
        if not await self._reachable():
            return Degraded([], UNREACHABLE)
        try:
            recovered = await self.asset.call(lambda: self.remote.rescan(capture, hypotheses), name="targeted_rescan")
        except Exception as exc:
            return Degraded([], f"targeted rescan failed: {exc}")
        return Ok(list(recovered))

    async def _fuse(self, items: List[Ingredient]) -> StageResult[List[Ingredient]]:
        if not items:
            return Ok([])
        if not await self._reachable():
            return Degraded(items, UNREACHABLE)
        try:
            refined = await self.asset.call(lambda: self.remote.refine(items), name="ensemble_refinement")
        except Exception as exc:
            return Degraded(items, f"ensemble refinement failed: {exc}")
        if not refined:
            return Degraded(items, "ensemble refinement returned nothing")
        return Ok(merge_duplicates(refined))

    async def _vision(self, capture: Capture) -> StageResult[Optional[VisionAnalysis]]:
        if not self.vision_analysis or not capture.image:
            return Ok(None)
        if not await self._reachable():
            return Degraded(FALLBACK_VISION, UNREACHABLE)
        try:
            analysis = await self.asset.call(lambda: self.remote.analyze_dish(capture), name="vision_analysis")
        except Exception as exc:
            return Degraded(FALLBACK_VISION, f"vision analysis failed: {exc}")
        return Ok(analysis)

    # -- synthesis --------------------------------------------------------

    async def run_synthesis(
        self,
        ingredients: Sequence[Ingredient],
        preferences: Preferences,
        listener: Optional[ProgressListener] = None,
    ) -> SynthesisReport:
        inventory = list(ingredients)
        run_id = self._create_run("synthesis", {
            "ingredients": [item.name for item in inventory],
            "preferences": preferences.to_dict(),
        })
        tracker = ProgressTracker(SYNTHESIS_STAGES, listener=self._listener(listener, run_id))
        try:
            protocol = await self._manifest_alignment(tracker, inventory, preferences)
        except PipelineError as exc:
            if self.store and run_id:
                self.store.fail_run(run_id, str(exc))
            raise

        high_fidelity = self.high_fidelity_visuals and preferences.high_fidelity_visuals
        visuals = {
            "plating": await self._stage(tracker, "plating", self._plating(protocol, high_fidelity)),
            "drink": await self._stage(tracker, "sommelier", self._sommelier(protocol, high_fidelity)),
            "schematic": await self._stage(tracker, "blueprint", self._schematic(protocol, high_fidelity)),
        }
        shopping_list = await self._stage(tracker, "procurement", self._procurement(inventory, protocol))
        breakdown = fusion_breakdown(inventory, protocol, preferences.confidence_memory, self.fusion_params)
        tracker.done("Protocol ready")

        report = SynthesisReport(
            protocol=protocol,
            visuals=visuals,
            breakdown=breakdown,
            shopping_list=shopping_list,
            stages=tracker.summary(),
            events=list(tracker.events),
            run_id=run_id,
        )
        self._finalize_run(run_id, report.to_dict())
        return report

    async def _manifest_alignment(
        self,
        tracker: ProgressTracker,
        ingredients: List[Ingredient],
        preferences: Preferences,
    ) -> Protocol:
        tracker.start("manifest")
        if not await self._reachable():
            protocol = self._offline_protocol(ingredients, preferences)
            tracker.finish("manifest", Degraded(protocol, UNREACHABLE), label="Edge synthesis complete")
            return protocol
        try:
            protocol = await self.critical.call(
                lambda: self.remote.synthesize(ingredients, preferences),
                name="manifest_alignment",
            )
        except Exception as exc:
            tracker.fail("manifest", str(exc))
            if self.session.latched:
                self._audit("session.offline", {"reason": str(exc), "stage": "manifest"})
            protocol = self._offline_protocol(ingredients, preferences)
            tracker.finish("manifest", Degraded(protocol, f"offline fallback: {exc}"), label="Edge synthesis complete")
            return protocol
        if protocol.is_offline:
            protocol = replace(protocol, is_offline=False)
        tracker.finish("manifest", Ok(protocol))
        return protocol

    def _offline_protocol(self, ingredients: List[Ingredient], preferences: Preferences) -> Protocol:
        try:
            protocol = self.offline.synthesize(ingredients, preferences)
        except Exception as exc:
            raise PipelineError(f"offline synthesis failed: {exc}") from exc
        return protocol if protocol.is_offline else replace(protocol, is_offline=True)

    async def _plating(self, protocol: Protocol, high_fidelity: bool) -> StageResult[VisualArtifact]:
        if not high_fidelity:
            return Degraded(VisualArtifact("plating", blueprint=OFFLINE_BLUEPRINT), "high-fidelity visuals disabled")
        if not await self._reachable():
            return Degraded(VisualArtifact("plating", blueprint=OFFLINE_BLUEPRINT), UNREACHABLE)
        try:
            image = await self.asset.call(
                lambda: self.remote.generate_asset("plating", protocol.title),
                name="plating_asset",
            )
            reason = "plating image empty"
        except Exception as exc:
            image = None
            reason = f"plating image failed: {exc}"
        if image is not None and image.data:
            return Ok(VisualArtifact("plating", image=image.data, mime_type=image.mime_type))
        blueprint = await self._describe(protocol)
        return Degraded(VisualArtifact("plating", blueprint=blueprint), reason)

    async def _describe(self, protocol: Protocol) -> DescriptiveBlueprint:
        try:
            return await self.asset.call(
                lambda: self.remote.describe_blueprint(protocol.title, protocol.description),
                name="visual_blueprint",
            )
        except Exception as exc:
            logger.warning("visual blueprint failed, using static blueprint: %s", exc)
            return FAILURE_BLUEPRINT

    async def _image_only(self, kind: str, subject: str, high_fidelity: bool) -> StageResult[VisualArtifact]:
        empty = VisualArtifact(kind)
        if not high_fidelity:
            return Degraded(empty, "high-fidelity visuals disabled")
        if not await self._reachable():
            return Degraded(empty, UNREACHABLE)
        try:
            image = await self.asset.call(lambda: self.remote.generate_asset(kind, subject), name=f"{kind}_asset")
        except Exception as exc:
            return Degraded(empty, f"{kind} image failed: {exc}")
        if image is None or not image.data:
            return Degraded(empty, f"{kind} image empty")
        return Ok(VisualArtifact(kind, image=image.data, mime_type=image.mime_type))

    async def _sommelier(self, protocol: Protocol, high_fidelity: bool) -> StageResult[VisualArtifact]:
        if protocol.drink_pairing is None:
            return Ok(VisualArtifact("drink"))
        return await self._image_only("drink", protocol.drink_pairing.name, high_fidelity)

    async def _schematic(self, protocol: Protocol, high_fidelity: bool) -> StageResult[VisualArtifact]:
        return await self._image_only("schematic", protocol.title, high_fidelity)

    async def _procurement(self, inventory: List[Ingredient], protocol: Protocol) -> StageResult[List[str]]:
        have = {item.key for item in inventory if item.verification_status != "dismissed"}
        needed: List[str] = []
        seen = set()
        for name in list(protocol.ingredients_used) + list(protocol.missing_ingredients):
            key = name_key(name)
            if not key or key in have or key in seen:
                continue
            seen.add(key)
            needed.append(name)
        return Ok(needed)

    # -- auxiliary assists ------------------------------------------------

    def verify_ingredient(
        self,
        ingredient: Ingredient,
        status: str,
        preferences: Preferences,
    ) -> tuple[Ingredient, Preferences]:
        """Apply a user verdict; confirmations feed the confidence memory used by fusion."""
        updated = ingredient.with_status(status)
        if status == "confirmed":
            preferences = preferences.record_confirmation(ingredient.name)
        self._audit("ingredient.verified", {"name": ingredient.name, "status": status})
        return updated, preferences

    async def ingredient_visual(self, ingredient: Ingredient) -> VisualArtifact:
        result = await self._image_only("ingredient", ingredient.name, True)
        if result.degraded:
            logger.warning("ingredient visual for %s unavailable: %s", ingredient.name, result.reason)
        return result.value

    async def verify_technique(self, capture: Capture, instruction: str) -> Dict[str, Any]:
        if not await self._reachable():
            return dict(TECHNIQUE_OFFLINE)
        try:
            return await self.asset.call(
                lambda: self.remote.verify_technique(capture, instruction),
                name="technique_verification",
            )
        except Exception as exc:
            logger.warning("technique verification failed: %s", exc)
            return dict(TECHNIQUE_INTERRUPTED)

    async def ask_sous_chef(self, question: str, protocol: Protocol, step_index: int) -> str:
        if not await self._reachable():
            return SOUS_CHEF_OFFLINE
        try:
            return await self.asset.call(
                lambda: self.remote.advise(question, protocol, step_index),
                name="sous_chef",
            )
        except Exception as exc:
            logger.warning("sous-chef request failed: %s", exc)
            return SOUS_CHEF_INTERRUPTED

    # -- plumbing ---------------------------------------------------------

    async def _stage(self, tracker: ProgressTracker, stage_id: str, work: Awaitable[StageResult[Any]]) -> Any:
        tracker.start(stage_id)
        result = await work
        tracker.finish(stage_id, result)
        if result.degraded:
            self._audit("stage.degraded", {"stage": stage_id, "reason": result.reason})
        return result.value

    def _listener(self, listener: Optional[ProgressListener], run_id: Optional[str]) -> ProgressListener:
        def _forward(event: ProgressEvent) -> None:
            if self.store and run_id:
                self.store.append_event(run_id, event.to_dict())
            if listener is not None:
                listener(event)
        return _forward

    def _create_run(self, kind: str, meta: Dict[str, Any]) -> Optional[str]:
        if not self.store:
            return None
        meta = {"session_id": self.session.id, **meta}
        try:
            return self.store.create_run(kind, meta)
        except OSError as exc:
            logger.warning("run store unavailable: %s", exc)
            return None

    def _finalize_run(self, run_id: Optional[str], result: Dict[str, Any]) -> None:
        if not self.store or not run_id:
            return
        try:
            self.store.finalize_run(run_id, result)
        except OSError as exc:
            logger.warning("could not finalize run %s: %s", run_id, exc)

    def _audit(self, event: str, data: Dict[str, Any]) -> None:
        if not self.audit:
            return
        try:
            self.audit.log(event, data)
        except OSError as exc:
            logger.warning("audit log write failed: %s", exc)
