"""Native Gemini API client for Culinary Lens."""
from __future__ import annotations

import base64
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

logger = logging.getLogger(__name__)


@dataclass
class GeminiImage:
    data: bytes
    mime_type: str = "image/png"


@dataclass
class GeminiResult:
    """Result from a Gemini API call."""
    text: str = ""
    ok: bool = True
    error: str | None = None
    status: int | None = None
    duration_ms: float = 0.0
    usage: Dict[str, Any] | None = None
    images: List[GeminiImage] = field(default_factory=list)
    grounding_sources: List[str] = field(default_factory=list)


class GeminiClient:
    """Async Gemini REST client using httpx."""

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str = "https://generativelanguage.googleapis.com/v1beta",
        timeout: float = 90.0,
    ) -> None:
        self.api_key = api_key or ""
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    @property
    def available(self) -> bool:
        return bool(self.api_key)

    @staticmethod
    def text_part(text: str) -> Dict[str, Any]:
        return {"text": text}

    @staticmethod
    def image_part(data: bytes, mime_type: str = "image/jpeg") -> Dict[str, Any]:
        return {"inline_data": {"mime_type": mime_type, "data": base64.b64encode(data).decode("utf-8")}}

    async def generate_content(
        self,
        model: str,
        parts: List[Dict[str, Any]],
        system: str | None = None,
        response_mime_type: str | None = None,
        response_schema: Dict[str, Any] | None = None,
        response_modalities: Optional[List[str]] = None,
        image_config: Dict[str, Any] | None = None,
        grounding: bool = False,
        temperature: float | None = None,
    ) -> GeminiResult:
        if not self.available:
            return GeminiResult(ok=False, error="GEMINI_API_KEY not set")

        model_path = model if model.startswith("models/") else f"models/{model}"
        url = f"{self.base_url}/{model_path}:generateContent"
        headers = {"x-goog-api-key": self.api_key, "Content-Type": "application/json"}

        body: Dict[str, Any] = {"contents": [{"role": "user", "parts": parts}]}
        generation_cfg: Dict[str, Any] = {}
        if temperature is not None:
            generation_cfg["temperature"] = temperature
        if response_mime_type:
            generation_cfg["responseMimeType"] = response_mime_type
        if response_schema:
            generation_cfg["responseSchema"] = response_schema
        if response_modalities:
            generation_cfg["responseModalities"] = response_modalities
        if image_config:
            generation_cfg["imageConfig"] = image_config
        if generation_cfg:
            body["generationConfig"] = generation_cfg
        if system:
            body["systemInstruction"] = {"parts": [{"text": system}]}
        if grounding:
            body["tools"] = [{"googleSearch": {}}]

        start = time.perf_counter()
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(url, json=body, headers=headers)

            duration_ms = (time.perf_counter() - start) * 1000

            if response.status_code != 200:
                error_text = response.text[:500]
                return GeminiResult(
                    ok=False,
                    error=f"HTTP {response.status_code}: {error_text}",
                    status=response.status_code,
                    duration_ms=duration_ms,
                )

            data = response.json()
            candidates = data.get("candidates", [])
            if not candidates:
                return GeminiResult(
                    ok=False,
                    error="No candidates in response",
                    duration_ms=duration_ms,
                )

            first = candidates[0]
            parts_out = (first.get("content") or {}).get("parts") or []
            text = "".join(p.get("text", "") for p in parts_out if isinstance(p, dict))
            images = []
            for part in parts_out:
                inline = part.get("inline_data") or part.get("inlineData") or {}
                payload = inline.get("data")
                if payload:
                    mime = inline.get("mime_type") or inline.get("mimeType") or "image/png"
                    images.append(GeminiImage(data=base64.b64decode(payload), mime_type=mime))

            chunks = (first.get("groundingMetadata") or {}).get("groundingChunks") or []
            sources = [c.get("web", {}).get("uri") for c in chunks if isinstance(c, dict)]

            usage_meta = data.get("usageMetadata", {})
            usage = {
                "prompt_tokens": usage_meta.get("promptTokenCount", 0),
                "completion_tokens": usage_meta.get("candidatesTokenCount", 0),
                "total_tokens": usage_meta.get("totalTokenCount", 0),
            }

            return GeminiResult(
                text=text,
                ok=True,
                status=response.status_code,
                duration_ms=duration_ms,
                usage=usage,
                images=images,
                grounding_sources=[uri for uri in sources if uri],
            )

        except httpx.TimeoutException:
            duration_ms = (time.perf_counter() - start) * 1000
            return GeminiResult(
                ok=False,
                error=f"Gemini API timeout after {self.timeout}s",
                duration_ms=duration_ms,
            )
        except httpx.HTTPError as e:
            duration_ms = (time.perf_counter() - start) * 1000
            return GeminiResult(
                ok=False,
                error=f"connection error: {e}",
                duration_ms=duration_ms,
            )
        except ValueError as e:
            duration_ms = (time.perf_counter() - start) * 1000
            return GeminiResult(
                ok=False,
                error=f"malformed response: {e}",
                duration_ms=duration_ms,
            )
