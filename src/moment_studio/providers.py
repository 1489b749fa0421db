"""Provider abstractions for LLM, image generation, vision QC and export."""

from __future__ import annotations

import asyncio
import base64
import hashlib
import struct
import zlib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Protocol

import httpx

from .config import settings
from .costs import IMAGE_COST_USD
from .errors import PermanentServiceError, ServiceError, TransientServiceError
from .instrumentation import get_logger
from .retry import RetryPolicy, call_with_retry
from .serialization import dumps
from .sessions.models import SequenceBase, VisionReview

logger = get_logger()

RETRYABLE_STATUS = frozenset({408, 429, 500, 502, 503, 504})


def classify_http_error(exc: httpx.HTTPError, label: str) -> ServiceError:
    """Map an httpx failure onto the transient/permanent taxonomy."""
    if isinstance(exc, httpx.TimeoutException):
        return TransientServiceError(f"{label} timed out: {exc}")
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        body = exc.response.text[:300]
        if status in RETRYABLE_STATUS:
            return TransientServiceError(f"{label} returned {status}: {body}", status_code=status)
        return PermanentServiceError(f"{label} rejected the request ({status}): {body}")
    return TransientServiceError(f"{label} request failed: {exc}")


def _client_kwargs(timeout: float, transport: httpx.AsyncBaseTransport | None) -> dict[str, Any]:
    client_kwargs: dict[str, Any] = {"timeout": timeout}
    if transport is not None:
        client_kwargs["transport"] = transport
    elif settings.httpx_proxies:
        client_kwargs["proxy"] = settings.httpx_proxies
    return client_kwargs


# ============================================================================
# LLM Providers
# ============================================================================


class LLMProvider(Protocol):
    """Protocol for LLM completion providers."""

    name: str

    async def complete(
        self,
        prompt: str,
        *,
        system: str | None = None,
        model: str | None = None,
        temperature: float = 0.2,
    ) -> str:  # pragma: no cover - protocol
        ...


@dataclass(slots=True)
class EchoLLMProvider:
    """Deterministic provider for offline runs and tests.

    Queued ``responses`` are returned in order; once exhausted the prompt is
    echoed back.
    """

    name: str = "mock"
    responses: list[str] = field(default_factory=list)
    prompts: list[str] = field(default_factory=list)

    async def complete(
        self,
        prompt: str,
        *,
        system: str | None = None,
        model: str | None = None,
        temperature: float = 0.2,
    ) -> str:
        self.prompts.append(prompt)
        if self.responses:
            return self.responses.pop(0)
        return f"[{self.name}::temp={temperature}] {prompt.strip()}"


@dataclass(slots=True)
class OpenRouterLLMProvider:
    """LLM provider that forwards requests to OpenRouter."""

    api_key: str
    model: str = settings.planner_model
    base_url: str = "https://openrouter.ai/api/v1"
    timeout: float = settings.planner_timeout_seconds
    transport: httpx.AsyncBaseTransport | None = None
    name: str = "openrouter"

    async def complete(
        self,
        prompt: str,
        *,
        system: str | None = None,
        model: str | None = None,
        temperature: float = 0.2,
    ) -> str:
        messages = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})
        payload = {
            "model": model or self.model,
            "temperature": temperature,
            "messages": messages,
        }
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        try:
            async with httpx.AsyncClient(**_client_kwargs(self.timeout, self.transport)) as client:
                response = await client.post(
                    f"{self.base_url.rstrip('/')}/chat/completions",
                    json=payload,
                    headers=headers,
                )
                response.raise_for_status()
        except httpx.HTTPError as exc:
            raise classify_http_error(exc, "OpenRouter") from exc

        try:
            data = response.json()
            return data["choices"][0]["message"]["content"].strip()
        except (ValueError, KeyError, IndexError, TypeError, AttributeError) as exc:
            raise PermanentServiceError("Malformed OpenRouter response") from exc


def get_llm_provider(mode: str | None = None) -> LLMProvider:
    mode = (mode or settings.llm_provider_mode).lower()
    if mode == "openrouter":
        if not settings.openrouter_api_key:
            logger.warning("LLM_PROVIDER_MODE=openrouter but OPENROUTER_API_KEY missing; falling back to mock provider.")
            return EchoLLMProvider()
        return OpenRouterLLMProvider(api_key=settings.openrouter_api_key)
    return EchoLLMProvider()


# ============================================================================
# Image helpers
# ============================================================================

ASSET_KINDS = ("portrait", "background", "action_frame")

# Expected framing per asset kind.
KIND_ORIENTATION = {
    "portrait": "square",
    "background": "vertical",
    "action_frame": "vertical",
}

KIND_ASPECT_RATIO = {
    "square": "1:1",
    "vertical": "9:16",
}

_PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"


def png_dimensions(data: bytes) -> tuple[int, int] | None:
    """Width and height from a PNG's IHDR chunk, or ``None`` for other formats."""
    if len(data) < 24 or not data.startswith(_PNG_SIGNATURE) or data[12:16] != b"IHDR":
        return None
    width, height = struct.unpack(">II", data[16:24])
    return width, height


def orientation_ok(kind: str, data: bytes) -> bool:
    """True when the image matches the framing expected for ``kind``.

    Non-PNG payloads cannot be inspected and are accepted.
    """
    dims = png_dimensions(data)
    if dims is None:
        return True
    width, height = dims
    expected = KIND_ORIENTATION.get(kind, "vertical")
    if expected == "square":
        return abs(width - height) <= 0.1 * max(width, height)
    return height > width


def _png_chunk(tag: bytes, body: bytes) -> bytes:
    return struct.pack(">I", len(body)) + tag + body + struct.pack(">I", zlib.crc32(tag + body) & 0xFFFFFFFF)


def build_png(width: int, height: int, seed: bytes) -> bytes:
    """Solid-colour RGB PNG tagged with ``seed`` so distinct inputs give distinct bytes."""
    digest = hashlib.sha256(seed).digest()
    pixel = digest[:3]
    row = b"\x00" + pixel * width
    raw = row * height
    header = struct.pack(">IIBBBBB", width, height, 8, 2, 0, 0, 0)
    return b"".join(
        (
            _PNG_SIGNATURE,
            _png_chunk(b"IHDR", header),
            _png_chunk(b"tEXt", b"seed\x00" + digest.hex().encode("ascii")),
            _png_chunk(b"IDAT", zlib.compress(raw)),
            _png_chunk(b"IEND", b""),
        )
    )


# ============================================================================
# Asset generation
# ============================================================================


@dataclass(slots=True)
class GeneratedAsset:
    binary: bytes
    mime_type: str
    cost: float
    kind: str
    provider: str = ""


class AssetGenerator(Protocol):
    """Protocol for image generators. One call yields one asset."""

    name: str

    async def generate(
        self,
        kind: str,
        descriptor: str,
        reference: GeneratedAsset | None = None,
    ) -> GeneratedAsset:  # pragma: no cover - protocol
        ...


@dataclass(slots=True)
class MockAssetGenerator:
    """Deterministic generator producing small PNGs derived from the descriptor."""

    name: str = "mock_images"
    cost_per_image: float = IMAGE_COST_USD
    calls: list[tuple[str, str, bool]] = field(default_factory=list)

    async def generate(
        self,
        kind: str,
        descriptor: str,
        reference: GeneratedAsset | None = None,
    ) -> GeneratedAsset:
        self.calls.append((kind, descriptor, reference is not None))
        seed = f"{kind}|{descriptor}".encode("utf-8")
        if reference is not None:
            seed += hashlib.sha256(reference.binary).digest()
        width, height = (32, 32) if KIND_ORIENTATION.get(kind) == "square" else (18, 32)
        return GeneratedAsset(
            binary=build_png(width, height, seed),
            mime_type="image/png",
            cost=self.cost_per_image,
            kind=kind,
            provider=self.name,
        )


@dataclass(slots=True)
class GeminiImageGenerator:
    """Gemini ``generateContent`` image generation over REST.

    Transient failures are retried with backoff. A response carrying only
    text is a refusal and fails permanently with the model's own words. One
    compliance retry is made when the image comes back in the wrong
    orientation for its kind.
    """

    api_key: str
    model: str = settings.image_model
    base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    timeout: float = settings.generation.call_timeout_seconds
    retry_policy: RetryPolicy = field(default_factory=lambda: RetryPolicy(max_attempts=2, backoff_base=10.0, backoff_factor=2.0))
    compliance_retries: int = 1
    transport: httpx.AsyncBaseTransport | None = None
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    cost_per_image: float = IMAGE_COST_USD
    name: str = "gemini"

    def _build_payload(self, kind: str, prompt: str, reference: GeneratedAsset | None) -> dict[str, Any]:
        parts: list[dict[str, Any]] = []
        if reference is not None:
            parts.append(
                {
                    "inlineData": {
                        "mimeType": reference.mime_type,
                        "data": base64.b64encode(reference.binary).decode("ascii"),
                    }
                }
            )
        parts.append({"text": prompt})
        orientation = KIND_ORIENTATION.get(kind, "vertical")
        return {
            "contents": [{"role": "user", "parts": parts}],
            "generationConfig": {
                "responseModalities": ["TEXT", "IMAGE"],
                "imageConfig": {"aspectRatio": KIND_ASPECT_RATIO[orientation]},
            },
        }

    async def _request(self, payload: dict[str, Any]) -> dict[str, Any]:
        url = f"{self.base_url.rstrip('/')}/models/{self.model}:generateContent"
        headers = {"x-goog-api-key": self.api_key, "Content-Type": "application/json"}
        try:
            async with httpx.AsyncClient(**_client_kwargs(self.timeout, self.transport)) as client:
                response = await client.post(url, json=payload, headers=headers)
                response.raise_for_status()
        except httpx.HTTPError as exc:
            raise classify_http_error(exc, "Gemini") from exc
        try:
            data = response.json()
        except ValueError as exc:
            raise PermanentServiceError(f"Gemini returned a non-JSON body: {response.text[:200]}") from exc
        if not isinstance(data, dict):
            raise PermanentServiceError("Gemini returned an unexpected JSON payload")
        return data

    @staticmethod
    def _extract(data: dict[str, Any]) -> tuple[bytes, str]:
        try:
            candidates = data.get("candidates") or []
            parts = ((candidates[0] or {}).get("content") or {}).get("parts") or [] if candidates else []
            for part in parts:
                inline = part.get("inlineData") or part.get("inline_data")
                if inline and inline.get("data"):
                    binary = base64.b64decode(inline["data"], validate=True)
                    return binary, inline.get("mimeType") or inline.get("mime_type") or "image/png"
            reason = next((part["text"] for part in parts if part.get("text")), None)
        except (ValueError, TypeError, AttributeError, IndexError) as exc:
            raise PermanentServiceError(f"Malformed Gemini response: {exc}") from exc
        if reason is None:
            feedback = data.get("promptFeedback") or {}
            reason = feedback.get("blockReason") or "No image returned"
        raise PermanentServiceError(f"Image generation failed: {reason}")

    async def generate(
        self,
        kind: str,
        descriptor: str,
        reference: GeneratedAsset | None = None,
    ) -> GeneratedAsset:
        prompt = descriptor
        for compliance_attempt in range(self.compliance_retries + 1):
            payload = self._build_payload(kind, prompt, reference)
            data = await call_with_retry(
                lambda: self._request(payload),
                self.retry_policy,
                label=f"gemini:{kind}",
                sleep=self.sleep,
            )
            binary, mime_type = self._extract(data)
            if orientation_ok(kind, binary):
                return GeneratedAsset(
                    binary=binary,
                    mime_type=mime_type,
                    cost=self.cost_per_image * (compliance_attempt + 1),
                    kind=kind,
                    provider=self.name,
                )
            logger.warning("Gemini returned a mis-oriented %s (attempt %s)", kind, compliance_attempt + 1)
            orientation = KIND_ORIENTATION.get(kind, "vertical")
            prompt = (
                f"{descriptor}\n\nIMPORTANT: the image MUST use a {KIND_ASPECT_RATIO[orientation]} "
                f"{'square' if orientation == 'square' else 'vertical portrait'} composition."
            )
        raise PermanentServiceError(
            f"Image generation failed: {kind} still had the wrong orientation after "
            f"{self.compliance_retries} compliance retr{'y' if self.compliance_retries == 1 else 'ies'}"
        )


def get_asset_generator(mode: str | None = None) -> AssetGenerator:
    mode = (mode or settings.image_provider_mode).lower()
    if mode == "gemini":
        if not settings.google_ai_api_key:
            logger.warning("IMAGE_PROVIDER_MODE=gemini but GOOGLE_AI_API_KEY missing; using mock generator.")
            return MockAssetGenerator()
        return GeminiImageGenerator(api_key=settings.google_ai_api_key)
    return MockAssetGenerator()


# ============================================================================
# Vision QC
# ============================================================================


class VisionQC(Protocol):
    """Advisory review of a group of frames."""

    name: str

    async def review(
        self, assets: list[GeneratedAsset], kind: str, descriptor: str
    ) -> VisionReview:  # pragma: no cover - protocol
        ...


@dataclass(slots=True)
class PassthroughVisionQC:
    name: str = "passthrough"

    async def review(self, assets: list[GeneratedAsset], kind: str, descriptor: str) -> VisionReview:
        return VisionReview(coherent=True)


# ============================================================================
# Export
# ============================================================================


@dataclass(slots=True)
class ExportResult:
    files: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)


class ExportService(Protocol):
    name: str

    async def export(
        self, unit: SequenceBase, output_dir: Path, options: dict[str, Any]
    ) -> ExportResult:  # pragma: no cover - protocol
        ...


@dataclass(slots=True)
class ManifestExportService:
    """Writes a render manifest describing the unit's timing and asset files."""

    name: str = "manifest"

    async def export(self, unit: SequenceBase, output_dir: Path, options: dict[str, Any]) -> ExportResult:
        missing = [ref.path for ref in unit.assets.values() if not (output_dir / ref.path).exists()]
        if missing:
            raise PermanentServiceError(f"Export of sequence {unit.order} is missing assets: {', '.join(missing)}")
        manifest = {
            "order": unit.order,
            "type": unit.type,  # type: ignore[attr-defined]
            "durationSec": unit.duration_sec,
            "startOffsetSec": unit.start_offset_sec,
            "assets": {role: ref.path for role, ref in sorted(unit.assets.items())},
            "options": options,
        }
        relative_dir = options.get("relative_dir", "")
        target = output_dir / relative_dir / "render.json"
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(dumps(manifest, indent=2), encoding="utf-8")
        relative = str(target.relative_to(output_dir))
        return ExportResult(files=[relative], metadata={"format": "manifest"})


def get_export_service() -> ExportService:
    return ManifestExportService()


def get_vision_qc() -> VisionQC:
    return PassthroughVisionQC()
