"""
Gamma connector: AI generated presentations, documents and social posts.

``GammaClient`` wraps the public Gamma REST API (v0.2). Upstream and
network errors are folded into a generation record with
``status="error"`` or ``status="timeout"`` rather than raised, so a
generation attempt is always recorded as an artifact.
"""

from typing import Any, Dict, List, Optional
from urllib.parse import quote
import json
import logging

import httpx

from .models import ArtifactCreateInput, Result
from .schemas import (
    CARD_DIMENSIONS_BY_FORMAT,
    MAX_NUM_CARDS,
    GammaGenerateArgs,
    GammaGetStatusArgs,
    GammaGetThemesArgs,
)
from .tools import ToolContext, ToolSpec

logger = logging.getLogger(__name__)

GAMMA_API = "https://public-api.gamma.app"

# Request defaults applied when the caller leaves an option unset
DEFAULT_TEXT_MODE = "generate"
DEFAULT_FORMAT = "presentation"
DEFAULT_CARD_SPLIT = "auto"
DEFAULT_NUM_CARDS = 10
DEFAULT_TEXT_AMOUNT = "medium"
DEFAULT_IMAGE_SOURCE = "aiGenerated"

FAILED_STATUSES = ("error", "timeout")


class GammaClient:
    def __init__(self, api_key: str, client: httpx.Client):
        self._client = client
        self._headers = {"X-API-KEY": api_key, "Content-Type": "application/json"}

    def build_request(self, args: GammaGenerateArgs) -> Dict[str, Any]:
        """
        Translate validated arguments into the camelCase request body.

        Unset options fall back to the module defaults; ``numCards`` is
        only sent for automatic card splitting unless given explicitly.
        """
        body = args.to_api()
        body.setdefault("textMode", DEFAULT_TEXT_MODE)
        body.setdefault("format", DEFAULT_FORMAT)
        body.setdefault("cardSplit", DEFAULT_CARD_SPLIT)

        if args.num_cards is None and body["cardSplit"] == "auto":
            body["numCards"] = min(MAX_NUM_CARDS, DEFAULT_NUM_CARDS)

        text_options = body.get("textOptions") or {}
        text_options.setdefault("amount", DEFAULT_TEXT_AMOUNT)
        body["textOptions"] = text_options

        image_options = body.get("imageOptions") or {}
        image_options.setdefault("source", DEFAULT_IMAGE_SOURCE)
        body["imageOptions"] = image_options

        dims = (body.get("cardOptions") or {}).get("dimensions")
        if dims and dims not in CARD_DIMENSIONS_BY_FORMAT[body["format"]]:
            body.pop("cardOptions")
        if not body.get("cardOptions"):
            body.pop("cardOptions", None)
        if not body.get("sharingOptions"):
            body.pop("sharingOptions", None)
        return body

    def _error(self, exc: httpx.HTTPError, generation_id: str = "") -> Dict[str, Any]:
        if isinstance(exc, httpx.HTTPStatusError):
            resp = exc.response
            try:
                payload = resp.json()
            except ValueError:
                payload = {}
            message = (payload.get("message") if isinstance(payload, dict) else None) or (
                resp.reason_phrase or "Unknown error"
            )
            return {
                "generation_id": generation_id,
                "status": "error",
                "error": f"API Error {resp.status_code}: {message}",
            }
        if isinstance(exc, httpx.TimeoutException):
            return {
                "generation_id": generation_id,
                "status": "timeout",
                "error": "Request timed out while waiting for Gamma API response",
            }
        return {
            "generation_id": generation_id,
            "status": "error",
            "error": f"Network error: {exc}",
        }

    @staticmethod
    def _generation(payload: Dict[str, Any], **overrides: Any) -> Dict[str, Any]:
        record = {
            "generation_id": payload.get("generationId") or payload.get("id"),
            "status": payload.get("status"),
            "url": payload.get("url") or payload.get("gammaUrl"),
            "gamma_url": payload.get("gammaUrl"),
            "message": payload.get("message"),
            "credits": payload.get("credits"),
        }
        record.update(overrides)
        return {k: v for k, v in record.items() if v is not None}

    def generate(self, body: Dict[str, Any]) -> Dict[str, Any]:
        try:
            resp = self._client.post(
                f"{GAMMA_API}/v0.2/generations", headers=self._headers, json=body
            )
            resp.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning("Gamma generation request failed: %s", e)
            return self._error(e)
        payload = resp.json()
        return self._generation(
            payload,
            status=payload.get("status") or "submitted",
            message=payload.get("message") or "Generation request submitted successfully",
        )

    def get_status(self, generation_id: str) -> Dict[str, Any]:
        try:
            resp = self._client.get(
                f"{GAMMA_API}/v0.2/generations/{quote(generation_id, safe='')}",
                headers=self._headers,
            )
            resp.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning("Gamma status lookup for %s failed: %s", generation_id, e)
            return self._error(e, generation_id)
        return self._generation(resp.json(), generation_id=generation_id)

    def get_themes(self) -> List[Dict[str, Any]]:
        try:
            resp = self._client.get(f"{GAMMA_API}/v0.2/themes", headers=self._headers)
            resp.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning("Gamma theme lookup failed: %s", e)
            return []
        payload = resp.json()
        themes = payload.get("themes") if isinstance(payload, dict) else None
        return themes or []


def _missing_key() -> Result:
    return Result(success=False, reason="GAMMA_API_KEY is not configured")


def _outcome(record: Dict[str, Any], data: List[Dict[str, Any]]) -> Result:
    if record.get("status") in FAILED_STATUSES:
        return Result(success=False, reason=record.get("error"), data=data)
    return Result(success=True, data=data)


def gamma_generate(args: GammaGenerateArgs, ctx: ToolContext) -> Result:
    """Submit a generation and record the request and response as an artifact."""
    api_key = ctx.config.gamma_api_key
    if not api_key:
        return _missing_key()

    with ctx.http_client() as client:
        gamma = GammaClient(api_key, client)
        body = gamma.build_request(args)
        record = gamma.generate(body)

    artifact = ctx.store.create_artifact(
        ArtifactCreateInput(
            type="gamma_generation",
            name=f"Gamma Generation: {args.input_text[:30]}...",
            source="gamma",
            content_type="application/json",
            content_text=json.dumps(record, indent=2),
            metadata={"params": body, "result": record},
        )
    )
    return _outcome(record, [dict(record, artifact_id=artifact.id)])


def gamma_get_status(args: GammaGetStatusArgs, ctx: ToolContext) -> Result:
    api_key = ctx.config.gamma_api_key
    if not api_key:
        return _missing_key()
    with ctx.http_client() as client:
        record = GammaClient(api_key, client).get_status(args.generation_id)
    return _outcome(record, [record])


def gamma_get_themes(args: GammaGetThemesArgs, ctx: ToolContext) -> Result:
    api_key = ctx.config.gamma_api_key
    if not api_key:
        return _missing_key()
    with ctx.http_client() as client:
        themes = GammaClient(api_key, client).get_themes()
    return Result(success=True, data=themes)


GAMMA_TOOLS = [
    ToolSpec(
        "gamma_generate",
        "Generate a presentation, document or social post with Gamma AI "
        "(returns a generation id to poll)",
        GammaGenerateArgs,
        gamma_generate,
    ),
    ToolSpec(
        "gamma_get_status",
        "Check the status of a Gamma generation",
        GammaGetStatusArgs,
        gamma_get_status,
    ),
    ToolSpec(
        "gamma_get_themes",
        "List the themes available for Gamma generations",
        GammaGetThemesArgs,
        gamma_get_themes,
    ),
]
