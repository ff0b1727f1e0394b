"""Clients for the two generative backends.

The engine depends only on the protocols:

    class TurnService:
        async def start_conversation(self, scenario: Scenario) -> OpeningResponse: ...
        async def next_turn(self, request: TurnRequest) -> TurnResponse: ...

    class ImageService:
        async def __call__(self, prompt: str) -> str: ...

Production code builds HttpTurnService / HttpImageService from Settings.
Tests inject stub services (see conftest.py) instead.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Protocol

import httpx
from pydantic import BaseModel, ValidationError

from rapport.models import OpeningResponse, Scenario, TurnRequest, TurnResponse

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Protocols
# ---------------------------------------------------------------------------

class TurnService(Protocol):
    async def start_conversation(self, scenario: Scenario) -> OpeningResponse: ...

    async def next_turn(self, request: TurnRequest) -> TurnResponse: ...


class ImageService(Protocol):
    async def __call__(self, prompt: str) -> str: ...


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class ServiceError(RuntimeError):
    """Base class for backend failures."""


class TurnServiceError(ServiceError):
    """Raised when the Turn Service cannot be reached or answers badly."""


class ImageServiceError(ServiceError):
    """Raised when the Image Service cannot be reached or returns no image."""


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------

_FENCE_RE = re.compile(r"^```(\w*)?\s*\n?(.*?)\n?\s*```$", re.DOTALL)


def parse_json_text(text: str) -> Any:
    """Parse JSON that a model may have wrapped in a Markdown code fence."""
    text = text.strip()
    match = _FENCE_RE.match(text)
    if match and match.group(2):
        text = match.group(2).strip()
    return json.loads(text)


async def _post(
    url: str,
    body: dict,
    headers: dict[str, str],
    timeout: float,
    error_cls: type[ServiceError],
) -> Any:
    try:
        async with httpx.AsyncClient(timeout=timeout) as client:
            resp = await client.post(url, json=body, headers=headers)
            resp.raise_for_status()
    except httpx.ConnectError as e:
        raise error_cls(f"Cannot connect to {url}") from e
    except httpx.HTTPStatusError as e:
        raise error_cls(f"Backend returned HTTP {e.response.status_code}") from e
    except httpx.TimeoutException as e:
        raise error_cls(f"Backend timed out after {timeout}s") from e
    except httpx.HTTPError as e:
        raise error_cls(f"Request to {url} failed: {type(e).__name__}") from e
    try:
        return resp.json()
    except ValueError as e:
        raise error_cls("Backend returned a non-JSON body") from e


def _headers(api_key: str) -> dict[str, str]:
    headers: dict[str, str] = {"Content-Type": "application/json"}
    if api_key:
        headers["Authorization"] = f"Bearer {api_key}"
    return headers


# ---------------------------------------------------------------------------
# HttpTurnService
# ---------------------------------------------------------------------------

class HttpTurnService:
    """Async HTTP client for the Turn Service.

    Endpoints:
      POST /v1/conversations  {scenario}      -> OpeningResponse
      POST /v1/turns          {TurnRequest}   -> TurnResponse

    The body is either the response object itself or a completion wrapper
    ``{"text": "<json, possibly fenced>"}``.

    Args:
        base_url: Base URL of the service, e.g. "http://localhost:8700".
        api_key:  Bearer token, or empty string if not required.
        timeout:  HTTP timeout in seconds. Defaults to 120.
    """

    def __init__(self, base_url: str, api_key: str = "", timeout: float = 120.0) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._timeout = timeout

    async def _call(self, path: str, body: dict, model: type[BaseModel]) -> Any:
        url = f"{self._base_url}{path}"
        logger.debug("turn service call url=%s", url)
        data = await _post(url, body, _headers(self._api_key), self._timeout, TurnServiceError)

        if isinstance(data, dict) and isinstance(data.get("text"), str):
            try:
                data = parse_json_text(data["text"])
            except json.JSONDecodeError as e:
                raise TurnServiceError("Unexpected response format from Turn Service") from e
        try:
            return model.model_validate(data)
        except ValidationError as e:
            raise TurnServiceError("Unexpected response format from Turn Service") from e

    async def start_conversation(self, scenario: Scenario) -> OpeningResponse:
        body = {"scenario": scenario.model_dump(mode="json", by_alias=True)}
        return await self._call("/v1/conversations", body, OpeningResponse)

    async def next_turn(self, request: TurnRequest) -> TurnResponse:
        body = request.model_dump(mode="json", by_alias=True)
        return await self._call("/v1/turns", body, TurnResponse)


# ---------------------------------------------------------------------------
# HttpImageService
# ---------------------------------------------------------------------------

class HttpImageService:
    """Async HTTP client for the Image Service.

    POST /v1/images {"prompt": ..., "mimeType": "image/jpeg"}
    Response: {"generatedImages": [{"image": {"imageBytes": "<base64>"}}]}
    """

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout: float = 120.0,
        mime_type: str = "image/jpeg",
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._timeout = timeout
        self._mime_type = mime_type

    async def __call__(self, prompt: str) -> str:
        url = f"{self._base_url}/v1/images"
        logger.debug("image service call prompt_len=%d", len(prompt))
        data = await _post(
            url,
            {"prompt": prompt, "mimeType": self._mime_type},
            _headers(self._api_key),
            self._timeout,
            ImageServiceError,
        )
        try:
            image = data["generatedImages"][0]["image"]["imageBytes"]
        except (KeyError, IndexError, TypeError) as e:
            raise ImageServiceError("No image data received from Image Service") from e
        if not image:
            raise ImageServiceError("No image data received from Image Service")
        return image
