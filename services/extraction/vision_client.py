# services/extraction/vision_client.py
from __future__ import annotations

import base64
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Tuple

import requests

from services.batch.errors import PermanentRemoteError, TransientRemoteError
from services.extraction.canonical import CONTAINER_TYPES, DOSAGE_FORMS
from services.ingestion.storage import ImageRef, RefKind

logger = logging.getLogger(__name__)


DEFAULT_OPENAI_BASE_URL = (os.getenv("MEDPACK_OPENAI_BASE_URL") or "https://api.openai.com/v1").strip()
DEFAULT_OPENAI_MODEL = (os.getenv("MEDPACK_OPENAI_MODEL") or "gpt-4o").strip()

CHAT_COMPLETIONS_PATH = "/chat/completions"
MAX_TOKENS = 1500
TEMPERATURE = 0.1

RETRYABLE_STATUS = (429, 500, 502, 503, 504)


def _build_instructions() -> str:
    forms = ", ".join(DOSAGE_FORMS)
    containers = ", ".join(CONTAINER_TYPES)
    return (
        "You are a pharmaceutical identification expert. The photos show one medicine product "
        "from different angles. Analyze all images together and extract the following fields "
        "as a single JSON object:\n"
        "{\n"
        '  "name": "Full product name as shown on the package",\n'
        '  "brand_name": "Brand name (e.g., Tylenol, Advil)",\n'
        '  "generic_name": "Generic name (e.g., Acetaminophen, Ibuprofen)",\n'
        f'  "dosage_form": "One of: {forms}",\n'
        '  "active_ingredient": "Primary active ingredient",\n'
        '  "strength_value": "Numeric strength only (e.g., 500.0)",\n'
        '  "strength_unit": "Unit of strength (mg, ml, g, ...)",\n'
        f'  "container_type": "One of: {containers}",\n'
        '  "total_quantity": "Total quantity in the container (numeric)",\n'
        '  "quantity_unit": "Unit for quantities (tablets, ml, capsules, ...)",\n'
        '  "manufacturer": "Manufacturer if visible",\n'
        '  "lot_number": "Lot number if visible",\n'
        '  "expiration_date": "YYYY-MM-DD; omit if unclear or already past"\n'
        "}\n"
        "Rules:\n"
        "- Only include information clearly visible in at least one image; omit the rest.\n"
        "- Use EXACTLY the listed values for dosage_form and container_type.\n"
        "- Translate foreign terms to English (e.g. 'Tabletten' -> tablet, 'Flasche' -> bottle).\n"
        "- If total_quantity is not printed, give your best estimate.\n"
        '- If no medicine can be identified in any image, return {"error": "Unable to identify medicine clearly"}.\n'
        "Return ONLY the JSON object. No markdown. No commentary.\n"
    )


ANALYSIS_INSTRUCTIONS = _build_instructions()


@dataclass(frozen=True)
class AnalysisRequest:
    instructions: str
    images: Tuple[ImageRef, ...] = field(default_factory=tuple)


class VisionAnalyzer(Protocol):
    def analyze(self, request: AnalysisRequest, *, timeout_s: float) -> str: ...


@dataclass(frozen=True)
class VisionClientConfig:
    api_key: Optional[str] = None
    base_url: str = DEFAULT_OPENAI_BASE_URL
    model: str = DEFAULT_OPENAI_MODEL
    max_tokens: int = MAX_TOKENS
    temperature: float = TEMPERATURE


def image_content_part(ref: ImageRef) -> Dict[str, Any]:
    if ref.kind is RefKind.URL:
        url = str(ref.value)
    else:
        b64 = base64.b64encode(ref.value).decode("ascii")  # type: ignore[arg-type]
        url = f"data:{ref.content_type};base64,{b64}"
    return {"type": "image_url", "image_url": {"url": url}}


class OpenAIVisionClient:
    """
    One chat-completions call per request; images ride along in request order.
    Contract:
      - returns the assistant message text (unparsed)
      - raises TransientRemoteError for 429/5xx/timeouts/transport errors
      - raises PermanentRemoteError for every other failure
    No retries here; wrap calls in RetryExecutor.
    """

    def __init__(
        self,
        config: Optional[VisionClientConfig] = None,
        *,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.config = config or VisionClientConfig(api_key=os.getenv("OPENAI_API_KEY"))
        self._session = session or requests.Session()

    def build_payload(self, request: AnalysisRequest) -> Dict[str, Any]:
        content: List[Dict[str, Any]] = [{"type": "text", "text": request.instructions}]
        content.extend(image_content_part(ref) for ref in request.images)
        return {
            "model": self.config.model,
            "messages": [{"role": "user", "content": content}],
            "max_tokens": self.config.max_tokens,
            "temperature": self.config.temperature,
        }

    def analyze(self, request: AnalysisRequest, *, timeout_s: float) -> str:
        if not self.config.api_key:
            raise PermanentRemoteError("Missing OpenAI API key (OPENAI_API_KEY)")
        if not request.images:
            raise PermanentRemoteError("analysis request has no images")

        url = self.config.base_url.rstrip("/") + CHAT_COMPLETIONS_PATH
        headers = {
            "Authorization": f"Bearer {self.config.api_key}",
            "Content-Type": "application/json",
        }

        try:
            r = self._session.post(url, json=self.build_payload(request), headers=headers, timeout=timeout_s)
        except requests.exceptions.Timeout as e:
            raise TransientRemoteError(f"vision API timeout: {e}", kind=TransientRemoteError.TIMEOUT) from e
        except requests.exceptions.RequestException as e:
            raise TransientRemoteError(
                f"vision API transport error: {e}", kind=TransientRemoteError.TRANSPORT
            ) from e

        if r.status_code in RETRYABLE_STATUS:
            kind = (
                TransientRemoteError.RATE_LIMITED
                if r.status_code == 429
                else TransientRemoteError.SERVER_ERROR
            )
            raise TransientRemoteError(
                f"vision API HTTP {r.status_code}: {r.text[:300]}", kind=kind, status_code=r.status_code
            )
        if not r.ok:
            raise PermanentRemoteError(
                f"vision API HTTP {r.status_code}: {r.text[:300]}", status_code=r.status_code
            )

        try:
            body = r.json()
        except ValueError as e:
            raise PermanentRemoteError(f"vision API HTTP 200 but body was not JSON: {e}") from e

        try:
            content = body["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise PermanentRemoteError(f"vision API unexpected response shape: {e!r}") from e

        if not isinstance(content, str):
            raise PermanentRemoteError("vision API returned non-text content")
        return content
