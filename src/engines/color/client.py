"""
Color Analysis Client (Gemini generateContent over REST)

Asks a vision model for print-preparation color adjustments. This is a
best-effort enhancement: every failure path returns the neutral default
and the pipeline carries on.
"""

import base64
import json
from typing import Optional

import httpx
from pydantic import ValidationError as PydanticValidationError

from src.core.config import settings
from src.core.exceptions import CircuitBreaker, get_circuit_breaker
from src.core.logging import get_logger
from src.core.metrics import record_color_analysis_call
from src.engines.color.schemas import ColorAdjustment, ColorAnalysisPayload, NEUTRAL_ADJUSTMENT

logger = get_logger(__name__)


ANALYSIS_PROMPT = """You are an expert in photography and in preparing images for professional printing.
Analyze this image and recommend color adjustments that optimize it for high quality photo paper.

Return a JSON object with these fields (every number must be between -100 and 100):

{
  "brightness": number,      // -100 darker, 100 brighter
  "contrast": number,        // -100 less contrast, 100 more contrast
  "saturation": number,      // -100 desaturated, 100 very saturated
  "vibrance": number,        // smart saturation
  "warmth": number,          // -100 cooler/blue, 100 warmer/yellow
  "highlights": number,      // -100 reduce, 100 increase
  "shadows": number,         // -100 darker, 100 lighter
  "recommendation": "string" // short reason for these adjustments
}

Keep in mind:
- Prints tend to look darker than on screen
- Colors can lose vividness when printed
- Contrast usually needs a small boost for print
- Avoid extreme values (stay between -30 and 30 when possible)

Respond ONLY with the JSON, no extra explanation."""


class ColorAnalysisClient:
    """Best-effort color analysis. analyze() never raises."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        circuit: Optional[CircuitBreaker] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.api_key = api_key if api_key is not None else settings.GEMINI_API_KEY
        self.model = model or settings.GEMINI_MODEL
        self.base_url = (base_url or settings.GEMINI_API_URL).rstrip("/")
        self.timeout = timeout or settings.COLOR_ANALYSIS_TIMEOUT_SECONDS
        self.circuit = circuit or get_circuit_breaker("color")
        self._transport = transport

    @property
    def endpoint(self) -> str:
        return f"{self.base_url}/models/{self.model}:generateContent"

    def _build_payload(self, image_bytes: bytes, mime_type: str) -> dict:
        return {
            "contents": [{
                "parts": [
                    {"text": ANALYSIS_PROMPT},
                    {
                        "inline_data": {
                            "mime_type": mime_type,
                            "data": base64.b64encode(image_bytes).decode("utf-8"),
                        }
                    },
                ]
            }],
            "generationConfig": {"responseMimeType": "application/json"},
        }

    @staticmethod
    def _extract_text(body: dict) -> str:
        parts = body["candidates"][0]["content"]["parts"]
        return "".join(part.get("text", "") for part in parts)

    @staticmethod
    def _strip_fences(text: str) -> str:
        text = text.strip()
        if text.startswith("```"):
            text = text.split("\n", 1)[1] if "\n" in text else ""
            if text.rstrip().endswith("```"):
                text = text.rstrip()[:-3]
        return text.strip()

    def parse_response_text(self, text: str) -> ColorAdjustment:
        """
        Validate and clamp the model's JSON answer.

        Raises:
            ValueError: If the text is not JSON or fails the schema
        """
        data = json.loads(self._strip_fences(text))
        if not isinstance(data, dict):
            raise ValueError("Color analysis response is not a JSON object")
        payload = ColorAnalysisPayload.model_validate(data)
        return ColorAdjustment.from_payload(payload)

    async def analyze(self, image_bytes: bytes, mime_type: str = "image/jpeg") -> ColorAdjustment:
        if not self.api_key:
            logger.info("color_analysis_skipped", reason="not_configured")
            record_color_analysis_call("skipped")
            return NEUTRAL_ADJUSTMENT

        if not self.circuit.can_execute():
            logger.warning("color_analysis_skipped", reason="circuit_open")
            record_color_analysis_call("circuit_open")
            return NEUTRAL_ADJUSTMENT

        try:
            logger.info("color_analysis_starting", input_size=len(image_bytes))

            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(
                    self.endpoint,
                    params={"key": self.api_key},
                    json=self._build_payload(image_bytes, mime_type),
                )

            if response.status_code != 200:
                self.circuit.record_failure()
                record_color_analysis_call("error")
                logger.warning(
                    "color_analysis_fallback",
                    reason="http_error",
                    http_status=response.status_code
                )
                return NEUTRAL_ADJUSTMENT

            adjustment = self.parse_response_text(self._extract_text(response.json()))

        except httpx.HTTPError as e:
            self.circuit.record_failure(e)
            record_color_analysis_call("error")
            logger.warning("color_analysis_fallback", reason="transport_error", error=str(e))
            return NEUTRAL_ADJUSTMENT

        except (ValueError, KeyError, IndexError, TypeError, PydanticValidationError) as e:
            # The provider answered; only its content was unusable
            self.circuit.record_success()
            record_color_analysis_call("invalid")
            logger.warning("color_analysis_fallback", reason="invalid_response", error=str(e))
            return NEUTRAL_ADJUSTMENT

        except Exception as e:
            self.circuit.record_failure(e)
            record_color_analysis_call("error")
            logger.error("color_analysis_fallback", reason="unexpected", error=str(e))
            return NEUTRAL_ADJUSTMENT

        self.circuit.record_success()
        record_color_analysis_call("success")
        logger.info(
            "color_analysis_completed",
            brightness=adjustment.brightness,
            contrast=adjustment.contrast,
            warmth=adjustment.warmth
        )
        return adjustment
