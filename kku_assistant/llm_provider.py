from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any
from urllib import error, request

logger = logging.getLogger(__name__)

GEMINI_ENDPOINT_TEMPLATE = (
    "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent?key={api_key}"
)

# Only high-severity harassment and hate speech are blocked.
CHAT_SAFETY_SETTINGS: list[dict[str, str]] = [
    {"category": "HARM_CATEGORY_HARASSMENT", "threshold": "BLOCK_ONLY_HIGH"},
    {"category": "HARM_CATEGORY_HATE_SPEECH", "threshold": "BLOCK_ONLY_HIGH"},
]


@dataclass(frozen=True)
class LlmResult:
    status: str
    raw_response: str | None
    warnings: list[str]


def text_part(text: str) -> dict[str, Any]:
    return {"text": text}


def inline_data_part(data_b64: str, mime_type: str) -> dict[str, Any]:
    return {"inline_data": {"mime_type": mime_type, "data": data_b64}}


def _collect_gemini_text(response_payload: dict[str, Any]) -> str | None:
    candidates = response_payload.get("candidates") or []
    if not candidates:
        return None

    parts = (candidates[0].get("content") or {}).get("parts") or []
    extracted: list[str] = []
    for part in parts:
        text = part.get("text") if isinstance(part, dict) else None
        if isinstance(text, str) and text.strip():
            extracted.append(text.strip())

    if extracted:
        return "\n".join(extracted)
    return None


def _blocked_reason(response_payload: dict[str, Any]) -> str | None:
    feedback = response_payload.get("promptFeedback") or {}
    reason = feedback.get("blockReason")
    if isinstance(reason, str) and reason:
        return reason

    candidates = response_payload.get("candidates") or []
    if candidates:
        finish_reason = candidates[0].get("finishReason")
        if finish_reason in {"SAFETY", "BLOCKLIST", "PROHIBITED_CONTENT"}:
            return str(finish_reason)
    return None


def _post_json(url: str, payload: dict[str, Any], headers: dict[str, str], timeout: float | None = None) -> dict[str, Any]:
    body = json.dumps(payload).encode("utf-8")
    req = request.Request(url, data=body, headers=headers, method="POST")
    with request.urlopen(req, timeout=timeout) as response:
        response_body = response.read().decode("utf-8")
    return json.loads(response_body)


def _http_error_warning(provider_name: str, exc: error.HTTPError) -> str:
    response_excerpt = ""
    try:
        response_body = exc.read().decode("utf-8", errors="replace").strip()
    except Exception:
        response_body = ""

    if response_body:
        try:
            parsed = json.loads(response_body)
            if isinstance(parsed, dict):
                error_payload = parsed.get("error")
                if isinstance(error_payload, dict):
                    message = error_payload.get("message")
                    if isinstance(message, str) and message.strip():
                        response_excerpt = message.strip()
        except json.JSONDecodeError:
            response_excerpt = response_body[:200]

    if response_excerpt:
        return f"{provider_name} request failed with HTTP {exc.code}: {response_excerpt}"

    return f"{provider_name} request failed with HTTP {exc.code}."


def generate_content_with_gemini(
    *,
    api_key: str,
    model: str,
    parts: list[dict[str, Any]],
    safety_settings: list[dict[str, str]] | None = None,
    generation_config: dict[str, Any] | None = None,
    timeout: float | None = None,
) -> LlmResult:
    """Send one user turn made of ``parts`` to Gemini and collect the reply text.

    Transport and HTTP failures do not raise; they come back as a result with
    ``status="error"`` and a human readable warning.
    """
    if not api_key:
        return LlmResult(status="error", raw_response=None, warnings=["GEMINI_API_KEY not configured."])

    endpoint = GEMINI_ENDPOINT_TEMPLATE.format(model=model, api_key=api_key)
    payload: dict[str, Any] = {"contents": [{"role": "user", "parts": parts}]}
    if safety_settings:
        payload["safetySettings"] = safety_settings
    if generation_config:
        payload["generationConfig"] = generation_config

    try:
        response_payload = _post_json(endpoint, payload, {"Content-Type": "application/json"}, timeout=timeout)
    except error.HTTPError as exc:
        warning = _http_error_warning("Gemini", exc)
        logger.warning(warning)
        return LlmResult(status="error", raw_response=None, warnings=[warning])
    except Exception as exc:
        logger.warning("Gemini request failed: %s", exc)
        return LlmResult(
            status="error",
            raw_response=None,
            warnings=[f"Gemini request failed before receiving a response: {exc}"],
        )

    extracted_text = _collect_gemini_text(response_payload)
    if extracted_text:
        return LlmResult(status="success", raw_response=extracted_text, warnings=[])

    blocked = _blocked_reason(response_payload)
    if blocked:
        return LlmResult(
            status="error",
            raw_response=json.dumps(response_payload),
            warnings=[f"Gemini blocked the response ({blocked})."],
        )

    return LlmResult(
        status="error",
        raw_response=json.dumps(response_payload),
        warnings=["Gemini response did not contain text content."],
    )


def describe_image_with_gemini(
    api_key: str,
    model: str,
    image_b64: str,
    mime_type: str,
    prompt: str,
    timeout: float | None = None,
) -> LlmResult:
    return generate_content_with_gemini(
        api_key=api_key,
        model=model,
        parts=[text_part(prompt), inline_data_part(image_b64, mime_type)],
        timeout=timeout,
    )
