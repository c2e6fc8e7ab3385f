from __future__ import annotations

import argparse
import base64
import mimetypes
import os
from pathlib import Path

from kku_assistant.config import DEFAULT_MODEL
from kku_assistant.errors import ModelInvocationFailure
from kku_assistant.llm_provider import describe_image_with_gemini

DESCRIBE_PROMPT_TH = "อธิบายเนื้อหาภาพนี้อย่างละเอียด"


def build_vision_prompt(question: str | None = None) -> str:
    cleaned = (question or "").strip()
    if cleaned:
        return f"จากภาพนี้: {cleaned} (ตอบอย่างละเอียดและถูกต้อง)"
    return DESCRIBE_PROMPT_TH


def analyze_image_bytes(
    *,
    content_bytes: bytes,
    mime_type: str,
    question: str | None = None,
    api_key: str | None,
    model: str,
    timeout: float | None = None,
) -> str:
    image_b64 = base64.b64encode(content_bytes).decode("ascii")
    result = describe_image_with_gemini(
        api_key=api_key or "",
        model=model,
        image_b64=image_b64,
        mime_type=mime_type,
        prompt=build_vision_prompt(question),
        timeout=timeout,
    )
    text = (result.raw_response or "").strip() if result.status == "success" else ""
    if not text:
        message = "; ".join(result.warnings) or "Image analysis returned no text."
        raise ModelInvocationFailure(message, warnings=result.warnings)
    return text


def analyze_image_file(
    image_path: Path,
    mime_type: str | None = None,
    question: str | None = None,
    *,
    api_key: str | None,
    model: str,
    timeout: float | None = None,
) -> str:
    path = Path(image_path)
    if not path.exists():
        raise FileNotFoundError(f"Image not found: {image_path}")

    resolved_mime = mime_type or mimetypes.guess_type(str(path))[0] or "image/jpeg"
    return analyze_image_bytes(
        content_bytes=path.read_bytes(),
        mime_type=resolved_mime,
        question=question,
        api_key=api_key,
        model=model,
        timeout=timeout,
    )


def main() -> None:
    parser = argparse.ArgumentParser(description="Describe an image with Gemini.")
    parser.add_argument("--image", required=True, help="Path to the image file")
    parser.add_argument("--question", default="", help="Optional question about the image")
    parser.add_argument("--model", default=os.getenv("GEMINI_MODEL") or DEFAULT_MODEL)
    args = parser.parse_args()

    try:
        text = analyze_image_file(
            Path(args.image),
            question=args.question,
            api_key=os.getenv("GEMINI_API_KEY"),
            model=args.model,
        )
    except ModelInvocationFailure as exc:
        print(f"No analysis produced: {exc}")
        return
    print(text)


if __name__ == "__main__":
    main()
