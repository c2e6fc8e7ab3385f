from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ValidationError

from fastapi import FastAPI, File, Form, Request, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from kku_assistant.config import load_settings
from kku_assistant.context_builder import (
    PreparedContext,
    default_manifest,
    get_context_provider,
    prepare_all_data,
)
from kku_assistant.errors import MissingRequiredField, ModelInvocationFailure
from kku_assistant.extraction import (
    DOCX_MIME_TYPE,
    IMAGE_MIME_TYPES,
    PDF_MIME_TYPE,
    TEXT_MIME_TYPE,
    ValidationResult,
    extract_file,
    read_docx_text,
    read_pdf_text,
    read_text_file,
    stored_upload,
    validate_upload,
    validate_upload_header,
)
from kku_assistant.llm_provider import CHAT_SAFETY_SETTINGS, generate_content_with_gemini
from kku_assistant.prompts import build_ask_parts, build_chat_parts
from kku_assistant.resources import find_relevant_resources, format_resource_links, resource_table_payload
from kku_assistant.vision_analyze import analyze_image_file
from kku_assistant.web_scrape import scrape_website_or_none

logger = logging.getLogger(__name__)

UPLOAD_ERROR = "ข้อผิดพลาดในการอัปโหลดไฟล์"
PROCESSING_ERROR = "ข้อผิดพลาดในการประมวลผล"
FILE_PROCESSING_ERROR = "ข้อผิดพลาดในการประมวลผลไฟล์"
QUESTION_REQUIRED = "กรุณาระบุคำถาม"
FILE_REQUIRED = "กรุณาอัปโหลดไฟล์"

settings = load_settings()


def _analyze_sample_image(path: Path, mime_type: str) -> str:
    return analyze_image_file(
        path,
        mime_type,
        api_key=settings.gemini_api_key,
        model=settings.gemini_model,
        timeout=settings.gemini_timeout_seconds,
    )


def _scrape(url: str) -> str | None:
    return scrape_website_or_none(url, timeout=settings.scrape_timeout_seconds)


def build_context() -> PreparedContext:
    return prepare_all_data(
        default_manifest(settings.data_dir),
        analyze_image=_analyze_sample_image,
        scrape=_scrape,
    )


context_provider = get_context_provider(build_context, settings.context_provider)


@asynccontextmanager
async def lifespan(_app: FastAPI):
    for directory in (settings.upload_dir, settings.data_dir):
        directory.mkdir(parents=True, exist_ok=True)

    if settings.require_api_key and not settings.gemini_api_key:
        logger.critical("GEMINI_API_KEY is not set; refusing to start.")
        raise RuntimeError("GEMINI_API_KEY environment variable is required.")

    logger.info("Starting with settings %s", settings.to_dict())
    if settings.warmup_context:
        logger.info("Warming up question context (provider=%s)", context_provider.name)
        try:
            await run_in_threadpool(context_provider.get_context)
            logger.info("Context warm-up finished; system ready")
        except Exception:
            logger.exception("Context warm-up failed")
    yield


app = FastAPI(title="KKU Engineering Assistant API", lifespan=lifespan)


@app.middleware("http")
async def api_prefix_alias(request, call_next):
    """Accept both `/path` and `/api/path` for frontend compatibility."""
    if request.scope.get("path", "").startswith("/api/"):
        request.scope["path"] = request.scope["path"][4:]
    return await call_next(request)


app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type"],
)


class AskRequest(BaseModel):
    question: str | None = None


def _error_response(status_code: int, error: str, details: str | None = None) -> JSONResponse:
    content: dict[str, Any] = {"error": error}
    if details is not None:
        content["details"] = details
    return JSONResponse(status_code=status_code, content=content)


def _upload_error_response(validation: ValidationResult) -> JSONResponse:
    logger.info("Upload rejected: %s %s", validation.message, validation.warnings)
    return _error_response(400, UPLOAD_ERROR, validation.message)


def _has_upload(file: UploadFile | None) -> bool:
    return file is not None and bool(file.filename)


async def _read_upload(file: UploadFile) -> tuple[bytes, ValidationResult]:
    filename = file.filename or ""
    declared = validate_upload_header(filename, file.content_type, file.size, max_bytes=settings.max_upload_bytes)
    if declared.status == "error":
        return b"", declared
    content = await file.read()
    return content, validate_upload(filename, file.content_type, content, max_bytes=settings.max_upload_bytes)


def _invoke_model(parts: list[dict], **options: Any) -> str:
    result = generate_content_with_gemini(
        api_key=settings.gemini_api_key or "",
        model=settings.gemini_model,
        parts=parts,
        timeout=settings.gemini_timeout_seconds,
        **options,
    )
    if result.status != "success" or not result.raw_response:
        raise ModelInvocationFailure("; ".join(result.warnings) or "Model returned no text.", result.warnings)
    return result.raw_response


def answer_chat(message: str, filename: str | None, content_type: str | None, content: bytes | None) -> str:
    extracted = None
    if content is not None:
        with stored_upload(filename or "", content_type, content, upload_dir=settings.upload_dir) as upload:
            extracted = extract_file(upload)

    reply = _invoke_model(
        build_chat_parts(message, extracted),
        safety_settings=CHAT_SAFETY_SETTINGS,
        generation_config={
            "temperature": settings.gemini_temperature,
            "topP": settings.gemini_top_p,
        },
    )
    return reply + format_resource_links(find_relevant_resources(message))


def answer_question(question: str | None) -> dict:
    if not (question or "").strip():
        raise MissingRequiredField("question", QUESTION_REQUIRED)

    context = context_provider.get_context()
    answer = _invoke_model(build_ask_parts(question, context))
    return {"question": question, "answer": answer, "sources": context.sources()}


def read_upload_content(filename: str, content_type: str | None, content: bytes, question: str | None) -> str:
    with stored_upload(filename, content_type, content, upload_dir=settings.upload_dir) as upload:
        if upload.mime_type in IMAGE_MIME_TYPES:
            return analyze_image_file(
                upload.path,
                upload.mime_type,
                question,
                api_key=settings.gemini_api_key,
                model=settings.gemini_model,
                timeout=settings.gemini_timeout_seconds,
            )
        if upload.mime_type == PDF_MIME_TYPE:
            return read_pdf_text(upload.path)
        if upload.mime_type == DOCX_MIME_TYPE:
            return read_docx_text(upload.path)
        if upload.mime_type == TEXT_MIME_TYPE:
            return read_text_file(upload.path)
    return ""


@app.get("/health")
def health_check():
    return {"status": "ok"}


@app.get("/resources")
def list_resources():
    return {
        "resources": resource_table_payload(),
        "last_updated": datetime.now(timezone.utc).isoformat(),
    }


@app.post("/chat")
async def chat(
    file: UploadFile | None = File(None),
    message: str | None = Form(None),
):
    user_message = message or ""
    filename = content_type = None
    content = None

    if _has_upload(file):
        content, validation = await _read_upload(file)
        filename, content_type = file.filename, file.content_type
        if validation.status == "error":
            return _upload_error_response(validation)

    try:
        reply = await run_in_threadpool(answer_chat, user_message, filename, content_type, content)
    except Exception as exc:
        logger.exception("Chat request failed")
        return _error_response(500, PROCESSING_ERROR, str(exc))

    return {"response": reply}


@app.post("/ask")
async def ask(request: Request):
    try:
        payload = AskRequest.model_validate(await request.json())
    except (ValueError, ValidationError):
        payload = None

    try:
        return await run_in_threadpool(answer_question, payload.question if payload else None)
    except MissingRequiredField as exc:
        return _error_response(400, str(exc))
    except Exception as exc:
        logger.exception("Question request failed")
        return _error_response(500, PROCESSING_ERROR, str(exc))


@app.post("/ask-upload")
async def ask_upload(
    file: UploadFile | None = File(None),
    question: str | None = Form(None),
):
    if not _has_upload(file):
        return _error_response(400, FILE_REQUIRED)

    content, validation = await _read_upload(file)
    if validation.status == "error":
        return _upload_error_response(validation)

    try:
        extracted = await run_in_threadpool(read_upload_content, file.filename or "", file.content_type, content, question)
    except Exception as exc:
        logger.exception("Upload question request failed")
        return _error_response(500, FILE_PROCESSING_ERROR, str(exc))

    return {"question": question, "content": extracted}


@app.post("/context/refresh")
def refresh_context():
    context_provider.invalidate()
    return {"status": "ok", "provider": context_provider.name}


if settings.client_dir.is_dir():
    app.mount("/", StaticFiles(directory=settings.client_dir, html=True), name="client")


def main() -> None:
    import uvicorn

    logging.basicConfig(
        level=(os.getenv("LOG_LEVEL") or "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(app, host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
