from __future__ import annotations

import json
import logging
import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional, Protocol

from kku_assistant.errors import ExtractionFailure
from kku_assistant.extraction import read_pdf_text
from kku_assistant.web_scrape import scrape_website_or_none

logger = logging.getLogger(__name__)

WEBSITE_SOURCE = "website"
DEFAULT_WEBSITE_URL = (
    "https://www.en.kku.ac.th/web/"
    "%E0%B8%87%E0%B8%B2%E0%B8%99%E0%B8%9A%E0%B8%A3%E0%B8%B4%E0%B8%81%E0%B8%B2%E0%B8%A3"
    "%E0%B8%A7%E0%B8%B4%E0%B8%8A%E0%B8%B2%E0%B8%81%E0%B8%B2%E0%B8%A3%E0%B9%81%E0%B8%A5"
    "%E0%B8%B0%E0%B8%A7%E0%B8%B4%E0%B8%88/#1523875822874-a039c957-3a3f"
)

ImageAnalyzer = Callable[[Path, str], str]
DocumentReader = Callable[[Path], Optional[str]]
WebsiteScraper = Callable[[str], Optional[str]]


@dataclass(frozen=True)
class SampleImage:
    key: str
    path: Path
    mime_type: str
    description: str


@dataclass(frozen=True)
class SampleDocument:
    key: str
    path: Path
    doc_type: str = "pdf"


@dataclass(frozen=True)
class SampleManifest:
    images: tuple[SampleImage, ...]
    documents: tuple[SampleDocument, ...]
    website: str | None


@dataclass
class PreparedContext:
    image_data: dict[str, dict] = field(default_factory=dict)
    document_data: dict[str, dict] = field(default_factory=dict)
    website_data: str | None = None

    def sources(self) -> list[str]:
        # "website" is listed even when the scrape failed.
        return [*self.image_data.keys(), *self.document_data.keys(), WEBSITE_SOURCE]

    def to_prompt_text(self) -> str:
        return (
            "ข้อมูลจากรูปภาพ:\n"
            f"{json.dumps(self.image_data, ensure_ascii=False)}\n\n"
            "ข้อมูลจากเอกสาร:\n"
            f"{json.dumps(self.document_data, ensure_ascii=False)}\n\n"
            "ข้อมูลจากเว็บไซต์:\n"
            f"{self.website_data if self.website_data is not None else 'null'}\n"
        )


def default_manifest(data_dir: Path | str = "data", website: str | None = DEFAULT_WEBSITE_URL) -> SampleManifest:
    base = Path(data_dir)
    return SampleManifest(
        images=(
            SampleImage(
                key="tuition",
                path=base / "ค่าธรรมเนียมการศึกษาป.ตรี-650x900.png",
                mime_type="image/png",
                description="ตารางค่าธรรมเนียมการศึกษาคณะวิศวกรรมศาสตร์ มข.",
            ),
            SampleImage(
                key="contact",
                path=base / "ช่องทางการติดต่อสำหรับนักศึกษาปตรี.jpg",
                mime_type="image/jpeg",
                description="ช่องทางการติดต่อคณะวิศวกรรมศาสตร์ มข.",
            ),
        ),
        documents=(
            SampleDocument(
                key="faq",
                path=base / "FAQ สำหรับจัดทำ Chat bot เพจคณะวิศวกรรมศาสตร์ มหาวิทยาลัยขอนแก่น.pdf",
            ),
            SampleDocument(key="admission", path=base / "เอกสารการเข้ารับการศึกษา.pdf"),
        ),
        website=website,
    )


def _read_pdf_or_none(path: Path) -> str | None:
    try:
        return read_pdf_text(path)
    except ExtractionFailure as exc:
        logger.warning("Sample document %s could not be read: %s", path, exc)
        return None


def prepare_all_data(
    manifest: SampleManifest,
    *,
    analyze_image: ImageAnalyzer,
    read_pdf: DocumentReader = _read_pdf_or_none,
    scrape: WebsiteScraper = scrape_website_or_none,
) -> PreparedContext:
    """Build the shared question context from sample images, documents and the website.

    Sources are processed one after another. Missing sample files are skipped,
    an unreadable PDF keeps its key with ``content=None`` and a failed scrape
    leaves ``website_data`` as ``None``. Image analysis errors propagate.
    """
    logger.info("Preparing context data")
    context = PreparedContext()

    for image in manifest.images:
        if not image.path.exists():
            logger.info("Sample image '%s' not found at %s, skipping", image.key, image.path)
            continue
        context.image_data[image.key] = {
            "description": image.description,
            "content": analyze_image(image.path, image.mime_type),
        }

    for document in manifest.documents:
        if not document.path.exists():
            logger.info("Sample document '%s' not found at %s, skipping", document.key, document.path)
            continue
        context.document_data[document.key] = {
            "type": document.doc_type,
            "content": read_pdf(document.path),
        }

    if manifest.website:
        context.website_data = scrape(manifest.website)

    logger.info(
        "Context prepared: %d image(s), %d document(s), website %s",
        len(context.image_data),
        len(context.document_data),
        "ok" if context.website_data is not None else "unavailable",
    )
    return context


class ContextProvider(Protocol):
    name: str

    def get_context(self) -> PreparedContext:
        ...

    def invalidate(self) -> None:
        ...


class RebuildingContextProvider:
    """Rebuilds the full context on every call."""

    name = "rebuild"

    def __init__(self, build: Callable[[], PreparedContext]):
        self._build = build

    def get_context(self) -> PreparedContext:
        return self._build()

    def invalidate(self) -> None:
        return None


class CachedContextProvider:
    """Keeps the last built context until :meth:`invalidate` is called."""

    name = "cached"

    def __init__(self, build: Callable[[], PreparedContext]):
        self._build = build
        self._cached: PreparedContext | None = None
        self._lock = threading.Lock()

    def get_context(self) -> PreparedContext:
        cached = self._cached
        if cached is not None:
            return cached
        with self._lock:
            # another request may have finished the build while we waited
            if self._cached is None:
                self._cached = self._build()
            return self._cached

    def invalidate(self) -> None:
        with self._lock:
            self._cached = None


def list_context_providers() -> list[str]:
    return [RebuildingContextProvider.name, CachedContextProvider.name]


def get_context_provider(
    build: Callable[[], PreparedContext],
    provider_name: str | None = None,
) -> ContextProvider:
    selected = (provider_name or os.getenv("KKU_CONTEXT_PROVIDER") or "rebuild").strip().lower()
    if selected == RebuildingContextProvider.name:
        return RebuildingContextProvider(build)
    if selected == CachedContextProvider.name:
        return CachedContextProvider(build)
    raise ValueError(
        f"Unknown context provider '{selected}'. "
        f"Available providers: {', '.join(list_context_providers())}."
    )
