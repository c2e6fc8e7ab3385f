from dataclasses import replace

import pytest
from fastapi.testclient import TestClient
from starlette.datastructures import UploadFile as StarletteUploadFile

import kku_assistant.app as app_module
from kku_assistant import web_scrape
from kku_assistant.context_builder import CachedContextProvider, PreparedContext, RebuildingContextProvider
from kku_assistant.errors import FetchFailure
from kku_assistant.extraction import DOCX_MIME_TYPE
from kku_assistant.llm_provider import LlmResult

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32


class FakeGemini:
    def __init__(self, text="คำตอบจากโมเดล", status="success", warnings=None):
        self.text = text
        self.status = status
        self.warnings = warnings or []
        self.calls = []

    def __call__(self, **kwargs):
        self.calls.append(kwargs)
        if self.status != "success":
            return LlmResult(status=self.status, raw_response=None, warnings=self.warnings)
        return LlmResult(status="success", raw_response=self.text, warnings=[])


class StubContextProvider:
    name = "stub"

    def __init__(self, context):
        self.context = context
        self.calls = 0

    def get_context(self):
        self.calls += 1
        return self.context

    def invalidate(self):
        self.context = PreparedContext()


@pytest.fixture
def test_settings(tmp_path, monkeypatch):
    configured = replace(
        app_module.settings,
        gemini_api_key="test-key",
        gemini_model="gemini-test",
        upload_dir=tmp_path / "uploads",
        data_dir=tmp_path / "data",
    )
    monkeypatch.setattr(app_module, "settings", configured)
    return configured


@pytest.fixture
def gemini(monkeypatch):
    fake = FakeGemini()
    monkeypatch.setattr(app_module, "generate_content_with_gemini", fake)
    return fake


@pytest.fixture
def client():
    return TestClient(app_module.app)


def _uploaded_files(settings):
    if not settings.upload_dir.exists():
        return []
    return list(settings.upload_dir.iterdir())


def test_health_endpoint_ok(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


@pytest.mark.parametrize("path", ["/api/resources", "/resources"])
def test_resources_endpoint_returns_table_and_timestamp(client, path):
    response = client.get(path)

    assert response.status_code == 200
    payload = response.json()
    assert payload["resources"]["tuition"][0]["url"] == "https://www.en.kku.ac.th/web/tuition-fees"
    assert payload["last_updated"].endswith("+00:00")


def test_chat_appends_tuition_resource_link(client, test_settings, gemini):
    response = client.post("/chat", data={"message": "ค่าเทอมเท่าไหร่"})

    assert response.status_code == 200
    text = response.json()["response"]
    assert text.startswith("คำตอบจากโมเดล")
    assert "[ค่าธรรมเนียมการศึกษาปริญญาตรี](https://www.en.kku.ac.th/web/tuition-fees)" in text

    call = gemini.calls[0]
    assert call["model"] == "gemini-test"
    assert call["safety_settings"] == [
        {"category": "HARM_CATEGORY_HARASSMENT", "threshold": "BLOCK_ONLY_HIGH"},
        {"category": "HARM_CATEGORY_HATE_SPEECH", "threshold": "BLOCK_ONLY_HIGH"},
    ]
    assert call["generation_config"] == {"temperature": 0.7, "topP": 0.9}
    assert "ค่าเทอมเท่าไหร่" in call["parts"][0]["text"]


def test_chat_without_matching_keywords_adds_no_links(client, test_settings, gemini):
    response = client.post("/chat", data={"message": "สวัสดีครับ"})

    assert response.status_code == 200
    assert response.json() == {"response": "คำตอบจากโมเดล"}


def test_chat_with_png_only_attaches_image_and_cleans_up(client, test_settings, gemini):
    response = client.post("/chat", files={"file": ("photo.png", PNG_BYTES, "image/png")})

    assert response.status_code == 200
    assert response.json()["response"]
    parts = gemini.calls[0]["parts"]
    assert "(ไม่มีข้อความ, ผู้ใช้ส่งเฉพาะไฟล์)" in parts[0]["text"]
    assert parts[1]["inline_data"]["mime_type"] == "image/png"
    assert _uploaded_files(test_settings) == []


def test_chat_with_text_file_appends_content_to_prompt(client, test_settings, gemini):
    response = client.post(
        "/chat",
        data={"message": "สรุปให้หน่อย"},
        files={"file": ("notes.txt", "รายวิชาพื้นฐาน".encode("utf-8"), "text/plain")},
    )

    assert response.status_code == 200
    parts = gemini.calls[0]["parts"]
    assert len(parts) == 1
    assert "เนื้อหาไฟล์ที่อัปโหลด:\nเนื้อหาไฟล์:\nรายวิชาพื้นฐาน" in parts[0]["text"]
    assert _uploaded_files(test_settings) == []


def test_chat_rejects_unsupported_type_before_extraction(client, test_settings, gemini, monkeypatch):
    def _fail_extract(_upload):
        raise AssertionError("extraction must not run")

    monkeypatch.setattr(app_module, "extract_file", _fail_extract)

    response = client.post("/chat", files={"file": ("photo.zip", PNG_BYTES, "application/zip")})

    assert response.status_code == 400
    assert response.json() == {"error": "ข้อผิดพลาดในการอัปโหลดไฟล์", "details": "ประเภทไฟล์ไม่รองรับ"}
    assert gemini.calls == []
    assert _uploaded_files(test_settings) == []


def test_chat_rejects_files_over_fifteen_mebibytes(client, test_settings, gemini):
    oversized = b"a" * (15 * 1024 * 1024 + 1)

    response = client.post("/chat", files={"file": ("big.txt", oversized, "text/plain")})

    assert response.status_code == 400
    assert response.json()["details"] == "File too large"
    assert gemini.calls == []


@pytest.mark.parametrize("path", ["/chat", "/ask-upload"])
def test_oversize_upload_is_rejected_before_reading_body(client, test_settings, gemini, monkeypatch, path):
    reads = []

    async def _tracking_read(self, size=-1):
        reads.append(size)
        return b""

    monkeypatch.setattr(app_module, "settings", replace(test_settings, max_upload_bytes=10))
    monkeypatch.setattr(StarletteUploadFile, "read", _tracking_read)

    response = client.post(path, files={"file": ("big.txt", b"a" * 11, "text/plain")})

    assert response.status_code == 400
    assert response.json()["details"] == "File too large"
    assert reads == []
    assert gemini.calls == []


def test_chat_extraction_failure_returns_500_and_removes_file(client, test_settings, gemini):
    response = client.post("/chat", files={"file": ("broken.docx", b"not a zip archive", DOCX_MIME_TYPE)})

    assert response.status_code == 500
    payload = response.json()
    assert payload["error"] == "ข้อผิดพลาดในการประมวลผล"
    assert "DOCX text extraction failed" in payload["details"]
    assert gemini.calls == []
    assert _uploaded_files(test_settings) == []


def test_chat_model_failure_returns_500_with_details(client, test_settings, monkeypatch):
    fake = FakeGemini(status="error", warnings=["Gemini request failed with HTTP 429: quota exceeded"])
    monkeypatch.setattr(app_module, "generate_content_with_gemini", fake)

    response = client.post("/chat", data={"message": "hello"})

    assert response.status_code == 500
    assert response.json() == {
        "error": "ข้อผิดพลาดในการประมวลผล",
        "details": "Gemini request failed with HTTP 429: quota exceeded",
    }


def test_ask_without_question_returns_400_and_skips_model(client, test_settings, gemini, monkeypatch):
    provider = StubContextProvider(PreparedContext())
    monkeypatch.setattr(app_module, "context_provider", provider)

    for body in ({}, {"question": ""}, {"question": "   "}):
        response = client.post("/ask", json=body)
        assert response.status_code == 400
        assert response.json() == {"error": "กรุณาระบุคำถาม"}

    assert gemini.calls == []
    assert provider.calls == 0


@pytest.mark.parametrize(
    "request_kwargs",
    [
        {"content": b"{not json", "headers": {"Content-Type": "application/json"}},
        {"json": {"question": 123}},
        {"json": ["ค่าเทอม"]},
        {},
    ],
)
def test_ask_with_unusable_body_returns_400(client, test_settings, gemini, monkeypatch, request_kwargs):
    monkeypatch.setattr(app_module, "context_provider", StubContextProvider(PreparedContext()))

    response = client.post("/ask", **request_kwargs)

    assert response.status_code == 400
    assert response.json() == {"error": "กรุณาระบุคำถาม"}
    assert gemini.calls == []


def test_ask_uses_context_and_lists_sources(client, test_settings, gemini, monkeypatch):
    context = PreparedContext(
        image_data={"tuition": {"description": "ตาราง", "content": "16,000 บาท"}},
        document_data={"faq": {"type": "pdf", "content": "คำถามที่พบบ่อย"}},
        website_data=None,
    )
    monkeypatch.setattr(app_module, "context_provider", StubContextProvider(context))

    response = client.post("/ask", json={"question": "ค่าเทอมเท่าไหร่"})

    assert response.status_code == 200
    assert response.json() == {
        "question": "ค่าเทอมเท่าไหร่",
        "answer": "คำตอบจากโมเดล",
        "sources": ["tuition", "faq", "website"],
    }
    parts = gemini.calls[0]["parts"]
    assert len(parts) == 4
    assert parts[2] == {"text": "คำถาม: ค่าเทอมเท่าไหร่"}
    assert parts[3]["text"].startswith("ข้อมูลอ้างอิง:\n")
    assert "16,000 บาท" in parts[3]["text"]
    assert "safety_settings" not in gemini.calls[0]


def test_ask_succeeds_when_website_fetch_fails(client, test_settings, gemini, monkeypatch, pdf_bytes):
    test_settings.data_dir.mkdir(parents=True)
    (test_settings.data_dir / "เอกสารการเข้ารับการศึกษา.pdf").write_bytes(pdf_bytes("Admission guide"))

    def _unreachable(url, timeout=None):
        raise FetchFailure(f"GET {url} failed: connection refused")

    monkeypatch.setattr(web_scrape, "_fetch_html", _unreachable)
    monkeypatch.setattr(app_module, "context_provider", RebuildingContextProvider(app_module.build_context))

    response = client.post("/ask", json={"question": "สมัครเรียนอย่างไร"})

    assert response.status_code == 200
    payload = response.json()
    assert payload["sources"] == ["admission", "website"]
    assert payload["answer"] == "คำตอบจากโมเดล"
    context_text = gemini.calls[0]["parts"][3]["text"]
    assert "Admission guide" in context_text
    assert "ข้อมูลจากเว็บไซต์:\nnull" in context_text


def test_ask_image_analysis_failure_returns_500(client, test_settings, monkeypatch):
    test_settings.data_dir.mkdir(parents=True)
    (test_settings.data_dir / "ช่องทางการติดต่อสำหรับนักศึกษาปตรี.jpg").write_bytes(b"\xff\xd8\xff")
    monkeypatch.setattr(web_scrape, "_fetch_html", lambda url, timeout=None: "<p>ok</p>")
    monkeypatch.setattr(
        "kku_assistant.vision_analyze.describe_image_with_gemini",
        lambda **_kwargs: LlmResult(status="error", raw_response=None, warnings=["Gemini request failed with HTTP 503."]),
    )
    monkeypatch.setattr(app_module, "context_provider", RebuildingContextProvider(app_module.build_context))

    response = client.post("/ask", json={"question": "ติดต่อใคร"})

    assert response.status_code == 500
    assert response.json()["details"] == "Gemini request failed with HTTP 503."


def test_ask_upload_requires_file(client, test_settings):
    response = client.post("/ask-upload", data={"question": "นี่คืออะไร"})

    assert response.status_code == 400
    assert response.json() == {"error": "กรุณาอัปโหลดไฟล์"}


def test_ask_upload_image_uses_question_as_hint(client, test_settings, monkeypatch):
    captured = {}

    def _fake_analyze(path, mime_type, question, **kwargs):
        captured.update(path=path, exists=path.exists(), mime_type=mime_type, question=question, **kwargs)
        return "ภาพตารางค่าธรรมเนียม"

    monkeypatch.setattr(app_module, "analyze_image_file", _fake_analyze)

    response = client.post(
        "/ask-upload",
        data={"question": "ค่าเทอมเท่าไหร่"},
        files={"file": ("fees.png", PNG_BYTES, "image/png")},
    )

    assert response.status_code == 200
    assert response.json() == {"question": "ค่าเทอมเท่าไหร่", "content": "ภาพตารางค่าธรรมเนียม"}
    assert captured["exists"] is True
    assert captured["mime_type"] == "image/png"
    assert captured["api_key"] == "test-key"
    assert _uploaded_files(test_settings) == []


def test_ask_upload_pdf_returns_extracted_text(client, test_settings, pdf_bytes):
    response = client.post("/ask-upload", files={"file": ("guide.pdf", pdf_bytes("Engineering FAQ"), "application/pdf")})

    assert response.status_code == 200
    payload = response.json()
    assert payload["question"] is None
    assert "Engineering FAQ" in payload["content"]
    assert _uploaded_files(test_settings) == []


def test_ask_upload_docx_and_text_return_content(client, test_settings, docx_bytes):
    docx_response = client.post(
        "/ask-upload",
        files={"file": ("guide.docx", docx_bytes(["หลักสูตร", "วิศวกรรมโยธา"]), DOCX_MIME_TYPE)},
    )
    text_response = client.post("/ask-upload", files={"file": ("q.txt", b"plain question", "text/plain")})

    assert docx_response.json()["content"] == "หลักสูตร\n\nวิศวกรรมโยธา"
    assert text_response.json()["content"] == "plain question"


def test_ask_upload_failure_returns_500_and_removes_file(client, test_settings):
    response = client.post("/ask-upload", files={"file": ("broken.pdf", b"%PDF-1.4 broken", "application/pdf")})

    assert response.status_code == 500
    assert response.json()["error"] == "ข้อผิดพลาดในการประมวลผลไฟล์"
    assert _uploaded_files(test_settings) == []


def test_context_refresh_invalidates_cached_provider(client, test_settings, monkeypatch):
    builds = []

    def _build():
        builds.append(1)
        return PreparedContext(website_data=str(len(builds)))

    provider = CachedContextProvider(_build)
    provider.get_context()
    monkeypatch.setattr(app_module, "context_provider", provider)

    response = client.post("/context/refresh")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "provider": "cached"}
    assert provider.get_context().website_data == "2"


def test_startup_fails_without_api_key(test_settings, monkeypatch):
    monkeypatch.setattr(app_module, "settings", replace(test_settings, gemini_api_key=None, require_api_key=True))

    with pytest.raises(RuntimeError, match="GEMINI_API_KEY"):
        with TestClient(app_module.app):
            pass


def test_startup_warms_context_and_creates_directories(test_settings, monkeypatch):
    provider = StubContextProvider(PreparedContext())
    monkeypatch.setattr(app_module, "settings", replace(test_settings, warmup_context=True))
    monkeypatch.setattr(app_module, "context_provider", provider)

    with TestClient(app_module.app) as started:
        assert started.get("/health").status_code == 200

    assert provider.calls == 1
    assert test_settings.upload_dir.is_dir()
    assert test_settings.data_dir.is_dir()


def test_startup_survives_warmup_failure(test_settings, monkeypatch):
    class _FailingProvider(StubContextProvider):
        def get_context(self):
            raise FetchFailure("boom")

    monkeypatch.setattr(app_module, "settings", replace(test_settings, warmup_context=True))
    monkeypatch.setattr(app_module, "context_provider", _FailingProvider(PreparedContext()))

    with TestClient(app_module.app) as started:
        assert started.get("/health").status_code == 200
