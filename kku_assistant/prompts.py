from __future__ import annotations

from typing import Any

from kku_assistant.context_builder import PreparedContext
from kku_assistant.extraction import ExtractedContent, ExtractedImage, ExtractedText
from kku_assistant.llm_provider import inline_data_part, text_part

ROLE_PREAMBLE = "คุณเป็นผู้ช่วยตอบคำถามสำหรับคณะวิศวกรรมศาสตร์ มหาวิทยาลัยขอนแก่น"
CHAT_INSTRUCTION = "กรุณาตอบคำถามต่อไปนี้อย่างถูกต้องและกระชับ:"
ASK_INSTRUCTION = "กรุณาตอบคำถามต่อไปนี้โดยอ้างอิงจากข้อมูลด้านล่าง:"
FILE_ONLY_PLACEHOLDER = "(ไม่มีข้อความ, ผู้ใช้ส่งเฉพาะไฟล์)"
UPLOADED_CONTENT_HEADER = "เนื้อหาไฟล์ที่อัปโหลด:"


def build_chat_parts(message: str | None, extracted: ExtractedContent | None = None) -> list[dict[str, Any]]:
    """Assemble the ``/chat`` prompt.

    Extracted text is appended to the single text part; image data becomes a
    second, inline part.
    """
    prompt = "\n".join(
        [
            ROLE_PREAMBLE,
            CHAT_INSTRUCTION,
            "",
            "คำถามหรือข้อความจากผู้ใช้:",
            message or FILE_ONLY_PLACEHOLDER,
            "",
            "คำตอบ:",
        ]
    )

    if isinstance(extracted, ExtractedText):
        prompt += f"\n\n{UPLOADED_CONTENT_HEADER}\n{extracted.content}"

    parts = [text_part(prompt)]
    if isinstance(extracted, ExtractedImage):
        parts.append(inline_data_part(extracted.data, extracted.mime_type))
    return parts


def build_ask_parts(question: str, context: PreparedContext) -> list[dict[str, Any]]:
    return [
        text_part(ROLE_PREAMBLE),
        text_part(ASK_INSTRUCTION),
        text_part(f"คำถาม: {question}"),
        text_part("ข้อมูลอ้างอิง:\n" + context.to_prompt_text()),
    ]
