from __future__ import annotations

from dataclasses import asdict, dataclass
from types import MappingProxyType
from typing import Iterable, Mapping


@dataclass(frozen=True)
class ResourceEntry:
    title: str
    url: str

    def to_dict(self) -> dict:
        return asdict(self)


RESOURCES: Mapping[str, tuple[ResourceEntry, ...]] = MappingProxyType(
    {
        "admission": (
            ResourceEntry(title="ระบบรับสมัครนักศึกษา", url="https://www.admissions.kku.ac.th"),
            ResourceEntry(title="เว็บไซต์คณะวิศวกรรมศาสตร์", url="https://www.en.kku.ac.th"),
        ),
        "tuition": (
            ResourceEntry(
                title="ค่าธรรมเนียมการศึกษาปริญญาตรี",
                url="https://www.en.kku.ac.th/web/tuition-fees",
            ),
        ),
        "curriculum": (
            ResourceEntry(
                title="หลักสูตรวิศวกรรมศาสตร์",
                url="https://www.en.kku.ac.th/web/curriculum",
            ),
        ),
    }
)

# Checked in this order; the first category that lists a URL keeps it.
CATEGORY_TRIGGERS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("admission", ("สมัคร", "รับเข้า", "apply", "admission")),
    ("tuition", ("ค่าเทอม", "ค่าธรรมเนียม", "tuition", "fee")),
    ("curriculum", ("หลักสูตร", "วิชา", "curriculum", "subject")),
)

RESOURCE_LINKS_HEADER = "แหล่งข้อมูลเพิ่มเติม:"


def matching_categories(query: str | None) -> list[str]:
    lowered = (query or "").lower()
    if not lowered.strip():
        return []
    return [
        category
        for category, triggers in CATEGORY_TRIGGERS
        if any(trigger in lowered for trigger in triggers)
    ]


def find_relevant_resources(query: str | None) -> list[ResourceEntry]:
    """Return resource entries whose category triggers appear in ``query``.

    Matching is a case-insensitive substring test. Entries are de-duplicated
    by URL with the first occurrence kept, so identical queries always yield
    the same list.
    """
    seen_urls: set[str] = set()
    matched: list[ResourceEntry] = []
    for category in matching_categories(query):
        for entry in RESOURCES[category]:
            if entry.url in seen_urls:
                continue
            seen_urls.add(entry.url)
            matched.append(entry)
    return matched


def format_resource_links(entries: Iterable[ResourceEntry]) -> str:
    lines = [f"- [{entry.title}]({entry.url})" for entry in entries]
    if not lines:
        return ""
    return f"\n\n{RESOURCE_LINKS_HEADER}\n" + "\n".join(lines)


def resource_table_payload() -> dict[str, list[dict]]:
    return {
        category: [entry.to_dict() for entry in entries]
        for category, entries in RESOURCES.items()
    }
