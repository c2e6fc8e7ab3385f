from __future__ import annotations

import os
from dataclasses import asdict, dataclass
from pathlib import Path

DEFAULT_MODEL = "gemini-2.5-pro-exp-03-25"
DEFAULT_MAX_UPLOAD_BYTES = 15 * 1024 * 1024
TRUTHY_VALUES = {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Settings:
    gemini_api_key: str | None
    gemini_model: str
    gemini_temperature: float
    gemini_top_p: float
    gemini_timeout_seconds: float
    host: str
    port: int
    cors_origins: list[str]
    upload_dir: Path
    data_dir: Path
    client_dir: Path
    max_upload_bytes: int
    context_provider: str
    scrape_timeout_seconds: float
    require_api_key: bool
    warmup_context: bool

    def to_dict(self) -> dict:
        payload = asdict(self)
        payload["gemini_api_key"] = "***" if self.gemini_api_key else None
        for key in ("upload_dir", "data_dir", "client_dir"):
            payload[key] = str(payload[key])
        return payload


def _get_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in TRUTHY_VALUES


def _get_float(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"Environment variable {name} must be a number, got '{raw}'.") from exc


def _get_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"Environment variable {name} must be an integer, got '{raw}'.") from exc


def _split_origins(raw: str) -> list[str]:
    return [origin.strip() for origin in raw.split(",") if origin.strip()] or ["*"]


def load_settings() -> Settings:
    api_key = (os.getenv("GEMINI_API_KEY") or "").strip()
    return Settings(
        gemini_api_key=api_key or None,
        gemini_model=(os.getenv("GEMINI_MODEL") or DEFAULT_MODEL).strip(),
        gemini_temperature=_get_float("GEMINI_TEMPERATURE", 0.7),
        gemini_top_p=_get_float("GEMINI_TOP_P", 0.9),
        gemini_timeout_seconds=_get_float("GEMINI_TIMEOUT_SECONDS", 120.0),
        host=(os.getenv("HOST") or "0.0.0.0").strip(),
        port=_get_int("PORT", 3000),
        cors_origins=_split_origins(os.getenv("CORS_ORIGIN", "*")),
        upload_dir=Path(os.getenv("KKU_UPLOAD_DIR", "uploads")),
        data_dir=Path(os.getenv("KKU_DATA_DIR", "data")),
        client_dir=Path(os.getenv("KKU_CLIENT_DIR", "client")),
        max_upload_bytes=_get_int("KKU_MAX_UPLOAD_BYTES", DEFAULT_MAX_UPLOAD_BYTES),
        context_provider=(os.getenv("KKU_CONTEXT_PROVIDER") or "rebuild").strip().lower(),
        scrape_timeout_seconds=_get_float("KKU_SCRAPE_TIMEOUT_SECONDS", 30.0),
        require_api_key=_get_bool("KKU_REQUIRE_API_KEY", True),
        warmup_context=_get_bool("KKU_WARMUP_CONTEXT", True),
    )
