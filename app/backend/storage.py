from __future__ import annotations

import json
import os
import re
import secrets
import unicodedata
from datetime import datetime, timezone
from pathlib import Path
from tempfile import NamedTemporaryFile
from typing import Any, Dict, Optional

SAFE_TITLE_RE = re.compile(r"[^a-zA-Z0-9._-]+")


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def atomic_write_text(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = None
    try:
        tmp = NamedTemporaryFile("w", encoding="utf-8", dir=str(path.parent), delete=False)
        tmp.write(text)
        tmp.flush()
        os.fsync(tmp.fileno())
        tmp.close()
        os.replace(tmp.name, path)
    finally:
        if tmp is not None and os.path.exists(tmp.name):
            os.unlink(tmp.name)


def load_json(p: Path) -> Dict[str, Any]:
    return json.loads(p.read_text(encoding="utf-8"))


def save_json(p: Path, obj: Dict[str, Any]) -> None:
    atomic_write_text(p, json.dumps(obj, ensure_ascii=False, indent=2) + "\n")


def gen_id() -> str:
    return secrets.token_hex(4)  # 8 hex chars


def _transliterate(text: str) -> str:
    nfkd = unicodedata.normalize("NFKD", text)
    return "".join(ch for ch in nfkd if unicodedata.category(ch) != "Mn")


def slugify_title(title: str) -> str:
    title = title.strip()
    if not title:
        return ""
    title = SAFE_TITLE_RE.sub("-", _transliterate(title)).strip("-")
    return title[:60]


def mk_basename(note_id: str, user_title: str = "", created_dt: Optional[datetime] = None) -> str:
    dt = created_dt or datetime.now(timezone.utc)
    stamp = dt.strftime("%Y-%m-%d_%H-%M-%S")
    slug = slugify_title(user_title)
    if slug:
        return f"{stamp}_{note_id}_{slug}"
    return f"{stamp}_{note_id}"
