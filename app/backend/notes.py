from __future__ import annotations

import logging
import shutil
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from cryptography.fernet import Fernet, InvalidToken

from .security import VaultLockedError
from .storage import atomic_write_text, gen_id, load_json, mk_basename, save_json, slugify_title, utc_now_iso

log = logging.getLogger("pinnotes.notes")

CONTENT_EXTS = (".md", ".txt")
DECRYPT_FAILED = "[Decryption failed: wrong PIN or corrupt data]"


class NoteNotFoundError(LookupError):
    pass


class NoteStore:
    """Notes as ``<basename>.md|.txt`` plus ``<basename>.json`` metadata.

    ``cipher_provider`` returns the Fernet to encrypt with, ``None`` when PIN
    protection is off, or raises VaultLockedError when it is on but locked.
    """

    def __init__(self, data_dir: Path, cipher_provider: Callable[[], Optional[Fernet]]):
        self.notes_dir = data_dir / "notes"
        self.trash_dir = data_dir / "trash"
        self._cipher_provider = cipher_provider
        self._lock = threading.RLock()

    def ensure_dirs(self) -> None:
        self.notes_dir.mkdir(parents=True, exist_ok=True)
        self.trash_dir.mkdir(parents=True, exist_ok=True)

    # ---------- Files ----------
    def _iter_meta_paths(self) -> Iterator[Tuple[Path, bool]]:
        for base_dir, deleted in [(self.notes_dir, False), (self.trash_dir, True)]:
            for meta_path in sorted(base_dir.glob("*.json")):
                yield meta_path, deleted

    def _iter_metas(self) -> Iterator[Tuple[Path, Dict[str, Any], bool]]:
        for meta_path, deleted in self._iter_meta_paths():
            try:
                meta = load_json(meta_path)
            except (OSError, ValueError):
                log.warning("Skipping unreadable note metadata", extra={"event": "note_meta_unreadable",
                                                                        "extra_data": {"path": meta_path.name}})
                continue
            yield meta_path, meta, deleted

    @staticmethod
    def _content_path_for(meta_path: Path) -> Optional[Path]:
        for ext in CONTENT_EXTS:
            candidate = meta_path.with_suffix(ext)
            if candidate.exists():
                return candidate
        return None

    def find(self, note_id: str) -> Tuple[Optional[Path], Path, bool]:
        for meta_path, meta, deleted in self._iter_metas():
            if meta.get("id") == note_id:
                return self._content_path_for(meta_path), meta_path, deleted
        raise NoteNotFoundError(note_id)

    # ---------- Content ----------
    def _decrypt(self, raw: str, cipher: Optional[Fernet]) -> str:
        if cipher is None:
            raise VaultLockedError("Note is encrypted but no key is available")
        try:
            return cipher.decrypt(raw.strip().encode("ascii")).decode("utf-8")
        except (InvalidToken, ValueError):
            log.warning("Note decryption failed", extra={"event": "note_decrypt_failed"})
            return DECRYPT_FAILED

    def read_content(self, content_path: Optional[Path], meta: Dict[str, Any]) -> str:
        if content_path is None or not content_path.exists():
            return ""
        raw = content_path.read_text(encoding="utf-8", errors="ignore")
        if meta.get("encrypted"):
            return self._decrypt(raw, self._cipher_provider())
        return raw

    def write_content(self, content_path: Path, content: str, meta: Dict[str, Any],
                      cipher: Optional[Fernet] = None, use_provider: bool = True) -> None:
        if use_provider:
            cipher = self._cipher_provider()
        if cipher is not None:
            data = cipher.encrypt(content.encode("utf-8")).decode("ascii")
            meta["encrypted"] = True
        else:
            data = content
            meta["encrypted"] = False
        atomic_write_text(content_path, data)

    # ---------- Queries ----------
    def list(self, include_deleted: bool = False, q: str = "", sort_key: str = "updated") -> List[Dict[str, Any]]:
        self.ensure_dirs()
        metas: List[Dict[str, Any]] = []
        for meta_path, meta, deleted in self._iter_metas():
            meta["deleted"] = bool(meta.get("deleted", deleted))
            if meta["deleted"] and not include_deleted:
                continue
            if q and not self._matches(meta_path, meta, q):
                continue
            metas.append(meta)
        return sort_metas(metas, sort_key)

    def _matches(self, meta_path: Path, meta: Dict[str, Any], q: str) -> bool:
        q = q.lower()
        if q in (meta.get("filename") or "").lower() or q in (meta.get("title") or "").lower():
            return True
        return q in self.read_content(self._content_path_for(meta_path), meta).lower()

    def count(self) -> int:
        self.ensure_dirs()
        return sum(1 for _ in self.notes_dir.glob("*.json"))

    def get(self, note_id: str) -> Tuple[Dict[str, Any], str]:
        content_path, meta_path, deleted = self.find(note_id)
        meta = load_json(meta_path)
        meta["deleted"] = bool(meta.get("deleted", deleted))
        return meta, self.read_content(content_path, meta)

    # ---------- Mutations ----------
    def create(self, ext: str = "md", title: str = "", content: str = "") -> Dict[str, Any]:
        self.ensure_dirs()
        if ext not in ("md", "txt"):
            ext = "md"
        created_dt = datetime.now(timezone.utc).replace(microsecond=0)
        with self._lock:
            for _ in range(20):
                note_id = gen_id()
                basename = mk_basename(note_id, user_title=title, created_dt=created_dt)
                content_path = self.notes_dir / f"{basename}.{ext}"
                meta_path = self.notes_dir / f"{basename}.json"
                if not content_path.exists() and not meta_path.exists():
                    break
            else:
                raise RuntimeError("Failed to allocate note id")

            created_iso = created_dt.isoformat().replace("+00:00", "Z")
            meta: Dict[str, Any] = {
                "id": note_id,
                "created": created_iso,
                "updated": created_iso,
                "rev": 1,
                "filename": content_path.name,
                "title": title.strip(),
                "pinned": False,
                "deleted": False,
                "encrypted": False,
            }
            self.write_content(content_path, content, meta)
            save_json(meta_path, meta)
        log.info("Note created", extra={"event": "note_created", "extra_data": {"note_id": note_id}})
        return meta

    def save_content(self, note_id: str, content: str) -> Dict[str, Any]:
        with self._lock:
            content_path, meta_path, deleted = self.find(note_id)
            if deleted:
                raise ValueError("Note is deleted")
            meta = load_json(meta_path)
            meta["rev"] = int(meta.get("rev", 0)) + 1
            meta["updated"] = utc_now_iso()
            if content_path is None:
                content_path = meta_path.parent / meta.get("filename", meta_path.with_suffix(".md").name)
            self.write_content(content_path, content, meta)
            save_json(meta_path, meta)
        return meta

    def update_meta(self, note_id: str, title: Optional[str] = None, pinned: Optional[bool] = None) -> Dict[str, Any]:
        with self._lock:
            content_path, meta_path, deleted = self.find(note_id)
            if deleted:
                raise ValueError("Note is deleted")
            meta = load_json(meta_path)
            if pinned is not None:
                meta["pinned"] = bool(pinned)
            if title is not None:
                meta["title"] = str(title).strip()
                stamp = meta_path.name.split(f"_{note_id}", 1)[0]
                slug = slugify_title(meta["title"])
                new_basename = f"{stamp}_{note_id}_{slug}" if slug else f"{stamp}_{note_id}"
                new_meta_path = meta_path.with_name(f"{new_basename}.json")
                if new_meta_path != meta_path:
                    if new_meta_path.exists():
                        raise FileExistsError("Target filename already exists")
                    if content_path is not None:
                        new_content_path = content_path.with_name(new_basename + content_path.suffix)
                        content_path.rename(new_content_path)
                        meta["filename"] = new_content_path.name
                    meta_path.rename(new_meta_path)
                    meta_path = new_meta_path
            meta["updated"] = utc_now_iso()
            meta["rev"] = int(meta.get("rev", 0)) + 1
            save_json(meta_path, meta)
        log.info("Note metadata updated", extra={"event": "note_meta_updated", "extra_data": {"note_id": note_id}})
        return meta

    def delete(self, note_id: str) -> bool:
        """Move a note to the trash. Returns False if it already was there."""
        with self._lock:
            content_path, meta_path, deleted = self.find(note_id)
            if deleted:
                return False
            self._move(content_path, meta_path, self.trash_dir, deleted=True)
        log.info("Note deleted", extra={"event": "note_deleted", "extra_data": {"note_id": note_id}})
        return True

    def restore(self, note_id: str) -> bool:
        with self._lock:
            content_path, meta_path, deleted = self.find(note_id)
            if not deleted:
                return False
            self._move(content_path, meta_path, self.notes_dir, deleted=False)
        log.info("Note restored", extra={"event": "note_restored", "extra_data": {"note_id": note_id}})
        return True

    def _move(self, content_path: Optional[Path], meta_path: Path, target_dir: Path, deleted: bool) -> None:
        target_dir.mkdir(parents=True, exist_ok=True)
        meta = load_json(meta_path)
        meta["deleted"] = deleted
        meta["updated"] = utc_now_iso()
        meta["rev"] = int(meta.get("rev", 0)) + 1
        if content_path is not None and content_path.exists():
            shutil.move(str(content_path), str(target_dir / content_path.name))
        target_meta = target_dir / meta_path.name
        shutil.move(str(meta_path), str(target_meta))
        save_json(target_meta, meta)

    def rekey(self, old_cipher: Optional[Fernet], new_cipher: Optional[Fernet],
              commit: Optional[Callable[[], None]] = None) -> int:
        """Rewrite every note, trash included, under ``new_cipher``.

        Encrypted notes are opened with ``old_cipher``; ``new_cipher=None``
        leaves them in plaintext. Every note is decrypted before the first
        one is rewritten, so a note that fails to open aborts the rekey with
        nothing on disk changed. ``commit`` runs under the store lock after
        the rewrite; it is where the caller swaps in the matching config and
        key, so no write can land between the two.
        """
        self.ensure_dirs()
        with self._lock:
            pending = []
            for meta_path, meta, _deleted in list(self._iter_metas()):
                content_path = self._content_path_for(meta_path)
                if content_path is None:
                    pending.append((meta_path, meta, None, None))
                    continue
                raw = content_path.read_text(encoding="utf-8", errors="ignore")
                if meta.get("encrypted"):
                    if old_cipher is None:
                        raise VaultLockedError("Encrypted note found but no key to open it")
                    try:
                        plaintext = old_cipher.decrypt(raw.strip().encode("ascii")).decode("utf-8")
                    except (InvalidToken, UnicodeError):
                        log.error("Note cannot be decrypted, rekey aborted", extra={
                            "event": "rekey_aborted", "extra_data": {"id": meta.get("id")}})
                        raise
                else:
                    plaintext = raw
                pending.append((meta_path, meta, content_path, plaintext))

            for meta_path, meta, content_path, plaintext in pending:
                if content_path is None:
                    meta["encrypted"] = new_cipher is not None
                else:
                    self.write_content(content_path, plaintext, meta, cipher=new_cipher, use_provider=False)
                save_json(meta_path, meta)

            if commit is not None:
                commit()
        rewritten = sum(1 for entry in pending if entry[2] is not None)
        log.info("Notes rekeyed", extra={"event": "notes_rekeyed",
                                         "extra_data": {"count": rewritten, "encrypted": new_cipher is not None}})
        return rewritten


def sort_metas(metas: List[Dict[str, Any]], sort_key: str) -> List[Dict[str, Any]]:
    def pinned_rank(m: Dict[str, Any]) -> int:
        return 0 if m.get("pinned") else 1

    if sort_key == "created":
        by_created = sorted(metas, key=lambda m: m.get("created", ""), reverse=True)
        return sorted(by_created, key=pinned_rank)
    if sort_key == "filename":
        by_filename = sorted(metas, key=lambda m: m.get("filename", ""))
        return sorted(by_filename, key=pinned_rank)
    by_updated = sorted(metas, key=lambda m: m.get("updated", ""), reverse=True)
    return sorted(by_updated, key=pinned_rank)
