from __future__ import annotations

import base64
import json
import logging
import os
import secrets
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .storage import atomic_write_text

log = logging.getLogger("pinnotes.security")

DEFAULT_KDF_ITERATIONS = 480_000
SALT_SIZE = 16
PIN_MIN_LEN = 6
PIN_MAX_LEN = 32
_VERIFY_MARKER = b"PINNOTES_PIN_OK"
NOTES_UNREADABLE = "A note could not be decrypted; PIN unchanged"


class SecurityConfigError(RuntimeError):
    """security.json exists but cannot be trusted."""


class VaultLockedError(RuntimeError):
    pass


# ---------- Key derivation ----------
def derive_fernet_key(pin: str, salt: bytes, iterations: int) -> bytes:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt,
        iterations=iterations,
    )
    return base64.urlsafe_b64encode(kdf.derive(pin.encode("utf-8")))


def validate_pin(pin: str) -> Optional[str]:
    """Return an error message if the PIN is not acceptable, else None."""
    if len(pin) < PIN_MIN_LEN or len(pin) > PIN_MAX_LEN:
        return f"PIN must be {PIN_MIN_LEN}-{PIN_MAX_LEN} characters"
    if not all(ch.isascii() and ch.isalnum() for ch in pin):
        return "PIN must be alphanumeric only"
    return None


@dataclass(frozen=True)
class PinHeader:
    salt: str
    verify_data: str
    iterations: int = DEFAULT_KDF_ITERATIONS

    @classmethod
    def create(cls, pin: str, iterations: int) -> "PinHeader":
        salt = secrets.token_bytes(SALT_SIZE)
        key = derive_fernet_key(pin, salt, iterations)
        token = Fernet(key).encrypt(_VERIFY_MARKER).decode("ascii")
        return cls(salt=salt.hex(), verify_data=token, iterations=iterations)

    def derive(self, pin: str) -> Fernet:
        return Fernet(derive_fernet_key(pin, bytes.fromhex(self.salt), self.iterations))

    def verify(self, pin: str) -> Optional[Fernet]:
        """Derive the cipher for ``pin`` and return it only if it opens the verifier."""
        cipher = self.derive(pin)
        try:
            ok = cipher.decrypt(self.verify_data.encode("ascii")) == _VERIFY_MARKER
        except InvalidToken:
            return None
        return cipher if ok else None

    def to_dict(self) -> Dict[str, Any]:
        return {"salt": self.salt, "verify_data": self.verify_data, "iterations": self.iterations}

    @classmethod
    def from_dict(cls, data: Any) -> "PinHeader":
        if not isinstance(data, dict):
            raise SecurityConfigError("header must be an object")
        try:
            salt = str(data["salt"])
            bytes.fromhex(salt)
            return cls(
                salt=salt,
                verify_data=str(data["verify_data"]),
                iterations=int(data.get("iterations", DEFAULT_KDF_ITERATIONS)),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise SecurityConfigError(f"invalid header: {e}") from e


# ---------- SecurityConfig ----------
@dataclass(frozen=True)
class SecurityConfig:
    pin_enabled: bool = False
    header: Optional[PinHeader] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pin_enabled": self.pin_enabled,
            "header": self.header.to_dict() if self.header else None,
        }

    @classmethod
    def from_dict(cls, data: Any) -> "SecurityConfig":
        if not isinstance(data, dict):
            raise SecurityConfigError("security settings must be an object")
        pin_enabled = data.get("pin_enabled", False)
        if not isinstance(pin_enabled, bool):
            raise SecurityConfigError("pin_enabled must be a boolean")
        raw_header = data.get("header")
        header = PinHeader.from_dict(raw_header) if raw_header is not None else None
        if pin_enabled and header is None:
            raise SecurityConfigError("pin_enabled is set but no PIN header is stored")
        return cls(pin_enabled=pin_enabled, header=header if pin_enabled else None)


class SecurityStore:
    """Persisted SecurityConfig.

    Readers get the current immutable snapshot without locking; writers
    persist first and then swap the snapshot under ``_write_lock``.
    """

    def __init__(self, path: Path):
        self.path = path
        self._write_lock = threading.Lock()
        self._config = self._load()

    def _load(self) -> SecurityConfig:
        if not self.path.exists():
            return SecurityConfig()
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise SecurityConfigError(f"cannot read {self.path}: {e}") from e
        return SecurityConfig.from_dict(data)

    def snapshot(self) -> SecurityConfig:
        return self._config

    def replace(self, config: SecurityConfig) -> None:
        with self._write_lock:
            atomic_write_text(self.path, json.dumps(config.to_dict(), ensure_ascii=False, indent=2) + "\n")
            self._config = config


# ---------- UnlockState ----------
class UnlockState:
    """Process-wide holder of the derived cipher. Empty means locked."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._cipher: Optional[Fernet] = None

    def is_unlocked(self) -> bool:
        return self._cipher is not None

    def set(self, cipher: Fernet) -> None:
        with self._lock:
            self._cipher = cipher

    def clear(self) -> None:
        with self._lock:
            self._cipher = None

    def cipher(self) -> Optional[Fernet]:
        return self._cipher

    def require_cipher(self) -> Fernet:
        cipher = self._cipher
        if cipher is None:
            raise VaultLockedError("Vault is locked")
        return cipher


# ---------- Unlock/lock collaborator ----------
@dataclass(frozen=True)
class SecurityResult:
    success: bool
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return {"success": self.success, "message": self.message}


class SecurityManager:
    """Owns every transition of the lock state machine.

    ``notes`` is any object with ``rekey(old_cipher, new_cipher, commit=...)``.
    It is invoked while the manager's mutation lock is held so a PIN change
    never interleaves with another one.
    """

    def __init__(self, store: SecurityStore, unlock_state: UnlockState, notes: Any = None,
                 kdf_iterations: Optional[int] = None):
        self.store = store
        self.unlock_state = unlock_state
        self.notes = notes
        self.kdf_iterations = kdf_iterations or _iterations_from_env()
        self._mutation_lock = threading.RLock()

    def status(self) -> Dict[str, bool]:
        enabled = self.store.snapshot().pin_enabled
        return {"enabled": enabled, "locked": enabled and not self.unlock_state.is_unlocked()}

    def unlock(self, pin: str) -> SecurityResult:
        with self._mutation_lock:
            config = self.store.snapshot()
            if not config.pin_enabled or config.header is None:
                return SecurityResult(True, "PIN is not set")
            cipher = config.header.verify(pin)
            if cipher is None:
                log.warning("Unlock failed", extra={"event": "unlock_failed"})
                return SecurityResult(False, "Invalid PIN")
            self.unlock_state.set(cipher)
        log.info("Unlocked", extra={"event": "unlocked"})
        return SecurityResult(True, "Unlocked")

    def lock(self) -> SecurityResult:
        with self._mutation_lock:
            self.unlock_state.clear()
        log.info("Locked", extra={"event": "locked"})
        return SecurityResult(True, "Locked")

    def set_pin(self, new_pin: str, current_pin: Optional[str] = None) -> SecurityResult:
        problem = validate_pin(new_pin)
        if problem:
            return SecurityResult(False, problem)
        with self._mutation_lock:
            config = self.store.snapshot()
            old_cipher: Optional[Fernet] = None
            if config.pin_enabled and config.header is not None:
                if not current_pin:
                    return SecurityResult(False, "Current PIN is required")
                old_cipher = config.header.verify(current_pin)
                if old_cipher is None:
                    log.warning("PIN change rejected", extra={"event": "unlock_failed"})
                    return SecurityResult(False, "Current PIN is incorrect")
            header = PinHeader.create(new_pin, self.kdf_iterations)
            new_cipher = header.derive(new_pin)

            def commit() -> None:
                self.store.replace(SecurityConfig(pin_enabled=True, header=header))
                self.unlock_state.set(new_cipher)

            try:
                self._rekey_and_commit(old_cipher, new_cipher, commit)
            except (InvalidToken, UnicodeError):
                return SecurityResult(False, NOTES_UNREADABLE)
        log.info("PIN set", extra={"event": "pin_set", "extra_data": {"changed": old_cipher is not None}})
        return SecurityResult(True, "PIN has been set")

    def remove_pin(self, pin: str) -> SecurityResult:
        with self._mutation_lock:
            config = self.store.snapshot()
            if not config.pin_enabled or config.header is None:
                return SecurityResult(False, "PIN is not set")
            cipher = config.header.verify(pin)
            if cipher is None:
                log.warning("PIN removal rejected", extra={"event": "unlock_failed"})
                return SecurityResult(False, "Invalid PIN")

            def commit() -> None:
                self.store.replace(SecurityConfig())
                self.unlock_state.clear()

            try:
                self._rekey_and_commit(cipher, None, commit)
            except (InvalidToken, UnicodeError):
                return SecurityResult(False, NOTES_UNREADABLE)
        log.info("PIN removed", extra={"event": "pin_removed"})
        return SecurityResult(True, "PIN has been removed")

    def _rekey_and_commit(self, old_cipher: Optional[Fernet], new_cipher: Optional[Fernet],
                          commit: Callable[[], None]) -> None:
        # The note store runs ``commit`` under its own lock once every note
        # is rewritten, so no note write lands between the rewrite and the swap.
        if self.notes is None:
            commit()
        else:
            self.notes.rekey(old_cipher, new_cipher, commit=commit)


def _iterations_from_env() -> int:
    raw = os.environ.get("PIN_KDF_ITERATIONS", "").strip()
    if not raw:
        return DEFAULT_KDF_ITERATIONS
    try:
        value = int(raw)
    except ValueError:
        return DEFAULT_KDF_ITERATIONS
    return value if value > 0 else DEFAULT_KDF_ITERATIONS
