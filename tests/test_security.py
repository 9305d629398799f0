import json

import pytest

from app.backend.security import (
    PinHeader,
    SecurityConfig,
    SecurityConfigError,
    SecurityManager,
    SecurityStore,
    UnlockState,
    VaultLockedError,
    validate_pin,
)
from app.backend.server import AppState, create_app
from conftest import KDF_ITERATIONS, PIN


@pytest.fixture
def manager(tmp_path):
    store = SecurityStore(tmp_path / "security.json")
    return SecurityManager(store, UnlockState(), kdf_iterations=KDF_ITERATIONS)


@pytest.mark.parametrize("pin,expected", [
    ("abc123", None),
    ("A" * 32, None),
    ("abc12", "PIN must be 6-32 characters"),
    ("a" * 33, "PIN must be 6-32 characters"),
    ("abc 123", "PIN must be alphanumeric only"),
    ("abc-123", "PIN must be alphanumeric only"),
    ("äbc123", "PIN must be alphanumeric only"),
])
def test_validate_pin(pin, expected):
    assert validate_pin(pin) == expected


def test_header_verifies_only_the_right_pin():
    header = PinHeader.create(PIN, KDF_ITERATIONS)
    assert header.verify(PIN) is not None
    assert header.verify("wrong1") is None
    assert header.iterations == KDF_ITERATIONS


def test_headers_use_fresh_salt():
    assert PinHeader.create(PIN, KDF_ITERATIONS).salt != PinHeader.create(PIN, KDF_ITERATIONS).salt


def test_missing_file_means_pin_disabled(tmp_path):
    store = SecurityStore(tmp_path / "security.json")
    assert store.snapshot() == SecurityConfig(pin_enabled=False, header=None)


@pytest.mark.parametrize("raw", [
    "not json",
    json.dumps([1, 2]),
    json.dumps({"pin_enabled": "yes"}),
    json.dumps({"pin_enabled": True, "header": None}),
    json.dumps({"pin_enabled": True, "header": {"salt": "zz", "verify_data": "x"}}),
])
def test_corrupt_file_refuses_to_load(tmp_path, raw):
    path = tmp_path / "security.json"
    path.write_text(raw, encoding="utf-8")
    with pytest.raises(SecurityConfigError):
        SecurityStore(path)


def test_corrupt_file_aborts_app_startup(tmp_path):
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    (config_dir / "security.json").write_text("{", encoding="utf-8")
    with pytest.raises(SecurityConfigError):
        create_app(data_dir=tmp_path / "data", config_dir=config_dir)


def test_unlock_without_pin_reports_not_set(manager):
    result = manager.unlock("whatever")
    assert result.success is True
    assert result.message == "PIN is not set"
    assert manager.unlock_state.is_unlocked() is False


def test_set_pin_persists_and_unlocks(manager):
    result = manager.set_pin(PIN)
    assert result.success is True
    assert manager.unlock_state.is_unlocked() is True

    saved = json.loads(manager.store.path.read_text(encoding="utf-8"))
    assert saved["pin_enabled"] is True
    assert saved["header"]["iterations"] == KDF_ITERATIONS


def test_set_pin_rejects_invalid_pin(manager):
    result = manager.set_pin("12")
    assert result.success is False
    assert manager.store.snapshot().pin_enabled is False


def test_change_pin_requires_current(manager):
    manager.set_pin(PIN)
    assert manager.set_pin("new456").message == "Current PIN is required"
    assert manager.set_pin("new456", current_pin="nope99").message == "Current PIN is incorrect"

    assert manager.set_pin("new456", current_pin=PIN).success is True
    manager.lock()
    assert manager.unlock(PIN).success is False
    assert manager.unlock("new456").success is True


def test_remove_pin(manager):
    assert manager.remove_pin(PIN).message == "PIN is not set"
    manager.set_pin(PIN)
    assert manager.remove_pin("nope99").success is False
    assert manager.store.snapshot().pin_enabled is True

    assert manager.remove_pin(PIN).success is True
    assert manager.store.snapshot().pin_enabled is False
    assert manager.unlock_state.is_unlocked() is False
    assert manager.status() == {"enabled": False, "locked": False}


def test_restart_comes_up_locked(tmp_path):
    first = AppState(tmp_path / "data", tmp_path / "config", kdf_iterations=KDF_ITERATIONS)
    first.manager.set_pin(PIN)
    assert first.manager.status() == {"enabled": True, "locked": False}

    second = AppState(tmp_path / "data", tmp_path / "config", kdf_iterations=KDF_ITERATIONS)
    assert second.manager.status() == {"enabled": True, "locked": True}
    assert second.manager.unlock(PIN).success is True


def test_require_cipher_while_locked():
    with pytest.raises(VaultLockedError):
        UnlockState().require_cipher()


def test_iterations_from_env(tmp_path, monkeypatch):
    monkeypatch.setenv("PIN_KDF_ITERATIONS", "1234")
    manager = SecurityManager(SecurityStore(tmp_path / "s.json"), UnlockState())
    assert manager.kdf_iterations == 1234

    monkeypatch.setenv("PIN_KDF_ITERATIONS", "junk")
    manager = SecurityManager(SecurityStore(tmp_path / "s.json"), UnlockState())
    assert manager.kdf_iterations == 480_000


def test_set_pin_api_validation(client):
    resp = client.post("/api/security/set-pin", json={"new_pin": "short"})
    assert resp.get_json() == {"success": False, "message": "PIN must be 6-32 characters"}

    resp = client.post("/api/security/set-pin", json={"new_pin": 123456})
    assert resp.status_code == 400
    assert resp.get_json()["success"] is False


def test_unlock_api_requires_pin_field(client):
    resp = client.post("/api/security/unlock", json={})
    assert resp.status_code == 400
