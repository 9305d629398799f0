import pytest

from app.backend.server import create_app

# Keeps PIN derivation fast; production default is far higher.
KDF_ITERATIONS = 1_000

PIN = "abc123"


@pytest.fixture
def app(tmp_path):
    app = create_app(
        data_dir=tmp_path / "data",
        config_dir=tmp_path / "config",
        kdf_iterations=KDF_ITERATIONS,
    )
    app.config["TESTING"] = True
    return app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def state(app):
    return app.extensions["pinnotes"]


@pytest.fixture
def locked_client(client):
    """PIN set, then locked."""
    assert client.post("/api/security/set-pin", json={"new_pin": PIN}).get_json()["success"] is True
    assert client.post("/api/security/lock").get_json()["success"] is True
    return client
