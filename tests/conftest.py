"""
Pytest configuration and fixtures for the group manager tests.
"""
from pathlib import Path
from unittest.mock import MagicMock

import pytest
import yaml

from group_admin.web import create_app


@pytest.fixture
def settings_payload(tmp_path):
    """Minimal but complete settings file contents."""
    return {
        "auth": {
            "tenant_id": "organizations",
            "client_id": "client-id",
            "client_secret": "client-secret",
            "redirect_uri": "http://localhost/auth/callback",
        },
        "graph": {
            "resource": "https://graph.microsoft.com",
            "api_version": "v1.0",
        },
        "storage": {
            "token_cache_dir": str(tmp_path / "token_cache"),
        },
        "web": {
            "log_level": "DEBUG",
        },
    }


@pytest.fixture
def config_file(tmp_path, settings_payload) -> Path:
    path = tmp_path / "settings.yaml"
    path.write_text(yaml.safe_dump(settings_payload), encoding="utf-8")
    return path


@pytest.fixture
def app(config_file):
    flask_app = create_app(config_file)
    flask_app.config["TESTING"] = True
    return flask_app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def signed_in_client(client):
    """Test client whose session already holds a signed-in user."""
    with client.session_transaction() as sess:
        sess["user"] = {
            "name": "Ada Admin",
            "upn": "ada@contoso.example",
            "oid": "user-oid",
            "tenant_id": "tenant-id",
            "account_key": "user-oid.tenant-id",
        }
    return client


def make_response(status_code=200, payload=None, text=""):
    """Build a stand-in for ``requests.Response``."""
    response = MagicMock()
    response.status_code = status_code
    response.content = b"{}" if payload is not None else b""
    response.text = text
    if payload is None:
        response.json.side_effect = ValueError("No JSON body")
    else:
        response.json.return_value = payload
    return response
