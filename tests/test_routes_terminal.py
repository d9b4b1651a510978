"""Tests for the terminal command route."""

from __future__ import annotations

import pytest
from conftest import SANDBOX_ID, FakeSandboxProvider
from fastapi import status
from fastapi.testclient import TestClient

from workspace_engine.providers.base import PreviewLink


def test_unreachable_terminal_reports_failure(
    fastapi_client: TestClient,
    fake_provider: FakeSandboxProvider,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Test delivery failures come back as success=false, not an HTTP error."""

    async def dead_link(sandbox_id: str, port: int) -> PreviewLink:
        return PreviewLink(url="http://127.0.0.1:1", token=None)

    monkeypatch.setattr(fake_provider, "get_preview_link", dead_link)
    response = fastapi_client.post(
        "/send-terminal-command",
        json={"sandboxId": SANDBOX_ID, "command": "npm test"},
    )
    assert response.status_code == status.HTTP_200_OK
    data = response.json()
    assert data["success"] is False
    assert data["bytesSent"] == 0


def test_unknown_repository(fastapi_client: TestClient) -> None:
    """Test an unknown repository is 404."""
    response = fastapi_client.post(
        "/send-terminal-command",
        json={"sandboxId": SANDBOX_ID, "repositoryId": "missing", "command": "ls"},
    )
    assert response.status_code == status.HTTP_404_NOT_FOUND


def test_invalid_sandbox_id(fastapi_client: TestClient) -> None:
    """Test unsafe sandbox IDs are 400."""
    response = fastapi_client.post(
        "/send-terminal-command",
        json={"sandboxId": "../x", "command": "ls"},
    )
    assert response.status_code == status.HTTP_400_BAD_REQUEST


def test_unknown_target(fastapi_client: TestClient) -> None:
    """Test targets other than terminal and agent fail validation."""
    response = fastapi_client.post(
        "/send-terminal-command",
        json={"sandboxId": SANDBOX_ID, "target": "editor", "command": "ls"},
    )
    assert response.status_code == 422
