"""Tests for ExternalStoreApi, the HTTP client for the external document store."""

import json
from pathlib import Path
from typing import Any
from unittest.mock import MagicMock, patch

import pytest
import requests

from manuscript_sync.api import ExternalStoreApi, parse_external_document, read_api_token
from manuscript_sync.errors import ExternalStoreError
from manuscript_sync.models.node import DocumentKind


@pytest.fixture
def api_with_mock_session(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> tuple[ExternalStoreApi, MagicMock]:
    """Create an ExternalStoreApi with a real token file and mocked requests.Session."""
    token_file = tmp_path / "token.txt"
    token_file.write_text("test-token\n")
    monkeypatch.setattr("manuscript_sync.api.API_TOKEN_FILES", [token_file])

    with patch("manuscript_sync.api.requests.Session") as mock_session_cls:
        mock_session = MagicMock()
        mock_session.headers = {}
        mock_session_cls.return_value = mock_session
        api = ExternalStoreApi(base_url="http://store.test/api/")

    return api, mock_session


def _make_response(data: dict[str, Any] | None) -> MagicMock:
    """Create a mock HTTP response with given JSON data."""
    response = MagicMock()
    response.content = b"" if data is None else json.dumps(data).encode()
    response.json.return_value = data
    return response


def test_init_reads_token_from_first_found_file(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    token_file = tmp_path / "token.txt"
    token_file.write_text("my-secret-token\n")
    monkeypatch.setattr(
        "manuscript_sync.api.API_TOKEN_FILES", [tmp_path / "missing.txt", token_file]
    )

    with patch("manuscript_sync.api.requests.Session"):
        api = ExternalStoreApi()

    assert api.api_token == "my-secret-token"


def test_read_api_token_raises_when_no_file_exists(tmp_path: Path) -> None:
    with pytest.raises(RuntimeError, match="Cannot find"):
        read_api_token([tmp_path / "nope.txt"])


def test_session_sends_bearer_token(
    api_with_mock_session: tuple[ExternalStoreApi, MagicMock],
) -> None:
    _api, session = api_with_mock_session
    assert session.headers["Authorization"] == "Bearer test-token"


def test_store_url_comes_from_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("MANUSCRIPT_STORE_URL", "https://books.example/api/")
    with patch("manuscript_sync.api.requests.Session"):
        api = ExternalStoreApi(token="t")
    assert api.base_url == "https://books.example/api"


def test_create_leaf_document_posts_and_returns_ref(
    api_with_mock_session: tuple[ExternalStoreApi, MagicMock],
) -> None:
    api, session = api_with_mock_session
    session.request.return_value = _make_response({"id": "doc-42"})

    ref = api.create_leaf_document("Opening", "folder-1", DocumentKind.SCENE)

    assert ref == "doc-42"
    method, url = session.request.call_args.args
    assert (method, url) == ("POST", "http://store.test/api/documents")
    assert session.request.call_args.kwargs["json"] == {
        "name": "Opening",
        "parent": "folder-1",
        "kind": "scene",
    }
    assert session.request.call_args.kwargs["timeout"] == api.timeout


def test_create_container_without_id_raises(
    api_with_mock_session: tuple[ExternalStoreApi, MagicMock],
) -> None:
    api, session = api_with_mock_session
    session.request.return_value = _make_response({"ok": True})
    with pytest.raises(ExternalStoreError, match="did not return an id"):
        api.create_container("Draft", None)


def test_list_documents_parses_entries(
    api_with_mock_session: tuple[ExternalStoreApi, MagicMock],
) -> None:
    api, session = api_with_mock_session
    session.request.return_value = _make_response(
        {
            "documents": [
                {"id": "a", "name": "Part", "kind": "part", "parent": "root", "order": 1},
                {"id": "b", "name": "Untyped", "parent": "a"},
            ]
        }
    )

    docs = api.list_documents("root")

    assert [d.ref for d in docs] == ["a", "b"]
    assert docs[0].kind == DocumentKind.PART
    assert docs[0].order == 1
    assert docs[1].kind == DocumentKind.SCENE
    assert session.request.call_args.args == (
        "GET",
        "http://store.test/api/projects/root/documents",
    )


def test_list_documents_rejects_bad_listing(
    api_with_mock_session: tuple[ExternalStoreApi, MagicMock],
) -> None:
    api, session = api_with_mock_session
    session.request.return_value = _make_response({"items": []})
    with pytest.raises(ExternalStoreError, match="bad listing"):
        api.list_documents("root")


def test_timeout_becomes_external_store_error(
    api_with_mock_session: tuple[ExternalStoreApi, MagicMock],
) -> None:
    api, session = api_with_mock_session
    session.request.side_effect = requests.Timeout("read timed out")
    with pytest.raises(ExternalStoreError, match="timed out"):
        api.delete_document("root", "doc-1")


def test_http_error_becomes_external_store_error(
    api_with_mock_session: tuple[ExternalStoreApi, MagicMock],
) -> None:
    api, session = api_with_mock_session
    response = _make_response({})
    response.raise_for_status.side_effect = requests.HTTPError("500 Server Error")
    session.request.return_value = response
    with pytest.raises(ExternalStoreError, match="500"):
        api.get_project_metadata("root")


def test_error_payload_becomes_external_store_error(
    api_with_mock_session: tuple[ExternalStoreApi, MagicMock],
) -> None:
    api, session = api_with_mock_session
    session.request.return_value = _make_response({"error": "Permission denied"})
    with pytest.raises(ExternalStoreError, match="Permission denied"):
        api.update_document("root", "doc-1", {"name": "x"})


def test_empty_response_body_is_accepted(
    api_with_mock_session: tuple[ExternalStoreApi, MagicMock],
) -> None:
    api, session = api_with_mock_session
    session.request.return_value = _make_response(None)
    api.delete_document("root", "doc-1")
    assert session.request.call_args.args == (
        "DELETE",
        "http://store.test/api/projects/root/documents/doc-1",
    )


def test_parse_external_document_rejects_missing_name() -> None:
    with pytest.raises(ExternalStoreError, match="Malformed"):
        parse_external_document({"id": "x"})
