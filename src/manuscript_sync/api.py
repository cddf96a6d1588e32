"""HTTP client for the external document store."""

import logging
from pathlib import Path
from typing import Any

import requests

from manuscript_sync.config import API_TOKEN_FILES, EXTERNAL_TIMEOUT, resolve_store_url
from manuscript_sync.errors import ExternalStoreError
from manuscript_sync.models.node import DocumentKind, ExternalDocument


def read_api_token(token_files: list[Path] | None = None) -> tuple[str, str]:
    """Return (token, path it was read from) from the first existing token file."""
    candidates = API_TOKEN_FILES if token_files is None else token_files
    for token_path in candidates:
        try:
            return token_path.read_text(encoding="utf-8").strip(), str(token_path)
        except FileNotFoundError:
            pass
    msg = f"Cannot find external store token file, was looking at {candidates!r}"
    raise RuntimeError(msg)


def parse_external_document(raw: dict[str, Any]) -> ExternalDocument:
    """Turn one listing entry into an ExternalDocument."""
    try:
        kind = DocumentKind(raw.get("kind") or DocumentKind.SCENE)
        return ExternalDocument(
            ref=raw["id"],
            name=raw["name"],
            kind=kind,
            parent_ref=raw.get("parent"),
            order=int(raw.get("order") or 0),
            synopsis=raw.get("synopsis") or "",
            modified=raw.get("modified"),
        )
    except (KeyError, TypeError, ValueError) as e:
        msg = f"Malformed document entry from external store: {raw!r} ({e})"
        raise ExternalStoreError(msg) from e


class ExternalStoreApi:
    """External store over HTTP. Every request is bounded by EXTERNAL_TIMEOUT."""

    def __init__(
        self,
        *,
        base_url: str | None = None,
        token: str | None = None,
        timeout: tuple[float, float] = EXTERNAL_TIMEOUT,
    ) -> None:
        self.base_url = (base_url or resolve_store_url()).rstrip("/")
        self.timeout = timeout
        self.sess = requests.Session()
        self.logger = logging.getLogger("api")

        token_name = "argument"
        if token is None:
            token, token_name = read_api_token()
        self.api_token = token
        self.sess.headers["Authorization"] = f"Bearer {self.api_token}"

        self.logger.debug(
            f"API ready: token from {token_name!r}, base_url {self.base_url!r}, "
            f"timeout {self.timeout!r}"
        )

    def call(self, method: str, path: str, payload: dict[str, Any] | None = None) -> dict[str, Any]:
        """Invoke an external store endpoint, return json."""
        self.logger.debug(f"Making request: {method} {path!r} {repr(payload)[:32]}")
        try:
            r = self.sess.request(
                method, f"{self.base_url}/{path}", json=payload, timeout=self.timeout
            )
            r.raise_for_status()
        except requests.Timeout as e:
            msg = f"External store timed out: {method} {path!r}"
            raise ExternalStoreError(msg) from e
        except requests.RequestException as e:
            msg = f"External store call failed: {method} {path!r} -> {e}"
            raise ExternalStoreError(msg) from e

        if not r.content:
            return {}
        try:
            rv: dict[str, Any] = r.json()
        except ValueError as e:
            msg = f"External store returned invalid JSON for {method} {path!r}"
            raise ExternalStoreError(msg) from e
        if rv.get("error"):
            msg = f"External store call failed: ({method} {path!r}) -> {rv['error']!r}"
            raise ExternalStoreError(msg)
        return rv

    def _ref(self, rv: dict[str, Any], what: str) -> str:
        ref = rv.get("id")
        if not ref:
            msg = f"External store did not return an id for the new {what}: {rv!r}"
            raise ExternalStoreError(msg)
        return str(ref)

    def create_container(self, name: str, parent_ref: str | None) -> str:
        rv = self.call("POST", "folders", {"name": name, "parent": parent_ref})
        return self._ref(rv, "folder")

    def create_leaf_document(self, name: str, parent_ref: str | None, kind: DocumentKind) -> str:
        rv = self.call("POST", "documents", {"name": name, "parent": parent_ref, "kind": str(kind)})
        return self._ref(rv, "document")

    def list_documents(self, project_ref: str) -> list[ExternalDocument]:
        rv = self.call("GET", f"projects/{project_ref}/documents")
        if "documents" not in rv:
            msg = f"bad listing keys: {rv.keys()!r}"
            raise ExternalStoreError(msg)
        return [parse_external_document(d) for d in rv["documents"]]

    def update_document(self, project_ref: str, ref: str, fields: dict[str, Any]) -> None:
        self.call("PATCH", f"projects/{project_ref}/documents/{ref}", fields)

    def delete_document(self, project_ref: str, ref: str) -> None:
        self.call("DELETE", f"projects/{project_ref}/documents/{ref}")

    def get_project_metadata(self, project_ref: str) -> dict[str, Any]:
        return self.call("GET", f"projects/{project_ref}")
