from __future__ import annotations

import json
import logging
import os
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence, Tuple
from urllib.parse import quote

import requests

from ..config import BATCH_CALL_TIMEOUT, SINGLE_CALL_TIMEOUT
from ..infrastructure.error_handling import (
    ErrorCategory,
    RateLimitedError,
    RemoteAPIError,
    is_not_found,
)
from ..models import (
    BatchResponse,
    CreateChild,
    CreateParent,
    Delete,
    DeleteOutcome,
    Operation,
    OperationResult,
    RemoteKind,
    RemoteResponse,
)

logger = logging.getLogger(__name__)

GRAPH_BASE = os.getenv("META_GRAPH_BASE", "https://graph.facebook.com").rstrip("/")
META_API_VERSION = os.getenv("FB_API_VERSION", "v19.0")

EDGE_FOR_KIND = {
    RemoteKind.ROOT: "campaigns",
    RemoteKind.PARENT: "adsets",
    RemoteKind.CHILD: "ads",
}
CONTAINER_FIELD = {
    RemoteKind.PARENT: "campaign_id",
    RemoteKind.CHILD: "adset_id",
}


def act_id(target: str) -> str:
    target = str(target or "").strip()
    return target if target.startswith("act_") else f"act_{target}"


class RemoteClient(Protocol):
    """What the engine needs from the remote ads API."""

    def create_entity(
        self,
        kind: RemoteKind,
        target: str,
        parent_ref: Optional[str],
        fields: Mapping[str, Any],
        *,
        access_token: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> RemoteResponse: ...

    def delete_entity(
        self,
        entity_id: str,
        *,
        access_token: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> DeleteOutcome: ...

    def batch_submit(
        self,
        operations: Sequence[Operation],
        *,
        access_token: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> BatchResponse: ...

    def count_children(self, parent_id: str, *, access_token: Optional[str] = None) -> int: ...


def _form_value(value: Any) -> str:
    if isinstance(value, (dict, list)):
        return json.dumps(value, separators=(",", ":"))
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def encode_body(fields: Mapping[str, Any]) -> str:
    return "&".join(f"{k}={quote(_form_value(v), safe='')}" for k, v in fields.items() if v is not None)


class GraphBatchSerializer:
    """Typed operations <-> Graph API batch request/response items."""

    def encode(self, op: Operation) -> Dict[str, Any]:
        if isinstance(op, CreateParent):
            body = {**op.fields, CONTAINER_FIELD[RemoteKind.PARENT]: op.container_id}
            return {
                "method": "POST",
                "relative_url": f"{act_id(op.target)}/{EDGE_FOR_KIND[RemoteKind.PARENT]}",
                "name": op.ref,
                "body": encode_body(body),
            }
        if isinstance(op, CreateChild):
            body = {**op.fields, CONTAINER_FIELD[RemoteKind.CHILD]: f"{{result={op.parent_ref}:$.id}}"}
            return {
                "method": "POST",
                "relative_url": f"{act_id(op.target)}/{EDGE_FOR_KIND[RemoteKind.CHILD]}",
                "name": op.ref,
                "body": encode_body(body),
            }
        if isinstance(op, Delete):
            return {"method": "DELETE", "relative_url": op.entity_id}
        raise TypeError(f"Unsupported operation: {op!r}")

    def encode_batch(self, operations: Sequence[Operation]) -> str:
        return json.dumps([self.encode(op) for op in operations], separators=(",", ":"))

    def decode(self, item: Optional[Mapping[str, Any]]) -> Optional[OperationResult]:
        # Graph returns null for operations it never ran (e.g. a dependency failed).
        if item is None:
            return None
        status = int(item.get("code") or 0)
        raw_body = item.get("body")
        body: Any
        if isinstance(raw_body, str):
            try:
                body = json.loads(raw_body) if raw_body else {}
            except ValueError:
                body = {"raw": raw_body}
        else:
            body = raw_body or {}
        if not isinstance(body, dict):
            body = {"value": body}
        error = body.get("error") if isinstance(body.get("error"), dict) else None
        entity_id = body.get("id")
        ok = error is None and (status == 200 or bool(entity_id))
        return OperationResult(
            ok=ok,
            status=status,
            entity_id=str(entity_id) if entity_id else None,
            error=error if not ok else None,
            body=body,
        )

    def decode_batch(self, payload: Any, expected: int) -> List[Optional[OperationResult]]:
        items = payload if isinstance(payload, list) else []
        results = [self.decode(x) for x in items[:expected]]
        results.extend([None] * (expected - len(results)))
        return results


class GraphClient:
    """requests-based Graph API client implementing ``RemoteClient``."""

    def __init__(
        self,
        access_token: Optional[str] = None,
        api_version: Optional[str] = None,
        session: Optional[requests.Session] = None,
        timeout: float = SINGLE_CALL_TIMEOUT,
        batch_timeout: float = BATCH_CALL_TIMEOUT,
        base_url: str = GRAPH_BASE,
    ) -> None:
        self.access_token = access_token or os.getenv("FB_ACCESS_TOKEN", "")
        self.api_version = api_version or META_API_VERSION
        self.session = session or requests.Session()
        self.timeout = timeout
        self.batch_timeout = batch_timeout
        self.base_url = base_url.rstrip("/")
        self.serializer = GraphBatchSerializer()

    def _url(self, path: str = "") -> str:
        path = (path or "").lstrip("/")
        root = f"{self.base_url}/{self.api_version}"
        return f"{root}/{path}" if path else f"{root}/"

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        data: Optional[Dict[str, Any]] = None,
        access_token: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> Tuple[Any, Dict[str, str]]:
        token = access_token or self.access_token
        if data is not None:
            data = {**data, "access_token": token}
        else:
            params = {**(params or {}), "access_token": token}
        try:
            r = self.session.request(
                method,
                self._url(path),
                params=params,
                data=data,
                timeout=timeout or self.timeout,
            )
        except requests.Timeout as e:
            raise RemoteAPIError(f"{method} {path} timed out", timed_out=True) from e
        except requests.ConnectionError as e:
            raise RemoteAPIError(f"{method} {path} connection error: {e}", category=ErrorCategory.TRANSIENT) from e
        headers = {str(k).lower(): v for k, v in (r.headers or {}).items()}
        try:
            body = r.json()
        except ValueError:
            body = {"error": {"message": r.text}} if r.status_code >= 400 else {}
        if r.status_code >= 400 or (isinstance(body, dict) and isinstance(body.get("error"), dict)):
            err_body = body.get("error") if isinstance(body, dict) else None
            err = RemoteAPIError.from_error_body(err_body, r.status_code)
            if err.category is ErrorCategory.RATE_LIMIT:
                retry_after = headers.get("retry-after")
                raise RateLimitedError(
                    err.message,
                    code=err.code,
                    subcode=err.subcode,
                    http_status=err.http_status,
                    payload=err.payload,
                    retry_after=float(retry_after) if retry_after and str(retry_after).isdigit() else None,
                )
            raise err
        return body, headers

    def create_entity(
        self,
        kind: RemoteKind,
        target: str,
        parent_ref: Optional[str],
        fields: Mapping[str, Any],
        *,
        access_token: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> RemoteResponse:
        data = {k: _form_value(v) for k, v in fields.items() if v is not None}
        if parent_ref and kind in CONTAINER_FIELD:
            data[CONTAINER_FIELD[kind]] = parent_ref
        body, headers = self._request(
            "POST",
            f"{act_id(target)}/{EDGE_FOR_KIND[kind]}",
            data=data,
            access_token=access_token,
            timeout=timeout,
        )
        entity_id = body.get("id") if isinstance(body, dict) else None
        if not entity_id:
            raise RemoteAPIError(f"Create {kind.value} returned no id", payload=body if isinstance(body, dict) else {})
        logger.debug(f"Created {kind.value} {entity_id} under {target}")
        return RemoteResponse(entity_id=str(entity_id), body=body, headers=headers)

    def delete_entity(
        self,
        entity_id: str,
        *,
        access_token: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> DeleteOutcome:
        try:
            self._request("DELETE", str(entity_id), data={}, access_token=access_token, timeout=timeout)
        except RemoteAPIError as e:
            if is_not_found(e):
                logger.info(f"Entity {entity_id} already gone")
                return DeleteOutcome.NOT_FOUND
            raise
        return DeleteOutcome.DELETED

    def batch_submit(
        self,
        operations: Sequence[Operation],
        *,
        access_token: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> BatchResponse:
        if not operations:
            return BatchResponse(results=[])
        body, headers = self._request(
            "POST",
            "",
            data={"batch": self.serializer.encode_batch(operations), "include_headers": "false"},
            access_token=access_token,
            timeout=timeout or self.batch_timeout,
        )
        results = self.serializer.decode_batch(body, len(operations))
        return BatchResponse(results=results, headers=headers)

    def count_children(self, parent_id: str, *, access_token: Optional[str] = None) -> int:
        body, _ = self._request(
            "GET",
            f"{parent_id}/{EDGE_FOR_KIND[RemoteKind.PARENT]}",
            params={"summary": "total_count", "limit": 0},
            access_token=access_token,
        )
        summary = body.get("summary") if isinstance(body, dict) else None
        try:
            return int((summary or {}).get("total_count") or 0)
        except (TypeError, ValueError):
            return 0


__all__ = [
    "RemoteClient",
    "GraphClient",
    "GraphBatchSerializer",
    "encode_body",
    "act_id",
    "EDGE_FOR_KIND",
]
