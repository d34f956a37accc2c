from __future__ import annotations

import json
from unittest.mock import MagicMock
from urllib.parse import unquote

import pytest
import requests

from bulkads.infrastructure.error_handling import ErrorCategory, RateLimitedError, RemoteAPIError
from bulkads.integrations.meta_client import GraphBatchSerializer, GraphClient, act_id
from bulkads.models import CreateChild, CreateParent, Delete, DeleteOutcome, RemoteKind


def response(status=200, body=None, headers=None):
    r = MagicMock()
    r.status_code = status
    r.headers = headers or {}
    r.json.return_value = body if body is not None else {}
    r.text = json.dumps(body)
    return r


@pytest.fixture
def session():
    return MagicMock(spec=requests.Session)


@pytest.fixture
def client(session):
    return GraphClient(access_token="tok", api_version="v19.0", session=session, base_url="https://graph.test")


def test_act_id():
    assert act_id("123") == "act_123"
    assert act_id("act_123") == "act_123"


def test_encode_pair_binds_child_to_parent():
    ser = GraphBatchSerializer()
    parent = CreateParent("123", 4, "cmp-1", {"name": "pair 4", "daily_budget": 1000})
    child = CreateChild("123", 4, parent.ref, {"name": "pair 4", "creative": {"creative_id": "9"}})
    items = json.loads(ser.encode_batch([parent, child]))

    assert items[0]["name"] == "parent-4"
    assert items[0]["relative_url"] == "act_123/adsets"
    assert "campaign_id=cmp-1" in items[0]["body"]
    assert items[1]["relative_url"] == "act_123/ads"
    body = unquote(items[1]["body"])
    assert "adset_id={result=parent-4:$.id}" in body
    assert 'creative={"creative_id":"9"}' in body
    assert ser.encode(Delete("55")) == {"method": "DELETE", "relative_url": "55"}


def test_decode_batch_items():
    ser = GraphBatchSerializer()
    results = ser.decode_batch([
        {"code": 200, "body": json.dumps({"id": "as-1"})},
        {"code": 400, "body": json.dumps({"error": {"code": 100, "message": "Invalid parameter"}})},
        None,
    ], expected=4)

    assert results[0].ok and results[0].entity_id == "as-1"
    assert not results[1].ok
    assert results[1].error_code == 100
    assert results[1].error_message == "Invalid parameter"
    assert results[2] is None
    assert results[3] is None


def test_create_entity(client, session):
    session.request.return_value = response(body={"id": "cmp-1"}, headers={"X-App-Usage": "{}"})
    resp = client.create_entity(RemoteKind.ROOT, "123", None, {"name": "Spring", "special_ad_categories": []})

    assert resp.entity_id == "cmp-1"
    assert "x-app-usage" in resp.headers
    method, url = session.request.call_args.args
    data = session.request.call_args.kwargs["data"]
    assert (method, url) == ("POST", "https://graph.test/v19.0/act_123/campaigns")
    assert data["special_ad_categories"] == "[]"
    assert data["access_token"] == "tok"


def test_create_entity_sets_container_field(client, session):
    session.request.return_value = response(body={"id": "as-1"})
    client.create_entity(RemoteKind.PARENT, "123", "cmp-1", {"name": "x"}, access_token="pooled")
    data = session.request.call_args.kwargs["data"]
    assert data["campaign_id"] == "cmp-1"
    assert data["access_token"] == "pooled"


def test_rate_limit_response_raises(client, session):
    session.request.return_value = response(
        400, {"error": {"code": 17, "message": "User request limit reached"}}, {"Retry-After": "120"}
    )
    with pytest.raises(RateLimitedError) as info:
        client.create_entity(RemoteKind.ROOT, "123", None, {})
    assert info.value.retry_after == 120.0
    assert info.value.category is ErrorCategory.RATE_LIMIT


def test_timeout_is_flagged(client, session):
    session.request.side_effect = requests.Timeout("read timed out")
    with pytest.raises(RemoteAPIError) as info:
        client.batch_submit([Delete("1")])
    assert info.value.timed_out
    assert info.value.category is ErrorCategory.TRANSIENT


def test_delete_missing_entity_is_not_found(client, session):
    session.request.return_value = response(
        400, {"error": {"code": 100, "error_subcode": 33, "message": "Object with ID '9' does not exist"}}
    )
    assert client.delete_entity("9") is DeleteOutcome.NOT_FOUND

    session.request.return_value = response(200, {"success": True})
    assert client.delete_entity("9") is DeleteOutcome.DELETED


def test_delete_other_errors_propagate(client, session):
    session.request.return_value = response(500, {"error": {"code": 2, "message": "Service temporarily unavailable"}})
    with pytest.raises(RemoteAPIError):
        client.delete_entity("9")


def test_batch_submit(client, session):
    session.request.return_value = response(body=[
        {"code": 200, "body": json.dumps({"id": "as-1"})},
        {"code": 200, "body": json.dumps({"id": "ad-1"})},
    ])
    parent = CreateParent("123", 1, "cmp-1")
    resp = client.batch_submit([parent, CreateChild("123", 1, parent.ref)])
    assert [r.entity_id for r in resp.results] == ["as-1", "ad-1"]
    data = session.request.call_args.kwargs["data"]
    assert len(json.loads(data["batch"])) == 2


def test_count_children(client, session):
    session.request.return_value = response(body={"data": [], "summary": {"total_count": 7}})
    assert client.count_children("cmp-1") == 7
    method, url = session.request.call_args.args
    assert url.endswith("/cmp-1/adsets")
    assert session.request.call_args.kwargs["params"]["summary"] == "total_count"
