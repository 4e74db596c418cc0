"""
Integration tests for the HTTP API using FastAPI's TestClient.
"""
from decimal import Decimal
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from split_bill import api, workflows
from split_bill.errors import ExtractionError
from split_bill.gemini_ocr import ExtractedItem, ExtractionResult

HEADERS = {"Authorization": "Bearer secret"}


@pytest.fixture
def app(monkeypatch):
    monkeypatch.setenv("API_KEY", "secret")
    return api.create_app()


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def bill_id(client):
    response = client.post("/bills", headers=HEADERS)
    assert response.status_code == 201
    return response.json()["bill_id"]


def send(client, bill_id, command):
    response = client.post(f"/bills/{bill_id}/commands", json={"command": command}, headers=HEADERS)
    assert response.status_code == 200, response.text
    return response.json()


def test_health_check_is_public(client):
    assert client.get("/").json() == {"message": "Bill Splitter API is running"}


def test_rejects_wrong_api_key(client):
    response = client.post("/bills", headers={"Authorization": "Bearer nope"})

    assert response.status_code == 401


def test_unknown_bill_is_404(client):
    assert client.get("/bills/missing", headers=HEADERS).status_code == 404


def test_full_split_through_commands(client, bill_id):
    body = send(client, bill_id, {"type": "SET_PEOPLE_COUNT", "count": 2})
    alice_id, bob_id = [p["id"] for p in body["state"]["people"]]
    send(client, bill_id, {"type": "RENAME_PERSON", "id": alice_id, "name": "Alice"})
    body = send(client, bill_id, {"type": "ADD_ITEM", "name": "Pizza", "price": "100"})
    item_id = body["state"]["items"][0]["id"]
    send(client, bill_id, {"type": "ASSIGN_ITEM", "item_id": item_id, "target": {"kind": "person", "id": alice_id}})
    send(client, bill_id, {"type": "SET_CHARGE", "field": "vat", "value": 10})
    body = send(client, bill_id, {"type": "SET_CHARGE", "field": "service_charge", "value": 5})

    alice, bob = body["summary"]["people"]
    assert alice["name"] == "Alice"
    assert (alice["items_subtotal"], alice["vat_share"], alice["service_charge_share"], alice["total_due"]) == \
        (100.0, 10.0, 5.0, 115.0)
    assert bob["total_due"] == 0.0
    assert body["summary"]["grand_total"] == 15.0
    assert body["summary"]["discrepancy"] == -100.0
    assert Decimal(body["state"]["items"][0]["price"]) == Decimal("100")


def test_validation_failure_comes_back_as_message(client, bill_id):
    body = send(client, bill_id, {"type": "ADD_ITEM", "name": "Refund", "price": -3})

    assert body["state"]["items"] == []
    assert body["state"]["message"]["source"] == "validation"


def test_unknown_command_type_is_422(client, bill_id):
    response = client.post(f"/bills/{bill_id}/commands", json={"command": {"type": "TELEPORT"}}, headers=HEADERS)

    assert response.status_code == 422


def test_bills_are_independent(client, bill_id):
    other = client.post("/bills", headers=HEADERS).json()["bill_id"]
    send(client, bill_id, {"type": "SET_PEOPLE_COUNT", "count": 3})

    assert client.get(f"/bills/{other}", headers=HEADERS).json()["state"]["people"] == []


def test_delete_bill(client, bill_id):
    assert client.delete(f"/bills/{bill_id}", headers=HEADERS).status_code == 204
    assert client.get(f"/bills/{bill_id}", headers=HEADERS).status_code == 404


def test_upload_receipt_runs_extraction(app, client, bill_id, jpeg_bytes):
    received = []

    def extractor(image_bytes):
        received.append(image_bytes)
        return ExtractionResult(items=[ExtractedItem(name="Fries", price=5, quantity=2)], vat=1)

    app.dependency_overrides[api.get_extractor] = lambda: extractor

    response = client.post(f"/bills/{bill_id}/upload-receipt", headers=HEADERS,
                           files={"file": ("bill.jpg", jpeg_bytes, "image/jpeg")})

    assert response.status_code == 200
    state = response.json()["state"]
    assert [i["name"] for i in state["items"]] == ["Fries", "Fries"]
    assert state["extraction_completed"] is True
    assert len(received) == 1


def test_upload_receipt_records_extraction_error(app, client, bill_id, jpeg_bytes):
    def extractor(image_bytes):
        raise ExtractionError("Gemini API call failed: quota")

    app.dependency_overrides[api.get_extractor] = lambda: extractor

    response = client.post(f"/bills/{bill_id}/upload-receipt", headers=HEADERS,
                           files={"file": ("bill.jpg", jpeg_bytes, "image/jpeg")})

    assert response.status_code == 200
    assert response.json()["state"]["message"]["source"] == "extraction"


def test_upload_rejects_non_images(client, bill_id):
    response = client.post(f"/bills/{bill_id}/upload-receipt", headers=HEADERS,
                           files={"file": ("bill.txt", b"plain text", "text/plain")})

    assert response.status_code == 400


def test_upload_rejects_large_files(client, bill_id, monkeypatch):
    monkeypatch.setenv("MAX_IMAGE_SIZE_MB", "0")

    response = client.post(f"/bills/{bill_id}/upload-receipt", headers=HEADERS,
                           files={"file": ("bill.jpg", b"x" * 10, "image/jpeg")})

    assert response.status_code == 400
    assert "too large" in response.json()["detail"]


def test_suggest_assignments(app, client, bill_id):
    send(client, bill_id, {"type": "SET_PEOPLE_COUNT", "count": 2})
    send(client, bill_id, {"type": "ADD_ITEM", "name": "Soup", "price": 6})
    app.dependency_overrides[api.get_suggester] = lambda: (lambda items, people: {"Soup": "Person 2"})

    response = client.post(f"/bills/{bill_id}/suggest-assignments", headers=HEADERS)

    state = response.json()["state"]
    assert state["items"][0]["assigned_to"] == {"kind": "person", "id": state["people"][1]["id"]}


def test_saved_lists_round_trip(client, bill_id):
    send(client, bill_id, {"type": "SET_PEOPLE_COUNT", "count": 2})
    stored = {}

    def save(key):
        def _save(payload, list_name):
            stored[key] = payload
            return f"{key}/{list_name}.json"
        return _save

    with patch.object(workflows.minio_utils, "save_people_list", side_effect=save("people")), \
         patch.object(workflows.minio_utils, "save_custom_pools", side_effect=save("pools")):
        response = client.post(f"/bills/{bill_id}/saved-lists/friday", headers=HEADERS)
    assert response.json() == {"list_name": "friday", "saved": True}

    other = client.post("/bills", headers=HEADERS).json()["bill_id"]
    with patch.object(workflows.minio_utils, "load_people_list", return_value=stored["people"]), \
         patch.object(workflows.minio_utils, "load_custom_pools", return_value=stored["pools"]):
        response = client.post(f"/bills/{other}/saved-lists/friday/load", headers=HEADERS)

    assert [p["name"] for p in response.json()["state"]["people"]] == ["Person 1", "Person 2"]


def test_save_failure_is_503(client, bill_id):
    with patch.object(workflows.minio_utils, "save_people_list", return_value=None), \
         patch.object(workflows.minio_utils, "save_custom_pools", return_value=None):
        response = client.post(f"/bills/{bill_id}/saved-lists/friday", headers=HEADERS)

    assert response.status_code == 503


def test_registry_evicts_least_recently_used_bill():
    registry = api.BillRegistry(max_bills=2)
    first = registry.create()
    second = registry.create()
    registry.get(first)

    third = registry.create()

    assert registry.get(second) is None
    assert registry.get(first) is not None
    assert registry.get(third) is not None


def test_bill_limit_comes_from_config(monkeypatch):
    monkeypatch.setenv("API_KEY", "secret")
    monkeypatch.setenv("MAX_BILLS", "1")
    client = TestClient(api.create_app())

    first = client.post("/bills", headers=HEADERS).json()["bill_id"]
    client.post("/bills", headers=HEADERS)

    assert client.get(f"/bills/{first}", headers=HEADERS).status_code == 404
