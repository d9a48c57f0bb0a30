import pytest

pytestmark = pytest.mark.django_db

URL = "/api/v1/flagging-configurations/"


def test_create_list_retrieve(api_client, parameters):
    r = api_client.post(
        URL,
        {
            "parameter_id": parameters["WBC"].id,
            "reference_range_min": 4.5,
            "reference_range_max": 11.0,
            "flag_type": "warning",
        },
        format="json",
    )
    assert r.status_code == 201, r.data
    body = r.json()
    assert body["success"] is True
    cfg_id = body["data"]["id"]
    assert len(cfg_id) == 24
    assert body["data"]["parameter_code"] == "WBC"

    r = api_client.get(URL, {"parameter_id": parameters["WBC"].id, "limit": 5})
    assert r.status_code == 200
    listed = r.json()
    assert [c["id"] for c in listed["data"]] == [cfg_id]
    assert listed["pagination"] == {"page": 1, "limit": 5, "total": 1, "totalPages": 1}

    r = api_client.get(f"{URL}{cfg_id}/")
    assert r.status_code == 200
    assert r.json()["data"]["reference_range_max"] == 11.0


def test_inverted_range_is_a_validation_error(api_client, parameters):
    r = api_client.post(
        URL,
        {"parameter_id": parameters["WBC"].id, "reference_range_min": 11, "reference_range_max": 4.5},
        format="json",
    )
    assert r.status_code == 400
    body = r.json()
    assert body["success"] is False
    assert body["error"]["code"] == "validation_error"
    assert "reference_range_min must be less than reference_range_max" in body["message"]


def test_unknown_configuration_is_not_found(api_client):
    r = api_client.patch(f"{URL}{'f' * 24}/", {"flag_type": "critical"}, format="json")
    assert r.status_code == 404
    assert r.json()["error"]["code"] == "not_found"


def test_sync_endpoint_returns_report(api_client, parameters):
    r = api_client.post(
        f"{URL}sync/",
        {
            "configurations": [
                {"parameter_id": parameters["WBC"].id, "reference_range_min": 4.5, "reference_range_max": 11},
                {"parameter_id": parameters["WBC"].id, "reference_range_min": 9, "reference_range_max": 1},
            ]
        },
        format="json",
    )
    assert r.status_code == 200, r.data
    data = r.json()["data"]
    assert (data["created"], data["updated"], data["failed"]) == (1, 0, 1)
    assert data["errors"][0]["index"] == 1


def test_delete(api_client, parameters):
    r = api_client.post(URL, {"parameter_id": parameters["PLT"].id, "reference_range_min": 150}, format="json")
    cfg_id = r.json()["data"]["id"]

    assert api_client.delete(f"{URL}{cfg_id}/").status_code == 200
    assert api_client.get(f"{URL}{cfg_id}/").status_code == 404
