"""
Tests for the MinIO saved-list helpers with the MinIO client mocked.
"""
import json
from unittest.mock import MagicMock, patch

import pytest
from urllib3.exceptions import MaxRetryError

from split_bill import minio_utils


@pytest.fixture
def client(monkeypatch):
    monkeypatch.setenv("MINIO_BUCKET_NAME", "test-bucket")
    mock_client = MagicMock()
    monkeypatch.setattr(minio_utils, "minio_client_instance", mock_client)
    monkeypatch.setattr(minio_utils, "S3Error", FakeS3Error)
    return mock_client


class FakeS3Error(Exception):
    def __init__(self, code):
        super().__init__(code)
        self.code = code


def s3_error(code):
    return FakeS3Error(code)


def test_save_people_list_uploads_json(client):
    people = [{"id": "a", "name": "Ann"}]

    assert minio_utils.save_people_list(people, "friday") == "people/friday.json"

    bucket, object_name, stream = client.put_object.call_args.args
    assert (bucket, object_name) == ("test-bucket", "people/friday.json")
    assert json.loads(stream.getvalue()) == people
    assert client.put_object.call_args.kwargs["content_type"] == "application/json"


def test_load_custom_pools_decodes_json(client):
    response = MagicMock()
    response.read.return_value = json.dumps([{"id": "p", "name": "Couple", "person_ids": ["a", "b"]}]).encode()
    client.get_object.return_value = response

    pools = minio_utils.load_custom_pools("friday")

    assert pools[0]["name"] == "Couple"
    client.get_object.assert_called_once_with("test-bucket", "custom-pools/friday.json")
    response.release_conn.assert_called_once()


def test_missing_object_returns_none(client):
    client.get_object.side_effect = s3_error("NoSuchKey")

    assert minio_utils.load_people_list("friday") is None


def test_corrupt_json_returns_none(client):
    response = MagicMock()
    response.read.return_value = b"{not json"
    client.get_object.return_value = response

    assert minio_utils.load_people_list("friday") is None


def test_upload_failure_returns_none(client):
    client.put_object.side_effect = s3_error("AccessDenied")

    assert minio_utils.save_custom_pools([], "friday") is None


def test_delete_saved_lists(client):
    assert minio_utils.delete_saved_lists("friday") is True

    removed = [c.args[1] for c in client.remove_object.call_args_list]
    assert removed == ["people/friday.json", "custom-pools/friday.json"]


def test_unconfigured_client_returns_none(monkeypatch):
    monkeypatch.setattr(minio_utils, "minio_client_instance", None)
    monkeypatch.delenv("MINIO_ACCESS_KEY", raising=False)
    monkeypatch.delenv("MINIO_SECRET_KEY", raising=False)

    with patch.object(minio_utils, "Minio") as minio_cls:
        assert minio_utils.get_minio_client() is None
        assert minio_utils.save_people_list([], "friday") is None

    minio_cls.assert_not_called()


def connection_refused():
    return MaxRetryError(None, "/test-bucket/people/friday.json", reason=ConnectionRefusedError("Connection refused"))


def test_unreachable_server_on_upload_returns_none(client):
    client.put_object.side_effect = connection_refused()

    assert minio_utils.save_people_list([], "friday") is None


def test_unreachable_server_on_read_returns_none(client):
    client.get_object.side_effect = connection_refused()

    assert minio_utils.load_people_list("friday") is None
    assert minio_utils.load_custom_pools("friday") is None


def test_unreachable_server_on_delete_returns_false(client):
    client.remove_object.side_effect = OSError("network is unreachable")

    assert minio_utils.delete_saved_lists("friday") is False


def test_unreachable_server_on_connect_returns_none(monkeypatch):
    monkeypatch.setattr(minio_utils, "minio_client_instance", None)
    monkeypatch.setenv("MINIO_ACCESS_KEY", "key")
    monkeypatch.setenv("MINIO_SECRET_KEY", "secret")

    with patch.object(minio_utils, "Minio") as minio_cls:
        minio_cls.return_value.bucket_exists.side_effect = connection_refused()

        assert minio_utils.get_minio_client() is None
        assert minio_utils.load_people_list("friday") is None

    assert minio_utils.minio_client_instance is None
