"""Tests for the artifact store client (storage API mocked with httpx.MockTransport)."""

import json
from datetime import timedelta

import httpx
import pytest

from deid_export.exceptions import ConfigurationError, StorageError
from deid_export.services.serializer import serialize
from deid_export.services.storage import ArtifactStore
from tests.factories import FIXED_NOW, STORAGE_BASE, StorageRecorder, make_store, storage_from_settings


class TestPublish:
    def test_uploads_then_signs(self, store, storage):
        artifact = serialize([{"a": 1}], "csv")
        signed = store.publish("org/export.csv", artifact, 172800, FIXED_NOW)

        assert storage.uploads == {"research-exports/org/export.csv": b"a\r\n1\r\n"}
        assert signed.url == f"{STORAGE_BASE}/storage/v1/object/sign/research-exports/org/export.csv?token=signed"
        assert signed.path == "org/export.csv"
        assert signed.size_bytes == artifact.size_bytes
        assert signed.expires_at == FIXED_NOW + timedelta(hours=48)

    def test_request_details(self, store, storage):
        store.publish("org/export.ndjson", serialize([{"a": 1}], "ndjson"), 3600, FIXED_NOW)

        upload, sign = storage.requests
        assert upload.headers["Authorization"] == "Bearer service-key"
        assert upload.headers["x-upsert"] == "true"
        assert upload.headers["Content-Type"] == "application/x-ndjson"
        assert sign.headers["Authorization"] == "Bearer service-key"
        assert json.loads(sign.content) == {"expiresIn": 3600}

    def test_not_signed_when_upload_fails(self):
        recorder = StorageRecorder(fail_uploads=1, status_code=503)
        with pytest.raises(StorageError) as exc:
            make_store(recorder).publish("org/x.csv", serialize([], "csv", ["a"]), 60, FIXED_NOW)
        assert exc.value.status_code == 503
        assert recorder.signed == []
        assert recorder.uploads == {}


class TestErrors:
    def test_transport_error_wrapped(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        store = ArtifactStore(STORAGE_BASE, "k", "b", client=httpx.Client(transport=httpx.MockTransport(handler)))
        with pytest.raises(StorageError, match="ConnectError"):
            store.upload("x.csv", b"a", "text/csv")

    def test_missing_signed_url(self):
        def handler(request):
            return httpx.Response(200, json={})

        store = ArtifactStore(STORAGE_BASE, "k", "b", client=httpx.Client(transport=httpx.MockTransport(handler)))
        with pytest.raises(StorageError, match="signedURL"):
            store.create_signed_url("x.csv", 60)

    def test_requires_credentials(self):
        with pytest.raises(ConfigurationError):
            ArtifactStore("", "key", "bucket")
        with pytest.raises(ConfigurationError):
            ArtifactStore(STORAGE_BASE, "", "bucket")

    def test_trailing_slash_trimmed(self):
        store = ArtifactStore(STORAGE_BASE + "/", "k", "b", client=httpx.Client())
        assert store.base_url == STORAGE_BASE


class TestClientLifetime:
    def test_owned_client_closed_on_exit(self):
        with ArtifactStore(STORAGE_BASE, "k", "b") as store:
            client = store._client
            assert not client.is_closed
        assert client.is_closed

    def test_injected_client_left_open(self):
        client = httpx.Client()
        ArtifactStore(STORAGE_BASE, "k", "b", client=client).close()
        assert not client.is_closed
        client.close()

    def test_from_settings_store_owns_client(self, storage):
        with storage_from_settings(storage) as created:
            store = ArtifactStore.from_settings()
            store.publish("org/export.csv", serialize([{"a": 1}], "csv"), 60, FIXED_NOW)
            store.close()
        assert len(created) == 1
        assert created[0].is_closed
        assert "research-exports/org/export.csv" in storage.uploads
