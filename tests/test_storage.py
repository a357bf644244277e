"""Tests for transcript storage and the caller directory."""

import json
from unittest.mock import MagicMock

import pytest
from google.api_core import exceptions as gcp_exceptions

from voice_bridge.errors import StorageError
from voice_bridge.services.directory import PhoneDirectory, digits_only, find_matches
from voice_bridge.services.storage import StorageService


def mock_gcs_client(existing: dict | None = None, fail_upload: bool = False):
    """A storage.Client stand-in whose bucket keeps blobs in a dict."""
    existing = dict(existing or {})
    uploads = {}

    def make_blob(name):
        blob = MagicMock()
        blob.exists.return_value = name in existing
        blob.download_as_text.side_effect = lambda encoding="utf-8": existing[name]
        if fail_upload:
            blob.upload_from_string.side_effect = gcp_exceptions.Forbidden("no write access")
        else:
            blob.upload_from_string.side_effect = (
                lambda payload, content_type=None: uploads.__setitem__(name, payload)
            )
        return blob

    client = MagicMock()
    client.bucket.return_value.blob.side_effect = make_blob
    client.uploads = uploads
    return client


class TestStorageService:
    @pytest.mark.asyncio
    async def test_local_when_no_bucket(self, tmp_path):
        storage = StorageService(None, tmp_path / "history")

        location = await storage.save("call.json", '{"a": 1}')

        assert location == str(tmp_path / "history" / "call.json")
        assert json.loads((tmp_path / "history" / "call.json").read_text()) == {"a": 1}

    @pytest.mark.asyncio
    async def test_uploads_to_bucket(self, tmp_path):
        client = mock_gcs_client()
        storage = StorageService("u247-calls", tmp_path, client=client)

        location = await storage.save("call.json", "{}")

        assert location == "gs://u247-calls/call.json"
        assert client.uploads == {"call.json": "{}"}
        assert not (tmp_path / "call.json").exists()

    @pytest.mark.asyncio
    async def test_falls_back_to_local_on_upload_failure(self, tmp_path):
        storage = StorageService("u247-calls", tmp_path, client=mock_gcs_client(fail_upload=True))

        location = await storage.save("call.json", "{}")

        assert location == str(tmp_path / "call.json")

    @pytest.mark.asyncio
    async def test_save_raises_when_nothing_writable(self, tmp_path):
        blocker = tmp_path / "not-a-dir"
        blocker.write_text("")
        storage = StorageService(None, blocker)

        with pytest.raises(StorageError):
            await storage.save("call.json", "{}")

    @pytest.mark.asyncio
    async def test_backup_written_locally_and_mirrored(self, tmp_path):
        client = mock_gcs_client()
        storage = StorageService("u247-calls", tmp_path, client=client)

        await storage.save_backup("index-1.json", "{}")

        assert (tmp_path / "index-1.json").exists()
        assert client.uploads == {"backups/index-1.json": "{}"}

    @pytest.mark.asyncio
    async def test_load_prefers_bucket(self, tmp_path):
        local = tmp_path / "settings.json"
        local.write_text("local")
        storage = StorageService("u247-calls", tmp_path, client=mock_gcs_client({"settings.json": "remote"}))

        assert await storage.load_text("settings.json", local) == ("remote", "gcs")

    @pytest.mark.asyncio
    async def test_load_falls_back_to_local(self, tmp_path):
        local = tmp_path / "settings.json"
        local.write_text("local")
        storage = StorageService("u247-calls", tmp_path, client=mock_gcs_client())

        assert await storage.load_text("settings.json", local) == ("local", "local")
        assert await storage.load_text("missing.json", tmp_path / "missing.json") is None


MAPPINGS = [
    {"phone_number": "+61 412 345 678", "property_id": "P-1", "property_name": "Harbour View"},
    {"phone_number": "0412345678", "property_id": "P-2", "property_name": "Local format"},
    {"phone_number": "+61412345678", "property_id": "P-3"},
    {"phone_number": "+61499999999", "property_id": "P-4"},
    "not an entry",
]


class TestFindMatches:
    def test_digits_only(self):
        assert digits_only("+61 (0) 412-345") == "610412345"

    def test_match_by_digits(self):
        matches = find_matches("+61412345678", MAPPINGS)
        assert [m.property_id for m in matches] == ["P-1", "P-3"]

    def test_no_number(self):
        assert find_matches(None, MAPPINGS) == []
        assert find_matches("+61412345678", {"oops": 1}) == []

    def test_invalid_entry_skipped(self):
        matches = find_matches("+61412345678", [{"phone_number": "+61412345678"}])
        assert matches == []


class TestPhoneDirectory:
    @pytest.mark.asyncio
    async def test_no_caller_number(self, storage, tmp_path):
        directory = PhoneDirectory(storage, local_path=tmp_path / "phone-mappings.json")

        result = await directory.lookup(None)

        assert result.performed is False

    @pytest.mark.asyncio
    async def test_missing_file(self, storage, tmp_path):
        directory = PhoneDirectory(storage, local_path=tmp_path / "phone-mappings.json")

        result = await directory.lookup("+61412345678")

        assert result.performed is True
        assert result.found is False

    @pytest.mark.asyncio
    async def test_invalid_json(self, storage, tmp_path):
        path = tmp_path / "phone-mappings.json"
        path.write_text("{broken")
        directory = PhoneDirectory(storage, local_path=path)

        result = await directory.lookup("+61412345678")

        assert result.performed is True
        assert result.found is False
        assert result.source == "local"

    @pytest.mark.asyncio
    async def test_found_in_bucket(self, tmp_path):
        client = mock_gcs_client({"phone-mappings.json": json.dumps({"phone_mappings": MAPPINGS})})
        storage = StorageService("u247-calls", tmp_path, client=client)
        directory = PhoneDirectory(storage, local_path=tmp_path / "phone-mappings.json")

        result = await directory.lookup("+61 412 345 678")

        assert result.found is True
        assert result.source == "gcs"
        assert result.matches[0].property_name == "Harbour View"
