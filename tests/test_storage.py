"""Tests for nas.storage: Supabase mirroring and chat upserts."""

import base64
from unittest.mock import MagicMock, patch

import httpx
import pytest

from nas.storage import SupabaseStorage, extension_for, is_durable_url, new_object_path

PUBLIC = "https://x.supabase.co/storage/v1/object/public/native-images/generated/abc.jpg"


def _storage():
    client = MagicMock()
    bucket = client.storage.from_.return_value
    bucket.get_public_url.return_value = PUBLIC
    return SupabaseStorage(client=client, bucket="native-images"), client, bucket


class TestPaths:
    def test_extension_for_known_types(self):
        assert extension_for("image/png") == "png"
        assert extension_for("image/jpeg; charset=binary") == "jpg"

    def test_extension_defaults_to_jpg(self):
        assert extension_for("application/octet-stream") == "jpg"

    def test_new_object_path_is_unique(self):
        first = new_object_path("generated", "image/png")
        assert first.startswith("generated/") and first.endswith(".png")
        assert first != new_object_path("generated", "image/png")


class TestUpload:
    def test_upload_returns_public_url(self):
        storage, client, bucket = _storage()
        url = storage.upload("generated/a.png", b"img", "image/png")
        assert url == PUBLIC
        client.storage.from_.assert_called_with("native-images")
        bucket.upload.assert_called_once_with(
            "generated/a.png", b"img", {"content-type": "image/png", "upsert": "true"}
        )

    def test_upload_data_url_decodes(self):
        storage, _, bucket = _storage()
        data_url = "data:image/png;base64," + base64.b64encode(b"pixels").decode()
        storage.upload_data_url(data_url, "references/r.png")
        path, body, options = bucket.upload.call_args[0]
        assert path == "references/r.png"
        assert body == b"pixels"
        assert options["content-type"] == "image/png"

    def test_non_base64_data_url_rejected(self):
        storage, _, _ = _storage()
        with pytest.raises(ValueError, match="base64"):
            storage.upload_data_url("data:text/plain,hello")

    @patch("nas.storage.httpx.get")
    def test_mirror_url_downloads_then_uploads(self, mock_get):
        storage, _, bucket = _storage()
        request = httpx.Request("GET", "https://replicate.delivery/out.webp")
        mock_get.return_value = httpx.Response(
            200, content=b"webp", headers={"content-type": "image/webp"}, request=request,
        )
        assert storage.mirror("https://replicate.delivery/out.webp") == PUBLIC
        path = bucket.upload.call_args[0][0]
        assert path.startswith("generated/") and path.endswith(".webp")

    @patch("nas.storage.httpx.get")
    def test_mirror_url_raises_on_http_error(self, mock_get):
        storage, _, bucket = _storage()
        request = httpx.Request("GET", "https://replicate.delivery/gone.jpg")
        mock_get.return_value = httpx.Response(404, request=request)
        with pytest.raises(httpx.HTTPStatusError):
            storage.mirror("https://replicate.delivery/gone.jpg")
        bucket.upload.assert_not_called()


class TestDurability:
    def test_bucket_url_is_durable(self, mock_config):
        assert is_durable_url(PUBLIC)

    def test_replicate_url_is_not_durable(self, mock_config):
        assert not is_durable_url("https://replicate.delivery/out.jpg")

    def test_other_bucket_is_not_durable(self):
        assert not is_durable_url(PUBLIC, bucket="chat-uploads")

    def test_non_string_is_not_durable(self, mock_config):
        assert not is_durable_url(None)


class TestUpsertChat:
    def test_new_chat_gets_id(self):
        storage, client, _ = _storage()
        chat_id = storage.upsert_chat(None, "dust", None, [])
        row = client.table.return_value.upsert.call_args[0][0]
        assert row["id"] == chat_id
        assert row["title"] == "dust"
        client.table.assert_called_with("chats")

    def test_existing_chat_id_kept(self):
        storage, client, _ = _storage()
        assert storage.upsert_chat("chat-1", "t", PUBLIC, [{"role": "user"}]) == "chat-1"
        row = client.table.return_value.upsert.call_args[0][0]
        assert row["thumbnail_url"] == PUBLIC
