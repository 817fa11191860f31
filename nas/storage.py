"""Durable storage: mirrors expiring image URLs into Supabase and saves chats.

Replicate delivery URLs expire within hours; everything the studio returns
to a user is re-hosted in the configured Supabase bucket first.
"""

import base64
import re
import uuid

import httpx
from supabase import Client, create_client

from nas.config import get_config, require_env

_DATA_URL_RE = re.compile(r"^data:([^;,]+)?(;base64)?,", re.DOTALL)

_EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
    "image/gif": "gif",
}


def extension_for(content_type: str) -> str:
    """Return a file extension for an image MIME type (defaults to jpg)."""
    return _EXTENSIONS.get(content_type.split(";")[0].strip().lower(), "jpg")


def new_object_path(prefix: str, content_type: str = "image/jpeg") -> str:
    """Return a fresh, collision-free object path under ``prefix``."""
    return f"{prefix}/{uuid.uuid4().hex}.{extension_for(content_type)}"


def is_durable_url(url: str, bucket: str | None = None) -> bool:
    """True if ``url`` already points into the bucket's public storage."""
    bucket = bucket or get_config().get("storage_bucket", "native-images")
    return isinstance(url, str) and f"/storage/v1/object/public/{bucket}/" in url


class SupabaseStorage:
    """Mirroring service and chat sink backed by one Supabase project."""

    def __init__(self, client: Client | None = None, bucket: str | None = None):
        if client is None:
            client = create_client(
                require_env("SUPABASE_URL"),
                require_env("SUPABASE_SERVICE_ROLE_KEY"),
            )
        self._client = client
        self.bucket = bucket or get_config().get("storage_bucket", "native-images")

    def upload(self, path: str, body: bytes, content_type: str) -> str:
        """Upload bytes to the bucket and return the permanent public URL."""
        bucket = self._client.storage.from_(self.bucket)
        bucket.upload(path, body, {"content-type": content_type, "upsert": "true"})
        return bucket.get_public_url(path)

    def mirror_url(self, source_url: str, path: str | None = None) -> str:
        """Download ``source_url`` and re-upload it, returning the permanent URL."""
        response = httpx.get(source_url, timeout=60.0, follow_redirects=True)
        response.raise_for_status()
        content_type = response.headers.get("content-type", "application/octet-stream")
        path = path or new_object_path("generated", content_type)
        return self.upload(path, response.content, content_type)

    def upload_data_url(self, data_url: str, path: str | None = None) -> str:
        """Upload a base64 ``data:`` URL, returning the permanent URL."""
        match = _DATA_URL_RE.match(data_url)
        if not match or not match.group(2):
            raise ValueError("Expected a base64 data: URL.")
        content_type = match.group(1) or "image/jpeg"
        body = base64.b64decode(data_url[match.end():])
        path = path or new_object_path("references", content_type)
        return self.upload(path, body, content_type)

    def mirror(self, url: str, path: str | None = None) -> str:
        """Mirror either a remote URL or a data: URL."""
        if url.startswith("data:"):
            return self.upload_data_url(url, path)
        return self.mirror_url(url, path)

    def upsert_chat(
        self,
        chat_id: str | None,
        title: str,
        thumbnail_url: str | None,
        messages: list[dict],
    ) -> str:
        """Insert or update a chat row and return its id."""
        row = {
            "id": chat_id or str(uuid.uuid4()),
            "title": title,
            "thumbnail_url": thumbnail_url,
            "messages": messages,
        }
        self._client.table("chats").upsert(row).execute()
        return row["id"]
