"""Supabase Storage client for rendered invoice documents."""
import re
import uuid
from typing import Tuple

from supabase import create_client

from app.config import settings


class StorageClient:
    """Client for Supabase Storage operations."""

    _client = None

    @classmethod
    def is_configured(cls) -> bool:
        return bool(settings.SUPABASE_URL and settings.SUPABASE_SERVICE_KEY)

    @classmethod
    def get_client(cls):
        """Get or create Supabase client."""
        if cls._client is None:
            if not cls.is_configured():
                raise ValueError(
                    "Supabase credentials not configured. "
                    "Set SUPABASE_URL and SUPABASE_SERVICE_KEY environment variables."
                )
            cls._client = create_client(
                settings.SUPABASE_URL,
                settings.SUPABASE_SERVICE_KEY
            )
        return cls._client

    @classmethod
    def get_bucket(cls, bucket_name: str = None):
        """Get the storage bucket (invoice documents by default)."""
        client = cls.get_client()
        return client.storage.from_(bucket_name or settings.SUPABASE_STORAGE_BUCKET_INVOICES)

    @classmethod
    def upload_invoice_document(
        cls,
        tenant_id: uuid.UUID,
        content: bytes,
        filename: str,
        content_type: str,
    ) -> Tuple[str, str]:
        """
        Upload a rendered invoice document.

        Args:
            tenant_id: Owner, used as the top-level folder
            content: Document bytes
            filename: Download file name
            content_type: MIME type (e.g., "text/html")

        Returns:
            Tuple of (bucket, path)
        """
        bucket_name = settings.SUPABASE_STORAGE_BUCKET_INVOICES
        path = f"{tenant_id}/{cls.generate_unique_filename(filename)}"
        cls.get_bucket(bucket_name).upload(
            path=path,
            file=content,
            file_options={"content-type": content_type, "upsert": "true"}
        )
        return bucket_name, path

    @classmethod
    def download(cls, bucket_name: str, path: str) -> bytes:
        """Download a stored document."""
        return cls.get_bucket(bucket_name).download(path)

    @classmethod
    def generate_unique_filename(cls, original_filename: str) -> str:
        """Prefix a safe version of the file name with a short unique id."""
        safe = re.sub(r"[^A-Za-z0-9._-]+", "_", original_filename or "document").strip("_")
        return f"{uuid.uuid4().hex[:12]}-{safe or 'document'}"
