import asyncio
import posixpath
from typing import List, Optional

import structlog
from google.api_core.exceptions import GoogleAPIError, NotFound, PreconditionFailed
from google.cloud import storage

from ingest_orchestrator.application.ports.object_store_port import ObjectStorePort
from ingest_orchestrator.core.config import settings
from ingest_orchestrator.core.exceptions import ObjectNotFoundError, StorageError
from ingest_orchestrator.domain.models import StorageItem

log = structlog.get_logger(__name__)


class GCSClient(ObjectStorePort):
    """Object store on Google Cloud Storage. Blocking SDK calls run in the default executor."""
    def __init__(self, bucket_name: Optional[str] = None, client: Optional[storage.Client] = None):
        self.bucket_name = bucket_name or settings.GCS_BUCKET_NAME
        self._client = client or storage.Client()
        self._bucket = self._client.bucket(self.bucket_name)
        self.log = log.bind(gcs_bucket=self.bucket_name)

    async def download(self, path: str) -> bytes:
        self.log.info("Downloading file from GCS...", object_name=path)
        loop = asyncio.get_running_loop()
        def _download():
            blob = self._bucket.blob(path)
            return blob.download_as_bytes()
        try:
            data = await loop.run_in_executor(None, _download)
            self.log.info("File downloaded successfully from GCS", object_name=path, length=len(data))
            return data
        except NotFound as e:
            self.log.error("Object not found in GCS", object_name=path)
            raise ObjectNotFoundError(f"Object not found in GCS: {path}", e) from e
        except GoogleAPIError as e:
            self.log.error("GCS download failed", object_name=path, error=str(e))
            raise StorageError(f"GCS error downloading {path}", e) from e

    async def upload(self, path: str, data: bytes, content_type: str, overwrite: bool = True) -> str:
        self.log.info("Uploading file to GCS...", object_name=path, content_type=content_type, length=len(data))
        loop = asyncio.get_running_loop()
        def _upload():
            blob = self._bucket.blob(path)
            # generation 0 means "only if the object does not exist yet"
            if_generation_match = None if overwrite else 0
            blob.upload_from_string(data, content_type=content_type, if_generation_match=if_generation_match)
            return path
        try:
            uploaded = await loop.run_in_executor(None, _upload)
            self.log.info("File uploaded successfully to GCS", object_name=path)
            return uploaded
        except PreconditionFailed as e:
            self.log.warning("Object already exists in GCS and overwrite is disabled", object_name=path)
            raise StorageError(f"Object already exists in GCS: {path}", e) from e
        except GoogleAPIError as e:
            self.log.error("GCS upload failed", object_name=path, error=str(e))
            raise StorageError(f"GCS error uploading {path}", e) from e

    async def list(self, prefix: str) -> List[StorageItem]:
        normalized = prefix.strip("/")
        normalized = f"{normalized}/" if normalized else ""
        self.log.debug("Listing GCS prefix", prefix=normalized)
        loop = asyncio.get_running_loop()
        def _list():
            iterator = self._client.list_blobs(self.bucket_name, prefix=normalized, delimiter="/")
            blobs = [b for b in iterator if b.name != normalized]
            # prefixes are only populated once the iterator has been consumed
            return blobs, sorted(iterator.prefixes)
        try:
            blobs, folders = await loop.run_in_executor(None, _list)
        except GoogleAPIError as e:
            self.log.error("GCS list failed", prefix=normalized, error=str(e))
            raise StorageError(f"GCS error listing {normalized or '/'}", e) from e

        items = [
            StorageItem(name=posixpath.basename(f.rstrip("/")), path=f, is_folder=True)
            for f in folders
        ]
        items.extend(
            StorageItem(
                name=posixpath.basename(b.name),
                path=b.name,
                size=b.size,
                mimetype=b.content_type,
            )
            for b in blobs
        )
        return items

    async def delete(self, path: str) -> None:
        self.log.info("Deleting file from GCS...", object_name=path)
        loop = asyncio.get_running_loop()
        def _delete():
            blob = self._bucket.blob(path)
            blob.delete()
        try:
            await loop.run_in_executor(None, _delete)
            self.log.info("File deleted successfully from GCS", object_name=path)
        except NotFound:
            self.log.info("Object already deleted or not found in GCS", object_name=path)
        except GoogleAPIError as e:
            self.log.error("GCS delete failed", object_name=path, error=str(e))
            raise StorageError(f"GCS error deleting {path}", e) from e
