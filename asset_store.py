import io
import logging
import os
import uuid
from abc import ABC, abstractmethod
from typing import Dict

import cloudinary.uploader
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel

from models import Attachment

logger = logging.getLogger(__name__)


class StoredAsset(BaseModel):
    url: str
    ref: str  # handle needed to delete the asset again
    resource_type: str = "image"


class AssetStore(ABC):

    @abstractmethod
    async def upload(self, path: str, attachment: Attachment) -> StoredAsset:
        ...

    @abstractmethod
    async def delete(self, asset: StoredAsset) -> None:
        ...


class CloudinaryAssetStore(AssetStore):

    async def upload(self, path, attachment):
        # Cloudinary appends the extension itself
        public_id = os.path.splitext(path)[0]

        def run():
            return cloudinary.uploader.upload(
                io.BytesIO(attachment.data),
                public_id=public_id,
                resource_type="auto",
                overwrite=False,
            )

        upload = await run_in_threadpool(run)
        return StoredAsset(
            url=upload["secure_url"],
            ref=upload["public_id"],
            resource_type=upload.get("resource_type", "image"),
        )

    async def delete(self, asset):
        def run():
            return cloudinary.uploader.destroy(asset.ref, resource_type=asset.resource_type)

        result = await run_in_threadpool(run)
        if result.get("result") not in ("ok", "not found"):
            raise RuntimeError(f"Cloudinary delete failed for {asset.ref}: {result}")


class InMemoryAssetStore(AssetStore):
    """Keeps uploads in a dict; used by tests and local runs."""

    def __init__(self, base_url: str = "memory://assets"):
        self.base_url = base_url
        self.assets: Dict[str, bytes] = {}

    async def upload(self, path, attachment):
        ref = f"{path}#{uuid.uuid4().hex[:8]}"
        self.assets[ref] = attachment.data
        return StoredAsset(url=f"{self.base_url}/{ref}", ref=ref)

    async def delete(self, asset):
        self.assets.pop(asset.ref, None)
