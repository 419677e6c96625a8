"""
Content-addressed media store.

Generated images and audio are stored under a path derived from the text key
alone, so every card with the same key shares one asset.
"""

import asyncio
import hashlib
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional

from hanziflow.errors import ValidationError
from .abstract_storage import AbstractStorage
from .filesystem_storage import FileSystemStorage

logger = logging.getLogger(__name__)

MEDIA_EXTENSIONS = {
    'image': 'png',
    'audio': 'mp3',
}


@dataclass
class MediaAsset:
    ref: str
    generated: bool


class MediaStore:
    """
    Check-then-generate access to shared media.

    Within a process a per-asset lock makes concurrent requests for the same
    key generate once; across processes the existence check plus the
    storage's atomic write keeps repeated generation harmless.
    """

    def __init__(self, storage: AbstractStorage):
        self.storage = storage
        # Per-asset locks, dropped once no call holds or awaits them
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}

    @classmethod
    def from_config(cls, config) -> 'MediaStore':
        media_config = config.get('storage.media', {}) or {}
        return cls(FileSystemStorage(media_config))

    @staticmethod
    def asset_key(kind: str, key: str) -> str:
        if kind not in MEDIA_EXTENSIONS:
            raise ValueError(f"Unknown media kind: {kind}")
        digest = hashlib.sha256(key.encode('utf-8')).hexdigest()
        return f"{kind}/{digest}.{MEDIA_EXTENSIONS[kind]}"

    def ref_for(self, kind: str, key: str) -> str:
        return self.storage.get_url(self.asset_key(kind, key))

    def exists(self, kind: str, key: str) -> bool:
        return self.storage.exists(self.asset_key(kind, key))

    def existing_media(self, key: str) -> Dict[str, bool]:
        """Which media kinds already exist for ``key``"""
        return {kind: self.exists(kind, key) for kind in MEDIA_EXTENSIONS}

    async def ensure(
        self,
        kind: str,
        key: str,
        generate: Callable[[], Awaitable[bytes]],
        force: bool = False,
        known_exists: Optional[bool] = None
    ) -> MediaAsset:
        """
        Return the shared asset for ``key``, generating it only if missing.

        Args:
            kind: 'image' or 'audio'
            key: Text key the asset is addressed by
            generate: Produces the asset bytes; called at most once per call
            force: Regenerate even if the asset exists
            known_exists: Existence already checked by the caller (batch prefetch)
        """
        asset_key = self.asset_key(kind, key)
        if not force and known_exists:
            return MediaAsset(self.storage.get_url(asset_key), generated=False)

        lock = self._locks.setdefault(asset_key, asyncio.Lock())
        self._lock_users[asset_key] = self._lock_users.get(asset_key, 0) + 1
        try:
            async with lock:
                if not force and self.storage.exists(asset_key):
                    return MediaAsset(self.storage.get_url(asset_key), generated=False)

                content = await generate()
                if not content:
                    raise ValidationError(f"Empty {kind} generated for {key}")
                self.storage.save(asset_key, content)
                logger.info(f"Stored {kind} for {key} at {asset_key}")
                return MediaAsset(self.storage.get_url(asset_key), generated=True)
        finally:
            self._lock_users[asset_key] -= 1
            if not self._lock_users[asset_key]:
                del self._lock_users[asset_key]
                del self._locks[asset_key]
