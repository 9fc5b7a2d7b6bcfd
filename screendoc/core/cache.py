"""In-memory screenshot and thumbnail cache."""

import threading
from collections import OrderedDict
from typing import Hashable, Optional

from loguru import logger

from .compression import TARGET_SIZES, EncodedImage, derive_thumbnail

MAX_CACHE_ITEMS = 30


class ScreenshotCache:
    """Bounded cache of full-size screenshots and their thumbnails.

    Eviction is by insertion order: when full, the earliest-inserted entry
    goes first regardless of how recently it was read. Re-inserting an id
    that is already cached replaces the image in place and keeps its
    original position. Thumbnails live in a separate map with their own
    bound (defaults to the full-image capacity).
    """

    def __init__(
        self,
        capacity: int = MAX_CACHE_ITEMS,
        thumbnail_capacity: Optional[int] = None,
        thumbnail_max_dimension: int = 200,
        thumbnail_target_bytes: int = TARGET_SIZES["thumbnail"],
        thumbnail_quality: float = 0.6,
    ) -> None:
        """Initialize cache.

        Args:
            capacity: Maximum number of full images held
            thumbnail_capacity: Maximum number of thumbnails (defaults to capacity)
            thumbnail_max_dimension: Longest side of derived thumbnails
            thumbnail_target_bytes: Byte budget of derived thumbnails
            thumbnail_quality: Starting JPEG quality of derived thumbnails
        """
        if capacity < 1:
            raise ValueError("Cache capacity must be at least 1")
        self.capacity = capacity
        self.thumbnail_capacity = thumbnail_capacity if thumbnail_capacity is not None else capacity
        if self.thumbnail_capacity < 1:
            raise ValueError("Thumbnail capacity must be at least 1")
        self.thumbnail_max_dimension = thumbnail_max_dimension
        self.thumbnail_target_bytes = thumbnail_target_bytes
        self.thumbnail_quality = thumbnail_quality

        self._images: "OrderedDict[Hashable, EncodedImage]" = OrderedDict()
        self._thumbnails: "OrderedDict[Hashable, EncodedImage]" = OrderedDict()
        self._lock = threading.Lock()

    def put(self, screenshot_id: Hashable, image: EncodedImage,
            thumbnail: Optional[EncodedImage] = None) -> None:
        """Cache a screenshot, evicting the oldest entry first when full.

        Args:
            screenshot_id: Screenshot identifier
            image: Full-size image
            thumbnail: Optional thumbnail rendition
        """
        with self._lock:
            self._insert(self._images, self.capacity, screenshot_id, image)
            if thumbnail is not None:
                self._insert(self._thumbnails, self.thumbnail_capacity, screenshot_id, thumbnail)

    @staticmethod
    def _insert(store: OrderedDict, bound: int, key: Hashable, value: EncodedImage) -> None:
        if key in store:
            store[key] = value
            return
        while len(store) >= bound:
            evicted, _ = store.popitem(last=False)
            logger.debug(f"Evicted screenshot {evicted} from cache")
        store[key] = value

    def get(self, screenshot_id: Hashable) -> Optional[EncodedImage]:
        with self._lock:
            return self._images.get(screenshot_id)

    def get_thumbnail(self, screenshot_id: Hashable) -> Optional[EncodedImage]:
        with self._lock:
            return self._thumbnails.get(screenshot_id)

    def remove(self, screenshot_id: Hashable) -> None:
        with self._lock:
            self._images.pop(screenshot_id, None)
            self._thumbnails.pop(screenshot_id, None)

    def clear(self) -> None:
        with self._lock:
            self._images.clear()
            self._thumbnails.clear()

    def garbage_collect(self) -> int:
        """Drop the oldest half of the full-image cache.

        Returns:
            Number of entries removed
        """
        with self._lock:
            to_remove = len(self._images) // 2
            for _ in range(to_remove):
                self._images.popitem(last=False)
        if to_remove:
            logger.info(f"Garbage collected {to_remove} items from screenshot cache")
        return to_remove

    def derive_thumbnail(self, image: EncodedImage, max_dimension: Optional[int] = None) -> EncodedImage:
        """Produce a thumbnail with this cache's thumbnail settings."""
        return derive_thumbnail(
            image,
            max_dimension=max_dimension or self.thumbnail_max_dimension,
            target_bytes=self.thumbnail_target_bytes,
            quality=self.thumbnail_quality,
        )

    def ids(self) -> list:
        """Cached screenshot ids, oldest first."""
        with self._lock:
            return list(self._images.keys())

    @property
    def thumbnail_count(self) -> int:
        with self._lock:
            return len(self._thumbnails)

    def __len__(self) -> int:
        with self._lock:
            return len(self._images)

    def __contains__(self, screenshot_id: object) -> bool:
        with self._lock:
            return screenshot_id in self._images
