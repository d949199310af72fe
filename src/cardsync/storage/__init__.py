"""Photo storage for contact pictures pulled from vCards."""

from cardsync.storage.photos import LocalPhotoStore, PhotoStore, PhotoTooLargeError

__all__ = ["LocalPhotoStore", "PhotoStore", "PhotoTooLargeError"]
