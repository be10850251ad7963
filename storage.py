"""
Image storage

Two sinks share one interface: LocalDiskSink writes into a directory served
under IMAGE_URL_PREFIX, HostedUploadSink pushes to Cloudinary. The sink is
chosen once per process from config.IMAGE_STORAGE.
"""
import io
import os
import random
import re
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

import cloudinary
import cloudinary.exceptions
import cloudinary.uploader

import config
from errors import ImageUploadError
from logging_config import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class ImageFile:
    filename: str
    content_type: str
    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)


def unique_name(original: str = "") -> str:
    """``<epoch-ms>-<9 random digits>[-<sanitized original>]``"""
    stem = f"{int(time.time() * 1000)}-{random.randint(0, 10 ** 9 - 1):09d}"
    safe = re.sub(r"[^A-Za-z0-9._-]+", "-", os.path.basename(original or "")).strip("-.")
    return f"{stem}-{safe}" if safe else stem


class ImageSink(ABC):
    @abstractmethod
    def store(self, image: ImageFile, folder: str = config.IMAGE_FOLDER) -> str:
        """Persist one image and return the URL it is served from.

        Raises ImageUploadError when this image could not be stored.
        """
        ...


class LocalDiskSink(ImageSink):
    def __init__(self, directory: str = config.UPLOAD_DIR, url_prefix: str = config.IMAGE_URL_PREFIX):
        self.directory = Path(directory)
        self.url_prefix = url_prefix.rstrip("/")

    def store(self, image: ImageFile, folder: str = config.IMAGE_FOLDER) -> str:
        name = unique_name(image.filename)
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            (self.directory / name).write_bytes(image.data)
        except OSError as exc:
            raise ImageUploadError(f"Could not write {image.filename}: {exc}") from exc
        return f"{self.url_prefix}/{name}"


class HostedUploadSink(ImageSink):
    """Cloudinary uploads. Credentials come from CLOUDINARY_URL."""

    def store(self, image: ImageFile, folder: str = config.IMAGE_FOLDER) -> str:
        try:
            result = cloudinary.uploader.upload(
                io.BytesIO(image.data),
                resource_type="image",
                folder=folder,
                public_id=unique_name(),
            )
        except (cloudinary.exceptions.Error, OSError) as exc:
            raise ImageUploadError(f"Upload of {image.filename} failed: {exc}") from exc
        url = result.get("secure_url")
        if not url:
            raise ImageUploadError(f"Upload of {image.filename} returned no URL")
        return url


def build_image_sink(mode: str = config.IMAGE_STORAGE) -> ImageSink:
    if mode == "local":
        return LocalDiskSink()
    if mode == "hosted":
        if not cloudinary.config().cloud_name:
            raise RuntimeError("IMAGE_STORAGE=hosted requires CLOUDINARY_URL")
        return HostedUploadSink()
    raise RuntimeError(f"Unknown IMAGE_STORAGE {mode!r}, expected 'local' or 'hosted'")


@lru_cache(maxsize=1)
def get_image_sink() -> ImageSink:
    """FastAPI dependency returning the process-wide sink."""
    sink = build_image_sink()
    logger.info("image_sink_selected", sink=type(sink).__name__)
    return sink
