"""Tests for the image sinks and their selection."""

import re
from types import SimpleNamespace

import cloudinary.exceptions
import pytest

import storage
from errors import ImageUploadError
from storage import HostedUploadSink, ImageFile, LocalDiskSink, build_image_sink, unique_name

PNG = b"\x89PNG\r\n\x1a\n" + b"0" * 16


def test_unique_name_keeps_a_sanitized_original():
    name = unique_name("../My Photo (1).png")
    assert re.fullmatch(r"\d+-\d{9}-My-Photo-1-.png", name)


def test_unique_name_without_original():
    assert re.fullmatch(r"\d+-\d{9}", unique_name())


class TestHostedUploadSink:
    def test_returns_secure_url(self, monkeypatch):
        calls = []

        def fake_upload(file, **options):
            calls.append(options)
            return {"secure_url": f"https://res.cloudinary.com/demo/{options['folder']}/{options['public_id']}.png"}

        monkeypatch.setattr(storage.cloudinary.uploader, "upload", fake_upload)

        url = HostedUploadSink().store(ImageFile("a.png", "image/png", PNG), folder="products")
        assert url.startswith("https://res.cloudinary.com/demo/products/")
        assert calls[0]["resource_type"] == "image"

    def test_provider_error_becomes_upload_error(self, monkeypatch):
        def failing_upload(file, **options):
            raise cloudinary.exceptions.Error("quota exceeded")

        monkeypatch.setattr(storage.cloudinary.uploader, "upload", failing_upload)

        with pytest.raises(ImageUploadError, match="quota exceeded"):
            HostedUploadSink().store(ImageFile("a.png", "image/png", PNG))

    def test_missing_url_is_an_upload_error(self, monkeypatch):
        monkeypatch.setattr(storage.cloudinary.uploader, "upload", lambda file, **options: {})

        with pytest.raises(ImageUploadError):
            HostedUploadSink().store(ImageFile("a.png", "image/png", PNG))


class TestBuildImageSink:
    def test_local(self):
        assert isinstance(build_image_sink("local"), LocalDiskSink)

    def test_hosted_requires_credentials(self, monkeypatch):
        monkeypatch.setattr(storage.cloudinary, "config", lambda: SimpleNamespace(cloud_name=None))

        with pytest.raises(RuntimeError, match="CLOUDINARY_URL"):
            build_image_sink("hosted")

    def test_hosted_with_credentials(self, monkeypatch):
        monkeypatch.setattr(storage.cloudinary, "config", lambda: SimpleNamespace(cloud_name="demo"))

        assert isinstance(build_image_sink("hosted"), HostedUploadSink)

    def test_unknown_mode(self):
        with pytest.raises(RuntimeError, match="Unknown IMAGE_STORAGE"):
            build_image_sink("s3")


def test_unwritable_directory_is_an_upload_error(tmp_path):
    blocker = tmp_path / "taken"
    blocker.write_text("not a directory")
    sink = LocalDiskSink(directory=str(blocker / "images"))

    with pytest.raises(ImageUploadError):
        sink.store(ImageFile("a.png", "image/png", PNG))
