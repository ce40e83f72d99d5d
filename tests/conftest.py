# FILE: tests/conftest.py

import io
import os
import sys
import tempfile
from pathlib import Path

# Add project root to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

# Keep the global settings singleton out of the working tree
_scratch = tempfile.mkdtemp(prefix="bookcovers-tests-")
os.environ.setdefault("LOGS_DIR", os.path.join(_scratch, "logs"))
os.environ.setdefault("COVER_CACHE_DIR", os.path.join(_scratch, "covers"))

import asyncio

import httpx
import pytest
from botocore.exceptions import ClientError
from PIL import Image

from bookcovers.config import Settings
from bookcovers.models.books import Book
from bookcovers.models.images import ImageCandidate
from bookcovers.providers.base import CoverFetcher
from bookcovers.services.source_mapping import to_image_source_name


@pytest.fixture
def settings(tmp_path):
    """Settings pointed at a per-test directory"""
    return Settings(
        logs_dir=str(tmp_path / "logs"),
        cover_cache_dir=str(tmp_path / "covers"),
        s3_enabled=True,
        s3_bucket_name="test-bucket",
        s3_cdn_url="https://cdn.example.com",
        provider_timeout_seconds=2.0,
        request_timeout_seconds=5.0,
        cache_read_timeout_seconds=1.0,
    )


@pytest.fixture
def make_image():
    """Factory for encoded test images"""
    def _make(width=400, height=600, color=(20, 60, 120), fmt="JPEG"):
        buf = io.BytesIO()
        Image.new("RGB", (width, height), color).save(buf, format=fmt)
        return buf.getvalue()
    return _make


@pytest.fixture
def sample_book():
    return Book(id="vol123", isbn13="978-0-306-40615-7", title="Sample Book", authors=["A. Author"])


def _client_error(code: str, operation: str) -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


class FakeS3Client:
    """In-memory stand-in for a boto3 S3 client"""

    def __init__(self):
        self.objects = {}
        self.calls = []
        self.fail = set()

    def _check(self, operation, key=None):
        self.calls.append((operation, key))
        if (operation, key) in self.fail or (operation, None) in self.fail:
            raise _client_error("InternalError", operation)

    def put(self, key, data, metadata=None, content_type="image/jpeg"):
        self.objects[key] = {"Body": data, "Metadata": dict(metadata or {}), "ContentType": content_type}

    def list_objects_v2(self, Bucket, Prefix="", MaxKeys=1000, ContinuationToken=None):
        self._check("list_objects_v2")
        keys = sorted(k for k in self.objects if k.startswith(Prefix))
        start = int(ContinuationToken or 0)
        page = keys[start:start + MaxKeys]
        result = {
            "Contents": [{"Key": k, "Size": len(self.objects[k]["Body"])} for k in page],
            "KeyCount": len(page),
            "IsTruncated": start + MaxKeys < len(keys),
        }
        if result["IsTruncated"]:
            result["NextContinuationToken"] = str(start + MaxKeys)
        return result

    def get_object(self, Bucket, Key):
        self._check("get_object", Key)
        if Key not in self.objects:
            raise _client_error("NoSuchKey", "GetObject")
        obj = self.objects[Key]
        return {"Body": io.BytesIO(obj["Body"]), "ContentType": obj["ContentType"], "Metadata": obj["Metadata"]}

    def head_object(self, Bucket, Key):
        self._check("head_object", Key)
        if Key not in self.objects:
            raise _client_error("404", "HeadObject")
        obj = self.objects[Key]
        return {"ContentLength": len(obj["Body"]), "ContentType": obj["ContentType"], "Metadata": obj["Metadata"]}

    def put_object(self, Bucket, Key, Body, ContentType=None, Metadata=None):
        self._check("put_object", Key)
        self.put(Key, Body, Metadata, ContentType or "binary/octet-stream")
        return {}

    def copy_object(self, Bucket, Key, CopySource):
        self._check("copy_object", CopySource["Key"])
        source = self.objects[CopySource["Key"]]
        self.objects[Key] = dict(source)
        return {}

    def delete_object(self, Bucket, Key):
        self._check("delete_object", Key)
        self.objects.pop(Key, None)
        return {}


@pytest.fixture
def fake_s3():
    return FakeS3Client()


class StubFetcher(CoverFetcher):
    """Fetcher returning a canned candidate or raising a canned error"""

    def __init__(self, source, settings, result=None, error=None, delay=0.0):
        super().__init__(client=httpx.AsyncClient(transport=httpx.MockTransport(_not_found)), settings=settings)
        self.source = source
        self.result = result
        self.error = error
        self.delay = delay
        self.calls = 0

    async def fetch_cover(self, book):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.result


def _not_found(request):
    return httpx.Response(404)


@pytest.fixture
def stub_fetcher(settings):
    """Factory for StubFetcher bound to the test settings"""
    def _make(source, **kwargs):
        return StubFetcher(source, settings, **kwargs)
    return _make


@pytest.fixture
def remote_candidate(make_image):
    """Factory for freshly fetched provider candidates (with bytes)"""
    def _make(source, width=400, height=600, location=None):
        return ImageCandidate(
            location=location or f"https://{source.value.lower()}.example/{width}x{height}.jpg",
            source_name=to_image_source_name(source),
            cover_source=source,
            width=width,
            height=height,
            content_type="image/jpeg",
            image_bytes=make_image(width, height),
        )
    return _make
