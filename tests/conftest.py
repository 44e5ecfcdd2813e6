"""
Pytest configuration.

Why this exists:

The project uses a ``src/`` layout (package code lives in ``src/fi_scanner``).
Normally, developers run tests after installing the package (e.g. ``pip install -e .``).

On some macOS/Python 3.13 setups, editable installs in dot-prefixed virtualenv
folders (like ``.venv``) can result in the generated ``.pth`` file being marked
as hidden, and Python's ``site`` module will skip hidden ``.pth`` files. When
that happens, ``import fi_scanner`` fails even though the source tree is
present.

This file makes tests robust in that scenario by adding ``src/`` to ``sys.path``
only when the package cannot be imported normally. It also provides the
in-memory object store and settings fixtures shared by the test modules.
"""

from __future__ import annotations

import sys
from pathlib import Path


def _ensure_src_on_path() -> None:
    try:
        import fi_scanner  # noqa: F401
        return
    except ModuleNotFoundError:
        pass

    repo_root = Path(__file__).resolve().parents[1]
    src_dir = repo_root / "src"
    sys.path.insert(0, str(src_dir))


_ensure_src_on_path()

import datetime as dt
import io
import os

import pytest

from fi_scanner.config import Settings
from fi_scanner.extraction import ExtractedText

UTC = dt.timezone.utc

BASE_ENV = {
    "S3_BUCKET_NAME": "planning-bucket",
    "OPENAI_API_KEY": "test_api_key",
    "RETRY_BASE_DELAY": "0.01",
    "MAX_RETRY_BACKOFF_SECONDS": "0.05",
}


class FakeS3:
    """
    In-memory stand-in for the boto3 S3 client.

    Keys are listed in lexicographic order, like S3. The continuation token is
    the last key of the previous page.
    """

    def __init__(self, objects: dict[str, tuple[dt.datetime, bytes]] | None = None):
        self.objects = dict(objects or {})
        self.list_calls: list[dict] = []
        self.get_calls: list[str] = []

    def put(self, key: str, last_modified: dt.datetime, body: bytes | str = b"") -> None:
        if isinstance(body, str):
            body = body.encode("utf-8")
        self.objects[key] = (last_modified, body)

    def list_objects_v2(self, Bucket, Prefix="", MaxKeys=1000, ContinuationToken=None, StartAfter=None):
        self.list_calls.append(
            {
                "Bucket": Bucket,
                "Prefix": Prefix,
                "MaxKeys": MaxKeys,
                "ContinuationToken": ContinuationToken,
                "StartAfter": StartAfter,
            }
        )
        keys = sorted(k for k in self.objects if k.startswith(Prefix))
        after = ContinuationToken or StartAfter
        if after:
            keys = [k for k in keys if k > after]
        page, rest = keys[:MaxKeys], keys[MaxKeys:]
        response = {
            "Contents": [
                {
                    "Key": key,
                    "LastModified": self.objects[key][0],
                    "Size": len(self.objects[key][1]),
                }
                for key in page
            ],
            "KeyCount": len(page),
            "IsTruncated": bool(rest),
        }
        if rest:
            response["NextContinuationToken"] = page[-1]
        return response

    def get_object(self, Bucket, Key):
        self.get_calls.append(Key)
        return {"Body": io.BytesIO(self.objects[Key][1])}


class PlainTextExtractor:
    """Treats every object body as UTF-8 text."""

    def extract(self, document, body: bytes) -> ExtractedText:
        text = body.decode("utf-8")
        return ExtractedText(text=text, page_count=None, full_length=len(text))


@pytest.fixture
def env(mocker):
    """Patch the environment with the minimal required settings."""

    def _apply(**overrides):
        values = {**BASE_ENV, **{k: str(v) for k, v in overrides.items()}}
        mocker.patch.dict(os.environ, values, clear=True)
        return values

    return _apply


@pytest.fixture
def settings(env):
    env()
    return Settings()


@pytest.fixture
def fake_s3():
    return FakeS3()


@pytest.fixture
def plain_extractor():
    return PlainTextExtractor()
