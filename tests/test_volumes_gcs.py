"""Tests for the GCS prefix volume against an in-memory storage client."""

from __future__ import annotations

import base64

import pytest
from conftest import make_settings
from google.api_core.exceptions import Forbidden, NotFound

from drydock.config import VolumesConfig
from drydock.errors import ConfigurationError, ContainerError
from drydock.volumes.gcs import GcsVolume


class FakeBlob:
    def __init__(self, store: dict[str, bytes], name: str, *, fail: Exception | None = None):
        self._store = store
        self.name = name
        self._fail = fail

    def upload_from_string(self, data):
        if self._fail is not None:
            raise self._fail
        self._store[self.name] = data if isinstance(data, bytes) else data.encode()

    def download_as_bytes(self):
        if self.name not in self._store:
            raise NotFound(self.name)
        return self._store[self.name]

    def delete(self):
        if self._store.pop(self.name, None) is None:
            raise NotFound(self.name)


class FakeBucket:
    def __init__(self, client: FakeStorageClient):
        self._client = client

    def blob(self, name):
        fail = self._client.fail_uploads
        if self._client.uploads_before_failure is not None:
            if len(self._client.objects) >= self._client.uploads_before_failure:
                fail = self._client.late_failure
        return FakeBlob(self._client.objects, name, fail=fail)


class FakeStorageClient:
    def __init__(self) -> None:
        self.objects: dict[str, bytes] = {}
        self.buckets: list[str] = []
        self.fail_uploads: Exception | None = None
        # Fail with late_failure once this many objects exist
        self.uploads_before_failure: int | None = None
        self.late_failure: Exception | None = None

    def bucket(self, name):
        self.buckets.append(name)
        return FakeBucket(self)

    def list_blobs(self, bucket_name, prefix=""):
        return [FakeBlob(self.objects, n) for n in sorted(self.objects) if n.startswith(prefix)]


@pytest.fixture
def client():
    return FakeStorageClient()


@pytest.fixture
def volume(client):
    settings = make_settings(volumes=VolumesConfig(mode="gcs", gcs_bucket="scan-data"))
    return GcsVolume("tenant-1", "run-1", settings=settings, client=client)


class TestGcsVolume:
    def test_requires_bucket(self, client):
        with pytest.raises(ConfigurationError, match="gcs_bucket"):
            GcsVolume("t", "r", settings=make_settings(), client=client)

    async def test_initialize_uploads_under_prefix(self, volume, client):
        prefix = await volume.initialize({"targets.txt": "example.com", "raw.bin": b"\x01"})

        assert prefix.startswith("tenant-1/run-1/")
        assert client.objects == {
            f"{prefix}/targets.txt": b"example.com",
            f"{prefix}/raw.bin": b"\x01",
        }
        assert client.buckets[0] == "scan-data"

    async def test_mount_config(self, volume):
        prefix = await volume.initialize({})
        mount = volume.get_mount_config("/data", read_only=False)
        assert mount.source == f"scan-data:{prefix}"
        assert mount.kind == "gcsfuse"
        assert mount.volume is volume

    async def test_read_files(self, volume, client):
        prefix = await volume.initialize({"a.txt": "alpha"})
        # Written by the container through the FUSE mount
        client.objects[f"{prefix}/out/result.json"] = b'{"ok": true}'

        assert await volume.read_files() == {"a.txt": "alpha", "out/result.json": '{"ok": true}'}
        assert await volume.read_files(["a.txt", "missing.txt"]) == {"a.txt": "alpha"}

    async def test_other_runs_are_invisible(self, volume, client):
        await volume.initialize({"a.txt": "alpha"})
        client.objects["tenant-1/run-2/1/a.txt"] = b"other"
        assert await volume.read_files() == {"a.txt": "alpha"}

    async def test_write_back(self, volume, client):
        prefix = await volume.initialize({})
        await volume.write_back({"report.txt": base64.b64encode(b"done").decode()})
        assert client.objects[f"{prefix}/report.txt"] == b"done"

    async def test_upload_failure_cleans_up(self, volume, client):
        client.fail_uploads = Forbidden("no access")

        with pytest.raises(ContainerError, match="no access"):
            await volume.initialize({"a.txt": "x"})
        assert volume.name is None

    async def test_transport_failure_mid_upload_removes_partial_objects(self, volume, client):
        client.uploads_before_failure = 1
        client.late_failure = ConnectionError("connection reset by peer")

        with pytest.raises(ContainerError, match="connection reset") as exc_info:
            await volume.initialize({"a.txt": "x", "b.txt": "y", "c.txt": "z"})

        assert isinstance(exc_info.value.__cause__, ConnectionError)
        assert client.objects == {}
        assert volume.name is None

    async def test_cleanup_deletes_prefix(self, volume, client):
        await volume.initialize({"a.txt": "x", "sub/b.txt": "y"})
        client.objects["tenant-1/run-2/1/keep.txt"] = b"other"

        await volume.cleanup()
        await volume.cleanup()

        assert list(client.objects) == ["tenant-1/run-2/1/keep.txt"]
        assert volume.name is None
