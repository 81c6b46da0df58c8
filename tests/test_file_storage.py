from __future__ import annotations

from pathlib import Path

import cloudinary
import cloudinary.uploader
import pytest
from cloudinary.exceptions import Error as CloudinaryError

from app.domain.models import StorageProvider
from app.services.file_storage_service import (
    CloudinaryStorageAdapter,
    FileStorageError,
    FileStorageNotFoundError,
    FileStorageService,
    LocalFileStorageAdapter,
    build_storage_adapter,
    safe_file_name,
)


def test_safe_file_name_strips_directories() -> None:
    assert safe_file_name("../../etc/passwd") == "passwd"
    assert safe_file_name("my report.pdf") == "my_report.pdf"
    assert safe_file_name("   ") == "file.bin"


def test_local_adapter_round_trip(tmp_path: Path) -> None:
    service = FileStorageService(LocalFileStorageAdapter(tmp_path, "/files/"))
    stored = service.upload(
        content=b"payload",
        file_name="price sheet.txt",
        content_type="text/plain",
        path_hint="tasks/t-1",
        attachment_type="context",
    )

    assert stored.provider == StorageProvider.LOCAL
    assert stored.public_id.startswith("team-sync/tasks/t-1/context/")
    assert stored.public_id.endswith("_price_sheet.txt")
    assert stored.url == f"/files/{stored.public_id}"
    assert stored.file_size == 7

    path = service.resolve_download({"public_id": stored.public_id})
    assert isinstance(path, Path)
    assert path.read_bytes() == b"payload"

    assert service.delete(stored.public_id) is True
    assert not path.exists()
    # A second delete of the same file still succeeds.
    assert service.delete(stored.public_id) is True
    with pytest.raises(FileStorageNotFoundError):
        service.resolve_download({"public_id": stored.public_id})


def test_local_adapter_rejects_escaping_ids(tmp_path: Path) -> None:
    adapter = LocalFileStorageAdapter(tmp_path, "/files")
    with pytest.raises(FileStorageError):
        adapter.delete("../outside.txt")
    with pytest.raises(FileStorageError):
        adapter.resolve_download({"public_id": "/etc/passwd"})
    assert FileStorageService(adapter).delete("") is False


def test_folder_prefix_from_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CLOUDINARY_FOLDER_PREFIX", "/acme-sync/")
    service = FileStorageService(LocalFileStorageAdapter(tmp_path, "/files"))
    assert service.build_folder(path_hint="/tasks/t-9/", attachment_type="result") == "acme-sync/tasks/t-9/result"


def test_build_storage_adapter_from_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("FILE_STORAGE_BACKEND", "local")
    monkeypatch.setenv("FILE_STORAGE_ROOT", str(tmp_path / "store"))
    assert isinstance(build_storage_adapter(), LocalFileStorageAdapter)

    monkeypatch.setenv("FILE_STORAGE_BACKEND", "cloudinary")
    monkeypatch.delenv("CLOUDINARY_CLOUD_NAME", raising=False)
    with pytest.raises(FileStorageError):
        build_storage_adapter()

    monkeypatch.setenv("FILE_STORAGE_BACKEND", "ftp")
    with pytest.raises(FileStorageError):
        build_storage_adapter()


def _cloudinary() -> CloudinaryStorageAdapter:
    return CloudinaryStorageAdapter(cloud_name="demo-cloud", api_key="key-123", api_secret="secret-xyz")


def test_cloudinary_adapter_configures_sdk() -> None:
    _cloudinary()
    config = cloudinary.config()
    assert config.cloud_name == "demo-cloud"
    assert config.api_key == "key-123"
    assert config.secure is True


def test_cloudinary_upload_goes_through_sdk(monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[tuple[bytes, dict]] = []

    def fake_upload(file: bytes, **options) -> dict:
        calls.append((file, options))
        return {
            "public_id": "team-sync/tasks/t-1/result/draft",
            "url": "http://res.cloudinary.com/demo-cloud/raw/upload/draft.txt",
            "secure_url": "https://res.cloudinary.com/demo-cloud/raw/upload/draft.txt",
            "bytes": 5,
        }

    monkeypatch.setattr(cloudinary.uploader, "upload", fake_upload)
    service = FileStorageService(_cloudinary())
    stored = service.upload(
        content=b"draft",
        file_name="my draft.txt",
        content_type="text/plain",
        path_hint="tasks/t-1",
        attachment_type="result",
    )

    assert stored.provider == StorageProvider.CLOUDINARY
    assert stored.public_id == "team-sync/tasks/t-1/result/draft"
    assert stored.secure_url.startswith("https://")
    assert stored.file_size == 5

    assert len(calls) == 1
    content, options = calls[0]
    assert content == b"draft"
    assert options["folder"] == "team-sync/tasks/t-1/result"
    assert options["filename"] == "my_draft.txt"
    assert options["resource_type"] == "auto"


def test_cloudinary_incomplete_upload_response(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(cloudinary.uploader, "upload", lambda file, **options: {"bytes": 1})
    with pytest.raises(FileStorageError, match="incomplete"):
        _cloudinary().upload(folder="f", file_name="a.txt", content=b"a", content_type="text/plain")


def test_cloudinary_delete_falls_back_to_image(monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[tuple[str, dict]] = []

    def fake_destroy(public_id: str, **options) -> dict:
        calls.append((public_id, options))
        return {"result": "error" if options["resource_type"] == "raw" else "ok"}

    monkeypatch.setattr(cloudinary.uploader, "destroy", fake_destroy)
    assert _cloudinary().delete(" team-sync/tasks/t-1/feedback/my notes ") is True
    assert [(public_id, options["resource_type"]) for public_id, options in calls] == [
        ("team-sync/tasks/t-1/feedback/my_notes", "raw"),
        ("team-sync/tasks/t-1/feedback/my_notes", "image"),
    ]
    assert all(options["invalidate"] is True for _, options in calls)


def test_cloudinary_delete_treats_not_found_as_done(monkeypatch: pytest.MonkeyPatch) -> None:
    resource_types: list[str] = []

    def fake_destroy(public_id: str, **options) -> dict:
        resource_types.append(options["resource_type"])
        return {"result": "not found"}

    monkeypatch.setattr(cloudinary.uploader, "destroy", fake_destroy)
    assert _cloudinary().delete("gone") is True
    assert resource_types == ["raw"]


def test_cloudinary_delete_reports_failure(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(cloudinary.uploader, "destroy", lambda public_id, **options: {"result": "error"})
    assert _cloudinary().delete("stuck") is False


def test_cloudinary_sdk_error_is_storage_error(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_upload(file: bytes, **options) -> dict:
        raise CloudinaryError("Invalid Signature")

    monkeypatch.setattr(cloudinary.uploader, "upload", fake_upload)
    with pytest.raises(FileStorageError, match="Invalid Signature"):
        _cloudinary().upload(folder="f", file_name="a.txt", content=b"a", content_type="text/plain")


def test_cloudinary_download_uses_secure_url() -> None:
    adapter = _cloudinary()
    assert adapter.resolve_download({"secure_url": "https://cdn/x", "file_url": "http://cdn/x"}) == "https://cdn/x"
    with pytest.raises(FileStorageNotFoundError):
        adapter.resolve_download({})
