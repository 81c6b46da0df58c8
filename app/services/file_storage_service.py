from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Any, Protocol
from uuid import uuid4

import cloudinary
import cloudinary.uploader
from cloudinary.exceptions import Error as CloudinaryError

from app.domain.models import StorageProvider


class FileStorageError(Exception):
    pass


class FileStorageNotFoundError(FileStorageError):
    pass


@dataclass(frozen=True)
class StoredFile:
    url: str
    secure_url: str
    public_id: str
    file_size: int
    provider: StorageProvider


class FileStorageAdapter(Protocol):
    provider: StorageProvider

    def upload(self, *, folder: str, file_name: str, content: bytes, content_type: str) -> StoredFile: ...

    def delete(self, public_id: str) -> bool: ...

    def resolve_download(self, attachment: Mapping[str, Any]) -> Path | str: ...


def safe_file_name(file_name: str) -> str:
    cleaned = Path(file_name).name.replace("\\", "_").replace("/", "_").strip()
    return cleaned.replace(" ", "_") or "file.bin"


class LocalFileStorageAdapter:
    provider = StorageProvider.LOCAL

    def __init__(self, root_dir: Path, public_base_url: str) -> None:
        self._root_dir = root_dir
        self._root_dir.mkdir(parents=True, exist_ok=True)
        self._public_base_url = public_base_url.rstrip("/")

    def _safe_object_path(self, public_id: str) -> Path:
        key_path = PurePosixPath(public_id)
        if key_path.is_absolute() or ".." in key_path.parts:
            raise FileStorageError("invalid public id")
        if not key_path.parts:
            raise FileStorageError("public id is empty")
        return self._root_dir / Path(*key_path.parts)

    def upload(self, *, folder: str, file_name: str, content: bytes, content_type: str) -> StoredFile:
        public_id = f"{folder.strip('/')}/{uuid4().hex}_{safe_file_name(file_name)}"
        path = self._safe_object_path(public_id)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(content)
        except OSError as exc:
            raise FileStorageError(f"local write failed: {exc}") from exc
        url = f"{self._public_base_url}/{public_id}"
        return StoredFile(
            url=url,
            secure_url=url,
            public_id=public_id,
            file_size=len(content),
            provider=self.provider,
        )

    def delete(self, public_id: str) -> bool:
        path = self._safe_object_path(public_id)
        if not path.exists():
            # Already gone counts as deleted.
            return True
        try:
            path.unlink()
        except OSError as exc:
            raise FileStorageError(f"local delete failed: {exc}") from exc
        return True

    def resolve_download(self, attachment: Mapping[str, Any]) -> Path:
        path = self._safe_object_path(str(attachment.get("public_id", "")))
        if not path.exists() or not path.is_file():
            raise FileStorageNotFoundError("file not found")
        return path


class CloudinaryStorageAdapter:
    provider = StorageProvider.CLOUDINARY
    DELETE_RESOURCE_TYPES: tuple[str, ...] = ("raw", "image")

    def __init__(
        self,
        *,
        cloud_name: str,
        api_key: str,
        api_secret: str,
        timeout_seconds: float = 30.0,
    ) -> None:
        if not cloud_name or not api_key or not api_secret:
            raise FileStorageError("cloudinary credentials are not configured")
        cloudinary.config(cloud_name=cloud_name, api_key=api_key, api_secret=api_secret, secure=True)
        self._timeout_seconds = timeout_seconds

    def upload(self, *, folder: str, file_name: str, content: bytes, content_type: str) -> StoredFile:
        try:
            body = cloudinary.uploader.upload(
                content,
                folder=folder.strip("/"),
                filename=safe_file_name(file_name),
                use_filename=True,
                resource_type="auto",
                timeout=self._timeout_seconds,
            )
        except CloudinaryError as exc:
            raise FileStorageError(f"cloudinary upload failed: {exc}") from exc
        try:
            return StoredFile(
                url=str(body["url"]),
                secure_url=str(body.get("secure_url") or body["url"]),
                public_id=str(body["public_id"]),
                file_size=int(body.get("bytes", len(content))),
                provider=self.provider,
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise FileStorageError("cloudinary upload response is incomplete") from exc

    def delete(self, public_id: str) -> bool:
        clean_public_id = "_".join(public_id.strip().split())
        # Uploads go in as "auto", so the resource type is not known here.
        for resource_type in self.DELETE_RESOURCE_TYPES:
            try:
                body = cloudinary.uploader.destroy(
                    clean_public_id,
                    invalidate=True,
                    resource_type=resource_type,
                    timeout=self._timeout_seconds,
                )
            except CloudinaryError as exc:
                raise FileStorageError(f"cloudinary delete failed: {exc}") from exc
            if body.get("result") in {"ok", "not found"}:
                return True
        return False

    def resolve_download(self, attachment: Mapping[str, Any]) -> str:
        target = attachment.get("secure_url") or attachment.get("file_url")
        if not target:
            raise FileStorageNotFoundError("file url missing")
        return str(target)


def build_storage_adapter() -> FileStorageAdapter:
    backend = os.getenv("FILE_STORAGE_BACKEND", "local").strip().lower()
    if backend == StorageProvider.LOCAL:
        root_dir = Path(os.getenv("FILE_STORAGE_ROOT", "data/file_storage"))
        public_base_url = os.getenv("FILE_STORAGE_PUBLIC_BASE_URL", "/files")
        return LocalFileStorageAdapter(root_dir, public_base_url)
    if backend == StorageProvider.CLOUDINARY:
        return CloudinaryStorageAdapter(
            cloud_name=os.getenv("CLOUDINARY_CLOUD_NAME", ""),
            api_key=os.getenv("CLOUDINARY_API_KEY", ""),
            api_secret=os.getenv("CLOUDINARY_API_SECRET", ""),
        )
    raise FileStorageError(f"unsupported storage backend: {backend}")


class FileStorageService:
    def __init__(self, adapter: FileStorageAdapter | None = None) -> None:
        self._adapter = adapter or build_storage_adapter()
        self.folder_prefix = os.getenv("CLOUDINARY_FOLDER_PREFIX", "team-sync").strip("/")

    @property
    def provider(self) -> StorageProvider:
        return self._adapter.provider

    def build_folder(self, *, path_hint: str, attachment_type: str) -> str:
        return f"{self.folder_prefix}/{path_hint.strip('/')}/{attachment_type}"

    def upload(
        self,
        *,
        content: bytes,
        file_name: str,
        content_type: str,
        path_hint: str,
        attachment_type: str,
    ) -> StoredFile:
        return self._adapter.upload(
            folder=self.build_folder(path_hint=path_hint, attachment_type=attachment_type),
            file_name=file_name,
            content=content,
            content_type=content_type,
        )

    def delete(self, public_id: str) -> bool:
        if not public_id:
            return False
        return self._adapter.delete(public_id)

    def resolve_download(self, attachment: Mapping[str, Any]) -> Path | str:
        return self._adapter.resolve_download(attachment)
