from __future__ import annotations

import asyncio
import hashlib
import logging
import os
import shutil
import tarfile
import time
import uuid
import zipfile
from dataclasses import dataclass
from pathlib import Path
from threading import Lock
from typing import Dict, Optional

import requests

from meeting_intel.config import Settings
from meeting_intel.errors import (
    DiskError,
    GenerationTimeoutError,
    IntegrityError,
    ModelNotReadyError,
    NetworkError,
    PipelineError,
)

logger = logging.getLogger("meeting_intel.model_store")

MARKER_NAME = ".verified"
DOWNLOAD_BLOCK = 1024 * 1024


@dataclass(frozen=True)
class ModelDescriptor:
    engine: str
    version: str
    filename: str
    url: Optional[str]
    sha256: Optional[str] = None
    size_bytes: Optional[int] = None  # indicative only
    archive: bool = False  # zip/tar unpacked into a directory on publish

    @property
    def key(self) -> str:
        return f"{self.engine}/{self.version}/{self.filename}"


# Approximate CT2 archive sizes for the offered faster-whisper models
ASR_MODEL_SIZES: Dict[str, int] = {
    "tiny": 80_000_000,
    "base": 150_000_000,
    "small": 500_000_000,
    "medium": 1_600_000_000,
    "large-v3": 3_500_000_000,
    "distil-large-v3": 1_800_000_000,
}


def asr_descriptor(settings: Settings, model_id: str = "large-v3") -> ModelDescriptor:
    """Descriptor of the faster-whisper model archive for ``model_id``.

    ``MI_ASR_MODEL_URL`` may contain ``{model_id}``; the checksum is looked up
    by model id in ``MI_ASR_MODEL_SHA256``.
    """
    url = settings.asr_model_url.format(model_id=model_id) if settings.asr_model_url else None
    return ModelDescriptor(
        engine="faster-whisper",
        version=model_id,
        filename=f"faster-whisper-{model_id}.tar.gz",
        url=url,
        sha256=settings.asr_model_sha256.get(model_id),
        size_bytes=ASR_MODEL_SIZES.get(model_id),
        archive=True,
    )


def template_descriptor(name: str, version: str, url: str, sha256: Optional[str] = None) -> ModelDescriptor:
    return ModelDescriptor(engine="prompt-templates", version=version, filename=f"{name}.json", url=url, sha256=sha256)


def _sha256_file(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(DOWNLOAD_BLOCK), b""):
            h.update(chunk)
    return h.hexdigest()


def _safe_extract(archive_path: Path, target: Path) -> None:
    target.mkdir(parents=True, exist_ok=True)
    root = target.resolve()
    if zipfile.is_zipfile(archive_path):
        with zipfile.ZipFile(archive_path, "r") as zf:
            for name in zf.namelist():
                if not (root / name).resolve().is_relative_to(root):
                    raise IntegrityError(f"Archive entry escapes target directory: {name}")
            zf.extractall(target)
        return
    try:
        with tarfile.open(archive_path, "r:*") as tf:
            for member in tf.getmembers():
                if not (root / member.name).resolve().is_relative_to(root) or member.issym() or member.islnk():
                    raise IntegrityError(f"Unsafe archive entry: {member.name}")
            tf.extractall(target)
    except tarfile.TarError as exc:
        raise IntegrityError(f"Model archive could not be unpacked: {exc}") from exc


def _single_subdir(path: Path) -> Path:
    """Archives often wrap everything in one top-level folder; publish its content."""
    entries = [p for p in path.iterdir() if p.name != MARKER_NAME]
    if len(entries) == 1 and entries[0].is_dir():
        return entries[0]
    return path


class ModelStore:
    """Download, verify and cache model artifacts under one directory.

    No other component writes into ``root``. Publishing is a rename, so a
    model is either fully downloaded and verified or absent. Descriptors
    without an expected checksum are never downloaded nor reported available.
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root)
        self._inflight: Dict[str, asyncio.Task] = {}
        self._inflight_lock = Lock()
        self._state_lock = Lock()
        self._state: Dict[str, Dict[str, object]] = {}

    # -- paths and state -------------------------------------------------

    def local_path(self, descriptor: ModelDescriptor) -> Path:
        base = self.root / descriptor.engine / descriptor.version
        if descriptor.archive:
            return base / "model"
        return base / descriptor.filename

    def _marker_path(self, descriptor: ModelDescriptor) -> Path:
        path = self.local_path(descriptor)
        if descriptor.archive:
            return path / MARKER_NAME
        return path.with_name(path.name + ".sha256")

    def is_available(self, descriptor: ModelDescriptor) -> bool:
        path = self.local_path(descriptor)
        marker = self._marker_path(descriptor)
        if not descriptor.sha256 or not path.exists() or not marker.exists():
            return False
        try:
            recorded = marker.read_text(encoding="utf-8").strip().lower()
        except OSError:
            return False
        return recorded == descriptor.sha256.lower()

    def download_state(self, descriptor: Optional[ModelDescriptor] = None) -> Dict[str, object]:
        with self._state_lock:
            if descriptor is None:
                return {k: dict(v) for k, v in self._state.items()}
            return dict(self._state.get(descriptor.key, {"status": "idle", "progress": 0.0}))

    def _set_state(self, descriptor: ModelDescriptor, **kwargs: object) -> None:
        with self._state_lock:
            self._state.setdefault(descriptor.key, {"status": "idle", "progress": 0.0}).update(kwargs)

    # -- public operations ----------------------------------------------

    async def ensure_available(self, descriptor: ModelDescriptor, timeout: Optional[float] = None) -> Path:
        """Return the local path of a verified artifact, downloading it once if needed.

        Concurrent calls for the same descriptor share a single transfer; each
        caller waits at most its own ``timeout``.
        """
        if self.is_available(descriptor):
            self._set_state(descriptor, status="done", progress=1.0, message="already-present",
                            path=str(self.local_path(descriptor)))
            return self.local_path(descriptor)
        if not descriptor.url:
            raise ModelNotReadyError(f"No download URL configured for {descriptor.key}")
        if not descriptor.sha256:
            self._set_state(descriptor, status="error", message="no expected checksum configured")
            raise IntegrityError(f"No expected checksum configured for {descriptor.key}; refusing to download")

        with self._inflight_lock:
            task = self._inflight.get(descriptor.key)
            if task is None:
                task = asyncio.create_task(self._download_and_publish(descriptor, timeout))
                self._inflight[descriptor.key] = task
                task.add_done_callback(lambda _t, key=descriptor.key: self._inflight.pop(key, None))
            else:
                logger.info("Joining in-flight download of %s", descriptor.key)
        # cancelling or timing out one waiter leaves the shared transfer running
        try:
            return await asyncio.wait_for(asyncio.shield(task), timeout)
        except asyncio.TimeoutError as exc:
            raise GenerationTimeoutError(f"Timed out waiting for download of {descriptor.key}") from exc

    def remove(self, descriptor: ModelDescriptor) -> bool:
        path = self.local_path(descriptor)
        marker = self._marker_path(descriptor)
        if not path.exists():
            return False
        if descriptor.archive:
            shutil.rmtree(path)
        else:
            path.unlink()
            marker.unlink(missing_ok=True)
        self._set_state(descriptor, status="idle", progress=0.0, message="removed", path=None)
        logger.info("Removed cached model %s", descriptor.key)
        return True

    # -- internals --------------------------------------------------------

    async def _download_and_publish(self, descriptor: ModelDescriptor, timeout: Optional[float]) -> Path:
        deadline = time.monotonic() + timeout if timeout else None
        try:
            path = await asyncio.to_thread(self._fetch_verify_publish, descriptor, deadline)
        except Exception as exc:
            self._set_state(descriptor, status="error", message=str(exc))
            raise
        self._set_state(descriptor, status="done", progress=1.0, message="downloaded", path=str(path))
        return path

    def _check_disk_space(self, descriptor: ModelDescriptor) -> None:
        if not descriptor.size_bytes:
            return
        # Archives need room for the download and the unpacked copy
        needed = descriptor.size_bytes * (2 if descriptor.archive else 1)
        free = shutil.disk_usage(self.root).free
        if free < needed:
            raise DiskError(
                f"Not enough disk space for {descriptor.key}: need ~{needed // 1_000_000} MB, "
                f"have {free // 1_000_000} MB"
            )

    def _fetch_verify_publish(self, descriptor: ModelDescriptor, deadline: Optional[float]) -> Path:
        if not descriptor.url:
            raise ModelNotReadyError(f"No download URL configured for {descriptor.key}")

        tmp_root = self.root / ".tmp"
        try:
            tmp_root.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise DiskError(f"Model cache is not writable: {exc}") from exc
        self._check_disk_space(descriptor)

        token = uuid.uuid4().hex
        part = tmp_root / f"{token}-{descriptor.filename}.part"
        unpacked = tmp_root / f"{token}-unpacked"
        try:
            self._set_state(descriptor, status="running", progress=0.0, message="starting", path=None)
            self._download(descriptor, part, deadline)

            digest = _sha256_file(part)
            if not descriptor.sha256 or digest.lower() != descriptor.sha256.lower():
                raise IntegrityError(
                    f"Checksum mismatch for {descriptor.key}: expected {descriptor.sha256}, got {digest}"
                )

            final = self.local_path(descriptor)
            final.parent.mkdir(parents=True, exist_ok=True)
            if descriptor.archive:
                self._set_state(descriptor, progress=0.99, message="unpacking")
                _safe_extract(part, unpacked)
                content = _single_subdir(unpacked)
                (content / MARKER_NAME).write_text(digest, encoding="utf-8")
                if final.exists():
                    # stale, unverified leftovers from an interrupted publish
                    shutil.rmtree(final)
                os.replace(content, final)
            else:
                os.replace(part, final)
                # the marker is the commit point for single files
                self._marker_path(descriptor).write_text(digest, encoding="utf-8")
            logger.info("Published model %s to %s", descriptor.key, final)
            return final
        except PipelineError:
            raise
        except OSError as exc:
            raise DiskError(f"Failed writing model {descriptor.key}: {exc}") from exc
        finally:
            part.unlink(missing_ok=True)
            if unpacked.exists():
                shutil.rmtree(unpacked, ignore_errors=True)

    def _download(self, descriptor: ModelDescriptor, dest: Path, deadline: Optional[float]) -> None:
        read_timeout = 30.0
        if deadline is not None:
            read_timeout = max(1.0, min(read_timeout, deadline - time.monotonic()))
        try:
            with requests.get(
                descriptor.url,
                stream=True,
                timeout=(10.0, read_timeout),
                headers={"User-Agent": "MeetingIntel/1.0"},
            ) as response:
                response.raise_for_status()
                total = int(response.headers.get("content-length", 0) or 0) or descriptor.size_bytes or 0
                downloaded = 0
                with dest.open("wb") as f:
                    for chunk in response.iter_content(chunk_size=DOWNLOAD_BLOCK):
                        if deadline is not None and time.monotonic() > deadline:
                            raise GenerationTimeoutError(f"Download of {descriptor.key} timed out")
                        if not chunk:
                            continue
                        f.write(chunk)
                        downloaded += len(chunk)
                        if total:
                            self._set_state(descriptor, progress=min(0.98, downloaded / total), message="downloading")
        except requests.Timeout as exc:
            raise GenerationTimeoutError(f"Download of {descriptor.key} timed out: {exc}") from exc
        except requests.RequestException as exc:
            raise NetworkError(f"Failed to download {descriptor.key}: {exc}") from exc


_store: Optional[ModelStore] = None


def get_model_store(settings: Optional[Settings] = None) -> ModelStore:
    """Get or create the process-wide model store."""
    global _store
    if _store is None:
        s = settings or Settings()
        _store = ModelStore(s.models_dir)
    return _store
