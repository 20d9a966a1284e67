"""
Durable keyed blob store for model files

Layout under the cache root:

    <generation name>/
        generation.json          model id, revision, cache version
        .entries/<sha256(url)>.json
        onnx/model_q4.onnx       blobs at their repository-relative path
        onnx/model_q4.onnx_data

Blobs keep their repository layout so an execution session opened on the
primary file finds its external data shards next to it. Entries are written
only after the blob has been renamed into place, so an interrupted download
never leaves a matching entry behind.
"""

import contextlib
import hashlib
import json
import os
import re
import shutil
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import BinaryIO, Iterator, List, Optional
from urllib.parse import unquote, urlsplit

from lm_runtime.benchmark_utils import BenchmarkAwareLogger
from lm_runtime.errors import CacheUnavailableError

_logger = BenchmarkAwareLogger("cache")

GENERATION_FILE = "generation.json"
ENTRIES_DIR = ".entries"
_UNSAFE_NAME = re.compile(r"[^A-Za-z0-9._-]+")


def _url_key(url: str) -> str:
    return hashlib.sha256(url.encode("utf-8")).hexdigest()


def blob_relative_path(url: str) -> PurePosixPath:
    """
    Map a request URL to a path inside a generation directory

    ``.../resolve/<revision>/onnx/model.onnx`` maps to ``onnx/model.onnx``;
    any other URL is stored under ``blobs/<sha256>``.
    """
    parts = [unquote(p) for p in urlsplit(url).path.split("/") if p]
    if "resolve" in parts:
        idx = parts.index("resolve")
        rel = parts[idx + 2:]
        if rel and all(p not in (".", "..") for p in rel) and rel[0] not in (ENTRIES_DIR, GENERATION_FILE):
            return PurePosixPath(*rel)
    return PurePosixPath("blobs", _url_key(url))


@dataclass(frozen=True)
class CacheEntry:
    url: str
    path: Path
    size: int
    stored_at: float


@dataclass(frozen=True)
class GenerationInfo:
    name: str
    model_id: str
    revision: str
    version: int
    path: Path


class CacheGeneration:
    """One (model id, revision) cache generation"""

    def __init__(self, path: Path, info: GenerationInfo):
        self.path = path
        self.info = info

    @property
    def name(self) -> str:
        return self.info.name

    def blob_path(self, url: str) -> Path:
        return self.path.joinpath(*blob_relative_path(url).parts)

    def _entry_path(self, url: str) -> Path:
        return self.path / ENTRIES_DIR / f"{_url_key(url)}.json"

    def match(self, url: str) -> Optional[CacheEntry]:
        """Return the entry for ``url`` if its blob is present with the recorded size"""
        entry_path = self._entry_path(url)
        try:
            record = json.loads(entry_path.read_text())
        except (OSError, ValueError):
            return None

        blob = self.path / record["path"]
        try:
            actual = blob.stat().st_size
        except OSError:
            return None
        if actual != record["size"]:
            return None
        return CacheEntry(url=url, path=blob, size=actual, stored_at=record.get("stored_at", 0.0))

    def has_record(self, url: str) -> bool:
        return self._entry_path(url).exists()

    @contextlib.contextmanager
    def writer(self, url: str) -> Iterator[BinaryIO]:
        """
        Open a temporary file for ``url``; on clean exit it becomes the cached blob

        On any exception the partial file is removed and nothing is recorded.
        """
        target = self.blob_path(url)
        target.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=".partial-")
        try:
            with os.fdopen(fd, "wb") as fh:
                yield fh
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_name, target)
        except BaseException:
            with contextlib.suppress(OSError):
                os.unlink(tmp_name)
            raise
        self._record(url, target)

    def put(self, url: str, data: bytes) -> CacheEntry:
        with self.writer(url) as fh:
            fh.write(data)
        entry = self.match(url)
        if entry is None:
            raise CacheUnavailableError(
                str(self.blob_path(url)), "blob does not match its entry after writing", self.info.model_id
            )
        return entry

    def _record(self, url: str, blob: Path) -> None:
        entry_path = self._entry_path(url)
        entry_path.parent.mkdir(parents=True, exist_ok=True)
        record = {
            "url": url,
            "path": blob.relative_to(self.path).as_posix(),
            "size": blob.stat().st_size,
            "stored_at": time.time(),
        }
        tmp = entry_path.with_suffix(".tmp")
        tmp.write_text(json.dumps(record))
        os.replace(tmp, entry_path)

    def delete(self, url: str) -> bool:
        """Remove the entry and blob for ``url``; returns True if anything was removed"""
        removed = False
        with contextlib.suppress(FileNotFoundError):
            self._entry_path(url).unlink()
            removed = True
        with contextlib.suppress(FileNotFoundError):
            self.blob_path(url).unlink()
            removed = True
        return removed

    def readable(self, entry: CacheEntry, sample_bytes: int) -> bool:
        """Read back the head and tail of a blob to confirm the bytes are still accessible"""
        try:
            with open(entry.path, "rb") as fh:
                head = fh.read(sample_bytes)
                if entry.size > sample_bytes:
                    fh.seek(max(entry.size - sample_bytes, 0))
                    tail = fh.read(sample_bytes)
                else:
                    tail = b""
        except OSError:
            return False
        return len(head) + len(tail) >= min(entry.size, sample_bytes)

    def urls(self) -> List[str]:
        entries_dir = self.path / ENTRIES_DIR
        if not entries_dir.is_dir():
            return []
        urls = []
        for p in sorted(entries_dir.glob("*.json")):
            try:
                urls.append(json.loads(p.read_text())["url"])
            except (OSError, ValueError, KeyError):
                continue
        return urls

    def size_bytes(self) -> int:
        return sum(p.stat().st_size for p in self.path.rglob("*") if p.is_file())


class ModelCacheStore:
    """Root of all cache generations"""

    def __init__(self, root: Path, name_prefix: str = "lm-runtime-model"):
        self.root = Path(root)
        self.name_prefix = name_prefix

    def generation_name(self, model_id: str, revision: str, version: int) -> str:
        raw = f"{self.name_prefix}-{model_id}-{revision}-v{version}"
        return _UNSAFE_NAME.sub("-", raw)

    def _ensure_root(self) -> None:
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise CacheUnavailableError(str(self.root), str(exc)) from exc
        if not os.access(self.root, os.W_OK | os.X_OK):
            raise CacheUnavailableError(str(self.root), "directory is not writable")

    def open(self, model_id: str, revision: str, version: int) -> CacheGeneration:
        """
        Open (creating lazily) the generation for ``model_id`` at ``revision``

        Raises:
            CacheUnavailableError: If the cache root cannot be created or written
        """
        self._ensure_root()
        name = self.generation_name(model_id, revision, version)
        path = self.root / name
        info = GenerationInfo(name=name, model_id=model_id, revision=revision, version=version, path=path)
        try:
            path.mkdir(exist_ok=True)
            meta = path / GENERATION_FILE
            if not meta.exists():
                meta.write_text(json.dumps({"model_id": model_id, "revision": revision, "version": version}))
        except OSError as exc:
            raise CacheUnavailableError(str(path), str(exc), model_id) from exc
        return CacheGeneration(path, info)

    def get(self, name: str) -> Optional[CacheGeneration]:
        for info in self.list_generations():
            if info.name == name:
                return CacheGeneration(info.path, info)
        return None

    def list_generations(self) -> List[GenerationInfo]:
        if not self.root.is_dir():
            return []
        generations = []
        for child in sorted(self.root.iterdir()):
            meta = child / GENERATION_FILE
            if not meta.is_file():
                continue
            try:
                data = json.loads(meta.read_text())
            except (OSError, ValueError):
                continue
            generations.append(
                GenerationInfo(
                    name=child.name,
                    model_id=data.get("model_id", ""),
                    revision=data.get("revision", ""),
                    version=int(data.get("version", 0)),
                    path=child,
                )
            )
        return generations

    def delete_generation(self, name: str) -> bool:
        """Remove one generation directory; False if ``name`` is not a generation"""
        path = self.root / name
        if not (path / GENERATION_FILE).is_file():
            return False
        shutil.rmtree(path, ignore_errors=True)
        return True

    def evict_stale(self, model_id: str, keep: str) -> List[str]:
        """Delete every generation of ``model_id`` other than ``keep``"""
        evicted = []
        for info in self.list_generations():
            if info.model_id == model_id and info.name != keep and self.delete_generation(info.name):
                evicted.append(info.name)
        if evicted:
            _logger.info("cleared old cache generations", model=model_id, keep=keep, deleted=evicted)
        return evicted

    def clear(self, model_id: Optional[str] = None) -> List[str]:
        removed = []
        for info in self.list_generations():
            if (model_id is None or info.model_id == model_id) and self.delete_generation(info.name):
                removed.append(info.name)
        return removed
