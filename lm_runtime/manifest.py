"""
Cache manifest resolver

Discovers the exact set of files a model variant needs: for every session stem
a primary ``.onnx`` file followed by its external data shards, each with its
byte size. When the repository listing cannot be fetched a conventional
two-file guess per stem is used so the runtime stays usable offline.
"""

import asyncio
import re
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Protocol, Sequence

from huggingface_hub import HfApi

from lm_runtime.benchmark_utils import BenchmarkAwareLogger
from lm_runtime.catalog import ONNX_DIR, ModelDefinition
from lm_runtime.config_loader import Config, get_config

_logger = BenchmarkAwareLogger("manifest")


def numeric_sort_key(name: str) -> List[object]:
    """Sort key comparing digit runs as numbers, so ``_2`` sorts before ``_10``"""
    return [int(part) if part.isdigit() else part.lower() for part in re.split(r"(\d+)", name)]


@dataclass(frozen=True)
class ShardFile:
    path: str
    size: int = 0


@dataclass
class StemManifest:
    """Files backing one execution session"""

    stem: str
    primary: ShardFile
    data_shards: List[ShardFile] = field(default_factory=list)

    @property
    def files(self) -> List[ShardFile]:
        return [self.primary, *self.data_shards]


@dataclass
class ShardManifest:
    """Ordered file list for one model definition at one quantization variant"""

    model_id: str
    repo_id: str
    revision: str
    quantization: str
    base_url: str
    stems: List[StemManifest]
    # False when the repository listing was unavailable and the files were guessed
    from_listing: bool = True

    @property
    def files(self) -> List[ShardFile]:
        return [f for stem in self.stems for f in stem.files]

    @property
    def paths(self) -> List[str]:
        return [f.path for f in self.files]

    @property
    def total_size(self) -> int:
        return sum(f.size for f in self.files)

    def url_for(self, path: str) -> str:
        return f"{self.base_url}/{self.repo_id}/resolve/{self.revision}/{path}"

    def stem(self, name: str) -> StemManifest:
        for entry in self.stems:
            if entry.stem == name:
                return entry
        raise KeyError(name)


class FileLister(Protocol):
    def list_files(self, repo_id: str, revision: str) -> List[str]:
        ...


class HubFileLister:
    """Lists repository files through the hub metadata API"""

    def __init__(self, endpoint: Optional[str] = None, token: Optional[str] = None):
        self.api = HfApi(endpoint=endpoint, token=token)

    def list_files(self, repo_id: str, revision: str) -> List[str]:
        return list(self.api.list_repo_files(repo_id, revision=revision))


def select_stem_files(stem: str, siblings: Sequence[str]) -> Optional[StemManifest]:
    """
    Pick the primary file and data shards for ``stem`` out of a repository listing

    Returns None when the primary file itself is not listed.
    """
    primary = f"{ONNX_DIR}/{stem}.onnx"
    data_prefix = f"{ONNX_DIR}/{stem}.onnx_data"
    if primary not in siblings:
        return None
    shards = sorted((s for s in siblings if s.startswith(data_prefix)), key=numeric_sort_key)
    return StemManifest(stem, ShardFile(primary), [ShardFile(s) for s in shards])


def guess_stem_files(stem: str) -> StemManifest:
    return StemManifest(
        stem,
        ShardFile(f"{ONNX_DIR}/{stem}.onnx"),
        [ShardFile(f"{ONNX_DIR}/{stem}.onnx_data")],
    )


class ManifestResolver:
    """Resolves a ModelDefinition + quantization into a sized ShardManifest"""

    def __init__(
        self,
        config: Optional[Config] = None,
        lister: Optional[FileLister] = None,
        size_probe: Optional[Callable[[str], int]] = None,
    ):
        self.config = config or get_config()
        self.lister = lister or HubFileLister(endpoint=self.config.hub_endpoint)
        self.size_probe = size_probe

    def _list_siblings(self, model: ModelDefinition) -> Optional[List[str]]:
        try:
            return self.lister.list_files(model.hf_id, model.revision)
        except Exception as exc:  # noqa: BLE001
            # Offline, blocked or transient: fall back to the conventional layout
            _logger.warning("file listing unavailable, using fallback manifest", repo=model.hf_id, error=exc)
            return None

    def build(
        self,
        model: ModelDefinition,
        quantization: str,
        siblings: Optional[Sequence[str]],
        listed_only: bool = False,
    ) -> Optional[ShardManifest]:
        """
        Assemble the manifest of one variant from a repository listing

        With ``listed_only`` a variant whose stem is missing from a successful
        listing yields None instead of a guessed layout.
        """
        stems: List[StemManifest] = []
        from_listing = siblings is not None
        for stem in model.stems_for(quantization).all():
            entry = select_stem_files(stem, siblings) if siblings is not None else None
            if entry is None:
                if siblings is not None:
                    if listed_only:
                        _logger.info("stem not listed upstream, skipping variant", repo=model.hf_id, stem=stem)
                        return None
                    _logger.warning("stem not listed upstream, guessing files", repo=model.hf_id, stem=stem)
                from_listing = False
                entry = guess_stem_files(stem)
            stems.append(entry)

        return ShardManifest(
            model_id=model.id,
            repo_id=model.hf_id,
            revision=model.revision,
            quantization=quantization,
            base_url=self.config.hub_endpoint,
            stems=stems,
            from_listing=from_listing,
        )

    async def resolve(
        self, model: ModelDefinition, quantization: Optional[str] = None, listed_only: bool = False
    ) -> Optional[ShardManifest]:
        """
        Discover the files for ``model`` at ``quantization`` (default: the primary variant)

        File sizes are probed concurrently when a size probe is configured;
        unknown sizes are reported as 0. Returns None only for ``listed_only``
        requests whose variant is absent from the listing.
        """
        quantization = quantization or model.quantization
        siblings = await asyncio.to_thread(self._list_siblings, model)
        manifest = self.build(model, quantization, siblings, listed_only)
        if manifest is None:
            return None

        if self.size_probe is not None:
            manifest = await self._with_sizes(manifest)

        _logger.info(
            "manifest resolved",
            model=model.id,
            quantization=quantization,
            files=len(manifest.files),
            total_bytes=manifest.total_size,
            listed=manifest.from_listing,
        )
        return manifest

    async def _with_sizes(self, manifest: ShardManifest) -> ShardManifest:
        limiter = asyncio.Semaphore(self.config.size_probe_concurrency)

        async def probe(f: ShardFile) -> ShardFile:
            async with limiter:
                size = await asyncio.to_thread(self.size_probe, manifest.url_for(f.path))
            return ShardFile(f.path, size)

        for entry in manifest.stems:
            sized = await asyncio.gather(*(probe(f) for f in entry.files))
            entry.primary = sized[0]
            entry.data_shards = list(sized[1:])
        return manifest
