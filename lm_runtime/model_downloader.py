"""
Model Downloader CLI

Downloads, verifies and manages the cached files of catalog models, and can
run a one-off generation against a cached model.

Usage:
    python -m lm_runtime.model_downloader --help
    python -m lm_runtime.model_downloader download lfm25-1.2b-instruct
    python -m lm_runtime.model_downloader list
    python -m lm_runtime.model_downloader cache --list
    python -m lm_runtime.model_downloader verify lfm25-vl-1.6b
    python -m lm_runtime.model_downloader generate lfm25-1.2b-instruct "Hello"
"""

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

from lm_runtime.acquisition import DownloadProgress
from lm_runtime.benchmark_utils import is_benchmark_mode
from lm_runtime.catalog import AVAILABLE_MODELS, get_model_by_id
from lm_runtime.config_loader import Config, initialize_config
from lm_runtime.errors import LMRuntimeError
from lm_runtime.models.generator import StreamCallbacks
from lm_runtime.models.tokenizer import ChatMessage
from lm_runtime.runtime import ModelRuntime

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(message)s"


@dataclass
class CachedModelInfo:
    """One cache generation on disk"""
    name: str
    model_id: str
    revision: str
    version: int
    path: str
    size_bytes: int
    files: int


class ModelDownloader:
    """Command front-end over a ModelRuntime"""

    def __init__(self, config: Config, cache_dir: Optional[Path] = None, verbose: bool = True):
        self.config = config
        self.verbose = verbose
        self.runtime = ModelRuntime(config, cache_root=cache_dir)

    def _progress_printer(self):
        def report(percentage: float, stats: DownloadProgress) -> None:
            if not self.verbose:
                return
            speed = self._format_size(int(stats.speed_bytes_per_second))
            line = (
                f"\r{percentage:5.1f}%  {self._format_size(stats.downloaded_bytes)}"
                f" / {self._format_size(stats.total_bytes)}  {speed}/s"
            )
            print(line, end="", file=sys.stderr, flush=True)

        return report

    async def download_model(self, model_id: str, quantization: Optional[str] = None) -> Dict[str, Any]:
        model = get_model_by_id(model_id)
        manifest = await self.runtime.resolver.resolve(model, quantization)
        self.runtime.acquisition.observer = self._progress_printer()
        await self.runtime.acquisition.ensure_cached(manifest)
        if self.verbose:
            print(file=sys.stderr)
        return {
            "model_id": model.id,
            "quantization": manifest.quantization,
            "files": manifest.paths,
            "size_bytes": manifest.total_size,
            "listed": manifest.from_listing,
        }

    async def verify_model(self, model_id: str, quantization: Optional[str] = None) -> List[str]:
        model = get_model_by_id(model_id)
        manifest = await self.runtime.resolver.resolve(model, quantization)
        return await self.runtime.acquisition.verify_cached(manifest)

    def get_cached_models(self) -> List[CachedModelInfo]:
        cached = []
        for info in self.runtime.store.list_generations():
            generation = self.runtime.store.get(info.name)
            cached.append(
                CachedModelInfo(
                    name=info.name,
                    model_id=info.model_id,
                    revision=info.revision,
                    version=info.version,
                    path=str(info.path),
                    size_bytes=generation.size_bytes() if generation else 0,
                    files=len(generation.urls()) if generation else 0,
                )
            )
        return cached

    def clear_cache(self, model_id: Optional[str] = None) -> List[str]:
        removed = self.runtime.store.clear(model_id)
        if self.verbose:
            print(f"Removed {len(removed)} cache generation(s) from {self.runtime.store.root}")
        return removed

    async def generate(
        self, model_id: str, prompt: str, image: Optional[Path] = None, max_tokens: Optional[int] = None
    ) -> str:
        self.runtime.set_progress_observer(self._progress_printer())
        await self.runtime.load(model_id)
        if self.verbose:
            print(file=sys.stderr)

        def on_complete(tokens: int, elapsed: float) -> None:
            rate = tokens / elapsed if elapsed > 0 else 0.0
            print(f"\n\n{tokens} tokens in {elapsed:.2f}s ({rate:.1f} tokens/s)", file=sys.stderr)

        callbacks = StreamCallbacks(
            on_chunk=lambda chunk: print(chunk, end="", flush=True),
            on_complete=on_complete,
        )
        message = ChatMessage(role="user", content=prompt, image=image.read_bytes() if image else None)
        try:
            return await self.runtime.generate([message], callbacks, max_tokens)
        finally:
            await self.runtime.dispose()

    @staticmethod
    def _format_size(size_bytes: float) -> str:
        """Format bytes to human-readable size"""
        for unit in ["B", "KB", "MB", "GB", "TB"]:
            if size_bytes < 1024.0:
                return f"{size_bytes:.2f} {unit}"
            size_bytes /= 1024.0
        return f"{size_bytes:.2f} PB"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="lm-runtime",
        description="On-device model runtime - download, verify and run catalog models",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--config", help="Path to runtime.yaml")
    parser.add_argument("--env", help="Configuration environment (production/development/test)")
    parser.add_argument("--cache-dir", type=Path, help="Cache directory")
    parser.add_argument("--verbose", action="store_true", help="Debug logging")
    parser.add_argument("--quiet", action="store_true", help="Suppress progress output")

    subparsers = parser.add_subparsers(dest="command", help="Command to execute")

    download_parser = subparsers.add_parser("download", help="Download a catalog model into the cache")
    download_parser.add_argument("model_id", help="Catalog model id (see 'list')")
    download_parser.add_argument("--quantization", help="Variant to download (default: the model's primary)")
    download_parser.add_argument("--json", action="store_true", help="Output as JSON")

    list_parser = subparsers.add_parser("list", help="List catalog models")
    list_parser.add_argument("--json", action="store_true", help="Output as JSON")

    cache_parser = subparsers.add_parser("cache", help="Manage cached models")
    cache_parser.add_argument("--list", action="store_true", help="List cache generations")
    cache_parser.add_argument("--clear", action="store_true", help="Delete every cache generation")
    cache_parser.add_argument("--clear-model", help="Delete the cache generations of one model id")
    cache_parser.add_argument("--json", action="store_true", help="Output as JSON")

    verify_parser = subparsers.add_parser("verify", help="Check that a model's files are cached and readable")
    verify_parser.add_argument("model_id", help="Catalog model id")
    verify_parser.add_argument("--quantization", help="Variant to verify")

    generate_parser = subparsers.add_parser("generate", help="Load a model and stream a reply")
    generate_parser.add_argument("model_id", help="Catalog model id")
    generate_parser.add_argument("prompt", help="User message")
    generate_parser.add_argument("--image", type=Path, help="Image attachment (vision models)")
    generate_parser.add_argument("--max-tokens", type=int, help="Token budget")
    generate_parser.add_argument("--stats", action="store_true", help="Print telemetry after the reply")

    return parser


async def run_command(args: argparse.Namespace, downloader: ModelDownloader) -> int:
    if args.command == "download":
        result = await downloader.download_model(args.model_id, args.quantization)
        if args.json:
            print(json.dumps(result, indent=2))
        else:
            print(f"Cached {result['model_id']} ({result['quantization']}): "
                  f"{len(result['files'])} files, {downloader._format_size(result['size_bytes'])}")
        return 0

    if args.command == "list":
        if args.json:
            print(json.dumps([asdict(m) for m in AVAILABLE_MODELS], indent=2))
        else:
            for i, model in enumerate(AVAILABLE_MODELS, 1):
                tags = [t for t, on in (("thinking", model.thinking), ("vision", model.vision)) if on]
                print(f"{i}. {model.id}  {model.label}")
                print(f"   {model.hf_id}@{model.revision}  {model.quantization}  "
                      f"max new tokens {model.max_new_tokens}" + (f"  [{', '.join(tags)}]" if tags else ""))
        return 0

    if args.command == "cache":
        if args.list:
            cached = downloader.get_cached_models()
            if args.json:
                print(json.dumps([asdict(c) for c in cached], indent=2))
            elif not cached:
                print("No models in cache")
            else:
                total = sum(c.size_bytes for c in cached)
                print(f"Cache generations ({len(cached)} total, {downloader._format_size(total)})")
                for c in cached:
                    print(f"- {c.model_id}@{c.revision} v{c.version}: {c.files} files, "
                          f"{downloader._format_size(c.size_bytes)}  {c.path}")
            return 0
        if args.clear:
            downloader.clear_cache()
            return 0
        if args.clear_model:
            get_model_by_id(args.clear_model)
            downloader.clear_cache(args.clear_model)
            return 0
        print("cache: one of --list, --clear or --clear-model is required", file=sys.stderr)
        return 1

    if args.command == "verify":
        missing = await downloader.verify_model(args.model_id, args.quantization)
        if missing:
            print(f"{len(missing)} file(s) missing:")
            for path in missing:
                print(f"- {path}")
            return 1
        print("All files cached")
        return 0

    if args.command == "generate":
        await downloader.generate(args.model_id, args.prompt, args.image, args.max_tokens)
        if args.stats:
            print(downloader.runtime.telemetry.get_stats_summary(), file=sys.stderr)
        return 0

    return 1


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point"""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 0

    config: Optional[Config] = None
    try:
        config = initialize_config(args.config, args.env)
        verbose = args.verbose or config.verbose
        logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO, format=LOG_FORMAT)
        downloader = ModelDownloader(config, cache_dir=args.cache_dir, verbose=not (args.quiet or is_benchmark_mode()))
        return asyncio.run(run_command(args, downloader))

    except KeyboardInterrupt:
        print("\nInterrupted by user", file=sys.stderr)
        return 130

    except LMRuntimeError as e:
        print(f"\nError ({e.stage or 'runtime'}): {e.message}", file=sys.stderr)
        return 1

    except Exception as e:
        print(f"\nError: {e}", file=sys.stderr)
        if args.verbose or (config is not None and (config.verbose or config.debug)):
            import traceback
            traceback.print_exc()
        return 1


if __name__ == "__main__":
    sys.exit(main())
