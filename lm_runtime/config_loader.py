"""
Runtime configuration loader

Loads runtime configuration from YAML so cache locations, retry policy and
execution providers are not hardcoded.
"""

import os
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

DEFAULT_CONFIG_PATH = Path(__file__).parent / "config" / "runtime.yaml"
CONFIG_ENV_VAR = "LM_RUNTIME_CONFIG"
ENVIRONMENT_ENV_VAR = "LM_RUNTIME_ENV"


class Config:
    """Runtime configuration loaded from YAML"""

    def __init__(self, config_dict: Dict[str, Any]):
        # Durable cache
        cache = config_dict.get("cache", {})
        self.cache_root_dir = Path(
            os.path.expanduser(cache.get("root_dir", "~/.cache/lm_runtime"))
        )
        self.cache_name_prefix = cache.get("name_prefix", "lm-runtime-model")
        self.cache_version = cache.get("cache_version", 2)
        self.verify_read_bytes = cache.get("verify_read_bytes", 65536)

        # Weight repository access
        network = config_dict.get("network", {})
        self.hub_endpoint = network.get("hub_endpoint", "https://huggingface.co").rstrip("/")
        self.retry_attempts = network.get("retry_attempts", 3)
        self.retry_base_delay_ms = network.get("retry_base_delay_ms", 500)
        self.request_timeout_s = network.get("request_timeout_s", 30.0)
        self.download_chunk_bytes = network.get("download_chunk_bytes", 1_048_576)
        self.progress_interval_ms = network.get("progress_interval_ms", 500)
        self.size_probe_concurrency = network.get("size_probe_concurrency", 8)

        # Execution backend
        backend = config_dict.get("backend", {})
        self.gpu_providers: List[str] = list(
            backend.get(
                "gpu_providers",
                [
                    "CUDAExecutionProvider",
                    "DmlExecutionProvider",
                    "CoreMLExecutionProvider",
                    "ROCMExecutionProvider",
                ],
            )
        )
        self.cpu_provider = backend.get("cpu_provider", "CPUExecutionProvider")
        self.intra_op_num_threads = backend.get("intra_op_num_threads", 0)
        self.require_gpu = backend.get("require_gpu", True)
        self.log_severity_level = backend.get("log_severity_level", 3)

        # Generation
        generation = config_dict.get("generation", {})
        self.max_tokens_limit = generation.get("max_tokens_limit", 4096)

        # Model
        model = config_dict.get("model", {})
        self.default_model_id = model.get("default_model_id", "lfm25-1.2b-instruct")

        # Telemetry
        telemetry = config_dict.get("telemetry", {})
        self.telemetry_enabled = telemetry.get("enabled", True)
        self.telemetry_sampling_rate = telemetry.get("sampling_rate", 1.0)

        # Development: CLI debug logging and tracebacks
        dev = config_dict.get("development", {})
        self.verbose = dev.get("verbose", False)
        self.debug = dev.get("debug", False)

    def validate(self) -> None:
        """
        Validate configuration values

        Catches invalid values at startup instead of deep inside a download.

        Raises:
            ValueError: If any configuration value is invalid
        """
        if self.retry_attempts < 1:
            raise ValueError(f"retry_attempts must be >= 1, got {self.retry_attempts}")

        if self.retry_base_delay_ms < 0:
            raise ValueError(f"retry_base_delay_ms must be >= 0, got {self.retry_base_delay_ms}")

        if self.progress_interval_ms < 0:
            raise ValueError(f"progress_interval_ms must be >= 0, got {self.progress_interval_ms}")

        if self.download_chunk_bytes < 1024:
            raise ValueError(f"download_chunk_bytes must be >= 1024, got {self.download_chunk_bytes}")

        if self.size_probe_concurrency < 1:
            raise ValueError(f"size_probe_concurrency must be >= 1, got {self.size_probe_concurrency}")

        if self.cache_version < 1:
            raise ValueError(f"cache_version must be >= 1, got {self.cache_version}")

        if not self.cpu_provider:
            raise ValueError("cpu_provider must be set")

        if self.telemetry_sampling_rate < 0 or self.telemetry_sampling_rate > 1.0:
            raise ValueError(f"telemetry_sampling_rate must be in range [0, 1], got {self.telemetry_sampling_rate}")

        if self.max_tokens_limit < 1:
            raise ValueError(f"max_tokens_limit must be >= 1, got {self.max_tokens_limit}")

    def get_retry_base_delay_seconds(self) -> float:
        """Convert backoff MS to seconds for time.sleep()"""
        return self.retry_base_delay_ms / 1000

    def get_progress_interval_seconds(self) -> float:
        return self.progress_interval_ms / 1000


def deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively overlay ``override`` on ``base``; neither input is modified"""
    result = base.copy()

    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value

    return result


def load_config(
    config_path: Optional[str] = None, environment: Optional[str] = None
) -> Config:
    """
    Load configuration from YAML file

    Args:
        config_path: Path to config file (defaults to $LM_RUNTIME_CONFIG, then the packaged runtime.yaml)
        environment: Environment name (production/development/test)

    Returns:
        Config instance

    Raises:
        FileNotFoundError: If config file not found
        ValueError: If config file is invalid
    """
    if config_path is None:
        config_path = os.getenv(CONFIG_ENV_VAR) or str(DEFAULT_CONFIG_PATH)

    try:
        with open(config_path, "r") as f:
            base_config = yaml.safe_load(f) or {}
    except FileNotFoundError:
        raise FileNotFoundError(f"Configuration file not found: {config_path}")
    except yaml.YAMLError as exc:
        raise ValueError(f"Failed to parse YAML config file '{config_path}': {exc}") from exc

    env = environment or os.getenv(ENVIRONMENT_ENV_VAR) or "development"

    # Apply environment-specific overrides
    final_config = base_config
    if "environments" in base_config and env in (base_config["environments"] or {}):
        env_overrides = base_config["environments"][env] or {}
        final_config = deep_merge(base_config, env_overrides)

    final_config = {k: v for k, v in final_config.items() if k != "environments"}

    config = Config(final_config)
    config.validate()
    return config


# Global config instance
_global_config: Optional[Config] = None
_config_lock = threading.Lock()


def initialize_config(
    config_path: Optional[str] = None, environment: Optional[str] = None
) -> Config:
    """Load the configuration and install it as the process-wide instance"""
    global _global_config
    with _config_lock:
        _global_config = load_config(config_path, environment)
        return _global_config


def get_config() -> Config:
    """
    Get global configuration (lazy initialization)

    Double-checked locking so concurrent first callers load the file once.
    """
    global _global_config

    if _global_config is not None:
        return _global_config

    with _config_lock:
        if _global_config is None:
            _global_config = load_config()
        return _global_config
