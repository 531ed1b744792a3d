from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Dict, Any
import logging
import os

from encryption.homomorphic import discrete_log_bound

logger = logging.getLogger(__name__)

STORE_API_KEY_ENV = "VOTING_STORE_API_KEY"


@dataclass
class NullificationConfig:
    k: int = 6
    # Nullification submissions a single voter is expected to make per election
    max_nullification_rounds: int = 16
    # Explicit override of the discrete log table size; derived when None
    discrete_log_bound: Optional[int] = None

    def __post_init__(self):
        if self.k < 1:
            raise ValueError("k must be at least 1")
        if self.max_nullification_rounds < 1:
            raise ValueError("max_nullification_rounds must be at least 1")
        self.effective_discrete_log_bound()

    def effective_discrete_log_bound(self) -> int:
        return discrete_log_bound(self.k, self.max_nullification_rounds,
                                  self.discrete_log_bound)


@dataclass
class ZKConfig:
    circuit_name: str = "nullification"
    circuit_dir: Path = field(default_factory=lambda: Path("circuits"))
    # Artifact paths default to files named after the circuit in circuit_dir
    wasm_file: Optional[Path] = None
    zkey_file: Optional[Path] = None
    vkey_file: Optional[Path] = None
    snarkjs_command: str = "snarkjs"
    proof_timeout: int = 60
    # None sizes the worker pool to the hardware concurrency
    parallel_workers: Optional[int] = None
    verify_before_store: bool = True

    def __post_init__(self):
        self.circuit_dir = Path(self.circuit_dir)
        self.wasm_file = Path(self.wasm_file or
                              self.circuit_dir / f"{self.circuit_name}.wasm")
        self.zkey_file = Path(self.zkey_file or
                              self.circuit_dir / f"{self.circuit_name}_final.zkey")
        self.vkey_file = Path(self.vkey_file or
                              self.circuit_dir / "verification_key.json")


@dataclass
class StoreConfig:
    backend: str = "memory"
    url: Optional[str] = None
    api_key: Optional[str] = field(
        default_factory=lambda: os.environ.get(STORE_API_KEY_ENV))
    timeout: int = 30

    def __post_init__(self):
        if self.backend not in ("memory", "rest"):
            raise ValueError(f"Unknown store backend: {self.backend}")


@dataclass
class SystemConfig:
    nullification: NullificationConfig = field(
        default_factory=NullificationConfig)
    zk_config: ZKConfig = field(default_factory=ZKConfig)
    store_config: StoreConfig = field(default_factory=StoreConfig)

    log_dir: Path = field(default_factory=lambda: Path("logs"))
    results_dir: Path = field(default_factory=lambda: Path("results"))
    log_level: str = "INFO"
    enable_debug_mode: bool = False

    def __post_init__(self):
        self.log_dir = Path(self.log_dir)
        self.results_dir = Path(self.results_dir)

        if self.enable_debug_mode:
            self.log_level = "DEBUG"


def _build_config(config_data: Dict[str, Any]) -> SystemConfig:
    null_data = config_data.get('nullification', {}) or {}
    nullification = NullificationConfig(
        k=null_data.get('k', 6),
        max_nullification_rounds=null_data.get(
            'max_nullification_rounds', 16),
        discrete_log_bound=null_data.get('discrete_log_bound')
    )

    zk_data = config_data.get('zk_proofs', {}) or {}
    zk_config = ZKConfig(
        circuit_name=zk_data.get('circuit_name', 'nullification'),
        circuit_dir=Path(zk_data.get('circuit_dir', 'circuits')),
        wasm_file=zk_data.get('wasm_file'),
        zkey_file=zk_data.get('zkey_file'),
        vkey_file=zk_data.get('vkey_file'),
        snarkjs_command=zk_data.get('snarkjs_command', 'snarkjs'),
        proof_timeout=zk_data.get('proof_timeout', 60),
        parallel_workers=zk_data.get('parallel_workers'),
        verify_before_store=zk_data.get('verify_before_store', True)
    )

    store_data = config_data.get('store', {}) or {}
    store_config = StoreConfig(
        backend=store_data.get('backend', 'memory'),
        url=store_data.get('url'),
        api_key=store_data.get('api_key') or os.environ.get(STORE_API_KEY_ENV),
        timeout=store_data.get('timeout', 30)
    )

    return SystemConfig(
        nullification=nullification,
        zk_config=zk_config,
        store_config=store_config,
        log_dir=Path(config_data.get('log_dir', 'logs')),
        results_dir=Path(config_data.get('results_dir', 'results')),
        log_level=config_data.get('log_level', 'INFO'),
        enable_debug_mode=config_data.get('enable_debug_mode', False)
    )


def load_config(config_path: Optional[Path] = None) -> SystemConfig:
    """Load configuration from file or return default"""
    if config_path is None:
        config_path = Path("config.yaml")
    config_path = Path(config_path)

    if config_path.exists():
        try:
            import yaml

            with open(config_path, 'r') as f:
                config_data = yaml.safe_load(f) or {}

            return _build_config(config_data)
        except (OSError, ValueError, TypeError, yaml.YAMLError) as e:
            logger.warning(
                f"Could not load config file {config_path}: {e}; using default configuration")

    return SystemConfig()


def save_config(config: SystemConfig, config_path: Optional[Path] = None):
    """Save configuration to YAML file. The store API key is never written."""
    if config_path is None:
        config_path = Path("config.yaml")

    import yaml

    config_data = {
        'nullification': {
            'k': config.nullification.k,
            'max_nullification_rounds': config.nullification.max_nullification_rounds,
            'discrete_log_bound': config.nullification.discrete_log_bound
        },
        'zk_proofs': {
            'circuit_name': config.zk_config.circuit_name,
            'circuit_dir': str(config.zk_config.circuit_dir),
            'wasm_file': str(config.zk_config.wasm_file),
            'zkey_file': str(config.zk_config.zkey_file),
            'vkey_file': str(config.zk_config.vkey_file),
            'snarkjs_command': config.zk_config.snarkjs_command,
            'proof_timeout': config.zk_config.proof_timeout,
            'parallel_workers': config.zk_config.parallel_workers,
            'verify_before_store': config.zk_config.verify_before_store
        },
        'store': {
            'backend': config.store_config.backend,
            'url': config.store_config.url,
            'timeout': config.store_config.timeout
        },
        'log_dir': str(config.log_dir),
        'results_dir': str(config.results_dir),
        'log_level': config.log_level,
        'enable_debug_mode': config.enable_debug_mode
    }

    with open(config_path, 'w') as f:
        yaml.dump(config_data, f, default_flow_style=False)
