from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional
import logging
import re

import yaml

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("config.yaml")

# Public beacon used by the reference ceremony; a protocol constant, not a secret
DEFAULT_BEACON_HASH = "0102030405060708090a0b0c0d0e0f101112131415161718191a1b1c1d1e1f"

# 160 bits
MIN_ENTROPY_BYTES = 20

RESPONSE_MODES = ("local", "external")

_HEX_RE = re.compile(r"^(?:[0-9a-fA-F]{2})+$")


class ConfigurationError(Exception):
    """Configuration file or values are invalid"""
    pass


@dataclass
class ToolConfig:
    circom_bin: str = "circom"
    snarkjs_bin: str = "snarkjs"
    curve: str = "bn128"
    compile_flags: List[str] = field(
        default_factory=lambda: ["--r1cs", "--wasm", "--sym"])
    include_paths: List[Path] = field(default_factory=list)
    print_constraints: bool = False
    verbose: bool = True
    tool_timeout: Optional[float] = 7200.0
    challenge_timeout: Optional[float] = None

    def __post_init__(self):
        self.include_paths = [Path(p) for p in self.include_paths]
        for name in ("tool_timeout", "challenge_timeout"):
            value = getattr(self, name)
            if value is not None and value <= 0:
                raise ConfigurationError(
                    f"tools.{name} must be positive or null, got {value}")


@dataclass
class CeremonyConfig:
    phase1_labels: List[str] = field(default_factory=lambda: [
        "First contribution", "Second contribution", "Third contribution"])
    phase2_labels: List[str] = field(default_factory=lambda: [
        "First Contribution", "Second Contribution", "Third Contribution"])
    beacon_hash: str = DEFAULT_BEACON_HASH
    beacon_iterations: int = 10
    phase1_beacon_name: str = "Final Beacon"
    phase2_beacon_name: str = "Final Beacon phase2"
    entropy_bytes: int = 32
    response_mode: str = "local"
    response_poll_interval: float = 5.0
    response_timeout: Optional[float] = None

    def __post_init__(self):
        for name in ("phase1_labels", "phase2_labels"):
            labels = getattr(self, name)
            if len(labels) != 3 or not all(str(label).strip() for label in labels):
                raise ConfigurationError(
                    f"ceremony.{name} needs exactly three non-empty labels")
        if not _HEX_RE.match(self.beacon_hash):
            raise ConfigurationError("ceremony.beacon_hash must be an even-length hex string")
        # snarkjs evaluates 2^iterations hashes and caps the exponent at 63
        if not 0 <= self.beacon_iterations <= 63:
            raise ConfigurationError("ceremony.beacon_iterations must be in 0..63")
        if self.entropy_bytes < MIN_ENTROPY_BYTES:
            raise ConfigurationError(
                f"ceremony.entropy_bytes must be at least {MIN_ENTROPY_BYTES} (160 bits)")
        if self.response_mode not in RESPONSE_MODES:
            raise ConfigurationError(
                f"ceremony.response_mode must be one of {', '.join(RESPONSE_MODES)}")
        if self.response_poll_interval <= 0:
            raise ConfigurationError("ceremony.response_poll_interval must be positive")


@dataclass
class SetupConfig:
    root_dir: Path = field(default_factory=lambda: Path("."))
    ceremony_dir: Path = field(default_factory=lambda: Path("powersOfTau"))
    build_root: Path = field(default_factory=lambda: Path("circuits/build"))
    keys_subdir: str = "keys"
    log_dir: Path = field(default_factory=lambda: Path("logs"))
    log_level: str = "INFO"

    atomic_finalize: bool = True
    keep_intermediates: bool = False
    fail_on_stale_source: bool = False
    manifest_name: str = "setup_manifest.json"

    tools: ToolConfig = field(default_factory=ToolConfig)
    ceremony: CeremonyConfig = field(default_factory=CeremonyConfig)

    def __post_init__(self):
        self.root_dir = Path(self.root_dir)
        self.ceremony_dir = Path(self.ceremony_dir)
        self.build_root = Path(self.build_root)
        self.log_dir = Path(self.log_dir)

        if self.log_level.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ConfigurationError(f"Unknown log_level: {self.log_level}")

    def resolve(self, path: Path) -> Path:
        """Anchor a configured directory at root_dir, as an absolute path"""
        path = Path(path)
        if path.is_absolute():
            return path
        return (self.root_dir / path).absolute()

    @property
    def ceremony_path(self) -> Path:
        return self.resolve(self.ceremony_dir)

    @property
    def build_path(self) -> Path:
        return self.resolve(self.build_root)

    @property
    def log_path(self) -> Path:
        return self.resolve(self.log_dir)


def _build_section(cls, data: Any, section: str):
    if data is None:
        return cls()
    if not isinstance(data, dict):
        raise ConfigurationError(f"Section '{section}' must be a mapping")

    known = {f.name for f in fields(cls)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ConfigurationError(f"Unknown keys in '{section}': {', '.join(unknown)}")

    try:
        return cls(**data)
    except TypeError as e:
        raise ConfigurationError(f"Invalid values in '{section}': {e}") from e


def config_from_dict(config_data: Dict[str, Any]) -> SetupConfig:
    """Build a SetupConfig from parsed YAML"""
    if not isinstance(config_data, dict):
        raise ConfigurationError("Configuration top level must be a mapping")

    data = dict(config_data)
    tools = _build_section(ToolConfig, data.pop('tools', None), 'tools')
    ceremony = _build_section(CeremonyConfig, data.pop('ceremony', None), 'ceremony')

    known = {f.name for f in fields(SetupConfig)} - {'tools', 'ceremony'}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ConfigurationError(f"Unknown configuration keys: {', '.join(unknown)}")

    try:
        return SetupConfig(tools=tools, ceremony=ceremony, **data)
    except TypeError as e:
        raise ConfigurationError(f"Invalid configuration values: {e}") from e


def load_config(config_path: Optional[Path] = None) -> SetupConfig:
    """Load configuration from file or return default"""
    explicit = config_path is not None
    config_path = Path(config_path) if explicit else DEFAULT_CONFIG_PATH

    if not config_path.exists():
        if explicit:
            raise ConfigurationError(f"Config file {config_path} does not exist")
        logger.debug(f"No {config_path} found, using default configuration")
        return SetupConfig()

    try:
        with open(config_path, 'r') as f:
            config_data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Could not load config file {config_path}: {e}") from e

    if config_data is None:
        return SetupConfig()

    config = config_from_dict(config_data)
    logger.info(f"Loaded configuration from {config_path}")
    return config


def _to_plain(value: Any) -> Any:
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, dict):
        return {k: _to_plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_plain(v) for v in value]
    return value


def save_config(config: SetupConfig, config_path: Optional[Path] = None) -> Path:
    """Save configuration to YAML file"""
    if config_path is None:
        config_path = DEFAULT_CONFIG_PATH
    config_path = Path(config_path)
    config_path.parent.mkdir(parents=True, exist_ok=True)

    config_data = _to_plain(asdict(config))
    with open(config_path, 'w') as f:
        yaml.safe_dump(config_data, f, default_flow_style=False, sort_keys=False)

    return config_path
