from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Dict, Any
import logging
import os

import yaml

from utils.errors import ValidationError

logger = logging.getLogger(__name__)

SUPPORTED_CURVES = ("secp256k1",)


@dataclass
class MembershipConfig:
    tree_depth: int = 20
    storage_path: Optional[Path] = None

    def __post_init__(self):
        if self.storage_path is not None:
            self.storage_path = Path(self.storage_path)
        if not 1 <= int(self.tree_depth) <= 32:
            raise ValidationError(
                f"tree_depth must be between 1 and 32, got {self.tree_depth}")
        self.tree_depth = int(self.tree_depth)


@dataclass
class CipherConfig:
    curve: str = "secp256k1"
    max_encoded_value: int = 200

    def __post_init__(self):
        if self.curve not in SUPPORTED_CURVES:
            raise ValidationError(f"Unsupported curve: {self.curve}")
        if int(self.max_encoded_value) < 2:
            raise ValidationError("max_encoded_value must be at least 2")
        self.max_encoded_value = int(self.max_encoded_value)


@dataclass
class ZKConfig:
    build_dir: Path = field(default_factory=lambda: Path("circuits/build"))
    vote_vkey_file: str = "valid_vote_verification_key.json"
    eligibility_vkey_file: str = "voter_eligibility_simple_verification_key.json"
    snarkjs_bin: str = "snarkjs"
    verification_timeout: int = 30
    verifier_workers: int = 4

    def __post_init__(self):
        self.build_dir = Path(self.build_dir)
        if self.verification_timeout <= 0:
            raise ValidationError("verification_timeout must be positive")
        if self.verifier_workers < 1:
            raise ValidationError("verifier_workers must be at least 1")

    @property
    def vote_vkey_path(self) -> Path:
        return self.build_dir / self.vote_vkey_file

    @property
    def eligibility_vkey_path(self) -> Path:
        return self.build_dir / self.eligibility_vkey_file


@dataclass
class CustodyConfig:
    key_dir: Path = field(default_factory=lambda: Path(".secure-keys"))
    master_password: Optional[str] = field(
        default=None, repr=False)
    scrypt_n: int = 2 ** 14
    scrypt_r: int = 8
    scrypt_p: int = 1
    remote_timeout: float = 10.0
    enable_remote_backup: bool = False
    pinata_api_url: str = "https://api.pinata.cloud"
    pinata_gateway_url: str = "https://gateway.pinata.cloud/ipfs"
    pinata_api_key: Optional[str] = field(default=None, repr=False)
    pinata_secret_key: Optional[str] = field(default=None, repr=False)

    def __post_init__(self):
        self.key_dir = Path(self.key_dir)
        # scrypt requires a power of two greater than 1
        if self.scrypt_n < 2 or self.scrypt_n & (self.scrypt_n - 1):
            raise ValidationError("scrypt_n must be a power of two")
        if self.remote_timeout <= 0:
            raise ValidationError("remote_timeout must be positive")

        if self.master_password is None:
            self.master_password = os.environ.get("MASTER_KEY_PASSWORD")
        if self.pinata_api_key is None:
            self.pinata_api_key = os.environ.get("PINATA_API_KEY")
        if self.pinata_secret_key is None:
            self.pinata_secret_key = os.environ.get("PINATA_SECRET_KEY")

    @property
    def backup_index_path(self) -> Path:
        return self.key_dir / "backup-index.json"


@dataclass
class BlindSignatureConfig:
    key_size: int = 2048

    def __post_init__(self):
        if self.key_size < 1024:
            raise ValidationError("RSA key_size must be at least 1024 bits")


@dataclass
class SystemConfig:
    membership_config: MembershipConfig = field(default_factory=MembershipConfig)
    cipher_config: CipherConfig = field(default_factory=CipherConfig)
    zk_config: ZKConfig = field(default_factory=ZKConfig)
    custody_config: CustodyConfig = field(default_factory=CustodyConfig)
    blind_config: BlindSignatureConfig = field(
        default_factory=BlindSignatureConfig)

    registry_path: Path = field(
        default_factory=lambda: Path(".secure-keys/co-organizers.json"))
    log_dir: Path = field(default_factory=lambda: Path("logs"))
    log_level: str = "INFO"
    enable_debug_mode: bool = False

    def __post_init__(self):
        self.registry_path = Path(self.registry_path)
        self.log_dir = Path(self.log_dir)
        if self.enable_debug_mode:
            self.log_level = "DEBUG"
        if self.log_level.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValidationError(f"Unknown log level: {self.log_level}")


def load_config(config_path: Optional[Path] = None) -> SystemConfig:
    """Load configuration from a YAML file or return defaults"""
    if config_path is None:
        config_path = Path("config.yaml")
    config_path = Path(config_path)

    if not config_path.exists():
        logger.info(f"No config file at {config_path}, using defaults")
        return SystemConfig()

    try:
        with open(config_path, 'r') as f:
            config_data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ValidationError(
            f"Could not load config file {config_path}: {e}") from e

    membership_data = config_data.get('membership', {})
    membership_config = MembershipConfig(
        tree_depth=membership_data.get('tree_depth', 20),
        storage_path=membership_data.get('storage_path')
    )

    cipher_data = config_data.get('cipher', {})
    cipher_config = CipherConfig(
        curve=cipher_data.get('curve', 'secp256k1'),
        max_encoded_value=cipher_data.get('max_encoded_value', 200)
    )

    zk_data = config_data.get('zk_proofs', {})
    zk_config = ZKConfig(
        build_dir=Path(zk_data.get('build_dir', 'circuits/build')),
        vote_vkey_file=zk_data.get(
            'vote_vkey_file', 'valid_vote_verification_key.json'),
        eligibility_vkey_file=zk_data.get(
            'eligibility_vkey_file', 'voter_eligibility_simple_verification_key.json'),
        snarkjs_bin=zk_data.get('snarkjs_bin', 'snarkjs'),
        verification_timeout=zk_data.get('verification_timeout', 30),
        verifier_workers=zk_data.get('verifier_workers', 4)
    )

    # Secrets only come from the environment
    custody_data = config_data.get('custody', {})
    custody_config = CustodyConfig(
        key_dir=Path(custody_data.get('key_dir', '.secure-keys')),
        scrypt_n=custody_data.get('scrypt_n', 2 ** 14),
        scrypt_r=custody_data.get('scrypt_r', 8),
        scrypt_p=custody_data.get('scrypt_p', 1),
        remote_timeout=custody_data.get('remote_timeout', 10.0),
        enable_remote_backup=custody_data.get('enable_remote_backup', False),
        pinata_api_url=custody_data.get(
            'pinata_api_url', 'https://api.pinata.cloud'),
        pinata_gateway_url=custody_data.get(
            'pinata_gateway_url', 'https://gateway.pinata.cloud/ipfs')
    )

    blind_data = config_data.get('blind_signatures', {})
    blind_config = BlindSignatureConfig(
        key_size=blind_data.get('key_size', 2048)
    )

    return SystemConfig(
        membership_config=membership_config,
        cipher_config=cipher_config,
        zk_config=zk_config,
        custody_config=custody_config,
        blind_config=blind_config,
        registry_path=Path(config_data.get(
            'registry_path', '.secure-keys/co-organizers.json')),
        log_dir=Path(config_data.get('log_dir', 'logs')),
        log_level=config_data.get('log_level', 'INFO'),
        enable_debug_mode=config_data.get('enable_debug_mode', False)
    )


def config_to_dict(config: SystemConfig) -> Dict[str, Any]:
    """Serializable view of the configuration, secrets excluded"""
    membership = config.membership_config
    custody = config.custody_config
    return {
        'membership': {
            'tree_depth': membership.tree_depth,
            'storage_path': str(membership.storage_path) if membership.storage_path else None
        },
        'cipher': {
            'curve': config.cipher_config.curve,
            'max_encoded_value': config.cipher_config.max_encoded_value
        },
        'zk_proofs': {
            'build_dir': str(config.zk_config.build_dir),
            'vote_vkey_file': config.zk_config.vote_vkey_file,
            'eligibility_vkey_file': config.zk_config.eligibility_vkey_file,
            'snarkjs_bin': config.zk_config.snarkjs_bin,
            'verification_timeout': config.zk_config.verification_timeout,
            'verifier_workers': config.zk_config.verifier_workers
        },
        'custody': {
            'key_dir': str(custody.key_dir),
            'scrypt_n': custody.scrypt_n,
            'scrypt_r': custody.scrypt_r,
            'scrypt_p': custody.scrypt_p,
            'remote_timeout': custody.remote_timeout,
            'enable_remote_backup': custody.enable_remote_backup,
            'pinata_api_url': custody.pinata_api_url,
            'pinata_gateway_url': custody.pinata_gateway_url
        },
        'blind_signatures': {
            'key_size': config.blind_config.key_size
        },
        'registry_path': str(config.registry_path),
        'log_dir': str(config.log_dir),
        'log_level': config.log_level,
        'enable_debug_mode': config.enable_debug_mode
    }


def save_config(config: SystemConfig, config_path: Optional[Path] = None):
    """Save configuration to YAML file"""
    if config_path is None:
        config_path = Path("config.yaml")

    with open(config_path, 'w') as f:
        yaml.safe_dump(config_to_dict(config), f, default_flow_style=False)

    logger.info(f"Configuration saved to {config_path}")
