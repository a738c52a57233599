"""Configuration management for the voting core."""

from .config import (
    SystemConfig,
    MembershipConfig,
    CipherConfig,
    ZKConfig,
    CustodyConfig,
    BlindSignatureConfig,
    load_config,
    save_config,
    config_to_dict
)

__all__ = ['SystemConfig', 'MembershipConfig', 'CipherConfig', 'ZKConfig',
           'CustodyConfig', 'BlindSignatureConfig', 'load_config', 'save_config',
           'config_to_dict']
