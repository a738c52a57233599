from pathlib import Path

import pytest

from config.config import (
    SystemConfig, MembershipConfig, CipherConfig, ZKConfig, CustodyConfig,
    load_config, save_config
)
from utils.errors import ValidationError


class TestDefaults:
    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("MASTER_KEY_PASSWORD", raising=False)
        config = SystemConfig()
        assert config.membership_config.tree_depth == 20
        assert config.cipher_config.max_encoded_value == 200
        assert config.custody_config.scrypt_n == 2 ** 14
        assert config.custody_config.master_password is None
        assert config.zk_config.vote_vkey_path == Path(
            "circuits/build/valid_vote_verification_key.json")
        assert config.registry_path == Path(".secure-keys/co-organizers.json")

    def test_missing_file_gives_defaults(self, tmp_path):
        config = load_config(tmp_path / "absent.yaml")
        assert config.membership_config.tree_depth == 20

    def test_secrets_from_environment(self, monkeypatch):
        monkeypatch.setenv("MASTER_KEY_PASSWORD", "env-password")
        monkeypatch.setenv("PINATA_API_KEY", "pk")
        custody = CustodyConfig()
        assert custody.master_password == "env-password"
        assert custody.pinata_api_key == "pk"
        assert "env-password" not in repr(custody)

    def test_debug_mode_forces_debug_level(self):
        assert SystemConfig(enable_debug_mode=True).log_level == "DEBUG"


class TestValidation:
    def test_invalid_values(self):
        with pytest.raises(ValidationError):
            MembershipConfig(tree_depth=0)
        with pytest.raises(ValidationError):
            CipherConfig(curve="p256")
        with pytest.raises(ValidationError):
            CipherConfig(max_encoded_value=1)
        with pytest.raises(ValidationError):
            CustodyConfig(scrypt_n=1000)
        with pytest.raises(ValidationError):
            ZKConfig(verification_timeout=0)
        with pytest.raises(ValidationError):
            SystemConfig(log_level="LOUD")

    def test_malformed_yaml(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("membership: [unclosed")
        with pytest.raises(ValidationError):
            load_config(path)


class TestRoundTrip:
    def test_save_and_load(self, tmp_path, monkeypatch):
        monkeypatch.delenv("MASTER_KEY_PASSWORD", raising=False)
        config = SystemConfig(
            membership_config=MembershipConfig(tree_depth=12, storage_path=tmp_path / "m.json"),
            cipher_config=CipherConfig(max_encoded_value=50),
            custody_config=CustodyConfig(key_dir=tmp_path / "keys",
                                         master_password="do-not-write-me",
                                         remote_timeout=3.5),
            log_level="WARNING"
        )
        path = tmp_path / "config.yaml"
        save_config(config, path)

        assert "do-not-write-me" not in path.read_text()

        loaded = load_config(path)
        assert loaded.membership_config.tree_depth == 12
        assert loaded.membership_config.storage_path == tmp_path / "m.json"
        assert loaded.cipher_config.max_encoded_value == 50
        assert loaded.custody_config.key_dir == tmp_path / "keys"
        assert loaded.custody_config.remote_timeout == 3.5
        assert loaded.custody_config.master_password is None
        assert loaded.log_level == "WARNING"
