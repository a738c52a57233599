import pytest

from config.config import CustodyConfig


@pytest.fixture
def custody_config(tmp_path):
    """Small scrypt cost keeps the suite fast; the format is unchanged"""
    return CustodyConfig(
        key_dir=tmp_path / "keys",
        master_password="correct horse battery staple",
        scrypt_n=2 ** 10,
        remote_timeout=2.0
    )
