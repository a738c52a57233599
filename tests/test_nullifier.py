import random
import re

import pytest

from utils.errors import ValidationError
from zk.zk_proofs import FIELD_PRIME, derive_nullifier, election_field, generate_identity


class TestNullifier:
    def test_deterministic_hex(self):
        identity = generate_identity("voter")
        first = derive_nullifier(identity.nullifier_secret, 7)
        assert first == derive_nullifier(identity.nullifier_secret, 7)
        assert re.fullmatch(r'[0-9a-f]{64}', first)

    def test_distinct_across_elections(self):
        rng = random.Random(1234)
        for _ in range(40):
            secret = rng.randrange(FIELD_PRIME)
            a, b = rng.sample(range(10 ** 6), 2)
            assert derive_nullifier(secret, a) != derive_nullifier(secret, b)

    def test_distinct_across_secrets(self):
        rng = random.Random(99)
        for _ in range(40):
            s1, s2 = rng.randrange(FIELD_PRIME), rng.randrange(FIELD_PRIME)
            if s1 == s2:
                continue
            assert derive_nullifier(s1, "election-1") != derive_nullifier(s2, "election-1")

    def test_decimal_strings_match_ints(self):
        secret = generate_identity("x").nullifier_secret
        assert derive_nullifier(secret, 42) == derive_nullifier(secret, "42")
        assert election_field(" 42 ") == 42

    def test_named_elections_hash_into_field(self):
        value = election_field("spring-board-vote")
        assert 0 <= value < FIELD_PRIME
        assert value == election_field("spring-board-vote")
        assert value != election_field("autumn-board-vote")

    def test_rejects_bad_inputs(self):
        with pytest.raises(ValidationError):
            derive_nullifier(FIELD_PRIME, 1)
        with pytest.raises(ValidationError):
            derive_nullifier(5, "")
        with pytest.raises(ValidationError):
            derive_nullifier(5, True)
        with pytest.raises(ValidationError):
            derive_nullifier("5", 1)
        with pytest.raises(ValidationError):
            election_field(FIELD_PRIME)

    def test_non_ascii_digits_are_names(self):
        for name in ("²", "١٢", "４２"):
            value = election_field(name)
            assert 0 <= value < FIELD_PRIME
            assert re.fullmatch(r'[0-9a-f]{64}', derive_nullifier(7, name))
        assert election_field("²") != election_field("2")
        assert election_field("４２") != 42
