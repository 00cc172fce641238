import pytest

from authcore.auth.security import PasswordHasher
from authcore.core.errors import ValidationError


@pytest.fixture
def hasher():
    return PasswordHasher(rounds=4)


def test_hash_is_self_describing_bcrypt(hasher):
    h = hasher.hash("p@ssw0rd!")
    assert h.startswith("$2b$04$")
    assert hasher.verify("p@ssw0rd!", h) is True


def test_verify_rejects_other_password(hasher):
    h = hasher.hash("p@ssw0rd!")
    assert hasher.verify("p@ssw0rd?", h) is False


def test_same_password_hashes_differently(hasher):
    assert hasher.hash("same") != hasher.hash("same")


def test_verify_malformed_hash_is_false(hasher):
    assert hasher.verify("anything", "not-a-bcrypt-hash") is False
    assert hasher.verify("anything", "") is False


def test_hash_rejects_more_than_72_bytes(hasher):
    # 37 two-byte characters: short in characters, too long in bytes
    with pytest.raises(ValidationError):
        hasher.hash("é" * 37)


def test_verify_over_72_bytes_is_false(hasher):
    h = hasher.hash("x" * 72)
    assert hasher.verify("x" * 73, h) is False


def test_dummy_verify_runs_one_real_verify(hasher, monkeypatch):
    calls = []
    real_verify = hasher.verify

    def counting_verify(password, password_hash):
        calls.append(password_hash)
        return real_verify(password, password_hash)

    monkeypatch.setattr(hasher, "verify", counting_verify)

    assert hasher.dummy_verify("guess") is False
    assert hasher.dummy_verify("guess2") is False
    assert len(calls) == 2
    # the synthetic hash is computed once and reused
    assert calls[0] == calls[1]
    assert calls[0].startswith("$2b$04$")


def test_needs_update_when_cost_is_raised(hasher):
    old = hasher.hash("pw")
    assert hasher.needs_update(old) is False
    assert PasswordHasher(rounds=5).needs_update(old) is True


def test_dummy_hash_exists_before_the_first_login(hasher, monkeypatch):
    assert hasher.dummy_hash.startswith("$2b$04$")

    def no_hashing(password):
        raise AssertionError("unknown-user path must not hash")

    monkeypatch.setattr(hasher, "hash", no_hashing)
    assert hasher.dummy_verify("guess") is False
