import pytest

from crm.errors import ConfigurationError, DecryptionError
from crm.security.encryption import (
    FieldCipher,
    generate_encryption_key,
    generate_token,
    hash_value,
    load_field_cipher,
    secure_compare,
)


def _flip(hex_text: str, index: int) -> str:
    replacement = "1" if hex_text[index] == "0" else "0"
    return hex_text[:index] + replacement + hex_text[index + 1:]


def test_encrypt_decrypt(cipher):
    sealed = cipher.encrypt("hunter2:with:colons")
    assert cipher.decrypt(sealed.encrypted, sealed.iv) == "hunter2:with:colons"


def test_encrypted_format_is_hex_ciphertext_and_tag(cipher):
    sealed = cipher.encrypt("secret")
    ciphertext_hex, tag_hex = sealed.encrypted.split(":")
    assert len(ciphertext_hex) == len("secret") * 2
    assert len(tag_hex) == 32
    assert len(sealed.iv) == 32
    int(sealed.iv, 16)


def test_same_plaintext_gets_fresh_iv(cipher):
    first = cipher.encrypt("same value")
    second = cipher.encrypt("same value")
    assert first.iv != second.iv
    assert first.encrypted != second.encrypted


def test_tampered_ciphertext_rejected(cipher):
    sealed = cipher.encrypt("secret")
    ciphertext_hex, tag_hex = sealed.encrypted.split(":")
    with pytest.raises(DecryptionError):
        cipher.decrypt(f"{_flip(ciphertext_hex, 0)}:{tag_hex}", sealed.iv)


def test_tampered_tag_rejected(cipher):
    sealed = cipher.encrypt("secret")
    ciphertext_hex, tag_hex = sealed.encrypted.split(":")
    with pytest.raises(DecryptionError):
        cipher.decrypt(f"{ciphertext_hex}:{_flip(tag_hex, len(tag_hex) - 1)}", sealed.iv)


def test_wrong_key_rejected(cipher):
    sealed = cipher.encrypt("secret")
    other = FieldCipher(generate_encryption_key())
    with pytest.raises(DecryptionError):
        other.decrypt(sealed.encrypted, sealed.iv)


@pytest.mark.parametrize("encrypted", ["", "nodelimiter", ":abcd", "abcd:", "zz:yy"])
def test_malformed_values_rejected(cipher, encrypted):
    with pytest.raises(DecryptionError):
        cipher.decrypt(encrypted, "00" * 16)


@pytest.mark.parametrize("key", [None, "", "abcd", "g" * 64, "0" * 63])
def test_bad_key_is_configuration_error(key):
    with pytest.raises(ConfigurationError):
        FieldCipher(key)


def test_load_field_cipher_requires_key():
    with pytest.raises(ConfigurationError):
        load_field_cipher({})


def test_hash_and_tokens():
    assert hash_value("abc") == hash_value("abc")
    assert hash_value("abc") != hash_value("abd")
    assert len(hash_value("abc")) == 64

    token = generate_token()
    assert len(token) == 64
    assert token != generate_token()
    assert len(generate_token(8)) == 16

    assert secure_compare("same", "same")
    assert not secure_compare("same", "diff")
