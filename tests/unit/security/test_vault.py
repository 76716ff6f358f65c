"""Tests for the credential vault."""

import base64
import dataclasses

import pytest

from cmconnector.config.models import VaultConfig
from cmconnector.core.exceptions import ConfigError, DecryptionError, ErrorCodes, SecurityError
from cmconnector.security import CredentialRecord, CredentialStore, CredentialVault


@pytest.fixture
def vault():
    """Vault with a single key version."""
    return CredentialVault({1: CredentialVault.generate_key()}, current_version=1)


class TestCredentialVault:
    """Test cases for CredentialVault."""

    def test_round_trip(self, vault):
        """Test encrypt then decrypt returns the plaintext."""
        record = vault.encrypt("s3cret", credential_id="cm-prod")

        assert record.key_version == 1
        assert len(record.nonce) == 12
        assert b"s3cret" not in record.ciphertext
        assert vault.decrypt(record) == "s3cret"

    def test_nonce_unique_per_encryption(self, vault):
        """Test the same plaintext encrypts differently each time."""
        first = vault.encrypt("s3cret", credential_id="cm-prod")
        second = vault.encrypt("s3cret", credential_id="cm-prod")

        assert first.nonce != second.nonce
        assert first.ciphertext != second.ciphertext

    def test_tampered_ciphertext_rejected(self, vault):
        """Test a modified ciphertext fails authentication."""
        record = vault.encrypt("s3cret", credential_id="cm-prod")
        flipped = bytes([record.ciphertext[0] ^ 0x01]) + record.ciphertext[1:]

        with pytest.raises(DecryptionError) as exc_info:
            vault.decrypt(dataclasses.replace(record, ciphertext=flipped))

        assert exc_info.value.code == ErrorCodes.DECRYPTION_FAILED

    def test_record_bound_to_credential_id(self, vault):
        """Test a record moved to another credential id does not decrypt."""
        record = vault.encrypt("s3cret", credential_id="cm-prod")

        with pytest.raises(DecryptionError):
            vault.decrypt(dataclasses.replace(record, credential_id="cm-test"))

    def test_invalid_nonce_rejected(self, vault):
        """Test a truncated nonce is rejected."""
        record = vault.encrypt("s3cret", credential_id="cm-prod")

        with pytest.raises(DecryptionError):
            vault.decrypt(dataclasses.replace(record, nonce=record.nonce[:8]))

    def test_unknown_key_version(self, vault):
        """Test records for an unknown key version are rejected."""
        record = vault.encrypt("s3cret", credential_id="cm-prod")

        with pytest.raises(DecryptionError) as exc_info:
            vault.decrypt(dataclasses.replace(record, key_version=7))

        assert exc_info.value.code == ErrorCodes.KEY_VERSION_UNKNOWN

    def test_retired_key_cannot_decrypt(self, vault):
        """Test retiring a key blocks decryption of its records."""
        old_record = vault.encrypt("s3cret", credential_id="cm-prod")
        vault.add_key(2, CredentialVault.generate_key())
        vault.retire_key(1)

        with pytest.raises(DecryptionError):
            vault.decrypt(old_record)
        assert list(vault.key_versions) == [2]

    def test_rotate(self, vault):
        """Test rotation re-encrypts under the current key."""
        old_record = vault.encrypt("s3cret", credential_id="cm-prod")
        vault.add_key(2, CredentialVault.generate_key())

        rotated = vault.rotate(old_record)

        assert rotated.key_version == 2
        assert rotated.credential_id == "cm-prod"
        assert vault.decrypt(rotated) == "s3cret"
        assert vault.rotate(rotated) is rotated

    def test_add_key_without_switching(self, vault):
        """Test adding a key that does not become current."""
        vault.add_key(2, CredentialVault.generate_key(), make_current=False)

        assert vault.current_version == 1
        assert vault.encrypt("x", key_version=2).key_version == 2

    def test_key_management_errors(self, vault):
        """Test invalid key operations."""
        with pytest.raises(SecurityError):
            vault.add_key(1, CredentialVault.generate_key())
        with pytest.raises(SecurityError):
            vault.add_key(2, b"short")
        with pytest.raises(SecurityError):
            vault.retire_key(1)
        with pytest.raises(SecurityError):
            vault.retire_key(9)
        with pytest.raises(SecurityError):
            CredentialVault({1: CredentialVault.generate_key()}, current_version=2)

    def test_from_config(self):
        """Test building a vault from base64 key material."""
        key = base64.b64encode(CredentialVault.generate_key()).decode("ascii")
        vault = CredentialVault.from_config(VaultConfig(keys={3: key}, current_version=3))

        assert vault.current_version == 3
        assert vault.decrypt(vault.encrypt("pw")) == "pw"

    def test_from_config_bad_base64(self):
        """Test invalid key material raises ConfigError."""
        with pytest.raises(ConfigError):
            CredentialVault.from_config(VaultConfig(keys={1: "not base64!"}, current_version=1))

    def test_repr_hides_keys(self, vault):
        """Test neither the vault nor a record exposes secrets."""
        record = vault.encrypt("s3cret", credential_id="cm-prod")

        assert repr(vault) == "CredentialVault(current_version=1, versions=[1])"
        assert "ciphertext" not in repr(record)


class TestCredentialStore:
    """Test cases for CredentialStore."""

    def test_put_and_resolve(self, vault):
        """Test storing and resolving a credential."""
        store = CredentialStore(vault)
        store.put("cm-prod-db", "s3cret")

        assert "cm-prod-db" in store
        assert len(store) == 1
        assert store.resolve("cm-prod-db") == "s3cret"

    def test_unknown_reference(self, vault):
        """Test resolving a missing reference."""
        store = CredentialStore(vault)

        with pytest.raises(ConfigError) as exc_info:
            store.resolve("missing")

        assert exc_info.value.code == ErrorCodes.CREDENTIAL_NOT_FOUND

    def test_export_and_load(self, vault):
        """Test records survive export and reload."""
        store = CredentialStore(vault)
        store.put("cm-prod-db", "s3cret")

        exported = store.export_records()
        reloaded = CredentialStore.load(vault, exported)

        assert exported["cm-prod-db"]["key_version"] == 1
        assert reloaded.resolve("cm-prod-db") == "s3cret"

    def test_load_malformed_record(self, vault):
        """Test malformed records are rejected on load."""
        with pytest.raises(DecryptionError):
            CredentialStore.load(vault, {"x": {"credential_id": "x", "key_version": 1, "nonce": "@@"}})

    def test_rotate_all(self, vault):
        """Test rotating every stored record."""
        store = CredentialStore(vault)
        store.put("a", "1")
        vault.add_key(2, CredentialVault.generate_key())
        store.put("b", "2")

        assert store.rotate_all() == 1
        assert store.export_records()["a"]["key_version"] == 2
        assert store.resolve("a") == "1"

    def test_add_record(self, vault):
        """Test adding a pre-encrypted record."""
        store = CredentialStore(vault)
        store.add_record(vault.encrypt("pw", credential_id="ext"))

        assert store.resolve("ext") == "pw"


def test_record_from_dict_round_trip(vault):
    """Test record serialization keeps binary fields intact."""
    record = vault.encrypt("s3cret", credential_id="cm-prod")

    assert CredentialRecord.from_dict(record.to_dict()) == record
