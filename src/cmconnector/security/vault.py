"""Credential vault for cmconnector.

Credentials are encrypted with AES-256-GCM. Each record carries the key
version that encrypted it, and the credential id plus key version are bound
as associated data, so a record moved to another credential id or relabelled
with another key version fails authentication.

Classes:
    CredentialRecord: Persisted, encrypted form of a credential
    CredentialVault: Versioned-key encryption and decryption
    CredentialStore: credential_ref -> CredentialRecord resolution

Example:
    >>> vault = CredentialVault({1: CredentialVault.generate_key()}, current_version=1)
    >>> record = vault.encrypt("s3cret", credential_id="cm-prod")
    >>> vault.decrypt(record)
    's3cret'
"""

import base64
import binascii
import os
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Mapping, Optional, Set

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ..config.models import VaultConfig
from ..core.exceptions import ConfigError, DecryptionError, ErrorCodes, SecurityError
from ..logging import get_logger

KEY_SIZE_BYTES = 32
NONCE_SIZE_BYTES = 12

logger = get_logger("security.vault")


@dataclass(frozen=True)
class CredentialRecord:
    """Encrypted credential.

    Attributes:
        credential_id: Identity of the credential (safe to log)
        key_version: Version of the key that produced the ciphertext
        nonce: 96-bit GCM nonce
        ciphertext: Ciphertext with the GCM tag appended
    """
    credential_id: str
    key_version: int
    nonce: bytes
    ciphertext: bytes

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to a JSON-friendly dictionary (binary fields as base64)."""
        return {
            "credential_id": self.credential_id,
            "key_version": self.key_version,
            "nonce": base64.b64encode(self.nonce).decode("ascii"),
            "ciphertext": base64.b64encode(self.ciphertext).decode("ascii"),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CredentialRecord":
        """Deserialize a record produced by ``to_dict``.

        Raises:
            DecryptionError: If the record is malformed
        """
        try:
            return cls(
                credential_id=str(data["credential_id"]),
                key_version=int(data["key_version"]),
                nonce=base64.b64decode(data["nonce"], validate=True),
                ciphertext=base64.b64decode(data["ciphertext"], validate=True),
            )
        except (KeyError, TypeError, ValueError, binascii.Error) as e:
            raise DecryptionError(
                f"Malformed credential record: {e}",
                code=ErrorCodes.DECRYPTION_FAILED,
                context={"credential_id": data.get("credential_id")},
                cause=e,
            ) from e

    def __repr__(self) -> str:
        return f"CredentialRecord(credential_id={self.credential_id!r}, key_version={self.key_version})"


def _associated_data(credential_id: str, key_version: int) -> bytes:
    return f"{credential_id}:v{key_version}".encode("utf-8")


class CredentialVault:
    """Authenticated encryption of credentials with versioned keys.

    Retired keys remain known (so their records can be identified) but can
    no longer decrypt; ``rotate`` re-encrypts a record under the current key.
    Decryption is stateless and safe to call concurrently.

    Example:
        >>> vault.add_key(2, CredentialVault.generate_key())
        >>> new_record = vault.rotate(old_record)
        >>> vault.retire_key(1)
    """

    def __init__(self, keys: Mapping[int, bytes], current_version: int) -> None:
        """Initialize the vault.

        Args:
            keys: Key version -> 32-byte key
            current_version: Version used for new encryptions

        Raises:
            SecurityError: If a key has the wrong size or the current
                version has no key
        """
        self._keys: Dict[int, AESGCM] = {}
        self._retired: Set[int] = set()
        for version, key in keys.items():
            self._keys[version] = self._make_cipher(version, key)
        if current_version not in self._keys:
            raise SecurityError(
                f"No key for current version {current_version}",
                code=ErrorCodes.KEY_VERSION_UNKNOWN,
                context={"available_versions": sorted(self._keys)},
            )
        self._current_version = current_version

    @staticmethod
    def _make_cipher(version: int, key: bytes) -> AESGCM:
        if len(key) != KEY_SIZE_BYTES:
            raise SecurityError(
                f"Key version {version} must be {KEY_SIZE_BYTES} bytes",
                code=ErrorCodes.KEY_INVALID,
                context={"key_version": version},
            )
        return AESGCM(key)

    @classmethod
    def from_config(cls, config: VaultConfig) -> "CredentialVault":
        """Create a vault from base64-encoded key material.

        Raises:
            ConfigError: If a key is not valid base64
        """
        keys: Dict[int, bytes] = {}
        for version, secret in config.keys.items():
            try:
                keys[version] = base64.b64decode(secret.get_secret_value(), validate=True)
            except (binascii.Error, ValueError) as e:
                raise ConfigError(
                    f"Key version {version} is not valid base64",
                    code=ErrorCodes.KEY_INVALID,
                    context={"key_version": version},
                ) from e
        return cls(keys, config.current_version)

    @staticmethod
    def generate_key() -> bytes:
        """Generate a new random 256-bit key."""
        return AESGCM.generate_key(bit_length=256)

    @property
    def current_version(self) -> int:
        return self._current_version

    @property
    def key_versions(self) -> Iterable[int]:
        """Versions that can still decrypt."""
        return sorted(v for v in self._keys if v not in self._retired)

    def add_key(self, version: int, key: bytes, *, make_current: bool = True) -> None:
        """Add a key version.

        Args:
            version: New key version
            key: 32-byte key
            make_current: Use the new key for subsequent encryptions

        Raises:
            SecurityError: If the version already exists or the key is invalid
        """
        if version in self._keys:
            raise SecurityError(
                f"Key version {version} already exists",
                code=ErrorCodes.KEY_INVALID,
                context={"key_version": version},
            )
        self._keys[version] = self._make_cipher(version, key)
        if make_current:
            self._current_version = version
        logger.info("Vault key added", key_version=version, current=make_current)

    def retire_key(self, version: int) -> None:
        """Retire a key version; records encrypted with it no longer decrypt.

        Raises:
            SecurityError: If the version is unknown or is the current one
        """
        if version not in self._keys:
            raise SecurityError(
                f"Unknown key version {version}",
                code=ErrorCodes.KEY_VERSION_UNKNOWN,
                context={"key_version": version},
            )
        if version == self._current_version:
            raise SecurityError(
                f"Cannot retire the current key version {version}",
                code=ErrorCodes.KEY_INVALID,
                context={"key_version": version},
            )
        self._retired.add(version)
        logger.info("Vault key retired", key_version=version)

    def encrypt(
        self, plaintext: str, key_version: Optional[int] = None, *, credential_id: str = ""
    ) -> CredentialRecord:
        """Encrypt a credential.

        Args:
            plaintext: Secret to protect
            key_version: Key to use (defaults to the current version)
            credential_id: Identity bound into the ciphertext

        Returns:
            The encrypted record

        Raises:
            SecurityError: If the key version is unknown or retired
        """
        version = self._current_version if key_version is None else key_version
        cipher = self._usable_cipher(version, credential_id, error_class=SecurityError)
        nonce = os.urandom(NONCE_SIZE_BYTES)
        ciphertext = cipher.encrypt(
            nonce, plaintext.encode("utf-8"), _associated_data(credential_id, version)
        )
        return CredentialRecord(
            credential_id=credential_id,
            key_version=version,
            nonce=nonce,
            ciphertext=ciphertext,
        )

    def decrypt(self, record: CredentialRecord) -> str:
        """Decrypt a credential record.

        Args:
            record: Record produced by ``encrypt``

        Returns:
            The plaintext secret

        Raises:
            DecryptionError: If the key version is unknown or retired, or the
                ciphertext, nonce, or associated data fail authentication
        """
        cipher = self._usable_cipher(record.key_version, record.credential_id, error_class=DecryptionError)
        if len(record.nonce) != NONCE_SIZE_BYTES:
            raise DecryptionError(
                f"Credential {record.credential_id!r} has an invalid nonce",
                code=ErrorCodes.DECRYPTION_FAILED,
                context={"credential_id": record.credential_id, "key_version": record.key_version},
            )
        try:
            plaintext = cipher.decrypt(
                record.nonce,
                record.ciphertext,
                _associated_data(record.credential_id, record.key_version),
            )
        except InvalidTag as e:
            raise DecryptionError(
                f"Credential {record.credential_id!r} failed authentication",
                code=ErrorCodes.DECRYPTION_FAILED,
                context={"credential_id": record.credential_id, "key_version": record.key_version},
            ) from e
        return plaintext.decode("utf-8")

    def rotate(self, record: CredentialRecord) -> CredentialRecord:
        """Re-encrypt a record under the current key version."""
        if record.key_version == self._current_version:
            return record
        rotated = self.encrypt(self.decrypt(record), credential_id=record.credential_id)
        logger.info(
            "Credential rotated",
            credential_id=record.credential_id,
            from_version=record.key_version,
            to_version=rotated.key_version,
        )
        return rotated

    def _usable_cipher(self, version: int, credential_id: str, *, error_class: type) -> AESGCM:
        cipher = self._keys.get(version)
        if cipher is None or version in self._retired:
            state = "retired" if cipher is not None else "unknown"
            raise error_class(
                f"Key version {version} is {state}",
                code=ErrorCodes.KEY_VERSION_UNKNOWN,
                context={"credential_id": credential_id, "key_version": version},
            )
        return cipher

    def __repr__(self) -> str:
        return f"CredentialVault(current_version={self._current_version}, versions={list(self.key_versions)})"


class CredentialStore:
    """Resolve ``credential_ref`` values into plaintext secrets.

    Only encrypted records are held; plaintext exists transiently in the
    return value of ``resolve``.

    Example:
        >>> store = CredentialStore(vault)
        >>> store.put("cm-prod-db", "s3cret")
        >>> store.resolve("cm-prod-db")
        's3cret'
    """

    def __init__(self, vault: CredentialVault, records: Optional[Iterable[CredentialRecord]] = None) -> None:
        self._vault = vault
        self._records: Dict[str, CredentialRecord] = {}
        for record in records or ():
            self._records[record.credential_id] = record

    @property
    def vault(self) -> CredentialVault:
        return self._vault

    def put(self, credential_ref: str, plaintext: str) -> CredentialRecord:
        """Encrypt and store a credential under ``credential_ref``."""
        record = self._vault.encrypt(plaintext, credential_id=credential_ref)
        self._records[credential_ref] = record
        return record

    def add_record(self, record: CredentialRecord) -> None:
        self._records[record.credential_id] = record

    def resolve(self, credential_ref: str) -> str:
        """Decrypt the credential stored under ``credential_ref``.

        Raises:
            ConfigError: If no record exists for the reference
            DecryptionError: If the record cannot be decrypted
        """
        record = self._records.get(credential_ref)
        if record is None:
            raise ConfigError(
                f"Unknown credential reference {credential_ref!r}",
                code=ErrorCodes.CREDENTIAL_NOT_FOUND,
                context={"credential_ref": credential_ref},
            )
        return self._vault.decrypt(record)

    def rotate_all(self) -> int:
        """Re-encrypt every record under the current key; returns the count changed."""
        rotated = 0
        for ref, record in list(self._records.items()):
            new_record = self._vault.rotate(record)
            if new_record is not record:
                self._records[ref] = new_record
                rotated += 1
        return rotated

    def export_records(self) -> Dict[str, Dict[str, Any]]:
        """Export all records as serializable dictionaries."""
        return {ref: record.to_dict() for ref, record in self._records.items()}

    @classmethod
    def load(cls, vault: CredentialVault, data: Mapping[str, Mapping[str, Any]]) -> "CredentialStore":
        """Build a store from ``export_records`` output."""
        return cls(vault, (CredentialRecord.from_dict(item) for item in data.values()))

    def __contains__(self, credential_ref: object) -> bool:
        return credential_ref in self._records

    def __len__(self) -> int:
        return len(self._records)
