"""Credential security for cmconnector.

Classes:
    CredentialVault: AES-256-GCM encryption with versioned keys
    CredentialRecord: Encrypted credential
    CredentialStore: credential_ref resolution
"""

from .vault import CredentialRecord, CredentialStore, CredentialVault

__all__ = [
    "CredentialRecord",
    "CredentialStore",
    "CredentialVault",
]
