from __future__ import annotations


class CaseRegistryError(Exception):
    """Base error for caseregistry."""


class CryptoConfigError(CaseRegistryError):
    """Missing or invalid encryption/hash key configuration."""


class EncryptionError(CaseRegistryError):
    """A PII field could not be encrypted; the enclosing write must roll back."""


class DecryptionError(CaseRegistryError):
    """Ciphertext failed authentication, is malformed, or was sealed with another key."""


class MappingValidationError(CaseRegistryError):
    """Beneficiary mapping payload is not a usable configuration."""


class BeneficiaryNotFoundError(CaseRegistryError):
    """Referenced beneficiary does not exist."""


class PseudonymAllocationError(CaseRegistryError):
    """No unused pseudonym could be drawn for a new beneficiary."""
