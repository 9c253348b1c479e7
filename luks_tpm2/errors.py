"""
Exceptions raised by the LUKS-TPM2 key lifecycle tool.
"""


class LuksTpmError(Exception):
    """Base exception for all key lifecycle errors"""
    pass


class ConfigError(LuksTpmError):
    """Raised when configuration values are missing or invalid"""
    pass


class PreconditionError(LuksTpmError):
    """
    Raised when an operation cannot start safely (no privileges, keystore
    cannot be created). Always raised before any slot or seal mutation.
    """
    pass


class TrustModuleError(LuksTpmError):
    """Raised when a TPM2 command fails"""

    def __init__(self, message: str, rc: int = 0):
        super().__init__(message)
        self.rc = rc


class AuthRequired(TrustModuleError):
    """Raised when the TPM rejects a command for a missing or wrong authorization value"""
    pass


class SealError(LuksTpmError):
    """Raised when key material could not be sealed"""
    pass


class UnsealError(LuksTpmError):
    """Raised when key material could not be unsealed"""
    pass
