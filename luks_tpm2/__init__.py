"""
LUKS-TPM2 Key Lifecycle Package
Seals a LUKS key slot key with a TPM2 and rotates it safely.
"""

__version__ = '0.1.0'

from .config import Config, PCRPolicy, load_config
from .errors import (
    LuksTpmError, ConfigError, PreconditionError, TrustModuleError,
    AuthRequired, SealError, UnsealError,
)
from .orchestrator import Action, ExitCode, KeyLifecycleOrchestrator, OperationOutcome

__all__ = [
    'Config',
    'PCRPolicy',
    'load_config',
    'LuksTpmError',
    'ConfigError',
    'PreconditionError',
    'TrustModuleError',
    'AuthRequired',
    'SealError',
    'UnsealError',
    'Action',
    'ExitCode',
    'KeyLifecycleOrchestrator',
    'OperationOutcome',
]
