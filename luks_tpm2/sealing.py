"""
Sealing Adapter

Seals and unseals LUKS key material with the TPM under a PCR policy.
Two storage forms, selected by configuration:

  - NVRAMSealing:  key bytes held directly in a policy-protected NV index
  - ObjectSealing: sealed data object stored as public/private blobs on disk,
                   loadable only under a persistent parent key

Both share the same authorization handling: when the TPM rejects a command
for a missing owner/parent authorization, the operator is asked once for the
credential and the command is retried once. A second rejection is fatal.
"""

import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Optional, TypeVar, Union

from .config import Config, PCRPolicy
from .errors import AuthRequired, SealError, TrustModuleError, UnsealError
from .logger import Logger
from .prompt import Prompter

if TYPE_CHECKING:
    from .tpm2_module import TPM2Module

T = TypeVar("T")

BLOB_MODE = 0o600


@dataclass(frozen=True)
class NVSealedKey:
    """Key material held in an NV index"""
    nv_index: int

    def __str__(self) -> str:
        return f"NV index 0x{self.nv_index:08x}"


@dataclass(frozen=True)
class ObjectSealedKey:
    """Sealed object blobs on disk, bound to a parent key"""
    parent_handle: int
    public_path: str
    private_path: str

    def __str__(self) -> str:
        return f"{self.public_path}, {self.private_path} (parent 0x{self.parent_handle:08x})"


SealedKeyHandle = Union[NVSealedKey, ObjectSealedKey]


class SealingAdapter(ABC):
    """
    Abstract seal/unseal capability.

    seal() raises SealError, unseal() raises UnsealError. Neither lets
    TrustModuleError escape.
    """

    # Which authorization the one-shot retry asks for
    credential_name = "owner"

    def __init__(self, config: Config, tpm: "TPM2Module", prompter: Prompter):
        self.config = config
        self.tpm = tpm
        self.prompter = prompter
        self._credential: Optional[bytes] = None

    @abstractmethod
    def seal(self, key: bytes, policy: PCRPolicy) -> SealedKeyHandle:
        """
        Seal key material under a PCR policy, replacing any previous seal.

        Args:
            key: Key material (config.key_size bytes)
            policy: PCR selection the seal is bound to

        Returns:
            Handle describing where the sealed key now lives

        Raises:
            SealError: If the key could not be sealed
        """
        pass

    @abstractmethod
    def unseal(self, policy: PCRPolicy) -> bytes:
        """
        Recover key material, satisfying a PCR policy.

        Raises:
            UnsealError: If the seal is missing or the policy is not satisfied
        """
        pass

    def _check_key(self, key: bytes) -> None:
        if len(key) != self.config.key_size:
            raise SealError(f"Key must be {self.config.key_size} bytes, got {len(key)}")

    def _policy_digest(self, policy: PCRPolicy):
        try:
            return self.tpm.create_policy(policy)
        except TrustModuleError as e:
            raise SealError(f"Cannot compute policy digest for {policy}: {e}")

    def _authorized(self, operation: Callable[[Optional[bytes]], T]) -> T:
        """
        Run a TPM operation, retrying once with a prompted credential.

        Args:
            operation: Callable taking the credential (None = empty auth)

        Raises:
            AuthRequired: If the credential is refused or none was given
            TrustModuleError: For any other TPM failure (never retried)
        """
        try:
            return operation(self._credential)
        except AuthRequired:
            if self._credential is not None:
                raise

        credential = self.prompter.credential(self.credential_name)
        if not credential:
            raise AuthRequired(f"No {self.credential_name} authorization given")

        result = operation(credential)
        self._credential = credential
        return result


class NVRAMSealing(SealingAdapter):
    """Key material stored in a TPM NV index bound to a PCR policy."""

    credential_name = "owner"

    def seal(self, key: bytes, policy: PCRPolicy) -> NVSealedKey:
        self._check_key(key)
        nv_index = self.config.nv_index
        digest = self._policy_digest(policy)

        try:
            if self.tpm.nv_exists(nv_index):
                Logger.substep(f"Releasing existing NV index 0x{nv_index:08x}")
                self._authorized(lambda auth: self.tpm.release_nv(nv_index, auth))

            self._authorized(lambda auth: self.tpm.define_nv(nv_index, digest, len(key), auth))
            self.tpm.write_nv(nv_index, policy, key)
        except TrustModuleError as e:
            raise SealError(f"Cannot seal key in NV index 0x{nv_index:08x}: {e}")
        finally:
            del digest

        handle = NVSealedKey(nv_index)
        Logger.success(f"Key sealed in {handle} ({policy})")
        return handle

    def unseal(self, policy: PCRPolicy) -> bytes:
        nv_index = self.config.nv_index
        try:
            key = self.tpm.read_nv(nv_index, policy, self.config.key_size)
        except TrustModuleError as e:
            raise UnsealError(f"Cannot read NV index 0x{nv_index:08x}: {e}")

        if len(key) != self.config.key_size:
            raise UnsealError(f"Unsealed key has invalid length: {len(key)} (expected {self.config.key_size})")
        Logger.success(f"Key unsealed from NV index 0x{nv_index:08x}")
        return key


class ObjectSealing(SealingAdapter):
    """Sealed data object stored as public/private blobs under a parent key."""

    credential_name = "parent key"

    def seal(self, key: bytes, policy: PCRPolicy) -> ObjectSealedKey:
        self._check_key(key)
        handle = ObjectSealedKey(
            self.config.parent_handle, self.config.sealed_public, self.config.sealed_private
        )
        digest = self._policy_digest(policy)

        try:
            for path in (handle.public_path, handle.private_path):
                if os.path.exists(path):
                    Logger.substep(f"Removing old sealed blob {path}")
                    os.remove(path)

            public_blob, private_blob = self._authorized(
                lambda auth: self.tpm.seal_object(handle.parent_handle, digest, key, auth)
            )
            self._write_blob(handle.public_path, public_blob)
            self._write_blob(handle.private_path, private_blob)
        except TrustModuleError as e:
            raise SealError(f"Cannot create sealed object: {e}")
        except OSError as e:
            # Never leave half a blob pair behind
            for path in (handle.public_path, handle.private_path):
                self._remove_quietly(path)
            raise SealError(f"Cannot store sealed object: {e}")
        finally:
            del digest

        Logger.success(f"Key sealed in {handle} ({policy})")
        return handle

    def unseal(self, policy: PCRPolicy) -> bytes:
        parent = self.config.parent_handle
        try:
            with open(self.config.sealed_public, "rb") as f:
                public_blob = f.read()
            with open(self.config.sealed_private, "rb") as f:
                private_blob = f.read()
        except OSError as e:
            raise UnsealError(f"Cannot read sealed object: {e}")

        try:
            item = self._authorized(
                lambda auth: self.tpm.load_object(parent, private_blob, public_blob, auth)
            )
        except TrustModuleError as e:
            raise UnsealError(f"Cannot load sealed object: {e}")

        try:
            key = self.tpm.unseal(item, policy)
        except TrustModuleError as e:
            raise UnsealError(f"Cannot unseal key: {e}")
        finally:
            self.tpm.flush(item)

        if len(key) != self.config.key_size:
            raise UnsealError(f"Unsealed key has invalid length: {len(key)} (expected {self.config.key_size})")
        Logger.success("Key unsealed from sealed object")
        return key

    @staticmethod
    def _write_blob(path: str, data: bytes) -> None:
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, BLOB_MODE)
        with os.fdopen(fd, "wb") as f:
            f.write(data)

    @staticmethod
    def _remove_quietly(path: str) -> None:
        try:
            os.remove(path)
        except FileNotFoundError:
            pass
        except OSError as e:
            Logger.error(f"Failed to remove partial sealed blob {path}: {e}")


def create_sealing_adapter(config: Config, tpm: "TPM2Module", prompter: Prompter) -> SealingAdapter:
    """Pick the sealing form: NVRAM when an NV index is configured, else object blobs."""
    if config.uses_nvram:
        return NVRAMSealing(config, tpm, prompter)
    return ObjectSealing(config, tpm, prompter)
