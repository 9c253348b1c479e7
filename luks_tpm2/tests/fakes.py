"""
Software stand-ins for the TPM and the LUKS slot table.

FakeTPM mimics the TPM2Module command surface. Sealed data is encrypted
with AES-GCM under the policy digest, so unsealing under any other PCR
selection (or changed PCR values) fails instead of returning wrong data.

FakeVolume mimics the SlotManager: eight slots holding raw key bytes.
"""

import hashlib
import os
import struct
from typing import Dict, List, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from luks_tpm2.errors import AuthRequired, TrustModuleError

RC_BAD_AUTH = 0x9a2
RC_POLICY_FAIL = 0x99d
RC_NV_DEFINED = 0x14c
RC_HANDLE = 0x18b
RC_FAILURE = 0x101

BANK_SIZES = {"sha1": 20, "sha256": 32, "sha384": 48, "sha512": 64}


class FakeTPM:
    """In-memory TPM with PCRs, sealed objects and NV indices."""

    def __init__(self, owner_auth: Optional[bytes] = None, parent_auth: Optional[bytes] = None):
        self.owner_auth = owner_auth
        self.parent_auth = parent_auth
        self.pcrs = {bank: [bytes(size)] * 24 for bank, size in BANK_SIZES.items()}
        self.nv: Dict[int, dict] = {}
        self.loaded: Dict[int, bytes] = {}
        self.next_handle = 0x80000000
        self.fail_commands = set()
        self.calls: List[str] = []

    # Test helpers

    def extend(self, bank: str, index: int, data: bytes) -> None:
        hash_fn = getattr(hashlib, bank)
        self.pcrs[bank][index] = hash_fn(self.pcrs[bank][index] + data).digest()

    def _record(self, name: str) -> None:
        self.calls.append(name)
        if name in self.fail_commands:
            raise TrustModuleError(f"{name} failed (injected)", RC_FAILURE)

    def _digest(self, policy) -> bytes:
        h = hashlib.sha256(str(policy).encode())
        for bank, indices in policy.selectors:
            for index in indices:
                h.update(self.pcrs[bank][index])
        return h.digest()

    @staticmethod
    def _check_auth(required: Optional[bytes], given: Optional[bytes], what: str) -> None:
        if (required or b"") != (given or b""):
            raise AuthRequired(f"{what}: bad authorization", RC_BAD_AUTH)

    # Policy

    def create_policy(self, policy) -> bytes:
        self._record("create_policy")
        return self._digest(policy)

    # Sealed objects

    def seal_object(self, parent_handle, auth_policy, plaintext, parent_auth=None):
        self._record("seal_object")
        self._check_auth(self.parent_auth, parent_auth, "create")
        nonce = os.urandom(12)
        sealed = AESGCM(bytes(auth_policy)).encrypt(nonce, plaintext, struct.pack(">I", parent_handle))
        public_blob = b"PUB" + hashlib.sha256(bytes(auth_policy)).digest()
        private_blob = nonce + sealed
        return public_blob, private_blob

    def load_object(self, parent_handle, private_blob, public_blob, parent_auth=None):
        self._record("load_object")
        self._check_auth(self.parent_auth, parent_auth, "load")
        if not public_blob.startswith(b"PUB"):
            raise TrustModuleError("load: malformed public area", RC_FAILURE)
        handle = self.next_handle
        self.next_handle += 1
        self.loaded[handle] = (parent_handle, private_blob)
        return handle

    def unseal(self, item, policy) -> bytes:
        self._record("unseal")
        if item not in self.loaded:
            raise TrustModuleError("unseal: no such handle", RC_HANDLE)
        parent_handle, private_blob = self.loaded[item]
        nonce, sealed = private_blob[:12], private_blob[12:]
        try:
            return AESGCM(self._digest(policy)).decrypt(nonce, sealed, struct.pack(">I", parent_handle))
        except InvalidTag:
            raise TrustModuleError("unseal: policy check failed", RC_POLICY_FAIL)

    def flush(self, handle) -> None:
        self.calls.append("flush")
        self.loaded.pop(handle, None)

    # NV indices

    def nv_exists(self, nv_index: int) -> bool:
        self._record("nv_exists")
        return nv_index in self.nv

    def define_nv(self, nv_index, auth_policy, size, owner_auth=None) -> None:
        self._record("define_nv")
        self._check_auth(self.owner_auth, owner_auth, "nvdefine")
        if nv_index in self.nv:
            raise TrustModuleError("nvdefine: index already defined", RC_NV_DEFINED)
        self.nv[nv_index] = {"policy": bytes(auth_policy), "size": size, "data": None}

    def release_nv(self, nv_index, owner_auth=None) -> None:
        self._record("release_nv")
        self._check_auth(self.owner_auth, owner_auth, "nvundefine")
        if nv_index not in self.nv:
            raise TrustModuleError("nvundefine: no such index", RC_HANDLE)
        del self.nv[nv_index]

    def write_nv(self, nv_index, policy, plaintext) -> None:
        self._record("write_nv")
        entry = self.nv.get(nv_index)
        if entry is None:
            raise TrustModuleError("nvwrite: no such index", RC_HANDLE)
        if self._digest(policy) != entry["policy"]:
            raise TrustModuleError("nvwrite: policy check failed", RC_POLICY_FAIL)
        if len(plaintext) > entry["size"]:
            raise TrustModuleError("nvwrite: data too large", RC_FAILURE)
        entry["data"] = bytes(plaintext)

    def read_nv(self, nv_index, policy, size) -> bytes:
        self._record("read_nv")
        entry = self.nv.get(nv_index)
        if entry is None or entry["data"] is None:
            raise TrustModuleError("nvread: index not written", RC_HANDLE)
        if self._digest(policy) != entry["policy"]:
            raise TrustModuleError("nvread: policy check failed", RC_POLICY_FAIL)
        return entry["data"][:size]


class FakeVolume:
    """LUKS slot table with the SlotManager interface."""

    def __init__(self, slots: Optional[Dict[int, bytes]] = None):
        self.slots: Dict[int, bytes] = dict(slots or {})
        self.calls: List[tuple] = []
        self.fail = set()

    @staticmethod
    def _read(path: str) -> bytes:
        with open(path, "rb") as f:
            return f.read()

    def _secret(self, authorizer) -> bytes:
        if authorizer.keyfile is not None:
            return self._read(authorizer.keyfile)
        return authorizer.passphrase

    def _authorized(self, secret: bytes) -> bool:
        return secret in self.slots.values()

    def add_key(self, slot, new_keyfile, authorizer) -> bool:
        self.calls.append(("add_key", slot))
        if "add_key" in self.fail or slot in self.slots:
            return False
        if not self._authorized(self._secret(authorizer)):
            return False
        self.slots[slot] = self._read(new_keyfile)
        return True

    def kill_slot(self, slot, authorizer) -> bool:
        self.calls.append(("kill_slot", slot))
        if "kill_slot" in self.fail or slot not in self.slots:
            return False
        if not self._authorized(self._secret(authorizer)):
            return False
        del self.slots[slot]
        return True

    def change_key(self, slot, new_keyfile, old_keyfile) -> bool:
        self.calls.append(("change_key", slot))
        if "change_key" in self.fail or self.slots.get(slot) != self._read(old_keyfile):
            return False
        self.slots[slot] = self._read(new_keyfile)
        return True
