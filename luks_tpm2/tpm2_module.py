"""
TPM2 Trust Module

Thin capability interface over the TPM2 Enhanced System API (tpm2-pytss).
Provides the primitives the sealing adapter builds on:

  - create_policy:  PCR policy digest (trial session)
  - seal_object / load_object / unseal:  sealed data object under a parent key
  - define_nv / release_nv / write_nv / read_nv:  policy-protected NV index

Every TPM failure is raised as TrustModuleError. Failures caused by a missing
or wrong authorization value (TPM_RC_BAD_AUTH / TPM_RC_AUTH_FAIL, reported
by tpm2-tools as e.g. 0x9a2 / 0x98e) are raised as AuthRequired so callers can
ask for a credential once and retry.

Requirements:
- TPM2 hardware, tpm2-abrmd or a software simulator
- tpm2-pytss library
"""

from contextlib import contextmanager
from typing import Iterator, Optional, Tuple

from tpm2_pytss import (
    ESAPI, ESYS_TR, TPM2_ALG, TPM2_CAP, TPM2_RC, TPM2_SE, TPM2_SU,
    TPM2B_AUTH, TPM2B_DIGEST, TPM2B_NV_PUBLIC, TPM2B_PRIVATE, TPM2B_PUBLIC,
    TPM2B_SENSITIVE_CREATE, TPM2B_SENSITIVE_DATA, TPMA_NV, TPMA_OBJECT,
    TPML_PCR_SELECTION, TPMS_NV_PUBLIC, TPMS_SENSITIVE_CREATE, TPMT_PUBLIC,
    TPMT_SYM_DEF, TSS2_Exception,
)

from .config import PCRPolicy
from .errors import AuthRequired, TrustModuleError
from .logger import Logger

# Base TPM response codes meaning "authorization value missing or wrong"
AUTH_FAILURE_CODES = (TPM2_RC.BAD_AUTH, TPM2_RC.AUTH_FAIL)

# NV index readable and writable only through its policy
NV_ATTRIBUTES = TPMA_NV.POLICYWRITE | TPMA_NV.POLICYREAD | TPMA_NV.NO_DA

# Sealed data object: cannot be duplicated, user access only through policy
SEALED_OBJECT_ATTRIBUTES = TPMA_OBJECT.FIXEDTPM | TPMA_OBJECT.FIXEDPARENT


def base_error(rc: int) -> int:
    """
    Strip layer, handle, parameter and session bits from a response code.

    0x9a2 (bad auth on session 1) -> TPM2_RC.BAD_AUTH
    """
    rc &= 0xFFFF
    if rc & TPM2_RC.FMT1:
        return TPM2_RC.FMT1 + (rc & 0x3F)
    return rc


def is_auth_failure(rc: int) -> bool:
    """True if a TPM response code reports a missing or wrong authorization."""
    # Only the TPM layer (0) carries TPM response codes
    if (rc >> 16) & 0xFF:
        return False
    return base_error(rc) in AUTH_FAILURE_CODES


class TPM2Module:
    """
    TPM2 command surface used for sealing key material.

    Handles returned by load_object are transient and must be passed to
    flush() when no longer needed.
    """

    def __init__(self, tcti: Optional[str] = None):
        """
        Open a TPM connection.

        Args:
            tcti: TCTI configuration string (e.g. "device:/dev/tpmrm0").
                  None uses the TSS default.

        Raises:
            TrustModuleError: If no TPM can be reached
        """
        try:
            self.esapi = ESAPI(tcti)
        except TSS2_Exception as e:
            raise TrustModuleError(f"Cannot connect to TPM: {e}", e.rc)

        try:
            self.esapi.startup(TPM2_SU.CLEAR)
        except TSS2_Exception as e:
            # Already started by firmware or the resource manager
            if base_error(e.rc) != TPM2_RC.INITIALIZE:
                Logger.debug("TPM2", f"Startup returned: {e}")

    def close(self) -> None:
        self.esapi.close()

    # ========================================================================
    # Policy
    # ========================================================================

    def create_policy(self, policy: PCRPolicy) -> TPM2B_DIGEST:
        """
        Compute the PolicyPCR digest for the current PCR values.

        Args:
            policy: PCR selection

        Returns:
            Policy digest to bind an object or NV index to
        """
        with self._tpm_call(f"create policy {policy}"):
            session = self._start_session(TPM2_SE.TRIAL)
            try:
                self.esapi.policy_pcr(session, TPM2B_DIGEST(), TPML_PCR_SELECTION.parse(str(policy)))
                return self.esapi.policy_get_digest(session)
            finally:
                self._flush_quietly(session)

    # ========================================================================
    # Sealed objects
    # ========================================================================

    def seal_object(self, parent_handle: int, auth_policy: TPM2B_DIGEST, plaintext: bytes,
                    parent_auth: Optional[bytes] = None) -> Tuple[bytes, bytes]:
        """
        Create a sealed data object under a persistent parent key.

        Args:
            parent_handle: Persistent handle of the storage parent
            auth_policy: Policy digest that must be satisfied to unseal
            plaintext: Data to seal
            parent_auth: Parent authorization value, if one is set

        Returns:
            (public blob, private blob) in TPM2B wire format

        Raises:
            AuthRequired: If the parent authorization is missing or wrong
        """
        with self._tpm_call(f"create sealed object under 0x{parent_handle:08x}"):
            parent = self.esapi.tr_from_tpmpublic(parent_handle)
            try:
                if parent_auth:
                    self.esapi.tr_set_auth(parent, TPM2B_AUTH(parent_auth))

                public_area = TPMT_PUBLIC(
                    type=TPM2_ALG.KEYEDHASH,
                    nameAlg=TPM2_ALG.SHA256,
                    objectAttributes=SEALED_OBJECT_ATTRIBUTES,
                    authPolicy=auth_policy,
                )
                public_area.parameters.keyedHashDetail.scheme.scheme = TPM2_ALG.NULL

                sensitive = TPM2B_SENSITIVE_CREATE(
                    sensitive=TPMS_SENSITIVE_CREATE(data=TPM2B_SENSITIVE_DATA(plaintext))
                )

                private, public, _, _, _ = self.esapi.create(
                    parent, sensitive, TPM2B_PUBLIC(publicArea=public_area)
                )
            finally:
                self.esapi.tr_close(parent)

        return public.marshal(), private.marshal()

    def load_object(self, parent_handle: int, private_blob: bytes, public_blob: bytes,
                    parent_auth: Optional[bytes] = None) -> ESYS_TR:
        """
        Load a sealed object into a transient TPM handle.

        Returns:
            Transient handle; flush() it after use
        """
        with self._tpm_call(f"load sealed object under 0x{parent_handle:08x}"):
            private, _ = TPM2B_PRIVATE.unmarshal(private_blob)
            public, _ = TPM2B_PUBLIC.unmarshal(public_blob)

            parent = self.esapi.tr_from_tpmpublic(parent_handle)
            try:
                if parent_auth:
                    self.esapi.tr_set_auth(parent, TPM2B_AUTH(parent_auth))
                return self.esapi.load(parent, private, public)
            finally:
                self.esapi.tr_close(parent)

    def unseal(self, item: ESYS_TR, policy: PCRPolicy) -> bytes:
        """
        Unseal a loaded object, satisfying its PCR policy.
        """
        with self._tpm_call(f"unseal with policy {policy}"):
            session = self._policy_session(policy)
            try:
                data = self.esapi.unseal(item, session1=session)
            finally:
                self._flush_quietly(session)
        return bytes(data)

    def flush(self, handle: ESYS_TR) -> None:
        """Flush a transient handle. Errors are reported, not raised."""
        self._flush_quietly(handle)

    # ========================================================================
    # NV indices
    # ========================================================================

    def nv_exists(self, nv_index: int) -> bool:
        """
        Check if NV index is already defined.
        """
        with self._tpm_call(f"query NV index 0x{nv_index:08x}"):
            _, cap_data = self.esapi.get_capability(TPM2_CAP.HANDLES, nv_index, property_count=1)

        handles = cap_data.data.handles
        return bool(handles) and handles[0] == nv_index

    def define_nv(self, nv_index: int, auth_policy: TPM2B_DIGEST, size: int,
                  owner_auth: Optional[bytes] = None) -> None:
        """
        Define a policy-protected NV index of exactly `size` bytes.

        Raises:
            AuthRequired: If the owner authorization is missing or wrong
        """
        nv_public = TPM2B_NV_PUBLIC(
            nvPublic=TPMS_NV_PUBLIC(
                nvIndex=nv_index,
                nameAlg=TPM2_ALG.SHA256,
                attributes=NV_ATTRIBUTES,
                authPolicy=auth_policy,
                dataSize=size,
            )
        )

        with self._tpm_call(f"define NV index 0x{nv_index:08x}"):
            self._set_owner_auth(owner_auth)
            nv_handle = self.esapi.nv_define_space(TPM2B_AUTH(), nv_public, auth_handle=ESYS_TR.OWNER)
            self.esapi.tr_close(nv_handle)

    def release_nv(self, nv_index: int, owner_auth: Optional[bytes] = None) -> None:
        """
        Undefine an NV index.

        Raises:
            AuthRequired: If the owner authorization is missing or wrong
        """
        with self._tpm_call(f"release NV index 0x{nv_index:08x}"):
            self._set_owner_auth(owner_auth)
            nv_handle = self.esapi.tr_from_tpmpublic(nv_index)
            released = False
            try:
                self.esapi.nv_undefine_space(nv_handle, auth_handle=ESYS_TR.OWNER)
                released = True
            finally:
                # Undefine consumes the handle on success
                if not released:
                    self._close_quietly(nv_handle)

    def write_nv(self, nv_index: int, policy: PCRPolicy, plaintext: bytes) -> None:
        """Write data to an NV index, satisfying its PCR policy."""
        with self._tpm_call(f"write NV index 0x{nv_index:08x}"):
            nv_handle = self.esapi.tr_from_tpmpublic(nv_index)
            try:
                session = self._policy_session(policy)
                try:
                    self.esapi.nv_write(nv_handle, plaintext, offset=0,
                                        auth_handle=nv_handle, session1=session)
                finally:
                    self._flush_quietly(session)
            finally:
                self._close_quietly(nv_handle)

    def read_nv(self, nv_index: int, policy: PCRPolicy, size: int) -> bytes:
        """Read `size` bytes from an NV index, satisfying its PCR policy."""
        with self._tpm_call(f"read NV index 0x{nv_index:08x}"):
            nv_handle = self.esapi.tr_from_tpmpublic(nv_index)
            try:
                session = self._policy_session(policy)
                try:
                    data = self.esapi.nv_read(nv_handle, size, offset=0,
                                              auth_handle=nv_handle, session1=session)
                finally:
                    self._flush_quietly(session)
            finally:
                self._close_quietly(nv_handle)
        return bytes(data)

    # ========================================================================
    # Helpers
    # ========================================================================

    @contextmanager
    def _tpm_call(self, what: str) -> Iterator[None]:
        try:
            yield
        except TSS2_Exception as e:
            Logger.debug("TPM2", f"{what} failed: {e} (rc=0x{e.rc:x})")
            if is_auth_failure(e.rc):
                raise AuthRequired(f"Failed to {what}: authorization required ({e})", e.rc)
            raise TrustModuleError(f"Failed to {what}: {e}", e.rc)

    def _start_session(self, session_type: TPM2_SE) -> ESYS_TR:
        return self.esapi.start_auth_session(
            tpm_key=ESYS_TR.NONE,
            bind=ESYS_TR.NONE,
            session_type=session_type,
            symmetric=TPMT_SYM_DEF(algorithm=TPM2_ALG.NULL),
            auth_hash=TPM2_ALG.SHA256,
        )

    def _policy_session(self, policy: PCRPolicy) -> ESYS_TR:
        session = self._start_session(TPM2_SE.POLICY)
        try:
            self.esapi.policy_pcr(session, TPM2B_DIGEST(), TPML_PCR_SELECTION.parse(str(policy)))
        except TSS2_Exception:
            self._flush_quietly(session)
            raise
        return session

    def _set_owner_auth(self, owner_auth: Optional[bytes]) -> None:
        self.esapi.tr_set_auth(ESYS_TR.OWNER, TPM2B_AUTH(owner_auth or b''))

    def _flush_quietly(self, handle: ESYS_TR) -> None:
        try:
            self.esapi.flush_context(handle)
        except TSS2_Exception as e:
            Logger.debug("TPM2", f"Flush failed: {e}")

    def _close_quietly(self, handle: ESYS_TR) -> None:
        try:
            self.esapi.tr_close(handle)
        except TSS2_Exception as e:
            Logger.debug("TPM2", f"Close failed: {e}")
