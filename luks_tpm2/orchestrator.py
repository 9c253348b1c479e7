"""
Key Lifecycle Orchestrator

Composes the slot manager and the sealing adapter into the four key
rotation protocols:

  init     Generate a key, put it in the TPM slot and seal it
  temp     Unseal the key and add a temporary passphrase to the reset slot
  reset    Generate a new key for the TPM slot, seal it, then clear the reset slot
  replace  Swap the TPM slot key for a fresh one and seal it, no passphrase needed

Ordering is the safety mechanism: no slot loses its authorization before a
replacement is in place, and the reset slot is only cleared once the new key
is both in its slot and sealed.

Plaintext keys only ever live in the ephemeral keystore, which is erased and
removed when the protocol ends, however it ends.
"""

import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Callable, Dict, Optional, Type

from .config import Config
from .errors import PreconditionError, SealError, UnsealError
from .keystore import EphemeralKeystore
from .logger import Logger
from .prompt import PromptAborted, Prompter
from .sealing import SealingAdapter
from .slots import Authorizer, SlotManager

KEY_FILE = "keyfile"
OLD_KEY_FILE = "keyfile.old"
TEMP_PASSPHRASE_FILE = "passphrase"


class Action(Enum):
    """Supported key lifecycle actions"""
    INIT = "init"
    TEMP = "temp"
    RESET = "reset"
    REPLACE = "replace"


class ExitCode(IntEnum):
    """
    Per-stage outcome codes, used as the process exit status.

    Reset failures have their own codes: they all mean the reset slot
    (temporary passphrase) is still usable.
    """
    SUCCESS = 0
    FATAL = 1
    SLOT_FAILED = 2
    SEAL_FAILED = 3
    SLOT_AND_SEAL_FAILED = 4
    UNSEAL_FAILED = 5
    RESET_SLOT_FAILED = 6
    RESET_SEAL_FAILED = 7
    RESET_SLOT_AND_SEAL_FAILED = 8
    RESET_SLOT_NOT_CLEARED = 9
    RESEAL_REQUIRED = 10


OUTCOME_MESSAGES = {
    ExitCode.SUCCESS: "Completed successfully",
    ExitCode.FATAL: "Aborted before any change was made",
    ExitCode.SLOT_FAILED: "LUKS slot update failed",
    ExitCode.SEAL_FAILED: "LUKS slot updated but sealing the key failed",
    ExitCode.SLOT_AND_SEAL_FAILED: "Both the LUKS slot update and sealing failed",
    ExitCode.UNSEAL_FAILED: "Could not unseal the current key, nothing changed",
    ExitCode.RESET_SLOT_FAILED: "TPM slot update failed; reset slot is still valid",
    ExitCode.RESET_SEAL_FAILED: "Sealing the new key failed; reset slot is still valid",
    ExitCode.RESET_SLOT_AND_SEAL_FAILED: "TPM slot update and sealing failed; reset slot is still valid",
    ExitCode.RESET_SLOT_NOT_CLEARED: "TPM key rotated but the reset slot could not be cleared",
    ExitCode.RESEAL_REQUIRED: "TPM slot key changed but sealing failed: the volume key is NOT sealed",
}


@dataclass(frozen=True)
class OperationOutcome:
    """Result of one invocation. Reported, never persisted."""
    action: Action
    code: ExitCode
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return self.code == ExitCode.SUCCESS

    @property
    def message(self) -> str:
        if self.cancelled:
            return "Cancelled by operator, nothing changed"
        return OUTCOME_MESSAGES[self.code]


def combine(slot_ok: bool, seal_ok: bool, slot_code: ExitCode, seal_code: ExitCode,
            both_code: ExitCode) -> ExitCode:
    """Map slot/seal stage results to a single outcome code."""
    if slot_ok and seal_ok:
        return ExitCode.SUCCESS
    if not slot_ok and not seal_ok:
        return both_code
    return slot_code if not slot_ok else seal_code


# ============================================================================
# Protocols
# ============================================================================

class RotationProtocol(ABC):
    """
    One key lifecycle protocol. Runs with an acquired keystore; the
    orchestrator owns keystore scoping and outcome reporting.
    """

    action: Action
    title: str

    def __init__(self, orchestrator: "KeyLifecycleOrchestrator"):
        self.orchestrator = orchestrator
        self.config = orchestrator.config
        self.slots = orchestrator.slots
        self.sealing = orchestrator.sealing
        self.prompter = orchestrator.prompter

    def confirm(self) -> bool:
        """Ask for confirmation before starting. False cancels the operation."""
        return True

    @abstractmethod
    def execute(self, keystore: EphemeralKeystore) -> ExitCode:
        pass

    def outcome(self, code: ExitCode, cancelled: bool = False) -> OperationOutcome:
        return OperationOutcome(self.action, code, cancelled)

    # Shared steps

    def existing_authorizer(self, prompt: str) -> Authorizer:
        if self.config.keyfile:
            Logger.substep(f"Using key file {self.config.keyfile}")
            return Authorizer.from_keyfile(self.config.keyfile)
        return Authorizer.from_passphrase(self.prompter.passphrase(prompt))

    def new_key(self, keystore: EphemeralKeystore, name: str = KEY_FILE) -> str:
        key = self.orchestrator.random_bytes(self.config.key_size)
        if len(key) != self.config.key_size:
            raise PreconditionError(f"Random source returned {len(key)} bytes, expected {self.config.key_size}")
        path = keystore.write(name, key)
        Logger.substep(f"Generated new {self.config.key_size}-byte key")
        return path

    def seal_key(self, keystore: EphemeralKeystore, name: str = KEY_FILE) -> bool:
        try:
            self.sealing.seal(keystore.read(name), self.config.seal_policy)
        except SealError as e:
            Logger.error(str(e))
            return False
        except OSError as e:
            Logger.error(f"Cannot read key from keystore: {e}")
            return False
        return True

    def unseal_key(self, keystore: EphemeralKeystore, name: str) -> Optional[str]:
        try:
            key = self.sealing.unseal(self.config.unseal_policy)
        except UnsealError as e:
            Logger.error(str(e))
            return None
        return keystore.write(name, key)


class InitializeProtocol(RotationProtocol):
    """Provision a sealed key into the TPM slot, authorized by an existing passphrase."""

    action = Action.INIT
    title = "Initialize TPM key slot"

    def confirm(self) -> bool:
        return self.prompter.confirm(
            f"This will overwrite LUKS key slot {self.config.tpm_slot} on "
            f"{self.config.device} and replace the sealed key. Continue?"
        )

    def execute(self, keystore: EphemeralKeystore) -> ExitCode:
        Logger.step(1, "Authorize with an existing LUKS key")
        authorizer = self.existing_authorizer("Enter any existing LUKS passphrase")

        Logger.step(2, "Generate key")
        keyfile = self.new_key(keystore)

        Logger.step(3, f"Install key in slot {self.config.tpm_slot}")
        if not self.slots.kill_slot(self.config.tpm_slot, authorizer):
            Logger.substep(f"Slot {self.config.tpm_slot} was not cleared (probably empty)")
        slot_ok = self.slots.add_key(self.config.tpm_slot, keyfile, authorizer)

        # Seal even if the slot failed so both faults are reported
        Logger.step(4, "Seal key")
        seal_ok = self.seal_key(keystore)

        return combine(slot_ok, seal_ok, ExitCode.SLOT_FAILED, ExitCode.SEAL_FAILED,
                       ExitCode.SLOT_AND_SEAL_FAILED)


class IssueTemporaryProtocol(RotationProtocol):
    """Add a temporary passphrase to the reset slot. Removes nothing."""

    action = Action.TEMP
    title = "Issue temporary passphrase"

    def execute(self, keystore: EphemeralKeystore) -> ExitCode:
        Logger.step(1, "Unseal current key")
        keyfile = self.unseal_key(keystore, KEY_FILE)
        if keyfile is None:
            return ExitCode.UNSEAL_FAILED

        Logger.step(2, f"Add temporary passphrase to slot {self.config.reset_slot}")
        passphrase = self.prompter.passphrase("Enter temporary passphrase", verify=True)
        passfile = keystore.write(TEMP_PASSPHRASE_FILE, passphrase)
        del passphrase

        if not self.slots.add_key(self.config.reset_slot, passfile, Authorizer.from_keyfile(keyfile)):
            return ExitCode.SLOT_FAILED

        Logger.info(f"After the next boot, run 'reset' to rotate the TPM key and clear slot {self.config.reset_slot}")
        return ExitCode.SUCCESS


class ResetProtocol(RotationProtocol):
    """
    Rotate the TPM key after the temporary passphrase was used.

    The reset slot is killed only when the new key is both installed and
    sealed; otherwise it stays as the recovery path.
    """

    action = Action.RESET
    title = "Reset TPM key"

    def execute(self, keystore: EphemeralKeystore) -> ExitCode:
        Logger.step(1, "Authorize with the temporary passphrase")
        authorizer = self.existing_authorizer("Enter the temporary (or any existing) LUKS passphrase")

        Logger.step(2, "Generate key")
        keyfile = self.new_key(keystore)

        Logger.step(3, f"Replace key in slot {self.config.tpm_slot}")
        if not self.slots.kill_slot(self.config.tpm_slot, authorizer):
            Logger.substep(f"Slot {self.config.tpm_slot} was not cleared (probably empty)")
        slot_ok = self.slots.add_key(self.config.tpm_slot, keyfile, authorizer)

        Logger.step(4, "Seal key")
        seal_ok = self.seal_key(keystore)

        if not (slot_ok and seal_ok):
            Logger.warning(f"Keeping reset slot {self.config.reset_slot}; the temporary passphrase still unlocks the volume")
            return combine(slot_ok, seal_ok, ExitCode.RESET_SLOT_FAILED, ExitCode.RESET_SEAL_FAILED,
                           ExitCode.RESET_SLOT_AND_SEAL_FAILED)

        Logger.step(5, f"Clear reset slot {self.config.reset_slot}")
        if not self.slots.kill_slot(self.config.reset_slot, Authorizer.from_keyfile(keyfile)):
            return ExitCode.RESET_SLOT_NOT_CLEARED
        return ExitCode.SUCCESS


class ReplaceProtocol(RotationProtocol):
    """Swap the TPM slot key in place, authorized by the currently sealed key."""

    action = Action.REPLACE
    title = "Replace TPM key"

    def execute(self, keystore: EphemeralKeystore) -> ExitCode:
        Logger.step(1, "Unseal current key")
        old_keyfile = self.unseal_key(keystore, OLD_KEY_FILE)
        if old_keyfile is None:
            return ExitCode.UNSEAL_FAILED

        Logger.step(2, "Generate key")
        keyfile = self.new_key(keystore)

        Logger.step(3, f"Change key in slot {self.config.tpm_slot}")
        if not self.slots.change_key(self.config.tpm_slot, keyfile, old_keyfile):
            return ExitCode.SLOT_FAILED

        Logger.step(4, "Seal key")
        if not self.seal_key(keystore):
            Logger.error(f"Slot {self.config.tpm_slot} now holds a key that is not sealed anywhere")
            Logger.error("Unlock with another passphrase and run 'init' to provision a new sealed key")
            return ExitCode.RESEAL_REQUIRED
        return ExitCode.SUCCESS


PROTOCOLS: Dict[Action, Type[RotationProtocol]] = {
    Action.INIT: InitializeProtocol,
    Action.TEMP: IssueTemporaryProtocol,
    Action.RESET: ResetProtocol,
    Action.REPLACE: ReplaceProtocol,
}


# ============================================================================
# Orchestrator
# ============================================================================

class KeyLifecycleOrchestrator:
    """
    Runs one key lifecycle protocol against one LUKS volume.

    To use:
        orchestrator = KeyLifecycleOrchestrator(config, SlotManager(config.device),
                                                create_sealing_adapter(config, tpm, prompter),
                                                prompter)
        outcome = orchestrator.run(Action.RESET)
    """

    def __init__(self, config: Config, slots: SlotManager, sealing: SealingAdapter,
                 prompter: Prompter,
                 keystore_factory: Optional[Callable[[], EphemeralKeystore]] = None,
                 random_bytes: Callable[[int], bytes] = os.urandom):
        """
        Args:
            config: Configuration for this invocation
            slots: Slot manager for config.device
            sealing: Sealing adapter for the configured form
            prompter: Operator prompts
            keystore_factory: Builds the keystore for one run (default: from config)
            random_bytes: Cryptographically secure byte source
        """
        self.config = config
        self.slots = slots
        self.sealing = sealing
        self.prompter = prompter
        self.random_bytes = random_bytes
        self.keystore_factory = keystore_factory or (
            lambda: EphemeralKeystore(config.keystore_dir, mount=config.mount_keystore)
        )

    def run(self, action: Action) -> OperationOutcome:
        """
        Execute a protocol.

        Returns:
            Outcome with the per-stage code. Declining the initialize
            confirmation gives a cancelled SUCCESS outcome.
        """
        protocol = PROTOCOLS[action](self)
        Logger.header(f"LUKS-TPM2: {protocol.title}")

        if not protocol.confirm():
            outcome = protocol.outcome(ExitCode.SUCCESS, cancelled=True)
            Logger.info(outcome.message)
            return outcome

        try:
            with self.keystore_factory() as keystore:
                code = protocol.execute(keystore)
        except PreconditionError as e:
            Logger.error(str(e))
            code = ExitCode.FATAL
        except PromptAborted as e:
            Logger.error(f"Aborted: {e}")
            code = ExitCode.FATAL
        except OSError as e:
            # Steps that touch the volume report their own stage codes
            Logger.error(f"Keystore I/O failed: {e}")
            code = ExitCode.FATAL

        outcome = protocol.outcome(code)
        Logger.result(outcome.ok, f"{outcome.message} (code {int(outcome.code)})")
        return outcome
