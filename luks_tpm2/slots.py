"""
LUKS Slot Manager

Adds, kills and changes keys in the numbered key slots of a LUKS volume
through cryptsetup. Every call reports plain success/failure; retrying is
up to the caller.

Requirements:
- cryptsetup (from the cryptsetup package)
"""

import subprocess
from dataclasses import dataclass
from typing import List, Optional

from .logger import Logger

CRYPTSETUP_TIMEOUT = 60.0


@dataclass(frozen=True)
class Authorizer:
    """
    Existing key used to authorize a slot change: either a passphrase
    (fed to cryptsetup on stdin) or a key file path.
    """
    passphrase: Optional[bytes] = None
    keyfile: Optional[str] = None

    def __post_init__(self):
        if (self.passphrase is None) == (self.keyfile is None):
            raise ValueError("Authorizer needs exactly one of passphrase or keyfile")

    @classmethod
    def from_passphrase(cls, passphrase: bytes) -> "Authorizer":
        return cls(passphrase=passphrase)

    @classmethod
    def from_keyfile(cls, path: str) -> "Authorizer":
        return cls(keyfile=path)

    def __repr__(self) -> str:
        if self.keyfile is not None:
            return f"Authorizer(keyfile={self.keyfile!r})"
        return "Authorizer(passphrase=<hidden>)"


class SlotManager:
    """
    cryptsetup wrapper for one LUKS device.
    """

    def __init__(self, device: str):
        """
        Args:
            device: Block device holding the LUKS header (e.g. /dev/sda2)
        """
        self.device = device

    def add_key(self, slot: int, new_keyfile: str, authorizer: Authorizer) -> bool:
        """
        Add a key to a slot.

        Uses: cryptsetup luksAddKey --key-slot <slot> <device> <new_keyfile>

        Args:
            slot: Target key slot (must be empty)
            new_keyfile: File holding the new key
            authorizer: Any key already valid on the volume

        Returns:
            True if the key was added
        """
        cmd = ['cryptsetup', 'luksAddKey', '--key-slot', str(slot)]
        return self._run(f"add key to slot {slot}", cmd, [self.device, new_keyfile], authorizer)

    def kill_slot(self, slot: int, authorizer: Authorizer) -> bool:
        """
        Remove a key slot.

        Uses: cryptsetup luksKillSlot <device> <slot>
        """
        cmd = ['cryptsetup', 'luksKillSlot']
        return self._run(f"kill slot {slot}", cmd, [self.device, str(slot)], authorizer)

    def change_key(self, slot: int, new_keyfile: str, old_keyfile: str) -> bool:
        """
        Replace the key in a slot. cryptsetup performs the change
        crash-consistently: the slot holds either the old or the new key.

        Uses: cryptsetup luksChangeKey --key-slot <slot> --key-file <old> <device> <new>
        """
        cmd = ['cryptsetup', 'luksChangeKey', '--key-slot', str(slot)]
        return self._run(f"change key in slot {slot}", cmd, [self.device, new_keyfile],
                         Authorizer.from_keyfile(old_keyfile))

    def _run(self, what: str, cmd: List[str], args: List[str], authorizer: Authorizer) -> bool:
        stdin = None
        if authorizer.keyfile is not None:
            cmd = cmd + ['--key-file', authorizer.keyfile]
        else:
            cmd = cmd + ['--key-file', '-']
            stdin = authorizer.passphrase
        cmd = cmd + args

        Logger.debug("CRYPTSETUP", " ".join(cmd))
        try:
            result = subprocess.run(
                cmd,
                input=stdin,
                capture_output=True,
                timeout=CRYPTSETUP_TIMEOUT
            )
        except subprocess.TimeoutExpired:
            Logger.error(f"Timeout while trying to {what}")
            return False
        except FileNotFoundError:
            Logger.error("cryptsetup command not found - install cryptsetup package")
            return False

        if result.returncode != 0:
            error = result.stderr.decode(errors='replace').strip()
            Logger.error(f"Failed to {what} on {self.device}: {error or f'exit {result.returncode}'}")
            return False

        Logger.success(f"Slot operation done: {what}")
        return True
