"""
Ephemeral Keystore

Volatile, owner-only storage for plaintext key material while one key
lifecycle operation runs. A ramfs is mounted on a fresh private directory
(ramfs pages are never swapped out) and torn down again afterwards.

Every regular file inside the keystore is overwritten with random data
before it is deleted. This is best-effort only: it gives no guarantee on
wear-levelled or copy-on-write storage. That only matters when mounting is
disabled and the keystore directory is not on a RAM-backed filesystem.

Requirements:
- mount(8) / umount(8) and root privileges when mounting is enabled
"""

import os
import stat
import subprocess
import tempfile
from typing import Optional

from .errors import PreconditionError
from .logger import Logger

KEYSTORE_MODE = 0o700
KEYFILE_MODE = 0o600
ERASE_CHUNK = 64 * 1024


def secure_erase(path: str) -> bool:
    """
    Overwrite a file with random bytes of its current length, then delete it.

    Args:
        path: File to erase

    Returns:
        True if the file was overwritten and removed (or did not exist)
    """
    try:
        size = os.path.getsize(path)
    except FileNotFoundError:
        return True
    except OSError as e:
        Logger.error(f"Cannot stat {path}: {e}")
        return False

    try:
        with open(path, "r+b", buffering=0) as f:
            remaining = size
            while remaining > 0:
                chunk = min(remaining, ERASE_CHUNK)
                f.write(os.urandom(chunk))
                remaining -= chunk
            f.flush()
            os.fsync(f.fileno())
    except OSError as e:
        Logger.error(f"Failed to overwrite {path}: {e}")
        # Still remove it below

    try:
        os.unlink(path)
    except OSError as e:
        Logger.error(f"Failed to delete {path}: {e}")
        return False
    return True


class EphemeralKeystore:
    """
    Scoped, process-exclusive storage area for key files.

    Usage:
        with EphemeralKeystore(config.keystore_dir) as keystore:
            path = keystore.write("keyfile", key)
            ...
        # every file erased, ramfs unmounted, directory removed
    """

    def __init__(self, base_dir: str, mount: bool = True):
        """
        Args:
            base_dir: Directory under which the keystore directory is created
            mount: Mount a ramfs on the keystore directory. When False the
                   directory is used as-is and base_dir should be on tmpfs.
        """
        self.base_dir = base_dir
        self.mount = mount
        self.path: Optional[str] = None
        self._mounted = False

    def __enter__(self) -> "EphemeralKeystore":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()

    # ========================================================================
    # Lifecycle
    # ========================================================================

    def acquire(self) -> str:
        """
        Create the keystore.

        Returns:
            Absolute path of the keystore directory

        Raises:
            PreconditionError: If the area cannot be created owner-only
        """
        if self.path is not None:
            raise PreconditionError(f"Keystore already acquired at {self.path}")

        try:
            os.makedirs(self.base_dir, mode=KEYSTORE_MODE, exist_ok=True)
            self.path = tempfile.mkdtemp(prefix="keystore.", dir=self.base_dir)
        except OSError as e:
            raise PreconditionError(f"Cannot create keystore under {self.base_dir}: {e}")

        try:
            if self.mount:
                self._mount_ramfs()
            os.chmod(self.path, KEYSTORE_MODE)
            self._check_permissions()
        except (OSError, PreconditionError) as e:
            self.release()
            if isinstance(e, PreconditionError):
                raise
            raise PreconditionError(f"Cannot secure keystore: {e}")

        Logger.debug("KEYSTORE", f"Acquired {self.path}")
        return self.path

    def release(self) -> None:
        """
        Erase every file in the keystore and remove it.

        Never raises; failures are reported and the remaining steps still run.
        """
        if self.path is None:
            return

        path = self.path
        try:
            for entry in os.scandir(path):
                if entry.is_file(follow_symlinks=False):
                    secure_erase(entry.path)
                else:
                    Logger.warning(f"Unexpected entry in keystore: {entry.name}")
        except OSError as e:
            Logger.error(f"Failed to scan keystore {path}: {e}")

        if self._mounted:
            self._unmount()

        try:
            os.rmdir(path)
        except OSError as e:
            Logger.error(f"Failed to remove keystore {path}: {e}")

        self.path = None
        Logger.debug("KEYSTORE", f"Released {path}")

    # ========================================================================
    # Key files
    # ========================================================================

    def file_path(self, name: str) -> str:
        """Path of a named file inside the keystore."""
        if self.path is None:
            raise PreconditionError("Keystore not acquired")
        if os.sep in name or name in ("", ".", ".."):
            raise ValueError(f"Invalid keystore file name: {name!r}")
        return os.path.join(self.path, name)

    def write(self, name: str, data: bytes) -> str:
        """
        Store bytes in a new owner-only file.

        Returns:
            Path of the written file
        """
        path = self.file_path(name)
        if os.path.exists(path):
            secure_erase(path)
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, KEYFILE_MODE)
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        return path

    def read(self, name: str) -> bytes:
        with open(self.file_path(name), "rb") as f:
            return f.read()

    def erase(self, name: str) -> bool:
        return secure_erase(self.file_path(name))

    # ========================================================================
    # Helpers
    # ========================================================================

    def _mount_ramfs(self) -> None:
        cmd = ['mount', '-t', 'ramfs', '-o', f'mode={KEYSTORE_MODE:o}', 'ramfs', self.path]
        try:
            result = subprocess.run(cmd, capture_output=True, timeout=10.0)
        except FileNotFoundError:
            raise PreconditionError("mount command not found")
        except subprocess.TimeoutExpired:
            raise PreconditionError("Timeout while mounting keystore")

        if result.returncode != 0:
            error = result.stderr.decode(errors='replace').strip()
            raise PreconditionError(f"Failed to mount ramfs on {self.path}: {error}")
        self._mounted = True

    def _unmount(self) -> None:
        try:
            result = subprocess.run(['umount', self.path], capture_output=True, timeout=10.0)
        except (FileNotFoundError, subprocess.TimeoutExpired) as e:
            Logger.error(f"Failed to unmount keystore {self.path}: {e}")
            return

        if result.returncode != 0:
            error = result.stderr.decode(errors='replace').strip()
            Logger.error(f"Failed to unmount keystore {self.path}: {error}")
            return
        self._mounted = False

    def _check_permissions(self) -> None:
        st = os.stat(self.path)
        if stat.S_IMODE(st.st_mode) & 0o077:
            raise PreconditionError(f"Keystore {self.path} is accessible by other users")
        if st.st_uid != os.geteuid():
            raise PreconditionError(f"Keystore {self.path} is not owned by the current user")
