import os
import shutil
import stat
import tempfile
import unittest
from unittest.mock import MagicMock, patch

from luks_tpm2.errors import PreconditionError
from luks_tpm2.keystore import EphemeralKeystore, secure_erase
from luks_tpm2.logger import Logger

Logger.enabled = False

KEY = b"K" * 32


class TestSecureErase(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()
        self.path = os.path.join(self.tmpdir, "keyfile")
        with open(self.path, "wb") as f:
            f.write(KEY)

    def tearDown(self):
        shutil.rmtree(self.tmpdir)

    def test_overwrites_before_delete(self):
        """File content at unlink time is random data of the same length"""
        seen = {}
        real_unlink = os.unlink

        def capture(path):
            with open(path, "rb") as f:
                seen["content"] = f.read()
            real_unlink(path)

        with patch("luks_tpm2.keystore.os.unlink", side_effect=capture):
            self.assertTrue(secure_erase(self.path))

        self.assertEqual(len(seen["content"]), len(KEY))
        self.assertNotEqual(seen["content"], KEY)
        self.assertFalse(os.path.exists(self.path))

    def test_missing_file_is_fine(self):
        os.unlink(self.path)
        self.assertTrue(secure_erase(self.path))

    def test_empty_file_removed(self):
        open(self.path, "wb").close()
        self.assertTrue(secure_erase(self.path))
        self.assertFalse(os.path.exists(self.path))


class TestEphemeralKeystore(unittest.TestCase):
    def setUp(self):
        self.base = tempfile.mkdtemp()

    def tearDown(self):
        shutil.rmtree(self.base)

    def test_acquire_creates_owner_only_directory(self):
        keystore = EphemeralKeystore(self.base, mount=False)
        path = keystore.acquire()
        try:
            self.assertTrue(path.startswith(self.base))
            self.assertEqual(stat.S_IMODE(os.stat(path).st_mode), 0o700)
        finally:
            keystore.release()

    def test_key_files_are_owner_only(self):
        with EphemeralKeystore(self.base, mount=False) as keystore:
            path = keystore.write("keyfile", KEY)
            self.assertEqual(stat.S_IMODE(os.stat(path).st_mode), 0o600)
            self.assertEqual(keystore.read("keyfile"), KEY)

    def test_release_erases_files_and_removes_directory(self):
        with patch("luks_tpm2.keystore.secure_erase", wraps=secure_erase) as erase:
            with EphemeralKeystore(self.base, mount=False) as keystore:
                first = keystore.write("keyfile", KEY)
                second = keystore.write("keyfile.old", KEY)
                path = keystore.path

        erased = sorted(call.args[0] for call in erase.call_args_list)
        self.assertEqual(erased, sorted([first, second]))
        self.assertFalse(os.path.exists(path))
        self.assertEqual(os.listdir(self.base), [])

    def test_release_runs_when_operation_raises(self):
        with self.assertRaises(RuntimeError):
            with EphemeralKeystore(self.base, mount=False) as keystore:
                keystore.write("keyfile", KEY)
                raise RuntimeError("boom")
        self.assertEqual(os.listdir(self.base), [])

    def test_rejects_path_names(self):
        with EphemeralKeystore(self.base, mount=False) as keystore:
            with self.assertRaises(ValueError):
                keystore.file_path("../escape")

    @patch("luks_tpm2.keystore.subprocess.run")
    def test_mounts_and_unmounts_ramfs(self, mock_run):
        mock_run.return_value = MagicMock(returncode=0, stderr=b"")

        with EphemeralKeystore(self.base, mount=True) as keystore:
            path = keystore.path

        mount_cmd = mock_run.call_args_list[0].args[0]
        umount_cmd = mock_run.call_args_list[1].args[0]
        self.assertEqual(mount_cmd[:3], ['mount', '-t', 'ramfs'])
        self.assertIn('mode=700', mount_cmd)
        self.assertEqual(mount_cmd[-1], path)
        self.assertEqual(umount_cmd, ['umount', path])

    @patch("luks_tpm2.keystore.subprocess.run")
    def test_mount_failure_is_precondition_error(self, mock_run):
        mock_run.return_value = MagicMock(returncode=32, stderr=b"mount: permission denied")

        keystore = EphemeralKeystore(self.base, mount=True)
        with self.assertRaises(PreconditionError):
            keystore.acquire()

        self.assertIsNone(keystore.path)
        self.assertEqual(os.listdir(self.base), [])

    def test_unusable_base_dir_is_precondition_error(self):
        blocker = os.path.join(self.base, "file")
        open(blocker, "w").close()
        with self.assertRaises(PreconditionError):
            EphemeralKeystore(os.path.join(blocker, "sub"), mount=False).acquire()


if __name__ == '__main__':
    unittest.main()
