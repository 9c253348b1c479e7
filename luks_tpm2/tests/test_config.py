import os
import shutil
import tempfile
import unittest
from unittest.mock import patch

from luks_tpm2.config import (
    DEFAULT_PARENT_HANDLE, Config, PCRPolicy, load_config, read_config_file,
)
from luks_tpm2.errors import ConfigError
from luks_tpm2.logger import Logger

Logger.enabled = False


class TestPCRPolicy(unittest.TestCase):
    def test_parse_single_bank(self):
        policy = PCRPolicy.parse("sha1:0,2,4,7")
        self.assertEqual(policy.selectors, (("sha1", (0, 2, 4, 7)),))
        self.assertEqual(str(policy), "sha1:0,2,4,7")

    def test_parse_multiple_banks_keeps_order(self):
        policy = PCRPolicy.parse("sha256:7+sha1:0,1")
        self.assertEqual(policy.selectors, (("sha256", (7,)), ("sha1", (0, 1))))
        self.assertEqual(str(policy), "sha256:7+sha1:0,1")

    def test_duplicate_indices_dropped(self):
        self.assertEqual(str(PCRPolicy.parse("sha1:0,0,2")), "sha1:0,2")

    def test_invalid_selectors(self):
        for text in ("", "sha1", "md5:0", "sha1:24", "sha1:a", "sha1:0+sha1:1", "sha1:0,,1", "sha1:0 2"):
            with self.subTest(text=text):
                with self.assertRaises(ConfigError):
                    PCRPolicy.parse(text)

    def test_equality(self):
        self.assertEqual(PCRPolicy.parse("sha1:0,2"), PCRPolicy.parse("SHA1:0, 2"))
        self.assertNotEqual(PCRPolicy.parse("sha1:0,2"), PCRPolicy.parse("sha1:2,0"))


class TestConfig(unittest.TestCase):
    def test_defaults(self):
        config = Config()
        self.assertEqual(config.key_size, 32)
        self.assertEqual(config.tpm_slot, 1)
        self.assertEqual(config.reset_slot, 2)
        self.assertEqual(config.parent_handle, DEFAULT_PARENT_HANDLE)
        self.assertFalse(config.uses_nvram)

    def test_nv_index_selects_nvram(self):
        self.assertTrue(Config(nv_index=0x01500001).uses_nvram)

    def test_validation(self):
        bad = [
            dict(tpm_slot=8),
            dict(reset_slot=-1),
            dict(tpm_slot=2, reset_slot=2),
            dict(key_size=0),
            dict(key_size=1024),
            dict(parent_handle=0x80000001),
            dict(nv_index=0x81000001),
            dict(device=""),
        ]
        for kwargs in bad:
            with self.subTest(**kwargs):
                with self.assertRaises(ConfigError):
                    Config(**kwargs)

    def test_immutable(self):
        with self.assertRaises(Exception):
            Config().key_size = 64


class TestConfigFile(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()
        self.path = os.path.join(self.tmpdir, "luks-tpm2")

    def tearDown(self):
        shutil.rmtree(self.tmpdir)

    def write(self, text):
        with open(self.path, "w") as f:
            f.write(text)

    def test_shell_style_file(self):
        self.write(
            "# luks-tpm2 settings\n"
            "DEVICE=/dev/nvme0n1p3\n"
            "KEY_SIZE=64  # bytes\n"
            'SEAL_PCRS="sha256:0,7"\n'
            "export PARENT_HANDLE=0x81000002\n"
            "\n"
        )

        config = load_config(self.path)

        self.assertEqual(config.device, "/dev/nvme0n1p3")
        self.assertEqual(config.key_size, 64)
        self.assertEqual(config.parent_handle, 0x81000002)
        self.assertEqual(str(config.seal_policy), "sha256:0,7")
        self.assertEqual(config.unseal_policy, config.seal_policy)

    def test_separate_unseal_pcrs(self):
        self.write("SEAL_PCRS=sha1:0,2,4,7\nUNSEAL_PCRS=sha1:0,2,4\n")
        config = load_config(self.path)
        self.assertEqual(str(config.unseal_policy), "sha1:0,2,4")

    def test_command_line_overrides_file(self):
        self.write("DEVICE=/dev/sdb1\nTPM_KEY_SLOT=3\n")
        config = load_config(self.path, device="/dev/sdc1", tpm_slot=None)
        self.assertEqual(config.device, "/dev/sdc1")
        self.assertEqual(config.tpm_slot, 3)

    def test_empty_nv_index_means_object_form(self):
        self.write("NV_INDEX=\n")
        self.assertFalse(load_config(self.path).uses_nvram)

    def test_unknown_keys_ignored(self):
        self.write("SOMETHING_ELSE=1\n")
        self.assertEqual(load_config(self.path), Config())

    def test_bad_values(self):
        for text in ("KEY_SIZE=big\n", "SEAL_PCRS=sha1\n", "MOUNT_KEYSTORE=maybe\n", "just words\n"):
            with self.subTest(text=text):
                self.write(text)
                with self.assertRaises(ConfigError):
                    load_config(self.path)

    def test_space_separated_pcrs_in_file(self):
        self.write('SEAL_PCRS="sha1:0 2"\n')
        with self.assertRaises(ConfigError):
            load_config(self.path)

    def test_binary_file_is_config_error(self):
        with open(self.path, "wb") as f:
            f.write(b"DEVICE=\xff\xfe\n")
        with self.assertRaises(ConfigError):
            load_config(self.path)

    def test_missing_explicit_file_is_error(self):
        with self.assertRaises(ConfigError):
            load_config(os.path.join(self.tmpdir, "missing"))

    def test_missing_default_file_uses_defaults(self):
        with patch("luks_tpm2.config.DEFAULT_CONFIG_FILE", os.path.join(self.tmpdir, "missing")):
            self.assertEqual(load_config(), Config())

    def test_read_config_file_raw_values(self):
        self.write("A=1\nB='two words'\n")
        self.assertEqual(read_config_file(self.path), {"A": "1", "B": "two words"})


if __name__ == '__main__':
    unittest.main()
