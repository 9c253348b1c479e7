"""
LUKS-TPM2 Configuration

Default values and the immutable configuration object shared by the
orchestrator, the sealing adapter and the slot manager.

Values come from (highest precedence first):
  1. Command-line options
  2. The config file (shell-style KEY=value, default /etc/default/luks-tpm2)
  3. The defaults below
"""

import os
import re
import shlex
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

from .errors import ConfigError
from .logger import Logger

# Config file read when --config is not given. Missing is not an error.
DEFAULT_CONFIG_FILE = "/etc/default/luks-tpm2"

# Encrypted volume
DEFAULT_DEVICE = "/dev/sda2"

# Base directory for the ephemeral keystore (a ramfs is mounted below it)
DEFAULT_KEYSTORE_DIR = "/run/luks-tpm2"

# Size of generated key material in bytes
DEFAULT_KEY_SIZE = 32

# LUKS key slots
DEFAULT_TPM_SLOT = 1
DEFAULT_RESET_SLOT = 2

# TPM2 Resource Allocation
# Persistent storage key the sealed object is created under
DEFAULT_PARENT_HANDLE = 0x81000001

# Sealed object blobs (object form)
DEFAULT_SEALED_PUBLIC = "/boot/keyfile.pub"
DEFAULT_SEALED_PRIVATE = "/boot/keyfile.priv"

# PCR selection used for both sealing and unsealing unless overridden
DEFAULT_PCRS = "sha1:0,2,4,7"

MAX_SLOT = 7
MAX_KEY_SIZE = 128
MAX_PCR_INDEX = 23

PCR_BANKS = ("sha1", "sha256", "sha384", "sha512")

PERSISTENT_HANDLE_RANGE = (0x81000000, 0x81FFFFFF)
NV_INDEX_RANGE = (0x01000000, 0x01FFFFFF)

_SELECTOR_RE = re.compile(r"^([a-z0-9]+):([0-9,\s]+)$")


@dataclass(frozen=True)
class PCRPolicy:
    """
    Ordered set of (hash bank, PCR indices) selectors.

    Renders to the TPM2 selection syntax, e.g. ``sha1:0,2,4,7+sha256:7``.
    """

    selectors: Tuple[Tuple[str, Tuple[int, ...]], ...]

    @classmethod
    def parse(cls, text: str) -> "PCRPolicy":
        """
        Parse a PCR selection string.

        Args:
            text: Selection such as "sha1:0,2,4,7" or "sha1:0+sha256:7"

        Returns:
            Parsed policy

        Raises:
            ConfigError: If the string is malformed or names an unknown bank
        """
        if not text or not text.strip():
            raise ConfigError("PCR selection is empty")

        selectors = []
        seen_banks = set()
        for part in text.strip().split("+"):
            match = _SELECTOR_RE.match(part.strip().lower())
            if not match:
                raise ConfigError(f"Invalid PCR selector: {part!r}")

            bank, index_text = match.groups()
            if bank not in PCR_BANKS:
                raise ConfigError(f"Unsupported PCR bank: {bank}")
            if bank in seen_banks:
                raise ConfigError(f"PCR bank listed twice: {bank}")
            seen_banks.add(bank)

            indices = []
            for item in index_text.split(","):
                item = item.strip()
                if not item:
                    raise ConfigError(f"Empty PCR index in selector: {part!r}")
                try:
                    index = int(item)
                except ValueError:
                    raise ConfigError(f"Invalid PCR index {item!r} in selector: {part!r}")
                if index > MAX_PCR_INDEX:
                    raise ConfigError(f"PCR index out of range: {index}")
                if index not in indices:
                    indices.append(index)

            selectors.append((bank, tuple(indices)))

        return cls(tuple(selectors))

    def __str__(self) -> str:
        return "+".join(
            f"{bank}:{','.join(str(i) for i in indices)}"
            for bank, indices in self.selectors
        )


@dataclass(frozen=True)
class Config:
    """
    Immutable configuration for one invocation.

    Exactly one sealing form is active: NVRAM when nv_index is set,
    otherwise a public/private blob pair under parent_handle.
    """

    device: str = DEFAULT_DEVICE
    keystore_dir: str = DEFAULT_KEYSTORE_DIR
    mount_keystore: bool = True
    key_size: int = DEFAULT_KEY_SIZE
    tpm_slot: int = DEFAULT_TPM_SLOT
    reset_slot: int = DEFAULT_RESET_SLOT
    parent_handle: int = DEFAULT_PARENT_HANDLE
    sealed_public: str = DEFAULT_SEALED_PUBLIC
    sealed_private: str = DEFAULT_SEALED_PRIVATE
    nv_index: Optional[int] = None
    seal_policy: PCRPolicy = field(default_factory=lambda: PCRPolicy.parse(DEFAULT_PCRS))
    unseal_policy: PCRPolicy = field(default_factory=lambda: PCRPolicy.parse(DEFAULT_PCRS))
    tcti: Optional[str] = None
    keyfile: Optional[str] = None

    def __post_init__(self):
        for name in ("tpm_slot", "reset_slot"):
            slot = getattr(self, name)
            if not 0 <= slot <= MAX_SLOT:
                raise ConfigError(f"{name} must be between 0 and {MAX_SLOT}, got {slot}")
        if self.tpm_slot == self.reset_slot:
            raise ConfigError(f"TPM slot and reset slot must differ (both {self.tpm_slot})")
        if not 0 < self.key_size <= MAX_KEY_SIZE:
            raise ConfigError(f"Key size must be between 1 and {MAX_KEY_SIZE} bytes, got {self.key_size}")

        low, high = PERSISTENT_HANDLE_RANGE
        if not low <= self.parent_handle <= high:
            raise ConfigError(f"Parent handle 0x{self.parent_handle:08x} is not a persistent handle")
        if self.nv_index is not None:
            low, high = NV_INDEX_RANGE
            if not low <= self.nv_index <= high:
                raise ConfigError(f"NV index 0x{self.nv_index:08x} is not in the NV range")
        if not self.device:
            raise ConfigError("No encrypted device configured")

    @property
    def uses_nvram(self) -> bool:
        return self.nv_index is not None


# ============================================================================
# Config file
# ============================================================================

def _parse_int(key: str, value: str) -> int:
    try:
        return int(value, 0)
    except ValueError:
        raise ConfigError(f"{key}: expected an integer, got {value!r}")


def _parse_str(key: str, value: str) -> str:
    return value


def _parse_pcrs(key: str, value: str) -> PCRPolicy:
    try:
        return PCRPolicy.parse(value)
    except ConfigError as e:
        raise ConfigError(f"{key}: {e}")


def _parse_bool(key: str, value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in ("1", "yes", "true", "on"):
        return True
    if lowered in ("0", "no", "false", "off"):
        return False
    raise ConfigError(f"{key}: expected a boolean, got {value!r}")


_FILE_KEYS = {
    "DEVICE": ("device", _parse_str),
    "KEYSTORE_DIR": ("keystore_dir", _parse_str),
    "MOUNT_KEYSTORE": ("mount_keystore", _parse_bool),
    "KEY_SIZE": ("key_size", _parse_int),
    "TPM_KEY_SLOT": ("tpm_slot", _parse_int),
    "RESET_KEY_SLOT": ("reset_slot", _parse_int),
    "PARENT_HANDLE": ("parent_handle", _parse_int),
    "SEALED_KEY_PUBLIC": ("sealed_public", _parse_str),
    "SEALED_KEY_PRIVATE": ("sealed_private", _parse_str),
    "NV_INDEX": ("nv_index", _parse_int),
    "SEAL_PCRS": ("seal_policy", _parse_pcrs),
    "UNSEAL_PCRS": ("unseal_policy", _parse_pcrs),
    "TCTI": ("tcti", _parse_str),
}


def read_config_file(path: str) -> Dict[str, str]:
    """
    Read shell-style KEY=value assignments.

    Args:
        path: Config file path

    Returns:
        Raw key/value strings in file order

    Raises:
        ConfigError: If a line is not an assignment
    """
    values: Dict[str, str] = {}
    with open(path, "r", encoding="utf-8") as f:
        for lineno, line in enumerate(f, start=1):
            try:
                tokens = shlex.split(line, comments=True)
            except ValueError as e:
                raise ConfigError(f"{path}:{lineno}: {e}")
            if not tokens:
                continue
            if tokens[0] == "export":
                tokens = tokens[1:]
            if len(tokens) != 1 or "=" not in tokens[0]:
                raise ConfigError(f"{path}:{lineno}: expected KEY=value")
            key, _, value = tokens[0].partition("=")
            values[key.strip()] = value
    return values


def parse_settings(values: Dict[str, str]) -> Dict[str, object]:
    """Convert raw config file values into Config field values."""
    settings: Dict[str, object] = {}
    for key, raw in values.items():
        if key not in _FILE_KEYS:
            Logger.warning(f"Ignoring unknown config key: {key}")
            continue
        name, convert = _FILE_KEYS[key]
        if raw == "" and name in ("nv_index", "tcti"):
            settings[name] = None
            continue
        settings[name] = convert(key, raw)
    return settings


def load_config(path: Optional[str] = None, **overrides) -> Config:
    """
    Build the configuration for one invocation.

    Args:
        path: Config file to read. None reads DEFAULT_CONFIG_FILE if present.
        **overrides: Command-line values; None means "not given"

    Returns:
        Validated Config

    Raises:
        ConfigError: If the file is unreadable or a value is invalid
    """
    settings: Dict[str, object] = {}

    if path is not None or os.path.exists(DEFAULT_CONFIG_FILE):
        config_path = path or DEFAULT_CONFIG_FILE
        try:
            settings = parse_settings(read_config_file(config_path))
        except OSError as e:
            raise ConfigError(f"Cannot read config file {config_path}: {e}")
        except UnicodeDecodeError as e:
            raise ConfigError(f"Config file {config_path} is not valid text: {e}")
        Logger.debug("CONFIG", f"Loaded {config_path}")

    settings.update({k: v for k, v in overrides.items() if v is not None})

    # Unseal policy follows the seal policy unless set explicitly
    if "seal_policy" in settings and "unseal_policy" not in settings:
        settings["unseal_policy"] = settings["seal_policy"]

    return Config(**settings)
