# img2luks/storage/__init__.py
from .loop import LoopDevice
from .luks import KDF_PROFILES, KdfProfile, LuksContainer, select_cipher
from .migrate import ContentMigrator

__all__ = ["LoopDevice", "LuksContainer", "KdfProfile", "KDF_PROFILES", "select_cipher", "ContentMigrator"]
