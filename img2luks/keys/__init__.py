# img2luks/keys/__init__.py
from .keyfile import KEYFILE_BYTES, KEYFILE_EXT, Keyfile, KeyfileGenerator

__all__ = ["Keyfile", "KeyfileGenerator", "KEYFILE_EXT", "KEYFILE_BYTES"]
