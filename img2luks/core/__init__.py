# img2luks/core/__init__.py
from .exceptions import (
    BootConfigError,
    ContainerError,
    Fatal,
    Img2LuksError,
    MigrationError,
    PreconditionError,
    ResourceError,
    RestoreError,
)
from .options import EncryptOptions, Flavor, UnlockPolicy

__all__ = [
    "Img2LuksError",
    "Fatal",
    "PreconditionError",
    "ResourceError",
    "ContainerError",
    "MigrationError",
    "RestoreError",
    "BootConfigError",
    "EncryptOptions",
    "Flavor",
    "UnlockPolicy",
]
