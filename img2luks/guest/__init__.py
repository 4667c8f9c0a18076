# img2luks/guest/__init__.py
from .context import GuestContext
from .initramfs import InitramfsBuilder, locate_initramfs

__all__ = ["GuestContext", "InitramfsBuilder", "locate_initramfs"]
