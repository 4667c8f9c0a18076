# img2luks/boot/__init__.py
from .cmdline import KernelCmdline
from .rewriter import BootConfigRewriter, BootRewriteReport
from .tables import CrypttabEntry

__all__ = ["KernelCmdline", "BootConfigRewriter", "BootRewriteReport", "CrypttabEntry"]
