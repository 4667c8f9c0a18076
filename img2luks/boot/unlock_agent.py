# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# img2luks/boot/unlock_agent.py
"""
Install the boot-time unlock agent into the encrypted root.

The agent is a shell script run by cryptsetup as the crypttab keyscript.
It polls removable vfat partitions for `<key reference>.lek` and feeds
the first match to cryptsetup, while askpass waits for a typed passphrase
in parallel. Whichever answers first wins.

Its runtime lives in the initramfs; what we own is the file content,
path and mode, plus the three small state files it and the initramfs
hook read.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict

from ..core.file_ops import write_text_atomic
from ..keys.keyfile import KEYFILE_EXT, KEYFILE_MODE, Keyfile
from .tables import UNLOCK_AGENT_PATH

EMBEDDED_KEY_DIR = "/etc/sdm/assets/cryptroot"

UNLOCK_SCRIPT = """\
#!/bin/bash
# sdmluksunlock: crypttab keyscript, prints the LUKS key on stdout.
# Looks for <key>.lek on USB/SD vfat partitions; askpass runs alongside.

KEY_EXT="@KEY_EXT@"

console() { echo "$*" >/dev/console; }

kill_by_name() {
    local pids
    pids=$(ps e | grep "$1" | grep -v grep | awk '{print $1}' 2>/dev/null || true)
    [ -n "$pids" ] && kill -KILL $pids >/dev/null 2>&1 || true
}

search_disks() {
    local kfn="$1" part dev
    console ""
    console "> sdmluksunlock: waiting for a disk holding key file '${kfn}'"
    while :; do
        sleep 1
        for part in /dev/disk/by-id/usb-*-part1 /dev/sd?1 /dev/mmcblk?p1; do
            [ -b "$part" ] || continue
            dev=$(readlink -f "$part" 2>/dev/null || echo "$part")
            mount -t vfat -o ro "$dev" /mnt 2>/dev/null || continue
            if [ -e "/mnt/${kfn}" ]; then
                console "> sdmluksunlock: key found on ${dev}, unlocking"
                cat "/mnt/${kfn}"
                umount "$dev" >/dev/null 2>&1 || true
                kill_by_name askpass
                exit 0
            fi
            console "% sdmluksunlock: '${kfn%${KEY_EXT}}' not on ${dev}"
            umount "$dev" >/dev/null 2>&1 || true
        done
    done
}

set -e
mkdir -p /mnt

kfn=""
if [ -n "$CRYPTTAB_KEY" ] && [ "$CRYPTTAB_KEY" != "none" ]; then
    kfn=$(basename "$CRYPTTAB_KEY")
    kfn="${kfn%${KEY_EXT}}${KEY_EXT}"
fi

if [ -n "$kfn" ]; then
    if [ "$2" = "search" ]; then
        touch /tmp/sdmluks-searching
        search_disks "$kfn"
        exit 0
    fi
    [ -f /tmp/sdmluks-searching ] || ( "$0" "$CRYPTTAB_KEY" search </dev/null & )
fi

console ""
/lib/cryptsetup/askpass "Insert USB key disk or type passphrase, then press ENTER:"
kill_by_name "sdmluksunlock.*search"
exit 0
"""


def unlock_script() -> str:
    return UNLOCK_SCRIPT.replace("@KEY_EXT@", KEYFILE_EXT)


def state_files(mapper_name: str, crypto: str, keyfile_name: str) -> Dict[str, str]:
    """Files read by the agent and the initramfs hook, relative to the root."""
    return {
        "etc/mappername": f"{mapper_name}\n",
        "etc/sdmcrypto": f"{crypto}\n",
        "etc/sdmkeyfile": f"{keyfile_name}\n",
    }


def _inside(root: Path, abs_path: str) -> Path:
    return Path(root) / abs_path.lstrip("/")


class UnlockAgentInstaller:
    def __init__(self, logger: Any, root: Path):
        self.logger = logger
        self.root = Path(root)

    def install(self, *, mapper_name: str, crypto: str, keyfile: Keyfile) -> Path:
        script = _inside(self.root, UNLOCK_AGENT_PATH)
        script.parent.mkdir(parents=True, exist_ok=True)
        write_text_atomic(script, unlock_script(), mode=0o755)

        for rel, content in state_files(mapper_name, crypto, keyfile.name).items():
            target = self.root / rel
            target.parent.mkdir(parents=True, exist_ok=True)
            write_text_atomic(target, content, mode=0o644)

        self.logger.info("🧩 Installed unlock agent at %s", UNLOCK_AGENT_PATH)
        return script

    def embed_keyfile(self, keyfile: Keyfile) -> Path:
        """Copy the key into the image (embedded policy only)."""
        dest_dir = _inside(self.root, EMBEDDED_KEY_DIR)
        dest_dir.mkdir(parents=True, exist_ok=True, mode=0o700)
        dest = dest_dir / keyfile.name
        data = keyfile.path.read_bytes()
        fd = os.open(dest, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, KEYFILE_MODE)
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        os.chmod(dest, KEYFILE_MODE)
        self.logger.info("🔑 Embedded keyfile at %s/%s", EMBEDDED_KEY_DIR, keyfile.name)
        return dest

